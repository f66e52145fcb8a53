"""
Shared retry/backoff policy for every outbound marketplace call.

    401            -> Unauthenticated, no retry
    403            -> exponential backoff (base * 2^attempt), then Forbidden
    404            -> empty result where the caller allows it, else UpstreamError(404)
    413            -> BatchTooLarge, no retry
    429            -> flat cooldown, then RateLimited
    timeout        -> SyncTimeout, no retry here
    other non-2xx  -> UpstreamError(code), no retry

``send`` is invoked once per attempt and must rebuild the request (fresh
timestamp and signature) every time it is called.
"""
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import requests

from core.errors import (
    BatchTooLarge,
    Forbidden,
    RateLimited,
    SyncTimeout,
    Unauthenticated,
    UpstreamError,
)
from core.logging import get_logger

logger = get_logger("sync-retry")


class FailureKind(str, Enum):
    AUTH = "auth"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    TOO_LARGE = "too_large"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass
class RetryState:
    """Per-call bookkeeping."""
    attempt: int = 0
    delay: float = 0.0
    last_failure: Optional[FailureKind] = None


def classify_status(status_code: int) -> Optional[FailureKind]:
    """Map an HTTP status to a failure kind. None means success."""
    if 200 <= status_code < 300:
        return None
    return {
        401: FailureKind.AUTH,
        403: FailureKind.FORBIDDEN,
        404: FailureKind.NOT_FOUND,
        413: FailureKind.TOO_LARGE,
        429: FailureKind.RATE_LIMITED,
    }.get(status_code, FailureKind.FATAL)


def _body_excerpt(response: requests.Response, limit: int = 500) -> str:
    try:
        return response.text[:limit]
    except (AttributeError, ValueError):
        return ""


class RetryPolicy:
    """Bounded retry loop with an injected sleep."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 30.0,
        rate_limit_cooldown: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.rate_limit_cooldown = rate_limit_cooldown
        self.sleep = sleep

    def delay_for(self, kind: FailureKind, retry_index: int) -> float:
        if kind is FailureKind.RATE_LIMITED:
            return self.rate_limit_cooldown
        return self.base_delay * (2 ** retry_index)

    def execute(
        self,
        send: Callable[[], requests.Response],
        describe: str = "request",
        empty_on_not_found: bool = False,
    ) -> Optional[requests.Response]:
        """
        Run ``send`` under the policy.

        Returns the successful response, or None for a 404 when
        ``empty_on_not_found`` is set. Raises the taxonomy error otherwise.
        """
        state = RetryState()

        while True:
            state.attempt += 1
            try:
                response = send()
            except requests.Timeout as e:
                state.last_failure = FailureKind.TRANSIENT
                raise SyncTimeout(f"{describe} timed out", details=str(e)) from e
            except requests.ConnectionError as e:
                state.last_failure = FailureKind.FATAL
                raise UpstreamError(0, f"{describe}: connection failed", details=str(e)) from e
            except requests.RequestException as e:
                state.last_failure = FailureKind.FATAL
                raise UpstreamError(0, f"{describe}: {type(e).__name__}", details=str(e)) from e

            kind = classify_status(response.status_code)
            if kind is None:
                return response
            state.last_failure = kind

            if kind is FailureKind.AUTH:
                raise Unauthenticated(f"{describe} rejected with 401", details=_body_excerpt(response))

            if kind is FailureKind.NOT_FOUND:
                if empty_on_not_found:
                    logger.debug(f"{describe} returned 404, treating as empty")
                    return None
                raise UpstreamError(404, f"{describe} not found", details=_body_excerpt(response))

            if kind is FailureKind.TOO_LARGE:
                raise BatchTooLarge(f"{describe} rejected as too large", details=_body_excerpt(response))

            if kind in (FailureKind.FORBIDDEN, FailureKind.RATE_LIMITED):
                if state.attempt >= self.max_attempts:
                    logger.error(
                        f"{describe} gave up after {state.attempt} attempts",
                        extra={"failure": kind.value, "attempts": state.attempt},
                    )
                    error_cls = Forbidden if kind is FailureKind.FORBIDDEN else RateLimited
                    raise error_cls(
                        f"{describe} failed after {state.attempt} attempts",
                        details=_body_excerpt(response),
                    )
                state.delay = self.delay_for(kind, state.attempt - 1)
                logger.warning(
                    f"{describe} got {response.status_code}. Waiting {state.delay:.0f}s before retry. "
                    f"Attempt {state.attempt}/{self.max_attempts}",
                    extra={"failure": kind.value, "attempt": state.attempt, "delay": state.delay},
                )
                self.sleep(state.delay)
                continue

            raise UpstreamError(
                response.status_code,
                f"{describe} failed with {response.status_code}",
                details=_body_excerpt(response),
            )
