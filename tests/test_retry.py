#!/usr/bin/env python3
"""
Test suite for the shared retry/backoff policy.
Every branch of the classification table, with an injected sleep.
"""
import sys
from pathlib import Path

import pytest
import requests

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from core.errors import (
    BatchTooLarge,
    Forbidden,
    RateLimited,
    SyncTimeout,
    Unauthenticated,
    UpstreamError,
)
from services.sync.retry import FailureKind, RetryPolicy, classify_status
from fakes import FakeResponse, RecordingSleep


class Sender:
    """Returns the queued responses in order (last one repeats) and counts calls."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


def make_policy(max_attempts=3):
    sleep = RecordingSleep()
    return RetryPolicy(max_attempts=max_attempts, base_delay=30, rate_limit_cooldown=60, sleep=sleep), sleep


def test_classify_status():
    assert classify_status(200) is None
    assert classify_status(204) is None
    assert classify_status(401) is FailureKind.AUTH
    assert classify_status(403) is FailureKind.FORBIDDEN
    assert classify_status(404) is FailureKind.NOT_FOUND
    assert classify_status(413) is FailureKind.TOO_LARGE
    assert classify_status(429) is FailureKind.RATE_LIMITED
    assert classify_status(500) is FailureKind.FATAL


def test_success_is_returned_without_sleeping():
    policy, sleep = make_policy()
    send = Sender(FakeResponse(200, {"ok": True}))

    response = policy.execute(send)

    assert response.json() == {"ok": True}
    assert send.calls == 1
    assert sleep.delays == []


def test_rate_limit_is_capped_at_max_attempts():
    """A call that always returns 429 is attempted exactly max_attempts times."""
    policy, sleep = make_policy(max_attempts=3)
    send = Sender(FakeResponse(429))

    with pytest.raises(RateLimited):
        policy.execute(send, "billing")

    assert send.calls == 3
    assert sleep.delays == [60, 60]


def test_forbidden_backs_off_exponentially_then_succeeds():
    policy, sleep = make_policy(max_attempts=3)
    send = Sender(FakeResponse(403), FakeResponse(403), FakeResponse(200, {"ok": True}))

    response = policy.execute(send)

    assert response.status_code == 200
    assert send.calls == 3
    assert sleep.delays == [30, 60]


def test_forbidden_exhausted_surfaces_forbidden():
    policy, sleep = make_policy(max_attempts=4)
    send = Sender(FakeResponse(403))

    with pytest.raises(Forbidden) as excinfo:
        policy.execute(send)

    assert excinfo.value.code == 403
    assert send.calls == 4
    assert sleep.delays == [30, 60, 120]


def test_unauthorized_fails_immediately():
    policy, sleep = make_policy()
    send = Sender(FakeResponse(401, {"message": "invalid token"}))

    with pytest.raises(Unauthenticated):
        policy.execute(send)

    assert send.calls == 1
    assert sleep.delays == []


def test_payload_too_large_fails_immediately():
    policy, sleep = make_policy()
    send = Sender(FakeResponse(413))

    with pytest.raises(BatchTooLarge):
        policy.execute(send)

    assert send.calls == 1
    assert sleep.delays == []


def test_not_found_is_empty_when_allowed():
    policy, _ = make_policy()

    assert policy.execute(Sender(FakeResponse(404)), empty_on_not_found=True) is None

    with pytest.raises(UpstreamError) as excinfo:
        policy.execute(Sender(FakeResponse(404)))
    assert excinfo.value.code == 404


def test_other_status_is_not_retried():
    policy, sleep = make_policy()
    send = Sender(FakeResponse(502, text="bad gateway"))

    with pytest.raises(UpstreamError) as excinfo:
        policy.execute(send)

    assert excinfo.value.code == 502
    assert send.calls == 1
    assert sleep.delays == []


def test_timeout_is_not_retried_internally():
    policy, sleep = make_policy()
    send = Sender(requests.Timeout("read timed out"))

    with pytest.raises(SyncTimeout):
        policy.execute(send)

    assert send.calls == 1
    assert sleep.delays == []


def test_connection_error_is_upstream_zero():
    policy, _ = make_policy()

    with pytest.raises(UpstreamError) as excinfo:
        policy.execute(Sender(requests.ConnectionError("refused")))

    assert excinfo.value.code == 0


def test_broken_body_is_upstream_zero():
    """A connection dropped mid-body surfaces as an upstream error, not a raw requests error."""
    policy, sleep = make_policy()
    send = Sender(requests.exceptions.ChunkedEncodingError("connection broken mid-body"))

    with pytest.raises(UpstreamError) as excinfo:
        policy.execute(send, "order 1001")

    assert excinfo.value.code == 0
    assert "ChunkedEncodingError" in excinfo.value.message
    assert send.calls == 1
    assert sleep.delays == []


def test_send_is_invoked_per_attempt():
    """Each retry rebuilds the request, so send() sees every attempt."""
    policy, _ = make_policy(max_attempts=3)
    stamps = []

    def send():
        stamps.append(len(stamps))
        return FakeResponse(429) if len(stamps) < 3 else FakeResponse(200, {})

    policy.execute(send)

    assert stamps == [0, 1, 2]


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
