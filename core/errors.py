"""
Sync error taxonomy.

SyncError (base)
  - Unauthenticated        token invalid/expired, not retryable without renewal
      - CredentialNotFound no active credential for the store
  - Forbidden              403 after retries were exhausted
  - RateLimited            429 after retries were exhausted
  - BatchTooLarge          413, caller must shrink the batch
  - SyncTimeout            network timeout, retried by the caller's batch policy
  - UpstreamError          any other non-2xx (or API-level error body)
  - AggregationError       malformed billing/escrow payload
  - PersistenceError       the record store rejected a read or write
  - SyncCancelled          the run was aborted between pages/batches
  - SyncAborted            every store in an invocation failed to authenticate/connect
"""
from typing import Any, Optional


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""

    def __init__(self, message: str, code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


class Unauthenticated(SyncError):
    def __init__(self, message: str = "Unauthenticated", details: Any = None):
        super().__init__(message, code=401, details=details)


class CredentialNotFound(Unauthenticated):
    def __init__(self, store_id: str, marketplace: Optional[str] = None):
        where = f"{marketplace} store {store_id}" if marketplace else f"store {store_id}"
        super().__init__(f"No active credential for {where}")
        self.store_id = store_id


class Forbidden(SyncError):
    def __init__(self, message: str = "Forbidden", details: Any = None):
        super().__init__(message, code=403, details=details)


class RateLimited(SyncError):
    def __init__(self, message: str = "Rate limited", details: Any = None):
        super().__init__(message, code=429, details=details)


class BatchTooLarge(SyncError):
    def __init__(self, message: str = "Batch too large", details: Any = None):
        super().__init__(message, code=413, details=details)


class SyncTimeout(SyncError):
    def __init__(self, message: str = "Request timed out", details: Any = None):
        super().__init__(message, details=details)


class UpstreamError(SyncError):
    """Non-retryable upstream failure. ``code`` is the HTTP status (0 when no response)."""

    def __init__(self, code: int, message: Optional[str] = None, details: Any = None):
        super().__init__(message or f"Upstream error {code}", code=code, details=details)


class AggregationError(SyncError):
    pass


class PersistenceError(SyncError):
    pass


class SyncCancelled(SyncError):
    def __init__(self, message: str = "Sync cancelled"):
        super().__init__(message)


class SyncAborted(SyncError):
    """Raised when no store in the invocation could authenticate or reach its upstream."""

    def __init__(self, message: str, summary: Any = None):
        super().__init__(message, details=summary)
        self.summary = summary
