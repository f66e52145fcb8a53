"""
Token lifecycle manager.

Per-store state machine:

    UNKNOWN -> VALID -> NEAR_EXPIRY -> EXPIRED

NEAR_EXPIRY starts ``margin`` before expiry (5 minutes by default).
NEAR_EXPIRY and EXPIRED trigger a renewal with the refresh token; UNKNOWN
(no expiry recorded) renews when a refresh token is available. Renewals are
serialized per (marketplace, store id) and the credential is re-read inside
the lock, so a caller that queued behind another renewal picks up the fresh
token instead of spending the refresh token a second time.

Usage:
    manager = TokenManager(CredentialStore(store), clients)
    token = manager.get_valid_token("shopee", "123456")
"""
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from core.errors import SyncError, SyncTimeout, Unauthenticated, UpstreamError
from core.logging import get_logger
from core.models import StoreCredential, utcnow
from services.sync.credentials import CredentialStore
from services.sync.marketplaces import MarketplaceClient

logger = get_logger("token-manager")


class TokenState(str, Enum):
    UNKNOWN = "unknown"
    VALID = "valid"
    NEAR_EXPIRY = "near_expiry"
    EXPIRED = "expired"


def token_state(credential: StoreCredential, now: datetime, margin: timedelta) -> TokenState:
    if not credential.access_token or credential.expires_at is None:
        return TokenState.UNKNOWN
    if now >= credential.expires_at:
        return TokenState.EXPIRED
    if now >= credential.expires_at - margin:
        return TokenState.NEAR_EXPIRY
    return TokenState.VALID


def is_connectivity_error(error: SyncError) -> bool:
    """Timeouts, refused connections and 5xx responses."""
    if isinstance(error, SyncTimeout):
        return True
    return isinstance(error, UpstreamError) and (error.code == 0 or (error.code or 0) >= 500)


class TokenManager:
    def __init__(
        self,
        credentials: CredentialStore,
        clients: Dict[str, MarketplaceClient],
        margin: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.credentials = credentials
        self.clients = clients
        self.margin = margin
        self.clock = clock
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, credential: StoreCredential) -> threading.Lock:
        key = (credential.marketplace, credential.store_id)
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def state_of(self, credential: StoreCredential) -> TokenState:
        return token_state(credential, self.clock(), self.margin)

    def _needs_renewal(self, credential: StoreCredential) -> bool:
        state = self.state_of(credential)
        if state is TokenState.VALID:
            return False
        if state is TokenState.UNKNOWN and credential.access_token and not credential.refresh_token:
            # Nothing to renew with; use the token as issued
            return False
        return True

    def get_valid_token(self, marketplace: str, store_id: str) -> str:
        """Return a usable access token or raise Unauthenticated."""
        credential = self.credentials.get_active(marketplace, store_id)
        return self.ensure_valid(credential).access_token

    def ensure_valid(self, credential: StoreCredential, force: bool = False) -> StoreCredential:
        """Return ``credential`` with a usable token, renewing it first when needed."""
        if not force and not self._needs_renewal(credential):
            return credential

        with self._lock_for(credential):
            current = self.credentials.get_active(credential.marketplace, credential.store_id)
            if force:
                if current.access_token != credential.access_token:
                    # Someone renewed while we waited on the lock
                    return current
            elif not self._needs_renewal(current):
                return current
            return self.renew(current)

    def renew(self, credential: StoreCredential) -> StoreCredential:
        """Call the marketplace renewal endpoint and persist the new pair. Caller holds the lock."""
        extra = {"marketplace": credential.marketplace, "store_id": credential.store_id}
        if not credential.refresh_token:
            logger.error("Cannot renew token: no refresh token stored", extra=extra)
            raise Unauthenticated(f"No refresh token for store {credential.store_id}")

        client = self.clients.get(credential.marketplace)
        if client is None:
            raise Unauthenticated(f"No client configured for {credential.marketplace}")

        logger.info("Renewing access token", extra=extra)
        try:
            grant = client.refresh_token(credential)
        except Unauthenticated:
            logger.error("Token renewal rejected", extra=extra)
            raise
        except SyncError as e:
            logger.error(f"Token renewal failed: {e.message}", extra=extra)
            if is_connectivity_error(e):
                raise
            raise Unauthenticated(f"Token renewal failed: {e.message}", details=e.details) from e

        renewed = self.credentials.save_renewal(credential, grant, self.clock())
        logger.info(
            "Access token renewed",
            extra={**extra, "expires_at": renewed.expires_at.isoformat()},
        )
        return renewed

    def refresh_all(self, force: bool = False, marketplace: Optional[str] = None) -> List[Dict]:
        """
        Renew every active credential that needs it (all of them with ``force``).

        Returns one entry per store: {"marketplace", "store_id", "renewed", "error"}.
        """
        results = []
        for credential in self.credentials.list_active(marketplace):
            entry = {
                "marketplace": credential.marketplace,
                "store_id": credential.store_id,
                "renewed": False,
                "error": None,
            }
            try:
                refreshed = self.ensure_valid(credential, force=force)
                entry["renewed"] = refreshed.access_token != credential.access_token
            except SyncError as e:
                entry["error"] = e.message
            results.append(entry)

        renewed = sum(1 for r in results if r["renewed"])
        failed = sum(1 for r in results if r["error"])
        logger.info(
            f"Token refresh complete: {renewed} renewed, {failed} failed, {len(results)} checked",
            extra={"renewed": renewed, "failed": failed, "checked": len(results)},
        )
        return results
