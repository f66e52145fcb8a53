"""
Credential store adapter.

Reads and writes StoreCredential rows through the generic RecordStore.
Keeps the invariant of at most one active credential per (marketplace,
store id): renewal rewrites tokens in place on the matching active record;
only when none matches is a new record inserted, after deactivating any
prior active records for that store.
"""
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from core.database import STORE_CREDENTIALS, Page, RecordStore
from core.errors import CredentialNotFound, PersistenceError
from core.logging import get_logger
from core.models import StoreCredential, TokenGrant, db_timestamp, utcnow

logger = get_logger("credential-store")


def _marketplace_value(marketplace) -> str:
    return getattr(marketplace, "value", marketplace)


class CredentialStore:
    def __init__(self, store: RecordStore):
        self.store = store

    def get_active(self, marketplace: str, store_id: str) -> StoreCredential:
        rows = self.store.select(
            STORE_CREDENTIALS,
            {
                "marketplace": _marketplace_value(marketplace),
                "store_id": str(store_id),
                "is_active": True,
            },
            Page(order_by="updated_at", descending=True, limit=1),
        )
        if not rows:
            raise CredentialNotFound(str(store_id), _marketplace_value(marketplace))
        return StoreCredential.model_validate(rows[0])

    def list_active(self, marketplace: Optional[str] = None) -> List[StoreCredential]:
        """Active credentials, newest one per (marketplace, store id)."""
        filters = {"is_active": True}
        if marketplace:
            filters["marketplace"] = _marketplace_value(marketplace)
        rows = self.store.select(
            STORE_CREDENTIALS,
            filters,
            Page(order_by="updated_at", descending=True),
        )

        newest: Dict[Tuple[str, str], StoreCredential] = {}
        for row in rows:
            credential = StoreCredential.model_validate(row)
            key = (credential.marketplace, credential.store_id)
            if key in newest:
                logger.warning(
                    "Multiple active credentials for store, using the newest",
                    extra={"marketplace": credential.marketplace, "store_id": credential.store_id},
                )
                continue
            newest[key] = credential
        return list(newest.values())

    def add(self, credential: StoreCredential) -> StoreCredential:
        """Insert a new active credential, deactivating earlier ones for the same store."""
        self._deactivate_store(credential.marketplace, credential.store_id, credential.created_at)
        self.store.insert(STORE_CREDENTIALS, credential.to_dict_for_db())
        return credential

    def save_renewal(
        self,
        credential: StoreCredential,
        grant: TokenGrant,
        now: Optional[datetime] = None,
    ) -> StoreCredential:
        """Persist a renewed token pair and return the credential as stored."""
        now = now or utcnow()
        renewed = credential.model_copy(update={
            "access_token": grant.access_token,
            "refresh_token": grant.refresh_token,
            "expires_at": grant.expires_at(now),
            "is_active": True,
            "updated_at": now,
        })
        doc = renewed.to_dict_for_db()
        fields = {
            key: doc[key]
            for key in ("access_token", "refresh_token", "expires_at", "is_active", "updated_at")
        }

        matching = self.store.select(
            STORE_CREDENTIALS,
            {
                "marketplace": credential.marketplace,
                "store_id": credential.store_id,
                "partner_id": credential.partner_id,
                "is_active": True,
            },
        )
        if matching:
            record_id = matching[0]["_id"]
            if not self.store.update(STORE_CREDENTIALS, record_id, fields):
                raise PersistenceError(f"credential {record_id} vanished during renewal")
            logger.info(
                "Credential renewed in place",
                extra={"marketplace": credential.marketplace, "store_id": credential.store_id},
            )
            return renewed.model_copy(update={"id": record_id})

        # No active record to update: start a fresh identity
        fresh = StoreCredential(**{
            **renewed.model_dump(exclude={"id"}),
            "created_at": now,
        })
        self.add(fresh)
        logger.info(
            "Credential inserted after renewal",
            extra={"marketplace": credential.marketplace, "store_id": credential.store_id},
        )
        return fresh

    def deactivate(self, credential: StoreCredential, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.store.update(
            STORE_CREDENTIALS,
            credential.id,
            {"is_active": False, "updated_at": db_timestamp(now)},
        )

    def _deactivate_store(self, marketplace: str, store_id: str, now: datetime) -> int:
        rows = self.store.select(
            STORE_CREDENTIALS,
            {"marketplace": _marketplace_value(marketplace), "store_id": store_id, "is_active": True},
        )
        for row in rows:
            self.store.update(
                STORE_CREDENTIALS,
                row["_id"],
                {"is_active": False, "updated_at": db_timestamp(now)},
            )
        return len(rows)
