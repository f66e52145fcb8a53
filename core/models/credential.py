"""
Store Credential Schema - per-store marketplace authorization.

One record per (marketplace, store). At most one *active* record exists per
store id; renewal rewrites tokens in place and records are only ever
deactivated, never deleted.

Collection:
- store_credentials

Usage:
    credential = create_store_credential(
        marketplace="shopee",
        store_id="123456",
        partner_id="2001234",
        partner_key="shpk...",
        access_token="abc",
        refresh_token="def",
        expires_at=datetime(2024, 1, 15, 12, tzinfo=timezone.utc),
    )
    store.insert("store_credentials", credential.to_dict_for_db())
"""
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# ENUMS
# ============================================================================

class Marketplace(str, Enum):
    """Supported marketplaces."""
    SHOPEE = "shopee"
    MERCADO_LIVRE = "mercado_livre"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def db_timestamp(value: datetime) -> str:
    """Serialize a datetime the way to_dict_for_db() does, so stored strings sort consistently."""
    text = as_utc(value).astimezone(timezone.utc).isoformat()
    return text.replace("+00:00", "Z")


# ============================================================================
# CREDENTIAL MODEL
# ============================================================================

class StoreCredential(BaseModel):
    """
    Authorization material for one store on one marketplace.

    Example Document:
        {
            "_id": "9f1c2e...",
            "marketplace": "shopee",
            "store_id": "123456",
            "store_name": "Loja Centro",
            "partner_id": "2001234",
            "partner_key": "shpk...",
            "access_token": "abc",
            "refresh_token": "def",
            "expires_at": "2024-01-15T12:00:00Z",
            "is_active": true
        }
    """
    model_config = ConfigDict(
        populate_by_name=True,
        use_enum_values=True,
    )

    id: str = Field(
        default_factory=lambda: uuid.uuid4().hex,
        alias="_id",
        description="Record identity, preserved across in-place renewals"
    )
    marketplace: Marketplace = Field(..., description="Marketplace the store belongs to")
    store_id: str = Field(..., description="Shop id (Shopee) or seller id (Mercado Livre)")
    store_name: Optional[str] = Field(None, description="Display name")

    partner_id: str = Field(..., description="Partner/app id")
    partner_key: str = Field(..., description="Partner/app secret")

    access_token: Optional[str] = Field(None, description="Current access token")
    refresh_token: Optional[str] = Field(None, description="Refresh token used for renewal")
    expires_at: Optional[datetime] = Field(None, description="Access token expiry (UTC)")

    is_active: bool = Field(True, description="Only active credentials are used for syncing")

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("store_id", "partner_id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        # Both marketplaces hand out numeric ids
        return str(value) if isinstance(value, int) else value

    @field_validator("expires_at", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value):
        return as_utc(value)

    def to_dict_for_db(self) -> dict:
        """Convert to dictionary for database insertion."""
        return self.model_dump(by_alias=True, mode='json')


class TokenGrant(BaseModel):
    """Result of a token renewal call."""
    access_token: str
    refresh_token: str
    expires_in: int = Field(..., ge=0, description="Seconds until the access token expires")

    def expires_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.expires_in)


# ============================================================================
# FACTORY FUNCTIONS
# ============================================================================

def create_store_credential(
    marketplace: str,
    store_id: str,
    partner_id: str,
    partner_key: str,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    store_name: Optional[str] = None,
) -> StoreCredential:
    """Create a new active credential record."""
    return StoreCredential(
        marketplace=marketplace,
        store_id=store_id,
        store_name=store_name,
        partner_id=partner_id,
        partner_key=partner_key,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at,
    )
