"""
Order Schema - normalized marketplace orders.

Platform-specific status strings are mapped to a small stable set
(OrderStatus); the raw status and the full upstream payload are kept for
audit.

Collection:
- orders

Usage:
    order = create_order_record(
        marketplace="shopee",
        store_id="123456",
        order_id="240115ABCDEF",
        status=OrderStatus.TO_SHIP,
        platform_status="READY_TO_SHIP",
        updated_at=datetime(2024, 1, 15, tzinfo=timezone.utc),
        total_amount=129.9,
        currency="BRL",
    )
    order.id  # "shopee_123456_240115ABCDEF"
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.models.credential import Marketplace, as_utc, utcnow


class OrderStatus(str, Enum):
    """Normalized order status."""
    PENDING_PAYMENT = "pending_payment"
    TO_SHIP = "to_ship"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUND_PENDING = "refund_pending"
    UNKNOWN = "unknown"


class OrderRecord(BaseModel):
    """
    Normalized order. (order_id, store_id) is unique within a marketplace.

    Example Document:
        {
            "_id": "shopee_123456_240115ABCDEF",
            "order_id": "240115ABCDEF",
            "store_id": "123456",
            "marketplace": "shopee",
            "status": "to_ship",
            "platform_status": "READY_TO_SHIP",
            "created_at": "2024-01-15T09:12:00Z",
            "updated_at": "2024-01-15T10:40:00Z",
            "total_amount": 129.9,
            "currency": "BRL",
            "buyer_ref": "buyer_01",
            "raw": {...},
            "synced_at": "2024-01-15T11:00:00Z"
        }
    """
    model_config = ConfigDict(
        populate_by_name=True,
        use_enum_values=True,
    )

    id: str = Field(
        ...,
        alias="_id",
        description="Compound key: {marketplace}_{store_id}_{order_id}"
    )
    order_id: str
    store_id: str
    marketplace: Marketplace

    status: OrderStatus = OrderStatus.UNKNOWN
    platform_status: Optional[str] = Field(None, description="Status string as reported upstream")

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    total_amount: float = 0.0
    currency: Optional[str] = None
    buyer_ref: Optional[str] = None

    raw: Dict[str, Any] = Field(default_factory=dict, description="Upstream payload")
    synced_at: datetime = Field(default_factory=utcnow)

    @field_validator("order_id", "store_id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return str(value) if isinstance(value, int) else value

    @field_validator("total_amount", mode="before")
    @classmethod
    def _zero_if_missing(cls, value):
        return 0.0 if value in (None, "") else value

    @field_validator("created_at", "updated_at", "synced_at")
    @classmethod
    def _utc(cls, value):
        return as_utc(value)

    def to_dict_for_db(self) -> dict:
        """Convert to dictionary for database insertion."""
        return self.model_dump(by_alias=True, mode='json')


def generate_record_id(marketplace: str, store_id: str, order_id: str) -> str:
    """Compound key shared by orders and their financial records."""
    if isinstance(marketplace, Marketplace):
        marketplace = marketplace.value
    return f"{marketplace}_{store_id}_{order_id}"


def create_order_record(
    marketplace: str,
    store_id: str,
    order_id: str,
    status: OrderStatus,
    platform_status: Optional[str] = None,
    created_at: Optional[datetime] = None,
    updated_at: Optional[datetime] = None,
    total_amount: Optional[float] = None,
    currency: Optional[str] = None,
    buyer_ref: Optional[str] = None,
    raw: Optional[Dict[str, Any]] = None,
) -> OrderRecord:
    """Create an OrderRecord with its compound id."""
    store_id = str(store_id)
    order_id = str(order_id)
    return OrderRecord(
        id=generate_record_id(marketplace, store_id, order_id),
        order_id=order_id,
        store_id=store_id,
        marketplace=marketplace,
        status=status,
        platform_status=platform_status,
        created_at=created_at,
        updated_at=updated_at,
        total_amount=total_amount,
        currency=currency,
        buyer_ref=buyer_ref,
        raw=raw or {},
    )
