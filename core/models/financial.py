"""
Financial Record Schema - categorized fees per order.

Produced by the aggregator from Mercado Livre billing details or Shopee
escrow details. Every numeric field defaults to zero (never null) so
downstream sums are total-safe, and ``total_fees`` is always derived from
the buckets rather than copied from an upstream rollup.

Collection:
- financial_records
"""
import hashlib
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from core.models.credential import Marketplace, as_utc, utcnow


# Buckets that make up total_fees
FEE_BUCKETS = ("sale_fee", "shipping_fee", "management_fee", "other_fees", "commission", "tax")

# Fields compared when deciding whether a stored record needs rewriting
_FINGERPRINT_FIELDS = FEE_BUCKETS + (
    "discount",
    "gross_amount",
    "net_amount",
    "detail_amount",
    "discount_amount",
    "unmapped_amount",
    "unmapped_sub_types",
    "has_financial_data",
    "payment_status",
    "money_release_status",
    "money_release_date",
)


class FinancialRecord(BaseModel):
    """
    Canonical fee record, one per order.

    Example Document:
        {
            "_id": "mercado_livre_99887766_2000001234",
            "order_id": "2000001234",
            "store_id": "99887766",
            "marketplace": "mercado_livre",
            "sale_fee": 10.0,
            "shipping_fee": 5.0,
            "management_fee": 0.0,
            "total_fees": 15.0,
            "gross_amount": 100.0,
            "net_amount": 85.0,
            "has_financial_data": true,
            "fingerprint": "5d41402a..."
        }
    """
    model_config = ConfigDict(
        populate_by_name=True,
        use_enum_values=True,
    )

    id: str = Field(..., alias="_id", description="Same compound key as the order")
    order_id: str
    store_id: str
    marketplace: Marketplace

    # --- CATEGORIZED FEES ---
    sale_fee: float = 0.0
    shipping_fee: float = 0.0
    management_fee: float = 0.0
    other_fees: float = 0.0
    commission: float = 0.0
    tax: float = 0.0
    discount: float = 0.0

    # --- TRANSACTION AMOUNTS ---
    gross_amount: float = 0.0
    net_amount: float = 0.0

    # --- AUDIT TOTALS (independent of category) ---
    detail_amount: float = 0.0
    discount_amount: float = 0.0
    unmapped_amount: float = Field(0.0, description="Sum of line-items with unrecognized sub-type codes")
    unmapped_sub_types: List[str] = Field(default_factory=list)

    # --- SETTLEMENT ---
    payment_status: Optional[str] = None
    money_release_status: Optional[str] = None
    money_release_date: Optional[datetime] = None
    has_financial_data: bool = False

    # --- FIRST-SEEN METADATA ---
    sales_info: Dict[str, Any] = Field(default_factory=dict)
    item_info: Dict[str, Any] = Field(default_factory=dict)
    shipping_info: Dict[str, Any] = Field(default_factory=dict)
    currency_info: Dict[str, Any] = Field(default_factory=dict)
    document_info: Dict[str, Any] = Field(default_factory=dict)

    raw: Any = Field(None, description="Aggregation input retained for audit")
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator(
        "sale_fee", "shipping_fee", "management_fee", "other_fees", "commission", "tax",
        "discount", "gross_amount", "net_amount", "detail_amount", "discount_amount",
        "unmapped_amount",
        mode="before",
    )
    @classmethod
    def _zero_if_missing(cls, value):
        return 0.0 if value in (None, "") else value

    @field_validator("order_id", "store_id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return str(value) if isinstance(value, int) else value

    @field_validator("money_release_date", "updated_at")
    @classmethod
    def _utc(cls, value):
        return as_utc(value)

    @computed_field
    @property
    def total_fees(self) -> float:
        return sum(getattr(self, bucket) for bucket in FEE_BUCKETS)

    @computed_field
    @property
    def fingerprint(self) -> str:
        """Content hash over the comparable fields."""
        payload = {}
        for name in _FINGERPRINT_FIELDS:
            value = getattr(self, name)
            if isinstance(value, float):
                value = round(value, 6)
            elif isinstance(value, datetime):
                value = value.isoformat()
            payload[name] = value
        encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()

    def to_dict_for_db(self) -> dict:
        """Convert to dictionary for database insertion."""
        return self.model_dump(by_alias=True, mode='json')
