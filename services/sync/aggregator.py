"""
Financial aggregator.

Normalizes billing (Mercado Livre) and escrow (Shopee) payloads into a flat
FinancialRecord.

Billing payloads are a list of line-items ("details"), each tagged with a
sub-type code in ``charge_info.detail_sub_type``. Line-items are walked once:
    - ``detail_amount`` is summed into a bucket via the sub-type table
    - raw charge and discount amounts are summed regardless of category
    - unrecognized codes count towards ``unmapped_amount`` only
    - metadata blocks are folded first-seen: the first non-empty occurrence
      of each block wins and later occurrences are ignored

Usage:
    record = aggregate_billing(
        {"order_id": 2000001234, "details": [...], "payment_info": [...]},
        order_id="2000001234",
        store_id="99887766",
    )
    record.total_fees
"""
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from core.errors import AggregationError
from core.logging import get_logger
from core.models import FinancialRecord, Marketplace, generate_record_id

logger = get_logger("financial-aggregator")


# ============================================================================
# SUB-TYPE MAPPING
# ============================================================================

SALE_FEE = "sale_fee"
SHIPPING_FEE = "shipping_fee"
MANAGEMENT_FEE = "management_fee"
OTHER_FEES = "other_fees"

BILLING_BUCKETS = (SALE_FEE, SHIPPING_FEE, MANAGEMENT_FEE, OTHER_FEES)

DEFAULT_SUB_TYPE_BUCKETS: Dict[str, str] = {
    "CVML": SALE_FEE,        # marketplace sale fee
    "CDSB": SHIPPING_FEE,    # shipping fee
    "CVMP": MANAGEMENT_FEE,  # sale management cost
}

# (record field, line-item key, block is a list whose first element is used)
_METADATA_BLOCKS: Tuple[Tuple[str, str, bool], ...] = (
    ("sales_info", "sales_info", True),
    ("item_info", "items_info", True),
    ("shipping_info", "shipping_info", False),
    ("currency_info", "currency_info", False),
    ("document_info", "document_info", False),
)

# Shopee order_income field -> record field
ESCROW_FIELDS: Dict[str, str] = {
    "seller_transaction_fee": "sale_fee",
    "final_shipping_fee": "shipping_fee",
    "service_fee": "management_fee",
    "commission_fee": "commission",
    "withholding_tax": "tax",
    "seller_discount": "discount",
    "buyer_total_amount": "gross_amount",
    "escrow_amount": "net_amount",
}

# Negative means charged to the seller, positive is a credit (shipping rebate
# above the actual cost). Only the charged part counts as a fee.
SIGNED_ESCROW_FIELDS = frozenset({"final_shipping_fee"})

# Reported as they are, not as fees
_ESCROW_AMOUNTS = ("gross_amount", "net_amount")


def _amount(value: Any, where: str) -> float:
    if value in (None, ""):
        return 0.0
    if isinstance(value, bool):
        raise AggregationError(f"non-numeric amount in {where}: {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise AggregationError(f"non-numeric amount in {where}: {value!r}") from e


def _block(value: Any, listed: bool) -> Optional[Dict[str, Any]]:
    if listed:
        value = value[0] if isinstance(value, list) and value else None
    return value if isinstance(value, dict) and value else None


def fold_first_seen(details: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Ordered fold: each metadata block is taken from the first line-item that has it."""
    folded: Dict[str, Dict[str, Any]] = {}
    for detail in details:
        for field_name, key, listed in _METADATA_BLOCKS:
            if field_name in folded:
                continue
            block = _block(detail.get(key), listed)
            if block is not None:
                folded[field_name] = block
        if len(folded) == len(_METADATA_BLOCKS):
            break
    return folded


def _line_items(payload: Any) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    """Return (details, envelope) for a billing record or a bare list of line-items."""
    if isinstance(payload, list):
        details, envelope = payload, {}
    elif isinstance(payload, Mapping):
        details, envelope = payload.get("details") or [], payload
    else:
        raise AggregationError(f"billing payload must be an object or list, got {type(payload).__name__}")

    if not isinstance(details, list):
        raise AggregationError("billing 'details' must be a list")
    for index, detail in enumerate(details):
        if not isinstance(detail, Mapping):
            raise AggregationError(f"billing detail #{index} is not an object")
    return details, envelope


def billing_order_id(record: Mapping[str, Any]) -> Optional[str]:
    """Order id of a billing record: ``order_id``, else ``sales_info[0].order_id``."""
    order_id = record.get("order_id")
    if order_id in (None, ""):
        sales_info = record.get("sales_info")
        if not sales_info:
            for detail in record.get("details") or []:
                if isinstance(detail, Mapping) and detail.get("sales_info"):
                    sales_info = detail["sales_info"]
                    break
        first = _block(sales_info, True)
        order_id = first.get("order_id") if first else None
    return str(order_id) if order_id not in (None, "") else None


# ============================================================================
# BILLING (line-items)
# ============================================================================

def aggregate_billing(
    payload: Any,
    order_id: str,
    store_id: str,
    marketplace: str = Marketplace.MERCADO_LIVRE.value,
    bucket_map: Optional[Mapping[str, str]] = None,
) -> FinancialRecord:
    """Aggregate billing line-items into a FinancialRecord. Raises AggregationError on malformed input."""
    bucket_map = DEFAULT_SUB_TYPE_BUCKETS if bucket_map is None else bucket_map
    for code, bucket in bucket_map.items():
        if bucket not in BILLING_BUCKETS:
            raise ValueError(f"sub-type {code} maps to unknown bucket {bucket}")

    details, envelope = _line_items(payload)

    buckets = {bucket: 0.0 for bucket in BILLING_BUCKETS}
    detail_total = 0.0
    discount_total = 0.0
    unmapped_total = 0.0
    unmapped_codes: List[str] = []

    for index, detail in enumerate(details):
        where = f"detail #{index}"
        charge = detail.get("charge_info")
        if charge is None:
            charge = detail
        elif not isinstance(charge, Mapping):
            raise AggregationError(f"charge_info of {where} is not an object")
        discount = detail.get("discount_info") or {}
        if not isinstance(discount, Mapping):
            raise AggregationError(f"discount_info of {where} is not an object")

        amount = _amount(charge.get("detail_amount", charge.get("amount")), where)
        detail_total += amount
        discount_total += _amount(discount.get("discount_amount"), where)

        code = charge.get("detail_sub_type", charge.get("sub_type"))
        bucket = bucket_map.get(code)
        if bucket is None:
            unmapped_total += amount
            if code is not None and str(code) not in unmapped_codes:
                unmapped_codes.append(str(code))
            continue
        buckets[bucket] += amount

    if unmapped_codes:
        logger.debug(
            f"Unmapped billing sub-types: {', '.join(unmapped_codes)}",
            extra={"order_id": order_id, "unmapped_amount": unmapped_total},
        )

    metadata = fold_first_seen(details)
    payment = _block(envelope.get("payment_info"), True) or {}
    gross = _amount(metadata.get("sales_info", {}).get("transaction_amount"), "sales_info")
    total_fees = sum(buckets.values())

    try:
        return FinancialRecord(
            id=generate_record_id(marketplace, store_id, order_id),
            order_id=order_id,
            store_id=store_id,
            marketplace=marketplace,
            **buckets,
            gross_amount=gross,
            net_amount=gross - total_fees,
            detail_amount=detail_total,
            discount_amount=discount_total,
            unmapped_amount=unmapped_total,
            unmapped_sub_types=unmapped_codes,
            payment_status=payment.get("status"),
            money_release_status=payment.get("money_release_status"),
            money_release_date=payment.get("money_release_date") or None,
            has_financial_data=bool(details),
            sales_info=metadata.get("sales_info", {}),
            item_info=metadata.get("item_info", {}),
            shipping_info=metadata.get("shipping_info", {}),
            currency_info=metadata.get("currency_info", {}),
            document_info=metadata.get("document_info", {}),
            raw=payload,
        )
    except ValidationError as e:
        raise AggregationError(f"billing for order {order_id} is malformed", details=str(e)) from e


# ============================================================================
# ESCROW (flat income breakdown)
# ============================================================================

def _escrow_value(source: str, field_name: str, value: float) -> float:
    if field_name in _ESCROW_AMOUNTS:
        return value
    if source in SIGNED_ESCROW_FIELDS:
        return max(0.0, -value)
    return abs(value)


def aggregate_escrow(
    payload: Any,
    order_id: str,
    store_id: str,
    marketplace: str = Marketplace.SHOPEE.value,
) -> FinancialRecord:
    """Map an escrow detail response onto the canonical buckets."""
    if not isinstance(payload, Mapping):
        raise AggregationError(f"escrow payload must be an object, got {type(payload).__name__}")
    income = payload.get("order_income") or {}
    if not isinstance(income, Mapping):
        raise AggregationError("escrow 'order_income' must be an object")

    values = {
        field_name: _escrow_value(source, field_name, _amount(income.get(source), source))
        for source, field_name in ESCROW_FIELDS.items()
    }

    try:
        return FinancialRecord(
            id=generate_record_id(marketplace, store_id, order_id),
            order_id=order_id,
            store_id=store_id,
            marketplace=marketplace,
            **values,
            detail_amount=sum(values[name] for name in ("sale_fee", "shipping_fee", "management_fee",
                                                        "commission", "tax")),
            discount_amount=values["discount"],
            has_financial_data=bool(income),
            raw=payload,
        )
    except ValidationError as e:
        raise AggregationError(f"escrow for order {order_id} is malformed", details=str(e)) from e
