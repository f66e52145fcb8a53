#!/usr/bin/env python3
"""
Test suite for the financial aggregator.
Billing line-item bucketing, first-seen metadata fold, escrow mapping and
malformed input handling.
"""
import random
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from core.errors import AggregationError
from services.sync.aggregator import (
    aggregate_billing,
    aggregate_escrow,
    billing_order_id,
    fold_first_seen,
)
from fakes import ml_billing


def line(amount, code, **extra):
    item = {"charge_info": {"detail_amount": amount, "detail_sub_type": code}}
    item.update(extra)
    return item


def test_worked_example_sale_and_shipping():
    """CVML 10 + CDSB 5 on a 100 sale -> fees 15, net 85."""
    print("\n=== Test 1: Billing Aggregation ===")
    record = aggregate_billing(ml_billing("2000001234"), order_id="2000001234", store_id="99887766")

    assert record.id == "mercado_livre_99887766_2000001234"
    assert record.sale_fee == 10.0
    assert record.shipping_fee == 5.0
    assert record.management_fee == 0.0
    assert record.total_fees == 15.0
    assert record.gross_amount == 100.0
    assert record.net_amount == 85.0
    assert record.detail_amount == 15.0
    assert record.discount_amount == 1.5
    assert record.payment_status == "approved"
    assert record.money_release_date == datetime(2024, 2, 1, tzinfo=timezone.utc)
    assert record.has_financial_data is True
    print(f"✓ total_fees={record.total_fees} net={record.net_amount}")


def test_unknown_codes_are_tracked_but_not_fees():
    record = aggregate_billing(
        [line(10, "CVML"), line(3, "ZZZZ"), line(2, "ZZZZ"), line(1, "CVMP")],
        order_id="1",
        store_id="2",
    )

    assert record.total_fees == 11.0
    assert record.unmapped_amount == 5.0
    assert record.unmapped_sub_types == ["ZZZZ"]
    assert record.detail_amount == 16.0


def test_custom_bucket_map():
    record = aggregate_billing(
        [line(4, "ZZZZ"), line(6, "CVML")],
        order_id="1",
        store_id="2",
        bucket_map={"ZZZZ": "other_fees"},
    )

    assert record.other_fees == 4.0
    assert record.sale_fee == 0.0
    assert record.unmapped_sub_types == ["CVML"]


def test_bucket_map_to_unknown_bucket_is_rejected():
    with pytest.raises(ValueError):
        aggregate_billing([], order_id="1", store_id="2", bucket_map={"CVML": "made_up"})


def test_flat_charge_fields_are_accepted():
    record = aggregate_billing([{"amount": "7.5", "sub_type": "CVML"}], order_id="1", store_id="2")
    assert record.sale_fee == 7.5


def test_empty_billing_has_no_financial_data():
    record = aggregate_billing({"order_id": 1, "details": []}, order_id="1", store_id="2")

    assert record.has_financial_data is False
    assert record.total_fees == 0.0
    assert record.net_amount == 0.0


def test_first_seen_metadata_fold():
    details = [
        line(1, "CVML"),
        line(1, "CVML", sales_info=[{"transaction_amount": 50}], shipping_info={"mode": "me2"}),
        line(1, "CVML", sales_info=[{"transaction_amount": 999}], items_info=[{"item_id": "MLB1"}]),
    ]

    folded = fold_first_seen(details)

    assert folded["sales_info"] == {"transaction_amount": 50}
    assert folded["shipping_info"] == {"mode": "me2"}
    assert folded["item_info"] == {"item_id": "MLB1"}
    assert "document_info" not in folded


@pytest.mark.parametrize("payload", [
    42,
    {"details": "nope"},
    [line("abc", "CVML")],
    [line(True, "CVML")],
    ["not an object"],
    [{"charge_info": "not an object"}],
])
def test_malformed_billing_raises(payload):
    with pytest.raises(AggregationError):
        aggregate_billing(payload, order_id="1", store_id="2")


def test_fees_sum_matches_mapped_line_items():
    """total_fees equals the mapped amounts; mapped + unmapped equals the raw total."""
    rng = random.Random(20240115)
    codes = ["CVML", "CDSB", "CVMP", "ABCD", "WXYZ"]

    for _ in range(50):
        items = [line(round(rng.uniform(0, 200), 2), rng.choice(codes)) for _ in range(rng.randint(0, 12))]
        mapped = sum(i["charge_info"]["detail_amount"] for i in items
                     if i["charge_info"]["detail_sub_type"] in ("CVML", "CDSB", "CVMP"))

        record = aggregate_billing(items, order_id="1", store_id="2")

        assert record.total_fees == pytest.approx(mapped)
        assert record.total_fees + record.unmapped_amount == pytest.approx(record.detail_amount)


def test_billing_order_id_lookup():
    assert billing_order_id({"order_id": 5}) == "5"
    assert billing_order_id({"sales_info": [{"order_id": 7}]}) == "7"
    assert billing_order_id({"details": [{"charge_info": {}}, {"sales_info": [{"order_id": 8}]}]}) == "8"
    assert billing_order_id({}) is None


def test_escrow_mapping():
    print("\n=== Test 2: Escrow Aggregation ===")
    payload = {
        "order_sn": "240115ABCDEF",
        "order_income": {
            "buyer_total_amount": 100.0,
            "escrow_amount": 80.0,
            "seller_transaction_fee": 3.5,
            "final_shipping_fee": -5.0,
            "service_fee": 2.0,
            "commission_fee": 8.0,
            "seller_discount": -1.0,
        },
    }

    record = aggregate_escrow(payload, order_id="240115ABCDEF", store_id="123456")

    assert record.id == "shopee_123456_240115ABCDEF"
    assert record.shipping_fee == 5.0
    assert record.commission == 8.0
    assert record.total_fees == 18.5
    assert record.gross_amount == 100.0
    assert record.net_amount == 80.0
    assert record.discount == 1.0
    print(f"✓ total_fees={record.total_fees}")


def test_escrow_shipping_rebate_is_not_a_fee():
    """A positive final_shipping_fee is credited to the seller."""
    payload = {"order_income": {"commission_fee": 10, "final_shipping_fee": 5.0, "escrow_amount": 95}}

    record = aggregate_escrow(payload, order_id="R1", store_id="1")

    assert record.shipping_fee == 0.0
    assert record.commission == 10.0
    assert record.total_fees == 10.0
    assert record.net_amount == 95.0


def test_escrow_without_income_is_empty():
    record = aggregate_escrow({"order_sn": "X"}, order_id="X", store_id="1")
    assert record.has_financial_data is False
    assert record.total_fees == 0.0


def test_malformed_escrow_raises():
    with pytest.raises(AggregationError):
        aggregate_escrow([], order_id="X", store_id="1")
    with pytest.raises(AggregationError):
        aggregate_escrow({"order_income": {"escrow_amount": "n/a"}}, order_id="X", store_id="1")
