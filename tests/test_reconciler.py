#!/usr/bin/env python3
"""
Test suite for the reconciling upserter.
Insert / update / unchanged decisions, idempotent re-runs and isolated
persistence failures.
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from core.database import FINANCIAL_RECORDS, ORDERS, MemoryRecordStore
from core.errors import PersistenceError
from core.models import OrderStatus, create_order_record
from services.sync.aggregator import aggregate_billing
from services.sync.reconciler import Decision, ReconcilingUpserter, reconcile
from fakes import ml_billing

UPDATED = datetime(2024, 1, 15, 13, 0, tzinfo=timezone.utc)


def order(order_id="1001", status=OrderStatus.TO_SHIP, updated_at=UPDATED, total=50.0):
    return create_order_record(
        marketplace="mercado_livre",
        store_id="99887766",
        order_id=order_id,
        status=status,
        updated_at=updated_at,
        total_amount=total,
    )


class FlakyStore(MemoryRecordStore):
    """Rejects inserts for one id."""

    def __init__(self, bad_id):
        super().__init__()
        self.bad_id = bad_id

    def insert(self, table, row):
        if row.get("_id") == self.bad_id:
            raise PersistenceError("write rejected")
        return super().insert(table, row)


def test_decisions():
    print("\n=== Test 1: Reconcile Decisions ===")
    stored = order().to_dict_for_db()

    assert reconcile(None, stored) is Decision.INSERT
    assert reconcile(stored, order().to_dict_for_db()) is Decision.UNCHANGED
    assert reconcile(stored, order(status=OrderStatus.SHIPPED).to_dict_for_db()) is Decision.UPDATE
    later = order(updated_at=UPDATED + timedelta(minutes=1)).to_dict_for_db()
    assert reconcile(stored, later) is Decision.UPDATE
    print("✓ Decision test passed")


def test_amount_change_alone_is_unchanged():
    stored = order().to_dict_for_db()
    assert reconcile(stored, order(total=999.0).to_dict_for_db()) is Decision.UNCHANGED


def test_time_formats_compare_by_instant():
    stored = {"status": "to_ship", "updated_at": "2024-01-15T13:00:00Z"}

    assert reconcile(stored, {"status": "to_ship", "updated_at": "2024-01-15T10:00:00-03:00"}) is Decision.UNCHANGED
    assert reconcile(stored, {"status": "to_ship", "updated_at": UPDATED}) is Decision.UNCHANGED
    assert reconcile(stored, {"status": "to_ship", "updated_at": UPDATED.timestamp()}) is Decision.UNCHANGED
    assert reconcile(stored, {"status": "to_ship", "updated_at": None}) is Decision.UPDATE


def test_upsert_counts():
    store = MemoryRecordStore()
    upserter = ReconcilingUpserter(store)
    upserter.upsert_orders([order("1"), order("2")])

    result = upserter.upsert_orders([
        order("1"),
        order("2", status=OrderStatus.COMPLETED),
        order("3"),
    ])

    assert (result.total, result.inserted, result.updated, result.unchanged, result.failed) == (3, 1, 1, 1, 0)
    assert store.find_one(ORDERS, {"_id": "mercado_livre_99887766_2"})["status"] == "completed"


def test_rerun_performs_zero_writes():
    """Running the same batch twice writes nothing the second time."""
    store = MemoryRecordStore()
    upserter = ReconcilingUpserter(store)
    batch = [order(str(i)) for i in range(10)]

    upserter.upsert_orders(batch)
    writes = store.writes
    second = upserter.upsert_orders([order(str(i)) for i in range(10)])

    assert second.unchanged == 10
    assert store.writes == writes


def test_failure_is_isolated_per_record():
    store = FlakyStore(bad_id="mercado_livre_99887766_2")
    upserter = ReconcilingUpserter(store)

    result = upserter.upsert_orders([order("1"), order("2"), order("3")])

    assert result.inserted == 2
    assert result.failed == 1
    assert result.errors == [{"id": "mercado_livre_99887766_2", "error": "write rejected"}]
    assert store.count(ORDERS) == 2


def test_financial_fingerprint_drives_updates():
    store = MemoryRecordStore()
    upserter = ReconcilingUpserter(store)
    first = aggregate_billing(ml_billing("1001"), order_id="1001", store_id="99887766")

    assert upserter.upsert_financials([first]).inserted == 1
    same = aggregate_billing(ml_billing("1001"), order_id="1001", store_id="99887766")
    assert upserter.upsert_financials([same]).unchanged == 1

    changed = aggregate_billing(ml_billing("1001", shipping=7.0), order_id="1001", store_id="99887766")
    result = upserter.upsert_financials([changed])

    assert result.updated == 1
    stored = store.find_one(FINANCIAL_RECORDS, {"_id": first.id})
    assert stored["total_fees"] == 17.0
    assert stored["fingerprint"] == changed.fingerprint
