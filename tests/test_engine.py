#!/usr/bin/env python3
"""
End-to-end tests for the sync engine against in-memory storage and a fake
Mercado Livre API.
Idempotent re-runs, token renewal on 401, per-store failure isolation,
total failure and cancellation.
"""
import sys
from pathlib import Path

import pytest
import requests

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from core.database import FINANCIAL_RECORDS, ORDERS, MemoryRecordStore
from core.errors import CredentialNotFound, SyncAborted
from core.models import SyncRequest, SyncWindow
from services.sync.credentials import CredentialStore
from services.sync.engine import SyncEngine, SyncSettings
from services.sync.marketplaces import MercadoLivreClient
from services.sync.retry import RetryPolicy
from fakes import (
    NOW,
    FakeResponse,
    FakeSession,
    FixedClock,
    RecordingSleep,
    make_credential,
    ml_billing,
    ml_order,
)

WINDOW = SyncWindow.last_hours(24, NOW)
BILLING_PATH = "/billing/integration/group/ML/order/details"
SETTINGS = SyncSettings(page_pause=0.0, batch_pause=0.0, max_concurrent_stores=2)


def search_results(call):
    return FakeResponse(200, {
        "results": [{"id": 1001}, {"id": 1002}, {"id": 1003}],
        "paging": {"total": 3},
    })


def billing_for(call):
    return FakeResponse(200, [ml_billing(order_id) for order_id in call.params["order_ids"].split(",")])


def ml_session():
    return FakeSession({
        ("GET", "/orders/search"): search_results,
        ("GET", "/orders/1001"): FakeResponse(200, ml_order("1001")),
        ("GET", "/orders/1002"): FakeResponse(200, ml_order("1002", status="cancelled")),
        ("GET", "/orders/1003"): FakeResponse(200, ml_order("1003", status="payment_required")),
        ("GET", BILLING_PATH): billing_for,
        ("POST", "/oauth/token"): FakeResponse(200, {
            "access_token": "access-2",
            "refresh_token": "refresh-2",
            "expires_in": 21600,
        }),
    })


def make_engine(session, *credentials):
    store = MemoryRecordStore()
    credential_store = CredentialStore(store)
    for credential in credentials or (make_credential(),):
        credential_store.add(credential)
    client = MercadoLivreClient(
        base_url="https://ml.test",
        session=session,
        retry=RetryPolicy(sleep=RecordingSleep()),
    )
    engine = SyncEngine(
        store,
        {"mercado_livre": client},
        settings=SETTINGS,
        sleep=RecordingSleep(),
        clock=FixedClock(),
    )
    return engine, store


def test_full_sync_then_idempotent_rerun():
    print("\n=== Test 1: End-to-end Sync ===")
    session = ml_session()
    engine, store = make_engine(session)

    summary = engine.run(SyncRequest(store_id="99887766", window=WINDOW))
    result = summary.per_store[0]

    assert result.success is True
    assert result.discovered == 3
    assert (result.inserted, result.updated, result.unchanged, result.failed) == (2, 0, 0, 0)
    assert result.financials.inserted == 1
    assert store.count(ORDERS) == 2
    assert store.find_one(FINANCIAL_RECORDS, {"order_id": "1001"})["total_fees"] == 15.0
    # Only the paid order is billed
    assert session.calls_to(BILLING_PATH)[0].params["order_ids"] == "1001"
    print(f"✓ First run: {summary.inserted} inserted")

    writes = store.writes
    rerun = engine.run(SyncRequest(store_id="99887766", window=WINDOW))

    assert rerun.per_store[0].unchanged == 2
    assert rerun.per_store[0].financials.unchanged == 1
    assert rerun.inserted == rerun.updated == 0
    assert store.writes == writes
    print("✓ Re-run performed zero writes")


def test_status_change_is_updated():
    session = ml_session()
    engine, store = make_engine(session)
    engine.run(SyncRequest(store_id="99887766", window=WINDOW))

    session.route("GET", "/orders/1003", FakeResponse(200, ml_order(
        "1003", status="paid", last_updated="2024-01-15T11:00:00.000-03:00"
    )))
    summary = engine.run(SyncRequest(store_id="99887766", window=WINDOW))

    assert summary.per_store[0].updated == 1
    assert summary.per_store[0].financials.inserted == 1
    assert store.find_one(ORDERS, {"order_id": "1003"})["status"] == "to_ship"


def test_skip_financial():
    session = ml_session()
    engine, store = make_engine(session)

    engine.run(SyncRequest(store_id="all", window=WINDOW, skip_financial=True))

    assert session.calls_to(BILLING_PATH) == []
    assert store.count(FINANCIAL_RECORDS) == 0


def test_batch_size_override():
    session = ml_session()
    session.route("GET", "/orders/1003", FakeResponse(200, ml_order("1003")))
    engine, _ = make_engine(session)

    engine.run(SyncRequest(window=WINDOW, batch_size=1))

    assert [call.params["order_ids"] for call in session.calls_to(BILLING_PATH)] == ["1001", "1003"]


def test_rejected_token_is_renewed_once():
    session = ml_session()
    session.route("GET", "/orders/search", [FakeResponse(401, {"message": "expired"}), search_results])
    engine, store = make_engine(session)

    summary = engine.run(SyncRequest(store_id="99887766", window=WINDOW))

    assert summary.per_store[0].success is True
    assert len(session.calls_to("/oauth/token")) == 1
    assert session.calls_to("/orders/search")[-1].headers["Authorization"] == "Bearer access-2"
    assert engine.credentials.get_active("mercado_livre", "99887766").access_token == "access-2"


def test_every_store_failing_aborts():
    session = ml_session()
    session.route("GET", "/orders/search", FakeResponse(401, {"message": "revoked"}))
    session.route("POST", "/oauth/token", FakeResponse(400, {"error": "invalid_grant"}))
    engine, _ = make_engine(session)

    with pytest.raises(SyncAborted) as excinfo:
        engine.run(SyncRequest(window=WINDOW))

    aborted = excinfo.value.summary
    assert aborted.per_store[0].failure_kind == "auth"
    assert aborted.per_store[0].success is False


def test_one_store_failing_does_not_stop_others():
    session = ml_session()

    def search(call):
        if call.params["seller"] == "55555":
            raise requests.ConnectionError("connection refused")
        return search_results(call)

    session.route("GET", "/orders/search", search)
    engine, store = make_engine(session, make_credential(), make_credential(store_id="55555"))

    summary = engine.run(SyncRequest(window=WINDOW))
    by_store = {result.store_id: result for result in summary.per_store}

    assert by_store["99887766"].success is True
    assert by_store["99887766"].inserted == 2
    assert by_store["55555"].success is False
    assert by_store["55555"].failure_kind == "connectivity"
    assert summary.succeeded_stores == 1


def test_cancel_keeps_committed_batches():
    session = ml_session()
    engine, store = make_engine(session)

    def first_detail(call):
        engine.cancel()
        return FakeResponse(200, ml_order("1001"))

    session.route("GET", "/orders/1001", first_detail)

    summary = engine.run(SyncRequest(store_id="99887766", window=WINDOW, batch_size=1))

    assert summary.cancelled is True
    assert summary.per_store[0].cancelled is True
    assert summary.per_store[0].inserted == 1
    assert store.count(ORDERS) == 1
    assert session.calls_to("/orders/1003") == []


def test_unknown_store_raises():
    engine, _ = make_engine(ml_session())
    with pytest.raises(CredentialNotFound):
        engine.run(SyncRequest(store_id="nope", window=WINDOW))


def test_no_credentials_is_an_empty_summary():
    engine, _ = make_engine(ml_session())
    summary = engine.run(SyncRequest(marketplace="shopee", window=WINDOW))
    assert summary.per_store == []


@pytest.mark.parametrize("broken_detail", [
    requests.exceptions.ChunkedEncodingError("connection broken mid-body"),
    FakeResponse(200, ["not", "an", "order"]),
])
def test_broken_order_detail_fails_only_that_order(broken_detail):
    session = ml_session()
    session.route("GET", "/orders/1001", [broken_detail])
    engine, store = make_engine(session, make_credential(), make_credential(store_id="55555"))

    summary = engine.run(SyncRequest(window=WINDOW))

    assert len(summary.per_store) == 2
    for result in summary.per_store:
        assert result.success is True
        assert (result.inserted, result.failed) == (1, 1)
        assert any(error.startswith("1001:") for error in result.errors)
    assert store.count(ORDERS) == 2


def test_unexpected_store_error_is_recorded_on_that_store():
    session = ml_session()

    def search(call):
        if call.params["seller"] == "55555":
            raise RuntimeError("client bug")
        return search_results(call)

    session.route("GET", "/orders/search", search)
    engine, _ = make_engine(session, make_credential(), make_credential(store_id="55555"))

    summary = engine.run(SyncRequest(window=WINDOW))
    by_store = {result.store_id: result for result in summary.per_store}

    assert by_store["99887766"].success is True
    assert by_store["99887766"].inserted == 2
    assert by_store["55555"].success is False
    assert by_store["55555"].failure_kind is None
    assert "RuntimeError: client bug" in by_store["55555"].errors[0]


def test_missing_financials_are_backfilled_from_stored_orders():
    print("\n=== Test: Financial Backfill ===")
    session = ml_session()
    session.route("GET", BILLING_PATH, FakeResponse(500, {"message": "billing unavailable"}))
    engine, store = make_engine(session)

    first = engine.run(SyncRequest(store_id="99887766", window=WINDOW))
    assert first.per_store[0].financials.failed == 1
    assert store.count(FINANCIAL_RECORDS) == 0

    # The order has left the window; only the stored order can bring it back
    session.route("GET", "/orders/search", FakeResponse(200, {"results": [], "paging": {"total": 0}}))
    session.route("GET", BILLING_PATH, billing_for)
    second = engine.run(SyncRequest(store_id="99887766", window=WINDOW))

    assert second.per_store[0].discovered == 0
    assert second.per_store[0].financials.inserted == 1
    assert session.calls_to(BILLING_PATH)[-1].params["order_ids"] == "1001"
    assert store.find_one(FINANCIAL_RECORDS, {"order_id": "1001"})["has_financial_data"] is True
    print("✓ Stored order picked up by a later run")

    billing_calls = len(session.calls_to(BILLING_PATH))
    third = engine.run(SyncRequest(store_id="99887766", window=WINDOW))

    assert third.per_store[0].financials.total == 0
    assert len(session.calls_to(BILLING_PATH)) == billing_calls


def test_backfill_can_be_disabled():
    session = ml_session()
    session.route("GET", BILLING_PATH, FakeResponse(500, {"message": "billing unavailable"}))
    engine, store = make_engine(session)
    engine.run(SyncRequest(store_id="99887766", window=WINDOW))

    engine.settings = SyncSettings(page_pause=0.0, batch_pause=0.0, financial_backfill_limit=0)
    session.route("GET", "/orders/search", FakeResponse(200, {"results": [], "paging": {"total": 0}}))
    session.route("GET", BILLING_PATH, billing_for)
    engine.run(SyncRequest(store_id="99887766", window=WINDOW))

    assert store.count(FINANCIAL_RECORDS) == 0
