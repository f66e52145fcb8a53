"""
Marketplace sync engine.

One invocation = one short-lived task:

    tokens -> discovery -> detail batches (reconciled per batch)
           -> financial batches (window orders plus stored orders still
              missing financial data; aggregated, reconciled per batch)
           -> summary

Stores run concurrently up to ``max_concurrent_stores``; each store's
pipeline is independent, so a store failure (including an unexpected
exception) is captured in its own result.
``run`` raises only when no store could authenticate or reach its upstream.
``cancel()`` stops work between pages and batches; everything already
upserted stays committed.

Usage:
    engine = SyncEngine(MongoRecordStore(), build_clients())
    summary = engine.run(SyncRequest(window=SyncWindow.last_hours(24)))
"""
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from core.config import config
from core.errors import (
    CredentialNotFound,
    SyncAborted,
    SyncCancelled,
    SyncError,
    Unauthenticated,
)
from core.database import FINANCIAL_RECORDS, ORDERS, Page, RecordStore
from core.logging import bind_context, get_logger, log_execution_time
from core.models import (
    OrderRecord,
    StoreCredential,
    StoreSyncResult,
    SyncRequest,
    SyncSummary,
    SyncWindow,
    utcnow,
)
from services.sync.credentials import CredentialStore
from services.sync.discovery import OrderDiscovery
from services.sync.fetcher import BatchDetailFetcher, FetchOutcome
from services.sync.marketplaces import MarketplaceClient
from services.sync.reconciler import ReconcilingUpserter
from services.sync.retry import RetryPolicy
from services.sync.tokens import TokenManager, is_connectivity_error

logger = get_logger("sync-engine")


@dataclass
class SyncSettings:
    """Tunables for one engine. ``from_config`` reads the environment defaults."""
    window_hours: int = 24
    max_pages: int = 100
    page_pause: float = 1.0
    batch_pause: float = 2.0
    max_fan_out: int = 20
    max_concurrent_stores: int = 3
    financial_backfill_limit: int = 500
    retry_max_attempts: int = 3
    retry_base_delay: float = 30.0
    rate_limit_cooldown: float = 60.0
    token_margin_minutes: int = 5

    @classmethod
    def from_config(cls, cfg=config) -> "SyncSettings":
        return cls(
            window_hours=cfg.SYNC_WINDOW_HOURS,
            max_pages=cfg.SYNC_MAX_PAGES,
            page_pause=cfg.SYNC_PAGE_PAUSE_SECONDS,
            batch_pause=cfg.SYNC_BATCH_PAUSE_SECONDS,
            max_fan_out=cfg.SYNC_MAX_FAN_OUT,
            max_concurrent_stores=cfg.SYNC_MAX_CONCURRENT_STORES,
            financial_backfill_limit=cfg.SYNC_FINANCIAL_BACKFILL_LIMIT,
            retry_max_attempts=cfg.RETRY_MAX_ATTEMPTS,
            retry_base_delay=cfg.RETRY_BASE_DELAY_SECONDS,
            rate_limit_cooldown=cfg.RATE_LIMIT_COOLDOWN_SECONDS,
            token_margin_minutes=cfg.TOKEN_REFRESH_MARGIN_MINUTES,
        )

    def retry_policy(self, sleep: Callable[[float], None] = time.sleep) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            rate_limit_cooldown=self.rate_limit_cooldown,
            sleep=sleep,
        )

    def default_window(self, now: Optional[datetime] = None) -> SyncWindow:
        return SyncWindow.last_hours(self.window_hours, now)


class SyncEngine:
    def __init__(
        self,
        store: RecordStore,
        clients: Dict[str, MarketplaceClient],
        settings: Optional[SyncSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.clients = clients
        self.settings = settings or SyncSettings.from_config()
        self.sleep = sleep
        self.clock = clock

        self.credentials = CredentialStore(store)
        self.tokens = TokenManager(
            self.credentials,
            clients,
            margin=timedelta(minutes=self.settings.token_margin_minutes),
            clock=clock,
        )
        self.upserter = ReconcilingUpserter(store)
        self._cancel_event = threading.Event()

    def cancel(self):
        """Stop the running sync at the next page/batch boundary."""
        logger.warning("Cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    def _select_credentials(self, request: SyncRequest) -> List[StoreCredential]:
        if request.store_id is None:
            return self.credentials.list_active(request.marketplace)

        if request.marketplace:
            return [self.credentials.get_active(request.marketplace, request.store_id)]

        matches = [
            credential
            for credential in self.credentials.list_active()
            if credential.store_id == request.store_id
        ]
        if not matches:
            raise CredentialNotFound(request.store_id)
        return matches

    @log_execution_time(logger)
    def run(self, request: SyncRequest) -> SyncSummary:
        """Sync every selected store and return per-store counts."""
        self._cancel_event.clear()
        correlation_id = str(uuid.uuid4())[:8]
        summary = SyncSummary(correlation_id=correlation_id, started_at=self.clock())
        log = bind_context(logger, correlation_id=correlation_id)

        log.info("=" * 60)
        log.info(
            f"Sync started for {request.store_id or 'all stores'} "
            f"({request.window.start.isoformat()} -> {request.window.end.isoformat()})",
            extra={"requested_store": request.store_id},
        )
        log.info("=" * 60)

        credentials = self._select_credentials(request)
        if not credentials:
            log.warning("No active credentials to sync")
            summary.finished_at = self.clock()
            return summary

        workers = request.max_concurrent_stores or self.settings.max_concurrent_stores
        with ThreadPoolExecutor(max_workers=max(1, min(workers, len(credentials)))) as pool:
            futures = [
                pool.submit(self._sync_store, credential, request, correlation_id)
                for credential in credentials
            ]
            summary.per_store = [future.result() for future in futures]

        summary.finished_at = self.clock()
        summary.cancelled = self.cancelled

        log.info("=" * 60)
        log.info(
            f"Sync finished: {summary.succeeded_stores}/{len(summary.per_store)} stores ok, "
            f"{summary.inserted} inserted, {summary.updated} updated, "
            f"{summary.unchanged} unchanged, {summary.failed} failed",
            extra={
                "stores": len(summary.per_store),
                "inserted": summary.inserted,
                "updated": summary.updated,
                "unchanged": summary.unchanged,
                "failed": summary.failed,
            },
        )
        log.info("=" * 60)

        if all(result.failure_kind for result in summary.per_store):
            raise SyncAborted(
                f"No store could be synced ({len(summary.per_store)} failed to authenticate or connect)",
                summary=summary,
            )
        return summary

    # ------------------------------------------------------------------
    # Per-store pipeline
    # ------------------------------------------------------------------

    def _sync_store(self, credential: StoreCredential, request: SyncRequest, correlation_id: str) -> StoreSyncResult:
        result = StoreSyncResult(
            store_id=credential.store_id,
            marketplace=credential.marketplace,
            store_name=credential.store_name,
        )
        log = bind_context(
            logger,
            correlation_id=correlation_id,
            marketplace=credential.marketplace,
            store_id=credential.store_id,
        )

        client = self.clients.get(credential.marketplace)
        if client is None:
            result.success = False
            result.add_error(f"No client configured for {credential.marketplace}")
            log.error("No client configured for marketplace")
            return result

        log.info(f"Syncing store {credential.store_name or credential.store_id}")
        try:
            credential = self.tokens.ensure_valid(credential)
            ids, credential = self._discover(client, credential, request.window, log)
            result.discovered = len(ids)

            orders = self._sync_orders(client, credential, ids, request, result, log)
            if not request.skip_financial:
                pending = self._orders_missing_financials(client, credential, log)
                self._sync_financials(client, credential, orders + pending, request, result, log)
        except SyncCancelled as e:
            result.cancelled = True
            result.add_error(e.message)
            log.warning("Store sync cancelled")
        except Unauthenticated as e:
            result.success = False
            result.failure_kind = "auth"
            result.add_error(e.message)
            log.error(f"Store is unsyncable: {e.message}")
        except SyncError as e:
            result.success = False
            if is_connectivity_error(e):
                result.failure_kind = "connectivity"
            result.add_error(e.message)
            log.error(f"Store sync failed: {e.message}")
        except Exception as e:
            result.success = False
            result.add_error(f"{type(e).__name__}: {e}")
            log.exception(f"Store sync failed unexpectedly: {e}")

        log.info(
            f"Store done: {result.discovered} discovered, {result.inserted} inserted, "
            f"{result.updated} updated, {result.unchanged} unchanged, {result.failed} failed",
            extra={"discovered": result.discovered, "failed": result.failed},
        )
        return result

    def _discover(
        self,
        client: MarketplaceClient,
        credential: StoreCredential,
        window: SyncWindow,
        log,
    ) -> Tuple[List[str], StoreCredential]:
        discovery = OrderDiscovery(
            page_size=client.page_size,
            max_pages=self.settings.max_pages,
            page_pause=self.settings.page_pause,
            sleep=self.sleep,
            cancel_event=self._cancel_event,
        )
        try:
            ids = discovery.discover(
                credential, window, client.time_fields, client.list_orders, client.max_window_span
            )
        except Unauthenticated:
            log.warning("Discovery rejected the token, forcing renewal once")
            credential = self.tokens.ensure_valid(credential, force=True)
            ids = discovery.discover(
                credential, window, client.time_fields, client.list_orders, client.max_window_span
            )
        return ids, credential

    def _fetcher(self) -> BatchDetailFetcher:
        return BatchDetailFetcher(
            batch_pause=self.settings.batch_pause,
            max_workers=self.settings.max_fan_out,
            sleep=self.sleep,
            cancel_event=self._cancel_event,
        )

    @staticmethod
    def _record_failures(outcome: FetchOutcome, result: StoreSyncResult):
        result.failed += len(outcome.failures)
        for item_id, error in outcome.failures:
            result.add_error(f"{item_id}: {error.message}")

    def _sync_orders(self, client, credential, ids, request, result, log) -> List[OrderRecord]:
        synced: List[OrderRecord] = []
        if not ids:
            return synced

        def on_batch(batch):
            orders = []
            for order_id, detail in batch:
                try:
                    orders.append(client.to_order_record(credential, detail))
                except SyncError as e:
                    log.warning(f"Skipping order {order_id}: {e.message}")
                    result.failed += 1
                    result.add_error(f"{order_id}: {e.message}")
                except Exception as e:
                    log.exception(f"Skipping order {order_id}: unexpected {type(e).__name__}")
                    result.failed += 1
                    result.add_error(f"{order_id}: {type(e).__name__}: {e}")
            result.record_orders(self.upserter.upsert_orders(orders))
            synced.extend(orders)

        outcome = self._fetcher().fetch_details(
            ids,
            request.batch_size or client.detail_batch_size,
            lambda order_id: client.get_order_detail(credential, order_id),
            drop=client.is_cancelled,
            on_batch=on_batch,
        )
        self._record_failures(outcome, result)
        log.info(
            f"Orders: {len(outcome.records)} fetched, {outcome.dropped} cancelled skipped, "
            f"{len(outcome.failures)} failed",
            extra={"fetched": len(outcome.records), "dropped": outcome.dropped},
        )
        return synced

    def _orders_missing_financials(self, client, credential, log) -> List[OrderRecord]:
        """Stored eligible orders of this store without settled financial data, newest first."""
        limit = self.settings.financial_backfill_limit
        if limit <= 0:
            return []

        scope = {"marketplace": credential.marketplace, "store_id": credential.store_id}
        settled = {
            row["order_id"]
            for row in self.store.select(FINANCIAL_RECORDS, {**scope, "has_financial_data": True})
        }

        pending: List[OrderRecord] = []
        for row in self.store.select(ORDERS, scope, Page(order_by="created_at", descending=True)):
            if row.get("order_id") in settled:
                continue
            try:
                order = OrderRecord.model_validate(row)
            except ValidationError as e:
                log.warning(f"Ignoring unreadable stored order {row.get('_id')}: {e.error_count()} errors")
                continue
            if client.is_financially_eligible(order):
                pending.append(order)
                if len(pending) >= limit:
                    break

        if pending:
            log.info(f"{len(pending)} stored orders still need financial data", extra={"backfill": len(pending)})
        return pending

    def _sync_financials(self, client, credential, orders, request, result, log):
        eligible = list(dict.fromkeys(
            order.order_id for order in orders if client.is_financially_eligible(order)
        ))
        if not eligible:
            log.info("No orders eligible for financial reconciliation")
            return

        def on_batch(batch):
            records = []
            for order_id, payload in batch:
                try:
                    records.append(client.aggregate_financial(credential, order_id, payload))
                except SyncError as e:
                    log.warning(f"Skipping financials for {order_id}: {e.message}")
                    result.financials.failed += 1
                    result.financials.errors.append({"id": order_id, "error": e.message})
                except Exception as e:
                    log.exception(f"Skipping financials for {order_id}: unexpected {type(e).__name__}")
                    result.financials.failed += 1
                    result.financials.errors.append({"id": order_id, "error": f"{type(e).__name__}: {e}"})
            result.financials.absorb(self.upserter.upsert_financials(records))

        fetcher = self._fetcher()
        batch_size = request.batch_size or client.financial_batch_size
        if client.financial_chunked:
            outcome = fetcher.fetch_in_chunks(
                eligible,
                batch_size,
                lambda chunk: client.get_financial_chunk(credential, chunk),
                on_batch=on_batch,
            )
        else:
            outcome = fetcher.fetch_details(
                eligible,
                batch_size,
                lambda order_id: client.get_financial_detail(credential, order_id),
                on_batch=on_batch,
            )

        result.financials.failed += len(outcome.failures)
        for item_id, error in outcome.failures:
            result.financials.errors.append({"id": item_id, "error": error.message})
        log.info(
            f"Financials: {len(outcome.records)}/{len(eligible)} fetched, "
            f"{result.financials.inserted} inserted, {result.financials.updated} updated",
            extra={"eligible": len(eligible), "fetched": len(outcome.records)},
        )
