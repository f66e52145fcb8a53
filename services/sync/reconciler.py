"""
Reconciling upserter.

For every incoming record keyed by its compound id:
    - no stored row                       -> insert   (inserted)
    - status or last-update time differ   -> update   (updated)
    - otherwise                           -> no write (unchanged)

Change detection happens before any write, so re-running a sync with no
upstream changes performs zero writes. Financial records compare their
content fingerprint instead of status/update time. A persistence failure
only affects its own record.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

from core.database import FINANCIAL_RECORDS, ORDERS, RecordStore
from core.errors import PersistenceError
from core.logging import get_logger
from core.models import FinancialRecord, OrderRecord, ReconcileResult

logger = get_logger("reconciler")


class Decision(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    UNCHANGED = "unchanged"


def _epoch(value: Any) -> Optional[float]:
    """Normalize a timestamp (datetime, ISO string or epoch number) for comparison."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return None
    return None


def _same_time(left: Any, right: Any) -> bool:
    left_epoch, right_epoch = _epoch(left), _epoch(right)
    if left_epoch is None or right_epoch is None:
        return left == right
    return left_epoch == right_epoch


def reconcile(existing: Optional[Dict[str, Any]], incoming: Dict[str, Any]) -> Decision:
    """Decide what to do with one incoming order row."""
    if existing is None:
        return Decision.INSERT
    if existing.get("status") != incoming.get("status"):
        return Decision.UPDATE
    if not _same_time(existing.get("updated_at"), incoming.get("updated_at")):
        return Decision.UPDATE
    return Decision.UNCHANGED


def reconcile_financial(existing: Optional[Dict[str, Any]], incoming: Dict[str, Any]) -> Decision:
    if existing is None:
        return Decision.INSERT
    if existing.get("fingerprint") != incoming.get("fingerprint"):
        return Decision.UPDATE
    return Decision.UNCHANGED


class ReconcilingUpserter:
    def __init__(self, store: RecordStore):
        self.store = store

    def upsert_orders(self, orders: Iterable[OrderRecord]) -> ReconcileResult:
        return self._upsert(ORDERS, [order.to_dict_for_db() for order in orders], reconcile)

    def upsert_financials(self, records: Iterable[FinancialRecord]) -> ReconcileResult:
        return self._upsert(
            FINANCIAL_RECORDS,
            [record.to_dict_for_db() for record in records],
            reconcile_financial,
        )

    def _upsert(
        self,
        table: str,
        docs: list,
        decide: Callable[[Optional[Dict[str, Any]], Dict[str, Any]], Decision],
    ) -> ReconcileResult:
        result = ReconcileResult(total=len(docs))

        for doc in docs:
            record_id = doc["_id"]
            try:
                existing = self.store.find_one(table, {"_id": record_id})
                decision = decide(existing, doc)

                if decision is Decision.INSERT:
                    self.store.insert(table, doc)
                    result.inserted += 1
                elif decision is Decision.UPDATE:
                    fields = {key: value for key, value in doc.items() if key != "_id"}
                    if not self.store.update(table, record_id, fields):
                        raise PersistenceError(f"{record_id} disappeared before update")
                    result.updated += 1
                else:
                    result.unchanged += 1
            except PersistenceError as e:
                logger.error(
                    f"Failed to persist {record_id}: {e.message}",
                    extra={"table": table, "record_id": record_id},
                )
                result.failed += 1
                result.errors.append({"id": record_id, "error": e.message})

        logger.info(
            f"{table}: {result.inserted} inserted, {result.updated} updated, "
            f"{result.unchanged} unchanged, {result.failed} failed",
            extra={
                "table": table,
                "total": result.total,
                "inserted": result.inserted,
                "updated": result.updated,
                "unchanged": result.unchanged,
                "failed": result.failed,
            },
        )
        return result
