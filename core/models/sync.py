"""
Sync invocation models: the time window, the trigger request and the
per-store / per-run summaries returned to the caller.

Usage:
    window = SyncWindow.last_hours(24)
    request = SyncRequest(window=window, batch_size=20)
    summary = engine.run(request)
    for store in summary.per_store:
        print(store.store_id, store.inserted, store.updated, store.unchanged)
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from core.models.credential import Marketplace, as_utc, utcnow


# Window presets accepted by SyncWindow.preset()
WINDOW_PRESETS = {
    "24h": timedelta(hours=24),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}


# ============================================================================
# TIME WINDOW
# ============================================================================

class SyncWindow(BaseModel):
    """Half-open time range [start, end) used by discovery."""
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, value):
        return as_utc(value)

    @model_validator(mode="after")
    def _ordered(self):
        if self.end < self.start:
            raise ValueError("window end precedes start")
        return self

    @property
    def start_epoch(self) -> int:
        return int(self.start.timestamp())

    @property
    def end_epoch(self) -> int:
        return int(self.end.timestamp())

    @classmethod
    def last_hours(cls, hours: float, now: Optional[datetime] = None) -> "SyncWindow":
        end = as_utc(now) if now else utcnow()
        return cls(start=end - timedelta(hours=hours), end=end)

    @classmethod
    def preset(cls, name: str, now: Optional[datetime] = None) -> "SyncWindow":
        if name not in WINDOW_PRESETS:
            raise ValueError(f"Unknown window preset: {name} (expected one of {', '.join(WINDOW_PRESETS)})")
        end = as_utc(now) if now else utcnow()
        return cls(start=end - WINDOW_PRESETS[name], end=end)

    @classmethod
    def from_epochs(cls, start: int, end: int) -> "SyncWindow":
        return cls(
            start=datetime.fromtimestamp(start, tz=timezone.utc),
            end=datetime.fromtimestamp(end, tz=timezone.utc),
        )

    def split(self, max_span: Optional[timedelta]) -> List["SyncWindow"]:
        """Break the window into consecutive slices no longer than ``max_span``."""
        if max_span is None or self.end - self.start <= max_span:
            return [self]
        slices = []
        cursor = self.start
        while cursor < self.end:
            slice_end = min(cursor + max_span, self.end)
            slices.append(SyncWindow(start=cursor, end=slice_end))
            cursor = slice_end
        return slices


# ============================================================================
# REQUEST
# ============================================================================

class SyncRequest(BaseModel):
    """Trigger input: one store (or all), a window and batching overrides."""
    model_config = ConfigDict(use_enum_values=True)

    store_id: Optional[str] = Field(None, description="None means every active store")
    marketplace: Optional[Marketplace] = Field(None, description="Restrict to one marketplace")
    window: SyncWindow
    batch_size: Optional[int] = Field(None, ge=1, description="Overrides the per-endpoint default")
    max_concurrent_stores: Optional[int] = Field(None, ge=1)
    skip_financial: bool = False

    @field_validator("store_id", mode="before")
    @classmethod
    def _all_means_none(cls, value):
        if value == "all":
            return None
        return str(value) if isinstance(value, int) else value


# ============================================================================
# RESULTS
# ============================================================================

class ReconcileResult(BaseModel):
    """Counts from one reconcile pass. ``total`` is the input size."""
    total: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    def absorb(self, other: "ReconcileResult") -> None:
        self.total += other.total
        self.inserted += other.inserted
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.failed += other.failed
        self.errors.extend(other.errors)


class StoreSyncResult(BaseModel):
    """Outcome of one store's pipeline."""
    store_id: str
    marketplace: Optional[str] = None
    store_name: Optional[str] = None

    discovered: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)

    financials: ReconcileResult = Field(default_factory=ReconcileResult)

    success: bool = True
    cancelled: bool = False
    failure_kind: Optional[str] = Field(
        None,
        description="'auth' or 'connectivity' when the store could not be synced at all"
    )

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def record_orders(self, result: ReconcileResult) -> None:
        self.inserted += result.inserted
        self.updated += result.updated
        self.unchanged += result.unchanged
        self.failed += result.failed
        for error in result.errors:
            self.errors.append(f"{error.get('id')}: {error.get('error')}")


class SyncSummary(BaseModel):
    correlation_id: str
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    per_store: List[StoreSyncResult] = Field(default_factory=list)

    @property
    def inserted(self) -> int:
        return sum(s.inserted for s in self.per_store)

    @property
    def updated(self) -> int:
        return sum(s.updated for s in self.per_store)

    @property
    def unchanged(self) -> int:
        return sum(s.unchanged for s in self.per_store)

    @property
    def failed(self) -> int:
        return sum(s.failed for s in self.per_store)

    @property
    def succeeded_stores(self) -> int:
        return sum(1 for s in self.per_store if s.success)
