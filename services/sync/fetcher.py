"""
Batch detail fetcher.

Splits ids into chunks of at most ``batch_size`` and requests them chunk by
chunk with a pause in between. Two shapes are supported:

- ``fetch_details``: one call per id, fanned out inside each chunk on a
  bounded thread pool (order detail, Shopee escrow).
- ``fetch_in_chunks``: one call per chunk carrying every id in it
  (Mercado Livre billing).

Failures are isolated per id and returned next to the successes. Errors
outside the sync taxonomy (a malformed payload, a client bug) are wrapped as
UpstreamError and stay with their id. Timeouts are re-queued once; a chunk
rejected as too large is split in half and re-queued once. Cancellation is
checked between chunks, and ``on_batch`` runs after every chunk so results
are committed as they arrive.
"""
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from core.errors import BatchTooLarge, SyncCancelled, SyncError, SyncTimeout, UpstreamError
from core.logging import get_logger

logger = get_logger("batch-fetcher")

BatchCallback = Callable[[List[Tuple[str, Any]]], None]


@dataclass
class FetchOutcome:
    records: List[Tuple[str, Any]] = field(default_factory=list)
    failures: List[Tuple[str, SyncError]] = field(default_factory=list)
    dropped: int = 0
    requests: int = 0


def unexpected_failure(item: str, error: Exception) -> UpstreamError:
    """Wrap an error outside the sync taxonomy so it stays with its item."""
    logger.error(f"Unexpected {type(error).__name__} for {item}: {error}", exc_info=error)
    wrapped = UpstreamError(0, f"{type(error).__name__}: {error}", details={"item": item})
    wrapped.__cause__ = error
    return wrapped


def iter_batches(ids: Sequence[str], batch_size: int) -> Iterator[List[str]]:
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    for start in range(0, len(ids), batch_size):
        yield list(ids[start:start + batch_size])


class BatchDetailFetcher:
    def __init__(
        self,
        batch_pause: float = 2.0,
        max_workers: int = 20,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: Optional[threading.Event] = None,
        requeue_timeouts: bool = True,
    ):
        self.batch_pause = batch_pause
        self.max_workers = max(1, max_workers)
        self.sleep = sleep
        self.cancel_event = cancel_event
        self.requeue_timeouts = requeue_timeouts
        self._chunks_sent = 0

    def _between_chunks(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise SyncCancelled("Batch fetch cancelled")
        if self._chunks_sent:
            self.sleep(self.batch_pause)
        self._chunks_sent += 1

    # ------------------------------------------------------------------
    # One call per id
    # ------------------------------------------------------------------

    def fetch_details(
        self,
        ids: Sequence[str],
        batch_size: int,
        fetch_one: Callable[[str], Optional[Any]],
        drop: Optional[Callable[[Any], bool]] = None,
        on_batch: Optional[BatchCallback] = None,
    ) -> FetchOutcome:
        """
        Fetch ``ids`` one call each, ``batch_size`` at a time.

        ``fetch_one`` returns the detail payload or None when upstream has
        nothing for the id. Payloads for which ``drop`` returns True are
        discarded (cancelled orders).
        """
        outcome = FetchOutcome()
        timed_out = self._run_fan_out(ids, batch_size, fetch_one, drop, on_batch, outcome)

        if timed_out and self.requeue_timeouts:
            logger.info(f"Re-queueing {len(timed_out)} timed-out ids once")
            retry_outcome = FetchOutcome()
            still_timed_out = self._run_fan_out(
                [order_id for order_id, _ in timed_out], batch_size, fetch_one, drop, on_batch, retry_outcome
            )
            outcome.records.extend(retry_outcome.records)
            outcome.failures.extend(retry_outcome.failures)
            outcome.failures.extend(still_timed_out)
            outcome.dropped += retry_outcome.dropped
            outcome.requests += retry_outcome.requests
        else:
            outcome.failures.extend(timed_out)

        return outcome

    def _run_fan_out(self, ids, batch_size, fetch_one, drop, on_batch, outcome):
        timed_out: List[Tuple[str, SyncError]] = []
        for batch_number, chunk in enumerate(iter_batches(ids, batch_size), start=1):
            self._between_chunks()
            outcome.requests += 1

            batch_records = []
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(chunk))) as pool:
                futures = [pool.submit(fetch_one, item_id) for item_id in chunk]
                for item_id, future in zip(chunk, futures):
                    try:
                        payload = future.result()
                    except SyncTimeout as e:
                        timed_out.append((item_id, e))
                        continue
                    except SyncError as e:
                        outcome.failures.append((item_id, e))
                        continue
                    except Exception as e:
                        outcome.failures.append((item_id, unexpected_failure(item_id, e)))
                        continue
                    if payload is None:
                        continue
                    try:
                        dropped = drop is not None and drop(payload)
                    except Exception as e:
                        outcome.failures.append((item_id, unexpected_failure(item_id, e)))
                        continue
                    if dropped:
                        outcome.dropped += 1
                        continue
                    batch_records.append((item_id, payload))

            logger.debug(
                f"Batch {batch_number}: {len(batch_records)}/{len(chunk)} fetched",
                extra={"batch": batch_number, "batch_size": len(chunk)},
            )
            outcome.records.extend(batch_records)
            if on_batch is not None and batch_records:
                on_batch(batch_records)
        return timed_out

    # ------------------------------------------------------------------
    # One call per chunk
    # ------------------------------------------------------------------

    def fetch_in_chunks(
        self,
        ids: Sequence[str],
        batch_size: int,
        fetch_chunk: Callable[[List[str]], Dict[str, Any]],
        on_batch: Optional[BatchCallback] = None,
    ) -> FetchOutcome:
        """
        Fetch ``ids`` with one call per chunk.

        ``fetch_chunk`` returns a mapping of id -> payload for the ids it
        found; ids it does not return simply have no data yet.
        """
        outcome = FetchOutcome()
        # (chunk, already re-queued)
        queue = deque((chunk, False) for chunk in iter_batches(ids, batch_size))

        while queue:
            chunk, requeued = queue.popleft()
            self._between_chunks()
            outcome.requests += 1

            try:
                found = fetch_chunk(chunk)
            except BatchTooLarge as e:
                if not requeued and len(chunk) > 1:
                    half = (len(chunk) + 1) // 2
                    logger.warning(
                        f"Chunk of {len(chunk)} rejected as too large, retrying in halves of {half}",
                        extra={"batch_size": len(chunk)},
                    )
                    queue.appendleft((chunk[half:], True))
                    queue.appendleft((chunk[:half], True))
                    continue
                outcome.failures.extend((item_id, e) for item_id in chunk)
                continue
            except SyncTimeout as e:
                if self.requeue_timeouts and not requeued:
                    logger.warning("Chunk timed out, re-queueing once", extra={"batch_size": len(chunk)})
                    queue.append((chunk, True))
                    continue
                outcome.failures.extend((item_id, e) for item_id in chunk)
                continue
            except SyncError as e:
                outcome.failures.extend((item_id, e) for item_id in chunk)
                continue
            except Exception as e:
                error = unexpected_failure(f"chunk of {len(chunk)}", e)
                outcome.failures.extend((item_id, error) for item_id in chunk)
                continue

            batch_records = [(item_id, found[item_id]) for item_id in chunk if item_id in found]
            outcome.records.extend(batch_records)
            if on_batch is not None and batch_records:
                on_batch(batch_records)

        return outcome
