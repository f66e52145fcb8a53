"""
Paginated order discovery.

Walks a marketplace listing endpoint once per time field (creation time,
last-update time), following the cursor until the endpoint reports no more
pages or the page ceiling is hit. Identifiers from every field are merged
in first-seen order without duplicates, so an order updated inside the
window but created before it is still found through the update-time query.

Pages are fetched sequentially with a pause between requests, and the
cancel event is checked before each page.
"""
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional

from core.errors import SyncCancelled
from core.logging import bind_context, get_logger
from core.models import StoreCredential, SyncWindow

logger = get_logger("order-discovery")


@dataclass
class ListingPage:
    """One page from a listing endpoint: ids plus the continuation cursor."""
    ids: List[str] = field(default_factory=list)
    next_cursor: Optional[str] = None
    more: bool = False


# (credential, window, time_field, cursor, page_size) -> ListingPage
ListPageFn = Callable[[StoreCredential, SyncWindow, str, Optional[str], int], ListingPage]


class OrderDiscovery:
    def __init__(
        self,
        page_size: int,
        max_pages: int = 100,
        page_pause: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: Optional[threading.Event] = None,
    ):
        if page_size < 1 or max_pages < 1:
            raise ValueError("page_size and max_pages must be positive")
        self.page_size = page_size
        self.max_pages = max_pages
        self.page_pause = page_pause
        self.sleep = sleep
        self.cancel_event = cancel_event
        self.pages_fetched = 0

    def _check_cancelled(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise SyncCancelled("Discovery cancelled")

    def discover(
        self,
        credential: StoreCredential,
        window: SyncWindow,
        fields: Iterable[str],
        list_page: ListPageFn,
        max_span: Optional[timedelta] = None,
    ) -> List[str]:
        """Return every order id in ``window`` across ``fields``, deduplicated."""
        seen: Dict[str, None] = {}
        log = bind_context(logger, marketplace=credential.marketplace, store_id=credential.store_id)

        for time_field in fields:
            before = len(seen)
            for window_slice in window.split(max_span):
                self._walk(credential, window_slice, time_field, list_page, seen, log)
            log.info(
                f"Discovered {len(seen) - before} new ids via {time_field}",
                extra={"time_field": time_field, "total_ids": len(seen)},
            )

        return list(seen)

    def _walk(self, credential, window, time_field, list_page, seen, log):
        cursor: Optional[str] = None
        for page_number in range(1, self.max_pages + 1):
            self._check_cancelled()
            if self.pages_fetched:
                self.sleep(self.page_pause)

            page = list_page(credential, window, time_field, cursor, self.page_size)
            self.pages_fetched += 1
            for order_id in page.ids:
                seen.setdefault(str(order_id), None)

            log.debug(
                f"Page {page_number}: {len(page.ids)} ids",
                extra={"time_field": time_field, "page": page_number, "more": page.more},
            )

            if not page.more:
                return
            if page.next_cursor is None or page.next_cursor == cursor:
                log.warning(
                    "Listing reported more pages without advancing the cursor, stopping",
                    extra={"time_field": time_field, "page": page_number},
                )
                return
            cursor = page.next_cursor

        log.warning(
            f"Page ceiling of {self.max_pages} reached, results may be incomplete",
            extra={"time_field": time_field},
        )
