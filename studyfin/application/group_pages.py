"""
Per-group "load more" paging for a balance-sheet report.

Each group moves idle -> loading -> idle. At most one request per group is
in flight; a second load_more for the same group while the first is pending
is ignored. Results are tagged with the tracker generation and a request
token, and are dropped if the tracker was reset (new period) or the
watchdog gave up on the request in the meantime.
"""
import itertools
import logging
import time
from dataclasses import replace
from threading import RLock
from typing import Callable, Dict, List, Optional

from studyfin.domain.finance import (
    Aggregate, FinancialRecord, GroupLoadFailed, GroupPageState, GroupRef, RecordPage,
    GROUP_STATUS_IDLE, GROUP_STATUS_LOADING,
)

logger = logging.getLogger(__name__)

# (ref, page, page_size) -> RecordPage
FetchPage = Callable[[GroupRef, int, int], RecordPage]

LOAD_FAILED_MESSAGE = "Failed to load more items"
LOAD_TIMED_OUT_MESSAGE = "Timed out loading more items"


class GroupPageTracker:
    """
    Owns GroupPageState for every group of one Aggregate.

    Loaded items are appended to the Aggregate's group item lists; the
    range-wide amount/item_count of a group are never touched.

    A page that comes back empty while the server total still exceeds what
    is loaded closes the group (total_count drops to loaded_count), so
    "load more" cannot spin on a stale total. A page holding only
    already-loaded items keeps the server total and advances the page.
    """

    def __init__(
        self,
        fetch_page: FetchPage,
        page_size: int = 10,
        watchdog_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch_page = fetch_page
        self.page_size = page_size
        self.watchdog_seconds = watchdog_seconds
        self._clock = clock
        self._lock = RLock()
        self._aggregate: Optional[Aggregate] = None
        self._states: Dict[GroupRef, GroupPageState] = {}
        self._generation = 0
        self._tokens = itertools.count(1)

    @property
    def generation(self) -> int:
        return self._generation

    def reset(self, aggregate: Optional[Aggregate]) -> None:
        """Start over for a new Aggregate (or none); in-flight results become stale."""
        states: Dict[GroupRef, GroupPageState] = {}
        if aggregate is not None:
            for ref, group in aggregate.iter_groups():
                loaded = len(group.items)
                states[ref] = GroupPageState(
                    group_key=group.key,
                    loaded_count=loaded,
                    total_count=max(group.item_count, loaded),
                )
        with self._lock:
            self._generation += 1
            self._aggregate = aggregate
            self._states = states

    # --- queries ---

    def state(self, ref: GroupRef) -> Optional[GroupPageState]:
        """Snapshot of a group's state (a copy; mutate only via load_more/reset)."""
        with self._lock:
            current = self._states.get(ref)
            if current is None:
                return None
            self._expire_if_stale(ref, current, self._clock())
            return replace(current)

    def is_exhausted(self, ref: GroupRef) -> bool:
        with self._lock:
            current = self._states.get(ref)
            return current is None or current.is_exhausted

    def is_loading(self, ref: GroupRef) -> bool:
        with self._lock:
            current = self._states.get(ref)
            if current is None:
                return False
            self._expire_if_stale(ref, current, self._clock())
            return current.is_loading

    def error(self, ref: GroupRef) -> Optional[str]:
        with self._lock:
            current = self._states.get(ref)
            return current.error if current else None

    def expire_stale(self) -> List[GroupRef]:
        """Force every group stuck in loading past the watchdog back to idle."""
        expired = []
        with self._lock:
            now = self._clock()
            for ref, current in self._states.items():
                if self._expire_if_stale(ref, current, now):
                    expired.append(ref)
        return expired

    # --- transitions ---

    def load_more(self, ref: GroupRef) -> List[FinancialRecord]:
        """
        Fetch the next page of one group.

        Returns:
            Items appended to the group (empty when the group is exhausted,
            already loading, or the result arrived for a superseded report)

        Raises:
            KeyError: unknown group
            GroupLoadFailed: the request failed; the group is idle again
        """
        with self._lock:
            current = self._states.get(ref)
            if current is None:
                raise KeyError(ref)
            self._expire_if_stale(ref, current, self._clock())
            if current.is_loading:
                logger.debug("load_more ignored for %s/%s: request already in flight", ref.section, ref.key)
                return []
            if current.is_exhausted:
                return []

            token = next(self._tokens)
            current.status = GROUP_STATUS_LOADING
            current.loading_since = self._clock()
            current.request_token = token
            current.error = None
            generation = self._generation
            next_page = current.page + 1

        try:
            page = self._fetch_page(ref, next_page, self.page_size)
        except Exception as e:
            with self._lock:
                pending = self._pending_state(ref, generation, token)
                if pending is not None:
                    self._set_idle(pending, LOAD_FAILED_MESSAGE)
            logger.warning("load_more failed for %s/%s page=%d: %s", ref.section, ref.key, next_page, e)
            raise GroupLoadFailed(ref, e) from e

        with self._lock:
            pending = self._pending_state(ref, generation, token)
            if pending is None:
                logger.info("Discarding stale page %d for %s/%s", next_page, ref.section, ref.key)
                return []
            return self._apply_page(ref, pending, next_page, page)

    # --- internals (call with the lock held) ---

    def _pending_state(self, ref: GroupRef, generation: int, token: int) -> Optional[GroupPageState]:
        if generation != self._generation:
            return None
        current = self._states.get(ref)
        if current is None or not current.is_loading or current.request_token != token:
            return None
        return current

    def _apply_page(self, ref: GroupRef, current: GroupPageState, page_no: int, page: RecordPage) -> List[FinancialRecord]:
        group = self._aggregate.find_group(ref) if self._aggregate else None
        seen = {item.id for item in group.items if item.id is not None} if group else set()
        new_items = []
        for item in page.items:
            if item.id is not None and item.id in seen:
                continue
            if item.id is not None:
                seen.add(item.id)
            new_items.append(item)
        if group is not None:
            group.items.extend(new_items)

        current.loaded_count += len(new_items)
        current.page = page_no
        # The server total is authoritative, even when it shrank
        current.total_count = page.total
        if not new_items and not current.is_exhausted:
            if page.items:
                # Rows shifted under the offset; the next page may still hold unseen rows
                logger.warning(
                    "Page %d for %s/%s repeated loaded items only (total=%d, loaded=%d)",
                    page_no, ref.section, ref.key, page.total, current.loaded_count,
                )
            else:
                logger.info(
                    "Page %d for %s/%s came back empty (total=%d, loaded=%d); closing group",
                    page_no, ref.section, ref.key, page.total, current.loaded_count,
                )
                current.total_count = current.loaded_count
        self._set_idle(current, None)
        return new_items

    def _expire_if_stale(self, ref: GroupRef, current: GroupPageState, now: float) -> bool:
        if not current.is_loading or current.loading_since is None:
            return False
        if now - current.loading_since < self.watchdog_seconds:
            return False
        logger.warning(
            "Watchdog cleared %s/%s after %.1fs in loading", ref.section, ref.key, now - current.loading_since
        )
        self._set_idle(current, LOAD_TIMED_OUT_MESSAGE)
        return True

    @staticmethod
    def _set_idle(current: GroupPageState, error: Optional[str]) -> None:
        current.status = GROUP_STATUS_IDLE
        current.loading_since = None
        current.request_token = 0
        current.error = error
