"""
Chunked, paginated fetching from Gripp list endpoints.

A requested date range is split into fixed-size windows (7 days by default).
Within each window pages of `page_size` rows are requested until the upstream
runs dry. Paging continues while a page is full AND either the
`more_items_in_collection` flag is set or fewer rows than the reported `count`
have been seen. The flag and the count have been observed to disagree, so
either one is enough evidence to ask for another page.

Failure handling:
  - each page goes through the shared RetryPolicy;
  - a page that still fails abandons the rest of its window only;
  - UpstreamAuthError propagates, since no later window can succeed either.

After all windows are fetched, records are deduplicated by their normalized
`id` (so 42 and "42" are the same record) keeping the first occurrence in
window order.
"""
import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from dashboard.gripp.client import GrippError, PageRequest, UpstreamAuthError, between
from dashboard.gripp.normalizer import RecordValidationError, record_id
from dashboard.gripp.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 250
DEFAULT_CHUNK_DAYS = 7


@dataclass(frozen=True)
class SyncWindow:
    """Inclusive day range. Both ends None means no date filter."""

    start: Optional[date] = None
    end: Optional[date] = None

    @classmethod
    def unbounded(cls) -> "SyncWindow":
        return cls()

    @property
    def is_bounded(self) -> bool:
        return self.start is not None and self.end is not None

    @property
    def end_exclusive(self) -> Optional[date]:
        return self.end + timedelta(days=1) if self.end is not None else None

    def __str__(self) -> str:
        if not self.is_bounded:
            return "[all]"
        return f"[{self.start.isoformat()}, {self.end.isoformat()}]"


def split_windows(start: date, end: date, chunk_days: int = DEFAULT_CHUNK_DAYS) -> List[SyncWindow]:
    """
    Split [start, end] into contiguous windows of `chunk_days` days.

    The last window may be shorter. Example: 2025-01-01..2025-01-20 with 7-day
    chunks gives [01-01, 01-07], [01-08, 01-14], [01-15, 01-20].
    """
    if chunk_days < 1:
        raise ValueError("chunk_days must be at least 1")
    if start > end:
        raise ValueError(f"start {start} is after end {end}")

    windows = []
    current = start
    step = timedelta(days=chunk_days)
    while current <= end:
        window_end = min(current + step - timedelta(days=1), end)
        windows.append(SyncWindow(current, window_end))
        current = window_end + timedelta(days=1)
    return windows


@dataclass(frozen=True)
class EntityFilter:
    """One logical query: an upstream method plus its static filters."""

    method: str
    filters: Tuple[Dict[str, Any], ...] = ()
    date_field: Optional[str] = None
    orderings: Tuple[Dict[str, str], ...] = ()

    def for_window(self, window: SyncWindow) -> List[Dict[str, Any]]:
        filters = list(self.filters)
        if window.is_bounded and self.date_field:
            filters.append(between(self.date_field, window.start.isoformat(), window.end.isoformat()))
        return filters


@dataclass
class FetchResult:
    records: List[Dict[str, Any]] = field(default_factory=list)
    fetched_count: int = 0  # before dedup
    windows: List[SyncWindow] = field(default_factory=list)
    failed_windows: List[SyncWindow] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def deduplicated_count(self) -> int:
        return len(self.records)

    @property
    def complete_windows(self) -> List[SyncWindow]:
        failed = set(self.failed_windows)
        return [w for w in self.windows if w not in failed]

    @property
    def complete(self) -> bool:
        return not self.failed_windows


def _dedup_key(record: Any) -> Optional[int]:
    try:
        return record_id(record)
    except RecordValidationError:
        return None


def deduplicate(records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Drop repeated ids, keeping the first occurrence. Rows without a usable id are kept."""
    seen = set()
    unique = []
    for record in records:
        key = _dedup_key(record)
        if key is not None:
            if key in seen:
                continue
            seen.add(key)
        unique.append(record)
    return unique


class ChunkedPaginator:
    """Drives windowed, paginated fetches through a RetryPolicy."""

    def __init__(
        self,
        client,
        retry_policy: Optional[RetryPolicy] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        chunk_days: int = DEFAULT_CHUNK_DAYS,
        page_delay: float = 0.5,
        window_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            client: GrippClient (or AsyncMock in tests) exposing `list()`.
            retry_policy: Shared backoff policy. Defaults to RetryPolicy().
            page_size: Rows per page, fixed for the lifetime of a fetch.
            chunk_days: Window length for date-ranged fetches.
            page_delay: Seconds between consecutive pages of one window.
            window_delay: Seconds between windows.
            sleep: Awaitable sleep, injectable for tests.
        """
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy(sleep=sleep)
        self.page_size = page_size
        self.chunk_days = chunk_days
        self.page_delay = page_delay
        self.window_delay = window_delay
        self._sleep = sleep

    def windows_for(self, date_range: Optional[Tuple[date, date]]) -> List[SyncWindow]:
        if date_range is None:
            return [SyncWindow.unbounded()]
        start, end = date_range
        return split_windows(start, end, self.chunk_days)

    async def fetch_all(
        self,
        entity_filter: EntityFilter,
        date_range: Optional[Tuple[date, date]] = None,
    ) -> FetchResult:
        """Fetch every row matching `entity_filter` over `date_range`, deduplicated."""
        result = await self._fetch_raw(entity_filter, self.windows_for(date_range))
        self._finish(result, entity_filter.method)
        return result

    async def fetch_fan_out(
        self,
        entity_filters: Sequence[EntityFilter],
        date_range: Optional[Tuple[date, date]] = None,
        fan_out: int = 5,
        group_delay: float = 0.5,
    ) -> FetchResult:
        """
        Run one fetch per filter (e.g. one per employee), `fan_out` at a time.

        Filters are processed in fixed-size groups with `group_delay` seconds
        between groups. Results are merged in input order, so dedup keeps the
        same copy no matter which request finished first.
        """
        windows = self.windows_for(date_range)
        merged = FetchResult(windows=list(windows))
        failed = set()
        fan_out = max(1, fan_out)

        for group_start in range(0, len(entity_filters), fan_out):
            if group_start > 0 and group_delay > 0:
                await self._sleep(group_delay)
            group = entity_filters[group_start:group_start + fan_out]
            results = await asyncio.gather(*(self._fetch_raw(f, windows) for f in group))
            for partial in results:
                merged.records.extend(partial.records)
                merged.fetched_count += partial.fetched_count
                merged.errors.extend(partial.errors)
                failed.update(partial.failed_windows)

        merged.failed_windows = [w for w in windows if w in failed]
        method = entity_filters[0].method if entity_filters else "fan-out"
        self._finish(merged, method)
        return merged

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _fetch_raw(self, entity_filter: EntityFilter, windows: List[SyncWindow]) -> FetchResult:
        result = FetchResult(windows=list(windows))
        for index, window in enumerate(windows):
            if index > 0 and self.window_delay > 0:
                await self._sleep(self.window_delay)
            rows, error = await self._fetch_window(entity_filter, window)
            if error is not None:
                logger.warning(
                    "Abandoning window %s for %s after %d rows: %s",
                    window, entity_filter.method, len(rows), error,
                )
                result.failed_windows.append(window)
                result.errors.append(f"{window}: {error}")
            # Rows from pages fetched before a failure are kept.
            result.records.extend(rows)
            result.fetched_count += len(rows)
        return result

    async def _fetch_window(
        self, entity_filter: EntityFilter, window: SyncWindow
    ) -> Tuple[List[Dict[str, Any]], Optional[GrippError]]:
        """Page through one window. Returns the rows seen and the error that stopped it, if any."""
        request = PageRequest(filters=entity_filter.for_window(window), offset=0, page_size=self.page_size)
        rows: List[Dict[str, Any]] = []

        while True:
            if request.offset > 0 and self.page_delay > 0:
                await self._sleep(self.page_delay)
            try:
                page = await self.retry_policy.call(
                    self.client.list,
                    entity_filter.method,
                    request.filters,
                    offset=request.offset,
                    page_size=request.page_size,
                    orderings=list(entity_filter.orderings) or None,
                    description=f"{entity_filter.method} {window} offset={request.offset}",
                )
            except UpstreamAuthError:
                raise
            except GrippError as exc:
                return rows, exc

            rows.extend(page.rows)
            if not self._has_more(page, len(rows)):
                return rows, None
            request = replace(request, offset=request.offset + request.page_size)

    def _has_more(self, page, fetched_so_far: int) -> bool:
        if len(page.rows) != self.page_size:
            return False
        if page.more_items:
            return True
        return page.count is not None and fetched_so_far < page.count

    def _finish(self, result: FetchResult, method: str) -> None:
        result.records = deduplicate(result.records)
        logger.info(
            "%s: fetched %d rows, %d after dedup, %d/%d windows failed",
            method,
            result.fetched_count,
            result.deduplicated_count,
            len(result.failed_windows),
            len(result.windows),
        )
