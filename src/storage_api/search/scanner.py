"""
Bounded scans over a remote object listing.

Prefix searches are a single listing call. Contains searches walk the
listing page by page and filter on the leaf name, so they are capped by
pages fetched, objects examined and wall-clock time; hitting any ceiling
ends the scan with partial results and a cursor instead of an error.
"""

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Awaitable, List, Optional, Tuple

from storage_api.errors import InvalidRequestError
from storage_api.s3.read_objects import ListPage, ObjectLister, leaf_name

logger = logging.getLogger(__name__)

# Sorts after every key below a common prefix, so resuming past "dir/"
# skips what the listing rolled up into it.
PREFIX_RESUME_SUFFIX = "\U0010ffff"


class SearchMode(str, Enum):
    PREFIX = "prefix"
    CONTAINS = "contains"


class StopReason(str, Enum):
    BUCKET_EXHAUSTED = "bucket_exhausted"
    MAX_RESULTS = "max_results"
    PAGE_LIMIT = "page_limit"
    OBJECT_LIMIT = "object_limit"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ScanLimits:
    max_pages: int = 5
    max_objects: int = 2500
    timeout_seconds: float = 10.0
    page_size: int = 1000


@dataclass(frozen=True)
class SearchMatch:
    key: str
    name: str
    is_prefix: bool = False
    size: int = 0
    last_modified: Optional[datetime] = None


@dataclass
class ListingPosition:
    """Where the next listing call starts: a continuation token or a key to start after."""

    token: Optional[str] = None
    start_after: Optional[str] = None


def encode_cursor(position: ListingPosition) -> str:
    # A scan stopped before its first page resumes from the start: {"a": ""}.
    payload = {"t": position.token} if position.token else {"a": position.start_after or ""}
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: Optional[str]) -> ListingPosition:
    """Parse a cursor produced by :func:`encode_cursor`.

    :raises InvalidRequestError: the cursor was not produced by this scanner.
    """
    if not cursor:
        return ListingPosition()
    try:
        payload = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError):
        raise InvalidRequestError("Invalid cursor")
    if not isinstance(payload, dict):
        raise InvalidRequestError("Invalid cursor")
    token, start_after = payload.get("t"), payload.get("a")
    if not isinstance(token, (str, type(None))) or not isinstance(start_after, (str, type(None))):
        raise InvalidRequestError("Invalid cursor")
    if token is None and start_after is None:
        raise InvalidRequestError("Invalid cursor")
    return ListingPosition(token=token, start_after=start_after)


@dataclass
class ScanState:
    query: str
    mode: SearchMode
    pages_scanned: int = 0
    objects_examined: int = 0
    matches: int = 0
    position: ListingPosition = field(default_factory=ListingPosition)
    stop_reason: Optional[StopReason] = None

    @property
    def next_cursor(self) -> Optional[str]:
        """Cursor to resume from, or None when the listing is exhausted."""
        if self.stop_reason == StopReason.BUCKET_EXHAUSTED:
            return None
        return encode_cursor(self.position)

    @property
    def truncated(self) -> bool:
        return self.next_cursor is not None


@dataclass
class ScanResult:
    entries: List[SearchMatch]
    state: ScanState

    @property
    def next_cursor(self) -> Optional[str]:
        return self.state.next_cursor

    @property
    def truncated(self) -> bool:
        return self.state.truncated


def _page_items(page: ListPage) -> List[SearchMatch]:
    """Objects and common prefixes of a page merged in key order."""
    items = [
        SearchMatch(key=entry.key, name=entry.name, size=entry.size, last_modified=entry.last_modified)
        for entry in page.entries
    ]
    items.extend(SearchMatch(key=prefix, name=leaf_name(prefix), is_prefix=True) for prefix in page.common_prefixes)
    items.sort(key=lambda item: item.key)
    return items


def _resume_key(item: SearchMatch) -> str:
    return item.key + PREFIX_RESUME_SUFFIX if item.is_prefix else item.key


class ObjectScan:
    """
    One scan, consumed as an async iterator of :class:`SearchMatch`.

    Pages are fetched lazily as the consumer iterates and never more than one
    is held at a time. ``state`` is final once iteration ends; a consumer that
    stops early gets a cursor that resumes after the last match it received.
    """

    def __init__(
        self,
        lister: ObjectLister,
        limits: ScanLimits,
        bucket: str,
        prefix: str,
        query: str,
        mode: SearchMode,
        max_results: int,
        cursor: Optional[str] = None,
        abort: Optional[asyncio.Event] = None,
    ):
        self.lister = lister
        self.limits = limits
        self.bucket = bucket
        self.prefix = prefix
        self.query = query
        self.max_results = max_results
        self.abort = abort
        self.state = ScanState(query=query, mode=mode, position=decode_cursor(cursor))

    def __aiter__(self) -> AsyncIterator[SearchMatch]:
        return self._run()

    async def collect(self) -> ScanResult:
        entries = [match async for match in self]
        return ScanResult(entries=entries, state=self.state)

    async def _run(self) -> AsyncIterator[SearchMatch]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.limits.timeout_seconds
        try:
            if self.state.mode == SearchMode.PREFIX:
                async for match in self._prefix_scan(deadline):
                    yield match
            else:
                async for match in self._contains_scan(deadline):
                    yield match
        finally:
            if self.state.stop_reason is None:
                self.state.stop_reason = StopReason.CANCELLED
            logger.debug(
                f"Scan of s3://{self.bucket}/{self.prefix} for {self.query!r} ({self.state.mode.value}) "
                f"stopped: {self.state.stop_reason.value}, pages={self.state.pages_scanned}, "
                f"examined={self.state.objects_examined}, matches={self.state.matches}"
            )

    async def _fetch(self, page_size: int, prefix: str, deadline: float) -> Tuple[Optional[ListPage], Optional[StopReason]]:
        """Fetch the page at the current position, bounded by the deadline and the abort signal."""
        if self.abort is not None and self.abort.is_set():
            return None, StopReason.CANCELLED
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            return None, StopReason.TIMEOUT

        position = self.state.position
        fetch = asyncio.ensure_future(
            self.lister.list_page(
                self.bucket,
                prefix=prefix,
                delimiter="/",
                cursor=position.token,
                page_size=page_size,
                start_after=None if position.token else position.start_after,
            )
        )
        waiters = {fetch}
        abort_wait = None
        if self.abort is not None:
            abort_wait = asyncio.ensure_future(self.abort.wait())
            waiters.add(abort_wait)
        try:
            done, _ = await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if abort_wait is not None:
                abort_wait.cancel()

        if fetch in done:
            return fetch.result(), None
        fetch.cancel()
        await _drain(fetch)
        if self.abort is not None and self.abort.is_set():
            return None, StopReason.CANCELLED
        return None, StopReason.TIMEOUT

    async def _prefix_scan(self, deadline: float) -> AsyncIterator[SearchMatch]:
        page, stop = await self._fetch(self.max_results, self.prefix + self.query, deadline)
        if page is None:
            self.state.stop_reason = stop
            return
        self.state.pages_scanned = 1
        items = _page_items(page)
        self.state.objects_examined = len(items)
        for item in items[: self.max_results]:
            self.state.matches += 1
            self.state.position = ListingPosition(start_after=_resume_key(item))
            yield item
        if page.truncated and page.next_cursor:
            self.state.position = ListingPosition(token=page.next_cursor)
            self.state.stop_reason = StopReason.MAX_RESULTS
        else:
            self.state.stop_reason = StopReason.BUCKET_EXHAUSTED

    async def _contains_scan(self, deadline: float) -> AsyncIterator[SearchMatch]:
        needle = self.query.lower()
        state = self.state
        while True:
            if state.pages_scanned >= self.limits.max_pages:
                state.stop_reason = StopReason.PAGE_LIMIT
                return
            budget = self.limits.max_objects - state.objects_examined
            if budget <= 0:
                state.stop_reason = StopReason.OBJECT_LIMIT
                return

            page, stop = await self._fetch(min(self.limits.page_size, budget), self.prefix, deadline)
            if page is None:
                state.stop_reason = stop
                return
            state.pages_scanned += 1

            items = _page_items(page)
            for index, item in enumerate(items):
                # A listing may hand back more than the page size asked for.
                if state.objects_examined >= self.limits.max_objects:
                    state.stop_reason = StopReason.OBJECT_LIMIT
                    return
                state.objects_examined += 1
                state.position = ListingPosition(start_after=_resume_key(item))
                if needle not in item.name.lower():
                    continue
                state.matches += 1
                yield item
                if state.matches >= self.max_results:
                    more_on_page = index + 1 < len(items)
                    if more_on_page or page.truncated:
                        state.stop_reason = StopReason.MAX_RESULTS
                    else:
                        state.stop_reason = StopReason.BUCKET_EXHAUSTED
                    return
                if self.abort is not None and self.abort.is_set():
                    state.stop_reason = StopReason.CANCELLED
                    return

            if not page.truncated or not page.next_cursor:
                state.stop_reason = StopReason.BUCKET_EXHAUSTED
                return
            state.position = ListingPosition(token=page.next_cursor)


async def _drain(task: Awaitable) -> None:
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:  # pylint: disable=broad-except
        logger.debug(f"Abandoned listing call failed: {e}")


class BoundedObjectScanner:
    """Factory for :class:`ObjectScan` objects sharing one lister and one set of ceilings."""

    def __init__(self, lister: ObjectLister, limits: Optional[ScanLimits] = None):
        self.lister = lister
        self.limits = limits or ScanLimits()

    def scan(
        self,
        bucket: str,
        query: str,
        mode: SearchMode = SearchMode.CONTAINS,
        prefix: str = "",
        max_results: int = 100,
        cursor: Optional[str] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> ObjectScan:
        if max_results < 1:
            raise InvalidRequestError("max_results must be at least 1")
        return ObjectScan(
            self.lister,
            self.limits,
            bucket=bucket,
            prefix=prefix,
            query=query,
            mode=SearchMode(mode),
            max_results=max_results,
            cursor=cursor,
            abort=abort,
        )
