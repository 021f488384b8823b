import asyncio
import bisect
import time
from typing import Dict, List, Optional, Tuple

import pytest

from storage_api.errors import InvalidRequestError
from storage_api.s3.read_objects import ListPage, ObjectEntry, S3ObjectLister
from storage_api.search.scanner import (
    BoundedObjectScanner,
    ListingPosition,
    ScanLimits,
    SearchMode,
    StopReason,
    decode_cursor,
    encode_cursor,
)
from tests.consts import TEST_BUCKET_NAME


class FakeLister:
    """In-memory listing with ListObjectsV2 semantics: delimiter roll-up, tokens and StartAfter."""

    def __init__(self, keys: List[str], delay: float = 0.0):
        self.keys = sorted(keys)
        self.delay = delay
        self.page_sizes: List[int] = []
        self._levels: Dict[Tuple[str, Optional[str]], List[Tuple[str, bool]]] = {}

    def _level(self, prefix: str, delimiter: Optional[str]) -> List[Tuple[str, bool]]:
        cache_key = (prefix, delimiter)
        if cache_key not in self._levels:
            items, seen = [], set()
            for key in self.keys:
                if not key.startswith(prefix):
                    continue
                rest = key[len(prefix):]
                if delimiter and delimiter in rest:
                    common = prefix + rest.split(delimiter, 1)[0] + delimiter
                    if common not in seen:
                        seen.add(common)
                        items.append((common, True))
                else:
                    items.append((key, False))
            self._levels[cache_key] = items
        return self._levels[cache_key]

    async def list_page(self, bucket, prefix="", delimiter="/", cursor=None, page_size=1000, start_after=None):
        self.page_sizes.append(page_size)
        if self.delay:
            await asyncio.sleep(self.delay)
        items = self._level(prefix, delimiter)
        if cursor:
            start = int(cursor)
        elif start_after:
            start = bisect.bisect_right([key for key, _ in items], start_after)
        else:
            start = 0
        chunk = items[start:start + page_size]
        end = start + len(chunk)
        truncated = end < len(items)
        return ListPage(
            entries=[ObjectEntry(key=key, size=1) for key, is_prefix in chunk if not is_prefix],
            common_prefixes=[key for key, is_prefix in chunk if is_prefix],
            next_cursor=str(end) if truncated else None,
            truncated=truncated,
        )


@pytest.fixture(scope="module")
def large_listing() -> List[str]:
    return [f"file-{i:06d}.bin" for i in range(100_000)]


async def test_contains_scan_stops_at_object_ceiling(large_listing):
    lister = FakeLister(large_listing)
    scanner = BoundedObjectScanner(lister, ScanLimits(max_pages=5, max_objects=2500, page_size=1000))

    result = await scanner.scan("bucket", "does-not-occur").collect()

    assert result.entries == []
    assert result.state.stop_reason == StopReason.OBJECT_LIMIT
    assert result.state.objects_examined == 2500
    assert result.state.pages_scanned == 3
    assert lister.page_sizes == [1000, 1000, 500]
    assert result.truncated
    assert result.next_cursor is not None


class OversizedPageLister(FakeLister):
    """Returns 1,000 items per page whatever page size is asked for."""

    async def list_page(self, bucket, prefix="", delimiter="/", cursor=None, page_size=1000, start_after=None):
        return await super().list_page(bucket, prefix, delimiter, cursor, 1000, start_after)


async def test_object_ceiling_holds_when_pages_are_larger_than_requested(large_listing):
    lister = OversizedPageLister(large_listing)
    scanner = BoundedObjectScanner(lister, ScanLimits(max_pages=5, max_objects=2500, page_size=1000))

    result = await scanner.scan("bucket", "does-not-occur").collect()

    assert result.state.stop_reason == StopReason.OBJECT_LIMIT
    assert result.state.objects_examined == 2500
    assert result.state.pages_scanned == 3
    assert result.next_cursor is not None

    # The cursor resumes right after the last examined object.
    resumed = await scanner.scan("bucket", "file-", cursor=result.next_cursor, max_results=1).collect()
    assert [match.key for match in resumed.entries] == ["file-002500.bin"]


async def test_contains_search_across_three_pages():
    keys = [
        "a-model-1.bin", "a-model-2.bin", "b-1.txt", "b-2.txt",
        "c-1.txt", "c-2.txt", "c-3.txt", "c-4.txt",
        "d-1.txt", "d-2.txt", "d-model.bin",
    ]
    lister = FakeLister(keys)
    scanner = BoundedObjectScanner(lister, ScanLimits(max_pages=5, max_objects=2500, page_size=4))

    result = await scanner.scan("bucket", "model").collect()

    assert [match.key for match in result.entries] == ["a-model-1.bin", "a-model-2.bin", "d-model.bin"]
    assert result.state.pages_scanned == 3
    assert result.state.objects_examined == 11
    assert result.state.stop_reason == StopReason.BUCKET_EXHAUSTED
    assert result.next_cursor is None
    assert not result.truncated


async def test_contains_scan_stops_at_page_ceiling(large_listing):
    lister = FakeLister(large_listing)
    scanner = BoundedObjectScanner(lister, ScanLimits(max_pages=2, max_objects=100_000, page_size=100))

    result = await scanner.scan("bucket", "does-not-occur").collect()

    assert result.state.stop_reason == StopReason.PAGE_LIMIT
    assert result.state.pages_scanned == 2
    assert result.state.objects_examined == 200
    assert len(lister.page_sizes) == 2


async def test_contains_scan_never_exceeds_ceilings_when_resumed(large_listing):
    lister = FakeLister(large_listing)
    limits = ScanLimits(max_pages=5, max_objects=2500, page_size=1000)
    scanner = BoundedObjectScanner(lister, limits)

    cursor = None
    for _ in range(3):
        result = await scanner.scan("bucket", "file-0999", cursor=cursor).collect()
        assert result.state.pages_scanned <= limits.max_pages
        assert result.state.objects_examined <= limits.max_objects
        cursor = result.next_cursor
    assert max(lister.page_sizes) <= limits.page_size


async def test_contains_scan_is_case_insensitive_on_leaf_names():
    lister = FakeLister(["README.md", "notes/readme.txt", "other.txt", "Notes-2021/a.txt"])
    scanner = BoundedObjectScanner(lister)

    result = await scanner.scan("bucket", "ReadMe").collect()
    assert [match.key for match in result.entries] == ["README.md"]
    assert result.state.stop_reason == StopReason.BUCKET_EXHAUSTED
    assert result.next_cursor is None

    result = await scanner.scan("bucket", "notes").collect()
    assert [(match.key, match.is_prefix) for match in result.entries] == [
        ("Notes-2021/", True),
        ("notes/", True),
    ]
    assert result.entries[1].name == "notes"


async def test_contains_scan_under_prefix():
    lister = FakeLister(["logs/app.log", "logs/db.log", "app.log"])
    scanner = BoundedObjectScanner(lister)

    result = await scanner.scan("bucket", "app", prefix="logs/").collect()
    assert [match.key for match in result.entries] == ["logs/app.log"]


async def test_max_results_then_resume_without_skipping():
    keys = [f"dir{i // 100}/item-{i:04d}{'-match' if i % 7 == 0 else ''}.txt" for i in range(1000)]
    keys += [f"match-top-{i}.txt" for i in range(30)]
    keys += [f"plain-{i:04d}.txt" for i in range(400)]
    lister = FakeLister(keys)
    scanner = BoundedObjectScanner(lister, ScanLimits(max_pages=2, max_objects=10_000, page_size=50))
    expected = sorted(key for key, _ in lister._level("", "/") if "match" in key.rstrip("/").rsplit("/", 1)[-1])

    found, cursor, reasons = [], None, set()
    for _ in range(200):
        result = await scanner.scan("bucket", "MATCH", max_results=4, cursor=cursor).collect()
        assert len(result.entries) <= 4
        found.extend(match.key for match in result.entries)
        reasons.add(result.state.stop_reason)
        cursor = result.next_cursor
        if cursor is None:
            break

    assert found == expected
    assert result.state.stop_reason == StopReason.BUCKET_EXHAUSTED
    assert StopReason.MAX_RESULTS in reasons
    assert StopReason.PAGE_LIMIT in reasons


async def test_resume_skips_rolled_up_prefix():
    lister = FakeLister(["a-dir/x.txt", "a-dir/y.txt", "b-match.txt", "c-match.txt"])
    scanner = BoundedObjectScanner(lister, ScanLimits(page_size=1))

    first = await scanner.scan("bucket", "a-dir", max_results=1).collect()
    assert [match.key for match in first.entries] == ["a-dir/"]
    assert first.state.stop_reason == StopReason.MAX_RESULTS

    rest = await scanner.scan("bucket", "match", cursor=first.next_cursor).collect()
    assert [match.key for match in rest.entries] == ["b-match.txt", "c-match.txt"]


async def test_timeout_returns_partial_result():
    lister = FakeLister([f"k{i}" for i in range(10)], delay=2.0)
    scanner = BoundedObjectScanner(lister, ScanLimits(timeout_seconds=0.1))

    started = time.monotonic()
    result = await scanner.scan("bucket", "k").collect()

    assert time.monotonic() - started < 1.5
    assert result.state.stop_reason == StopReason.TIMEOUT
    assert result.entries == []
    assert result.state.pages_scanned == 0
    assert result.truncated
    assert decode_cursor(result.next_cursor) == ListingPosition(start_after="")


async def test_abort_before_start():
    lister = FakeLister(["a.txt"])
    abort = asyncio.Event()
    abort.set()

    result = await BoundedObjectScanner(lister).scan("bucket", "a", abort=abort).collect()

    assert result.state.stop_reason == StopReason.CANCELLED
    assert lister.page_sizes == []


async def test_abort_during_listing_call():
    lister = FakeLister(["a.txt"], delay=5.0)
    abort = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, abort.set)

    started = time.monotonic()
    result = await BoundedObjectScanner(lister).scan("bucket", "a", abort=abort).collect()

    assert time.monotonic() - started < 2
    assert result.state.stop_reason == StopReason.CANCELLED


async def test_prefix_scan_is_a_single_listing_call():
    lister = FakeLister(["logs/app-1.log", "logs/app-2.log", "logs/app-3/x.log", "logs/db.log"])
    scanner = BoundedObjectScanner(lister)

    result = await scanner.scan("bucket", "app", mode=SearchMode.PREFIX, prefix="logs/").collect()

    assert [(match.key, match.is_prefix) for match in result.entries] == [
        ("logs/app-1.log", False),
        ("logs/app-2.log", False),
        ("logs/app-3/", True),
    ]
    assert result.state.pages_scanned == 1
    assert result.state.stop_reason == StopReason.BUCKET_EXHAUSTED
    assert len(lister.page_sizes) == 1


async def test_prefix_scan_truncates_and_resumes():
    lister = FakeLister([f"img-{i}.png" for i in range(10)])
    scanner = BoundedObjectScanner(lister)

    first = await scanner.scan("bucket", "img-", mode=SearchMode.PREFIX, max_results=4).collect()
    assert len(first.entries) == 4
    assert first.state.stop_reason == StopReason.MAX_RESULTS

    second = await scanner.scan(
        "bucket", "img-", mode=SearchMode.PREFIX, max_results=4, cursor=first.next_cursor
    ).collect()
    assert [m.key for m in second.entries] == [f"img-{i}.png" for i in range(4, 8)]


async def test_early_exit_leaves_a_resume_cursor():
    lister = FakeLister([f"hit-{i}.txt" for i in range(5)])
    scan = BoundedObjectScanner(lister).scan("bucket", "hit")

    seen = []
    async for match in scan:
        seen.append(match.key)
        if len(seen) == 2:
            break

    assert decode_cursor(scan.state.next_cursor) == ListingPosition(start_after="hit-1.txt")


def test_cursor_round_trip():
    assert decode_cursor(encode_cursor(ListingPosition(token="abc"))) == ListingPosition(token="abc")
    assert decode_cursor(encode_cursor(ListingPosition(start_after="dir/\U0010ffff"))) == ListingPosition(
        start_after="dir/\U0010ffff"
    )
    assert decode_cursor(None) == ListingPosition()


@pytest.mark.parametrize("cursor", ["not base64!", "bm90IGpzb24=", "WzFd", "e30="])
def test_invalid_cursor(cursor):
    with pytest.raises(InvalidRequestError):
        decode_cursor(cursor)


def test_max_results_must_be_positive():
    with pytest.raises(InvalidRequestError):
        BoundedObjectScanner(FakeLister([])).scan("bucket", "a", max_results=0)


async def test_s3_lister(s3_client):
    for key in ["reports/q1-summary.pdf", "reports/q2-summary.pdf", "reports/raw/data.csv", "readme.txt"]:
        s3_client.put_object(Bucket=TEST_BUCKET_NAME, Key=key, Body=b"x")
    scanner = BoundedObjectScanner(S3ObjectLister(s3_client))

    result = await scanner.scan(TEST_BUCKET_NAME, "SUMMARY", prefix="reports/").collect()
    assert [match.key for match in result.entries] == ["reports/q1-summary.pdf", "reports/q2-summary.pdf"]
    assert result.entries[0].size == 1

    result = await scanner.scan(TEST_BUCKET_NAME, "ra", mode=SearchMode.PREFIX, prefix="reports/").collect()
    assert [(match.key, match.is_prefix) for match in result.entries] == [("reports/raw/", True)]
