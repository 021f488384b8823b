"""Search entry point shared by the HTTP route and the CLI."""

import asyncio
import logging
from typing import Optional

from storage_api.locations import LocationRegistry
from storage_api.rate_limit import RateLimiter
from storage_api.schemas import ObjectMetadata, ScanMeta, SearchQueryParams, SearchResponse
from storage_api.search.scanner import BoundedObjectScanner, SearchMatch, SearchMode
from storage_api.utils.decorators import async_log_execution_time

logger = logging.getLogger(__name__)

CONTAINS_SEARCH = "contains-search"


def to_object_metadata(match: SearchMatch) -> ObjectMetadata:
    return ObjectMetadata(
        key=match.key,
        name=match.name,
        is_prefix=match.is_prefix,
        size_bytes=match.size,
        last_modified=match.last_modified,
    )


@async_log_execution_time
async def search_objects(
    bucket: str,
    params: SearchQueryParams,
    scanner: BoundedObjectScanner,
    registry: LocationRegistry,
    rate_limiter: RateLimiter,
    caller: str,
    abort: Optional[asyncio.Event] = None,
) -> SearchResponse:
    """
    Run one bounded search and shape it for the API.

    Contains-mode searches count against the ``contains-search`` rate limit
    before any listing page is fetched.

    :raises NotFoundError: the bucket is not a configured location.
    :raises RateLimitExceeded: the caller spent its contains-search allowance.
    """
    registry.get_remote(bucket)
    if params.mode == SearchMode.CONTAINS:
        await rate_limiter.check(CONTAINS_SEARCH, caller)

    scan = scanner.scan(
        bucket,
        params.q,
        mode=params.mode,
        prefix=params.prefix,
        max_results=params.max_results,
        cursor=params.cursor,
        abort=abort,
    )
    result = await scan.collect()
    state = result.state
    logger.info(
        f"Search {params.mode.value} {params.q!r} in s3://{bucket}/{params.prefix}: "
        f"{len(result.entries)} matches, stop_reason={state.stop_reason.value}"
    )
    return SearchResponse(
        entries=[to_object_metadata(match) for match in result.entries],
        next_cursor=result.next_cursor,
        truncated=result.truncated,
        scan_meta=ScanMeta(
            pages_scanned=state.pages_scanned,
            objects_examined=state.objects_examined,
            stop_reason=state.stop_reason,
        ),
    )
