import asyncio

from fastapi import APIRouter, Depends, Path

from storage_api.audit import SUCCESS, audit_log
from storage_api.context import StorageContext
from storage_api.dependencies import check_bucket_name, get_caller, get_context
from storage_api.s3.read_objects import fetch_s3_objects_metadata, leaf_name
from storage_api.schemas import (
    ListObjectsQueryParams,
    ListObjectsResponse,
    ObjectMetadata,
    SearchQueryParams,
    SearchResponse,
)
from storage_api.search.service import search_objects

router = APIRouter()


@router.get("/objects/{bucket}", response_model=ListObjectsResponse)
async def list_objects(
    bucket: str = Path(..., description="The bucket to list"),
    query_params: ListObjectsQueryParams = Depends(),
    context: StorageContext = Depends(get_context),
    caller: str = Depends(get_caller),
) -> ListObjectsResponse:
    """
    List one level of a bucket: objects directly under the prefix plus the
    "folders" below it, one page at a time.
    """
    check_bucket_name(bucket)
    context.registry.get_remote(bucket)

    page, next_token = await asyncio.to_thread(
        fetch_s3_objects_metadata,
        bucket,
        query_params.prefix,
        query_params.page_size,
        query_params.continuation_token,
        context.s3_client,
    )
    audit_log(caller, "list", f"s3:{bucket}/{query_params.prefix}", SUCCESS)
    return ListObjectsResponse(
        bucket=bucket,
        prefix=query_params.prefix,
        objects=[
            ObjectMetadata(key=entry.key, name=entry.name, size_bytes=entry.size, last_modified=entry.last_modified)
            for entry in page.entries
        ],
        common_prefixes=[
            ObjectMetadata(key=prefix, name=leaf_name(prefix), is_prefix=True) for prefix in page.common_prefixes
        ],
        next_continuation_token=next_token,
        is_truncated=next_token is not None,
    )


@router.get("/objects/{bucket}/search", response_model=SearchResponse)
async def search_bucket(
    bucket: str = Path(..., description="The bucket to search"),
    query_params: SearchQueryParams = Depends(),
    context: StorageContext = Depends(get_context),
    caller: str = Depends(get_caller),
) -> SearchResponse:
    """
    Search a bucket by prefix, or by substring of the object name.

    Contains searches are bounded: when `truncated` is true the scan stopped
    early (see `scan_meta.stop_reason`) and `next_cursor` resumes it.
    """
    check_bucket_name(bucket)
    return await search_objects(
        bucket,
        query_params,
        scanner=context.scanner,
        registry=context.registry,
        rate_limiter=context.rate_limiter,
        caller=caller,
    )
