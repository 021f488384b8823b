"""Functions for reading objects from an S3 bucket--the "R" in CRUD."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, List, Optional, Protocol, Tuple

from storage_api.errors import UPSTREAM_EXCEPTIONS, UpstreamError

try:
    from mypy_boto3_s3 import S3Client
    from mypy_boto3_s3.type_defs import GetObjectOutputTypeDef, ObjectTypeDef
except ImportError:
    ...

DEFAULT_MAX_KEYS = 1000


@dataclass(frozen=True)
class ObjectEntry:
    key: str
    size: int = 0
    last_modified: Optional[datetime] = None

    @property
    def name(self) -> str:
        return leaf_name(self.key)


@dataclass
class ListPage:
    """One bounded page of a listing."""

    entries: List[ObjectEntry] = field(default_factory=list)
    common_prefixes: List[str] = field(default_factory=list)
    next_cursor: Optional[str] = None
    truncated: bool = False


class ObjectLister(Protocol):
    """The remote listing the scanner depends on. Returns one bounded page per call."""

    async def list_page(
        self,
        bucket: str,
        prefix: str = "",
        delimiter: Optional[str] = "/",
        cursor: Optional[str] = None,
        page_size: int = DEFAULT_MAX_KEYS,
        start_after: Optional[str] = None,
    ) -> ListPage:
        ...


def leaf_name(key: str) -> str:
    """Last non-empty segment of a key: ``a/b/c.txt`` -> ``c.txt``, ``a/b/`` -> ``b``."""
    return key.rstrip("/").rsplit("/", 1)[-1]


def list_s3_page(
    bucket_name: str,
    prefix: str = "",
    delimiter: Optional[str] = "/",
    continuation_token: Optional[str] = None,
    max_keys: int = DEFAULT_MAX_KEYS,
    start_after: Optional[str] = None,
    s3_client: Optional["S3Client"] = None,
) -> ListPage:
    """
    Fetch a single ``ListObjectsV2`` page.

    :param bucket_name: The name of the S3 bucket.
    :param prefix: Only keys starting with this prefix are listed.
    :param delimiter: Roll up keys below the next delimiter into common prefixes.
    :param continuation_token: Token from the previous page.
    :param max_keys: Maximum number of keys plus prefixes to return.
    :param start_after: Only list keys sorting after this one (ignored with a token).
    :param s3_client: The boto3 S3 client.
    """
    params = {"Bucket": bucket_name, "Prefix": prefix, "MaxKeys": max_keys}
    if delimiter:
        params["Delimiter"] = delimiter
    if continuation_token:
        params["ContinuationToken"] = continuation_token
    elif start_after:
        params["StartAfter"] = start_after

    try:
        response = s3_client.list_objects_v2(**params)
    except UPSTREAM_EXCEPTIONS as e:
        raise UpstreamError.from_boto(e, f"Listing s3://{bucket_name}/{prefix}")

    contents: List["ObjectTypeDef"] = response.get("Contents", [])
    return ListPage(
        entries=[
            ObjectEntry(key=item["Key"], size=item.get("Size", 0), last_modified=item.get("LastModified"))
            for item in contents
        ],
        common_prefixes=[item["Prefix"] for item in response.get("CommonPrefixes", [])],
        next_cursor=response.get("NextContinuationToken"),
        truncated=response.get("IsTruncated", False),
    )


class S3ObjectLister:
    """:class:`ObjectLister` backed by a boto3 client; calls run in a worker thread."""

    def __init__(self, s3_client: "S3Client"):
        self.s3_client = s3_client

    async def list_page(
        self,
        bucket: str,
        prefix: str = "",
        delimiter: Optional[str] = "/",
        cursor: Optional[str] = None,
        page_size: int = DEFAULT_MAX_KEYS,
        start_after: Optional[str] = None,
    ) -> ListPage:
        return await asyncio.to_thread(
            list_s3_page,
            bucket,
            prefix,
            delimiter,
            cursor,
            page_size,
            start_after,
            self.s3_client,
        )


def fetch_s3_objects_metadata(
    bucket_name: str,
    prefix: str = "",
    max_keys: int = DEFAULT_MAX_KEYS,
    continuation_token: Optional[str] = None,
    s3_client: Optional["S3Client"] = None,
) -> Tuple[ListPage, Optional[str]]:
    """
    Fetch one level of a bucket "directory" with pagination support.

    :return: The page and the token for the next page, if any.
    """
    page = list_s3_page(
        bucket_name,
        prefix=prefix,
        delimiter="/",
        continuation_token=continuation_token,
        max_keys=max_keys,
        s3_client=s3_client,
    )
    return page, page.next_cursor if page.truncated else None


def iter_s3_objects(bucket_name: str, prefix: str, s3_client: "S3Client") -> Iterator[ObjectEntry]:
    """Yield every object below *prefix*, page by page (no delimiter)."""
    token = None
    while True:
        page = list_s3_page(
            bucket_name, prefix=prefix, delimiter=None, continuation_token=token, s3_client=s3_client
        )
        yield from page.entries
        if not page.truncated or not page.next_cursor:
            return
        token = page.next_cursor


def head_s3_object_size(bucket_name: str, object_key: str, s3_client: "S3Client") -> int:
    try:
        response = s3_client.head_object(Bucket=bucket_name, Key=object_key)
    except UPSTREAM_EXCEPTIONS as e:
        raise UpstreamError.from_boto(e, f"HeadObject s3://{bucket_name}/{object_key}")
    return response["ContentLength"]


def fetch_s3_object(bucket_name: str, object_key: str, s3_client: "S3Client") -> "GetObjectOutputTypeDef":
    """
    Fetch metadata of an object in the S3 bucket, with a streaming body.

    :param bucket_name: Name of the S3 bucket to fetch the object from.
    :param object_key: Key of the object to fetch.
    :param s3_client: The boto3 S3 client.

    :return: Metadata of the object, including a ``Body`` stream.
    """
    try:
        return s3_client.get_object(Bucket=bucket_name, Key=object_key)
    except UPSTREAM_EXCEPTIONS as e:
        raise UpstreamError.from_boto(e, f"GetObject s3://{bucket_name}/{object_key}")
