####################################
# --- Request/response schemas --- #
####################################

import base64
import binascii
import ipaddress
import re
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator
)
from typing_extensions import Self

from storage_api.search.scanner import SearchMode, StopReason

DEFAULT_SEARCH_MAX_RESULTS = 100
MAX_SEARCH_MAX_RESULTS = 1000
DEFAULT_LIST_PAGE_SIZE = 100
MAX_LIST_PAGE_SIZE = 1000

MAX_ENCODED_PREFIX_LENGTH = 2048
MAX_PREFIX_LENGTH = 1024
MAX_CONTINUATION_TOKEN_LENGTH = 512
MAX_CURSOR_LENGTH = 8192

BUCKET_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$")
SEARCH_QUERY_PATTERN = re.compile(r"^[a-zA-Z0-9._\-\s]{1,256}$")
CONTINUATION_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9+/=\-_.]+$")


def validate_bucket_name(name: str) -> str:
    """Check *name* against S3 bucket naming rules and return it."""
    if not 3 <= len(name) <= 63:
        raise ValueError("Bucket name must be between 3 and 63 characters")
    if not BUCKET_NAME_PATTERN.match(name):
        raise ValueError(
            "Bucket name must consist of lowercase letters, numbers and hyphens, "
            "and start and end with a letter or number"
        )
    if name.startswith("xn--"):
        raise ValueError("Bucket name must not start with 'xn--'")
    if "--" in name:
        raise ValueError("Bucket name must not contain consecutive hyphens")
    try:
        ipaddress.IPv4Address(name)
    except ValueError:
        return name
    raise ValueError("Bucket name must not be formatted as an IP address")


def decode_base64_path(encoded: str, max_encoded: int = MAX_ENCODED_PREFIX_LENGTH, max_decoded: int = MAX_PREFIX_LENGTH) -> str:
    """Decode a base64 path parameter as sent by the browser (``btoa``)."""
    if not encoded:
        return ""
    if len(encoded) > max_encoded:
        raise ValueError(f"Encoded path exceeds {max_encoded} characters")
    try:
        padded = encoded + "=" * (-len(encoded) % 4)
        decoded = base64.b64decode(padded, altchars=b"-_", validate=False).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise ValueError("Path is not valid base64-encoded UTF-8")
    if len(decoded) > max_decoded:
        raise ValueError(f"Path exceeds {max_decoded} characters")
    if "\x00" in decoded:
        raise ValueError("Path must not contain null bytes")
    return decoded


def validate_object_prefix(prefix: str) -> str:
    if ".." in prefix:
        raise ValueError("Prefix must not contain '..'")
    return prefix


##########################
# --- Object listing --- #
##########################


class ObjectMetadata(BaseModel):
    """An object or a common prefix ("folder") in a bucket listing."""
    key: str = Field(
        description="Full key of the object, or the prefix for a folder.",
        json_schema_extra={"example": "models/llama-3/config.json"},
    )
    name: str = Field(description="Last segment of the key.")
    is_prefix: bool = Field(default=False, description="True for a common prefix.")
    size_bytes: int = Field(default=0, description="The size of the object in bytes.")
    last_modified: Optional[datetime] = None


class ListObjectsQueryParams(BaseModel):
    """Query parameters for `GET /v1/objects/{bucket}`."""
    prefix: str = Field(
        "",
        description="Base64-encoded prefix to list under.",
    )
    continuation_token: Optional[str] = Field(
        None,
        max_length=MAX_CONTINUATION_TOKEN_LENGTH,
        description="The token for the next page.",
    )
    page_size: int = Field(DEFAULT_LIST_PAGE_SIZE, ge=1, le=MAX_LIST_PAGE_SIZE)

    @field_validator("prefix")
    @classmethod
    def decode_prefix(cls, v: str) -> str:
        return validate_object_prefix(decode_base64_path(v))

    @field_validator("continuation_token")
    @classmethod
    def check_continuation_token(cls, v: Optional[str]) -> Optional[str]:
        if v and not CONTINUATION_TOKEN_PATTERN.match(v):
            raise ValueError("Invalid continuation token")
        return v or None


class ListObjectsResponse(BaseModel):
    """Response model for `GET /v1/objects/{bucket}`."""
    bucket: str
    prefix: str
    objects: List[ObjectMetadata]
    common_prefixes: List[ObjectMetadata]
    next_continuation_token: Optional[str] = None
    is_truncated: bool = False


##################
# --- Search --- #
##################


class SearchQueryParams(BaseModel):
    """Query parameters for `GET /v1/objects/{bucket}/search`."""
    q: str = Field(
        "",
        description="Text to search for. Prefix mode appends it to the prefix; "
        "contains mode matches it case-insensitively against names.",
    )
    mode: SearchMode = Field(SearchMode.CONTAINS)
    prefix: str = Field("", description="Base64-encoded prefix to search under.")
    max_results: int = Field(DEFAULT_SEARCH_MAX_RESULTS, ge=1, le=MAX_SEARCH_MAX_RESULTS)
    cursor: Optional[str] = Field(
        None,
        max_length=MAX_CURSOR_LENGTH,
        description="Cursor returned by a previous search.",
    )

    @field_validator("prefix")
    @classmethod
    def decode_prefix(cls, v: str) -> str:
        return validate_object_prefix(decode_base64_path(v))

    @field_validator("cursor")
    @classmethod
    def check_cursor(cls, v: Optional[str]) -> Optional[str]:
        if v and not CONTINUATION_TOKEN_PATTERN.match(v):
            raise ValueError("Invalid cursor")
        return v or None

    @model_validator(mode="after")
    def check_query(self) -> Self:
        if self.q and not SEARCH_QUERY_PATTERN.match(self.q):
            raise ValueError(
                "Search query may only contain letters, numbers, spaces, dots, "
                "underscores and hyphens (max 256 characters)"
            )
        if self.mode == SearchMode.CONTAINS and not self.q.strip():
            raise ValueError("Contains search requires a non-empty query")
        if self.mode == SearchMode.PREFIX and "/" in self.q:
            raise ValueError("Prefix search query must not contain '/'")
        return self


class ScanMeta(BaseModel):
    pages_scanned: int
    objects_examined: int
    stop_reason: StopReason


class SearchResponse(BaseModel):
    """Response model for `GET /v1/objects/{bucket}/search`."""
    entries: List[ObjectMetadata]
    next_cursor: Optional[str] = None
    truncated: bool = False
    scan_meta: ScanMeta

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "entries": [
                    {
                        "key": "models/llama-3/",
                        "name": "llama-3",
                        "is_prefix": True,
                        "size_bytes": 0,
                        "last_modified": None,
                    }
                ],
                "next_cursor": "eyJhIjoibW9kZWxzL2xsYW1hLTMvIn0=",
                "truncated": True,
                "scan_meta": {"pages_scanned": 5, "objects_examined": 2500, "stop_reason": "page_limit"},
            }
        }
    )


####################
# --- Transfer --- #
####################


class EndpointType(str, Enum):
    LOCAL = "local"
    S3 = "s3"


class ConflictPolicy(str, Enum):
    OVERWRITE = "overwrite"
    SKIP = "skip"
    RENAME = "rename"


class TransferEndpoint(BaseModel):
    """One side of a transfer: a local location or a bucket, plus a base path."""
    type: EndpointType
    location_id: str = Field(
        description="`local-N` for a local location, the bucket name for S3.",
        json_schema_extra={"example": "local-0"},
    )
    path: str = Field("", max_length=MAX_PREFIX_LENGTH, description="Directory (or prefix) the files are relative to.")

    @field_validator("path")
    @classmethod
    def check_path(cls, v: str) -> str:
        if "\x00" in v:
            raise ValueError("Path must not contain null bytes")
        return v.strip("/")

    @model_validator(mode="after")
    def check_location(self) -> Self:
        if self.type == EndpointType.S3:
            validate_bucket_name(self.location_id)
            validate_object_prefix(self.path)
        elif not re.match(r"^local-\d+$", self.location_id):
            raise ValueError(f"Invalid local location ID: {self.location_id}")
        return self


class TransferRequest(BaseModel):
    """Request body for `POST /v1/transfer`."""
    source: TransferEndpoint
    destination: TransferEndpoint
    files: List[str] = Field(
        min_length=1,
        max_length=10000,
        description="Paths relative to the source path. Directories (or prefixes ending in '/') are expanded.",
    )
    conflict_policy: ConflictPolicy = ConflictPolicy.RENAME

    @field_validator("files")
    @classmethod
    def check_files(cls, v: List[str]) -> List[str]:
        for item in v:
            if not item or not item.strip("/"):
                raise ValueError("File paths must not be empty")
            if "\x00" in item:
                raise ValueError("File paths must not contain null bytes")
            if len(item) > MAX_PREFIX_LENGTH:
                raise ValueError(f"File path exceeds {MAX_PREFIX_LENGTH} characters")
        return v

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "source": {"type": "s3", "location_id": "models", "path": "llama-3"},
                "destination": {"type": "local", "location_id": "local-0", "path": "downloads"},
                "files": ["config.json", "weights/"],
                "conflict_policy": "rename",
            }
        }
    )


class JobCreatedResponse(BaseModel):
    """Response model for `POST /v1/transfer`."""
    job_id: str
    progress_url: str


class TransferFileResponse(BaseModel):
    source_path: str
    destination_path: str
    bytes_total: int
    bytes_transferred: int
    status: str
    error: Optional[str] = None


class TransferJobResponse(BaseModel):
    """Response model for `GET /v1/transfer/{job_id}`."""
    job_id: str
    state: str
    bytes_transferred: int
    bytes_total: int
    percentage: float
    conflict_policy: ConflictPolicy
    files: List[TransferFileResponse]
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


class ConflictCheckRequest(BaseModel):
    """Request body for `POST /v1/transfer/check-conflicts`."""
    destination: TransferEndpoint
    files: List[str] = Field(min_length=1, max_length=10000)


class ConflictCheckResponse(BaseModel):
    conflicts: List[str]


class CleanupResponse(BaseModel):
    job_id: str
    deleted_files: int
    freed_bytes: int


class MessageResponse(BaseModel):
    message: str


#################
# --- Local --- #
#################


class LocationResponse(BaseModel):
    id: str
    name: str
    type: str
    path: Optional[str] = None
    available: bool


class LocationsResponse(BaseModel):
    """Response model for `GET /v1/local/locations`."""
    locations: List[LocationResponse]


class LocalEntry(BaseModel):
    name: str
    path: str = Field(description="Path relative to the location root.")
    type: str = Field(description="'file', 'directory' or 'symlink'.")
    size_bytes: Optional[int] = None
    modified: Optional[datetime] = None
    target: Optional[str] = Field(None, description="Symlink target, for symlinks.")


class ListLocalFilesQueryParams(BaseModel):
    limit: Optional[int] = Field(None, ge=1, le=MAX_LIST_PAGE_SIZE)
    offset: int = Field(0, ge=0)


class ListLocalFilesResponse(BaseModel):
    """Response model for `GET /v1/local/files/{location_id}/{path}`."""
    location_id: str
    path: str
    files: List[LocalEntry]
    total_count: int
    limit: Optional[int] = None
    offset: int = 0


class UploadResponse(BaseModel):
    uploaded: bool
    path: str
    size_bytes: int


class DeleteLocalResponse(BaseModel):
    deleted: bool
    path: str
    freed_bytes: int
    deleted_files: int


class CreateDirectoryResponse(BaseModel):
    created: bool
    path: str


class QuotaResponse(BaseModel):
    """Response model for `GET /v1/local/quota/{location_id}`."""
    location_id: str
    used_bytes: int
    max_bytes: int
    used_files: int
    max_files: int
    reserved_bytes: int
    reserved_files: int
