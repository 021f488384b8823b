import asyncio
import logging
import os
from urllib.parse import quote

from fastapi import APIRouter, Depends, Path, UploadFile, status
from fastapi.responses import StreamingResponse

from storage_api import local_fs
from storage_api.audit import DENIED, FAILURE, SUCCESS, audit_log
from storage_api.context import StorageContext
from storage_api.dependencies import decode_path_param, get_caller, get_context
from storage_api.errors import ConflictError, InvalidRequestError, SecurityError, StorageApiError
from storage_api.schemas import (
    CreateDirectoryResponse,
    DeleteLocalResponse,
    ListLocalFilesQueryParams,
    ListLocalFilesResponse,
    LocalEntry,
    LocationResponse,
    LocationsResponse,
    QuotaResponse,
    UploadResponse,
)
from storage_api.transfer.endpoints import LocalFileWriter

logger = logging.getLogger(__name__)

router = APIRouter()

UPLOAD = "upload"
UPLOAD_CHUNK_SIZE = 1024 * 1024


def _resource(location_id: str, relative: str) -> str:
    return f"local:{location_id}/{relative}"


@router.get("/local/locations", response_model=LocationsResponse)
async def list_locations(context: StorageContext = Depends(get_context)) -> LocationsResponse:
    """All configured storage locations, with local availability rechecked."""
    locations = await asyncio.to_thread(context.registry.refresh_availability)
    return LocationsResponse(
        locations=[
            LocationResponse(
                id=location.id,
                name=location.name,
                type=location.kind.value,
                path=location.root_path,
                available=location.available,
            )
            for location in locations
        ]
    )


@router.get("/local/files/{location_id}", response_model=ListLocalFilesResponse)
@router.get("/local/files/{location_id}/{encoded_path:path}", response_model=ListLocalFilesResponse)
async def list_local_files(
    location_id: str = Path(..., description="Local location, e.g. local-0"),
    encoded_path: str = "",
    query_params: ListLocalFilesQueryParams = Depends(),
    context: StorageContext = Depends(get_context),
    caller: str = Depends(get_caller),
) -> ListLocalFilesResponse:
    """List a directory, directories first. `encoded_path` is base64."""
    relative = decode_path_param(encoded_path)
    try:
        directory = await context.sandbox.resolve_async(location_id, relative)
        entries, total = await asyncio.to_thread(
            local_fs.list_directory, directory, query_params.limit, query_params.offset
        )
    except SecurityError as e:
        audit_log(caller, "list", _resource(location_id, relative), DENIED, e.message)
        raise
    audit_log(caller, "list", _resource(location_id, relative), SUCCESS)
    return ListLocalFilesResponse(
        location_id=location_id,
        path=directory.relative,
        files=[
            LocalEntry(
                name=entry.name,
                path=entry.path,
                type=entry.type,
                size_bytes=entry.size,
                modified=entry.modified,
                target=entry.target,
            )
            for entry in entries
        ],
        total_count=total,
        limit=query_params.limit,
        offset=query_params.offset,
    )


@router.get("/local/download/{location_id}/{encoded_path:path}")
async def download_local_file(
    location_id: str,
    encoded_path: str,
    context: StorageContext = Depends(get_context),
    caller: str = Depends(get_caller),
) -> StreamingResponse:
    """Stream a file from local storage."""
    relative = decode_path_param(encoded_path)
    try:
        path = await context.sandbox.resolve_async(location_id, relative)
        size = await asyncio.to_thread(local_fs.check_file_size, path, context.settings.max_file_size_bytes)
        handle = await asyncio.to_thread(local_fs.open_file, path)
    except SecurityError as e:
        audit_log(caller, "download", _resource(location_id, relative), DENIED, e.message)
        raise
    except StorageApiError as e:
        audit_log(caller, "download", _resource(location_id, relative), FAILURE, e.message)
        raise

    audit_log(caller, "download", _resource(location_id, path.relative), SUCCESS, f"{size} bytes")
    return StreamingResponse(
        local_fs.stream_file(handle),
        media_type="application/octet-stream",
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(path.name)}",
            "Content-Length": str(size),
        },
    )


def _upload_size(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    upload.file.seek(0, os.SEEK_END)
    size = upload.file.tell()
    upload.file.seek(0)
    return size


@router.post(
    "/local/files/{location_id}",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
)
@router.post(
    "/local/files/{location_id}/{encoded_path:path}",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_local_file(
    file: UploadFile,
    location_id: str = Path(...),
    encoded_path: str = "",
    context: StorageContext = Depends(get_context),
    caller: str = Depends(get_caller),
) -> UploadResponse:
    """
    Upload a file into the directory named by `encoded_path` (base64).

    Refuses to replace an existing file, blocked file types and uploads that
    would exceed the location's quota.
    """
    await context.rate_limiter.check(UPLOAD, caller)
    directory = decode_path_param(encoded_path)
    filename = os.path.basename(file.filename or "")
    if not filename:
        raise InvalidRequestError("No file provided")
    relative = "/".join(part for part in (directory.strip("/"), filename) if part)

    reason = context.file_validator.check(filename)
    if reason is not None:
        audit_log(caller, "upload", _resource(location_id, relative), DENIED, reason)
        raise InvalidRequestError(reason)

    try:
        target = await context.sandbox.resolve_for_write_async(location_id, relative)
    except SecurityError as e:
        audit_log(caller, "upload", _resource(location_id, relative), DENIED, e.message)
        raise
    if await asyncio.to_thread(os.path.lexists, target.path):
        raise ConflictError(f"File already exists: {target.relative}")

    size = _upload_size(file)
    if size > context.settings.max_file_size_bytes:
        raise InvalidRequestError(f"File exceeds the {context.settings.max_file_size_gb:g}GB upload limit")
    reservation = await context.quota.check_and_reserve(location_id, size, 1)

    writer = LocalFileWriter(target)
    try:
        while True:
            chunk = await file.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            await writer.write(chunk)
        await writer.commit()
    except BaseException as e:
        await writer.abort()
        await context.quota.release(reservation)
        audit_log(caller, "upload", _resource(location_id, relative), FAILURE)
        if isinstance(e, FileExistsError):
            raise ConflictError(f"File already exists: {target.relative}") from e
        raise

    await context.quota.commit_reservation(reservation, size, 1, writer.bytes_written, 1)
    audit_log(caller, "upload", _resource(location_id, target.relative), SUCCESS, f"{writer.bytes_written} bytes")
    return UploadResponse(uploaded=True, path=target.relative, size_bytes=writer.bytes_written)


@router.delete("/local/files/{location_id}/{encoded_path:path}", response_model=DeleteLocalResponse)
async def delete_local_path(
    location_id: str,
    encoded_path: str,
    context: StorageContext = Depends(get_context),
    caller: str = Depends(get_caller),
) -> DeleteLocalResponse:
    """Delete a file, or a directory and everything in it."""
    relative = decode_path_param(encoded_path)
    try:
        path = await context.sandbox.resolve_async(location_id, relative)
        freed_bytes, freed_files = await asyncio.to_thread(local_fs.delete_path, path)
    except SecurityError as e:
        audit_log(caller, "delete", _resource(location_id, relative), DENIED, e.message)
        raise
    except StorageApiError as e:
        audit_log(caller, "delete", _resource(location_id, relative), FAILURE, e.message)
        raise

    await context.quota.commit(location_id, -freed_bytes, -freed_files)
    audit_log(caller, "delete", _resource(location_id, path.relative), SUCCESS, f"{freed_files} files")
    return DeleteLocalResponse(deleted=True, path=path.relative, freed_bytes=freed_bytes, deleted_files=freed_files)


@router.post(
    "/local/directories/{location_id}/{encoded_path:path}",
    response_model=CreateDirectoryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_local_directory(
    location_id: str,
    encoded_path: str,
    context: StorageContext = Depends(get_context),
    caller: str = Depends(get_caller),
) -> CreateDirectoryResponse:
    """Create a directory, including missing parents."""
    relative = decode_path_param(encoded_path)
    if not relative.strip("/"):
        raise InvalidRequestError("Directory path is required")
    try:
        path = await context.sandbox.resolve_for_write_async(location_id, relative)
        created = await asyncio.to_thread(local_fs.create_directory, path)
    except SecurityError as e:
        audit_log(caller, "mkdir", _resource(location_id, relative), DENIED, e.message)
        raise
    audit_log(caller, "mkdir", _resource(location_id, path.relative), SUCCESS)
    return CreateDirectoryResponse(created=created, path=path.relative)


@router.get("/local/quota/{location_id}", response_model=QuotaResponse)
async def get_quota(
    location_id: str,
    context: StorageContext = Depends(get_context),
) -> QuotaResponse:
    context.registry.get_local(location_id)
    record = await context.quota.status(location_id)
    return QuotaResponse(
        location_id=location_id,
        used_bytes=record.used_bytes,
        max_bytes=record.max_bytes,
        used_files=record.used_files,
        max_files=record.max_files,
        reserved_bytes=record.reserved_bytes,
        reserved_files=record.reserved_files,
    )
