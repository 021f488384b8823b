"""Filesystem operations on paths the sandbox has already resolved."""

import errno
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple

from storage_api.errors import AccessDeniedError, InvalidRequestError, NotFoundError, StorageError
from storage_api.quota import format_bytes, measure_tree
from storage_api.sandbox import ResolvedPath
from storage_api.utils.decorators import log_execution_time

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024


@dataclass
class FileEntry:
    name: str
    path: str
    type: str
    size: Optional[int] = None
    modified: Optional[datetime] = None
    target: Optional[str] = None


def _os_error(e: OSError, what: str, path: ResolvedPath) -> Exception:
    if isinstance(e, FileNotFoundError):
        return NotFoundError(f"File not found: {path.relative or '/'}")
    if isinstance(e, PermissionError):
        return AccessDeniedError(f"Permission denied: {path.relative or '/'}")
    if e.errno == errno.ENOTDIR:
        return InvalidRequestError(f"Not a directory: {path.relative}")
    if e.errno == errno.ENOSPC:
        return StorageError("Disk full")
    return StorageError(f"Failed to {what}: {e.strerror or e}")


def _mtime(stats: os.stat_result) -> datetime:
    return datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc)


def list_directory(directory: ResolvedPath, limit: Optional[int] = None, offset: int = 0) -> Tuple[List[FileEntry], int]:
    """
    List one directory: directories first, then everything else, each by name.

    Entries whose metadata cannot be read are left out.

    :return: The requested page of entries and the total entry count.
    """
    try:
        scanned = list(os.scandir(directory.path))
    except OSError as e:
        raise _os_error(e, "list directory", directory)

    entries = []
    for item in scanned:
        relative = "/".join(part for part in (directory.relative, item.name) if part)
        try:
            if item.is_symlink():
                stats = os.stat(item.path)
                entry = FileEntry(
                    name=item.name,
                    path=relative,
                    type="symlink",
                    size=stats.st_size,
                    modified=_mtime(stats),
                    target=os.readlink(item.path),
                )
            elif item.is_dir():
                entry = FileEntry(name=item.name, path=relative, type="directory")
            else:
                stats = item.stat()
                entry = FileEntry(name=item.name, path=relative, type="file", size=stats.st_size, modified=_mtime(stats))
        except OSError:
            continue
        entries.append(entry)

    entries.sort(key=lambda entry: (entry.type != "directory", entry.name))
    total = len(entries)
    if limit is not None:
        entries = entries[offset:offset + limit]
    elif offset:
        entries = entries[offset:]
    return entries, total


def create_directory(path: ResolvedPath) -> bool:
    """``mkdir -p``. Returns False if the directory was already there."""
    if os.path.isdir(path.path):
        return False
    try:
        os.makedirs(path.path, exist_ok=True)
    except FileExistsError:
        raise InvalidRequestError(f"A file already exists at {path.relative}")
    except OSError as e:
        raise _os_error(e, "create directory", path)
    return True


@log_execution_time
def delete_path(path: ResolvedPath) -> Tuple[int, int]:
    """
    Delete a file, or a directory recursively.

    :return: Bytes and files removed, for the quota.
    """
    if path.path == path.root:
        raise InvalidRequestError("Cannot delete the root of a location")
    if not os.path.lexists(path.path):
        raise NotFoundError(f"File not found: {path.relative}")
    try:
        freed_bytes, freed_files = measure_tree(path.path)
        if os.path.isdir(path.path) and not os.path.islink(path.path):
            shutil.rmtree(path.path)
        else:
            os.unlink(path.path)
    except OSError as e:
        raise _os_error(e, "delete", path)
    logger.info(f"Deleted {path.location_id}:/{path.relative} ({freed_files} files, {format_bytes(freed_bytes)})")
    return freed_bytes, freed_files


def check_file_size(path: ResolvedPath, max_bytes: int) -> int:
    """Return the size of *path*, raising if it is over *max_bytes*."""
    try:
        size = os.stat(path.path).st_size
    except OSError as e:
        raise _os_error(e, "check file size", path)
    if size > max_bytes:
        raise InvalidRequestError(
            f"File size {size / (1024 ** 3):.2f}GB exceeds limit of {max_bytes / (1024 ** 3):.2f}GB"
        )
    return size


def open_file(path: ResolvedPath):
    if os.path.isdir(path.path):
        raise InvalidRequestError(f"Not a file: {path.relative}")
    try:
        return open(path.path, "rb")
    except OSError as e:
        raise _os_error(e, "open file", path)


def stream_file(handle, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
    """Yield the rest of *handle* in chunks and close it."""
    try:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                return
            yield chunk
    finally:
        handle.close()
