"""
The two kinds of places a transfer reads from and writes to.

Both endpoints expose the same small surface (expand, read_chunks,
open_writer, size_of, unique_path, delete) so the orchestrator never
branches on where bytes come from or go to. Paths handed to an endpoint are
relative to its base path; local ones go through the sandbox on every call.
"""

import asyncio
import errno
import logging
import os
import posixpath
import uuid
from typing import AsyncIterator, List, Optional, Protocol, Tuple

from storage_api.errors import (
    UPSTREAM_EXCEPTIONS,
    AccessDeniedError,
    ConflictError,
    NotFoundError,
    StorageError,
    UpstreamError,
)
from storage_api.s3.delete_objects import delete_s3_object
from storage_api.s3.read_objects import fetch_s3_object, head_s3_object_size, iter_s3_objects
from storage_api.s3.write_objects import MAX_SINGLE_COPY_BYTES, MultipartUpload, copy_s3_object, upload_s3_object
from storage_api.sandbox import PathSandbox, ResolvedPath

try:
    from mypy_boto3_s3 import S3Client
except ImportError:
    ...

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024
DEFAULT_PART_SIZE = 8 * 1024 * 1024
MAX_RENAME_ATTEMPTS = 1000
LINK_UNSUPPORTED = frozenset({errno.EPERM, errno.EOPNOTSUPP, errno.ENOTSUP, errno.ENOSYS})


def join_path(base: str, path: str) -> str:
    return "/".join(part for part in (base.strip("/"), path.strip("/")) if part)


def renamed(path: str, counter: int) -> str:
    """``dir/model.bin`` -> ``dir/model-<counter>.bin``."""
    directory, name = posixpath.split(path)
    stem, ext = os.path.splitext(name)
    if not stem:
        stem, ext = name, ""
    return posixpath.join(directory, f"{stem}-{counter}{ext}")


class FileWriter(Protocol):
    bytes_written: int

    async def write(self, chunk: bytes) -> None:
        ...

    async def commit(self) -> None:
        ...

    async def abort(self) -> None:
        ...


class Endpoint(Protocol):
    location_id: str

    def describe(self, path: str) -> str:
        ...

    async def expand(self, path: str) -> List[Tuple[str, int]]:
        ...

    def read_chunks(self, path: str) -> AsyncIterator[bytes]:
        ...

    async def open_writer(self, path: str, overwrite: bool = False) -> FileWriter:
        ...

    async def size_of(self, path: str) -> Optional[int]:
        ...

    async def delete(self, path: str) -> int:
        ...


async def unique_path(endpoint: "Endpoint", path: str) -> str:
    """First of ``path``, ``name-1.ext``, ``name-2.ext``, ... that does not exist yet."""
    if await endpoint.size_of(path) is None:
        return path
    for counter in range(1, MAX_RENAME_ATTEMPTS + 1):
        candidate = renamed(path, counter)
        if await endpoint.size_of(candidate) is None:
            return candidate
    raise ConflictError(f"No free name found for {path} after {MAX_RENAME_ATTEMPTS} attempts")


#################
# --- Local --- #
#################


class LocalFileWriter:
    """
    Writes into a hidden temp file beside the target and moves it into place on commit.

    Unless ``overwrite`` is set, commit never replaces an existing file: the
    temp file is hard-linked to the target name, which fails with
    :class:`FileExistsError` if something landed there first. The temp file
    survives that failure, so the caller may :meth:`retarget` and commit again.
    """

    def __init__(self, target: ResolvedPath, overwrite: bool = False):
        self.target = target
        self.overwrite = overwrite
        self.temp_path = os.path.join(os.path.dirname(target.path), f".{target.name}.{uuid.uuid4().hex[:12]}.part")
        self.bytes_written = 0
        self._handle = None
        self._finished = False

    def _open(self) -> None:
        self._handle = open(self.temp_path, "xb")

    async def write(self, chunk: bytes) -> None:
        if self._handle is None:
            await asyncio.to_thread(self._open)
        await asyncio.to_thread(self._handle.write, chunk)
        self.bytes_written += len(chunk)

    def retarget(self, target: ResolvedPath) -> None:
        """Commit under another name in the same directory."""
        if os.path.dirname(target.path) != os.path.dirname(self.target.path):
            raise ValueError(f"{target.relative} is not beside {self.target.relative}")
        self.target = target

    def _finish(self) -> None:
        if self._finished:
            return
        if self._handle is None:
            self._open()
        self._handle.flush()
        os.fsync(self._handle.fileno())
        self._handle.close()
        self._handle = None
        self._finished = True

    def _link_into_place(self) -> None:
        try:
            os.link(self.temp_path, self.target.path)
        except FileExistsError:
            raise
        except OSError as e:
            if e.errno not in LINK_UNSUPPORTED:
                raise
            # No hard links on this filesystem: claim the name exclusively,
            # then move the data over the empty placeholder.
            os.close(os.open(self.target.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL))
            os.replace(self.temp_path, self.target.path)
            return
        os.unlink(self.temp_path)

    def _commit(self) -> None:
        self._finish()
        if self.overwrite:
            os.replace(self.temp_path, self.target.path)
        else:
            self._link_into_place()

    async def commit(self) -> None:
        """:raises FileExistsError: not overwriting and the target already exists."""
        await asyncio.to_thread(self._commit)

    def _abort(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None
        try:
            os.unlink(self.temp_path)
        except FileNotFoundError:
            pass

    async def abort(self) -> None:
        await asyncio.to_thread(self._abort)


class LocalEndpoint:
    def __init__(self, sandbox: PathSandbox, location_id: str, base_path: str = "", chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.sandbox = sandbox
        self.location_id = location_id
        self.base_path = base_path.strip("/")
        self.chunk_size = chunk_size

    def describe(self, path: str) -> str:
        return f"{self.location_id}:/{join_path(self.base_path, path)}"

    def resolve(self, path: str) -> ResolvedPath:
        return self.sandbox.resolve(self.location_id, join_path(self.base_path, path))

    def _expand(self, path: str) -> List[Tuple[str, int]]:
        item = path.strip("/")
        resolved = self.resolve(item)
        if not os.path.exists(resolved.path):
            raise NotFoundError(f"Source not found: {self.describe(item)}")
        if not os.path.isdir(resolved.path):
            return [(item, os.path.getsize(resolved.path))]

        files = []
        for dirpath, dirnames, filenames in os.walk(resolved.path):
            dirnames.sort()
            for filename in sorted(filenames):
                relative = os.path.relpath(os.path.join(dirpath, filename), resolved.path).replace(os.sep, "/")
                child = join_path(item, relative)
                # Every expanded entry goes through the sandbox again: a symlink
                # inside the tree may point anywhere.
                checked = self.resolve(child)
                if os.path.isfile(checked.path):
                    files.append((child, os.path.getsize(checked.path)))
        return files

    async def expand(self, path: str) -> List[Tuple[str, int]]:
        """Files under *path* (or *path* itself) with their current sizes."""
        try:
            return await asyncio.to_thread(self._expand, path)
        except PermissionError:
            raise AccessDeniedError(f"Permission denied: {self.describe(path)}")

    async def read_chunks(self, path: str) -> AsyncIterator[bytes]:
        resolved = await asyncio.to_thread(self.resolve, path)
        try:
            handle = await asyncio.to_thread(open, resolved.path, "rb")
        except FileNotFoundError:
            raise NotFoundError(f"Source not found: {self.describe(path)}")
        except IsADirectoryError:
            raise StorageError(f"Source is a directory: {self.describe(path)}")
        try:
            while True:
                chunk = await asyncio.to_thread(handle.read, self.chunk_size)
                if not chunk:
                    return
                yield chunk
        finally:
            handle.close()

    async def resolve_for_write(self, path: str) -> ResolvedPath:
        target = await self.sandbox.resolve_for_write_async(self.location_id, join_path(self.base_path, path))
        if os.path.isdir(target.path):
            raise ConflictError(f"Destination is a directory: {self.describe(path)}")
        return target

    async def open_writer(self, path: str, overwrite: bool = False) -> LocalFileWriter:
        return LocalFileWriter(await self.resolve_for_write(path), overwrite=overwrite)

    def _size_of(self, path: str) -> Optional[int]:
        try:
            resolved = self.resolve(path)
        except NotFoundError:
            return None
        try:
            return os.stat(resolved.path).st_size
        except FileNotFoundError:
            return None

    async def size_of(self, path: str) -> Optional[int]:
        """Size of the file at *path*, or None if nothing is there."""
        return await asyncio.to_thread(self._size_of, path)

    def _delete(self, path: str) -> int:
        resolved = self.resolve(path)
        size = os.stat(resolved.path).st_size
        os.remove(resolved.path)
        return size

    async def delete(self, path: str) -> int:
        return await asyncio.to_thread(self._delete, path)


##############
# --- S3 --- #
##############


class S3ObjectWriter:
    """
    Buffers up to one part; small objects go out as a single PutObject on
    commit, larger ones as a multipart upload that :meth:`abort` discards.
    """

    def __init__(self, s3_client: "S3Client", bucket_name: str, object_key: str, part_size: int = DEFAULT_PART_SIZE):
        self.s3_client = s3_client
        self.bucket_name = bucket_name
        self.object_key = object_key
        self.part_size = part_size
        self.bytes_written = 0
        self._buffer = bytearray()
        self._upload = MultipartUpload(bucket_name, object_key, s3_client)

    async def write(self, chunk: bytes) -> None:
        self._buffer.extend(chunk)
        self.bytes_written += len(chunk)
        while len(self._buffer) >= self.part_size:
            part = bytes(self._buffer[: self.part_size])
            del self._buffer[: self.part_size]
            await asyncio.to_thread(self._upload.upload_part, part)

    async def commit(self) -> None:
        if self._upload.upload_id is None:
            await asyncio.to_thread(
                upload_s3_object, self.bucket_name, self.object_key, bytes(self._buffer), self.s3_client
            )
        else:
            if self._buffer:
                await asyncio.to_thread(self._upload.upload_part, bytes(self._buffer))
            await asyncio.to_thread(self._upload.complete)
        self._buffer.clear()

    async def abort(self) -> None:
        self._buffer.clear()
        await asyncio.to_thread(self._upload.abort)


class S3Endpoint:
    def __init__(
        self,
        s3_client: "S3Client",
        bucket_name: str,
        base_path: str = "",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        part_size: int = DEFAULT_PART_SIZE,
    ):
        self.s3_client = s3_client
        self.bucket_name = bucket_name
        self.location_id = bucket_name
        self.base_path = base_path.strip("/")
        self.chunk_size = chunk_size
        self.part_size = part_size

    def describe(self, path: str) -> str:
        return f"s3://{self.bucket_name}/{self.key(path)}"

    def key(self, path: str) -> str:
        return join_path(self.base_path, path)

    def _expand(self, path: str) -> List[Tuple[str, int]]:
        item = path.strip("/")
        if not path.endswith("/"):
            size = self._size_of(item)
            if size is not None:
                return [(item, size)]

        prefix = self.key(item) + "/"
        files = [
            (join_path(item, entry.key[len(prefix):]), entry.size)
            for entry in iter_s3_objects(self.bucket_name, prefix, self.s3_client)
            if not entry.key.endswith("/")
        ]
        if not files:
            raise NotFoundError(f"Source not found: {self.describe(item)}")
        return files

    async def expand(self, path: str) -> List[Tuple[str, int]]:
        """The object at *path*, or every object below it when it is a prefix."""
        return await asyncio.to_thread(self._expand, path)

    async def read_chunks(self, path: str) -> AsyncIterator[bytes]:
        try:
            response = await asyncio.to_thread(fetch_s3_object, self.bucket_name, self.key(path), self.s3_client)
        except UpstreamError as e:
            if e.is_not_found:
                raise NotFoundError(f"Source not found: {self.describe(path)}")
            raise
        body = response["Body"]
        try:
            while True:
                try:
                    chunk = await asyncio.to_thread(body.read, self.chunk_size)
                except UPSTREAM_EXCEPTIONS as e:
                    raise UpstreamError.from_boto(e, f"Reading {self.describe(path)}")
                if not chunk:
                    return
                yield chunk
        finally:
            body.close()

    async def open_writer(self, path: str, overwrite: bool = False) -> S3ObjectWriter:
        return S3ObjectWriter(self.s3_client, self.bucket_name, self.key(path), self.part_size)

    def _size_of(self, path: str) -> Optional[int]:
        try:
            return head_s3_object_size(self.bucket_name, self.key(path), self.s3_client)
        except UpstreamError as e:
            if e.is_not_found:
                return None
            raise

    async def size_of(self, path: str) -> Optional[int]:
        return await asyncio.to_thread(self._size_of, path)

    async def delete(self, path: str) -> int:
        size = await self.size_of(path) or 0
        await asyncio.to_thread(delete_s3_object, self.bucket_name, self.key(path), self.s3_client)
        return size

    def can_copy_from(self, source: object, size: int) -> bool:
        """True when *source* lives in the same store and fits one CopyObject call."""
        return isinstance(source, S3Endpoint) and source.s3_client is self.s3_client and size <= MAX_SINGLE_COPY_BYTES

    async def copy_from(self, source: "S3Endpoint", source_path: str, path: str) -> None:
        await asyncio.to_thread(
            copy_s3_object,
            source.bucket_name,
            source.key(source_path),
            self.bucket_name,
            self.key(path),
            self.s3_client,
        )
