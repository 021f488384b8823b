"""
Resolve (location id, relative path) pairs to absolute paths that can never
leave the location's root.

Every filesystem-touching operation goes through :meth:`PathSandbox.resolve`,
including the ones a transfer job performs long after the request that
created it was validated.
"""

import asyncio
import logging
import os
import re
import unicodedata
from dataclasses import dataclass
from urllib.parse import unquote

from storage_api.errors import AccessDeniedError, NotFoundError, SecurityError, StorageError
from storage_api.locations import LocationRegistry

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("storage_api.security")

DRIVE_PATTERN = re.compile(r"^[A-Za-z]:")


@dataclass(frozen=True)
class ResolvedPath:
    """An absolute path inside a local location, as returned by the sandbox."""

    location_id: str
    root: str
    path: str

    @property
    def relative(self) -> str:
        """Path relative to the location root, '' for the root itself."""
        rel = os.path.relpath(self.path, self.root)
        return "" if rel == "." else rel.replace(os.sep, "/")

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    def __fspath__(self) -> str:
        return self.path

    def __str__(self) -> str:
        return self.path


def is_within(path: str, root: str) -> bool:
    """True if *path* equals *root* or is a descendant of it."""
    if path == root:
        return True
    prefix = root if root.endswith(os.sep) else root + os.sep
    return path.startswith(prefix)


class PathSandbox:
    """Validator bound to a fixed set of local locations. Holds no mutable state."""

    def __init__(self, registry: LocationRegistry):
        self.registry = registry

    def _reject(self, location_id: str, relative_path: str, reason: str) -> SecurityError:
        security_logger.warning(
            f"Path rejected for {location_id}: {reason} (requested {relative_path!r})"
        )
        return SecurityError(reason)

    def resolve(self, location_id: str, relative_path: str = "") -> ResolvedPath:
        """Validate *relative_path* against the root of *location_id*.

        :raises NotFoundError: unknown location, or missing parent directory.
        :raises SecurityError: any attempt to leave the root.
        """
        location = self.registry.get_local(location_id)
        root = location.root_path
        raw = relative_path or ""

        try:
            decoded = unquote(raw, errors="strict")
        except UnicodeDecodeError:
            raise self._reject(location_id, raw, "Path is not valid percent-encoded UTF-8")

        normalized = unicodedata.normalize("NFC", decoded)

        if "\\" in normalized:
            raise self._reject(location_id, raw, "Backslash characters not allowed in paths")
        if "\x00" in normalized:
            raise self._reject(location_id, raw, "Null bytes not allowed in paths")
        if normalized.startswith("/") or os.path.isabs(normalized) or DRIVE_PATTERN.match(normalized):
            raise self._reject(location_id, raw, f"Absolute paths not allowed: {raw}")

        joined = os.path.normpath(os.path.join(root, normalized or "."))
        if not is_within(joined, root):
            raise self._reject(location_id, raw, f"Path escapes allowed directory: {raw}")

        try:
            resolved = os.path.realpath(joined, strict=True)
        except FileNotFoundError:
            return self._resolve_missing(location_id, root, joined, raw)
        except PermissionError:
            raise AccessDeniedError(f"Permission denied: {raw}")
        except OSError as e:
            raise StorageError(f"Failed to resolve path: {e}")

        if not is_within(resolved, root):
            raise self._reject(location_id, raw, f"Path escapes allowed directory: {raw}")
        return ResolvedPath(location_id=location_id, root=root, path=resolved)

    def _resolve_missing(self, location_id: str, root: str, joined: str, raw: str) -> ResolvedPath:
        # A dangling symlink is still a symlink: judge it by where it points.
        if os.path.islink(joined):
            target = os.path.realpath(joined)
            if not is_within(target, root):
                raise self._reject(location_id, raw, f"Path escapes allowed directory: {raw}")
            return ResolvedPath(location_id=location_id, root=root, path=target)

        parent = os.path.dirname(joined)
        try:
            resolved_parent = os.path.realpath(parent, strict=True)
        except FileNotFoundError:
            raise NotFoundError(f"Parent directory not found: {os.path.relpath(parent, root)}")
        except PermissionError:
            raise AccessDeniedError(f"Permission denied: {raw}")
        except OSError as e:
            raise StorageError(f"Failed to resolve path: {e}")

        if not is_within(resolved_parent, root):
            raise self._reject(location_id, raw, f"Path escapes allowed directory: {raw}")
        return ResolvedPath(
            location_id=location_id,
            root=root,
            path=os.path.join(resolved_parent, os.path.basename(joined)),
        )

    def resolve_for_write(self, location_id: str, relative_path: str) -> ResolvedPath:
        """Resolve a destination, creating missing parent directories inside the root.

        Parents are created one level at a time, each re-validated, so a
        symlink planted along the way cannot redirect the write.
        """
        self.registry.get_local(location_id)
        try:
            return self.resolve(location_id, relative_path)
        except NotFoundError:
            parent_rel = os.path.dirname((relative_path or "").rstrip("/"))
            if not parent_rel:
                raise
        parent = self.resolve_for_write(location_id, parent_rel)
        try:
            os.makedirs(parent.path, exist_ok=True)
        except PermissionError:
            raise AccessDeniedError(f"Permission denied: {parent_rel}")
        except OSError as e:
            raise StorageError(f"Failed to create directory: {e}")
        return self.resolve(location_id, relative_path)

    async def resolve_async(self, location_id: str, relative_path: str = "") -> ResolvedPath:
        return await asyncio.to_thread(self.resolve, location_id, relative_path)

    async def resolve_for_write_async(self, location_id: str, relative_path: str) -> ResolvedPath:
        return await asyncio.to_thread(self.resolve_for_write, location_id, relative_path)
