"""Storage locations configured at startup."""

import logging
import os
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional

from storage_api.errors import NotFoundError
from storage_api.settings import Settings

logger = logging.getLogger(__name__)

LOCAL_ID_PATTERN = re.compile(r"^local-(\d+)$")


class LocationKind(str, Enum):
    REMOTE = "s3"
    LOCAL = "local"


@dataclass(frozen=True)
class StorageLocation:
    """A configured storage root: a local directory tree or a bucket."""

    id: str
    kind: LocationKind
    name: str
    root_path: Optional[str] = None
    bucket_name: Optional[str] = None
    available: bool = False


def check_directory(path: str, location_id: str) -> bool:
    """Return True if *path* is an accessible directory, logging why it is not."""
    try:
        if os.path.isdir(path) and os.access(path, os.R_OK | os.X_OK):
            logger.debug(f"Local storage directory verified: {path} ({location_id})")
            return True
        if os.path.exists(path):
            logger.warning(f"Path exists but is not an accessible directory: {path} ({location_id})")
        else:
            logger.warning(
                f"Local storage path does not exist: {path} ({location_id}) - "
                "create this directory or update LOCAL_STORAGE_PATHS"
            )
    except OSError as e:
        logger.warning(f"Local storage path not accessible: {path} ({location_id}) - {e}")
    return False


class LocationRegistry:
    """Immutable set of locations, keyed by id.

    Local roots are canonicalized once (``realpath``) so every later
    containment check compares against the same spelling of the root.
    """

    def __init__(self, locations: List[StorageLocation], allow_any_bucket: bool = False):
        self._locations: Dict[str, StorageLocation] = {loc.id: loc for loc in locations}
        # With no S3_BUCKETS configured every bucket the credentials can reach is browsable.
        self.allow_any_bucket = allow_any_bucket

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocationRegistry":
        locations = []
        for index, raw_path in enumerate(settings.local_storage_roots):
            location_id = f"local-{index}"
            root = os.path.realpath(os.path.expanduser(raw_path))
            locations.append(
                StorageLocation(
                    id=location_id,
                    kind=LocationKind.LOCAL,
                    name=os.path.basename(root) or root,
                    root_path=root,
                    available=check_directory(root, location_id),
                )
            )
        for bucket in settings.bucket_names:
            locations.append(
                StorageLocation(
                    id=bucket,
                    kind=LocationKind.REMOTE,
                    name=bucket,
                    bucket_name=bucket,
                    available=True,
                )
            )
        logger.info(f"Configured {len(locations)} storage locations")
        return cls(locations, allow_any_bucket=not settings.bucket_names)

    def get(self, location_id: str) -> StorageLocation:
        location = self._locations.get(location_id)
        if location is None:
            raise NotFoundError(f"Unknown storage location: {location_id}")
        return location

    def get_local(self, location_id: str) -> StorageLocation:
        if not LOCAL_ID_PATTERN.match(location_id or ""):
            raise NotFoundError(f"Invalid location ID: {location_id}")
        location = self.get(location_id)
        if location.kind != LocationKind.LOCAL:
            raise NotFoundError(f"Not a local location: {location_id}")
        return location

    def get_remote(self, bucket_name: str) -> StorageLocation:
        location = self._locations.get(bucket_name)
        if location is None and self.allow_any_bucket and bucket_name:
            return StorageLocation(
                id=bucket_name, kind=LocationKind.REMOTE, name=bucket_name, bucket_name=bucket_name, available=True
            )
        if location is None:
            raise NotFoundError(f"Unknown bucket: {bucket_name}")
        if location.kind != LocationKind.REMOTE:
            raise NotFoundError(f"Not a bucket location: {bucket_name}")
        return location

    def all(self) -> List[StorageLocation]:
        return list(self._locations.values())

    def local(self) -> List[StorageLocation]:
        return [loc for loc in self._locations.values() if loc.kind == LocationKind.LOCAL]

    def refresh_availability(self) -> List[StorageLocation]:
        """Recompute ``available`` for local roots that may have gone away."""
        for location_id, location in list(self._locations.items()):
            if location.kind == LocationKind.LOCAL:
                available = check_directory(location.root_path, location_id)
                if available != location.available:
                    self._locations[location_id] = replace(location, available=available)
        return self.all()
