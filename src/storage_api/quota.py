"""Per-location byte and file-count quotas."""

import asyncio
import logging
import math
import os
from dataclasses import dataclass, replace
from typing import Dict, Optional, Tuple

from storage_api.errors import QuotaExceeded

logger = logging.getLogger(__name__)


def format_bytes(num_bytes: int) -> str:
    """Format a byte count for humans, e.g. ``1.5 GB``."""
    if num_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    exponent = min(int(math.floor(math.log(num_bytes, 1024))), len(units) - 1)
    value = round(num_bytes / (1024 ** exponent), 2)
    return f"{value:g} {units[exponent]}"


@dataclass
class QuotaRecord:
    location_id: str
    max_bytes: int
    max_files: int
    used_bytes: int = 0
    used_files: int = 0
    reserved_bytes: int = 0
    reserved_files: int = 0

    @property
    def remaining_bytes(self) -> int:
        return max(0, self.max_bytes - self.used_bytes - self.reserved_bytes)

    @property
    def remaining_files(self) -> int:
        return max(0, self.max_files - self.used_files - self.reserved_files)


@dataclass
class Reservation:
    """Capacity held for a write that has not finished yet."""

    location_id: str
    bytes: int
    files: int

    @property
    def exhausted(self) -> bool:
        return self.bytes <= 0 and self.files <= 0


class QuotaTracker:
    """
    Running totals per location.

    Every read-modify-write happens under one lock, so a check and the
    reservation that follows it are a single step for concurrent callers.
    Reserved capacity counts against the limit until it is committed or
    released.
    """

    def __init__(self, max_bytes: int, max_files: int, overrides: Optional[Dict[str, Tuple[int, int]]] = None):
        self.default_max_bytes = max_bytes
        self.default_max_files = max_files
        self._overrides = overrides or {}
        self._records: Dict[str, QuotaRecord] = {}
        self._lock = asyncio.Lock()

    def _record(self, location_id: str) -> QuotaRecord:
        record = self._records.get(location_id)
        if record is None:
            max_bytes, max_files = self._overrides.get(
                location_id, (self.default_max_bytes, self.default_max_files)
            )
            record = QuotaRecord(location_id=location_id, max_bytes=max_bytes, max_files=max_files)
            self._records[location_id] = record
        return record

    async def check_and_reserve(self, location_id: str, num_bytes: int, num_files: int) -> Reservation:
        """Hold capacity for a prospective write or raise :class:`QuotaExceeded`."""
        if num_bytes < 0 or num_files < 0:
            raise ValueError("Reservations must be non-negative")
        async with self._lock:
            record = self._record(location_id)
            if num_bytes > record.remaining_bytes:
                raise QuotaExceeded(
                    f"Storage quota exceeded. {format_bytes(record.remaining_bytes)} remaining."
                )
            if num_files > record.remaining_files:
                raise QuotaExceeded(
                    f"File count quota exceeded. {record.remaining_files} files remaining."
                )
            record.reserved_bytes += num_bytes
            record.reserved_files += num_files
        logger.debug(f"Reserved {num_bytes} bytes / {num_files} files on {location_id}")
        return Reservation(location_id=location_id, bytes=num_bytes, files=num_files)

    async def commit(self, location_id: str, delta_bytes: int, delta_files: int) -> QuotaRecord:
        """Apply a completed write (positive) or delete (negative) to the totals."""
        async with self._lock:
            record = self._record(location_id)
            self._apply(record, delta_bytes, delta_files)
            return replace(record)

    async def commit_reservation(
        self,
        reservation: Reservation,
        reserved_bytes: int,
        reserved_files: int,
        actual_bytes: int,
        actual_files: int,
    ) -> None:
        """Turn part of a reservation into usage.

        ``reserved_*`` is the share of the reservation this write was holding,
        ``actual_*`` is what the write really changed on disk (an overwrite
        only adds the size difference and no file).
        """
        async with self._lock:
            record = self._record(reservation.location_id)
            self._drop(record, reservation, reserved_bytes, reserved_files)
            self._apply(record, actual_bytes, actual_files)

    async def release(self, reservation: Reservation, num_bytes: Optional[int] = None, num_files: Optional[int] = None) -> None:
        """Give back part of a reservation, or all that is left of it."""
        async with self._lock:
            record = self._record(reservation.location_id)
            self._drop(
                record,
                reservation,
                reservation.bytes if num_bytes is None else num_bytes,
                reservation.files if num_files is None else num_files,
            )

    async def status(self, location_id: str) -> QuotaRecord:
        async with self._lock:
            return replace(self._record(location_id))

    @staticmethod
    def _drop(record: QuotaRecord, reservation: Reservation, num_bytes: int, num_files: int) -> None:
        num_bytes = max(0, min(num_bytes, reservation.bytes))
        num_files = max(0, min(num_files, reservation.files))
        reservation.bytes -= num_bytes
        reservation.files -= num_files
        record.reserved_bytes = max(0, record.reserved_bytes - num_bytes)
        record.reserved_files = max(0, record.reserved_files - num_files)

    @staticmethod
    def _apply(record: QuotaRecord, delta_bytes: int, delta_files: int) -> None:
        record.used_bytes = max(0, record.used_bytes + delta_bytes)
        record.used_files = max(0, record.used_files + delta_files)


def measure_tree(path: str) -> Tuple[int, int]:
    """Total size and entry count under *path*, the way a delete reclaims it.

    Only non-directory entries count as files, matching how writes are
    counted. Symlinks are counted by their own size and never followed.
    Entries that vanish or cannot be read while walking are skipped.
    """
    if not os.path.isdir(path) or os.path.islink(path):
        return os.lstat(path).st_size, 1

    total_bytes = 0
    total_files = 0
    for dirpath, _, filenames in os.walk(path, followlinks=False):
        for filename in filenames:
            try:
                total_bytes += os.lstat(os.path.join(dirpath, filename)).st_size
                total_files += 1
            except OSError:
                continue
    return total_bytes, total_files
