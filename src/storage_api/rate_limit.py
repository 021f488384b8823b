"""
Fixed-window rate limiting for expensive operations.

Keys have the form ``"<operation>:<caller>"`` (``"contains-search:10.0.0.7"``)
so each operation class is counted independently and load on one cannot
starve another. State is in-process and resets on restart.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping

from storage_api.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

CLEANUP_THRESHOLD = 10000


@dataclass
class RateWindow:
    key: str
    window_start: float
    window_seconds: float
    count: int = 0

    @property
    def reset_at(self) -> float:
        return self.window_start + self.window_seconds


class RateLimiter:
    def __init__(
        self,
        limits: Mapping[str, int],
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limits = dict(limits)
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, RateWindow] = {}
        self._lock = asyncio.Lock()

    async def allow(self, key: str, limit: int, window_seconds: float) -> bool:
        """Count one call against *key*; False once *limit* calls landed in the window."""
        async with self._lock:
            now = self._clock()
            if len(self._windows) > CLEANUP_THRESHOLD:
                self._purge(now)

            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                self._windows[key] = RateWindow(key=key, window_start=now, window_seconds=window_seconds, count=1)
                return True
            if window.count >= limit:
                return False
            window.count += 1
            return True

    async def check(self, operation: str, caller: str) -> None:
        """Gate *operation* for *caller* using the configured limit for its class."""
        limit = self.limits[operation]
        key = f"{operation}:{caller or 'unknown'}"
        if not await self.allow(key, limit, self.window_seconds):
            retry_after = self.retry_after(key)
            logger.warning(f"Rate limit hit for {key} ({limit} per {self.window_seconds:g}s)")
            raise RateLimitExceeded(
                f"Too many {operation} requests. Maximum {limit} per {self.window_seconds:g} seconds.",
                retry_after=retry_after,
            )

    def retry_after(self, key: str) -> int:
        """Whole seconds until *key*'s window resets, 0 if it has none."""
        window = self._windows.get(key)
        if window is None:
            return 0
        remaining = window.reset_at - self._clock()
        return max(0, math.ceil(remaining))

    def _purge(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]
        logger.debug(f"Purged {len(expired)} expired rate limit windows")

    def clear(self) -> None:
        self._windows.clear()

    def __len__(self) -> int:
        return len(self._windows)
