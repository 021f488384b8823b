"""Push-based progress delivery for transfer jobs."""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from typing import AsyncIterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 16


@dataclass(frozen=True)
class FileProgress:
    source_path: str
    destination_path: str
    bytes_transferred: int
    bytes_total: int
    status: str
    error: Optional[str] = None


@dataclass(frozen=True)
class ProgressEvent:
    """Snapshot of a job after a state change or a written chunk."""

    job_id: str
    state: str
    bytes_transferred: int
    bytes_total: int
    percentage: float
    files: Tuple[FileProgress, ...] = ()
    error: Optional[str] = None
    terminal: bool = False

    def to_json(self) -> str:
        return json.dumps(asdict(self))


class ProgressChannel:
    """
    Fan-out of :class:`ProgressEvent` to any number of subscribers.

    Each subscriber has a bounded queue. When a slow subscriber's queue is
    full the oldest pending snapshot is dropped, which only loses
    intermediate progress since every event is a full snapshot. The terminal
    event is the last one published, so it is never dropped, and it ends
    every subscription.
    """

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING):
        self.max_pending = max_pending
        self._subscribers: List["asyncio.Queue[ProgressEvent]"] = []
        self._last: Optional[ProgressEvent] = None

    @property
    def closed(self) -> bool:
        return self._last is not None and self._last.terminal

    @property
    def last(self) -> Optional[ProgressEvent]:
        return self._last

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: ProgressEvent) -> None:
        if self.closed:
            logger.debug(f"Dropping progress for closed job {event.job_id}")
            return
        self._last = event
        for queue in self._subscribers:
            self._offer(queue, event)

    @staticmethod
    def _offer(queue: "asyncio.Queue[ProgressEvent]", event: ProgressEvent) -> None:
        while True:
            try:
                queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass

    async def subscribe(self) -> AsyncIterator[ProgressEvent]:
        """Yield snapshots, starting with the latest one, until the terminal event."""
        queue: "asyncio.Queue[ProgressEvent]" = asyncio.Queue(maxsize=self.max_pending)
        if self._last is not None:
            queue.put_nowait(self._last)
        if self.closed:
            yield queue.get_nowait()
            return

        self._subscribers.append(queue)
        try:
            while True:
                event = await queue.get()
                yield event
                if event.terminal:
                    return
        finally:
            self._subscribers.remove(queue)
