"""
Transfer jobs: validated up front, run in the background, observable and
cancellable while they run.

A job is admitted only after the rate limit, the sandbox and the quota have
all accepted it, and the quota reservation for every byte it may write is
taken in the same step. Files then run under one global semaphore shared
by all jobs, each through a retrying copy that streams in fixed-size chunks
and checks the job's cancel signal between chunks.
"""

import asyncio
import logging
import posixpath
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from storage_api.errors import (
    ConflictError,
    InvalidRequestError,
    NotFoundError,
    SecurityError,
    StorageError,
    UpstreamError,
)
from storage_api.quota import QuotaTracker, Reservation, format_bytes
from storage_api.rate_limit import RateLimiter
from storage_api.schemas import ConflictPolicy, TransferEndpoint, TransferRequest
from storage_api.transfer.endpoints import (
    MAX_RENAME_ATTEMPTS,
    Endpoint,
    FileWriter,
    LocalEndpoint,
    S3Endpoint,
    join_path,
    unique_path,
)
from storage_api.transfer.jobs import FileStatus, JobState, TransferFile, TransferJob
from storage_api.transfer.progress import FileProgress, ProgressChannel, ProgressEvent
from storage_api.utils.decorators import async_retry

logger = logging.getLogger(__name__)

TRANSFER = "transfer"

EndpointFactory = Callable[[TransferEndpoint], Endpoint]


class TransferCancelled(Exception):
    """Raised inside a file copy when its job's cancel signal is set."""


@dataclass
class CopyOutcome:
    written_bytes: int
    replaced: bool = False
    replaced_bytes: int = 0
    skipped: bool = False


@dataclass
class _JobRuntime:
    source: Endpoint
    destination: Endpoint
    cancel: asyncio.Event
    channel: ProgressChannel
    reservation: Optional[Reservation] = None
    task: Optional[asyncio.Task] = None
    finished_at: Optional[float] = None


class TransferOrchestrator:
    def __init__(
        self,
        endpoint_factory: EndpointFactory,
        quota: QuotaTracker,
        rate_limiter: RateLimiter,
        max_concurrent: int = 2,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        retention_seconds: float = 3600,
        max_file_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.endpoint_factory = endpoint_factory
        self.quota = quota
        self.rate_limiter = rate_limiter
        self.max_concurrent = max_concurrent
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.retention_seconds = retention_seconds
        self.max_file_size = max_file_size
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._jobs: Dict[str, TransferJob] = {}
        self._runtime: Dict[str, _JobRuntime] = {}

    async def create_job(self, request: TransferRequest, caller: str = "") -> TransferJob:
        """
        Validate *request* completely and start it in the background.

        Nothing is written and no quota is held if this raises.

        :raises RateLimitExceeded: too many transfers from *caller*.
        :raises NotFoundError: unknown location or missing source.
        :raises SecurityError: a source or destination path leaves its root.
        :raises QuotaExceeded: the destination cannot hold the declared bytes or files.
        """
        await self.rate_limiter.check(TRANSFER, caller)
        self.evict_expired()

        source = self.endpoint_factory(request.source)
        destination = self.endpoint_factory(request.destination)

        files = await self._expand_sources(source, request.files)
        if not files:
            raise InvalidRequestError("Nothing to transfer")
        if isinstance(destination, LocalEndpoint):
            for item in files:
                await asyncio.to_thread(validate_destination, destination, item.destination_path)

        job = TransferJob(
            source=request.source,
            destination=request.destination,
            files=files,
            conflict_policy=request.conflict_policy,
        )

        reservation = None
        if isinstance(destination, LocalEndpoint):
            reservation = await self.quota.check_and_reserve(destination.location_id, job.bytes_total, len(files))

        runtime = _JobRuntime(
            source=source,
            destination=destination,
            cancel=asyncio.Event(),
            channel=ProgressChannel(),
            reservation=reservation,
        )
        self._jobs[job.id] = job
        self._runtime[job.id] = runtime
        self._publish(job)
        runtime.task = asyncio.create_task(self._run_job(job, runtime), name=f"transfer-{job.id}")

        logger.info(
            f"Transfer job {job.id} queued: {len(files)} files, {format_bytes(job.bytes_total)} "
            f"from {source.describe('')} to {destination.describe('')} ({request.conflict_policy.value})"
        )
        return job

    async def _expand_sources(self, source: Endpoint, paths: List[str]) -> List[TransferFile]:
        seen = set()
        files = []
        for path in paths:
            for relative, size in await source.expand(path):
                if relative in seen:
                    continue
                seen.add(relative)
                if self.max_file_size is not None and size > self.max_file_size:
                    raise InvalidRequestError(
                        f"{relative} is {format_bytes(size)}, over the {format_bytes(self.max_file_size)} file size limit"
                    )
                files.append(TransferFile(source_path=relative, destination_path=relative, bytes_total=size))
        return files

    async def _run_job(self, job: TransferJob, runtime: _JobRuntime) -> None:
        try:
            await asyncio.gather(*(self._run_file(job, runtime, item) for item in job.files))
        finally:
            if runtime.reservation is not None:
                await self.quota.release(runtime.reservation)
            state = job.finish()
            runtime.finished_at = self._clock()
            self._publish(job, terminal=True)
            log = logger.info if state == JobState.COMPLETED else logger.warning
            log(f"Transfer job {job.id} {state.value}: {job.bytes_transferred}/{job.bytes_total} bytes")

    async def _run_file(self, job: TransferJob, runtime: _JobRuntime, item: TransferFile) -> None:
        declared = item.bytes_total
        async with self._semaphore:
            if runtime.cancel.is_set():
                item.status = FileStatus.CANCELLED
                await self._release_share(runtime, declared)
                return

            job.mark_running()
            item.status = FileStatus.RUNNING
            self._publish(job)

            copy = async_retry(
                max_attempts=self.max_attempts,
                delay=self.retry_delay,
                exceptions=(UpstreamError, OSError),
                no_retry=(TransferCancelled, SecurityError, PermissionError),
                logger_name=__name__,
            )(self._copy_file)
            try:
                outcome = await copy(job, runtime, item)
            except TransferCancelled:
                item.status = FileStatus.CANCELLED
                await self._release_share(runtime, declared)
            except Exception as e:  # pylint: disable=broad-except
                logger.error(f"Transfer {job.id}: {item.source_path} failed: {e}")
                item.status = FileStatus.FAILED
                item.error = str(e)
                await self._release_share(runtime, declared)
            else:
                if outcome.skipped:
                    item.status = FileStatus.SKIPPED
                    item.bytes_total = 0
                    item.bytes_transferred = 0
                    await self._release_share(runtime, declared)
                else:
                    item.status = FileStatus.COMPLETED
                    item.replaced = outcome.replaced
                    item.replaced_bytes = outcome.replaced_bytes
                    await self._commit_share(runtime, declared, outcome)
            finally:
                self._publish(job)

    async def _copy_file(self, job: TransferJob, runtime: _JobRuntime, item: TransferFile) -> CopyOutcome:
        """One attempt at one file. Leaves nothing at the destination unless it succeeds."""
        source, destination = runtime.source, runtime.destination
        if runtime.cancel.is_set():
            raise TransferCancelled()

        target = item.destination_path
        existing = await destination.size_of(target)
        outcome = CopyOutcome(written_bytes=0)
        if existing is not None:
            if job.conflict_policy == ConflictPolicy.SKIP:
                logger.info(f"Transfer {job.id}: skipping existing {destination.describe(target)}")
                outcome.skipped = True
                return outcome
            if job.conflict_policy == ConflictPolicy.RENAME:
                target = await unique_path(destination, target)
            else:
                outcome.replaced = True
                outcome.replaced_bytes = existing
        item.written_path = target

        if isinstance(destination, S3Endpoint) and destination.can_copy_from(source, item.bytes_total):
            await destination.copy_from(source, item.source_path, target)
            item.report(item.bytes_total)
            outcome.written_bytes = item.bytes_total
            return outcome

        writer = await destination.open_writer(target, overwrite=outcome.replaced)
        try:
            async for chunk in source.read_chunks(item.source_path):
                if runtime.cancel.is_set():
                    raise TransferCancelled()
                await writer.write(chunk)
                item.report(writer.bytes_written)
                self._publish(job)
            if runtime.cancel.is_set():
                raise TransferCancelled()
            if writer.bytes_written != item.bytes_total:
                raise StorageError(
                    f"Size mismatch for {source.describe(item.source_path)}: "
                    f"expected {item.bytes_total} bytes, read {writer.bytes_written}"
                )
            landed = await self._commit_writer(job, destination, writer, item, outcome)
        except BaseException:
            await writer.abort()
            raise
        if not landed:
            await writer.abort()
            return outcome

        outcome.written_bytes = writer.bytes_written
        return outcome

    async def _commit_writer(
        self, job: TransferJob, destination: Endpoint, writer: FileWriter, item: TransferFile, outcome: CopyOutcome
    ) -> bool:
        """
        Commit *writer*, settling a destination name someone else took since
        the conflict check by the job's conflict policy.

        :return: False if the file ends up skipped.
        """
        for _ in range(MAX_RENAME_ATTEMPTS):
            try:
                await writer.commit()
                return True
            except FileExistsError:
                taken = item.written_path
                if job.conflict_policy == ConflictPolicy.SKIP:
                    logger.info(f"Transfer {job.id}: {destination.describe(taken)} appeared during the copy, skipping")
                    outcome.skipped = True
                    item.written_path = None
                    return False
                if job.conflict_policy == ConflictPolicy.RENAME:
                    target = await unique_path(destination, item.destination_path)
                    writer.retarget(await destination.resolve_for_write(target))
                    item.written_path = target
                    logger.info(f"Transfer {job.id}: {destination.describe(taken)} was taken, writing {target}")
                else:
                    outcome.replaced = True
                    outcome.replaced_bytes = await destination.size_of(taken) or 0
                    writer.overwrite = True
        raise ConflictError(f"No free name found for {destination.describe(item.destination_path)}")

    async def _commit_share(self, runtime: _JobRuntime, declared: int, outcome: CopyOutcome) -> None:
        if runtime.reservation is None:
            return
        if outcome.replaced:
            actual_bytes, actual_files = outcome.written_bytes - outcome.replaced_bytes, 0
        else:
            actual_bytes, actual_files = outcome.written_bytes, 1
        await self.quota.commit_reservation(runtime.reservation, declared, 1, actual_bytes, actual_files)

    async def _release_share(self, runtime: _JobRuntime, declared: int) -> None:
        if runtime.reservation is not None:
            await self.quota.release(runtime.reservation, declared, 1)

    def _publish(self, job: TransferJob, terminal: bool = False) -> None:
        runtime = self._runtime.get(job.id)
        if runtime is None:
            return
        runtime.channel.publish(
            ProgressEvent(
                job_id=job.id,
                state=job.state.value,
                bytes_transferred=job.bytes_transferred,
                bytes_total=job.bytes_total,
                percentage=job.percentage,
                files=tuple(
                    FileProgress(
                        source_path=item.source_path,
                        destination_path=item.written_path or item.destination_path,
                        bytes_transferred=item.bytes_transferred,
                        bytes_total=item.bytes_total,
                        status=item.status.value,
                        error=item.error,
                    )
                    for item in job.files
                ),
                error=job.error,
                terminal=terminal,
            )
        )

    def get_job(self, job_id: str) -> TransferJob:
        self.evict_expired()
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Transfer job not found: {job_id}")
        return job

    def list_jobs(self) -> List[TransferJob]:
        self.evict_expired()
        return sorted(self._jobs.values(), key=lambda job: job.created_at)

    def cancel(self, job_id: str) -> TransferJob:
        """Signal *job_id* to stop. Cancelling a finished job changes nothing."""
        job = self.get_job(job_id)
        if job.state.is_terminal:
            return job
        runtime = self._runtime[job_id]
        runtime.cancel.set()
        job.state = JobState.CANCELLED
        self._publish(job)
        logger.info(f"Transfer job {job_id} cancellation requested")
        return job

    async def wait(self, job_id: str) -> TransferJob:
        """Block until *job_id* reaches a terminal state."""
        job = self.get_job(job_id)
        task = self._runtime[job_id].task
        if task is not None:
            await asyncio.shield(task)
        return job

    def subscribe(self, job_id: str) -> AsyncIterator[ProgressEvent]:
        self.get_job(job_id)
        return self._runtime[job_id].channel.subscribe()

    def acknowledge(self, job_id: str) -> None:
        """Forget a finished job now instead of after the retention window."""
        job = self.get_job(job_id)
        if not job.state.is_terminal or self._runtime[job_id].finished_at is None:
            raise ConflictError(f"Transfer job {job_id} is still {job.state.value}")
        self._forget(job_id)

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [
            job_id
            for job_id, runtime in self._runtime.items()
            if runtime.finished_at is not None and now - runtime.finished_at >= self.retention_seconds
        ]
        for job_id in expired:
            self._forget(job_id)
        if expired:
            logger.debug(f"Evicted {len(expired)} finished transfer jobs")
        return len(expired)

    def _forget(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._runtime.pop(job_id, None)

    async def cleanup(self, job_id: str) -> Tuple[int, int]:
        """
        Delete the files a cancelled job had already finished writing.

        Files that replaced an existing one are left alone. Quota is given
        back for every file removed.

        :return: number of files deleted and bytes freed.
        """
        job = self.get_job(job_id)
        runtime = self._runtime[job_id]
        if job.state != JobState.CANCELLED or runtime.finished_at is None:
            raise ConflictError(f"Only finished, cancelled jobs can be cleaned up (job is {job.state.value})")
        if job.cleaned_up:
            return 0, 0

        deleted, freed = 0, 0
        destination = runtime.destination
        for item in job.files:
            if item.status != FileStatus.COMPLETED or item.replaced or not item.written_path:
                continue
            try:
                size = await destination.delete(item.written_path)
            except (NotFoundError, FileNotFoundError):
                continue
            deleted += 1
            freed += size
        if isinstance(destination, LocalEndpoint) and deleted:
            await self.quota.commit(destination.location_id, -freed, -deleted)
        job.cleaned_up = True
        logger.info(f"Cleaned up cancelled transfer {job_id}: {deleted} files, {format_bytes(freed)}")
        return deleted, freed

    async def check_conflicts(self, destination: TransferEndpoint, files: List[str]) -> List[str]:
        """Which of *files* already exist under *destination*."""
        endpoint = self.endpoint_factory(destination)
        conflicts = []
        for path in files:
            if await endpoint.size_of(path.strip("/")) is not None:
                conflicts.append(path)
        return conflicts

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel every running job and wait briefly for them to clean up."""
        tasks = []
        for job_id, runtime in list(self._runtime.items()):
            if runtime.task is not None and not runtime.task.done():
                self.cancel(job_id)
                tasks.append(runtime.task)
        if not tasks:
            return
        logger.info(f"Waiting for {len(tasks)} transfer jobs to stop")
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def validate_destination(endpoint: LocalEndpoint, path: str) -> None:
    """Sandbox-check a destination that may not exist yet.

    Walks up to the nearest existing ancestor so a symlinked directory
    anywhere along the path is caught before the job is admitted.
    """
    current = join_path(endpoint.base_path, path)
    while True:
        try:
            endpoint.sandbox.resolve(endpoint.location_id, current)
            return
        except NotFoundError:
            if not current:
                raise
            current = posixpath.dirname(current)
