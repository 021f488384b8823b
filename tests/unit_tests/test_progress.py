import asyncio
import json

from storage_api.schemas import ConflictPolicy, EndpointType, TransferEndpoint
from storage_api.transfer.jobs import FileStatus, JobState, TransferFile, TransferJob
from storage_api.transfer.progress import ProgressChannel, ProgressEvent


def event(num_bytes: int, terminal: bool = False) -> ProgressEvent:
    return ProgressEvent(
        job_id="job-1",
        state="completed" if terminal else "running",
        bytes_transferred=num_bytes,
        bytes_total=100,
        percentage=float(num_bytes),
        terminal=terminal,
    )


def make_job(*sizes: int) -> TransferJob:
    endpoint = TransferEndpoint(type=EndpointType.LOCAL, location_id="local-0", path="")
    return TransferJob(
        source=endpoint,
        destination=endpoint,
        files=[TransferFile(source_path=f"f{i}", destination_path=f"f{i}", bytes_total=size) for i, size in enumerate(sizes)],
        conflict_policy=ConflictPolicy.RENAME,
    )


async def test_subscriber_starts_with_latest_snapshot():
    channel = ProgressChannel()
    channel.publish(event(10))
    channel.publish(event(20))

    subscription = channel.subscribe()
    first = await subscription.__anext__()
    assert first.bytes_transferred == 20

    channel.publish(event(100, terminal=True))
    rest = [e async for e in subscription]
    assert [e.bytes_transferred for e in rest] == [100]
    assert channel.subscriber_count == 0


async def test_slow_subscriber_drops_oldest_but_gets_terminal():
    channel = ProgressChannel(max_pending=3)
    channel.publish(event(0))
    subscription = channel.subscribe()
    assert (await subscription.__anext__()).bytes_transferred == 0

    for num_bytes in range(1, 50):
        channel.publish(event(num_bytes))
    channel.publish(event(100, terminal=True))

    received = [e async for e in subscription]
    assert len(received) == 3
    assert received[-1].terminal
    assert [e.bytes_transferred for e in received] == [48, 49, 100]


async def test_subscribe_after_terminal_yields_only_the_final_event():
    channel = ProgressChannel()
    channel.publish(event(100, terminal=True))
    channel.publish(event(5))

    received = [e async for e in channel.subscribe()]
    assert len(received) == 1
    assert received[0].terminal
    assert channel.closed


async def test_many_subscribers():
    channel = ProgressChannel()
    channel.publish(event(0))

    async def consume():
        return [e.bytes_transferred async for e in channel.subscribe()]

    tasks = [asyncio.create_task(consume()) for _ in range(3)]
    await asyncio.sleep(0)
    channel.publish(event(50))
    channel.publish(event(100, terminal=True))

    for result in await asyncio.gather(*tasks):
        assert result == [0, 50, 100]


def test_event_json():
    payload = json.loads(event(5).to_json())
    assert payload["job_id"] == "job-1"
    assert payload["bytes_transferred"] == 5
    assert payload["terminal"] is False


def test_file_progress_only_moves_forward():
    item = TransferFile(source_path="a", destination_path="a", bytes_total=100)
    item.report(60)
    item.report(10)
    assert item.bytes_transferred == 60
    item.report(500)
    assert item.bytes_transferred == 100


def test_job_state_is_derived_from_files():
    job = make_job(10, 20)
    assert job.percentage == 0.0

    job.mark_running()
    assert job.state == JobState.RUNNING
    assert job.started_at is not None

    job.files[0].status = FileStatus.COMPLETED
    job.files[1].status = FileStatus.FAILED
    job.files[1].error = "boom"
    assert job.finish() == JobState.FAILED
    assert "f1: boom" in job.error


def test_cancelled_wins_over_failed():
    job = make_job(10, 20)
    job.files[0].status = FileStatus.FAILED
    job.files[1].status = FileStatus.CANCELLED
    assert job.finish() == JobState.CANCELLED


def test_empty_completed_job_is_complete():
    job = make_job(0)
    job.files[0].status = FileStatus.SKIPPED
    assert job.finish() == JobState.COMPLETED
    assert job.percentage == 100.0
    assert job.to_dict()["job_id"] == job.id
