import logging
from typing import List

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import StreamingResponse

from storage_api.audit import DENIED, SUCCESS, audit_log
from storage_api.context import StorageContext
from storage_api.dependencies import get_caller, get_context
from storage_api.errors import QuotaExceeded, RateLimitExceeded, SecurityError
from storage_api.schemas import (
    CleanupResponse,
    ConflictCheckRequest,
    ConflictCheckResponse,
    JobCreatedResponse,
    MessageResponse,
    TransferJobResponse,
    TransferRequest,
)
from storage_api.transfer.jobs import TransferJob

logger = logging.getLogger(__name__)

router = APIRouter()


def to_response(job: TransferJob) -> TransferJobResponse:
    return TransferJobResponse(**job.to_dict())


def _describe(request: TransferRequest) -> str:
    return (
        f"{request.source.type.value}:{request.source.location_id}/{request.source.path} -> "
        f"{request.destination.type.value}:{request.destination.location_id}/{request.destination.path}"
    )


@router.post("/transfer", response_model=JobCreatedResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_transfer(
    body: TransferRequest,
    request: Request,
    context: StorageContext = Depends(get_context),
    caller: str = Depends(get_caller),
) -> JobCreatedResponse:
    """
    Start copying files between locations.

    The request is fully validated (paths, sizes, quota) before this returns;
    the copy itself runs in the background. Follow it on `progress_url`.
    """
    try:
        job = await context.orchestrator.create_job(body, caller=caller)
    except (SecurityError, QuotaExceeded, RateLimitExceeded) as e:
        audit_log(caller, "transfer", _describe(body), DENIED, e.message)
        raise
    audit_log(caller, "transfer", _describe(body), SUCCESS, f"job {job.id}, {len(job.files)} files")
    return JobCreatedResponse(
        job_id=job.id,
        progress_url=str(request.url_for("stream_transfer_progress", job_id=job.id).path),
    )


@router.post("/transfer/check-conflicts", response_model=ConflictCheckResponse)
async def check_conflicts(
    body: ConflictCheckRequest,
    context: StorageContext = Depends(get_context),
) -> ConflictCheckResponse:
    """Which of the given files already exist at the destination."""
    conflicts = await context.orchestrator.check_conflicts(body.destination, body.files)
    return ConflictCheckResponse(conflicts=conflicts)


@router.get("/transfer", response_model=List[TransferJobResponse])
async def list_transfers(context: StorageContext = Depends(get_context)) -> List[TransferJobResponse]:
    return [to_response(job) for job in context.orchestrator.list_jobs()]


@router.get("/transfer/{job_id}", response_model=TransferJobResponse)
async def get_transfer(job_id: str, context: StorageContext = Depends(get_context)) -> TransferJobResponse:
    return to_response(context.orchestrator.get_job(job_id))


@router.get("/transfer/{job_id}/progress")
async def stream_transfer_progress(job_id: str, context: StorageContext = Depends(get_context)) -> StreamingResponse:
    """
    Server-sent events with a full job snapshot per event. The stream ends
    after the event whose `terminal` flag is set.
    """
    events = context.orchestrator.subscribe(job_id)

    async def event_stream():
        async for event in events:
            yield f"data: {event.to_json()}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.delete("/transfer/{job_id}", response_model=TransferJobResponse)
async def cancel_transfer(
    job_id: str,
    context: StorageContext = Depends(get_context),
    caller: str = Depends(get_caller),
) -> TransferJobResponse:
    """Cancel a job. Files already written stay until `cleanup` is called."""
    job = context.orchestrator.cancel(job_id)
    audit_log(caller, "transfer-cancel", job_id, SUCCESS)
    return to_response(job)


@router.post("/transfer/{job_id}/acknowledge", response_model=MessageResponse)
async def acknowledge_transfer(job_id: str, context: StorageContext = Depends(get_context)) -> MessageResponse:
    """Drop a finished job from memory."""
    context.orchestrator.acknowledge(job_id)
    return MessageResponse(message=f"Transfer job {job_id} acknowledged")


@router.post("/transfer/{job_id}/cleanup", response_model=CleanupResponse)
async def cleanup_transfer(
    job_id: str,
    context: StorageContext = Depends(get_context),
    caller: str = Depends(get_caller),
) -> CleanupResponse:
    """Delete the files a cancelled job finished writing before it stopped."""
    deleted, freed = await context.orchestrator.cleanup(job_id)
    audit_log(caller, "transfer-cleanup", job_id, SUCCESS, f"{deleted} files")
    return CleanupResponse(job_id=job_id, deleted_files=deleted, freed_bytes=freed)
