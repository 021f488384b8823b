import asyncio

from fastapi import APIRouter, Depends

from storage_api.context import StorageContext
from storage_api.dependencies import get_context

router = APIRouter()


@router.get("/health")
async def health_check(context: StorageContext = Depends(get_context)):
    """
    Health check endpoint for monitoring API status.

    Reports "degraded" when a configured local location is not reachable.
    """
    locations = await asyncio.to_thread(context.registry.refresh_availability)
    local = {loc.id: loc.available for loc in locations if loc.root_path is not None}
    running = sum(1 for job in context.orchestrator.list_jobs() if not job.state.is_terminal)

    return {
        "status": "ok" if all(local.values()) else "degraded",
        "components": {
            "local_locations": local,
            "buckets": context.settings.bucket_names,
        },
        "transfers_running": running,
    }
