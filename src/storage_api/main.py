from contextlib import asynccontextmanager
from textwrap import dedent
import logging
from typing import Optional

import pydantic
from fastapi import FastAPI
from fastapi.routing import APIRoute
from fastapi.middleware.cors import CORSMiddleware

from storage_api.context import StorageContext
from storage_api.errors import (
    StorageApiError,
    handle_broad_exceptions,
    handle_pydantic_validation_errors,
    handle_storage_errors,
)
from storage_api.routers.health import router as health_router
from storage_api.routers.local import router as local_router
from storage_api.routers.objects import router as objects_router
from storage_api.routers.transfer import router as transfer_router
from storage_api.settings import Settings

try:
    from mypy_boto3_s3 import S3Client
except ImportError:
    ...

# Set up logging
logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("storage_api").setLevel(level)
    # boto is chatty at DEBUG
    logging.getLogger("botocore").setLevel(max(logging.INFO, logging.getLevelName(level)))


def create_app(settings: Optional[Settings] = None, s3_client: Optional["S3Client"] = None) -> FastAPI:
    """Create a FastAPI application."""
    settings = settings or Settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        context = StorageContext.from_settings(settings, s3_client=s3_client)
        app.state.context = context
        logger.info(
            f"{settings.app_name} started with {len(context.registry.local())} local locations "
            f"and buckets {settings.bucket_names or 'unrestricted'}"
        )
        try:
            yield
        finally:
            await context.shutdown()

    app = FastAPI(
        title="Storage API",
        summary="Browse, search and move files between S3 buckets and local storage",
        version="v1",
        description=dedent(
            """\
        | Area | Routes |
        | --- | --- |
        | Buckets | `/v1/objects` listing and bounded search |
        | Local storage | `/v1/local` browse, upload, download, delete |
        | Transfers | `/v1/transfer` jobs with live progress |
        """
        ),
        docs_url="/",  # its easier to find the docs when they live on the base url
        generate_unique_id_function=custom_generate_unique_id,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:8888"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After"],
    )
    app.state.settings = settings

    app.include_router(objects_router, prefix="/v1", tags=["objects"])
    app.include_router(local_router, prefix="/v1", tags=["local"])
    app.include_router(transfer_router, prefix="/v1", tags=["transfer"])
    app.include_router(health_router, tags=["health"])

    app.add_exception_handler(
        exc_class_or_status_code=StorageApiError,
        handler=handle_storage_errors,
    )
    app.add_exception_handler(
        exc_class_or_status_code=pydantic.ValidationError,
        handler=handle_pydantic_validation_errors,
    )
    app.middleware("http")(handle_broad_exceptions)

    return app


def custom_generate_unique_id(route: APIRoute):
    """
    Generate prettier `operationId`s in the OpenAPI schema.

    These become the function names in generated client SDKs.
    """
    return f"{route.tags[0]}-{route.name}"


if __name__ == "__main__":
    import uvicorn

    app = create_app()
    uvicorn.run(app, host="0.0.0.0", port=8000)
