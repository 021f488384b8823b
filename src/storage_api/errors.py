"""Error taxonomy for the storage core and its FastAPI handlers."""

import logging
import traceback
from typing import Any, Dict, Optional

import pydantic
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("storage_api.security")


class StorageApiError(Exception):
    """Base class for errors the API turns into structured responses."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "StorageError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "message": self.message}


class SecurityError(StorageApiError):
    """A path or request tried to escape its sandbox."""

    status_code = status.HTTP_403_FORBIDDEN
    error = "SecurityError"


class AccessDeniedError(StorageApiError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "PermissionDenied"


class NotFoundError(StorageApiError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "NotFound"


class ConflictError(StorageApiError):
    status_code = status.HTTP_409_CONFLICT
    error = "Conflict"


class InvalidRequestError(StorageApiError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "BadRequest"


class StorageError(StorageApiError):
    """Filesystem failure that is not a permission or existence problem."""


class QuotaExceeded(StorageApiError):
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    error = "QuotaExceeded"


class RateLimitExceeded(StorageApiError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error = "RateLimitExceeded"

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["retry_after"] = self.retry_after
        return body


class UpstreamError(StorageApiError):
    """The object store rejected or failed a call."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error = "UpstreamError"

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        if status_code:
            self.status_code = status_code
        self.code = code

    @classmethod
    def from_boto(cls, exc: Exception, operation: str) -> "UpstreamError":
        """Wrap a botocore failure, keeping the store's HTTP status when there is one."""
        if isinstance(exc, ClientError):
            error = exc.response.get("Error", {})
            http_status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            return cls(
                f"{operation} failed: {error.get('Message') or error.get('Code') or exc}",
                status_code=http_status if http_status and http_status >= 400 else None,
                code=error.get("Code"),
            )
        return cls(f"{operation} failed: {exc}")

    @property
    def is_not_found(self) -> bool:
        return self.status_code == status.HTTP_404_NOT_FOUND or self.code in ("404", "NoSuchKey", "NoSuchBucket")


UPSTREAM_EXCEPTIONS = (ClientError, BotoCoreError)


async def handle_storage_errors(request: Request, exc: StorageApiError) -> JSONResponse:
    """Render a typed core error as JSON with its status code."""
    if isinstance(exc, SecurityError):
        security_logger.warning(
            "Rejected %s %s from %s: %s",
            request.method,
            request.url.path,
            request.client.host if request.client else "unknown",
            exc.message,
        )
    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def handle_pydantic_validation_errors(request: Request, exc: pydantic.ValidationError) -> JSONResponse:
    errors = exc.errors()
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": [
                {
                    "msg": error["msg"],
                    "input": error.get("input") if isinstance(error.get("input"), (str, int, float)) else None,
                }
                for error in errors
            ]
        },
    )


async def handle_broad_exceptions(request: Request, call_next):
    """Handle any exception that propagates to the top of the app."""
    try:
        return await call_next(request)
    except Exception as err:  # pylint: disable=broad-except
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {err}")
        logger.debug(traceback.format_exc())
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "InternalServerError", "message": "Internal server error"},
        )
