"""Request-scoped accessors for the application's storage context."""

from fastapi import Request

from storage_api.context import StorageContext
from storage_api.errors import InvalidRequestError
from storage_api.schemas import decode_base64_path, validate_bucket_name

MAX_LOCAL_PATH_LENGTH = 4096


def get_context(request: Request) -> StorageContext:
    """Storage context dependency."""
    return request.app.state.context


def get_caller(request: Request) -> str:
    """Identity used for rate limiting and the audit log."""
    return request.client.host if request.client else "unknown"


def decode_path_param(encoded_path: str) -> str:
    """Base64 path segment from a URL -> relative path."""
    try:
        return decode_base64_path(
            encoded_path, max_encoded=MAX_LOCAL_PATH_LENGTH * 2, max_decoded=MAX_LOCAL_PATH_LENGTH
        )
    except ValueError as e:
        raise InvalidRequestError(str(e))


def check_bucket_name(bucket: str) -> str:
    try:
        return validate_bucket_name(bucket)
    except ValueError as e:
        raise InvalidRequestError(str(e))
