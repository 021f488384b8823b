"""S3 client construction."""

import logging
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config

from storage_api.settings import Settings

try:
    from mypy_boto3_s3 import S3Client
except ImportError:
    ...

logger = logging.getLogger(__name__)


def create_s3_client(settings: Settings, max_pool_connections: Optional[int] = None) -> "S3Client":
    """Create an S3 client from settings.

    Path-style addressing is forced so S3-compatible stores behind a plain
    endpoint URL (MinIO, Ceph RGW) work without DNS bucket names.
    """
    client_kwargs: Dict[str, Any] = {
        "region_name": settings.aws_region,
        "config": Config(
            s3={"addressing_style": "path"},
            max_pool_connections=max_pool_connections or max(10, settings.max_concurrent_transfers * 2),
            retries={"max_attempts": 3, "mode": "standard"},
        ),
    }

    if settings.aws_access_key_id:
        client_kwargs["aws_access_key_id"] = settings.aws_access_key_id
    if settings.aws_secret_access_key:
        client_kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
    if settings.aws_endpoint_url:
        client_kwargs["endpoint_url"] = settings.aws_endpoint_url

    logger.info(f"Creating S3 client")
    logger.info(f"  Region: {settings.aws_region}")
    logger.info(f"  Endpoint: {settings.aws_endpoint_url or 'default'}")
    return boto3.client("s3", **client_kwargs)
