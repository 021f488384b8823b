# src/storage_api/settings.py
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BYTES_PER_GB = 1024 * 1024 * 1024


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """
    Single source of truth for all application settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from storage_api.settings import get_settings
        settings = get_settings()
        roots = settings.local_storage_roots
    """

    # Application Settings
    app_name: str = Field(
        default="storage-api",
        description="Application name"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        alias="AWS_DEFAULT_REGION"
    )

    aws_access_key_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCESS_KEY_ID"
    )

    aws_secret_access_key: Optional[str] = Field(
        default=None,
        alias="AWS_SECRET_ACCESS_KEY"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_S3_ENDPOINT",
        description="Endpoint of an S3-compatible store (MinIO, Ceph, ...)"
    )

    # Storage locations
    s3_buckets: str = Field(
        default="",
        description="Comma-separated bucket names exposed as remote locations"
    )

    local_storage_paths: str = Field(
        default="./data",
        description="Comma-separated local directories exposed as local-0, local-1, ..."
    )

    max_file_size_gb: float = Field(
        default=20.0,
        gt=0,
        description="Largest single file accepted for upload or download"
    )

    # Quotas
    quota_max_bytes: int = Field(
        default=100 * BYTES_PER_GB,
        ge=0,
        description="Per-location storage quota in bytes"
    )

    quota_max_files: int = Field(
        default=10000,
        ge=0,
        description="Per-location file count quota"
    )

    # Transfers
    max_concurrent_transfers: int = Field(
        default=2,
        ge=1,
        description="Global cap on file copies running at the same time"
    )

    transfer_chunk_size: int = Field(
        default=1024 * 1024,
        ge=1,
        description="Bytes read and written per streaming step"
    )

    transfer_part_size: int = Field(
        default=8 * 1024 * 1024,
        ge=5 * 1024 * 1024,
        description="Multipart upload part size for S3 destinations"
    )

    transfer_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per file before the file is marked failed"
    )

    transfer_retry_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Initial delay between attempts, doubled after each failure"
    )

    transfer_job_retention_seconds: int = Field(
        default=3600,
        ge=0,
        description="How long finished jobs stay queryable"
    )

    # Search
    max_scan_pages: int = Field(
        default=5,
        ge=1,
        description="Listing pages a contains-search may fetch"
    )

    max_objects_examined: int = Field(
        default=2500,
        ge=1,
        description="Objects a contains-search may examine"
    )

    scan_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Wall-clock budget for a contains-search"
    )

    listing_page_size: int = Field(
        default=1000,
        ge=1,
        le=1000,
        description="Keys requested per listing call"
    )

    # Rate limits (requests per window)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)
    rate_limit_contains_search: int = Field(default=5, ge=1)
    rate_limit_upload: int = Field(default=20, ge=1)
    rate_limit_transfer: int = Field(default=10, ge=1)

    # File type validation
    allowed_file_extensions: Optional[str] = Field(
        default=None,
        description="Replaces the default allow list when set"
    )
    allowed_file_extensions_append: Optional[str] = Field(default=None)
    blocked_file_extensions: Optional[str] = Field(
        default=None,
        description="Replaces the default block list when set"
    )
    blocked_file_extensions_append: Optional[str] = Field(default=None)

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log_level: {v}")
        return level

    @field_validator("local_storage_paths")
    @classmethod
    def require_local_storage_path(cls, v: str) -> str:
        if not _split_csv(v):
            raise ValueError("LOCAL_STORAGE_PATHS must name at least one directory")
        return v

    @property
    def local_storage_roots(self) -> List[str]:
        """Configured local roots, in location-id order."""
        return _split_csv(self.local_storage_paths)

    @property
    def bucket_names(self) -> List[str]:
        return _split_csv(self.s3_buckets)

    @property
    def max_file_size_bytes(self) -> int:
        return int(self.max_file_size_gb * BYTES_PER_GB)

    @property
    def rate_limits(self) -> Dict[str, int]:
        """Per operation-class request limits."""
        return {
            "contains-search": self.rate_limit_contains_search,
            "upload": self.rate_limit_upload,
            "transfer": self.rate_limit_transfer,
        }

    def get_environment_dict(self) -> dict:
        """Get the effective configuration with credentials masked.

        Returns:
            Dictionary of environment variable names to values
        """
        return {
            "LOCAL_STORAGE_PATHS": self.local_storage_paths,
            "S3_BUCKETS": self.s3_buckets,
            "AWS_DEFAULT_REGION": self.aws_region,
            "AWS_S3_ENDPOINT": self.aws_endpoint_url or "",
            "AWS_ACCESS_KEY_ID": "***" if self.aws_access_key_id else "",
            "MAX_CONCURRENT_TRANSFERS": str(self.max_concurrent_transfers),
            "MAX_FILE_SIZE_GB": str(self.max_file_size_gb),
            "MAX_SCAN_PAGES": str(self.max_scan_pages),
            "MAX_OBJECTS_EXAMINED": str(self.max_objects_examined),
            "SCAN_TIMEOUT_SECONDS": str(self.scan_timeout_seconds),
            "LOG_LEVEL": self.log_level,
        }

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
