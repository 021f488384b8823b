"""Everything a request needs, built once per application instance."""

import logging
from dataclasses import dataclass
from typing import Optional

from storage_api.file_validation import FileTypeValidator
from storage_api.locations import LocationRegistry
from storage_api.quota import QuotaTracker
from storage_api.rate_limit import RateLimiter
from storage_api.s3.client import create_s3_client
from storage_api.s3.read_objects import S3ObjectLister
from storage_api.sandbox import PathSandbox
from storage_api.schemas import EndpointType, TransferEndpoint
from storage_api.search.scanner import BoundedObjectScanner, ScanLimits
from storage_api.settings import Settings
from storage_api.transfer.endpoints import Endpoint, LocalEndpoint, S3Endpoint
from storage_api.transfer.orchestrator import TransferOrchestrator

try:
    from mypy_boto3_s3 import S3Client
except ImportError:
    ...

logger = logging.getLogger(__name__)


@dataclass
class StorageContext:
    """
    Shared state for one application instance.

    The quota tracker, rate limiter and orchestrator are the only holders of
    cross-request mutable state; they live here and nowhere else, so two
    apps (or two tests) never share counters.
    """

    settings: Settings
    registry: LocationRegistry
    sandbox: PathSandbox
    quota: QuotaTracker
    rate_limiter: RateLimiter
    s3_client: "S3Client"
    scanner: BoundedObjectScanner
    file_validator: FileTypeValidator
    orchestrator: Optional[TransferOrchestrator] = None

    @classmethod
    def from_settings(cls, settings: Settings, s3_client: Optional["S3Client"] = None) -> "StorageContext":
        registry = LocationRegistry.from_settings(settings)
        s3_client = s3_client or create_s3_client(settings)
        context = cls(
            settings=settings,
            registry=registry,
            sandbox=PathSandbox(registry),
            quota=QuotaTracker(settings.quota_max_bytes, settings.quota_max_files),
            rate_limiter=RateLimiter(settings.rate_limits, window_seconds=settings.rate_limit_window_seconds),
            s3_client=s3_client,
            scanner=BoundedObjectScanner(
                S3ObjectLister(s3_client),
                ScanLimits(
                    max_pages=settings.max_scan_pages,
                    max_objects=settings.max_objects_examined,
                    timeout_seconds=settings.scan_timeout_seconds,
                    page_size=settings.listing_page_size,
                ),
            ),
            file_validator=FileTypeValidator.from_settings(settings),
        )
        context.orchestrator = TransferOrchestrator(
            endpoint_factory=context.endpoint,
            quota=context.quota,
            rate_limiter=context.rate_limiter,
            max_concurrent=settings.max_concurrent_transfers,
            max_attempts=settings.transfer_max_attempts,
            retry_delay=settings.transfer_retry_delay_seconds,
            retention_seconds=settings.transfer_job_retention_seconds,
            max_file_size=settings.max_file_size_bytes,
        )
        return context

    def endpoint(self, spec: TransferEndpoint) -> Endpoint:
        """Build the transfer endpoint for one side of a transfer request.

        :raises NotFoundError: the location is not configured.
        """
        if spec.type == EndpointType.LOCAL:
            self.registry.get_local(spec.location_id)
            return LocalEndpoint(self.sandbox, spec.location_id, spec.path, chunk_size=self.settings.transfer_chunk_size)
        location = self.registry.get_remote(spec.location_id)
        return S3Endpoint(
            self.s3_client,
            location.bucket_name,
            spec.path,
            chunk_size=self.settings.transfer_chunk_size,
            part_size=self.settings.transfer_part_size,
        )

    async def shutdown(self) -> None:
        if self.orchestrator is not None:
            await self.orchestrator.shutdown()
        self.rate_limiter.clear()
        logger.info("Storage context shut down")
