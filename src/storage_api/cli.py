# cli.py
import asyncio
import logging

import click

from storage_api.locations import LocationRegistry
from storage_api.s3.client import create_s3_client
from storage_api.s3.read_objects import S3ObjectLister
from storage_api.search.scanner import BoundedObjectScanner, ScanLimits, SearchMode
from storage_api.settings import get_settings

# Configure logging
logger = logging.getLogger(__name__)


@click.group()
def cli():
    """CLI commands for the storage API"""
    pass


@cli.command()
def show_config():
    """Show current configuration"""
    settings = get_settings()

    print("Current Configuration:")
    for key, value in settings.get_environment_dict().items():
        print(f"  {key}: {value}")


@cli.command()
def locations():
    """List configured storage locations and whether they are reachable"""
    registry = LocationRegistry.from_settings(get_settings())
    for location in registry.all():
        marker = "ok" if location.available else "unavailable"
        target = location.root_path or f"s3://{location.bucket_name}"
        print(f"  {location.id:<12} {location.kind.value:<6} {target} [{marker}]")
    if registry.allow_any_bucket:
        print("  (no S3_BUCKETS configured: any reachable bucket may be browsed)")


@cli.command()
@click.argument("bucket")
@click.argument("query")
@click.option("--mode", type=click.Choice([mode.value for mode in SearchMode]), default=SearchMode.CONTAINS.value)
@click.option("--prefix", default="", help="Only search below this prefix")
@click.option("--max-results", default=100, show_default=True)
@click.option("--cursor", default=None, help="Resume a previous search")
def search(bucket, query, mode, prefix, max_results, cursor):
    """Run one bounded search against BUCKET and print the matches"""
    settings = get_settings()
    scanner = BoundedObjectScanner(
        S3ObjectLister(create_s3_client(settings)),
        ScanLimits(
            max_pages=settings.max_scan_pages,
            max_objects=settings.max_objects_examined,
            timeout_seconds=settings.scan_timeout_seconds,
            page_size=settings.listing_page_size,
        ),
    )
    scan = scanner.scan(bucket, query, mode=SearchMode(mode), prefix=prefix, max_results=max_results, cursor=cursor)
    result = asyncio.run(scan.collect())

    for match in result.entries:
        print(f"  {'DIR ' if match.is_prefix else '    '}{match.key}")
    state = result.state
    print(
        f"{len(result.entries)} matches; {state.pages_scanned} pages, "
        f"{state.objects_examined} objects examined; stopped: {state.stop_reason.value}"
    )
    if result.next_cursor:
        print(f"Resume with --cursor {result.next_cursor}")


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8000, show_default=True)
@click.option("--reload", is_flag=True, help="Reload on code changes")
def serve(host, port, reload):
    """Run the API with uvicorn"""
    import uvicorn

    uvicorn.run("storage_api.main:create_app", factory=True, host=host, port=port, reload=reload)


if __name__ == "__main__":
    cli()
