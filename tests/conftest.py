import boto3
import pytest
from fastapi.testclient import TestClient
from moto import mock_aws

from storage_api.context import StorageContext
from storage_api.main import create_app
from storage_api.settings import Settings
from tests.consts import OTHER_BUCKET_NAME, TEST_BUCKET_NAME


@pytest.fixture
def local_roots(tmp_path):
    """Two empty local storage roots, exposed as local-0 and local-1."""
    roots = [tmp_path / "root0", tmp_path / "root1"]
    for root in roots:
        root.mkdir()
    return [str(root) for root in roots]


@pytest.fixture
def settings(local_roots) -> Settings:
    return Settings(
        _env_file=None,
        local_storage_paths=",".join(local_roots),
        s3_buckets=f"{TEST_BUCKET_NAME},{OTHER_BUCKET_NAME}",
        aws_region="us-east-1",
        transfer_retry_delay_seconds=0,
    )


@pytest.fixture
def mocked_aws(monkeypatch):
    """Point boto3 at moto with fake credentials and create the test buckets."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.delenv("AWS_PROFILE", raising=False)

    with mock_aws():
        s3_client = boto3.client("s3", region_name="us-east-1")
        s3_client.create_bucket(Bucket=TEST_BUCKET_NAME)
        s3_client.create_bucket(Bucket=OTHER_BUCKET_NAME)
        yield


@pytest.fixture
def s3_client(mocked_aws):
    return boto3.client("s3", region_name="us-east-1")


@pytest.fixture
def context(settings, s3_client) -> StorageContext:
    return StorageContext.from_settings(settings, s3_client=s3_client)


@pytest.fixture
def client(settings, s3_client) -> TestClient:
    app = create_app(settings=settings, s3_client=s3_client)
    with TestClient(app) as client:
        yield client
