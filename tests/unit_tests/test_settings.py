import pytest
from pydantic import ValidationError

from storage_api.locations import LocationKind, LocationRegistry
from storage_api.errors import NotFoundError
from storage_api.settings import Settings
from tests.consts import TEST_BUCKET_NAME


def test_settings_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("LOCAL_STORAGE_PATHS", f"{tmp_path}/a, {tmp_path}/b")
    monkeypatch.setenv("S3_BUCKETS", "models,datasets")
    monkeypatch.setenv("MAX_CONCURRENT_TRANSFERS", "4")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings(_env_file=None)

    assert settings.local_storage_roots == [f"{tmp_path}/a", f"{tmp_path}/b"]
    assert settings.bucket_names == ["models", "datasets"]
    assert settings.max_concurrent_transfers == 4
    assert settings.log_level == "DEBUG"
    assert settings.rate_limits["contains-search"] == 5


def test_settings_reject_bad_values():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, local_storage_paths=" , ")
    with pytest.raises(ValidationError):
        Settings(_env_file=None, log_level="LOUD")
    with pytest.raises(ValidationError):
        Settings(_env_file=None, max_concurrent_transfers=0)


def test_environment_dict_masks_credentials():
    settings = Settings(_env_file=None, aws_access_key_id="AKIA123", aws_secret_access_key="secret")
    env = settings.get_environment_dict()
    assert env["AWS_ACCESS_KEY_ID"] == "***"
    assert "secret" not in env.values()


def test_registry_from_settings(settings, local_roots, tmp_path):
    registry = LocationRegistry.from_settings(settings)

    local = registry.local()
    assert [loc.id for loc in local] == ["local-0", "local-1"]
    assert all(loc.available for loc in local)
    assert registry.get_remote(TEST_BUCKET_NAME).kind == LocationKind.REMOTE
    with pytest.raises(NotFoundError):
        registry.get_remote("not-configured")
    with pytest.raises(NotFoundError):
        registry.get_local(TEST_BUCKET_NAME)


def test_registry_marks_missing_roots_unavailable(settings, tmp_path):
    settings = settings.model_copy(update={"local_storage_paths": f"{tmp_path}/missing"})
    registry = LocationRegistry.from_settings(settings)
    assert not registry.get_local("local-0").available

    (tmp_path / "missing").mkdir()
    registry.refresh_availability()
    assert registry.get_local("local-0").available


def test_registry_without_buckets_allows_any(settings):
    registry = LocationRegistry.from_settings(settings.model_copy(update={"s3_buckets": ""}))
    assert registry.get_remote("any-bucket").bucket_name == "any-bucket"
