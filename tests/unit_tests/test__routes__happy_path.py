import base64
import json
import os
import time

from fastapi import status
from fastapi.testclient import TestClient

from storage_api.main import create_app
from tests.consts import TEST_BUCKET_NAME
from tests.utils import write_file


def b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def wait_for_job(client: TestClient, job_id: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        job = client.get(f"/v1/transfer/{job_id}").json()
        if job["state"] in ("completed", "failed", "cancelled"):
            return job
        assert time.monotonic() < deadline, f"job still {job['state']}"
        time.sleep(0.05)


def test__health(client: TestClient):
    response = client.get("/health")
    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["status"] == "ok"
    assert body["components"]["local_locations"] == {"local-0": True, "local-1": True}


def test__list_locations(client: TestClient, local_roots):
    response = client.get("/v1/local/locations")
    assert response.status_code == status.HTTP_200_OK
    locations = {loc["id"]: loc for loc in response.json()["locations"]}
    assert locations["local-0"]["type"] == "local"
    assert locations["local-0"]["path"] == os.path.realpath(local_roots[0])
    assert locations[TEST_BUCKET_NAME]["type"] == "s3"


def test__upload_list_download_delete(client: TestClient, local_roots):
    # upload into a directory that does not exist yet
    response = client.post(
        f"/v1/local/files/local-0/{b64('docs/2024')}",
        files={"file": ("notes.txt", b"hello world", "text/plain")},
    )
    assert response.status_code == status.HTTP_201_CREATED
    assert response.json() == {"uploaded": True, "path": "docs/2024/notes.txt", "size_bytes": 11}

    # the same file again is a conflict
    response = client.post(
        f"/v1/local/files/local-0/{b64('docs/2024')}",
        files={"file": ("notes.txt", b"again", "text/plain")},
    )
    assert response.status_code == status.HTTP_409_CONFLICT

    # list
    write_file(local_roots[0], "docs/readme.md", b"# docs")
    response = client.get(f"/v1/local/files/local-0/{b64('docs')}")
    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["total_count"] == 2
    assert [(f["name"], f["type"]) for f in body["files"]] == [("2024", "directory"), ("readme.md", "file")]

    response = client.get("/v1/local/files/local-0", params={"limit": 1, "offset": 0})
    assert response.json()["files"][0]["path"] == "docs"

    # download
    response = client.get(f"/v1/local/download/local-0/{b64('docs/2024/notes.txt')}")
    assert response.status_code == status.HTTP_200_OK
    assert response.content == b"hello world"
    assert "notes.txt" in response.headers["content-disposition"]

    # quota reflects the upload
    quota = client.get("/v1/local/quota/local-0").json()
    assert (quota["used_bytes"], quota["used_files"]) == (11, 1)

    # delete the whole directory
    response = client.delete(f"/v1/local/files/local-0/{b64('docs')}")
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["deleted_files"] == 2
    assert not os.path.exists(os.path.join(local_roots[0], "docs"))
    quota = client.get("/v1/local/quota/local-0").json()
    assert (quota["used_bytes"], quota["used_files"]) == (0, 0)


def test__upload_never_replaces_a_file_created_after_the_existence_check(client: TestClient, local_roots, monkeypatch):
    write_file(local_roots[0], "notes.txt", b"first")
    # Another upload lands between the existence check and the commit.
    monkeypatch.setattr(os.path, "lexists", lambda path: False)

    response = client.post("/v1/local/files/local-0", files={"file": ("notes.txt", b"second", "text/plain")})
    assert response.status_code == status.HTTP_409_CONFLICT
    with open(os.path.join(local_roots[0], "notes.txt"), "rb") as f:
        assert f.read() == b"first"
    assert os.listdir(local_roots[0]) == ["notes.txt"]
    quota = client.get("/v1/local/quota/local-0").json()
    assert (quota["used_bytes"], quota["used_files"], quota["reserved_bytes"]) == (0, 0, 0)


def test__upload_blocked_file_type(client: TestClient, local_roots):
    response = client.post("/v1/local/files/local-0", files={"file": ("run.sh", b"rm -rf /", "text/plain")})
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "blocked" in response.json()["message"]
    assert os.listdir(local_roots[0]) == []


def test__create_directory(client: TestClient, local_roots):
    response = client.post(f"/v1/local/directories/local-1/{b64('a/b/c')}")
    assert response.status_code == status.HTTP_201_CREATED
    assert response.json() == {"created": True, "path": "a/b/c"}
    assert os.path.isdir(os.path.join(local_roots[1], "a", "b", "c"))


def test__path_traversal_is_forbidden(client: TestClient):
    for encoded in (b64("../../etc"), b64("/etc/passwd"), b64("%2e%2e/%2e%2e/etc")):
        response = client.get(f"/v1/local/files/local-0/{encoded}")
        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["error"] == "SecurityError"

    response = client.delete(f"/v1/local/files/local-0/{b64('../root1')}")
    assert response.status_code == status.HTTP_403_FORBIDDEN


def test__unknown_location(client: TestClient):
    response = client.get("/v1/local/files/local-7")
    assert response.status_code == status.HTTP_404_NOT_FOUND


def test__list_objects(client: TestClient, s3_client):
    for key in ("data/a.csv", "data/b.csv", "data/archive/old.csv", "top.txt"):
        s3_client.put_object(Bucket=TEST_BUCKET_NAME, Key=key, Body=b"1,2,3")

    response = client.get(f"/v1/objects/{TEST_BUCKET_NAME}", params={"prefix": b64("data/")})
    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert [obj["key"] for obj in body["objects"]] == ["data/a.csv", "data/b.csv"]
    assert body["objects"][0]["size_bytes"] == 5
    assert [p["name"] for p in body["common_prefixes"]] == ["archive"]
    assert body["is_truncated"] is False


def test__list_objects_unknown_or_invalid_bucket(client: TestClient):
    assert client.get("/v1/objects/not-configured-bucket").status_code == status.HTTP_404_NOT_FOUND
    assert client.get("/v1/objects/Bad_Bucket").status_code == status.HTTP_400_BAD_REQUEST


def test__search(client: TestClient, s3_client):
    for key in ("reports/q1-report.pdf", "reports/q2-REPORT.pdf", "reports/summary.txt", "reports/sub/report.pdf"):
        s3_client.put_object(Bucket=TEST_BUCKET_NAME, Key=key, Body=b"x")

    response = client.get(
        f"/v1/objects/{TEST_BUCKET_NAME}/search", params={"q": "report", "prefix": b64("reports/")}
    )
    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert [entry["key"] for entry in body["entries"]] == ["reports/q1-report.pdf", "reports/q2-REPORT.pdf"]
    assert body["truncated"] is False
    assert body["next_cursor"] is None
    assert body["scan_meta"] == {"pages_scanned": 1, "objects_examined": 4, "stop_reason": "bucket_exhausted"}

    response = client.get(
        f"/v1/objects/{TEST_BUCKET_NAME}/search",
        params={"q": "su", "mode": "prefix", "prefix": b64("reports/")},
    )
    assert [entry["key"] for entry in response.json()["entries"]] == ["reports/sub/", "reports/summary.txt"]


def test__search_validation(client: TestClient):
    url = f"/v1/objects/{TEST_BUCKET_NAME}/search"
    assert client.get(url, params={"q": ""}).status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
    assert client.get(url, params={"q": "a", "max_results": 5000}).status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
    assert client.get(url, params={"q": "a", "cursor": "bm9wZQ"}).status_code == status.HTTP_400_BAD_REQUEST


def test__contains_search_is_rate_limited(settings, s3_client):
    app = create_app(settings=settings.model_copy(update={"rate_limit_contains_search": 2}), s3_client=s3_client)
    with TestClient(app) as client:
        url = f"/v1/objects/{TEST_BUCKET_NAME}/search"
        for _ in range(2):
            assert client.get(url, params={"q": "a"}).status_code == status.HTTP_200_OK

        response = client.get(url, params={"q": "a"})
        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert int(response.headers["retry-after"]) > 0
        assert response.json()["retry_after"] > 0

        # prefix searches are not counted against the contains-search limit
        response = client.get(url, params={"q": "a", "mode": "prefix"})
        assert response.status_code == status.HTTP_200_OK


def test__transfer_lifecycle(client: TestClient, s3_client, local_roots):
    s3_client.put_object(Bucket=TEST_BUCKET_NAME, Key="models/m1/config.json", Body=b'{"layers": 2}')
    s3_client.put_object(Bucket=TEST_BUCKET_NAME, Key="models/m1/weights.bin", Body=b"w" * 1000)

    response = client.post(
        "/v1/transfer",
        json={
            "source": {"type": "s3", "location_id": TEST_BUCKET_NAME, "path": "models/m1"},
            "destination": {"type": "local", "location_id": "local-0", "path": "downloads"},
            "files": ["config.json", "weights.bin"],
        },
    )
    assert response.status_code == status.HTTP_202_ACCEPTED
    job_id = response.json()["job_id"]
    assert response.json()["progress_url"] == f"/v1/transfer/{job_id}/progress"

    job = wait_for_job(client, job_id)
    assert job["state"] == "completed"
    assert job["bytes_transferred"] == job["bytes_total"] == 1013
    with open(os.path.join(local_roots[0], "downloads", "weights.bin"), "rb") as f:
        assert f.read() == b"w" * 1000

    # the progress stream of a finished job replays its final snapshot and ends
    response = client.get(f"/v1/transfer/{job_id}/progress")
    assert response.headers["content-type"].startswith("text/event-stream")
    events = [json.loads(line[len("data: "):]) for line in response.text.splitlines() if line.startswith("data: ")]
    assert events[-1]["terminal"] is True
    assert events[-1]["state"] == "completed"

    assert [job["job_id"] for job in client.get("/v1/transfer").json()] == [job_id]

    response = client.post(
        "/v1/transfer/check-conflicts",
        json={"destination": {"type": "local", "location_id": "local-0", "path": "downloads"}, "files": ["config.json", "other.json"]},
    )
    assert response.json() == {"conflicts": ["config.json"]}

    # cleanup is only for cancelled jobs
    assert client.post(f"/v1/transfer/{job_id}/cleanup").status_code == status.HTTP_409_CONFLICT
    # cancelling a finished job changes nothing
    assert client.delete(f"/v1/transfer/{job_id}").json()["state"] == "completed"

    assert client.post(f"/v1/transfer/{job_id}/acknowledge").status_code == status.HTTP_200_OK
    assert client.get(f"/v1/transfer/{job_id}").status_code == status.HTTP_404_NOT_FOUND


def test__transfer_rejections(settings, s3_client, local_roots):
    write_file(local_roots[0], "big.bin", b"x" * 100)
    app = create_app(settings=settings.model_copy(update={"quota_max_bytes": 50}), s3_client=s3_client)
    with TestClient(app) as client:
        body = {
            "source": {"type": "local", "location_id": "local-0"},
            "destination": {"type": "local", "location_id": "local-1"},
            "files": ["big.bin"],
        }
        response = client.post("/v1/transfer", json=body)
        assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
        assert response.json()["error"] == "QuotaExceeded"

        response = client.post("/v1/transfer", json={**body, "files": ["../root1/big.bin"]})
        assert response.status_code == status.HTTP_403_FORBIDDEN

        response = client.post("/v1/transfer", json={**body, "files": ["missing.bin"]})
        assert response.status_code == status.HTTP_404_NOT_FOUND

        response = client.post("/v1/transfer", json={**body, "files": []})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

        assert client.get("/v1/transfer").json() == []
        assert os.listdir(local_roots[1]) == []


def test__unknown_transfer_job(client: TestClient):
    assert client.get("/v1/transfer/does-not-exist").status_code == status.HTTP_404_NOT_FOUND
    assert client.delete("/v1/transfer/does-not-exist").status_code == status.HTTP_404_NOT_FOUND
