import time

import pytest
from fastapi.testclient import TestClient

from api.schemas import ImageInfo
from config import Settings
from engine.models import JobStatus
from engine.services import ScanflowServices
from main import create_app


class FakeScanService:
    def local_inventory(self, targets=None):
        return [
            ImageInfo(id="local-nginx", name="nginx", tag="1.27", source="LOCAL_DOCKER"),
            ImageInfo(id="local-alpine", name="alpine", tag="3.19", source="LOCAL_DOCKER"),
        ]


@pytest.fixture
def services(persistence, make_executor):
    return ScanflowServices(Settings(), persistence=persistence,
                            executor=make_executor(failures={"redis"}), scan_service=FakeScanService())


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def wait_for_batch(client, batch_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        batch = client.get(f"/scans/batches/{batch_id}").json()
        if batch["status"] in ("COMPLETED", "PARTIAL", "FAILED"):
            return batch
        time.sleep(0.02)
    raise AssertionError(f"batch {batch_id} did not finish")


def create_scan(client, **body):
    resp = client.post("/scheduled-scans", json={"name": "nightly", **body})
    assert resp.status_code == 201
    return resp.json()["id"]


def test_health_check(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert "X-Trace-Id" in resp.headers


def test_execute_scheduled_scan(client, images):
    scan_id = create_scan(client, imageIds=[images[0].id, images[2].id])
    resp = client.post(f"/scheduled-scans/{scan_id}/execute")
    assert resp.status_code == 202
    data = resp.json()
    assert data["status"] == "STARTED"
    assert data["totalTargets"] == 2
    assert data["executionId"] and data["batchId"]

    batch = wait_for_batch(client, data["batchId"])
    assert batch["status"] == "PARTIAL"
    assert (batch["completedCount"], batch["failedCount"]) == (1, 1)


def test_execute_unknown_scheduled_scan(client):
    resp = client.post("/scheduled-scans/missing/execute")
    assert resp.status_code == 404
    assert resp.json()["success"] is False


def test_execute_disabled_scheduled_scan(client, images):
    scan_id = create_scan(client, enabled=False, imageIds=[images[0].id])
    resp = client.post(f"/scheduled-scans/{scan_id}/execute")
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Scheduled scan is disabled"}


def test_execute_pattern_without_matches(client, images):
    scan_id = create_scan(client, selectionMode="PATTERN", imagePattern="^nothing-here")
    resp = client.post(f"/scheduled-scans/{scan_id}/execute")
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "No images found to scan"}
    assert client.get("/scans/jobs").json() == {"jobs": [], "queuedScans": []}


def test_execute_invalid_pattern(client, images):
    scan_id = create_scan(client, selectionMode="PATTERN", imagePattern="(")
    resp = client.post(f"/scheduled-scans/{scan_id}/execute")
    assert resp.status_code == 400
    assert "Invalid image pattern" in resp.json()["error"]


def test_execute_repository_mode(client):
    scan_id = create_scan(client, selectionMode="REPOSITORY")
    resp = client.post(f"/scheduled-scans/{scan_id}/execute")
    assert resp.status_code == 501
    assert resp.json()["success"] is False


def test_list_scheduled_scans(client, images):
    scan_id = create_scan(client, imageIds=[images[1].id])
    scans = client.get("/scheduled-scans").json()
    assert [scan["id"] for scan in scans] == [scan_id]
    assert scans[0]["imageIds"] == [images[1].id]


def test_ad_hoc_batch(client, images):
    resp = client.post("/scans/batches", json={"imageIds": [images[0].id, images[1].id]})
    assert resp.status_code == 202
    batch = wait_for_batch(client, resp.json()["batchId"])
    assert batch["status"] == "COMPLETED"
    assert batch["completedAt"] is not None


def test_ad_hoc_batch_unknown_image(client):
    resp = client.post("/scans/batches", json={"imageIds": ["missing"]})
    assert resp.status_code == 404


def test_get_unknown_batch(client):
    resp = client.get("/scans/batches/missing")
    assert resp.status_code == 404
    assert resp.json()["success"] is False


def test_cancel_finished_batch(client, images):
    resp = client.post("/scans/batches", json={"imageIds": [images[0].id]})
    batch_id = resp.json()["batchId"]
    wait_for_batch(client, batch_id)
    resp = client.post(f"/scans/batches/{batch_id}/cancel")
    assert resp.status_code == 409


def test_jobs_snapshot_shape(client, persistence, images):
    batch = persistence.create_batch(None, 2, "API")
    first = persistence.create_job(batch.batch_id, images[0], 1)
    persistence.create_job(batch.batch_id, images[1], 2)
    persistence.update_job(first.job_id, status=JobStatus.RUNNING, progress=25)

    data = client.get("/scans/jobs").json()
    assert [job["requestId"] for job in data["jobs"]] == [first.job_id]
    assert data["jobs"][0]["progress"] == 25
    assert data["jobs"][0]["imageName"] == images[0].reference
    assert data["queuedScans"][0]["queuePosition"] == 1


def test_target_sync_and_list(client):
    resp = client.post("/target/sync")
    assert resp.json()["success"] is True
    assert resp.json()["count"] == 2
    names = [image["name"] for image in client.get("/target/list").json()]
    assert names == ["alpine", "nginx"]


def test_startup_recovers_interrupted_batches(persistence, services):
    batch = persistence.create_batch(None, 1, "API")
    with TestClient(create_app(services)) as client:
        resp = client.get(f"/scans/batches/{batch.batch_id}")
    assert resp.json()["status"] == "FAILED"
    assert resp.json()["errorMessage"] == "Interrupted by server restart"
