"""
API tests for the telemetry, worker and system endpoints.

The app runs against the test SQLite database; MinIO and the LLM are
replaced with the in-memory fakes from conftest.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from conftest import SAMPLE_CSV, FakeArtifactStore, FakeInferenceClient, drop_tables
from pitwall.core.analysis.job_orchestrator import JobOutcome, JobResult, job_orchestrator
from pitwall.main import app

DRIVER = {"X-User-Id": "driver-1"}
OTHER_DRIVER = {"X-User-Id": "driver-2"}


@pytest.fixture
def fakes():
    store = FakeArtifactStore()
    llm = FakeInferenceClient()
    with patch("pitwall.api.v1.routers.telemetry.artifact_store", store), \
         patch("pitwall.api.v1.routers.system.artifact_store", store), \
         patch.object(job_orchestrator, "_artifact_store", store), \
         patch.object(job_orchestrator, "_inference_client", llm):
        yield store, llm


@pytest.fixture
def client(fakes):
    with TestClient(app) as test_client:
        yield test_client
    asyncio.run(drop_tables())


def _upload(client, content=SAMPLE_CSV, headers=DRIVER, **form):
    data = {"sim": "iRacing", "track": "Spa", "car": "GT3"}
    data.update(form)
    return client.post(
        "/api/v1/telemetry/uploads",
        headers=headers,
        files={"file": ("session.csv", content, "text/csv")},
        data=data,
    )


class TestUploads:

    def test_upload_stores_artifact(self, client, fakes):
        store, _ = fakes

        response = _upload(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "uploaded"
        assert body["track"] == "Spa"
        assert body["size_bytes"] == len(SAMPLE_CSV)
        assert body["has_report"] is False
        assert len(store.objects) == 1
        assert list(store.objects)[0].startswith(f"driver-1/{body['id']}/")

    def test_missing_identity_is_unauthorized(self, client):
        response = _upload(client, headers={})

        assert response.status_code == 401
        assert response.json()["error"] == "HTTP 401"

    def test_empty_file_is_rejected(self, client):
        response = _upload(client, content="")

        assert response.status_code == 400

    def test_oversized_file_is_rejected(self, client):
        with patch("pitwall.api.v1.routers.telemetry.settings.max_file_size", 10):
            response = _upload(client)

        assert response.status_code == 413

    def test_list_is_scoped_to_owner(self, client):
        mine = _upload(client).json()
        _upload(client, headers=OTHER_DRIVER)

        response = client.get("/api/v1/telemetry/uploads", headers=DRIVER)

        assert response.status_code == 200
        uploads = response.json()["uploads"]
        assert [u["id"] for u in uploads] == [mine["id"]]


class TestAnalyze:

    def test_analyze_produces_report(self, client, fakes):
        _, llm = fakes
        upload_id = _upload(client).json()["id"]

        response = client.post("/api/v1/telemetry/analyze", headers=DRIVER, json={"uploadId": upload_id})

        assert response.status_code == 200
        assert response.json() == {"status": "processed", "uploadId": upload_id}
        assert len(llm.calls) == 1

        status = client.get(f"/api/v1/telemetry/status?uploadId={upload_id}", headers=DRIVER).json()
        assert status["status"] == "reported"
        assert status["report"]["status"] == "ok"

        listed = client.get("/api/v1/telemetry/uploads", headers=DRIVER).json()["uploads"]
        assert listed[0]["has_report"] is True

    def test_analyze_twice_does_not_rerun(self, client, fakes):
        _, llm = fakes
        upload_id = _upload(client).json()["id"]

        client.post("/api/v1/telemetry/analyze", headers=DRIVER, json={"uploadId": upload_id})
        response = client.post("/api/v1/telemetry/analyze", headers=DRIVER, json={"uploadId": upload_id})

        assert response.json()["status"] == "processed"
        assert len(llm.calls) == 1

    def test_missing_upload_id_is_bad_request(self, client):
        response = client.post("/api/v1/telemetry/analyze", headers=DRIVER, json={})

        assert response.status_code == 400

    def test_foreign_upload_is_not_found(self, client):
        upload_id = _upload(client).json()["id"]

        response = client.post("/api/v1/telemetry/analyze", headers=OTHER_DRIVER, json={"uploadId": upload_id})

        assert response.status_code == 404

    def test_malformed_upload_id_is_not_found(self, client):
        response = client.post("/api/v1/telemetry/analyze", headers=DRIVER, json={"uploadId": "nope"})

        assert response.status_code == 404

    def test_failed_execution_is_server_error(self, client, fakes):
        store, _ = fakes
        upload_id = _upload(client).json()["id"]
        store.objects.clear()

        response = client.post("/api/v1/telemetry/analyze", headers=DRIVER, json={"uploadId": upload_id})

        assert response.status_code == 500
        assert "not found" in response.json()["detail"]
        status = client.get(f"/api/v1/telemetry/status?uploadId={upload_id}", headers=DRIVER).json()
        assert status["status"] == "error"


class TestJobsAndStatus:

    def test_enqueue_then_status_kick(self, client, fakes):
        _, llm = fakes
        upload_id = _upload(client).json()["id"]

        response = client.post("/api/v1/telemetry/jobs", headers=DRIVER, json={"uploadId": upload_id})
        assert response.status_code == 200
        assert response.json() == {"ok": True}
        assert llm.calls == []

        status = client.get("/api/v1/telemetry/status", params={"uploadId": upload_id}, headers=DRIVER)
        assert status.status_code == 200
        assert status.json()["status"] == "reported"
        assert len(llm.calls) == 1

    def test_status_without_kick(self, client, fakes):
        _, llm = fakes
        upload_id = _upload(client).json()["id"]
        client.post("/api/v1/telemetry/jobs", headers=DRIVER, json={"uploadId": upload_id})

        with patch("pitwall.api.v1.routers.telemetry.settings.status_inline_kick", False):
            status = client.get("/api/v1/telemetry/status", params={"uploadId": upload_id}, headers=DRIVER)

        assert status.json() == {"status": "processing", "report": None}
        assert llm.calls == []

    def test_enqueue_dispatches_to_celery_when_enabled(self, client):
        upload_id = _upload(client).json()["id"]

        with patch("pitwall.api.v1.routers.telemetry.settings.use_celery", True), \
             patch("pitwall.core.tasks.analysis.process_upload_analysis") as mock_task:
            client.post("/api/v1/telemetry/jobs", headers=DRIVER, json={"uploadId": upload_id})

        mock_task.apply_async.assert_called_once_with(args=[upload_id])

    def test_status_requires_upload_id(self, client):
        assert client.get("/api/v1/telemetry/status", headers=DRIVER).status_code == 400

    def test_preview(self, client):
        upload_id = _upload(client).json()["id"]

        response = client.get("/api/v1/telemetry/preview", params={"uploadId": upload_id}, headers=DRIVER)

        assert response.status_code == 200
        body = response.json()
        assert body["upload"]["id"] == upload_id
        assert body["preview"]["headers"] == ["Time", "Distance", "Speed", "Throttle", "Brake", "Gear"]
        assert len(body["preview"]["rows"]) == 4


class TestWorkerEndpoints:

    @pytest.mark.parametrize("outcome,expected", [
        (JobOutcome.IDLE, {"message": "No pending jobs"}),
        (JobOutcome.PROCESSING, {"message": "Job already processing"}),
        (JobOutcome.PROCESSED, {"message": "Processed job"}),
    ])
    def test_worker_responses(self, client, outcome, expected):
        result = JobResult(outcome)
        with patch.object(job_orchestrator, "pick_next_pending", AsyncMock(return_value=result)):
            response = client.post("/api/v1/telemetry/worker")

        assert response.status_code == 200
        assert response.json() == expected

    def test_worker_processes_real_job(self, client):
        upload_id = _upload(client).json()["id"]
        client.post("/api/v1/telemetry/jobs", headers=DRIVER, json={"uploadId": upload_id})

        response = client.post("/api/v1/telemetry/worker")

        assert response.json() == {"message": "Processed job", "uploadId": upload_id}
        assert client.post("/api/v1/telemetry/worker").json() == {"message": "No pending jobs"}

    def test_worker_error_is_server_error(self, client):
        result = JobResult(JobOutcome.ERROR, message="Unable to read job status")
        with patch.object(job_orchestrator, "pick_next_pending", AsyncMock(return_value=result)):
            response = client.get("/api/v1/cron/process")

        assert response.status_code == 500
        assert response.json()["detail"] == "Unable to read job status"

    def test_worker_secret_is_enforced(self, client):
        with patch("pitwall.dependencies.settings.worker_secret", "s3cret"):
            assert client.post("/api/v1/telemetry/worker").status_code == 401
            assert client.post(
                "/api/v1/telemetry/worker", headers={"X-Worker-Secret": "wrong"}
            ).status_code == 401
            assert client.post(
                "/api/v1/telemetry/worker", headers={"X-Worker-Secret": "s3cret"}
            ).status_code == 200

    def test_cron_secret_is_enforced(self, client):
        with patch("pitwall.dependencies.settings.worker_secret", "s3cret"):
            assert client.get("/api/v1/cron/process?secret=nope").status_code == 401
            assert client.get("/api/v1/cron/process?secret=s3cret").status_code == 200


class TestSystem:

    def test_health(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"]["connected"] is True
        assert body["llm_connected"] is False
        assert body["llm"]["error"] == "No API key configured"
        assert body["storage_available"] is True

    def test_health_is_degraded_when_storage_is_unreachable(self, client, fakes):
        store, _ = fakes
        store.healthy = False

        body = client.get("/api/v1/health").json()

        assert body["status"] == "degraded"
        assert body["storage_available"] is False
        assert body["database"]["connected"] is True

    def test_health_reports_llm_connection(self, client):
        llm_status = {"connected": True, "model": "gpt-test"}
        with patch(
            "pitwall.api.v1.routers.system.inference_client.test_connection",
            AsyncMock(return_value=llm_status),
        ):
            body = client.get("/api/v1/health").json()

        assert body["llm_connected"] is True
        assert body["llm"] == llm_status

    def test_root(self, client):
        assert client.get("/").json()["health"] == "/api/v1/health"
