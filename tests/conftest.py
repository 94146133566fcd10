import asyncio
import os
import shutil
import tempfile
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio


# Point the database at a throwaway SQLite file before importing app modules.
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="pitwall_pytest_"))

os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_SESSION_DIR / 'pitwall_test.db'}")

# Keep external integrations quiet during tests
os.environ.setdefault("USE_CELERY", "false")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("OPENAI_API_KEY", "")
os.environ.setdefault("ANALYSIS_SWEEP_ENABLED", "true")

from pitwall.core.analysis.job_orchestrator import JobOrchestrator  # noqa: E402
from pitwall.core.database.base import Base  # noqa: E402
from pitwall.core.database.models import AnalysisJob, JobStatus, Upload, UploadStatus  # noqa: E402
from pitwall.core.llm.inference_client import InsightRequest  # noqa: E402
from pitwall.core.shared.database_service import database_service  # noqa: E402
from pitwall.core.storage.artifact_store import ArtifactNotFoundError  # noqa: E402


SAMPLE_CSV = (
    "Time,Distance,Speed,Throttle,Brake,Gear\n"
    "0.00,0,142.1,1.00,0.00,5\n"
    "0.05,3,142.6,1.00,0.00,5\n"
    "0.10,6,139.8,0.00,0.82,4\n"
    "0.15,9,121.4,0.00,0.95,3\n"
)

GOOD_INSIGHTS = {
    "summary": "Consistent laps with late braking into T1.",
    "recommendations": [{"title": "Brake earlier", "detail": "Move the T1 brake point 10m earlier."}],
    "sections": {
        "pace": "What's working:\n- Stable lap times",
        "braking": "Needs improvement:\n- Trail off sooner",
        "throttle": "What's working:\n- Smooth exits",
        "corners": "Needs improvement:\n- Apex T3 later",
        "sessionPlan": "- Three runs of five laps",
    },
    "segments": [
        {"name": "Turn 1", "issue": "Locking fronts", "improvement": "- Brake at 100m", "metric": "Brake 95%"},
    ],
}


def pytest_sessionfinish(session, exitstatus):
    """Cleanup temporary test files after the test session."""
    shutil.rmtree(_SESSION_DIR, ignore_errors=True)


class FakeArtifactStore:
    """In-memory stand-in for the MinIO artifact store."""

    def __init__(self, healthy: bool = True):
        self.objects: Dict[str, bytes] = {}
        self.healthy = healthy

    async def upload(self, storage_path: str, data: bytes, content_type: str = "text/csv") -> str:
        self.objects[storage_path] = data
        return "etag"

    async def download(self, storage_path: str) -> bytes:
        if storage_path not in self.objects:
            raise ArtifactNotFoundError(f"Telemetry file not found: {storage_path}")
        return self.objects[storage_path]

    async def check_health(self) -> bool:
        return self.healthy


class FakeInferenceClient:
    """Records calls; returns ``payload`` after ``delay`` or raises ``error``."""

    model_name = "fake-model"

    def __init__(self, payload: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None, delay: float = 0):
        self.payload = GOOD_INSIGHTS if payload is None else payload
        self.error = error
        self.delay = delay
        self.calls: List[InsightRequest] = []

    async def produce_insights(self, request: InsightRequest) -> Dict[str, Any]:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.payload


async def create_tables() -> None:
    await database_service.init_db()


async def drop_tables() -> None:
    async with database_service._engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Pooled connections must not outlive the event loop that opened them.
    await database_service.close()


@pytest_asyncio.fixture
async def db():
    """Fresh tables for each test."""
    await create_tables()
    yield database_service
    await drop_tables()


@pytest.fixture
def artifact_store():
    return FakeArtifactStore()


@pytest.fixture
def inference_client():
    return FakeInferenceClient()


@pytest.fixture
def orchestrator(db, artifact_store, inference_client):
    return JobOrchestrator(
        session_scope=database_service.get_session,
        artifact_store=artifact_store,
        inference_client=inference_client,
        stale_after_seconds=60,
        inference_timeout=2,
        max_attempts=5,
    )


async def make_upload(
    artifact_store: Optional[FakeArtifactStore] = None,
    content: bytes = SAMPLE_CSV.encode("utf-8"),
    user_id: str = "driver-1",
    status: str = UploadStatus.UPLOADED.value,
    created_at: Optional[datetime] = None,
) -> Upload:
    upload_id = uuid.uuid4()
    upload = Upload(
        id=upload_id,
        user_id=user_id,
        filename="session.csv",
        size_bytes=len(content),
        storage_path=f"{user_id}/{upload_id}/session.csv",
        sim="iRacing",
        track="Spa",
        car="GT3",
        status=status,
        created_at=created_at or datetime.utcnow(),
    )
    if artifact_store is not None:
        artifact_store.objects[upload.storage_path] = content
    async with database_service.get_session() as session:
        session.add(upload)
    return upload


async def make_job(
    upload_id: uuid.UUID,
    status: str = JobStatus.PENDING.value,
    attempts: int = 0,
    updated_at: Optional[datetime] = None,
    created_at: Optional[datetime] = None,
) -> AnalysisJob:
    now = datetime.utcnow()
    job = AnalysisJob(
        upload_id=upload_id,
        status=status,
        attempts=attempts,
        created_at=created_at or now,
        updated_at=updated_at or now,
    )
    async with database_service.get_session() as session:
        session.add(job)
    return job
