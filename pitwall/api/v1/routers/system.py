# pitwall/api/v1/routers/system.py
from datetime import datetime

from fastapi import APIRouter

from ....config import settings
from ....core.llm.inference_client import inference_client
from ....core.shared.database_service import database_service
from ....core.storage.artifact_store import artifact_store
from ..models import HealthStatus

router = APIRouter()


@router.get("/health", response_model=HealthStatus, tags=["System"])
async def health_check():
    """Health check endpoint."""
    database = await database_service.health_check()
    llm_status = await inference_client.test_connection()
    storage_available = await artifact_store.check_health()

    return HealthStatus(
        status="healthy" if database.get("connected") and storage_available else "degraded",
        timestamp=datetime.now(),
        version=settings.api_version,
        database=database,
        llm_connected=llm_status["connected"],
        llm=llm_status,
        storage_available=storage_available,
    )
