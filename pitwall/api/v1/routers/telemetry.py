# pitwall/api/v1/routers/telemetry.py
"""
Telemetry upload and analysis endpoints.

Every endpoint is scoped to the caller from ``X-User-Id``; an upload owned by
someone else is reported as not found.
"""
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ....config import settings
from ....core.analysis.job_orchestrator import JobOutcome, job_orchestrator
from ....core.database import Report, Upload, get_db
from ....core.database.models import UploadStatus
from ....core.shared.database_service import database_service
from ....core.storage.artifact_store import (
    ArtifactNotFoundError,
    ArtifactStoreError,
    artifact_store,
    build_storage_path,
)
from ....core.telemetry.preview import parse_preview
from ....dependencies import get_current_user_id
from ..models import (
    AnalyzeResponse,
    EnqueueResponse,
    PreviewResponse,
    StatusResponse,
    UploadListResponse,
    UploadRef,
    UploadSummary,
)

logger = logging.getLogger("pitwall.api")

router = APIRouter(prefix="/telemetry", tags=["Telemetry"])


def _require_upload_id(upload_id: Optional[str]) -> str:
    upload_id = (upload_id or "").strip()
    if not upload_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="uploadId is required")
    return upload_id


async def _get_owned_upload(upload_id: str, user_id: str) -> Upload:
    """Load an upload the caller owns, or raise 404."""
    try:
        key = uuid.UUID(upload_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Upload not found")

    async with database_service.get_session() as session:
        upload = await session.get(Upload, key)

    if upload is None or upload.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Upload not found")
    return upload


def _dispatch_analysis(upload_id: uuid.UUID) -> None:
    """Hand the job to a Celery worker. The sweep picks it up if this fails."""
    from ....core.tasks.analysis import process_upload_analysis

    try:
        process_upload_analysis.apply_async(args=[str(upload_id)])
    except Exception as e:
        logger.warning(f"Could not dispatch analysis for upload {upload_id}; leaving it to the sweep: {e}")


@router.post("/uploads", response_model=UploadSummary, status_code=status.HTTP_201_CREATED)
async def create_upload(
    file: UploadFile = File(...),
    sim: str = Form(default="Other"),
    track: Optional[str] = Form(default=None),
    car: Optional[str] = Form(default=None),
    session_date: Optional[str] = Form(default=None),
    lap_count: Optional[int] = Form(default=None),
    user_id: str = Depends(get_current_user_id),
):
    """Store a telemetry export and register it as an upload."""
    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty")
    if len(content) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds maximum size of {settings.max_file_size} bytes",
        )

    upload_id = uuid.uuid4()
    filename = file.filename or "telemetry.csv"
    storage_path = build_storage_path(user_id, str(upload_id), filename)

    try:
        await artifact_store.upload(storage_path, content, content_type=file.content_type or "text/csv")
    except ArtifactStoreError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    upload = Upload(
        id=upload_id,
        user_id=user_id,
        filename=filename,
        size_bytes=len(content),
        storage_path=storage_path,
        sim=sim or "Other",
        track=track or None,
        car=car or None,
        session_date=session_date or None,
        lap_count=lap_count,
        status=UploadStatus.UPLOADED.value,
    )
    async with database_service.get_session() as session:
        session.add(upload)

    logger.info(f"Stored upload {upload_id} for user {user_id} ({len(content)} bytes)")
    return UploadSummary.model_validate(upload)


@router.get("/uploads", response_model=UploadListResponse)
async def list_uploads(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """The caller's uploads, newest first."""
    result = await db.execute(
        select(Upload, Report.id)
        .outerjoin(Report, Report.upload_id == Upload.id)
        .where(Upload.user_id == user_id)
        .order_by(Upload.created_at.desc())
    )
    uploads = []
    for upload, report_id in result.all():
        summary = UploadSummary.model_validate(upload)
        summary.has_report = report_id is not None
        uploads.append(summary)
    return UploadListResponse(uploads=uploads)


@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze_upload(
    body: UploadRef,
    user_id: str = Depends(get_current_user_id),
):
    """Run (or join) the analysis for an upload and report where it stands."""
    upload = await _get_owned_upload(_require_upload_id(body.upload_id), user_id)

    result = await job_orchestrator.request_analysis(upload.id)
    if result.status == JobOutcome.ERROR:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=result.message or "Analysis failed",
        )
    return AnalyzeResponse(status=result.status.value, upload_id=upload.id)


@router.post("/jobs", response_model=EnqueueResponse)
async def enqueue_upload(
    body: UploadRef,
    user_id: str = Depends(get_current_user_id),
):
    """Queue (or re-queue) an upload for background analysis."""
    upload = await _get_owned_upload(_require_upload_id(body.upload_id), user_id)

    result = await job_orchestrator.enqueue(upload.id)
    if result.status == JobOutcome.QUEUED and settings.use_celery:
        _dispatch_analysis(upload.id)
    return EnqueueResponse(ok=True)


@router.get("/status", response_model=StatusResponse)
async def get_upload_status(
    upload_id: Optional[str] = Query(default=None, alias="uploadId"),
    user_id: str = Depends(get_current_user_id),
):
    """Upload status plus the report body once there is one."""
    upload = await _get_owned_upload(_require_upload_id(upload_id), user_id)

    view = await job_orchestrator.get_status(upload.id, kick=settings.status_inline_kick)
    if view is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Upload not found")
    return StatusResponse(status=view.status, report=view.report)


@router.get("/preview", response_model=PreviewResponse)
async def get_upload_preview(
    upload_id: Optional[str] = Query(default=None, alias="uploadId"),
    user_id: str = Depends(get_current_user_id),
):
    """Upload metadata and a parsed preview of the stored file."""
    upload = await _get_owned_upload(_require_upload_id(upload_id), user_id)

    try:
        content = await artifact_store.download(upload.storage_path)
    except ArtifactNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Telemetry file not found")
    except ArtifactStoreError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    preview = parse_preview(content.decode("utf-8", errors="replace"))
    return PreviewResponse(upload=UploadSummary.model_validate(upload), preview=preview.to_dict())
