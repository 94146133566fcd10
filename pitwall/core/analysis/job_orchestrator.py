# ============================================================================
# pitwall/core/analysis/job_orchestrator.py
# ============================================================================
"""
Analysis job orchestration.

Owns the AnalysisJob lifecycle for an upload:

    pending → processing → succeeded
                         → failed → (picked up again by the sweep)

Two thin entry points converge on a single execute() path:

    request_analysis(upload_id)   user-triggered, idempotent
    pick_next_pending()           periodic sweep, oldest eligible job first

Mutual exclusion is cooperative. A ``processing`` job whose ``updated_at``
heartbeat is younger than the staleness window is left alone; an older one is
presumed to belong to a dead worker. The move into ``processing`` is a
compare-and-swap on the observed ``(status, attempts)`` pair, so when two
callers race for the same job exactly one update matches and the other backs
off with a ``processing`` result.

execute() is idempotent: re-running it overwrites the report and re-sets the
upload/job status, so a duplicate run after a false-positive stale detection
leaves no extra state behind.

Usage:
    from pitwall.core.analysis.job_orchestrator import job_orchestrator

    result = await job_orchestrator.request_analysis(upload_id)
    if result.status == JobOutcome.PROCESSING:
        ...
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, AsyncContextManager, Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pitwall.config import settings
from pitwall.core.analysis.report_normalizer import (
    NormalizedReport,
    NormalizerMode,
    normalize,
)
from pitwall.core.database.models import (
    AnalysisJob,
    JobStatus,
    Report,
    Upload,
    UploadStatus,
)
from pitwall.core.llm.inference_client import InferenceClient, InsightRequest
from pitwall.core.storage.artifact_store import ArtifactStore
from pitwall.core.telemetry.preview import parse_preview

logger = logging.getLogger("pitwall.orchestrator")

SessionScope = Callable[[], AsyncContextManager[AsyncSession]]
UploadRef = Union[str, uuid.UUID]


class JobOutcome(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ERROR = "error"


class UploadNotFoundError(Exception):
    """The upload behind a job vanished between lookup and use."""


@dataclass
class JobResult:
    status: JobOutcome
    upload_id: Optional[uuid.UUID] = None
    job_id: Optional[uuid.UUID] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "upload_id": str(self.upload_id) if self.upload_id else None,
            "job_id": str(self.job_id) if self.job_id else None,
            "message": self.message,
        }


@dataclass
class UploadStatusView:
    upload_id: uuid.UUID
    status: str
    report: Optional[Dict[str, Any]]


def _as_uuid(value: UploadRef) -> Optional[uuid.UUID]:
    """Parse an upload id; None when it is not a UUID."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class JobOrchestrator:
    """
    State machine for analysis jobs.

    Attributes:
        stale_after: Heartbeat age after which a processing job may be re-run
        inference_timeout: Deadline (s) for one inference call
        max_attempts: Failed jobs at this attempt count are skipped by the sweep (0 = never)
        heartbeat_interval: Seconds between heartbeats while a claimed job runs
    """

    def __init__(
        self,
        session_scope: Optional[SessionScope] = None,
        artifact_store: Optional[ArtifactStore] = None,
        inference_client: Optional[InferenceClient] = None,
        stale_after_seconds: Optional[float] = None,
        inference_timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self._session_scope = session_scope
        self._artifact_store = artifact_store
        self._inference_client = inference_client
        self.stale_after = timedelta(
            seconds=settings.job_stale_after_seconds if stale_after_seconds is None else stale_after_seconds
        )
        self.inference_timeout = settings.inference_timeout if inference_timeout is None else inference_timeout
        self.max_attempts = settings.job_max_attempts if max_attempts is None else max_attempts
        self.heartbeat_interval = (
            settings.job_heartbeat_interval_seconds if heartbeat_interval is None else heartbeat_interval
        )

    # ------------------------------------------------------------------
    # Collaborators (resolved lazily so tests can inject their own)
    # ------------------------------------------------------------------

    def _session(self) -> AsyncContextManager[AsyncSession]:
        if self._session_scope is None:
            from pitwall.core.shared.database_service import database_service
            self._session_scope = database_service.get_session
        return self._session_scope()

    @property
    def artifact_store(self) -> ArtifactStore:
        if self._artifact_store is None:
            from pitwall.core.storage.artifact_store import artifact_store
            self._artifact_store = artifact_store
        return self._artifact_store

    @property
    def inference_client(self) -> InferenceClient:
        if self._inference_client is None:
            from pitwall.core.llm.inference_client import inference_client
            self._inference_client = inference_client
        return self._inference_client

    @staticmethod
    def _now() -> datetime:
        return datetime.utcnow()

    def is_fresh(self, job: AnalysisJob) -> bool:
        """True while a processing job's heartbeat is inside the staleness window."""
        return self._now() - job.updated_at < self.stale_after

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def request_analysis(self, upload_id: UploadRef) -> JobResult:
        """
        Run the analysis for one upload unless it is done or already running.

        Returns:
            processed  job succeeded now or earlier
            processing a live worker holds the job (or won the race)
            error      the job failed, or its state could not be read/written
        """
        upload_id = _as_uuid(upload_id)
        if upload_id is None:
            return JobResult(JobOutcome.ERROR, message="Invalid upload id")

        try:
            job = await self._get_job(upload_id)
            if job is None:
                job = await self._create_job(upload_id)
        except SQLAlchemyError as e:
            logger.error(f"Unable to fetch analysis job for upload {upload_id}: {e}")
            return JobResult(JobOutcome.ERROR, upload_id=upload_id, message="Unable to fetch analysis job")

        if job is None:
            return JobResult(JobOutcome.ERROR, upload_id=upload_id, message="Unable to create analysis job")

        if job.status == JobStatus.PROCESSING.value:
            if self.is_fresh(job):
                return JobResult(JobOutcome.PROCESSING, upload_id=upload_id, job_id=job.id)
            logger.warning(f"Restarting stale job {job.id} (last updated {job.updated_at.isoformat()})")

        elif job.status == JobStatus.SUCCEEDED.value:
            return JobResult(JobOutcome.PROCESSED, upload_id=upload_id, job_id=job.id)

        return await self.execute(job)

    async def pick_next_pending(self, exclude_ids: Iterable[uuid.UUID] = ()) -> JobResult:
        """
        Execute the oldest eligible job.

        Eligible: pending, failed below the attempt cap, or processing with a
        stale heartbeat. Ordered by creation time so older jobs are never
        starved by newer ones. Performs no writes when nothing is eligible.

        Args:
            exclude_ids: Job ids to skip (already handled in the current sweep)
        """
        cutoff = self._now() - self.stale_after

        failed_clause = AnalysisJob.status == JobStatus.FAILED.value
        if self.max_attempts > 0:
            failed_clause = and_(failed_clause, AnalysisJob.attempts < self.max_attempts)

        stmt = (
            select(AnalysisJob)
            .where(
                or_(
                    AnalysisJob.status == JobStatus.PENDING.value,
                    failed_clause,
                    and_(
                        AnalysisJob.status == JobStatus.PROCESSING.value,
                        AnalysisJob.updated_at < cutoff,
                    ),
                )
            )
            .order_by(AnalysisJob.created_at.asc(), AnalysisJob.id.asc())
            .limit(1)
        )
        exclude_ids = list(exclude_ids)
        if exclude_ids:
            stmt = stmt.where(AnalysisJob.id.notin_(exclude_ids))

        try:
            async with self._session() as session:
                job = (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Failed to query analysis jobs: {e}")
            return JobResult(JobOutcome.ERROR, message="Unable to read job status")

        if job is None:
            return JobResult(JobOutcome.IDLE)

        if job.status == JobStatus.PROCESSING.value:
            logger.warning(f"Sweep restarting stale job {job.id} (last updated {job.updated_at.isoformat()})")

        return await self.execute(job)

    async def sweep(self, limit: int) -> List[JobResult]:
        """
        Drain up to ``limit`` eligible jobs, oldest first.

        Jobs handled earlier in the same sweep are excluded so a job that
        fails again immediately cannot be picked twice in one tick. Stops at
        the first idle result.
        """
        results: List[JobResult] = []
        handled: List[uuid.UUID] = []
        for _ in range(max(limit, 0)):
            result = await self.pick_next_pending(exclude_ids=handled)
            if result.status == JobOutcome.IDLE:
                break
            results.append(result)
            if result.job_id is None:
                break
            handled.append(result.job_id)
        return results

    async def execute(self, job: AnalysisJob) -> JobResult:
        """
        Claim and run one job. The single path both entry points converge on.

        Collaborator failures never escape: inference problems become a
        ``failed``/``partial`` report, anything else marks the job failed and
        the upload ``error``.

        Args:
            job: Snapshot of the job row as observed by the caller
        """
        upload_id = job.upload_id

        try:
            claimed = await self._claim(job)
        except SQLAlchemyError as e:
            logger.error(f"Unable to claim job {job.id}: {e}")
            return JobResult(JobOutcome.ERROR, upload_id=upload_id, job_id=job.id, message="Unable to update job status")

        if not claimed:
            logger.info(f"Job {job.id} was claimed by another worker; backing off")
            return JobResult(JobOutcome.PROCESSING, upload_id=upload_id, job_id=job.id)

        logger.info(f"Executing job {job.id} for upload {upload_id} (attempt {job.attempts + 1})")

        try:
            async with self._auto_heartbeat(job.id, job.attempts + 1):
                normalized = await self._analyze(upload_id)
            await self._complete(job, normalized)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.exception(f"Analysis job {job.id} failed: {message}")
            await self._fail(job, message)
            return JobResult(JobOutcome.ERROR, upload_id=upload_id, job_id=job.id, message=message)

        logger.info(
            f"Job {job.id} succeeded for upload {upload_id} "
            f"(report status={normalized.degradation.value})"
        )
        return JobResult(JobOutcome.PROCESSED, upload_id=upload_id, job_id=job.id)

    async def enqueue(self, upload_id: UploadRef) -> JobResult:
        """
        Explicitly (re)queue an upload for analysis.

        Creates the job or resets an existing one to ``pending`` (attempts are
        kept) and moves the upload back to ``processing``. A job held by a
        live worker is left untouched.
        """
        upload_id = _as_uuid(upload_id)
        if upload_id is None:
            return JobResult(JobOutcome.ERROR, message="Invalid upload id")

        try:
            async with self._session() as session:
                job = (
                    await session.execute(select(AnalysisJob).where(AnalysisJob.upload_id == upload_id))
                ).scalar_one_or_none()

                if job is not None and job.status == JobStatus.PROCESSING.value and self.is_fresh(job):
                    return JobResult(JobOutcome.PROCESSING, upload_id=upload_id, job_id=job.id)

                if job is None:
                    job = AnalysisJob(upload_id=upload_id, status=JobStatus.PENDING.value, attempts=0)
                    session.add(job)
                else:
                    job.status = JobStatus.PENDING.value
                    job.error_message = None
                    job.updated_at = self._now()

                await session.execute(
                    update(Upload)
                    .where(Upload.id == upload_id)
                    .values(status=UploadStatus.PROCESSING.value, error_message=None)
                )
                await session.flush()
                job_id = job.id
        except IntegrityError:
            logger.info(f"Job for upload {upload_id} was enqueued concurrently")
            return JobResult(JobOutcome.QUEUED, upload_id=upload_id)

        logger.info(f"Enqueued analysis job {job_id} for upload {upload_id}")
        return JobResult(JobOutcome.QUEUED, upload_id=upload_id, job_id=job_id)

    async def get_status(self, upload_id: UploadRef, kick: bool = False) -> Optional[UploadStatusView]:
        """
        Current upload status and report body.

        With ``kick`` the analysis is run inline first when the upload is
        still processing, so polling converges without a background worker.
        The kick goes through request_analysis and therefore never re-enters
        a job a live worker holds.
        """
        upload_id = _as_uuid(upload_id)
        if upload_id is None:
            return None
        view = await self._load_status(upload_id)

        if kick and view is not None and view.status in (
            UploadStatus.PROCESSING.value,
            UploadStatus.METRICS_READY.value,
        ):
            result = await self.request_analysis(upload_id)
            logger.debug(f"Inline kick for upload {upload_id}: {result.status.value}")
            view = await self._load_status(upload_id)

        return view

    # ------------------------------------------------------------------
    # Job store access
    # ------------------------------------------------------------------

    async def _get_job(self, upload_id: uuid.UUID) -> Optional[AnalysisJob]:
        async with self._session() as session:
            result = await session.execute(select(AnalysisJob).where(AnalysisJob.upload_id == upload_id))
            return result.scalar_one_or_none()

    async def _create_job(self, upload_id: uuid.UUID) -> Optional[AnalysisJob]:
        try:
            async with self._session() as session:
                job = AnalysisJob(upload_id=upload_id, status=JobStatus.PENDING.value, attempts=0)
                session.add(job)
                await session.flush()
            logger.info(f"Created analysis job {job.id} for upload {upload_id}")
            return job
        except IntegrityError:
            # Another caller created it first (or the upload does not exist).
            logger.info(f"Analysis job for upload {upload_id} already exists; re-reading")
            return await self._get_job(upload_id)

    async def _claim(self, job: AnalysisJob) -> bool:
        """Compare-and-swap the job into processing; False if someone else moved it first."""
        async with self._session() as session:
            result = await session.execute(
                update(AnalysisJob)
                .where(AnalysisJob.id == job.id)
                .where(AnalysisJob.status == job.status)
                .where(AnalysisJob.attempts == job.attempts)
                .values(
                    status=JobStatus.PROCESSING.value,
                    attempts=AnalysisJob.attempts + 1,
                    error_message=None,
                    updated_at=self._now(),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def beat(self, job_id: uuid.UUID, attempts: int) -> bool:
        """
        Advance the heartbeat of a job this worker still holds.

        Only matches while the job is processing under the same claim
        (``attempts``), so a worker that lost its claim cannot keep a newer
        run's row alive.

        Returns:
            True if the heartbeat was recorded
        """
        async with self._session() as session:
            result = await session.execute(
                update(AnalysisJob)
                .where(AnalysisJob.id == job_id)
                .where(AnalysisJob.status == JobStatus.PROCESSING.value)
                .where(AnalysisJob.attempts == attempts)
                .values(updated_at=self._now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount > 0:
                logger.debug(f"Heartbeat for job {job_id}")
                return True
            logger.debug(f"No heartbeat - job {job_id} is no longer held by this worker")
            return False

    @asynccontextmanager
    async def _auto_heartbeat(self, job_id: uuid.UUID, attempts: int):
        """Beat every ``heartbeat_interval`` seconds while the wrapped work runs."""
        stop_event = asyncio.Event()

        async def heartbeat_loop():
            while not stop_event.is_set():
                try:
                    await asyncio.sleep(self.heartbeat_interval)
                    if not stop_event.is_set():
                        await self.beat(job_id, attempts)
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.warning(f"Auto-heartbeat error for job {job_id}: {e}")

        heartbeat_task = asyncio.create_task(heartbeat_loop())
        try:
            yield
        finally:
            stop_event.set()
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass

    async def _load_status(self, upload_id: uuid.UUID) -> Optional[UploadStatusView]:
        async with self._session() as session:
            upload = await session.get(Upload, upload_id)
            if upload is None:
                return None
            report = (
                await session.execute(select(Report.report).where(Report.upload_id == upload_id))
            ).scalar_one_or_none()
            return UploadStatusView(upload_id=upload.id, status=upload.status, report=report)

    # ------------------------------------------------------------------
    # Execution steps
    # ------------------------------------------------------------------

    async def _analyze(self, upload_id: uuid.UUID) -> NormalizedReport:
        async with self._session() as session:
            upload = await session.get(Upload, upload_id)
            if upload is None:
                raise UploadNotFoundError("Upload not found for job")
            metadata = {
                "id": str(upload.id),
                "filename": upload.filename,
                "sim": upload.sim,
                "track": upload.track,
                "car": upload.car,
                "session_date": upload.session_date,
            }
            storage_path = upload.storage_path

        content = await self.artifact_store.download(storage_path)
        file_text = content.decode("utf-8", errors="replace")
        preview = parse_preview(file_text).to_dict()

        request = InsightRequest(upload=metadata, file_text=file_text, preview=preview)
        raw: Optional[Dict[str, Any]] = None
        mode = NormalizerMode.DEGRADED
        try:
            raw = await asyncio.wait_for(
                self.inference_client.produce_insights(request),
                timeout=self.inference_timeout,
            )
            mode = NormalizerMode.COMPLETE
        except asyncio.TimeoutError:
            logger.warning(f"Inference timed out after {self.inference_timeout}s for upload {upload_id}")
        except Exception as e:
            logger.warning(f"Inference failed for upload {upload_id}; recording failed report: {e}")

        normalized = normalize(raw, mode, preview=preview)
        if normalized.body["missingSections"]:
            logger.info(f"Upload {upload_id} report missing sections: {normalized.body['missingSections']}")
        return normalized

    async def _complete(self, job: AnalysisJob, normalized: NormalizedReport) -> None:
        """Upsert the report and flip upload/job status in one transaction."""
        now = self._now()
        model_name = getattr(self.inference_client, "model_name", None)

        async with self._session() as session:
            report = (
                await session.execute(select(Report).where(Report.upload_id == job.upload_id))
            ).scalar_one_or_none()
            if report is None:
                session.add(Report(upload_id=job.upload_id, model=model_name, report=normalized.body))
            else:
                report.model = model_name
                report.report = normalized.body
                report.updated_at = now

            await session.execute(
                update(Upload)
                .where(Upload.id == job.upload_id)
                .values(status=UploadStatus.REPORTED.value, error_message=None)
            )
            await session.execute(
                update(AnalysisJob)
                .where(AnalysisJob.id == job.id)
                .values(status=JobStatus.SUCCEEDED.value, error_message=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )

    async def _fail(self, job: AnalysisJob, message: str) -> None:
        try:
            async with self._session() as session:
                await session.execute(
                    update(AnalysisJob)
                    .where(AnalysisJob.id == job.id)
                    .values(status=JobStatus.FAILED.value, error_message=message, updated_at=self._now())
                    .execution_options(synchronize_session=False)
                )
                await session.execute(
                    update(Upload)
                    .where(Upload.id == job.upload_id)
                    .values(status=UploadStatus.ERROR.value, error_message=message)
                )
        except Exception as e:
            logger.error(f"Unable to record failure of job {job.id}: {e}")


# Global orchestrator instance
job_orchestrator = JobOrchestrator()
