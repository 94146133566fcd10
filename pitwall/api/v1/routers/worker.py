# pitwall/api/v1/routers/worker.py
"""
Trigger endpoints for deployments without a Celery beat.

An external scheduler (cron, a serverless timer, a worker loop) calls one of
these to run a single sweep step: the oldest eligible job is executed.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from ....core.analysis.job_orchestrator import JobOutcome, JobResult, job_orchestrator
from ....dependencies import verify_cron_secret, verify_worker_header
from ..models import WorkerResponse

logger = logging.getLogger("pitwall.api")

router = APIRouter(tags=["Worker"])


def _worker_response(result: JobResult) -> WorkerResponse:
    if result.status == JobOutcome.IDLE:
        return WorkerResponse(message="No pending jobs")
    if result.status == JobOutcome.ERROR:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=result.message or "Job failed",
        )
    if result.status == JobOutcome.PROCESSING:
        return WorkerResponse(message="Job already processing", upload_id=result.upload_id)
    return WorkerResponse(message="Processed job", upload_id=result.upload_id)


@router.post(
    "/telemetry/worker",
    response_model=WorkerResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(verify_worker_header)],
)
async def run_worker():
    """Execute the next eligible analysis job, if any."""
    result = await job_orchestrator.pick_next_pending()
    logger.info(f"Worker trigger: {result.status.value}")
    return _worker_response(result)


@router.get(
    "/cron/process",
    response_model=WorkerResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(verify_cron_secret)],
)
async def run_cron():
    """Same as the worker trigger, authorized through the query string."""
    result = await job_orchestrator.pick_next_pending()
    logger.info(f"Cron trigger: {result.status.value}")
    return _worker_response(result)
