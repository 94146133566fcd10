"""
Analysis Celery tasks for Pitwall.

Both tasks are thin wrappers around the job orchestrator. The orchestrator
already records failures on the job row, so these tasks never auto-retry:
the periodic sweep is what brings a failed job back.
"""
import asyncio
import logging
from typing import Any, Dict

from celery import shared_task

from pitwall.config import settings
from pitwall.core.analysis.job_orchestrator import job_orchestrator

logger = logging.getLogger("pitwall.tasks")


@shared_task(bind=True, name="pitwall.tasks.process_next_analysis_job")
def process_next_analysis_job(self, batch_size: int = None) -> Dict[str, Any]:
    """
    Periodic sweep: drain eligible analysis jobs, oldest first.

    Args:
        batch_size: Max jobs to execute in this tick (default: settings.analysis_sweep_batch_size)

    Returns:
        Dict with the number of jobs handled and each job's outcome
    """
    limit = batch_size or settings.analysis_sweep_batch_size
    results = asyncio.run(job_orchestrator.sweep(limit))

    if results:
        logger.info(f"Analysis sweep handled {len(results)} job(s)")
    else:
        logger.debug("Analysis sweep found no pending jobs")

    return {
        "handled": len(results),
        "results": [result.to_dict() for result in results],
    }


@shared_task(bind=True, name="pitwall.tasks.process_upload_analysis")
def process_upload_analysis(self, upload_id: str) -> Dict[str, Any]:
    """
    Run the analysis for one upload right after it was enqueued.

    Args:
        upload_id: Upload to analyze

    Returns:
        JobResult as a dict
    """
    logger.info(f"Processing analysis for upload {upload_id}")
    result = asyncio.run(job_orchestrator.request_analysis(upload_id))
    if result.message:
        logger.warning(f"Analysis for upload {upload_id} ended with {result.status.value}: {result.message}")
    return result.to_dict()
