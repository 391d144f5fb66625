"""Async task definitions for proactive invoice generation.

Uses arq (async Redis queue) for background task processing:
- ``generate_invoice`` builds one submission's invoice (e.g. enqueued on
  approval)
- ``sweep_pending_invoices`` runs on a cron schedule and picks up PENDING
  submissions and abandoned claims

Both go through the same claim as HTTP requests, so a job and a request for
the same submission never build twice.

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from arq import cron
from pydantic import BaseModel

from services.invoices.errors import BuildInProgress, InvoiceError
from services.invoices.factory import create_orchestrator
from services.invoices.orchestrator import GenerationOrchestrator
from services.shared.config import Settings, get_settings

logger = logging.getLogger(__name__)


class JobResult(BaseModel):
    """Result of a background generation job.

    Attributes:
        submission_id: Submission processed
        status: completed, in_progress or failed
        invoice_number: Number of the generated invoice (if completed)
        storage_path: Path in object storage (if completed)
        error: Error message (if failed)
        completed_at: Job completion timestamp
    """

    submission_id: str
    status: str
    invoice_number: str | None = None
    storage_path: str | None = None
    error: str | None = None
    completed_at: str


def _orchestrator(ctx: dict[str, Any]) -> GenerationOrchestrator:
    orchestrator = ctx.get("orchestrator")
    if orchestrator is None:
        settings: Settings = ctx.get("settings") or get_settings()
        orchestrator = create_orchestrator(settings)
        ctx["orchestrator"] = orchestrator
    return orchestrator


async def generate_invoice(ctx: dict[str, Any], submission_id: str) -> dict[str, Any]:
    """Generate a submission's invoice if it does not exist yet.

    The orchestrator is synchronous, so the run happens in a worker thread.

    Args:
        ctx: arq context (contains redis connection and shared services)
        submission_id: Submission to invoice

    Returns:
        JobResult as dict
    """
    logger.info(f"Generating invoice for submission {submission_id}")
    orchestrator = _orchestrator(ctx)

    try:
        link = await asyncio.to_thread(orchestrator.get_or_create, submission_id)
    except BuildInProgress:
        logger.info(f"Invoice for {submission_id} is being generated elsewhere")
        result = JobResult(
            submission_id=submission_id,
            status="in_progress",
            completed_at=datetime.now(UTC).isoformat(),
        )
    except InvoiceError as e:
        logger.error(f"Invoice job for {submission_id} failed: {e}")
        result = JobResult(
            submission_id=submission_id,
            status="failed",
            error=str(e),
            completed_at=datetime.now(UTC).isoformat(),
        )
    else:
        result = JobResult(
            submission_id=submission_id,
            status="completed",
            invoice_number=link.invoice_number,
            storage_path=link.storage_path,
            completed_at=datetime.now(UTC).isoformat(),
        )

    logger.info(f"Invoice job for {submission_id} finished with status: {result.status}")
    return result.model_dump()


async def sweep_pending_invoices(ctx: dict[str, Any]) -> dict[str, int]:
    """Generate invoices for PENDING submissions and abandoned claims.

    Failed submissions are left alone; they are rebuilt on the next request
    or an explicit regeneration.

    Returns:
        Counts of processed submissions by job status
    """
    orchestrator = _orchestrator(ctx)
    limit = orchestrator.settings.invoice_sweep_batch_size

    submission_ids = await asyncio.to_thread(orchestrator.reclaim_candidates, limit)
    if not submission_ids:
        logger.debug("No pending invoices to generate")
        return {}

    logger.info(f"Sweeping {len(submission_ids)} pending invoices")
    counts: dict[str, int] = {}
    for submission_id in submission_ids:
        result = await generate_invoice(ctx, submission_id)
        counts[result["status"]] = counts.get(result["status"], 0) + 1

    logger.info(f"Pending invoice sweep finished: {counts}")
    return counts


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook - initialize services.

    Called once when worker starts. Builds the orchestrator once so jobs
    share repositories and the storage client.
    """
    logger.info("Initializing worker services...")
    settings = get_settings()
    ctx["settings"] = settings
    ctx["orchestrator"] = create_orchestrator(settings)
    logger.info("Worker services initialized")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook - cleanup resources."""
    logger.info("Worker shutting down...")


def _sweep_minutes(interval: int) -> set[int]:
    return set(range(0, 60, interval))


def sweep_cron_jobs(interval_minutes: int) -> list[Any]:
    """Cron schedule for the pending-invoice sweep."""
    return [cron(sweep_pending_invoices, minute=_sweep_minutes(interval_minutes), unique=True)]


class WorkerSettings:
    """arq worker settings.

    Defines the worker configuration including:
    - Task functions to register
    - Pending-invoice sweep schedule
    - Redis connection settings
    - Job timeout and retry settings
    """

    functions = [generate_invoice]
    on_startup = startup
    on_shutdown = shutdown

    # These will be set from environment
    redis_settings = None
    cron_jobs: list[Any] = []
    max_jobs = 10
    job_timeout = 300

    @classmethod
    def get_redis_settings(cls) -> Any:
        """Get Redis settings from configuration."""
        from arq.connections import RedisSettings as ArqRedisSettings

        settings = get_settings()
        return ArqRedisSettings.from_dsn(settings.redis_url)
