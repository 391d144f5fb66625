"""arq worker runner.

Run with: python -m services.queue.worker

This module configures and runs the invoice generation worker.
"""

import logging

from arq import run_worker

from services.queue.tasks import WorkerSettings, sweep_cron_jobs
from services.shared.config import get_settings

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the arq worker."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    logger.info(f"Starting worker with Redis: {settings.redis_url}")
    logger.info(f"Max jobs: {settings.queue_max_jobs}")
    logger.info(f"Job timeout: {settings.queue_job_timeout}s")
    logger.info(
        f"Pending invoice sweep every {settings.invoice_sweep_interval_minutes} min "
        f"(batch size {settings.invoice_sweep_batch_size})"
    )

    # Update worker settings from config
    WorkerSettings.redis_settings = WorkerSettings.get_redis_settings()
    WorkerSettings.max_jobs = settings.queue_max_jobs
    WorkerSettings.job_timeout = settings.queue_job_timeout
    WorkerSettings.cron_jobs = sweep_cron_jobs(settings.invoice_sweep_interval_minutes)

    # Run worker
    run_worker(WorkerSettings)  # type: ignore[arg-type]


if __name__ == "__main__":
    main()
