"""Celery application for distributed workers."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import httpx
from celery import Celery, signals
from redis.asyncio import Redis

from ..aggregation.aggregator import MetricsAggregator
from ..billing.client import StripeClient
from ..config import Settings, get_settings
from ..db.session import Database
from ..db.store import ResultStore
from ..jobs.executor import ExecutionOutcome, JobExecutor
from ..jobs.queue import JobQueue
from ..logging_utils import configure_logging

logger = logging.getLogger(__name__)

settings = get_settings()

celery_app = Celery(
    "stripe_metrics",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    task_default_queue=settings.queue_name,
    task_acks_late=True,
    task_ignore_result=True,
    task_time_limit=settings.job_timeout_seconds + 60,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.worker_concurrency,
    worker_hijack_root_logger=False,
)


@signals.setup_logging.connect
def _setup_logging(**_: Any) -> None:
    configure_logging(settings.log_level, settings.log_file)


def dispatch_scrape(
    job_id: str,
    kind: str,
    payload: Dict[str, Any],
    *,
    queue: Optional[str] = None,
    countdown: Optional[float] = None,
) -> None:
    """Publish a scrape task whose Celery task id is the job id, routed to ``queue``."""

    scrape_task.apply_async(
        args=[job_id, kind, payload],
        task_id=job_id,
        queue=queue or settings.queue_name,
        countdown=countdown,
    )


@asynccontextmanager
async def worker_executor(config: Settings) -> AsyncIterator[JobExecutor]:
    """Build the executor's clients for one task run and release them afterwards."""

    redis = Redis.from_url(config.redis_url, decode_responses=True)
    database = Database(config.database_url)
    http = httpx.AsyncClient(timeout=config.request_timeout_seconds)

    def build_aggregator(credential: str, deadline: float) -> MetricsAggregator:
        client = StripeClient(
            credential,
            http,
            base_url=config.stripe_api_base,
            api_version=config.stripe_api_version,
            page_size=config.stripe_page_size,
            deadline=deadline,
        )
        return MetricsAggregator(client)

    try:
        queue = JobQueue(redis, dispatch_scrape, config)
        yield JobExecutor(queue, ResultStore(database), build_aggregator, config)
    finally:
        await http.aclose()
        await database.dispose()
        await redis.aclose()


async def run_job(job_id: str, kind: str, payload: Dict[str, Any]) -> Tuple[ExecutionOutcome, Optional[float]]:
    async with worker_executor(settings) as executor:
        outcome = await executor.execute(job_id, kind, payload)
        delay = None
        if outcome is ExecutionOutcome.RETRY:
            job = await executor.queue.get(job_id)
            delay = executor.queue.retry_delay(job.attempts_made if job else 1)
        return outcome, delay


@celery_app.task(name=settings.job_name, bind=True, max_retries=None)
def scrape_task(self, job_id: str, kind: str, payload: Dict[str, Any]) -> str:
    """Celery task entry point to process a single scrape job."""

    try:
        outcome, delay = asyncio.run(run_job(job_id, kind, payload))
    except Exception:  # pragma: no cover - worker level guard
        logger.exception("Worker could not report job state", extra={"job_id": job_id})
        return "error"

    if outcome is ExecutionOutcome.RETRY:
        logger.info("Retrying job", extra={"job_id": job_id, "countdown": delay})
        raise self.retry(countdown=delay)
    return outcome.value


def run_worker(log_level: str = "INFO", concurrency: Optional[int] = None) -> None:
    """Start a Celery worker pool consuming the scrape queue."""

    celery_app.worker_main(
        [
            "worker",
            f"--loglevel={log_level}",
            f"--concurrency={concurrency or settings.worker_concurrency}",
            "--queues",
            settings.queue_name,
        ]
    )


__all__ = ["celery_app", "dispatch_scrape", "run_job", "run_worker", "scrape_task", "worker_executor"]
