"""Runs one leased scrape job from start to terminal state."""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..aggregation.aggregator import MetricsAggregator
from ..config import Settings
from ..db.store import ResultStore
from ..monitoring.metrics import AGGREGATION_DURATION, JOBS_COMPLETED, JOBS_FAILED, JOBS_IN_PROGRESS
from .queue import JobQueue

logger = logging.getLogger(__name__)

# Builds an aggregator for one credential; the float is a time.monotonic() deadline.
AggregatorFactory = Callable[[str, float], MetricsAggregator]


class JobRejectedError(ValueError):
    """Raised for a job this worker refuses to run; never retried."""


class UnknownJobKindError(JobRejectedError):
    """Raised for a job whose kind this worker does not handle."""


class ExecutionOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"
    SKIPPED = "skipped"


class JobExecutor:
    """Aggregates, persists exactly one record, and reports the job's end state.

    Errors raised by aggregation, persistence or the job registry never
    escape :meth:`execute`; they become a failure report (or a delayed retry
    while attempts remain). A record stored before the completion report
    failed stays stored and the job is reported failed.
    """

    def __init__(
        self,
        queue: JobQueue,
        store: ResultStore,
        aggregator_factory: AggregatorFactory,
        settings: Settings,
    ) -> None:
        self.queue = queue
        self.store = store
        self.aggregator_factory = aggregator_factory
        self.settings = settings

    async def execute(self, job_id: str, kind: str, payload: Dict[str, Any]) -> ExecutionOutcome:
        try:
            job = await self.queue.get(job_id)
        except Exception as exc:
            logger.exception("Could not read job", extra={"job_id": job_id})
            await self._report_failure(job_id, str(exc) or exc.__class__.__name__, reason="registry")
            return ExecutionOutcome.FAILED
        if job is None or job.state.is_terminal:
            logger.warning("Skipping job without a live registry entry", extra={"job_id": job_id})
            return ExecutionOutcome.SKIPPED

        try:
            if kind != self.settings.job_name:
                raise UnknownJobKindError(f"Unknown job: {kind}")
            credential = (payload or {}).get("credential")
            if not credential:
                raise JobRejectedError("No stripeApiKey found in job data")
        except JobRejectedError as exc:
            logger.error("Rejected job", extra={"job_id": job_id, "kind": kind})
            await self._report_failure(job_id, str(exc), reason="rejected")
            return ExecutionOutcome.FAILED

        try:
            job = await self.queue.mark_active(job_id)
        except Exception as exc:
            logger.exception("Could not mark job active", extra={"job_id": job_id})
            await self._report_failure(job_id, str(exc) or exc.__class__.__name__, reason="registry")
            return ExecutionOutcome.FAILED

        JOBS_IN_PROGRESS.inc()
        logger.info("Processing job", extra={"job_id": job_id, "attempt": job.attempts_made})
        try:
            record_reference = await self._run(job_id, job.owner_id, credential)
        except Exception as exc:
            logger.exception("Job failed", extra={"job_id": job_id})
            message = str(exc) or exc.__class__.__name__
            if job.attempts_made < job.attempts_allowed:
                try:
                    await self.queue.mark_delayed(job_id, message)
                except Exception:
                    logger.exception("Could not mark job delayed", extra={"job_id": job_id})
                    await self._report_failure(job_id, message, reason=exc.__class__.__name__)
                    return ExecutionOutcome.FAILED
                return ExecutionOutcome.RETRY
            await self._report_failure(job_id, message, reason=exc.__class__.__name__)
            return ExecutionOutcome.FAILED
        finally:
            JOBS_IN_PROGRESS.dec()

        try:
            await self.queue.mark_completed(job_id, record_reference)
        except Exception as exc:
            logger.exception(
                "Could not mark job completed",
                extra={"job_id": job_id, "record_id": record_reference["recordId"]},
            )
            await self._report_failure(job_id, f"Could not record completion: {exc}", reason="registry")
            return ExecutionOutcome.FAILED

        JOBS_COMPLETED.inc()
        logger.info("Job completed", extra={"job_id": job_id, "record_id": record_reference["recordId"]})
        return ExecutionOutcome.COMPLETED

    async def _run(self, job_id: str, owner_id: str, credential: str) -> Dict[str, Any]:
        deadline = time.monotonic() + self.settings.job_timeout_seconds
        aggregator = self.aggregator_factory(credential, deadline)

        async def report(percent: int) -> None:
            await self.queue.set_progress(job_id, percent)

        started = time.perf_counter()
        metrics = await aggregator.aggregate(on_progress=report)
        AGGREGATION_DURATION.observe(time.perf_counter() - started)

        finished_at = datetime.now(timezone.utc)
        record_id = uuid.uuid4().hex
        await self.store.save(
            record_id=record_id,
            owner_id=owner_id,
            job_id=job_id,
            metrics=metrics,
            finished_at=finished_at,
        )
        return {"recordId": record_id, "jobId": job_id, "finishedAt": finished_at.isoformat()}

    async def _report_failure(self, job_id: str, message: str, *, reason: Optional[str] = None) -> None:
        JOBS_FAILED.labels(reason=reason or "error").inc()
        try:
            await self.queue.mark_failed(job_id, message)
        except Exception:
            logger.exception("Could not mark job failed", extra={"job_id": job_id})


__all__ = ["AggregatorFactory", "ExecutionOutcome", "JobExecutor", "JobRejectedError", "UnknownJobKindError"]
