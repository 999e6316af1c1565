"""Job registry and dispatch for scrape jobs.

Celery moves the task message to a worker; the registry kept here in Redis
is the source of truth for a job's state, progress, attempts, failure
reason and result reference. The credential only travels inside the task
message and is never written to the registry.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from redis.asyncio import Redis

from ..config import Settings
from ..monitoring.metrics import JOBS_SUBMITTED
from .models import Job, JobState, build_job_id

logger = logging.getLogger(__name__)

Dispatch = Callable[..., Any]


class JobStateError(RuntimeError):
    """Raised on a transition out of a terminal state."""


class JobNotFoundError(KeyError):
    """Raised when a job id has no registry entry."""


class DuplicateJobError(RuntimeError):
    """Raised when a job id is already registered."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class JobQueue:
    """Submits jobs and tracks their lifecycle in Redis."""

    def __init__(self, redis: Redis, dispatch: Dispatch, settings: Settings) -> None:
        self.redis = redis
        self.dispatch = dispatch
        self.settings = settings
        self.namespace = settings.queue_name

    def _job_key(self, job_id: str) -> str:
        return f"{self.namespace}:job:{job_id}"

    def _state_key(self, state: JobState) -> str:
        return f"{self.namespace}:state:{state.value}"

    async def submit(self, owner_id: str, credential: str) -> str:
        """Register a waiting job and hand it to the workers. Returns the job id."""

        kind = self.settings.job_name
        job_id = build_job_id(kind, owner_id)
        key = self._job_key(job_id)
        if not await self.redis.hsetnx(key, "id", job_id):
            raise DuplicateJobError(job_id)

        now = _now()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                key,
                mapping={
                    "kind": kind,
                    "owner_id": owner_id,
                    "state": JobState.WAITING.value,
                    "progress": 0,
                    "attempts_made": 0,
                    "attempts_allowed": self.settings.job_attempts,
                    "created_at": now.isoformat(),
                },
            )
            pipe.zadd(self._state_key(JobState.WAITING), {job_id: now.timestamp()})
            await pipe.execute()

        try:
            self.dispatch(job_id, kind, {"credential": credential}, queue=self.settings.queue_name)
        except Exception:
            await self._forget(job_id, JobState.WAITING)
            raise

        JOBS_SUBMITTED.inc()
        logger.info("Enqueued scrape job", extra={"job_id": job_id, "owner_id": owner_id})
        return job_id

    async def get(self, job_id: str) -> Optional[Job]:
        data = await self.redis.hgetall(self._job_key(job_id))
        if not data or "state" not in data:
            return None
        result = data.get("result")
        return Job(
            job_id=data.get("id", job_id),
            kind=data.get("kind", ""),
            owner_id=data.get("owner_id", ""),
            state=JobState(data["state"]),
            progress=int(data.get("progress", 0)),
            attempts_made=int(data.get("attempts_made", 0)),
            attempts_allowed=int(data.get("attempts_allowed", 1)),
            failure_reason=data.get("failure_reason") or None,
            result=json.loads(result) if result else None,
            created_at=_parse_dt(data.get("created_at")),
            finished_at=_parse_dt(data.get("finished_at")),
        )

    async def get_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = await self.get(job_id)
        return job.to_status() if job else None

    async def _require(self, job_id: str) -> Job:
        job = await self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.state.is_terminal:
            raise JobStateError(f"Job {job_id} is already {job.state.value}")
        return job

    async def _move(self, job: Job, new_state: JobState, fields: Dict[str, Any], ttl: Optional[int] = None) -> None:
        key = self._job_key(job.job_id)
        now = _now()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping={"state": new_state.value, **fields})
            if job.state is not new_state:
                pipe.zrem(self._state_key(job.state), job.job_id)
                pipe.zadd(self._state_key(new_state), {job.job_id: now.timestamp()})
            if ttl is not None:
                pipe.expire(key, ttl)
            await pipe.execute()

    async def mark_active(self, job_id: str) -> Job:
        job = await self._require(job_id)
        job.attempts_made += 1
        await self._move(job, JobState.ACTIVE, {"attempts_made": job.attempts_made})
        job.state = JobState.ACTIVE
        return job

    async def set_progress(self, job_id: str, progress: int) -> None:
        await self._require(job_id)
        await self.redis.hset(self._job_key(job_id), "progress", max(0, min(100, int(progress))))

    async def mark_completed(self, job_id: str, result: Dict[str, Any]) -> None:
        job = await self._require(job_id)
        fields = {"progress": 100, "result": json.dumps(result), "finished_at": _now().isoformat(), "failure_reason": ""}
        await self._move(job, JobState.COMPLETED, fields, ttl=self.settings.completed_job_ttl_seconds)
        await self.prune(JobState.COMPLETED)

    async def mark_failed(self, job_id: str, reason: str) -> None:
        job = await self._require(job_id)
        fields = {"failure_reason": reason[:1000], "finished_at": _now().isoformat()}
        await self._move(job, JobState.FAILED, fields, ttl=self.settings.failed_job_ttl_seconds)
        await self.prune(JobState.FAILED)

    async def mark_delayed(self, job_id: str, reason: str) -> None:
        job = await self._require(job_id)
        await self._move(job, JobState.DELAYED, {"failure_reason": reason[:1000]})

    def retry_delay(self, attempts_made: int) -> float:
        """Exponential backoff before the next attempt."""

        return self.settings.job_backoff_seconds * (2 ** max(attempts_made - 1, 0))

    async def prune(self, state: JobState) -> int:
        """Drop index entries past the retention window of ``state``."""

        if state is JobState.COMPLETED:
            ttl = self.settings.completed_job_ttl_seconds
            max_count: Optional[int] = self.settings.completed_job_max_count
        elif state is JobState.FAILED:
            ttl = self.settings.failed_job_ttl_seconds
            max_count = None
        else:
            return 0

        index = self._state_key(state)
        expired = await self.redis.zrangebyscore(index, "-inf", time.time() - ttl)
        overflow = []
        if max_count is not None:
            size = await self.redis.zcard(index)
            if size - len(expired) > max_count:
                overflow = await self.redis.zrange(index, len(expired), size - max_count - 1)
        stale = list(expired) + list(overflow)
        if stale:
            await self.redis.zrem(index, *stale)
            await self.redis.delete(*(self._job_key(job_id) for job_id in stale))
        return len(stale)

    async def counts(self) -> Dict[str, int]:
        return {state.value: await self.redis.zcard(self._state_key(state)) for state in JobState}

    async def clean(self, state: JobState) -> int:
        """Remove every registered job in ``state``."""

        index = self._state_key(state)
        job_ids = await self.redis.zrange(index, 0, -1)
        if job_ids:
            await self.redis.delete(*(self._job_key(job_id) for job_id in job_ids))
        await self.redis.delete(index)
        return len(job_ids)

    async def _forget(self, job_id: str, state: JobState) -> None:
        await self.redis.delete(self._job_key(job_id))
        await self.redis.zrem(self._state_key(state), job_id)

    async def wait_for_terminal(self, job_id: str, *, interval: float, timeout: float) -> Job:
        """Poll until the job completes or fails, giving up after ``timeout`` seconds."""

        deadline = time.monotonic() + timeout
        while True:
            job = await self.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.state.is_terminal:
                return job
            if time.monotonic() + interval > deadline:
                raise TimeoutError(f"Job {job_id} still {job.state.value} after {timeout:.0f}s")
            await asyncio.sleep(interval)


__all__ = ["DuplicateJobError", "JobNotFoundError", "JobQueue", "JobStateError"]
