"""Domain models for scrape jobs."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

JOB_ID_SEPARATOR = ":"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


def build_job_id(prefix: str, owner_id: str, token: Optional[str] = None) -> str:
    """Return ``{prefix}:{owner_id}:{token}`` with a fresh random token by default."""

    return JOB_ID_SEPARATOR.join((prefix, owner_id, token or uuid.uuid4().hex))


def parse_job_id(job_id: str, prefix: str) -> Optional[Tuple[str, str]]:
    """Split a job id into ``(owner_id, token)``, or ``None`` if it is malformed."""

    head = f"{prefix}{JOB_ID_SEPARATOR}"
    if not job_id.startswith(head):
        return None
    owner_id, sep, token = job_id[len(head):].rpartition(JOB_ID_SEPARATOR)
    if not sep or not owner_id or not token:
        return None
    return owner_id, token


def job_owned_by(job_id: str, prefix: str, owner_id: str) -> bool:
    parsed = parse_job_id(job_id, prefix)
    return parsed is not None and parsed[0] == owner_id


@dataclass
class Job:
    job_id: str
    kind: str
    owner_id: str
    state: JobState = JobState.WAITING
    progress: int = 0
    attempts_made: int = 0
    attempts_allowed: int = 1
    failure_reason: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_status(self) -> Dict[str, Any]:
        return {
            "id": self.job_id,
            "state": self.state.value,
            "progress": self.progress,
            "failedReason": self.failure_reason,
            "result": self.result if self.state is JobState.COMPLETED else None,
            "attemptsMade": self.attempts_made,
            "attemptsTotal": self.attempts_allowed,
        }


__all__ = ["Job", "JobState", "JOB_ID_SEPARATOR", "build_job_id", "job_owned_by", "parse_job_id"]
