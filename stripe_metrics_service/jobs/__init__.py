"""Job orchestration utilities."""

from .executor import ExecutionOutcome, JobExecutor, JobRejectedError, UnknownJobKindError
from .models import Job, JobState, build_job_id, job_owned_by, parse_job_id
from .queue import DuplicateJobError, JobNotFoundError, JobQueue, JobStateError

__all__ = [
    "DuplicateJobError",
    "ExecutionOutcome",
    "Job",
    "JobExecutor",
    "JobNotFoundError",
    "JobQueue",
    "JobRejectedError",
    "JobState",
    "JobStateError",
    "UnknownJobKindError",
    "build_job_id",
    "job_owned_by",
    "parse_job_id",
]
