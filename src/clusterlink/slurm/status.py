"""Queue status lookup for a single job."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from clusterlink.remote.executor import execute
from clusterlink.remote.types import Credentials
from clusterlink.slurm.batch import Executor

logger = logging.getLogger(__name__)

RUNNING = "RUNNING"
COMPLETED = "COMPLETED"

TERMINAL_STATES = frozenset(
    {
        "COMPLETED",
        "FAILED",
        "CANCELLED",
        "TIMEOUT",
        "OUT_OF_MEMORY",
        "NODE_FAIL",
        "PREEMPTED",
        "BOOT_FAIL",
        "DEADLINE",
    }
)

_NO_NODE = {"", "(N/A)", "(null)"}


class JobStatusError(RuntimeError):
    """Raised when neither the live queue nor the accounting history knows the job."""


@dataclass(frozen=True, slots=True)
class JobStatus:
    state: str
    node: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_running(self) -> bool:
        return self.state == RUNNING and self.node is not None


def check_job_status(credentials: Credentials, job_id: str, executor: Executor = execute) -> JobStatus:
    """
    Look up the job in squeue, falling back to sacct once it has left the queue.

    A job missing from squeue output with a zero exit code is reported as COMPLETED.

    Raises:
        JobStatusError: If squeue rejects the id and sacct has no record either.
        ExecutionError: If the remote session cannot be established.
    """
    if not job_id or not str(job_id).isdigit():
        raise ValueError("job_id must be a numeric string")

    result = executor(credentials, f'squeue -j {job_id} --noheader --format="%T %N"')

    if not result.ok:
        history = executor(credentials, f'sacct -j {job_id} --noheader --format="State"')
        fields = history.stdout.split()
        if not fields:
            raise JobStatusError("Job not found")
        # sacct marks states such as "CANCELLED+" when more detail is truncated
        return JobStatus(state=fields[0].rstrip("+"))

    fields = result.stdout.split()
    if not fields:
        return JobStatus(state=COMPLETED)

    node = fields[1] if len(fields) > 1 else ""
    return JobStatus(state=fields[0], node=None if node in _NO_NODE else node)
