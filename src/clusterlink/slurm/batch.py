"""Batch script generation and submission through sbatch."""
from __future__ import annotations

import base64
import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from clusterlink.remote.executor import execute
from clusterlink.remote.types import CommandResult, Credentials

logger = logging.getLogger(__name__)

JOB_ID_PATTERN = re.compile(r"Submitted batch job (\d+)")

Executor = Callable[[Credentials, str], CommandResult]


class JobSubmissionError(RuntimeError):
    """Raised when sbatch or scancel reports a failure."""


@dataclass(slots=True)
class JobSpec:
    """Resources and body of a batch job."""

    name: str
    partition: str
    nodes: int
    cpus: int
    memory: str
    time: str
    script: str
    gres: Optional[str] = None
    ntasks_per_node: Optional[int] = None
    output: Optional[str] = None
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.name or not isinstance(self.name, str):
            raise ValueError("name must be a non-empty string")
        if not self.partition or not isinstance(self.partition, str):
            raise ValueError("partition must be a non-empty string")
        if not isinstance(self.nodes, int) or self.nodes <= 0:
            raise ValueError("nodes must be a positive integer")
        if not isinstance(self.cpus, int) or self.cpus <= 0:
            raise ValueError("cpus must be a positive integer")


def render_batch_script(spec: JobSpec) -> str:
    """Render the #SBATCH header followed by the job body."""
    directives = [
        f"--job-name={spec.name}",
        f"--partition={spec.partition}",
        f"--nodes={spec.nodes}",
    ]
    if spec.ntasks_per_node is not None:
        directives.append(f"--ntasks-per-node={spec.ntasks_per_node}")
    directives += [
        f"--cpus-per-task={spec.cpus}",
        f"--mem={spec.memory}",
        f"--time={spec.time}",
    ]
    if spec.gres:
        directives.append(f"--gres={spec.gres}")
    if spec.output:
        directives.append(f"--output={spec.output}")
    if spec.error:
        directives.append(f"--error={spec.error}")

    header = "\n".join(f"#SBATCH {d}" for d in directives)
    return f"#!/bin/bash\n{header}\n\n{spec.script.rstrip()}\n"


def temp_script_name() -> str:
    return f"clusterlink_job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}.slurm"


def build_submit_command(script: str, filename: Optional[str] = None) -> str:
    """
    Shell command that writes script to a remote temp file, submits it and removes it.

    The file is removed whatever sbatch returns and the command exits with sbatch's status.
    """
    filename = filename or temp_script_name()
    encoded = base64.b64encode(script.encode("utf-8")).decode("ascii")
    return (
        f"echo '{encoded}' | base64 -d > {filename} && sbatch {filename}; "
        f"status=$?; rm -f {filename}; exit $status"
    )


def parse_job_id(stdout: str) -> Optional[str]:
    match = JOB_ID_PATTERN.search(stdout)
    return match.group(1) if match else None


def submit_job(credentials: Credentials, spec: JobSpec, executor: Executor = execute) -> str:
    """
    Submit a batch job and return its id.

    Raises:
        JobSubmissionError: If sbatch fails or prints no job id.
        ExecutionError: If the remote session cannot be established.
    """
    command = build_submit_command(render_batch_script(spec))
    logger.info(f"Submitting batch job '{spec.name}' to partition {spec.partition}")

    result = executor(credentials, command)
    if not result.ok:
        raise JobSubmissionError(result.stderr.strip() or "Failed to submit job")

    job_id = parse_job_id(result.stdout)
    if job_id is None:
        raise JobSubmissionError(f"Failed to submit job: no job id in sbatch output {result.stdout.strip()!r}")

    logger.info(f"Job submitted: {job_id}")
    return job_id


def cancel_job(credentials: Credentials, job_id: str, executor: Executor = execute) -> None:
    """Cancel a queued or running job with scancel."""
    if not job_id or not str(job_id).isdigit():
        raise ValueError("job_id must be a numeric string")

    result = executor(credentials, f"scancel {job_id}")
    if not result.ok:
        raise JobSubmissionError(result.stderr.strip() or "Failed to cancel job")
    logger.info(f"Job cancelled: {job_id}")
