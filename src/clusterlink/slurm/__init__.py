"""SLURM job submission, status polling and the job lifecycle state machine."""

from clusterlink.slurm.batch import (
    JobSpec,
    JobSubmissionError,
    build_submit_command,
    cancel_job,
    parse_job_id,
    render_batch_script,
    submit_job,
)
from clusterlink.slurm.inference import ALLOWED_MODELS, DEFAULT_MODEL, InferenceClient, InferenceError, inference_job
from clusterlink.slurm.orchestrator import JobOrchestrator, JobSnapshot, JobState, OrchestratorError
from clusterlink.slurm.status import TERMINAL_STATES, JobStatus, JobStatusError, check_job_status

__all__ = [
    "JobSpec",
    "JobSubmissionError",
    "render_batch_script",
    "build_submit_command",
    "parse_job_id",
    "submit_job",
    "cancel_job",
    "JobStatus",
    "JobStatusError",
    "TERMINAL_STATES",
    "check_job_status",
    "JobOrchestrator",
    "JobSnapshot",
    "JobState",
    "OrchestratorError",
    "ALLOWED_MODELS",
    "DEFAULT_MODEL",
    "inference_job",
    "InferenceClient",
    "InferenceError",
]
