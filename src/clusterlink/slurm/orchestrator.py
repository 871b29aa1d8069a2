"""Job lifecycle: submit -> poll the queue -> open the tunnel -> tear down."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from clusterlink.remote.executor import execute
from clusterlink.remote.ssh import ExecutionError
from clusterlink.remote.tunnel_manager import TunnelManager, TunnelStartError
from clusterlink.remote.types import Credentials
from clusterlink.slurm.batch import Executor, JobSpec, JobSubmissionError, submit_job
from clusterlink.slurm.status import JobStatusError, check_job_status

logger = logging.getLogger(__name__)

POLL_INTERVAL = 5.0


class JobState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    QUEUED = "queued"
    STARTING_TUNNEL = "starting_tunnel"
    READY = "ready"
    ERROR = "error"


class OrchestratorError(RuntimeError):
    """Raised when an operation is not allowed in the current state."""


@dataclass(frozen=True, slots=True)
class JobSnapshot:
    """Consistent view of the orchestrator at one instant."""

    state: JobState
    job_id: Optional[str]
    node: Optional[str]
    last_error: Optional[str]
    log: Tuple[str, ...]


class JobOrchestrator:
    """
    Runs one batch job at a time through its lifecycle.

    All state lives behind a single condition variable. Each run gets a
    generation number; results that arrive after stop() or a newer run
    bumped the generation are discarded rather than applied.
    """

    def __init__(
        self,
        credentials: Credentials,
        tunnels: TunnelManager,
        executor: Executor = execute,
        poll_interval: float = POLL_INTERVAL,
        remote_port: int = 5000,
        local_port: int = 5000,
    ):
        self.credentials = credentials
        self.tunnels = tunnels
        self.executor = executor
        self.poll_interval = poll_interval
        self.remote_port = remote_port
        self.local_port = local_port

        self._cond = threading.Condition()
        self._state = JobState.IDLE
        self._generation = 0
        self._cancel: Optional[threading.Event] = None
        self._job_id: Optional[str] = None
        self._node: Optional[str] = None
        self._last_error: Optional[str] = None
        self._log: List[str] = []

    @property
    def state(self) -> JobState:
        with self._cond:
            return self._state

    def snapshot(self) -> JobSnapshot:
        with self._cond:
            return self._snapshot()

    def wait_for(self, states: Iterable[JobState], timeout: Optional[float] = None) -> JobSnapshot:
        """Block until the state is one of states or timeout elapses; return the latest snapshot."""
        wanted = frozenset(states)
        with self._cond:
            self._cond.wait_for(lambda: self._state in wanted, timeout)
            return self._snapshot()

    def start(self, spec: JobSpec) -> None:
        """
        Submit spec and follow it until the tunnel is up or the run fails.

        Returns immediately; progress is visible through snapshot() and wait_for().

        Raises:
            OrchestratorError: If a run is already in progress.
        """
        with self._cond:
            if self._state is not JobState.IDLE:
                raise OrchestratorError(f"Cannot start a job while {self._state.value}")

            self._generation += 1
            generation = self._generation
            cancel = self._cancel = threading.Event()
            self._job_id = None
            self._node = None
            self._last_error = None
            self._log = []
            self._set_state(JobState.SUBMITTING)
            self._append_log(f"Submitting SBATCH job '{spec.name}'...")

        worker = threading.Thread(
            target=self._run,
            args=(generation, spec, cancel),
            name=f"job-orchestrator-{generation}",
            daemon=True,
        )
        worker.start()

    def stop(self) -> None:
        """Return to Idle from any state, tearing down the tunnel if one exists."""
        with self._cond:
            if self._cancel is not None:
                self._cancel.set()
                self._cancel = None
            self._generation += 1
            previous = self._state
            self._job_id = None
            self._node = None
            self._last_error = None
            self._log = []
            self._set_state(JobState.IDLE)

        self.tunnels.stop()
        if previous is not JobState.IDLE:
            logger.info(f"Stopped job run (was {previous.value})")

    def _run(self, generation: int, spec: JobSpec, cancel: threading.Event) -> None:
        try:
            job_id = self._submit(generation, spec)
            if job_id is None:
                return
            node = self._poll(generation, job_id, cancel)
            if node is None:
                return
            self._open_tunnel(generation, node)
        except Exception as exc:
            logger.exception("Job run failed unexpectedly")
            self._fail(generation, f"Unexpected error: {exc}")

    def _submit(self, generation: int, spec: JobSpec) -> Optional[str]:
        try:
            job_id = submit_job(self.credentials, spec, executor=self.executor)
        except (ExecutionError, JobSubmissionError) as exc:
            self._fail(generation, str(exc))
            return None

        with self._cond:
            if not self._is_current(generation, JobState.SUBMITTING):
                logger.warning(f"Discarding submission result for job {job_id}; run was stopped")
                return None
            self._job_id = job_id
            self._append_log(f"Job submitted: {job_id}")
            self._set_state(JobState.QUEUED)
        return job_id

    def _poll(self, generation: int, job_id: str, cancel: threading.Event) -> Optional[str]:
        while not cancel.wait(self.poll_interval):
            try:
                status = check_job_status(self.credentials, job_id, executor=self.executor)
            except ExecutionError as exc:
                if exc.fatal:
                    self._fail(generation, str(exc))
                    return None
                self._log_if_current(generation, f"Status check failed: {exc}")
                continue
            except JobStatusError as exc:
                self._log_if_current(generation, f"Status check failed: {exc}")
                continue

            with self._cond:
                if not self._is_current(generation, JobState.QUEUED):
                    return None
                self._append_log(f"Job State: {status.state}" + (f" Node: {status.node}" if status.node else ""))
                if status.is_running:
                    self._node = status.node
                    self._set_state(JobState.STARTING_TUNNEL)
                    return status.node
                if status.is_terminal:
                    self._last_error = f"Job ended with state: {status.state}"
                    self._set_state(JobState.ERROR)
                    return None
        return None

    def _open_tunnel(self, generation: int, node: str) -> None:
        self._log_if_current(generation, f"Starting tunnel to {node}...")
        try:
            self.tunnels.start(self.credentials, node, self.remote_port, self.local_port)
        except TunnelStartError as exc:
            self._fail(generation, str(exc))
            return

        with self._cond:
            current = self._is_current(generation, JobState.STARTING_TUNNEL)
            if current:
                self._append_log("Tunnel established successfully.")
                self._set_state(JobState.READY)

        if not current:
            # stop() ran while the tunnel was coming up
            self.tunnels.stop()

    def _fail(self, generation: int, message: str) -> None:
        with self._cond:
            if self._generation != generation or self._state in (JobState.IDLE, JobState.ERROR):
                return
            self._last_error = message
            self._append_log(f"Error: {message}")
            self._set_state(JobState.ERROR)
        logger.error(message)

    def _log_if_current(self, generation: int, message: str) -> None:
        with self._cond:
            if self._generation == generation:
                self._append_log(message)

    def _is_current(self, generation: int, state: JobState) -> bool:
        return self._generation == generation and self._state is state

    def _set_state(self, state: JobState) -> None:
        self._state = state
        self._cond.notify_all()

    def _append_log(self, message: str) -> None:
        self._log.append(f"[{datetime.now().strftime('%H:%M:%S')}] {message}")
        logger.info(message)

    def _snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            state=self._state,
            job_id=self._job_id,
            node=self._node,
            last_error=self._last_error,
            log=tuple(self._log),
        )
