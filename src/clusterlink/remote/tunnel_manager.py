"""Owns the single tunnel child process of the running application."""
from __future__ import annotations

import logging
import re
import subprocess
import sys
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from clusterlink.remote.tunnel import READY_MARKER
from clusterlink.remote.types import Credentials

logger = logging.getLogger(__name__)

NULL_SENTINEL = "null"
BOUND_PORT_PATTERN = re.compile(r"\bon [^\s:]+:(\d+)")


class TunnelStartError(RuntimeError):
    """Raised when the tunnel process exits or stalls before signalling readiness."""


@dataclass(slots=True)
class TunnelHandle:
    """A tunnel child process that reported its listener bound."""

    process: subprocess.Popen
    dest_host: str
    dest_port: int
    local_port: int

    @property
    def running(self) -> bool:
        return self.process.poll() is None


def build_tunnel_command(credentials: Credentials, dest_host: str, dest_port: int, local_port: int) -> List[str]:
    """
    Argument vector that launches clusterlink.remote.tunnel_cli in a new interpreter.

    Options come first and "--" ends them, so a password or key starting with "-"
    is still read as a positional.
    """
    return [
        sys.executable,
        "-m",
        "clusterlink.remote.tunnel_cli",
        "--port",
        str(credentials.port),
        "--",
        credentials.host,
        credentials.username,
        credentials.password or NULL_SENTINEL,
        credentials.private_key or NULL_SENTINEL,
        dest_host,
        str(dest_port),
        str(local_port),
    ]


CommandBuilder = Callable[[Credentials, str, int, int], List[str]]


class _OutputReader(threading.Thread):
    """Reads the child's merged output, watching for the readiness line."""

    def __init__(self, process: subprocess.Popen, on_exit: Callable[[subprocess.Popen], None]):
        super().__init__(name=f"tunnel-output-{process.pid}", daemon=True)
        self.process = process
        self.on_exit = on_exit
        self.lines: List[str] = []
        self.ready_line: Optional[str] = None
        self.ready = threading.Event()
        # set on readiness or on end of output, whichever comes first
        self.settled = threading.Event()
        self.eof = threading.Event()

    def run(self) -> None:
        for line in self.process.stdout:
            line = line.rstrip("\n")
            self.lines.append(line)
            logger.debug(f"Tunnel output: {line}")
            if not self.ready.is_set() and READY_MARKER in line:
                self.ready_line = line
                self.ready.set()
                self.settled.set()
        self.eof.set()
        self.settled.set()
        code = self.process.wait()
        logger.info(f"Tunnel exited with code {code}")
        self.on_exit(self.process)

    @property
    def output(self) -> str:
        return "\n".join(self.lines)


class TunnelManager:
    """Starts, tracks and stops at most one tunnel process."""

    def __init__(
        self,
        startup_timeout: float = 30.0,
        stop_timeout: float = 5.0,
        command_builder: CommandBuilder = build_tunnel_command,
    ):
        self.startup_timeout = startup_timeout
        self.stop_timeout = stop_timeout
        self.command_builder = command_builder
        self._lock = threading.Lock()
        self._handle: Optional[TunnelHandle] = None

    @property
    def handle(self) -> Optional[TunnelHandle]:
        with self._lock:
            return self._handle

    @property
    def active(self) -> bool:
        handle = self.handle
        return handle is not None and handle.running

    def start(self, credentials: Credentials, dest_host: str, dest_port: int, local_port: int) -> TunnelHandle:
        """
        Start the tunnel unless one is already running.

        Args:
            credentials: Login host credentials, held by the child for its lifetime.
            dest_host: Node the forwarded connections are directed at.
            dest_port: Port on dest_host.
            local_port: Port bound on 127.0.0.1.

        Returns:
            The new handle, or the existing one when a tunnel is already active.

        Raises:
            TunnelStartError: If the child exits or times out before it is ready.
        """
        with self._lock:
            if self._handle is not None and self._handle.running:
                logger.info("Tunnel already running")
                return self._handle

            argv = self.command_builder(credentials, dest_host, dest_port, local_port)
            logger.info(f"Starting tunnel 127.0.0.1:{local_port} -> {dest_host}:{dest_port}")
            try:
                process = subprocess.Popen(
                    argv,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    bufsize=1,
                )
            except OSError as exc:
                raise TunnelStartError(f"Unable to launch tunnel process: {exc}") from exc

            reader = _OutputReader(process, self._on_process_exit)
            reader.start()
            reader.settled.wait(self.startup_timeout)

            if not reader.ready.is_set():
                if not reader.eof.is_set():
                    self._terminate(process)
                    raise TunnelStartError(
                        f"Tunnel did not become ready within {self.startup_timeout:.0f}s. Output: {reader.output}"
                    )
                raise TunnelStartError(
                    f"Tunnel process exited with code {process.wait()}. Output: {reader.output}"
                )

            self._handle = TunnelHandle(
                process=process,
                dest_host=dest_host,
                dest_port=dest_port,
                local_port=_bound_port(reader.ready_line, local_port),
            )
            logger.info(f"Tunnel started on 127.0.0.1:{self._handle.local_port}")
            return self._handle

    def stop(self) -> None:
        """Terminate the tunnel process if one is running."""
        with self._lock:
            handle = self._handle
            self._handle = None
            if handle is None:
                return
            self._terminate(handle.process)
            logger.info("Tunnel stopped")

    def _terminate(self, process: subprocess.Popen) -> None:
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Tunnel process {process.pid} ignored SIGTERM, killing it")
            process.kill()
            process.wait()

    def _on_process_exit(self, process: subprocess.Popen) -> None:
        with self._lock:
            if self._handle is not None and self._handle.process is process:
                logger.warning("Tunnel process exited unexpectedly")
                self._handle = None


def _bound_port(ready_line: Optional[str], requested: int) -> int:
    # port 0 asks the child to pick one; the readiness line names it
    match = BOUND_PORT_PATTERN.search(ready_line or "")
    return int(match.group(1)) if match else requested
