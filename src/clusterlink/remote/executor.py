"""One-shot remote command execution with retry and backoff."""
from __future__ import annotations

import logging
import time
from typing import Optional

from clusterlink.remote.ssh import ExecutionError, SSHSession
from clusterlink.remote.types import CommandResult, Credentials

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_DELAY = 1.0  # seconds, multiplied by the attempt number
CONNECT_TIMEOUT = 10.0


def execute(
    credentials: Credentials,
    command: str,
    *,
    max_retries: int = MAX_RETRIES,
    retry_delay: float = RETRY_DELAY,
    connect_timeout: float = CONNECT_TIMEOUT,
) -> CommandResult:
    """
    Run a command on the remote host over a brand-new SSH session.

    A command that runs and exits non-zero is a normal result. Only failures to
    reach or authenticate against the host raise.

    Args:
        credentials: Remote endpoint and auth method. Required.
        command: Shell command line, executed verbatim. Required.
        max_retries: Total attempts allowed for transient failures.
        retry_delay: Base backoff; attempt N waits N * retry_delay before retrying.
        connect_timeout: Connect/auth timeout for each attempt.

    Returns:
        CommandResult with stdout, stderr and exit code.

    Raises:
        ValueError: If command is empty or max_retries is not positive.
        ExecutionError: Fatal errors immediately, transient ones after the last attempt.
    """
    if not command or not isinstance(command, str):
        raise ValueError("command must be a non-empty string")
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")

    last_error: Optional[ExecutionError] = None

    for attempt in range(1, max_retries + 1):
        session = SSHSession(credentials, connect_timeout=connect_timeout)
        try:
            session.connect()
            return session.run(command)
        except ExecutionError as exc:
            if exc.fatal:
                logger.error(f"SSH attempt {attempt} failed fatally: {exc}")
                raise
            last_error = exc
            logger.warning(f"SSH attempt {attempt}/{max_retries} failed: {exc}")
        finally:
            session.disconnect()

        if attempt < max_retries:
            time.sleep(retry_delay * attempt)

    raise last_error


def verify_connection(credentials: Credentials, **kwargs) -> CommandResult:
    """
    Check that the credentials can log in and run a trivial command.

    Raises:
        ExecutionError: If the session fails or the command exits non-zero.
    """
    result = execute(credentials, 'echo "Connection Verified"', **kwargs)
    if not result.ok:
        raise ExecutionError(result.stderr.strip() or f"Command failed with exit code {result.exit_code}")
    logger.info(f"Connected successfully to {credentials.username}@{credentials.host}")
    return result
