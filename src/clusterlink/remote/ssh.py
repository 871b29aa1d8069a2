"""SSH session used for one-shot commands and forwarded channels."""
import io
import logging
import select
from typing import Optional, Tuple

import paramiko

from clusterlink.remote.types import CommandResult, Credentials

logger = logging.getLogger(__name__)

_KEY_TYPES = (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey)
_READ_SIZE = 32768
_SELECT_TIMEOUT = 1.0


class ExecutionError(RuntimeError):
    """Raised when a remote session cannot be established or used."""

    fatal = False


class SSHAuthenticationError(ExecutionError):
    """The remote host rejected the credentials. Never retried."""

    fatal = True


class SSHConfigurationError(ExecutionError):
    """The credentials carry neither a password nor a private key."""

    fatal = True


class SSHTransportError(ExecutionError):
    """Network-level failure that may succeed on a later attempt."""


def load_private_key(key_text: str) -> paramiko.PKey:
    """
    Parse private key material held in memory.

    Args:
        key_text: PEM/OpenSSH encoded private key.

    Returns:
        Parsed paramiko key.

    Raises:
        SSHAuthenticationError: If no supported key type can read the material.
    """
    for key_type in _KEY_TYPES:
        try:
            return key_type.from_private_key(io.StringIO(key_text))
        except (paramiko.SSHException, ValueError):
            continue
    raise SSHAuthenticationError("Private key could not be parsed as RSA, Ed25519 or ECDSA")


class SSHSession:
    """One authenticated SSH connection, opened fresh for each caller."""

    def __init__(self, credentials: Credentials, connect_timeout: float = 10.0):
        """
        Initialize session parameters. Nothing is opened until connect().

        Args:
            credentials: Remote endpoint and auth method. Required.
            connect_timeout: Seconds allowed for TCP connect, banner and auth.

        Raises:
            ValueError: If host or username is empty or the port is invalid.
        """
        if not credentials.host or not isinstance(credentials.host, str):
            raise ValueError("host must be a non-empty string")
        if not credentials.username or not isinstance(credentials.username, str):
            raise ValueError("username must be a non-empty string")
        if not isinstance(credentials.port, int) or credentials.port <= 0 or credentials.port > 65535:
            raise ValueError("port must be an integer between 1 and 65535")

        self.credentials = credentials
        self.connect_timeout = connect_timeout
        self.client: Optional[paramiko.SSHClient] = None

    @property
    def is_active(self) -> bool:
        transport = self.client.get_transport() if self.client else None
        return transport is not None and transport.is_active()

    def connect(self) -> None:
        """
        Open the transport and authenticate.

        Password auth is used when a password is present, otherwise the private key.

        Raises:
            SSHConfigurationError: If neither a password nor a key is available.
            SSHAuthenticationError: If the server rejects the credentials.
            SSHTransportError: If the host cannot be reached or the handshake fails.
        """
        if self.is_active:
            logger.debug(f"Already connected to {self.credentials.host}")
            return

        creds = self.credentials
        pkey = None
        if not creds.password:
            key_text = creds.key_material()
            if not key_text:
                raise SSHConfigurationError(
                    f"No password or private key configured for {creds.username}@{creds.host}"
                )
            pkey = load_private_key(key_text)

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            client.connect(
                hostname=creds.host,
                port=creds.port,
                username=creds.username,
                password=creds.password or None,
                pkey=pkey,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as exc:
            client.close()
            raise SSHAuthenticationError(
                f"Authentication failed for {creds.username}@{creds.host}: {exc}"
            ) from exc
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise SSHTransportError(f"Connection to {creds.host}:{creds.port} failed: {exc}") from exc

        self.client = client
        logger.debug(f"SSH connection established to {creds.username}@{creds.host}:{creds.port}")

    def disconnect(self) -> None:
        """Close SSH connection."""
        if self.client:
            self.client.close()
            self.client = None
            logger.debug(f"SSH connection closed to {self.credentials.host}")

    def run(self, command: str) -> CommandResult:
        """
        Execute a command verbatim and collect its output until the channel closes.

        Args:
            command: Shell command line. The caller is responsible for quoting.

        Returns:
            CommandResult with exit_code None when the process died from a signal.

        Raises:
            SSHTransportError: If the channel cannot be opened or the connection drops.
        """
        transport = self._require_transport()

        try:
            channel = transport.open_session(timeout=self.connect_timeout)
            channel.exec_command(command)
        except (paramiko.SSHException, OSError) as exc:
            raise SSHTransportError(f"Unable to open command channel: {exc}") from exc

        try:
            stdout, stderr = _drain(channel)
        except (paramiko.SSHException, OSError) as exc:
            raise SSHTransportError(f"Connection lost while reading command output: {exc}") from exc
        finally:
            channel.close()

        if not transport.is_active():
            raise SSHTransportError("Connection dropped before the command finished")

        status = channel.recv_exit_status()
        exit_code = None if status == -1 else status
        logger.debug(f"Command executed: {command} (exit code: {exit_code})")
        return CommandResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=exit_code,
        )

    def open_forward_channel(self, dest_host: str, dest_port: int, origin: Tuple[str, int]) -> paramiko.Channel:
        """
        Open a direct-tcpip channel to dest_host:dest_port through this session.

        Raises:
            SSHTransportError: If the server refuses or cannot reach the destination.
        """
        transport = self._require_transport()
        try:
            return transport.open_channel(
                "direct-tcpip",
                (dest_host, dest_port),
                origin,
                timeout=self.connect_timeout,
            )
        except (paramiko.SSHException, OSError) as exc:
            raise SSHTransportError(f"Forwarding to {dest_host}:{dest_port} failed: {exc}") from exc

    def _require_transport(self) -> paramiko.Transport:
        if not self.is_active:
            raise SSHTransportError("Not connected to remote host. Call connect() first.")
        return self.client.get_transport()

    def __enter__(self) -> "SSHSession":
        self.connect()
        return self

    def __exit__(self, *exc) -> None:
        self.disconnect()


def _drain(channel: paramiko.Channel) -> Tuple[bytes, bytes]:
    stdout = bytearray()
    stderr = bytearray()
    while True:
        # closed is sampled first so everything it implies is already buffered
        closed = channel.closed
        received = False
        if channel.recv_ready():
            stdout += channel.recv(_READ_SIZE)
            received = True
        if channel.recv_stderr_ready():
            stderr += channel.recv_stderr(_READ_SIZE)
            received = True
        if received:
            continue
        if closed:
            return bytes(stdout), bytes(stderr)
        select.select([channel], [], [], _SELECT_TIMEOUT)
