"""Remote execution and tunnelling over SSH."""

from clusterlink.remote.executor import execute, verify_connection
from clusterlink.remote.ssh import (
    ExecutionError,
    SSHAuthenticationError,
    SSHConfigurationError,
    SSHSession,
    SSHTransportError,
)
from clusterlink.remote.tunnel import READY_MARKER, ForwardingServer, Tunnel
from clusterlink.remote.tunnel_manager import TunnelHandle, TunnelManager, TunnelStartError
from clusterlink.remote.types import CommandResult, Credentials

__all__ = [
    "Credentials",
    "CommandResult",
    "SSHSession",
    "ExecutionError",
    "SSHAuthenticationError",
    "SSHConfigurationError",
    "SSHTransportError",
    "execute",
    "verify_connection",
    "ForwardingServer",
    "Tunnel",
    "READY_MARKER",
    "TunnelManager",
    "TunnelHandle",
    "TunnelStartError",
]
