"""Local TCP listener that forwards connections through an SSH session."""
from __future__ import annotations

import logging
import select
import socket
import socketserver
import threading
from typing import Any, Callable, Optional, Tuple

from clusterlink.remote.ssh import SSHSession
from clusterlink.remote.types import Credentials

logger = logging.getLogger(__name__)

READY_MARKER = "Tunnel listening"
BUFFER_SIZE = 16384

# Opens the remote end of one forwarded connection given the client's address.
ChannelOpener = Callable[[Tuple[str, int]], Any]


def splice(sock: socket.socket, chan: Any, stop_event: threading.Event) -> None:
    """
    Copy bytes both ways between a socket and a channel until both sides finish.

    End of input on one side is passed on as a write shutdown of the other, and
    the opposite direction keeps flowing until it ends too. The channel only
    needs recv/sendall/fileno plus shutdown_write or shutdown, so a
    paramiko.Channel and a plain socket both work.
    """
    peers = {sock: chan, chan: sock}
    reading = [sock, chan]
    while reading and not stop_event.is_set():
        readable, _, _ = select.select(reading, [], [], 1.0)
        for source in readable:
            target = peers[source]
            data = source.recv(BUFFER_SIZE)
            if data:
                target.sendall(data)
            else:
                reading.remove(source)
                _shutdown_write(target)


def _shutdown_write(endpoint: Any) -> None:
    try:
        if hasattr(endpoint, "shutdown_write"):
            endpoint.shutdown_write()
        else:
            endpoint.shutdown(socket.SHUT_WR)
    except OSError as exc:
        # peer already gone; the read side will report end of input
        logger.debug(f"Write shutdown failed: {exc}")


class _ThreadedTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    daemon_threads = True
    allow_reuse_address = True


class ForwardingServer:
    """Accepts local clients and splices each one onto a freshly opened channel."""

    def __init__(self, local_port: int, open_channel: ChannelOpener, bind_host: str = "127.0.0.1"):
        """
        Bind the listener. Port 0 lets the OS pick a free port.

        Raises:
            OSError: If the address cannot be bound.
        """
        self.open_channel = open_channel
        self._stop_event = threading.Event()
        self._serving = threading.Event()
        self._server = _ThreadedTCPServer((bind_host, local_port), self._handler_class())
        self.bind_host, self.local_port = self._server.server_address[:2]

    def _handler_class(self):
        forwarder = self

        class ForwardHandler(socketserver.BaseRequestHandler):
            def handle(self):
                forwarder._forward(self.request)

        return ForwardHandler

    def _forward(self, client: socket.socket) -> None:
        peer = client.getpeername()
        try:
            chan = self.open_channel(peer)
        except Exception as exc:
            # Only this client is affected; the listener keeps serving.
            logger.error(f"Forwarding error for {peer[0]}:{peer[1]}: {exc}")
            return

        try:
            splice(client, chan, self._stop_event)
        except OSError as exc:
            logger.warning(f"Forwarded connection from {peer[0]}:{peer[1]} broke: {exc}")
        finally:
            chan.close()

    def serve_forever(self) -> None:
        self._serving.set()
        self._server.serve_forever()

    def shutdown(self) -> None:
        """Stop accepting, end open splices and release the port."""
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        # BaseServer.shutdown() blocks forever unless serve_forever() is running
        if self._serving.is_set():
            self._server.shutdown()
        self._server.server_close()

    def start_background(self) -> threading.Thread:
        self._serving.set()
        thread = threading.Thread(
            target=self.serve_forever,
            name=f"forward-{self.local_port}",
            daemon=True,
        )
        thread.start()
        return thread


class Tunnel:
    """
    Forward 127.0.0.1:local_port to dest_host:dest_port over one SSH session.

    The listener and the session live and die together.
    """

    def __init__(
        self,
        credentials: Credentials,
        dest_host: str,
        dest_port: int,
        local_port: int,
        connect_timeout: float = 10.0,
    ):
        if not dest_host or not isinstance(dest_host, str):
            raise ValueError("dest_host must be a non-empty string")
        for name, port in (("dest_port", dest_port), ("local_port", local_port)):
            if not isinstance(port, int) or port < 0 or port > 65535:
                raise ValueError(f"{name} must be an integer between 0 and 65535")

        self.dest_host = dest_host
        self.dest_port = dest_port
        self.local_port = local_port
        self.session = SSHSession(credentials, connect_timeout=connect_timeout)
        self.server: Optional[ForwardingServer] = None

    def open(self) -> None:
        """
        Authenticate the session, then bind the listener.

        Raises:
            ExecutionError: If the session cannot be established.
            OSError: If the local port cannot be bound.
        """
        self.session.connect()
        try:
            self.server = ForwardingServer(self.local_port, self._open_channel)
        except OSError:
            self.session.disconnect()
            raise
        self.local_port = self.server.local_port

    def _open_channel(self, origin: Tuple[str, int]):
        return self.session.open_forward_channel(self.dest_host, self.dest_port, origin)

    @property
    def ready_message(self) -> str:
        return f"{READY_MARKER} on 127.0.0.1:{self.local_port} -> {self.dest_host}:{self.dest_port}"

    @property
    def is_alive(self) -> bool:
        return self.server is not None and self.session.is_active

    def start(self) -> threading.Thread:
        """Serve connections on a background thread."""
        if self.server is None:
            raise RuntimeError("Tunnel is not open. Call open() first.")
        return self.server.start_background()

    def close(self) -> None:
        if self.server is not None:
            self.server.shutdown()
            self.server = None
        self.session.disconnect()
