"""Command-line entrypoint for the long-lived tunnel child process.

Usage: clusterlink-tunnel [--port N] -- <host> <username> <password> <private-key> <dest-host> <dest-port> <local-port>

Pass "null" for whichever of password/private-key is not used. The "--" keeps
secrets that begin with "-" from being read as options.
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import Optional

from clusterlink.remote.ssh import ExecutionError
from clusterlink.remote.tunnel import Tunnel
from clusterlink.remote.types import Credentials

logger = logging.getLogger(__name__)

HEALTH_CHECK_INTERVAL = 1.0


def _configure_logging(verbose: bool) -> None:
    # stdout carries the readiness line, so logs go to stderr
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, stream=sys.stderr, format="%(asctime)s [%(levelname)s] %(message)s")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Forward a local port to a cluster node through SSH")
    parser.add_argument("host", help="SSH login host")
    parser.add_argument("username", help="SSH username")
    parser.add_argument("password", help="SSH password, or 'null'")
    parser.add_argument("private_key", help="Private key text with \\n escapes, or 'null'")
    parser.add_argument("dest_host", help="Destination host as seen from the login host")
    parser.add_argument("dest_port", type=int, help="Destination port")
    parser.add_argument("local_port", type=int, help="Local port to listen on (127.0.0.1)")
    parser.add_argument("--port", type=int, default=22, help="SSH port (default: 22)")
    parser.add_argument("--connect-timeout", type=float, default=10.0, help="Connect/auth timeout in seconds")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    _configure_logging(args.verbose)

    credentials = Credentials.from_args(
        host=args.host,
        username=args.username,
        password=args.password,
        private_key=args.private_key,
        port=args.port,
    )

    try:
        tunnel = Tunnel(credentials, args.dest_host, args.dest_port, args.local_port, connect_timeout=args.connect_timeout)
        tunnel.open()
    except ExecutionError as exc:
        print(f"SSH Connection Error: {exc}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as exc:
        print(f"Tunnel server error: {exc}", file=sys.stderr)
        return 1

    stop_requested = threading.Event()

    def _request_stop(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down tunnel")
        stop_requested.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    server_thread = tunnel.start()
    print(tunnel.ready_message, flush=True)

    exit_code = 0
    try:
        while not stop_requested.wait(HEALTH_CHECK_INTERVAL):
            if not server_thread.is_alive() or not tunnel.is_alive:
                logger.error("SSH session or listener terminated, closing tunnel")
                exit_code = 1
                break
    finally:
        tunnel.close()

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
