"""CLI interface for cluster commands, batch jobs and the inference server."""
from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Callable, Optional

from clusterlink.config import get_cluster_config, load_settings
from clusterlink.remote.executor import execute, verify_connection
from clusterlink.remote.ssh import ExecutionError
from clusterlink.remote.tunnel_manager import TunnelManager
from clusterlink.remote.types import CommandResult, Credentials
from clusterlink.slurm.batch import JobSpec, JobSubmissionError, cancel_job, submit_job
from clusterlink.slurm.inference import ALLOWED_MODELS, DEFAULT_MODEL, InferenceClient, InferenceError, inference_job
from clusterlink.slurm.orchestrator import JobOrchestrator, JobState
from clusterlink.slurm.status import JobStatusError, check_job_status

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s")
    else:
        root.setLevel(level)


def _credentials(args: argparse.Namespace) -> Credentials:
    env_file = Path(args.env_file) if args.env_file else None
    config = get_cluster_config(env_file)
    return config.credentials(password=args.password, key_file=args.key_file)


def _executor(settings: dict) -> Callable[[Credentials, str], CommandResult]:
    def run(credentials: Credentials, command: str):
        return execute(
            credentials,
            command,
            max_retries=int(settings["max_retries"]),
            retry_delay=float(settings["retry_delay_seconds"]),
            connect_timeout=float(settings["connect_timeout_seconds"]),
        )

    return run


def handle_verify(args: argparse.Namespace, settings: dict) -> int:
    verify_connection(_credentials(args), connect_timeout=float(settings["connect_timeout_seconds"]))
    print("Connected successfully")
    return 0


def handle_exec(args: argparse.Namespace, settings: dict) -> int:
    result = _executor(settings)(_credentials(args), args.command)
    sys.stdout.write(result.stdout)
    sys.stderr.write(result.stderr)
    return result.exit_code if result.exit_code is not None else 1


def handle_submit(args: argparse.Namespace, settings: dict) -> int:
    script_path = Path(args.script_file)
    if not script_path.is_file():
        raise FileNotFoundError(f"Job script not found: {args.script_file}")

    spec = JobSpec(
        name=args.name,
        partition=args.partition or settings["partition"],
        nodes=args.nodes,
        cpus=args.cpus,
        memory=args.memory,
        time=args.time,
        script=script_path.read_text(encoding="utf-8"),
    )
    job_id = submit_job(_credentials(args), spec, executor=_executor(settings))
    print(f"Submitted batch job {job_id}")
    return 0


def handle_status(args: argparse.Namespace, settings: dict) -> int:
    status = check_job_status(_credentials(args), args.job_id, executor=_executor(settings))
    print(f"{status.state} {status.node or '-'}")
    return 0


def handle_cancel(args: argparse.Namespace, settings: dict) -> int:
    cancel_job(_credentials(args), args.job_id, executor=_executor(settings))
    print(f"Cancelled job {args.job_id}")
    return 0


def handle_serve(args: argparse.Namespace, settings: dict) -> int:
    tunnels = TunnelManager(startup_timeout=float(settings["tunnel_startup_timeout_seconds"]))
    orchestrator = JobOrchestrator(
        credentials=_credentials(args),
        tunnels=tunnels,
        executor=_executor(settings),
        poll_interval=float(settings["polling_interval_seconds"]),
        remote_port=int(settings["remote_port"]),
        local_port=int(settings["local_port"]),
    )
    spec = inference_job(
        args.model,
        port=int(settings["remote_port"]),
        partition=args.partition or settings["partition"],
    )

    printed = 0
    try:
        orchestrator.start(spec)
        while True:
            snapshot = orchestrator.wait_for((JobState.READY, JobState.ERROR), timeout=1.0)
            for line in snapshot.log[printed:]:
                print(line)
            printed = len(snapshot.log)
            if snapshot.state is JobState.ERROR:
                print(f"Error: {snapshot.last_error}", file=sys.stderr)
                return 1
            if snapshot.state is JobState.READY:
                break

        print(f"Inference server on {snapshot.node} available at http://127.0.0.1:{orchestrator.local_port}")
        print("Press Ctrl+C to stop.")
        while tunnels.active:
            time.sleep(1.0)
        print("Tunnel closed", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Stopping...")
        return 0
    finally:
        orchestrator.stop()


def handle_query(args: argparse.Namespace, settings: dict) -> int:
    client = InferenceClient(base_url=f"http://127.0.0.1:{args.local_port or settings['local_port']}")
    if args.reset:
        client.reset()
        print("Context reset")
        return 0
    print(client.query(args.message, instructions=args.instructions))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Drive a SLURM cluster over SSH")
    parser.add_argument("--env-file", type=str, default=None, help="Path to .env file (default: ./.env)")
    parser.add_argument("--password", type=str, default=None, help="SSH password (defaults to CLUSTERLINK_PASSWORD)")
    parser.add_argument("--key-file", type=str, default=None, help="SSH private key file (defaults to CLUSTERLINK_KEY_FILE)")
    parser.add_argument("--settings", type=str, default=None, help="YAML settings file overriding the packaged defaults")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command_name", required=True)

    verify = subparsers.add_parser("verify", help="Check that the cluster accepts the credentials")
    verify.set_defaults(handler=handle_verify)

    run = subparsers.add_parser("exec", help="Run one shell command on the login node")
    run.add_argument("command", type=str, help="Command line, passed to the remote shell verbatim")
    run.set_defaults(handler=handle_exec)

    submit = subparsers.add_parser("submit", help="Submit a batch job")
    submit.add_argument("script_file", type=str, help="Local file holding the job body")
    submit.add_argument("--name", type=str, default="job", help="Job name (default: job)")
    submit.add_argument("--partition", type=str, default=None, help="Partition (defaults to settings)")
    submit.add_argument("--nodes", type=int, default=1, help="Node count (default: 1)")
    submit.add_argument("--cpus", type=int, default=1, help="CPUs per task (default: 1)")
    submit.add_argument("--memory", type=str, default="4G", help="Memory per node (default: 4G)")
    submit.add_argument("--time", type=str, default="01:00:00", help="Time limit (default: 01:00:00)")
    submit.set_defaults(handler=handle_submit)

    status = subparsers.add_parser("status", help="Show the state and node of a job")
    status.add_argument("job_id", type=str, help="SLURM job id")
    status.set_defaults(handler=handle_status)

    cancel = subparsers.add_parser("cancel", help="Cancel a job")
    cancel.add_argument("job_id", type=str, help="SLURM job id")
    cancel.set_defaults(handler=handle_cancel)

    serve = subparsers.add_parser("serve", help="Start the inference server job and tunnel to it")
    serve.add_argument("--model", type=str, default=DEFAULT_MODEL, choices=ALLOWED_MODELS, help="Model to serve")
    serve.add_argument("--partition", type=str, default=None, help="Partition (defaults to settings)")
    serve.set_defaults(handler=handle_serve)

    query = subparsers.add_parser("query", help="Ask the running inference server")
    query.add_argument("message", type=str, nargs="?", default=None, help="Prompt text")
    query.add_argument("--instructions", type=str, default=None, help="System instructions for this prompt")
    query.add_argument("--reset", action="store_true", help="Clear server-side context instead of querying")
    query.add_argument("--local-port", type=int, default=None, help="Local tunnel port (defaults to settings)")
    query.set_defaults(handler=handle_query)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.command_name == "query" and not args.reset and not args.message:
        parser.error("query requires a message unless --reset is given")

    settings = load_settings(Path(args.settings) if args.settings else None)

    try:
        return args.handler(args, settings)
    except (ExecutionError, JobSubmissionError, JobStatusError, InferenceError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except (ValueError, FileNotFoundError) as exc:
        print(f"Invalid input: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
