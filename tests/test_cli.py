import pytest
from unittest.mock import patch, MagicMock

from clusterlink import cli
from clusterlink.remote.ssh import SSHAuthenticationError
from clusterlink.remote.types import CommandResult, Credentials
from clusterlink.slurm.orchestrator import JobSnapshot, JobState
from clusterlink.slurm.status import JobStatus

CREDS = Credentials(host="login.cluster", username="alice", password="secret")


@pytest.fixture(autouse=True)
def mock_config():
    with patch('clusterlink.cli.get_cluster_config') as mocked:
        mocked.return_value.credentials.return_value = CREDS
        yield mocked


class TestExec:

    @patch('clusterlink.cli.execute')
    def test_prints_output_and_returns_status(self, mock_execute, capsys):
        mock_execute.return_value = CommandResult("hello\n", "", 0)

        assert cli.main(["exec", "echo hello"]) == 0

        assert capsys.readouterr().out == "hello\n"
        mock_execute.assert_called_once_with(
            CREDS, "echo hello", max_retries=3, retry_delay=1.0, connect_timeout=10.0
        )

    @patch('clusterlink.cli.execute')
    def test_remote_exit_code_is_returned(self, mock_execute, capsys):
        mock_execute.return_value = CommandResult("", "No such file\n", 2)

        assert cli.main(["exec", "cat missing"]) == 2
        assert capsys.readouterr().err == "No such file\n"

    @patch('clusterlink.cli.execute')
    def test_settings_file_overrides_retries(self, mock_execute, tmp_path):
        settings = tmp_path / "settings.yaml"
        settings.write_text("max_retries: 7\n", encoding="utf-8")
        mock_execute.return_value = CommandResult("", "", 0)

        cli.main(["--settings", str(settings), "exec", "true"])

        assert mock_execute.call_args.kwargs["max_retries"] == 7

    def test_cli_password_is_passed_to_config(self, mock_config):
        with patch('clusterlink.cli.execute', return_value=CommandResult("", "", 0)):
            cli.main(["--password", "pw", "exec", "true"])

        mock_config.return_value.credentials.assert_called_once_with(password="pw", key_file=None)


class TestVerify:

    @patch('clusterlink.cli.verify_connection')
    def test_success(self, mock_verify, capsys):
        assert cli.main(["verify"]) == 0
        assert "Connected successfully" in capsys.readouterr().out

    @patch('clusterlink.cli.verify_connection')
    def test_authentication_failure(self, mock_verify, capsys):
        mock_verify.side_effect = SSHAuthenticationError("Authentication failed")

        assert cli.main(["verify"]) == 1
        assert "Error: Authentication failed" in capsys.readouterr().err


class TestJobs:

    @patch('clusterlink.cli.submit_job', return_value="4821")
    def test_submit(self, mock_submit, tmp_path, capsys):
        script = tmp_path / "job.sh"
        script.write_text("python train.py\n", encoding="utf-8")

        assert cli.main(["submit", str(script), "--name", "train", "--cpus", "8"]) == 0

        spec = mock_submit.call_args.args[1]
        assert spec.name == "train"
        assert spec.cpus == 8
        assert spec.partition == "kamiak"
        assert spec.script == "python train.py\n"
        assert "Submitted batch job 4821" in capsys.readouterr().out

    def test_submit_missing_script(self, tmp_path, capsys):
        assert cli.main(["submit", str(tmp_path / "absent.sh")]) == 2
        assert "Job script not found" in capsys.readouterr().err

    @patch('clusterlink.cli.check_job_status', return_value=JobStatus(state="RUNNING", node="node07"))
    def test_status(self, mock_status, capsys):
        assert cli.main(["status", "4821"]) == 0
        assert capsys.readouterr().out == "RUNNING node07\n"

    @patch('clusterlink.cli.cancel_job')
    def test_cancel(self, mock_cancel, capsys):
        assert cli.main(["cancel", "4821"]) == 0
        assert mock_cancel.call_args.args[:2] == (CREDS, "4821")


class TestQuery:

    def test_message_required_without_reset(self):
        with pytest.raises(SystemExit) as excinfo:
            cli.main(["query"])
        assert excinfo.value.code == 2

    @patch('clusterlink.cli.InferenceClient')
    def test_query(self, mock_client_cls, capsys):
        mock_client_cls.return_value.query.return_value = "Paris"

        assert cli.main(["query", "Capital of France?", "--local-port", "5001"]) == 0

        mock_client_cls.assert_called_once_with(base_url="http://127.0.0.1:5001")
        mock_client_cls.return_value.query.assert_called_once_with("Capital of France?", instructions=None)
        assert capsys.readouterr().out == "Paris\n"

    @patch('clusterlink.cli.InferenceClient')
    def test_reset(self, mock_client_cls):
        assert cli.main(["query", "--reset"]) == 0
        mock_client_cls.return_value.reset.assert_called_once()


class TestServe:

    @patch('clusterlink.cli.TunnelManager')
    @patch('clusterlink.cli.JobOrchestrator')
    def test_error_state_exits_nonzero(self, mock_orchestrator_cls, mock_tunnels_cls, capsys):
        orchestrator = mock_orchestrator_cls.return_value
        orchestrator.wait_for.return_value = JobSnapshot(
            state=JobState.ERROR,
            job_id="4821",
            node=None,
            last_error="Job ended with state: FAILED",
            log=("[12:00:00] Job submitted: 4821",),
        )

        assert cli.main(["serve"]) == 1

        captured = capsys.readouterr()
        assert "[12:00:00] Job submitted: 4821" in captured.out
        assert "Job ended with state: FAILED" in captured.err
        orchestrator.stop.assert_called_once()

    @patch('clusterlink.cli.time.sleep', side_effect=KeyboardInterrupt)
    @patch('clusterlink.cli.TunnelManager')
    @patch('clusterlink.cli.JobOrchestrator')
    def test_ready_until_interrupted(self, mock_orchestrator_cls, mock_tunnels_cls, mock_sleep, capsys):
        orchestrator = mock_orchestrator_cls.return_value
        orchestrator.local_port = 5000
        orchestrator.wait_for.return_value = JobSnapshot(
            state=JobState.READY, job_id="4821", node="node07", last_error=None, log=()
        )
        mock_tunnels_cls.return_value.active = True

        assert cli.main(["serve"]) == 0

        assert "http://127.0.0.1:5000" in capsys.readouterr().out
        spec = orchestrator.start.call_args.args[0]
        assert spec.name == "rag_app"
        orchestrator.stop.assert_called_once()
