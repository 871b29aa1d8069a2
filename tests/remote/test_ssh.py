import socket

import paramiko
import pytest
from unittest.mock import patch, MagicMock

from clusterlink.remote.ssh import (
    SSHAuthenticationError,
    SSHConfigurationError,
    SSHSession,
    SSHTransportError,
    load_private_key,
)
from clusterlink.remote.types import Credentials

PASSWORD_CREDS = Credentials(host="login.cluster", username="alice", password="secret")


def _connected_session(mock_client_cls, creds=PASSWORD_CREDS):
    client = mock_client_cls.return_value
    client.get_transport.return_value.is_active.return_value = True
    session = SSHSession(creds)
    session.connect()
    return session, client.get_transport.return_value


def _channel(transport, stdout=b"", stderr=b"", status=0):
    channel = transport.open_session.return_value
    channel.closed = True
    channel.recv_ready.side_effect = [bool(stdout), False, False]
    channel.recv.return_value = stdout
    channel.recv_stderr_ready.side_effect = [bool(stderr), False, False]
    channel.recv_stderr.return_value = stderr
    channel.recv_exit_status.return_value = status
    return channel


class TestConnect:
    """Authentication and error classification."""

    @patch('clusterlink.remote.ssh.paramiko.SSHClient')
    def test_password_auth(self, mock_client_cls):
        session = SSHSession(PASSWORD_CREDS)
        session.connect()

        kwargs = mock_client_cls.return_value.connect.call_args.kwargs
        assert kwargs["hostname"] == "login.cluster"
        assert kwargs["port"] == 22
        assert kwargs["password"] == "secret"
        assert kwargs["pkey"] is None
        assert kwargs["timeout"] == 10.0
        assert kwargs["allow_agent"] is False
        assert kwargs["look_for_keys"] is False

    @patch('clusterlink.remote.ssh.load_private_key')
    @patch('clusterlink.remote.ssh.paramiko.SSHClient')
    def test_private_key_is_unescaped(self, mock_client_cls, mock_load_key):
        creds = Credentials(host="h", username="u", private_key="-----BEGIN KEY-----\\nabc\\n-----END KEY-----")

        SSHSession(creds).connect()

        mock_load_key.assert_called_once_with("-----BEGIN KEY-----\nabc\n-----END KEY-----")
        assert mock_client_cls.return_value.connect.call_args.kwargs["pkey"] is mock_load_key.return_value

    @patch('clusterlink.remote.ssh.load_private_key')
    @patch('clusterlink.remote.ssh.paramiko.SSHClient')
    def test_password_wins_over_key(self, mock_client_cls, mock_load_key):
        creds = Credentials(host="h", username="u", password="pw", private_key="KEY")

        SSHSession(creds).connect()

        mock_load_key.assert_not_called()

    @patch('clusterlink.remote.ssh.paramiko.SSHClient')
    def test_missing_auth_is_configuration_error(self, mock_client_cls):
        with pytest.raises(SSHConfigurationError) as excinfo:
            SSHSession(Credentials(host="h", username="u")).connect()

        assert excinfo.value.fatal is True
        mock_client_cls.assert_not_called()

    @patch('clusterlink.remote.ssh.paramiko.SSHClient')
    def test_rejected_credentials_are_fatal(self, mock_client_cls):
        mock_client_cls.return_value.connect.side_effect = paramiko.AuthenticationException("Authentication failed.")

        with pytest.raises(SSHAuthenticationError) as excinfo:
            SSHSession(PASSWORD_CREDS).connect()

        assert excinfo.value.fatal is True
        mock_client_cls.return_value.close.assert_called_once()

    @pytest.mark.parametrize("error", [
        socket.timeout("timed out"),
        ConnectionRefusedError(111, "Connection refused"),
        socket.gaierror(-2, "Name or service not known"),
        paramiko.SSHException("Error reading SSH protocol banner"),
    ])
    @patch('clusterlink.remote.ssh.paramiko.SSHClient')
    def test_network_errors_are_transient(self, mock_client_cls, error):
        mock_client_cls.return_value.connect.side_effect = error

        with pytest.raises(SSHTransportError) as excinfo:
            SSHSession(PASSWORD_CREDS).connect()

        assert excinfo.value.fatal is False

    def test_invalid_port_rejected(self):
        with pytest.raises(ValueError):
            SSHSession(Credentials(host="h", username="u", port=70000, password="pw"))

    def test_unparseable_key_is_fatal(self):
        with pytest.raises(SSHAuthenticationError):
            load_private_key("definitely not a key")


class TestRun:
    """Command execution over an open session."""

    @patch('clusterlink.remote.ssh.paramiko.SSHClient')
    def test_collects_stdout_stderr_and_status(self, mock_client_cls):
        session, transport = _connected_session(mock_client_cls)
        channel = _channel(transport, stdout=b"hello\n", stderr=b"warn\n", status=0)

        result = session.run("echo hello")

        channel.exec_command.assert_called_once_with("echo hello")
        assert result.stdout == "hello\n"
        assert result.stderr == "warn\n"
        assert result.exit_code == 0

    @patch('clusterlink.remote.ssh.paramiko.SSHClient')
    def test_signal_termination_maps_to_none(self, mock_client_cls):
        session, transport = _connected_session(mock_client_cls)
        _channel(transport, status=-1)

        assert session.run("kill -9 $$").exit_code is None

    @patch('clusterlink.remote.ssh.paramiko.SSHClient')
    def test_channel_open_failure_is_transient(self, mock_client_cls):
        session, transport = _connected_session(mock_client_cls)
        transport.open_session.side_effect = paramiko.SSHException("Unable to open channel.")

        with pytest.raises(SSHTransportError):
            session.run("ls")

    @patch('clusterlink.remote.ssh.paramiko.SSHClient')
    def test_dropped_transport_is_transient(self, mock_client_cls):
        session, transport = _connected_session(mock_client_cls)
        _channel(transport, stdout=b"partial")
        transport.is_active.side_effect = [True, False]

        with pytest.raises(SSHTransportError, match="dropped"):
            session.run("long-job")

    def test_run_requires_connection(self):
        with pytest.raises(SSHTransportError, match="Not connected"):
            SSHSession(PASSWORD_CREDS).run("ls")


class TestForwardChannel:

    @patch('clusterlink.remote.ssh.paramiko.SSHClient')
    def test_opens_direct_tcpip(self, mock_client_cls):
        session, transport = _connected_session(mock_client_cls)

        chan = session.open_forward_channel("node07", 5000, ("127.0.0.1", 40000))

        transport.open_channel.assert_called_once_with(
            "direct-tcpip", ("node07", 5000), ("127.0.0.1", 40000), timeout=10.0
        )
        assert chan is transport.open_channel.return_value

    @patch('clusterlink.remote.ssh.paramiko.SSHClient')
    def test_refused_forward_is_transport_error(self, mock_client_cls):
        session, transport = _connected_session(mock_client_cls)
        transport.open_channel.side_effect = paramiko.ChannelException(2, "Connect failed")

        with pytest.raises(SSHTransportError, match="node07:5000"):
            session.open_forward_channel("node07", 5000, ("127.0.0.1", 40000))


@patch('clusterlink.remote.ssh.paramiko.SSHClient')
def test_context_manager_disconnects(mock_client_cls):
    with SSHSession(PASSWORD_CREDS) as session:
        assert session.client is mock_client_cls.return_value

    mock_client_cls.return_value.close.assert_called_once()
    assert session.client is None


def test_credentials_repr_hides_secrets():
    creds = Credentials(host="h", username="u", password="hunter2", private_key="KEY")
    assert "hunter2" not in repr(creds)
    assert "KEY" not in repr(creds)


def test_sentinels_mean_absent():
    creds = Credentials.from_args("h", "u", password="null", private_key="undefined")
    assert creds.password is None
    assert creds.private_key is None
