"""Tests for local Prefect server setup."""

import os
from unittest.mock import MagicMock, patch

from storyloop.lib.prefect_server import (
    EPHEMERAL_ENV,
    SERVER_LOG,
    LocalPrefectServer,
    ensure_prefect_server,
)


def fake_server(healthy=False, comes_up=True):
    server = MagicMock(spec=LocalPrefectServer)
    server.host, server.port = "127.0.0.1", 4200
    server.api_url = "http://127.0.0.1:4200/api"
    server.healthy.return_value = healthy
    server.wait_healthy.return_value = comes_up
    return server


class TestEnsurePrefectServer:

    @patch.dict(os.environ, {EPHEMERAL_ENV: "1"}, clear=True)
    def test_ephemeral_requested(self):
        server = fake_server()
        assert ensure_prefect_server(server=server) is None
        server.healthy.assert_not_called()

    @patch.dict(os.environ, {"PREFECT_API_URL": "http://prefect.internal/api"}, clear=True)
    def test_configured_api_left_alone(self):
        server = fake_server()
        assert ensure_prefect_server(server=server) == "http://prefect.internal/api"
        server.start.assert_not_called()

    @patch.dict(os.environ, {}, clear=True)
    def test_running_server_reused(self):
        server = fake_server(healthy=True)
        assert ensure_prefect_server(server=server) == server.api_url
        server.start.assert_not_called()
        assert os.environ["PREFECT_API_URL"] == server.api_url

    @patch.dict(os.environ, {}, clear=True)
    def test_starts_server_with_log(self, tmp_path):
        server = fake_server()
        assert ensure_prefect_server(tmp_path / "ops", server=server) == server.api_url
        server.start.assert_called_once_with(tmp_path / "ops" / SERVER_LOG)

    @patch.dict(os.environ, {}, clear=True)
    def test_falls_back_when_server_never_healthy(self, caplog):
        server = fake_server(comes_up=False)
        assert ensure_prefect_server(server=server) is None
        assert "PREFECT_API_URL" not in os.environ
        assert "ephemeral" in caplog.text

    @patch.dict(os.environ, {}, clear=True)
    def test_falls_back_without_prefect_binary(self):
        server = fake_server()
        server.start.side_effect = FileNotFoundError("prefect")
        assert ensure_prefect_server(server=server) is None


class TestLocalPrefectServer:

    def test_api_url(self):
        assert LocalPrefectServer(port=4300).api_url == "http://127.0.0.1:4300/api"

    @patch("storyloop.lib.prefect_server.urlopen", side_effect=OSError("refused"))
    def test_unreachable_is_unhealthy(self, _urlopen):
        assert LocalPrefectServer().healthy() is False

    @patch("storyloop.lib.prefect_server.subprocess.Popen")
    def test_start_command(self, mock_popen, tmp_path):
        LocalPrefectServer(port=4300).start(tmp_path / SERVER_LOG)
        cmd = mock_popen.call_args[0][0]
        assert cmd == ["prefect", "server", "start", "--host", "127.0.0.1", "--port", "4300"]
        assert mock_popen.call_args.kwargs["start_new_session"] is True
        assert (tmp_path / SERVER_LOG).exists()
