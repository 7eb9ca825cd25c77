from unittest.mock import AsyncMock, patch

import click.testing
import pytest

from chamberbench.cli import cli
from chamberbench.system import SETTINGS_FILE, save_settings
from chamberbench.types import RUN_STATUS
from chamberbench.util import DEFAULT_HOST_ADDR, DEFAULT_PORT


@pytest.fixture
def cli_runner():
    return click.testing.CliRunner()


class TestTree:
    def test_tree(self, cli_runner):
        result = cli_runner.invoke(cli, ["--tree"])
        assert result.exit_code == 0
        for name in ("server", "run", "ports", "check", "all-off", "on", "off", "shutdown"):
            assert f"└── {name}" in result.output


class TestServerCLI:
    @patch("chamberbench.server.server.start_server", new_callable=AsyncMock)
    def test_default_values(self, mock_start_server, cli_runner):
        result = cli_runner.invoke(cli, ["server", "--mock"])
        assert result.exit_code == 0
        mock_start_server.assert_called_once()
        kwargs = mock_start_server.call_args.kwargs
        assert kwargs["host"] == DEFAULT_HOST_ADDR
        assert kwargs["msg_port"] == DEFAULT_PORT
        assert kwargs["notif_port"] == DEFAULT_PORT + 1
        assert kwargs["mock"] is True

    @patch("chamberbench.server.server.start_server", new_callable=AsyncMock)
    def test_all_arguments(self, mock_start_server, cli_runner):
        result = cli_runner.invoke(
            cli,
            [
                "server",
                "--host-address",
                "localhost",
                "--msg-port",
                "5555",
                "--notif-port",
                "5556",
                "--settings-dir",
                "/tmp/bench-settings",
                "--data-dir",
                "/tmp/bench-data",
                "--log-to-file",
                "--log-to-stdout",
                "--log-path",
                "/tmp/server.log",
                "--clear-prev-log",
                "--log-level",
                "DEBUG",
            ],
        )
        assert result.exit_code == 0
        mock_start_server.assert_called_once()
        kwargs = mock_start_server.call_args.kwargs
        assert kwargs["host"] == "localhost"
        assert kwargs["notif_port"] == 5556
        assert kwargs["settings_dir"] == "/tmp/bench-settings"
        assert kwargs["data_root"] == "/tmp/bench-data"
        assert kwargs["mock"] is False


class TestPortsCommand:
    @patch("chamberbench.cli.base.get_hw_ports")
    def test_no_ports(self, mock_ports, cli_runner):
        mock_ports.return_value = {}
        result = cli_runner.invoke(cli, ["ports"])
        assert result.exit_code == 0
        assert "No serial ports found" in result.output

    @patch("chamberbench.cli.base.get_hw_ports")
    def test_ports(self, mock_ports, cli_runner):
        mock_ports.return_value = {
            "/dev/ttyUSB0": ("USB-Serial Controller", "USB VID:PID=067B:2303")
        }
        result = cli_runner.invoke(cli, ["ports"])
        assert result.exit_code == 0
        assert "Port: /dev/ttyUSB0" in result.output
        assert "Hardware ID: USB VID:PID=067B:2303" in result.output


class TestMockBenchCommands:
    def test_check(self, cli_runner):
        result = cli_runner.invoke(cli, ["check", "--mock"])
        assert result.exit_code == 0
        assert "relay" in result.output
        assert "chamber" in result.output

    def test_chamber(self, cli_runner):
        result = cli_runner.invoke(cli, ["chamber", "--mock"])
        assert result.exit_code == 0
        assert "Chamber: 80.00 C" in result.output

    def test_all_off(self, cli_runner):
        result = cli_runner.invoke(cli, ["all-off", "--mock"])
        assert result.exit_code == 0
        assert "All relays off" in result.output


@pytest.mark.slow
class TestRunCommand:
    def test_mock_run(self, cli_runner, tmp_path):
        settings_dir = tmp_path / "settings"
        save_settings(
            settings_dir,
            SETTINGS_FILE.HIGH_TEMP,
            {"highTemp": True, "targetTemp": 75, "waitTime": 0, "readCount": 1},
        )
        save_settings(
            settings_dir,
            SETTINGS_FILE.LOW_TEMP,
            {"lowTemp": False, "targetTemp": -32, "waitTime": 0, "readCount": 1},
        )
        result = cli_runner.invoke(
            cli,
            [
                "run",
                "--mock",
                "--settings-dir",
                str(settings_dir),
                "--data-dir",
                str(tmp_path / "data"),
                "--seconds-per-minute",
                "0.01",
            ],
        )
        assert result.exit_code == 0, result.output
        assert "TEST_COMPLETED" in result.output
        assert f"Run {RUN_STATUS.COMPLETED}" in result.output
        assert "Final_Device_Report.csv" in result.output

    def test_bad_settings(self, cli_runner, tmp_path):
        (tmp_path / SETTINGS_FILE.DELAY).write_text("{oops")
        result = cli_runner.invoke(cli, ["run", "--mock", "--settings-dir", str(tmp_path)])
        assert result.exit_code != 0
        assert "invalid JSON" in result.output


class TestListCommand:
    def test_list_command(self, cli_runner, tmp_path):
        with patch("chamberbench.server.bg_killer.get_servers_dir", return_value=tmp_path):
            result = cli_runner.invoke(cli, ["list"])
        assert result.exit_code == 0
        assert "No servers found" in result.output


class TestKillCommand:
    def test_kill_command(self, cli_runner, tmp_path):
        with patch("chamberbench.server.bg_killer.get_servers_dir", return_value=tmp_path):
            result = cli_runner.invoke(cli, ["kill"])
        assert result.exit_code == 0
        assert "No running chamberbench servers found" in result.output
