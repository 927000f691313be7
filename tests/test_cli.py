"""Tests for the command-line interface."""

import pytest
from click.testing import CliRunner
from unittest.mock import MagicMock, patch

from smartmeter_sim.cli import main


@pytest.fixture
def runner():
    return CliRunner()


class TestCLI:
    """Tests for CLI commands."""

    def test_init_writes_config(self, runner, tmp_path):
        result = runner.invoke(main, ["init", "--output", str(tmp_path)])

        assert result.exit_code == 0
        assert (tmp_path / "config.yaml").exists()

    def test_status(self, runner):
        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "TRANSMITTING" in result.output
        assert "devices/{id}/messages/devicebound/" in result.output

    def test_run_dry_run(self, runner, monkeypatch):
        monkeypatch.delenv("FLEET_DEVICE_COUNT", raising=False)

        result = runner.invoke(main, ["run", "--dry-run", "--count", "2", "--duration", "0.05"])

        assert result.exit_code == 0
        assert "Device0: ACTIVATED" in result.output
        assert "Device1: ACTIVATED" in result.output

    def test_send_command_publishes(self, runner):
        with patch("smartmeter_sim.cli.mqtt.Client") as client_cls:
            client = MagicMock()
            client_cls.return_value = client

            result = runner.invoke(main, ["send-command", "Device3", "75.5"])

        assert result.exit_code == 0
        client.publish.assert_called_once_with(
            "devices/Device3/messages/devicebound/", b"75.5", qos=1
        )

    def test_send_command_broker_down(self, runner):
        with patch("smartmeter_sim.cli.mqtt.Client") as client_cls:
            client = MagicMock()
            client.connect.side_effect = ConnectionRefusedError("refused")
            client_cls.return_value = client

            result = runner.invoke(main, ["send-command", "Device3", "75.5"])

        assert result.exit_code == 1

    def test_send_command_is_listed(self, runner):
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        assert "send-command" in result.output
