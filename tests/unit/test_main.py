"""Unit tests for the process entrypoint exit-code contract."""

from __future__ import annotations

from pathlib import Path

import pytest

import stagegate.ui.cli as cli_module
from stagegate.config import ConfigLoadError
from stagegate.main import ExitCode, cli_entrypoint


def test_help_exits_cleanly(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["--help"]) == ExitCode.SUCCESS
    assert "stagegate" in capsys.readouterr().out


def test_usage_error_maps_to_config_error() -> None:
    assert cli_entrypoint(["no-such-command"]) == ExitCode.CONFIG_ERROR


def test_command_exit_codes_pass_through(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    assert cli_entrypoint(["validate", "--config", str(tmp_path / "missing.toml")]) == ExitCode.CONFIG_ERROR


def test_unexpected_exception_is_an_internal_error(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def explode(argv: object = None) -> int:
        raise RuntimeError("boom")

    monkeypatch.setattr(cli_module, "run_cli", explode)

    assert cli_entrypoint(["status"]) == ExitCode.INTERNAL_ERROR
    assert "RuntimeError: boom" in capsys.readouterr().err


def test_config_errors_in_the_cause_chain_map_to_config_error(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def explode(argv: object = None) -> int:
        try:
            raise ConfigLoadError("config file not found: /etc/stagegate.toml")
        except ConfigLoadError as exc:
            raise RuntimeError("startup failed") from exc

    monkeypatch.setattr(cli_module, "run_cli", explode)

    assert cli_entrypoint(["status"]) == ExitCode.CONFIG_ERROR
    assert "startup failed" in capsys.readouterr().err


def test_unknown_return_codes_are_normalized(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli_module, "run_cli", lambda argv=None: 17)

    assert cli_entrypoint([]) == ExitCode.INTERNAL_ERROR
