"""Unit tests for the stagegate CLI commands and exit codes."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
import structlog

from stagegate.adapters.base import AdapterFailure, FailureKind
from stagegate.constants import BUILD_ADAPTER, DEFAULT_STAGE_NAMES_IN_ORDER, NOTIFIER_ADAPTER
from stagegate.engine.engine import PipelineEngine
from stagegate.observability.logging import shutdown_logging
from stagegate.persistence.run_history import RunHistoryDB
from stagegate.ui.cli import EXIT_CONFIG_ERROR, EXIT_RUN_FAILED, EXIT_SUCCESS, build_parser, run_cli
from tests.support import FakeAdapter, build_test_engine

_SHA = "4e3d2c1b0a99887766554433221100ffeeddccbb"


@pytest.fixture(autouse=True)
def _reset_logging(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    monkeypatch.chdir(tmp_path)
    yield
    shutdown_logging()
    structlog.reset_defaults()


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "stagegate.toml"
    path.write_text(
        """
[pipeline]
id = "acme-app"
repo = "https://git.example.com/acme/app.git"

[paths]
workspace_root = "ws"
state_db = "state/runs.sqlite"

[observability]
log_dir = "logs"
""".strip(),
        encoding="utf-8",
    )
    return path


def _factory(adapters: dict[str, FakeAdapter] | None = None, notifier: FakeAdapter | None = None) -> Any:
    def factory(config: dict[str, Any], **_: object) -> PipelineEngine:
        return build_test_engine(
            adapters,
            notifier=notifier,
            history=RunHistoryDB(config["paths"]["state_db"]),
        )

    return factory


def _json_output(capsys: pytest.CaptureFixture[str]) -> dict[str, Any]:
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


def test_run_success_prints_json_summary(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    notifier = FakeAdapter(NOTIFIER_ADAPTER)

    code = run_cli(
        ["run", "--config", str(config_path), "--commit", _SHA, "--json"],
        engine_factory=_factory(notifier=notifier),
    )

    payload = _json_output(capsys)
    assert code == EXIT_SUCCESS
    assert payload["command"] == "run"
    assert payload["run"]["status"] == "succeeded"
    assert payload["run"]["cause"] == f"push https://git.example.com/acme/app.git@main:{_SHA}"
    assert Path(payload["log_path"]).exists()
    assert notifier.call_count == 1


def test_failed_run_exits_one_and_renders_stage_table(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    adapters = {
        BUILD_ADAPTER: FakeAdapter(BUILD_ADAPTER, AdapterFailure(kind=FailureKind.TOOL_ERROR, message="make failed"))
    }

    code = run_cli(["run", "--config", str(config_path)], engine_factory=_factory(adapters))

    out = capsys.readouterr().out
    assert code == EXIT_RUN_FAILED
    assert "Status: failed" in out
    assert "tool_error: make failed" in out
    assert "Cause: manual by cli" in out


def test_commit_without_repo_is_a_config_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    bare = tmp_path / "bare.toml"
    bare.write_text("", encoding="utf-8")

    code = run_cli(["run", "--config", str(bare), "--commit", _SHA], engine_factory=_factory())

    assert code == EXIT_CONFIG_ERROR
    assert "--repo (or pipeline.repo) is required" in capsys.readouterr().err


def test_status_reads_recorded_runs(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    run_cli(["run", "--config", str(config_path), "--commit", _SHA, "--json"], engine_factory=_factory())
    run_id = _json_output(capsys)["run"]["run_id"]

    assert run_cli(["status", "--config", str(config_path), "--json"]) == EXIT_SUCCESS
    listed = _json_output(capsys)
    assert [item["run_id"] for item in listed["runs"]] == [run_id]

    assert run_cli(["status", "--config", str(config_path), run_id, "--json"]) == EXIT_SUCCESS
    detail = _json_output(capsys)
    assert [stage["name"] for stage in detail["run"]["stage_results"]] == list(DEFAULT_STAGE_NAMES_IN_ORDER)


def test_status_unknown_run(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = run_cli(["status", "--config", str(config_path), "run-01J0000000000000000000000A"])

    assert code == EXIT_RUN_FAILED
    assert "unknown run id" in capsys.readouterr().err


def test_status_without_runs(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["status", "--config", str(config_path)]) == EXIT_SUCCESS
    assert "No recorded runs." in capsys.readouterr().out


def test_validate_reports_stage_graph(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = run_cli(["validate", "--config", str(config_path), "--json"])

    payload = _json_output(capsys)
    assert code == EXIT_SUCCESS
    assert payload["valid"] is True
    assert payload["pipeline_id"] == "acme-app"
    gating = {stage["name"]: stage["gating"] for stage in payload["stages"]}
    assert gating["quality_gate"] == "quality"
    assert gating["vulnerability_scan"] == "security"


def test_validate_with_missing_secret_envs(
    config_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    for name in ("REGISTRY_PASSWORD", "REGISTRY_USERNAME", "DEPLOY_SSH_KEY_PATH"):
        monkeypatch.delenv(name, raising=False)

    code = run_cli(["validate", "--config", str(config_path), "--require-secrets"])

    assert code == EXIT_CONFIG_ERROR
    assert "REGISTRY_PASSWORD" in capsys.readouterr().err


def test_invalid_config_exits_two(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "bad.toml"
    path.write_text('[pipeline]\nconcurrency = "parallel"\n', encoding="utf-8")

    code = run_cli(["validate", "--config", str(path)])

    assert code == EXIT_CONFIG_ERROR
    assert "pipeline.concurrency" in capsys.readouterr().err


def test_config_command_redacts_env_references(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["config", "--config", str(config_path), "--profile", "permissive", "--json"]) == EXIT_SUCCESS

    payload = _json_output(capsys)
    assert payload["active_profile"] == "permissive"
    assert payload["config"]["pipeline"]["concurrency"] == "queue"
    assert payload["config"]["credentials"]["registry"]["secret_env"] == "<redacted>"


@pytest.mark.parametrize(
    ("findings", "expected_code", "outcome"),
    [
        ({"critical_cves": 0, "secrets": 0, "malware": 0, "high_cves": 2}, EXIT_SUCCESS, "pass"),
        ({"critical_cves": 1, "secrets": 0, "malware": 0, "high_cves": 2}, EXIT_RUN_FAILED, "block"),
    ],
)
def test_gate_command(
    config_path: Path,
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
    findings: dict[str, int],
    expected_code: int,
    outcome: str,
) -> None:
    verdict = tmp_path / "verdict.json"
    verdict.write_text(json.dumps({"blocking": False, "findings": findings}), encoding="utf-8")

    code = run_cli(["gate", "--config", str(config_path), "security", str(verdict), "--json"])

    assert code == expected_code
    assert _json_output(capsys)["decision"]["outcome"] == outcome


def test_gate_command_rejects_bad_verdict(config_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    verdict = tmp_path / "verdict.json"
    verdict.write_text('{"blocking": "no"}', encoding="utf-8")

    code = run_cli(["gate", "--config", str(config_path), "quality", str(verdict)])

    assert code == EXIT_CONFIG_ERROR
    assert "invalid verdict document" in capsys.readouterr().err


def test_webhook_runs_pipeline_for_push(config_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    payload = tmp_path / "push.json"
    payload.write_text(
        json.dumps(
            {
                "ref": "refs/heads/main",
                "after": _SHA,
                "repository": {"clone_url": "https://github.com/acme/app.git"},
                "pusher": {"name": "octocat"},
            }
        ),
        encoding="utf-8",
    )

    code = run_cli(["webhook", "--config", str(config_path), str(payload), "--json"], engine_factory=_factory())

    assert code == EXIT_SUCCESS
    assert _json_output(capsys)["run"]["cause"] == f"push https://github.com/acme/app.git@main:{_SHA}"


def test_webhook_ignores_tag_push(config_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    payload = tmp_path / "tag.json"
    payload.write_text(json.dumps({"ref": "refs/tags/v1", "after": _SHA}), encoding="utf-8")

    code = run_cli(["webhook", "--config", str(config_path), str(payload), "--json"], engine_factory=_factory())

    assert code == EXIT_SUCCESS
    assert _json_output(capsys) == {"command": "webhook", "ignored": True}


def test_webhook_with_unreadable_payload(config_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = run_cli(["webhook", "--config", str(config_path), str(tmp_path / "missing.json")])

    assert code == EXIT_CONFIG_ERROR
    assert "unable to read" in capsys.readouterr().err


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
