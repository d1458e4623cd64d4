"""Command-line interface router for stagegate."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from stagegate.config import (
    ConfigLoadError,
    ConfigValidationError,
    load_config,
    redact_config,
)
from stagegate.domain.ids import generate_ulid
from stagegate.domain.models import (
    GateVerdict,
    GatingPolicy,
    Run,
    RunStatus,
    TriggerCause,
    TriggerKind,
)
from stagegate.engine.bootstrap import build_engine, gate_policies_from_config
from stagegate.engine.engine import PipelineEngine
from stagegate.errors import EngineConfigError, RunConflictError, TriggerPayloadError
from stagegate.gates.evaluator import evaluate_gate
from stagegate.observability.logging import (
    LoggingConfig,
    setup_structured_logging,
    shutdown_logging,
)
from stagegate.persistence.run_history import RunHistoryDB, RunHistoryError
from stagegate.security.redaction import SecretMasker
from stagegate.triggers import parse_push_payload
from stagegate.ui.render import CLIRenderer, create_renderer

EXIT_SUCCESS: Final[int] = 0
EXIT_RUN_FAILED: Final[int] = 1
EXIT_CONFIG_ERROR: Final[int] = 2

EngineFactory = Callable[..., PipelineEngine]


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = EXIT_RUN_FAILED

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="stagegate",
        description=(
            "stagegate — gated build/test/scan/deploy pipeline engine.\n\n"
            "Common workflows:\n"
            "  stagegate run --commit <sha>      Run the pipeline for one commit\n"
            "  stagegate status                  Show recent runs\n"
            "  stagegate validate                Check config and stage wiring\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to stagegate TOML config (default: ./stagegate.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--verbose", "-v", action="store_true", default=False, help="Show detailed output."
    )

    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Run the pipeline once",
        description=(
            "Start a run and wait for it to finish. With --commit the run is a push;\n"
            "without it the run is manual and checks out the configured branch.\n\n"
            "Examples:\n"
            "  stagegate run --commit 3f2a9c1\n"
            "  stagegate run --branch release/1.2 --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("--repo", default=None, help="Repository URL (default: pipeline.repo)")
    run_parser.add_argument("--branch", default=None, help="Branch (default: pipeline.branch)")
    run_parser.add_argument("--commit", default=None, help="Commit to build")
    run_parser.add_argument("--actor", default=None, help="Who started the run")
    run_parser.set_defaults(handler=_cmd_run)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show recorded runs",
        description=(
            "Read run history. Without a run id, lists the most recent runs.\n\n"
            "Examples:\n"
            "  stagegate status\n"
            "  stagegate status run-01J...\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    status_parser.add_argument("run_id", nargs="?", default=None, help="Run ID to inspect")
    status_parser.add_argument("--limit", type=int, default=10, help="Runs to list (default: 10)")
    status_parser.set_defaults(handler=_cmd_status)

    # validate ------------------------------------------------------------
    validate_parser = subparsers.add_parser(
        "validate",
        parents=[common],
        help="Validate config, gate policies, and the stage graph",
    )
    validate_parser.add_argument(
        "--require-secrets",
        action="store_true",
        default=False,
        help="Also require every credential env var to be set",
    )
    validate_parser.set_defaults(handler=_cmd_validate)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
    )
    config_parser.set_defaults(handler=_cmd_config)

    # gate ----------------------------------------------------------------
    gate_parser = subparsers.add_parser(
        "gate",
        parents=[common],
        help="Evaluate a verdict JSON file against a configured gate policy",
        description=(
            "Exit status is 1 when the gate blocks.\n\n"
            "Examples:\n"
            "  stagegate gate security verdict.json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    gate_parser.add_argument("policy", choices=("quality", "security"), help="Gate policy name")
    gate_parser.add_argument("verdict_path", help="Path to a GateVerdict JSON document")
    gate_parser.set_defaults(handler=_cmd_gate)

    # webhook -------------------------------------------------------------
    webhook_parser = subparsers.add_parser(
        "webhook",
        parents=[common],
        help="Run the pipeline for a saved push webhook payload",
    )
    webhook_parser.add_argument("payload_path", help="Path to the push payload JSON")
    webhook_parser.set_defaults(handler=_cmd_webhook)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(
    argv: Sequence[str] | None = None, *, engine_factory: EngineFactory = build_engine
) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return EXIT_CONFIG_ERROR
    namespace.engine_factory = engine_factory

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    pipeline = config["pipeline"]
    repo = args.repo or pipeline.get("repo")
    branch = args.branch or pipeline.get("branch")
    if args.commit:
        if not repo:
            raise CLIError(
                "--repo (or pipeline.repo) is required with --commit", exit_code=EXIT_CONFIG_ERROR
            )
        cause = TriggerCause(
            kind=TriggerKind.PUSH, repo=repo, branch=branch, commit=args.commit, actor=args.actor
        )
    else:
        cause = TriggerCause(
            kind=TriggerKind.MANUAL, repo=repo, branch=branch, actor=args.actor or "cli"
        )
    return _execute_run(args, config, cause)


def _cmd_webhook(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    payload = _read_json(Path(args.payload_path))
    try:
        event = parse_push_payload(payload, branches=config["pipeline"].get("branches"))
    except TriggerPayloadError as exc:
        raise CLIError(str(exc), exit_code=EXIT_CONFIG_ERROR) from exc
    if event is None:
        if args.json:
            _emit_json({"command": "webhook", "ignored": True})
        else:
            _get_renderer(args).text("Push ignored (tag, deletion, or filtered branch).")
        return EXIT_SUCCESS
    return _execute_run(args, config, event.to_cause())


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    history = RunHistoryDB(_state_db_path(config))
    try:
        if args.run_id:
            run = history.get(args.run_id)
            if run is None:
                raise CLIError(f"unknown run id: {args.run_id}")
            runs: tuple[Run, ...] = (run,)
        else:
            runs = history.list_runs(pipeline_id=config["pipeline"]["id"], limit=max(1, args.limit))
    except RunHistoryError as exc:
        raise CLIError(str(exc)) from exc

    if args.json:
        if args.run_id:
            _emit_json({"command": "status", "run": runs[0].to_dict()})
        else:
            _emit_json({"command": "status", "runs": [item.summary() for item in runs]})
        return EXIT_SUCCESS

    renderer = _get_renderer(args)
    if args.run_id:
        renderer.run(runs[0])
        return EXIT_SUCCESS
    if not runs:
        renderer.text("No recorded runs.")
        return EXIT_SUCCESS
    rows = [
        [item.run_id, item.status.value, item.cause.describe(), _failed_stage(item)]
        for item in runs
    ]
    renderer.table(("run", "status", "cause", "failed stage"), rows, title="Recent runs:")
    return EXIT_SUCCESS


def _cmd_validate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, require_secret_env_values=args.require_secrets)
    try:
        engine = args.engine_factory(config)
    except (EngineConfigError, ValueError) as exc:
        raise CLIError(str(exc), exit_code=EXIT_CONFIG_ERROR) from exc

    stages = [
        {
            "gating": stage.gating.value,
            "max_attempts": stage.retry.max_attempts,
            "name": stage.name,
            "timeout_seconds": stage.timeout_seconds,
        }
        for stage in engine.stages
    ]
    if args.json:
        _emit_json(
            {
                "command": "validate",
                "pipeline_id": engine.pipeline_id,
                "stages": stages,
                "valid": True,
            }
        )
        return EXIT_SUCCESS

    renderer = _get_renderer(args)
    renderer.ok("config")
    renderer.ok("gate policies")
    renderer.ok(f"stage graph ({len(stages)} stages)")
    renderer.table(
        ("stage", "gating", "attempts", "timeout"),
        [
            [
                item["name"],
                item["gating"],
                str(item["max_attempts"]),
                f"{item['timeout_seconds']:g}s",
            ]
            for item in stages
        ],
        title=f"Pipeline {engine.pipeline_id}:",
    )
    return EXIT_SUCCESS


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    redacted = redact_config(config)
    if args.json:
        _emit_json({"active_profile": args.profile, "command": "config", "config": redacted})
        return EXIT_SUCCESS

    renderer = _get_renderer(args)
    renderer.kv("Active profile", args.profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return EXIT_SUCCESS


def _cmd_gate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    policy = gate_policies_from_config(config)[GatingPolicy(args.policy)]
    payload = _read_json(Path(args.verdict_path))
    try:
        verdict = GateVerdict.from_dict(payload)
    except ValueError as exc:
        raise CLIError(f"invalid verdict document: {exc}", exit_code=EXIT_CONFIG_ERROR) from exc
    decision = evaluate_gate(verdict, policy)

    if args.json:
        _emit_json({"command": "gate", "decision": decision.to_dict(), "policy": policy.name})
    else:
        renderer = _get_renderer(args)
        renderer.kv("Policy", policy.name)
        renderer.decision(decision)
    return EXIT_RUN_FAILED if decision.blocked else EXIT_SUCCESS


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _execute_run(args: argparse.Namespace, config: Mapping[str, Any], cause: TriggerCause) -> int:
    observability = config["observability"]
    masker = SecretMasker()
    handle = setup_structured_logging(
        LoggingConfig(
            session_id=generate_ulid(),
            base_log_dir=observability["log_dir"],
            level=observability["log_level"],
            log_to_stdout=observability.get("log_to_stdout", False),
            redact=observability["redact_secrets"],
            masker=masker,
        )
    )
    try:
        try:
            engine = args.engine_factory(config, masker=masker)
        except (EngineConfigError, ValueError) as exc:
            raise CLIError(str(exc), exit_code=EXIT_CONFIG_ERROR) from exc
        try:
            run = asyncio.run(_run_to_completion(engine, cause))
        except RunConflictError as exc:
            raise CLIError(str(exc)) from exc
    finally:
        shutdown_logging(handle)

    if args.json:
        _emit_json({"command": "run", "log_path": handle.log_path.as_posix(), "run": run.summary()})
    else:
        renderer = _get_renderer(args)
        renderer.run(run)
        if renderer.verbose:
            renderer.kv("Log", handle.log_path.as_posix())
    return EXIT_SUCCESS if run.status is RunStatus.SUCCEEDED else EXIT_RUN_FAILED


async def _run_to_completion(engine: PipelineEngine, cause: TriggerCause) -> Run:
    try:
        return await engine.run(cause)
    finally:
        await engine.aclose()


def _failed_stage(run: Run) -> str:
    culprit = run.first_unsuccessful()
    return "" if culprit is None else culprit.name


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(verbose=bool(args.verbose))


def _load_effective_config(
    args: argparse.Namespace, *, require_secret_env_values: bool = False
) -> dict[str, Any]:
    try:
        return load_config(
            args.config_path,
            profile=args.profile,
            require_secret_env_values=require_secret_env_values,
        )
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=EXIT_CONFIG_ERROR) from exc


def _state_db_path(config: Mapping[str, Any]) -> Path:
    raw = config["paths"].get("state_db")
    if not isinstance(raw, str):
        raise CLIError("paths.state_db is not configured", exit_code=EXIT_CONFIG_ERROR)
    return Path(raw)


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CLIError(f"unable to read {path}: {exc}", exit_code=EXIT_CONFIG_ERROR) from exc
    except json.JSONDecodeError as exc:
        raise CLIError(f"invalid JSON in {path}: {exc}", exit_code=EXIT_CONFIG_ERROR) from exc


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
