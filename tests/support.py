"""Shared fakes for stagegate tests: scripted adapters, command executor, and engine builder."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from stagegate.adapters.base import (
    AdapterContext,
    AdapterOutcome,
    AdapterRegistry,
    AdapterRequest,
    AdapterSuccess,
)
from stagegate.adapters.command import CommandResult, CommandSpec
from stagegate.constants import (
    BUILD_ADAPTER,
    DEPLOY_SSH_CREDENTIAL,
    IMAGE_BUILDER_ADAPTER,
    NOTIFIER_ADAPTER,
    QUALITY_GATE_ADAPTER,
    REGISTRY_CREDENTIAL,
    REGISTRY_PUSH_ADAPTER,
    REMOTE_DEPLOY_ADAPTER,
    SOURCE_ADAPTER,
    TEST_REPORT_ADAPTER,
    VULNERABILITY_SCANNER_ADAPTER,
)
from stagegate.domain.ids import generate_run_id
from stagegate.domain.models import GateVerdict, TriggerCause, TriggerKind
from stagegate.engine.engine import PipelineEngine
from stagegate.engine.stages import StageOverride, default_stage_catalog
from stagegate.observability.events import RunEventBus
from stagegate.security.credentials import CredentialKind, ResolvedCredential, StaticCredentialResolver
from stagegate.security.redaction import SecretMasker

Script = AdapterOutcome | BaseException | Callable[[AdapterRequest, AdapterContext], Any]


class FakeAdapter:
    """Returns scripted outcomes in order; the last entry repeats once the script runs out."""

    def __init__(self, adapter_id: str, *script: Script, delay_seconds: float = 0.0) -> None:
        self.adapter_id = adapter_id
        self._script = list(script) or [AdapterSuccess()]
        self._delay = delay_seconds
        self.calls: list[tuple[dict[str, object], AdapterContext]] = []

    async def invoke(self, request: AdapterRequest, context: AdapterContext) -> AdapterOutcome:
        self.calls.append((dict(request), context))
        if self._delay:
            await asyncio.sleep(self._delay)
        index = min(len(self.calls), len(self._script)) - 1
        step = self._script[index]
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            result = step(request, context)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        return step

    @property
    def call_count(self) -> int:
        return len(self.calls)


class FakeExecutor:
    """Scripted ``CommandExecutor``: results are matched by argv prefix, else the default."""

    def __init__(
        self,
        results: Mapping[tuple[str, ...], CommandResult | Sequence[CommandResult]] | None = None,
        *,
        default: CommandResult | None = None,
    ) -> None:
        self._results = {
            key: list(value) if isinstance(value, Sequence) else [value]
            for key, value in (results or {}).items()
        }
        self._default = default
        self.specs: list[CommandSpec] = []

    async def run(self, spec: CommandSpec) -> CommandResult:
        self.specs.append(spec)
        for prefix in sorted(self._results, key=len, reverse=True):
            if spec.argv[: len(prefix)] == prefix:
                queue = self._results[prefix]
                return queue.pop(0) if len(queue) > 1 else queue[0]
        if self._default is not None:
            return self._default
        return command_result(spec.argv)

    def argvs(self) -> list[tuple[str, ...]]:
        return [spec.argv for spec in self.specs]


def command_result(
    argv: Iterable[str] = ("tool",),
    *,
    exit_code: int | None = 0,
    stdout: str = "",
    stderr: str = "",
    timed_out: bool = False,
    error: str | None = None,
) -> CommandResult:
    return CommandResult(
        argv=tuple(argv),
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        duration_ms=1,
        timed_out=timed_out,
        error=error,
    )


def passing_adapters() -> dict[str, FakeAdapter]:
    """One fake per catalog adapter; every stage passes with scenario A findings."""

    return {
        SOURCE_ADAPTER: FakeAdapter(
            SOURCE_ADAPTER, AdapterSuccess(outputs={"source_ref": "a" * 40, "workspace_path": "/tmp/ws"})
        ),
        BUILD_ADAPTER: FakeAdapter(BUILD_ADAPTER, AdapterSuccess(outputs={"artifact_ref": "/tmp/ws/dist"})),
        TEST_REPORT_ADAPTER: FakeAdapter(
            TEST_REPORT_ADAPTER,
            AdapterSuccess(outputs={"report_ref": "/tmp/ws/TEST-a.xml", "pass_count": 12, "fail_count": 0}),
        ),
        QUALITY_GATE_ADAPTER: FakeAdapter(
            QUALITY_GATE_ADAPTER,
            AdapterSuccess(
                verdict=GateVerdict(
                    blocking=False,
                    findings={"new_issues": 0, "coverage": 85.0, "critical_bugs": 0, "rating": "A"},
                )
            ),
        ),
        IMAGE_BUILDER_ADAPTER: FakeAdapter(
            IMAGE_BUILDER_ADAPTER, AdapterSuccess(outputs={"image_ref": "registry.local/app:aaaaaaa"})
        ),
        VULNERABILITY_SCANNER_ADAPTER: FakeAdapter(
            VULNERABILITY_SCANNER_ADAPTER,
            AdapterSuccess(
                verdict=GateVerdict(
                    blocking=False,
                    findings={"critical_cves": 0, "high_cves": 1, "secrets": 0, "malware": 0},
                )
            ),
        ),
        REGISTRY_PUSH_ADAPTER: FakeAdapter(
            REGISTRY_PUSH_ADAPTER, AdapterSuccess(outputs={"pushed_ref": "registry.local/app@sha256:abc"})
        ),
        REMOTE_DEPLOY_ADAPTER: FakeAdapter(
            REMOTE_DEPLOY_ADAPTER, AdapterSuccess(outputs={"health_check_passed": True})
        ),
    }


def static_credentials() -> StaticCredentialResolver:
    return StaticCredentialResolver(
        {
            REGISTRY_CREDENTIAL: ResolvedCredential(
                name=REGISTRY_CREDENTIAL,
                kind=CredentialKind.USERNAME_PASSWORD,
                secret="registry-pass-0001",
                username="ci",
            ),
            DEPLOY_SSH_CREDENTIAL: ResolvedCredential(
                name=DEPLOY_SSH_CREDENTIAL,
                kind=CredentialKind.SSH_KEY,
                secret="/keys/deploy_ed25519",
                username="deploy",
            ),
        }
    )


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


def push_cause(commit: str = "c" * 40) -> TriggerCause:
    return TriggerCause(
        kind=TriggerKind.PUSH,
        repo="https://git.example.com/acme/app.git",
        branch="main",
        commit=commit,
        actor="dev",
    )


class FixedClock:
    """Monotonic fake clock: each call advances one second."""

    def __init__(self) -> None:
        self._tick = 0

    def __call__(self) -> datetime:
        self._tick += 1
        return datetime(2026, 1, 1, tzinfo=UTC) + timedelta(seconds=self._tick)


def build_test_engine(
    adapters: Mapping[str, FakeAdapter] | None = None,
    *,
    notifier: Any | None = None,
    overrides: Mapping[str, StageOverride] | None = None,
    events: RunEventBus | None = None,
    **engine_kwargs: Any,
) -> PipelineEngine:
    fakes = dict(passing_adapters())
    fakes.update(adapters or {})
    registry = AdapterRegistry(fakes)
    stages = default_stage_catalog(
        project_key="acme-app",
        target_host="app.internal",
        default_timeout_seconds=5.0,
        overrides=overrides,
    )
    engine_kwargs.setdefault("sleep", no_sleep)
    return PipelineEngine(
        pipeline_id="acme-app",
        stages=stages,
        adapters=registry,
        credentials=static_credentials(),
        notifier=notifier if notifier is not None else FakeAdapter(NOTIFIER_ADAPTER),
        events=events,
        **engine_kwargs,
    )


def adapter_context(
    stage_name: str = "build",
    *,
    workspace: Path | None = None,
    credentials: Any | None = None,
    masker: SecretMasker | None = None,
    timeout_seconds: float = 5.0,
) -> AdapterContext:
    return AdapterContext(
        run_id=generate_run_id(),
        pipeline_id="acme-app",
        stage_name=stage_name,
        attempt=1,
        timeout_seconds=timeout_seconds,
        credentials=credentials if credentials is not None else static_credentials(),
        masker=masker if masker is not None else SecretMasker(),
        workspace=workspace,
    )


class RecordingLogger:
    """structlog-shaped logger that keeps ``(level, event, fields)`` tuples."""

    def __init__(self, records: list[tuple[str, str, dict[str, object]]] | None = None, **bound: object) -> None:
        self.records = records if records is not None else []
        self._bound = bound

    def bind(self, **fields: object) -> RecordingLogger:
        return RecordingLogger(self.records, **{**self._bound, **fields})

    def _log(self, level: str, event: str, fields: dict[str, object]) -> None:
        self.records.append((level, event, {**self._bound, **fields}))

    def debug(self, event: str, **fields: object) -> None:
        self._log("debug", event, fields)

    def info(self, event: str, **fields: object) -> None:
        self._log("info", event, fields)

    def warning(self, event: str, **fields: object) -> None:
        self._log("warning", event, fields)

    def error(self, event: str, **fields: object) -> None:
        self._log("error", event, fields)

    def exception(self, event: str, **fields: object) -> None:
        self._log("exception", event, fields)

    def events(self, level: str | None = None) -> list[str]:
        return [event for record_level, event, _ in self.records if level is None or record_level == level]
