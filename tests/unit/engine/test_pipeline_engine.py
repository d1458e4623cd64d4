"""Unit tests for the pipeline engine: lifecycle, concurrency policy, abort, and notification."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path

import pytest

from stagegate.adapters.base import AdapterFailure, AdapterRegistry, AdapterSuccess, FailureKind
from stagegate.constants import (
    BUILD_ADAPTER,
    DEFAULT_STAGE_NAMES_IN_ORDER,
    NOTIFIER_ADAPTER,
    QUALITY_GATE_ADAPTER,
    QUALITY_GATE_STAGE,
    SOURCE_ADAPTER,
    VULNERABILITY_SCAN_STAGE,
)
from stagegate.domain.ids import generate_run_id
from stagegate.domain.models import GateVerdict, Run, RunStatus, StageStatus, TriggerCause, TriggerKind
from stagegate.engine.engine import NOTIFY_STAGE_NAME, ConcurrencyPolicy, PipelineEngine
from stagegate.engine.stages import AdapterCall, StageDefinition, default_stage_catalog
from stagegate.errors import EngineConfigError, RunConflictError, UnknownRunError
from stagegate.observability.events import RunEventBus, RunEventType
from stagegate.persistence.run_history import RunHistoryDB
from stagegate.security.credentials import StaticCredentialResolver
from tests.support import (
    FakeAdapter,
    RecordingLogger,
    build_test_engine,
    passing_adapters,
    push_cause,
    static_credentials,
)


class Gate:
    """Adapter step that parks until released, so a run stays active."""

    def __init__(self, outcome: AdapterSuccess) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self._outcome = outcome

    async def __call__(self, request: object, context: object) -> AdapterSuccess:
        self.entered.set()
        await self.release.wait()
        return self._outcome


def _held_checkout() -> tuple[Gate, FakeAdapter]:
    gate = Gate(AdapterSuccess(outputs={"source_ref": "a" * 40, "workspace_path": "/tmp/ws"}))
    return gate, FakeAdapter(SOURCE_ADAPTER, gate)


async def test_successful_run_records_every_stage(cause: TriggerCause) -> None:
    notifier = FakeAdapter(NOTIFIER_ADAPTER)
    engine = build_test_engine(notifier=notifier)

    run = await engine.run(cause)

    assert run.status is RunStatus.SUCCEEDED
    assert tuple(result.name for result in run.stage_results) == DEFAULT_STAGE_NAMES_IN_ORDER
    assert all(result.status is StageStatus.PASSED for result in run.stage_results)
    assert run.started_at is not None and run.finished_at is not None
    assert notifier.call_count == 1
    request, context = notifier.calls[0]
    assert request["run_summary"] == run.summary()
    assert context.stage_name == NOTIFY_STAGE_NAME
    assert engine.active_run_id is None


async def test_trigger_fields_seed_the_run_context(cause: TriggerCause) -> None:
    adapters = passing_adapters()
    engine = build_test_engine(adapters, context_defaults={"branch": "develop", "repo": "fallback"})

    await engine.run(cause)

    checkout_request = adapters[SOURCE_ADAPTER].calls[0][0]
    assert checkout_request == {"repo": cause.repo, "commit": cause.commit, "branch": "main"}


async def test_manual_cause_uses_configured_defaults() -> None:
    adapters = passing_adapters()
    engine = build_test_engine(
        adapters, context_defaults={"repo": "https://git.example.com/acme/app.git", "branch": "main"}
    )

    run = await engine.run(TriggerCause(kind=TriggerKind.MANUAL, actor="ops"))

    assert run.status is RunStatus.SUCCEEDED
    assert adapters[SOURCE_ADAPTER].calls[0][0]["branch"] == "main"


async def test_manual_cause_without_repo_fails_checkout() -> None:
    run = await build_test_engine().run(TriggerCause(kind=TriggerKind.MANUAL, actor="ops"))

    assert run.status is RunStatus.FAILED
    assert run.stage_results[0].status is StageStatus.FAILED
    assert "run context is missing repo" in (run.stage_results[0].reason or "")


async def test_failure_skips_downstream_stages(cause: TriggerCause) -> None:
    adapters = passing_adapters()
    adapters[BUILD_ADAPTER] = FakeAdapter(
        BUILD_ADAPTER, AdapterFailure(kind=FailureKind.TOOL_ERROR, code="exit_2", message="compile error")
    )
    events = RunEventBus()
    engine = build_test_engine(adapters, events=events)

    run = await engine.run(cause)

    assert run.status is RunStatus.FAILED
    statuses = [result.status for result in run.stage_results]
    assert statuses[:2] == [StageStatus.PASSED, StageStatus.FAILED]
    assert all(status is StageStatus.SKIPPED for status in statuses[2:])
    assert run.stage_results[2].reason == "upstream stage 'build' failed"
    assert adapters["test_report"].call_count == 0
    assert run.summary()["failed_stage"] == "build"
    assert [event.event_type for event in events.replay(run_id=run.run_id)][-2:] == [
        RunEventType.STAGE_FAILED,
        RunEventType.RUN_FINISHED,
    ]


_CATALOG = default_stage_catalog(project_key="acme-app", target_host="app.internal")
_BLOCKING_FINDINGS = {
    QUALITY_GATE_STAGE: {"new_issues": 4, "coverage": 85.0, "critical_bugs": 0, "rating": "A"},
    VULNERABILITY_SCAN_STAGE: {"critical_cves": 1, "high_cves": 0, "secrets": 0, "malware": 0},
}
_STOP_CASES = [
    *[pytest.param(index, "failed", id=f"{stage.name}-failed") for index, stage in enumerate(_CATALOG)],
    *[pytest.param(index, "aborted", id=f"{stage.name}-aborted") for index, stage in enumerate(_CATALOG[:-1])],
    *[
        pytest.param(index, "blocked", id=f"{stage.name}-blocked")
        for index, stage in enumerate(_CATALOG)
        if stage.name in _BLOCKING_FINDINGS
    ],
]


@pytest.mark.parametrize(("stop_index", "mode"), _STOP_CASES)
async def test_stopping_stage_skips_every_later_stage(cause: TriggerCause, stop_index: int, mode: str) -> None:
    engine: PipelineEngine | None = None
    adapters = passing_adapters()
    stopping = _CATALOG[stop_index]
    adapter_id = stopping.calls[0].adapter_id
    original = adapters[adapter_id]

    async def abort_then_pass(request: object, context: object) -> object:
        assert engine is not None
        await engine.abort_run(context.run_id, reason="operator")  # type: ignore[attr-defined]
        return await original.invoke(request, context)  # type: ignore[arg-type]

    if mode == "failed":
        step: object = AdapterFailure(kind=FailureKind.TOOL_ERROR, code="exit_1", message="tool broke")
    elif mode == "blocked":
        step = AdapterSuccess(verdict=GateVerdict(blocking=False, findings=_BLOCKING_FINDINGS[stopping.name]))
    else:
        step = abort_then_pass
    adapters[adapter_id] = FakeAdapter(adapter_id, step)  # type: ignore[arg-type]
    notifier = FakeAdapter(NOTIFIER_ADAPTER)
    engine = build_test_engine(adapters, notifier=notifier)

    run = await engine.run(cause)

    results = run.stage_results
    assert tuple(result.name for result in results) == DEFAULT_STAGE_NAMES_IN_ORDER
    assert all(result.status is StageStatus.PASSED for result in results[:stop_index])
    if mode == "aborted":
        assert run.status is RunStatus.ABORTED
        assert results[stop_index].status is StageStatus.PASSED
    else:
        assert run.status is RunStatus.FAILED
        expected = StageStatus.BLOCKED if stopping.is_gated else StageStatus.FAILED
        assert results[stop_index].status is expected
    assert all(result.status is StageStatus.SKIPPED for result in results[stop_index + 1 :])
    for later in _CATALOG[stop_index + 1 :]:
        assert adapters[later.calls[0].adapter_id].call_count == 0
    assert notifier.call_count == 1
    assert notifier.calls[0][0]["run_summary"]["status"] == run.status.value


async def test_abort_during_the_final_stage_leaves_the_run_succeeded(cause: TriggerCause) -> None:
    engine: PipelineEngine | None = None
    adapters = passing_adapters()
    deploy_id = _CATALOG[-1].calls[0].adapter_id
    original = adapters[deploy_id]

    async def abort_then_pass(request: object, context: object) -> object:
        assert engine is not None
        assert await engine.abort_run(context.run_id) is True  # type: ignore[attr-defined]
        return await original.invoke(request, context)  # type: ignore[arg-type]

    adapters[deploy_id] = FakeAdapter(deploy_id, abort_then_pass)  # type: ignore[arg-type]
    notifier = FakeAdapter(NOTIFIER_ADAPTER)
    engine = build_test_engine(adapters, notifier=notifier)

    run = await engine.run(cause)

    assert run.status is RunStatus.SUCCEEDED
    assert all(result.status is StageStatus.PASSED for result in run.stage_results)
    assert notifier.call_count == 1


@pytest.mark.parametrize(
    ("outcome", "log_event", "verdict_available"),
    [
        (
            AdapterSuccess(verdict=GateVerdict(blocking=False, findings=_BLOCKING_FINDINGS[QUALITY_GATE_STAGE])),
            "gate_blocked",
            True,
        ),
        (AdapterFailure(kind=FailureKind.TOOL_ERROR, code="ce_failed", message="analysis crashed"), "gate_unavailable", False),
        (AdapterFailure(kind=FailureKind.TIMEOUT, message="deadline exceeded"), "gate_unavailable", False),
    ],
    ids=["policy-violation", "tool-error", "timeout"],
)
async def test_gate_block_reports_whether_a_verdict_was_available(
    cause: TriggerCause, outcome: object, log_event: str, verdict_available: bool
) -> None:
    logger = RecordingLogger()
    engine = build_test_engine(
        {QUALITY_GATE_ADAPTER: FakeAdapter(QUALITY_GATE_ADAPTER, outcome)},  # type: ignore[arg-type]
        logger=logger,
    )

    run = await engine.run(cause)

    assert run.result_for(QUALITY_GATE_STAGE).status is StageStatus.BLOCKED  # type: ignore[union-attr]
    assert log_event in logger.events()
    assert ({"gate_blocked", "gate_unavailable"} - {log_event}).isdisjoint(logger.events())
    (blocked,) = engine.events.replay(run_id=run.run_id, event_type=RunEventType.GATE_BLOCKED)
    assert blocked.payload["verdict_available"] is verdict_available
    assert blocked.payload["reason"] == run.result_for(QUALITY_GATE_STAGE).reason  # type: ignore[union-attr]


async def test_reject_policy_raises_conflict_while_run_is_active(cause: TriggerCause) -> None:
    gate, checkout = _held_checkout()
    engine = build_test_engine({SOURCE_ADAPTER: checkout}, concurrency=ConcurrencyPolicy.REJECT)

    first = await engine.start_run(cause)
    await gate.entered.wait()
    with pytest.raises(RunConflictError) as excinfo:
        await engine.start_run(cause)
    gate.release.set()
    run = await engine.wait_for_run(first)

    assert excinfo.value.active_run_id == first
    assert run.status is RunStatus.SUCCEEDED
    assert len(engine.list_runs()) == 1


async def test_queue_policy_runs_triggers_in_order(cause: TriggerCause) -> None:
    gate, checkout = _held_checkout()
    notifier = FakeAdapter(NOTIFIER_ADAPTER)
    engine = build_test_engine({SOURCE_ADAPTER: checkout}, notifier=notifier, concurrency="queue")

    first = await engine.start_run(cause)
    await gate.entered.wait()
    second = await engine.start_run(push_cause("d" * 40))

    assert engine.get_run_status(second).status is RunStatus.PENDING
    assert engine.events.replay(run_id=second, event_type=RunEventType.RUN_QUEUED)

    gate.release.set()
    second_run = await engine.wait_for_run(second, timeout_seconds=5)
    first_run = engine.get_run_status(first)

    assert first_run.status is RunStatus.SUCCEEDED
    assert second_run.status is RunStatus.SUCCEEDED
    assert first_run.finished_at is not None and second_run.started_at is not None
    assert second_run.started_at >= first_run.finished_at
    assert [call[0]["run_summary"]["run_id"] for call in notifier.calls] == [first, second]


async def test_abort_is_observed_at_the_next_stage_boundary(cause: TriggerCause) -> None:
    engine: PipelineEngine | None = None

    async def abort_during_checkout(request: object, context: object) -> AdapterSuccess:
        assert engine is not None
        await engine.abort_run(context.run_id, reason="operator")  # type: ignore[attr-defined]
        return AdapterSuccess(outputs={"source_ref": "a" * 40, "workspace_path": "/tmp/ws"})

    notifier = FakeAdapter(NOTIFIER_ADAPTER)
    engine = build_test_engine({SOURCE_ADAPTER: FakeAdapter(SOURCE_ADAPTER, abort_during_checkout)}, notifier=notifier)

    run = await engine.run(cause)

    assert run.status is RunStatus.ABORTED
    assert run.stage_results[0].status is StageStatus.PASSED
    assert all(result.status is StageStatus.SKIPPED for result in run.stage_results[1:])
    assert run.stage_results[1].reason == "run aborted: operator"
    assert notifier.call_count == 1
    assert await engine.abort_run(run.run_id) is False


async def test_aborting_a_queued_run_finishes_it_without_running_stages(cause: TriggerCause) -> None:
    gate, checkout = _held_checkout()
    engine = build_test_engine({SOURCE_ADAPTER: checkout}, concurrency=ConcurrencyPolicy.QUEUE)

    first = await engine.start_run(cause)
    await gate.entered.wait()
    queued = await engine.start_run(cause)
    assert await engine.abort_run(queued) is True
    queued_run = await engine.wait_for_run(queued, timeout_seconds=5)
    gate.release.set()
    await engine.wait_for_run(first)

    assert queued_run.status is RunStatus.ABORTED
    assert len(queued_run.stage_results) == len(DEFAULT_STAGE_NAMES_IN_ORDER)
    assert all(result.status is StageStatus.SKIPPED for result in queued_run.stage_results)
    assert checkout.call_count == 1


async def test_aclose_aborts_queued_runs(cause: TriggerCause) -> None:
    gate, checkout = _held_checkout()
    engine = build_test_engine({SOURCE_ADAPTER: checkout}, concurrency=ConcurrencyPolicy.QUEUE)
    await engine.start_run(cause)
    await gate.entered.wait()
    queued = await engine.start_run(cause)

    gate.release.set()
    await engine.aclose()

    assert engine.get_run_status(queued).status is RunStatus.ABORTED


class ExplodingBus(RunEventBus):
    async def emit(self, event_type: RunEventType, **kwargs: object):  # type: ignore[no-untyped-def,override]
        if event_type is RunEventType.STAGE_STARTED and kwargs.get("stage") == "build":
            raise RuntimeError("bus exploded")
        return await super().emit(event_type, **kwargs)  # type: ignore[arg-type]


async def test_internal_error_fails_run_and_still_notifies(cause: TriggerCause) -> None:
    notifier = FakeAdapter(NOTIFIER_ADAPTER)
    engine = build_test_engine(notifier=notifier, events=ExplodingBus())

    run = await engine.run(cause)

    assert run.status is RunStatus.FAILED
    build = run.result_for("build")
    assert build is not None and build.status is StageStatus.FAILED
    assert build.reason == "engine error: RuntimeError: bus exploded"
    assert run.stage_results[2].reason == "engine error in stage 'build'"
    assert notifier.call_count == 1
    assert notifier.calls[0][0]["run_summary"]["status"] == "failed"


async def test_notifier_failure_does_not_change_run_status(cause: TriggerCause) -> None:
    notifier = FakeAdapter(NOTIFIER_ADAPTER, RuntimeError("smtp down"))
    engine = build_test_engine(notifier=notifier)

    run = await engine.run(cause)

    assert run.status is RunStatus.SUCCEEDED
    failures = engine.events.replay(run_id=run.run_id, event_type=RunEventType.NOTIFIER_FAILED)
    assert len(failures) == 1
    assert "smtp down" in str(failures[0].payload["reason"])


async def test_terminal_runs_are_recorded_in_history(cause: TriggerCause, tmp_path: Path) -> None:
    history = RunHistoryDB(tmp_path / "runs.sqlite")
    engine = build_test_engine(history=history)

    run = await engine.run(cause)

    assert history.get(run.run_id) == run
    fresh = build_test_engine(history=history)
    assert fresh.get_run_status(run.run_id) == run
    with pytest.raises(UnknownRunError):
        fresh.get_run_status(generate_run_id())


class BlockingHistory(RunHistoryDB):
    """Holds each write until the loop reports it kept running."""

    def __init__(self, path: Path) -> None:
        super().__init__(path)
        self.loop_alive = threading.Event()
        self.writer_threads: list[int] = []

    def record(self, run: Run) -> None:
        self.writer_threads.append(threading.get_ident())
        self.loop_alive.wait(timeout=5.0)
        super().record(run)


async def test_history_write_runs_off_the_event_loop(cause: TriggerCause, tmp_path: Path) -> None:
    history = BlockingHistory(tmp_path / "runs.sqlite")
    engine = build_test_engine(history=history)

    run_id = await engine.start_run(cause)
    while not history.writer_threads:
        await asyncio.sleep(0.01)
    history.loop_alive.set()
    run = await engine.wait_for_run(run_id, timeout_seconds=5)

    assert history.writer_threads[0] != threading.get_ident()
    assert history.get(run.run_id) == run


async def test_finished_runs_beyond_the_bound_are_served_from_history(
    cause: TriggerCause, tmp_path: Path
) -> None:
    history = RunHistoryDB(tmp_path / "runs.sqlite")
    engine = build_test_engine(history=history, max_retained_runs=1)

    first = await engine.run(cause)
    second = await engine.run(push_cause("d" * 40))

    assert [run.run_id for run in engine.list_runs()] == [second.run_id]
    assert engine.get_run_status(first.run_id) == first
    assert await engine.wait_for_run(first.run_id) == first
    assert await engine.abort_run(first.run_id) is False


async def test_evicted_run_without_history_is_unknown(cause: TriggerCause) -> None:
    engine = build_test_engine(max_retained_runs=1)

    first = await engine.run(cause)
    await engine.run(cause)

    with pytest.raises(UnknownRunError):
        engine.get_run_status(first.run_id)


def test_engine_rejects_non_positive_run_retention() -> None:
    with pytest.raises(EngineConfigError, match="max_retained_runs"):
        build_test_engine(max_retained_runs=0)


async def test_wait_for_unknown_run() -> None:
    with pytest.raises(UnknownRunError):
        await build_test_engine().wait_for_run(generate_run_id())


def test_engine_rejects_undeclared_credentials() -> None:
    with pytest.raises(EngineConfigError, match="references undeclared credential"):
        PipelineEngine(
            pipeline_id="acme-app",
            stages=default_stage_catalog(project_key="p", target_host="h"),
            adapters=AdapterRegistry(passing_adapters()),
            credentials=StaticCredentialResolver({}),
        )


def test_engine_rejects_unregistered_adapters() -> None:
    stages = (StageDefinition(name="only", order=0, calls=(AdapterCall("missing"),)),)

    with pytest.raises(EngineConfigError, match="unregistered adapter 'missing'"):
        PipelineEngine(
            pipeline_id="acme-app",
            stages=stages,
            adapters=AdapterRegistry(),
            credentials=static_credentials(),
        )


def test_engine_requires_pipeline_id() -> None:
    with pytest.raises(EngineConfigError):
        PipelineEngine(
            pipeline_id=" ",
            stages=default_stage_catalog(project_key="p", target_host="h"),
            adapters=AdapterRegistry(passing_adapters()),
            credentials=static_credentials(),
        )


async def test_registered_notifier_is_used_when_none_is_passed(cause: TriggerCause) -> None:
    notifier = FakeAdapter(NOTIFIER_ADAPTER)
    adapters = dict(passing_adapters())
    adapters[NOTIFIER_ADAPTER] = notifier
    engine = PipelineEngine(
        pipeline_id="acme-app",
        stages=default_stage_catalog(project_key="p", target_host="h"),
        adapters=AdapterRegistry(adapters),
        credentials=static_credentials(),
    )

    await engine.run(cause)

    assert notifier.call_count == 1
