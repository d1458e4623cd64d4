"""
stagegate — pipeline engine

File: src/stagegate/engine/engine.py

Purpose
- Own the validated stage graph and drive runs through it, one stage at a time.
- Keep the only mutable copy of each run; callers receive frozen ``Run`` snapshots.

Run lifecycle
- ``pending`` -> ``running`` -> ``succeeded`` | ``failed`` | ``aborted``.
- The first stage that is not ``passed`` ends the run; every later stage is recorded as
  ``skipped``.
- Abort requests are observed at stage boundaries only.
- The notifier runs exactly once per run, after the terminal snapshot is recorded, on every
  exit path including unexpected engine errors. Its failures never change run status.

Concurrency
- One active run per pipeline identity. A second trigger is rejected with
  ``RunConflictError`` or queued FIFO, per ``ConcurrencyPolicy``.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog

from stagegate.adapters.base import (
    AdapterContext,
    AdapterFailure,
    AdapterRegistry,
    ToolAdapter,
    invoke_adapter,
)
from stagegate.constants import (
    DEFAULT_MAX_RETAINED_RUNS,
    DEFAULT_NOTIFIER_TIMEOUT_SECONDS,
    NOTIFIER_ADAPTER,
)
from stagegate.domain.ids import generate_run_id
from stagegate.domain.models import (
    Finding,
    GatingPolicy,
    Run,
    RunStatus,
    StageResult,
    StageStatus,
    TriggerCause,
    clip_reason,
    utc_now,
)
from stagegate.engine.executor import RunContext, StageExecutor
from stagegate.engine.stages import StageDefinition, validate_stage_graph
from stagegate.errors import EngineConfigError, RunConflictError, UnknownRunError
from stagegate.gates.policy import GatePolicy
from stagegate.observability.events import RunEventBus, RunEventType
from stagegate.persistence.run_history import RunHistoryDB, RunHistoryError
from stagegate.security.credentials import CredentialResolver
from stagegate.security.redaction import SecretMasker
from stagegate.utils.concurrency import CancellationToken, Sleeper

NOTIFY_STAGE_NAME = "notify"


class ConcurrencyPolicy(StrEnum):
    REJECT = "reject"
    QUEUE = "queue"


@dataclass(slots=True)
class _RunState:
    run: Run
    token: CancellationToken = field(default_factory=CancellationToken)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None
    notified: bool = False


class PipelineEngine:
    """Sequential, fail-fast stage driver with a guaranteed post-run notification."""

    def __init__(
        self,
        *,
        pipeline_id: str,
        stages: Sequence[StageDefinition],
        adapters: AdapterRegistry,
        credentials: CredentialResolver,
        masker: SecretMasker | None = None,
        policies: Mapping[GatingPolicy, GatePolicy] | None = None,
        notifier: ToolAdapter | None = None,
        concurrency: ConcurrencyPolicy | str = ConcurrencyPolicy.REJECT,
        context_defaults: Mapping[str, Finding] | None = None,
        workspace: Path | None = None,
        history: RunHistoryDB | None = None,
        events: RunEventBus | None = None,
        notifier_timeout_seconds: float = DEFAULT_NOTIFIER_TIMEOUT_SECONDS,
        max_retained_runs: int = DEFAULT_MAX_RETAINED_RUNS,
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        if not pipeline_id or not pipeline_id.strip():
            raise EngineConfigError("pipeline_id must be non-empty")
        if max_retained_runs < 1:
            raise EngineConfigError("max_retained_runs must be >= 1")
        self.pipeline_id = pipeline_id
        self._stages = validate_stage_graph(stages, adapter_ids=adapters.registered_ids())
        known_credentials = credentials.known_names()
        for stage in self._stages:
            for name in stage.credential_names:
                if name not in known_credentials:
                    raise EngineConfigError(
                        f"stage {stage.name!r} references undeclared credential {name!r}"
                    )
        if notifier is None and adapters.contains(NOTIFIER_ADAPTER):
            notifier = adapters.get(NOTIFIER_ADAPTER)
        self._notifier = notifier
        self._concurrency = ConcurrencyPolicy(concurrency)
        self._context_defaults = dict(context_defaults or {})
        self._workspace = workspace
        self._history = history
        self._credentials = credentials
        self._masker = masker if masker is not None else SecretMasker()
        self._notifier_timeout = notifier_timeout_seconds
        self._max_retained_runs = max_retained_runs
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self.events = events if events is not None else RunEventBus()
        self._executor = StageExecutor(
            adapters=adapters,
            credentials=credentials,
            masker=self._masker,
            policies=policies,
            events=self.events,
            sleep=sleep,
            clock=clock,
            logger=self._logger,
        )
        for stage in self._stages:
            if stage.is_gated:
                self._executor.policy_for(stage.gating)

        self._runs: dict[str, _RunState] = {}
        self._queue: deque[_RunState] = deque()
        self._active_run_id: str | None = None

    @property
    def stages(self) -> tuple[StageDefinition, ...]:
        return self._stages

    @property
    def active_run_id(self) -> str | None:
        return self._active_run_id

    async def start_run(self, cause: TriggerCause) -> str:
        """Create a ``pending`` run and schedule it. Returns the run id."""

        if self._active_run_id is not None and self._concurrency is ConcurrencyPolicy.REJECT:
            raise RunConflictError(self.pipeline_id, self._active_run_id)

        run = Run(
            run_id=generate_run_id(),
            pipeline_id=self.pipeline_id,
            cause=cause,
            status=RunStatus.PENDING,
            created_at=self._clock(),
        )
        state = _RunState(run=run)
        self._runs[run.run_id] = state
        if self._active_run_id is None:
            self._launch(state)
        else:
            self._queue.append(state)
            self._logger.info(
                "run_queued",
                run_id=run.run_id,
                pipeline_id=self.pipeline_id,
                behind=self._active_run_id,
                queue_depth=len(self._queue),
            )
            await self.events.emit(
                RunEventType.RUN_QUEUED,
                run_id=run.run_id,
                pipeline_id=self.pipeline_id,
                behind=self._active_run_id,
            )
        return run.run_id

    async def run(self, cause: TriggerCause) -> Run:
        """Start a run and wait for its terminal snapshot."""

        run_id = await self.start_run(cause)
        return await self.wait_for_run(run_id)

    def get_run_status(self, run_id: str) -> Run:
        state = self._runs.get(run_id)
        if state is not None:
            return state.run
        if self._history is not None:
            stored = self._history.get(run_id)
            if stored is not None:
                return stored
        raise UnknownRunError(run_id)

    def list_runs(self) -> tuple[Run, ...]:
        """Runs still held in memory: active, queued, and the most recent terminal ones."""

        return tuple(state.run for state in self._runs.values())

    async def wait_for_run(self, run_id: str, *, timeout_seconds: float | None = None) -> Run:
        state = self._runs.get(run_id)
        if state is None:
            return self.get_run_status(run_id)
        if timeout_seconds is None:
            await state.done.wait()
        else:
            await asyncio.wait_for(state.done.wait(), timeout=timeout_seconds)
        return state.run

    async def abort_run(self, run_id: str, *, reason: str = "abort requested") -> bool:
        """Signal abort. Returns ``False`` when the run is already terminal."""

        state = self._runs.get(run_id)
        if state is None:
            self.get_run_status(run_id)
            return False
        if state.run.is_terminal or state.token.is_cancelled:
            return False
        state.token.cancel(reason)
        self._logger.info(
            "run_abort_requested", run_id=run_id, pipeline_id=self.pipeline_id, reason=reason
        )
        await self.events.emit(
            RunEventType.RUN_ABORT_REQUESTED,
            run_id=run_id,
            pipeline_id=self.pipeline_id,
            reason=reason,
        )
        if state in self._queue:
            self._queue.remove(state)
            state.task = asyncio.create_task(self._execute(state), name=f"stagegate-{run_id}")
        return True

    async def aclose(self) -> None:
        """Abort queued runs and wait for every scheduled run to finish."""

        for state in list(self._queue):
            await self.abort_run(state.run.run_id, reason="engine shutting down")
        tasks = [state.task for state in self._runs.values() if state.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _evict_finished(self) -> None:
        excess = len(self._runs) - self._max_retained_runs
        if excess <= 0:
            return
        finished = [run_id for run_id, state in self._runs.items() if state.done.is_set()]
        for run_id in finished[:excess]:
            del self._runs[run_id]

    def _launch(self, state: _RunState) -> None:
        self._active_run_id = state.run.run_id
        state.task = asyncio.create_task(self._drive(state), name=f"stagegate-{state.run.run_id}")

    async def _drive(self, state: _RunState) -> None:
        try:
            await self._execute(state)
        finally:
            if self._active_run_id == state.run.run_id:
                self._active_run_id = None
                if self._queue:
                    self._launch(self._queue.popleft())

    def _update(self, state: _RunState, **changes: object) -> None:
        state.run = dataclasses.replace(state.run, **changes)

    def _append(self, state: _RunState, result: StageResult) -> None:
        self._update(state, stage_results=(*state.run.stage_results, result))

    def _skip_from(self, state: _RunState, start: int, reason: str) -> None:
        for stage in self._stages[start:]:
            self._append(state, StageResult.skipped(stage.name, stage.order, clip_reason(reason)))

    def _seed(self, run: Run) -> dict[str, Finding]:
        values = dict(self._context_defaults)
        for key in ("repo", "branch", "commit"):
            value = getattr(run.cause, key)
            if value is not None:
                values[key] = value
        values["pipeline_id"] = self.pipeline_id
        values["run_id"] = run.run_id
        return values

    async def _execute(self, state: _RunState) -> None:
        run_id = state.run.run_id
        log = self._logger.bind(run_id=run_id, pipeline_id=self.pipeline_id)
        status: RunStatus | None = None
        index = 0
        try:
            self._update(state, status=RunStatus.RUNNING, started_at=self._clock())
            log.info("run_started", cause=state.run.cause.describe(), stages=len(self._stages))
            await self.events.emit(
                RunEventType.RUN_STARTED,
                run_id=run_id,
                pipeline_id=self.pipeline_id,
                cause=state.run.cause.describe(),
            )
            context = RunContext(
                run_id=run_id,
                pipeline_id=self.pipeline_id,
                values=self._seed(state.run),
                workspace=self._workspace,
            )
            status = await self._drive_stages(state, context, log)
            index = len(self._stages)
        except Exception as exc:  # noqa: BLE001
            log.exception("run_internal_error", error_type=type(exc).__name__)
            status = RunStatus.FAILED
            index = state.run.current_stage_index
            if state.run.result_for(self._stages[index].name) is None:
                stage = self._stages[index]
                self._append(
                    state,
                    StageResult(
                        name=stage.name,
                        order=stage.order,
                        status=StageStatus.FAILED,
                        reason=clip_reason(
                            f"engine error: {type(exc).__name__}: {self._masker.mask(str(exc))}"
                        ),
                    ),
                )
            self._skip_from(state, index + 1, f"engine error in stage {self._stages[index].name!r}")
        finally:
            if status is None:
                status = RunStatus.ABORTED
                recorded = len(state.run.stage_results)
                self._skip_from(state, recorded, "run cancelled")
            self._update(state, status=status, finished_at=self._clock())
            await self._after_run(state, log)
            self._evict_finished()

    async def _drive_stages(self, state: _RunState, context: RunContext, log: Any) -> RunStatus:
        for index, stage in enumerate(self._stages):
            if state.token.is_cancelled:
                reason = state.token.reason or "abort requested"
                self._skip_from(state, index, f"run aborted: {reason}")
                return RunStatus.ABORTED

            self._update(state, current_stage_index=index)
            await self.events.emit(
                RunEventType.STAGE_STARTED,
                run_id=context.run_id,
                pipeline_id=self.pipeline_id,
                stage=stage.name,
            )
            result = await self._executor.execute(stage, context)
            self._append(state, result)

            if result.status is StageStatus.PASSED:
                context.merge(result.outputs)
                log.info(
                    "stage_passed",
                    stage=stage.name,
                    attempts=result.attempt_count,
                    duration_seconds=result.duration_seconds,
                )
                await self.events.emit(
                    RunEventType.STAGE_PASSED,
                    run_id=context.run_id,
                    pipeline_id=self.pipeline_id,
                    stage=stage.name,
                )
                continue

            if result.status is StageStatus.BLOCKED:
                decision = result.gate_decision
                reasons = [] if decision is None else list(decision.reasons)
                verdict_available = result.verdict is not None and result.verdict.available
                if verdict_available:
                    log.warning(
                        "gate_blocked", stage=stage.name, gating=stage.gating.value, reasons=reasons
                    )
                else:
                    log.error(
                        "gate_unavailable",
                        stage=stage.name,
                        gating=stage.gating.value,
                        attempts=result.attempt_count,
                        reason=result.reason,
                    )
                await self.events.emit(
                    RunEventType.GATE_BLOCKED,
                    run_id=context.run_id,
                    pipeline_id=self.pipeline_id,
                    stage=stage.name,
                    reason=result.reason,
                    verdict_available=verdict_available,
                )
            else:
                log.error(
                    "stage_failed",
                    stage=stage.name,
                    attempts=result.attempt_count,
                    reason=result.reason,
                )
                await self.events.emit(
                    RunEventType.STAGE_FAILED,
                    run_id=context.run_id,
                    pipeline_id=self.pipeline_id,
                    stage=stage.name,
                    reason=result.reason,
                )
            self._skip_from(
                state, index + 1, f"upstream stage {stage.name!r} {result.status.value}"
            )
            return RunStatus.FAILED
        return RunStatus.SUCCEEDED

    async def _after_run(self, state: _RunState, log: Any) -> None:
        run = state.run
        try:
            if self._history is not None:
                try:
                    await asyncio.to_thread(self._history.record, run)
                except RunHistoryError as exc:
                    log.warning("run_history_write_failed", error_type=type(exc).__name__)
            await self._notify(state, log)
            culprit = run.first_unsuccessful()
            log.info(
                "run_finished",
                status=run.status.value,
                failed_stage=None if culprit is None else culprit.name,
                duration_seconds=_duration(run),
            )
            await self.events.emit(
                RunEventType.RUN_FINISHED,
                run_id=run.run_id,
                pipeline_id=self.pipeline_id,
                status=run.status.value,
            )
        finally:
            state.done.set()

    async def _notify(self, state: _RunState, log: Any) -> None:
        if self._notifier is None or state.notified:
            return
        state.notified = True
        run = state.run
        context = AdapterContext(
            run_id=run.run_id,
            pipeline_id=self.pipeline_id,
            stage_name=NOTIFY_STAGE_NAME,
            attempt=1,
            timeout_seconds=self._notifier_timeout,
            credentials=self._credentials,
            masker=self._masker,
            workspace=self._workspace,
            logger=log,
        )
        outcome = await invoke_adapter(
            self._notifier,
            {"run_summary": run.summary()},
            context,
            timeout_seconds=self._notifier_timeout,
        )
        if isinstance(outcome, AdapterFailure):
            log.warning(
                "notifier_failed", failure_kind=outcome.kind.value, reason=outcome.describe()
            )
            await self.events.emit(
                RunEventType.NOTIFIER_FAILED,
                run_id=run.run_id,
                pipeline_id=self.pipeline_id,
                reason=outcome.describe(),
            )


def _duration(run: Run) -> float | None:
    if run.started_at is None or run.finished_at is None:
        return None
    return (run.finished_at - run.started_at).total_seconds()


__all__ = ["NOTIFY_STAGE_NAME", "ConcurrencyPolicy", "PipelineEngine"]
