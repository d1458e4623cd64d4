"""
stagegate — stage executor

File: src/stagegate/engine/executor.py

Purpose
- Run one stage against the run context and return exactly one ``StageResult``.

Attempt semantics
- Calls run in declared order; each call gets the stage timeout as a hard deadline.
- Transient failures retry with exponential backoff up to ``retry.max_attempts``.
- Permanent failures end the stage on the attempt they occur.
- Gate blocks never retry. A gated stage whose tool never produced a verdict is blocked
  (fail-closed), not failed.
- Earlier failed attempts are kept in ``StageResult.attempts``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from stagegate.adapters.base import (
    AdapterContext,
    AdapterFailure,
    AdapterRegistry,
    AdapterSuccess,
    FailureKind,
    invoke_adapter,
    truncate,
)
from stagegate.domain.models import (
    AttemptRecord,
    Finding,
    GateDecision,
    GateVerdict,
    GatingPolicy,
    StageResult,
    StageStatus,
    clip_reason,
    utc_now,
)
from stagegate.engine.stages import AdapterCall, StageDefinition
from stagegate.errors import EngineConfigError, GateBlocked
from stagegate.gates.evaluator import evaluate_gate
from stagegate.gates.policy import GatePolicy, default_policy_for
from stagegate.observability.events import RunEventBus, RunEventType
from stagegate.security.credentials import CredentialResolver
from stagegate.security.redaction import SecretMasker
from stagegate.utils.concurrency import Sleeper

EXPECTATION_FAILED = "expectation_failed"


@dataclass(slots=True)
class RunContext:
    """Values flowing between stages: trigger fields first, then stage outputs."""

    run_id: str
    pipeline_id: str
    values: dict[str, Finding] = field(default_factory=dict)
    workspace: Path | None = None

    def merge(self, outputs: Mapping[str, Finding]) -> None:
        self.values.update(outputs)


@dataclass(slots=True)
class _AttemptSuccess:
    outputs: dict[str, Finding]
    verdict: GateVerdict | None
    diagnostics: str


class StageExecutor:
    """Invokes a stage's adapter calls with deadline, retry and gate evaluation."""

    def __init__(
        self,
        *,
        adapters: AdapterRegistry,
        credentials: CredentialResolver,
        masker: SecretMasker,
        policies: Mapping[GatingPolicy, GatePolicy] | None = None,
        events: RunEventBus | None = None,
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._adapters = adapters
        self._credentials = credentials
        self._masker = masker
        self._policies = dict(policies or {})
        self._events = events
        self._sleep = sleep
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def policy_for(self, gating: GatingPolicy) -> GatePolicy:
        policy = self._policies.get(gating) or default_policy_for(gating)
        if policy is None:
            raise EngineConfigError(f"no gate policy configured for {gating.value!r}")
        return policy

    def _enforce_gate(self, stage: StageDefinition, verdict: GateVerdict | None) -> GateDecision:
        decision = evaluate_gate(verdict, self.policy_for(stage.gating))
        if decision.blocked:
            raise GateBlocked(stage.name, (decision.summary(),), decision)
        return decision

    async def execute(self, stage: StageDefinition, context: RunContext) -> StageResult:
        started_at = self._clock()
        history: list[AttemptRecord] = []
        attempt = 0
        while True:
            attempt += 1
            attempt_started = self._clock()
            outcome = await self._attempt(stage, context, attempt)
            if isinstance(outcome, _AttemptSuccess):
                return self._finish_success(stage, attempt, started_at, history, outcome)

            reason = clip_reason(outcome.describe())
            if outcome.is_retryable and attempt < stage.retry.max_attempts:
                history.append(
                    AttemptRecord(
                        attempt=attempt,
                        started_at=attempt_started,
                        finished_at=self._clock(),
                        reason=reason,
                        failure_kind=outcome.kind.value,
                        diagnostics=outcome.diagnostics,
                    )
                )
                delay = stage.retry.delay_before(attempt + 1)
                self._logger.warning(
                    "stage_retry",
                    run_id=context.run_id,
                    stage=stage.name,
                    attempt=attempt,
                    failure_kind=outcome.kind.value,
                    reason=reason,
                    delay_seconds=delay,
                )
                if self._events is not None:
                    await self._events.emit(
                        RunEventType.STAGE_RETRY,
                        run_id=context.run_id,
                        pipeline_id=context.pipeline_id,
                        stage=stage.name,
                        attempt=attempt,
                        reason=reason,
                        delay_seconds=delay,
                    )
                if delay > 0:
                    await self._sleep(delay)
                continue
            return self._finish_failure(stage, attempt, started_at, history, outcome)

    async def _attempt(
        self, stage: StageDefinition, context: RunContext, attempt: int
    ) -> _AttemptSuccess | AdapterFailure:
        values = dict(context.values)
        outputs: dict[str, Finding] = {}
        verdict: GateVerdict | None = None
        diagnostics: list[str] = []
        for call in stage.calls:
            request = _build_request(call, values)
            if isinstance(request, AdapterFailure):
                return request
            adapter_context = AdapterContext(
                run_id=context.run_id,
                pipeline_id=context.pipeline_id,
                stage_name=stage.name,
                attempt=attempt,
                timeout_seconds=stage.timeout_seconds,
                credentials=self._credentials,
                masker=self._masker,
                workspace=context.workspace,
                logger=self._logger.bind(run_id=context.run_id, stage=stage.name, attempt=attempt),
            )
            outcome = await invoke_adapter(
                self._adapters.get(call.adapter_id),
                request,
                adapter_context,
                timeout_seconds=stage.timeout_seconds,
            )
            if isinstance(outcome, AdapterFailure):
                return outcome
            checked = _check_outputs(call, outcome)
            if checked is not None:
                return checked
            if outcome.diagnostics:
                diagnostics.append(outcome.diagnostics)
            outputs.update(outcome.outputs)
            values.update(outcome.outputs)
            if outcome.verdict is not None:
                verdict = outcome.verdict
        return _AttemptSuccess(outputs=outputs, verdict=verdict, diagnostics="\n".join(diagnostics))

    def _finish_success(
        self,
        stage: StageDefinition,
        attempt: int,
        started_at: datetime,
        history: list[AttemptRecord],
        success: _AttemptSuccess,
    ) -> StageResult:
        decision: GateDecision | None = None
        status = StageStatus.PASSED
        reason: str | None = None
        if stage.is_gated:
            try:
                decision = self._enforce_gate(stage, success.verdict)
            except GateBlocked as blocked:
                decision = blocked.decision
                status = StageStatus.BLOCKED
                reason = clip_reason("; ".join(blocked.reasons))
        return StageResult(
            name=stage.name,
            order=stage.order,
            status=status,
            attempt_count=attempt,
            started_at=started_at,
            finished_at=self._clock(),
            reason=reason,
            diagnostics=truncate(success.diagnostics),
            verdict=success.verdict,
            gate_decision=decision,
            attempts=tuple(history),
            outputs=success.outputs,
        )

    def _finish_failure(
        self,
        stage: StageDefinition,
        attempt: int,
        started_at: datetime,
        history: list[AttemptRecord],
        failure: AdapterFailure,
    ) -> StageResult:
        reason = clip_reason(failure.describe())
        if stage.is_gated:
            missing = GateVerdict.unavailable(reason)
            try:
                self._enforce_gate(stage, missing)
            except GateBlocked as blocked:
                return StageResult(
                    name=stage.name,
                    order=stage.order,
                    status=StageStatus.BLOCKED,
                    attempt_count=attempt,
                    started_at=started_at,
                    finished_at=self._clock(),
                    reason=clip_reason("; ".join(blocked.reasons)),
                    diagnostics=failure.diagnostics,
                    verdict=missing,
                    gate_decision=blocked.decision,
                    attempts=tuple(history),
                )
        return StageResult(
            name=stage.name,
            order=stage.order,
            status=StageStatus.FAILED,
            attempt_count=attempt,
            started_at=started_at,
            finished_at=self._clock(),
            reason=reason,
            diagnostics=failure.diagnostics,
            attempts=tuple(history),
        )


def _build_request(
    call: AdapterCall, values: Mapping[str, Finding]
) -> dict[str, object] | AdapterFailure:
    request: dict[str, object] = dict(call.params)
    missing = [key for key in call.consumes if key not in values]
    if missing:
        return AdapterFailure(
            kind=FailureKind.CONFIGURATION,
            message=f"run context is missing {', '.join(missing)} for {call.adapter_id!r}",
        )
    for key in call.consumes:
        request[key] = values[key]
    for key in call.optional:
        if key in values:
            request[key] = values[key]
    if call.credential is not None:
        request["credential_ref"] = call.credential
    return request


def _check_outputs(call: AdapterCall, outcome: AdapterSuccess) -> AdapterFailure | None:
    missing = [key for key in call.produces if key not in outcome.outputs]
    if missing:
        return AdapterFailure(
            kind=FailureKind.INVALID_RESPONSE,
            message=f"{call.adapter_id!r} did not report {', '.join(missing)}",
            diagnostics=outcome.diagnostics,
        )
    for key, expected in call.expect.items():
        actual = outcome.outputs.get(key)
        if actual != expected or type(actual) is not type(expected):
            return AdapterFailure(
                kind=FailureKind.TOOL_ERROR,
                code=EXPECTATION_FAILED,
                message=f"{key}={actual!r}, expected {expected!r}",
                retryable=False,
                diagnostics=outcome.diagnostics,
            )
    return None


__all__ = ["EXPECTATION_FAILED", "RunContext", "StageExecutor"]
