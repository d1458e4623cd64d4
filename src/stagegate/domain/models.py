"""Frozen run/stage/gate value types with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, StrEnum
from types import MappingProxyType
from typing import NoReturn, TypeVar

from stagegate.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
Finding = int | float | str | bool

TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 16_384
MAX_REASON_CHARS = 1024


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_RUN_STATUSES


_TERMINAL_RUN_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED})


class StageStatus(StrEnum):
    PASSED = "passed"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


class GatingPolicy(StrEnum):
    NONE = "none"
    QUALITY = "quality"
    SECURITY = "security"


class TriggerKind(StrEnum):
    PUSH = "push"
    POLL = "poll"
    MANUAL = "manual"


class GateOutcome(StrEnum):
    PASS = "pass"
    BLOCK = "block"


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _as_str(
    value: object, path: str, *, max_len: int = _MAX_TEXT, allow_empty: bool = False
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    if not allow_empty and not value.strip():
        _fail(path, "must not be empty")
    if len(value) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return value


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len)


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(str(item.value) for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_datetime(value: object, path: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")
    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    return None if value is None else _as_datetime(value, path)


def _as_scalar_mapping(value: object, path: str) -> Mapping[str, Finding]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    parsed: dict[str, Finding] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not key:
            _fail(path, "keys must be non-empty strings")
        if isinstance(item, float) and not math.isfinite(item):
            _fail(f"{path}.{key}", "float values must be finite")
        if not isinstance(item, (str, int, float, bool)):
            _fail(f"{path}.{key}", f"expected scalar, got {type(item).__name__}")
        parsed[key] = item
    return MappingProxyType(parsed)


def _as_object(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    return value


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def clip_reason(text: str, max_chars: int = MAX_REASON_CHARS) -> str:
    """Shorten ``text`` to at most ``max_chars``, keeping the head and noting what was cut."""

    if len(text) <= max_chars:
        return text
    marker = f" ...[truncated, {len(text)} chars total]"
    return f"{text[: max(0, max_chars - len(marker))]}{marker}"[:max_chars]


@dataclass(frozen=True, slots=True)
class TriggerCause:
    """What started a run: a push, a poll tick, or a manual invocation."""

    kind: TriggerKind
    repo: str | None = None
    branch: str | None = None
    commit: str | None = None
    schedule_expr: str | None = None
    actor: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _as_enum(TriggerKind, self.kind, "TriggerCause.kind"))
        for name in ("repo", "branch", "commit", "schedule_expr", "actor"):
            object.__setattr__(
                self,
                name,
                _as_optional_str(getattr(self, name), f"TriggerCause.{name}", max_len=512),
            )
        if self.kind is TriggerKind.PUSH and (self.repo is None or self.commit is None):
            _fail("TriggerCause", "push causes require repo and commit")
        if self.kind is TriggerKind.POLL and self.schedule_expr is None:
            _fail("TriggerCause", "poll causes require schedule_expr")

    def describe(self) -> str:
        if self.kind is TriggerKind.PUSH:
            return f"push {self.repo}@{self.branch or '?'}:{self.commit}"
        if self.kind is TriggerKind.POLL:
            return f"poll {self.schedule_expr}"
        return f"manual by {self.actor or 'unknown'}"

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "kind": self.kind.value,
            "repo": self.repo,
            "branch": self.branch,
            "commit": self.commit,
            "schedule_expr": self.schedule_expr,
            "actor": self.actor,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TriggerCause:
        parsed = _as_object(data, "TriggerCause")
        return cls(
            kind=_as_enum(TriggerKind, parsed.get("kind"), "TriggerCause.kind"),
            repo=_as_optional_str(parsed.get("repo"), "TriggerCause.repo"),
            branch=_as_optional_str(parsed.get("branch"), "TriggerCause.branch"),
            commit=_as_optional_str(parsed.get("commit"), "TriggerCause.commit"),
            schedule_expr=_as_optional_str(
                parsed.get("schedule_expr"), "TriggerCause.schedule_expr"
            ),
            actor=_as_optional_str(parsed.get("actor"), "TriggerCause.actor"),
        )


@dataclass(frozen=True, slots=True)
class GateVerdict:
    """
    Verdict reported by a quality or security tool.

    ``available=False`` marks a verdict that could not be obtained at all (tool timeout,
    unreachable server). Such a verdict always blocks.
    """

    blocking: bool
    findings: Mapping[str, Finding] = field(default_factory=dict)
    detail: str = ""
    available: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.blocking, bool):
            _fail("GateVerdict.blocking", "expected boolean")
        if not isinstance(self.available, bool):
            _fail("GateVerdict.available", "expected boolean")
        object.__setattr__(
            self, "findings", _as_scalar_mapping(self.findings, "GateVerdict.findings")
        )
        object.__setattr__(
            self, "detail", _as_str(self.detail, "GateVerdict.detail", allow_empty=True)
        )

    @classmethod
    def unavailable(cls, reason: str) -> GateVerdict:
        return cls(blocking=True, findings={}, detail=reason, available=False)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "available": self.available,
            "blocking": self.blocking,
            "detail": self.detail,
            "findings": dict(self.findings),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> GateVerdict:
        parsed = _as_object(data, "GateVerdict")
        blocking = parsed.get("blocking", False)
        available = parsed.get("available", True)
        if not isinstance(blocking, bool):
            _fail("GateVerdict.blocking", "expected boolean")
        if not isinstance(available, bool):
            _fail("GateVerdict.available", "expected boolean")
        detail = parsed.get("detail", "")
        return cls(
            blocking=blocking,
            findings=_as_scalar_mapping(parsed.get("findings", {}), "GateVerdict.findings"),
            detail=_as_str(detail, "GateVerdict.detail", allow_empty=True),
            available=available,
        )


@dataclass(frozen=True, slots=True)
class ThresholdViolation:
    metric: str
    comparator: str
    limit: Finding
    actual: Finding | None
    enforcement: str
    message: str

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "actual": self.actual,
            "comparator": self.comparator,
            "enforcement": self.enforcement,
            "limit": self.limit,
            "message": self.message,
            "metric": self.metric,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ThresholdViolation:
        parsed = _as_object(data, "ThresholdViolation")
        actual = parsed.get("actual")
        limit = parsed.get("limit")
        if not isinstance(limit, (str, int, float, bool)):
            _fail("ThresholdViolation.limit", "expected scalar")
        if actual is not None and not isinstance(actual, (str, int, float, bool)):
            _fail("ThresholdViolation.actual", "expected scalar or null")
        return cls(
            metric=_as_str(parsed.get("metric"), "ThresholdViolation.metric"),
            comparator=_as_str(parsed.get("comparator"), "ThresholdViolation.comparator"),
            limit=limit,
            actual=actual,
            enforcement=_as_str(parsed.get("enforcement"), "ThresholdViolation.enforcement"),
            message=_as_str(parsed.get("message"), "ThresholdViolation.message"),
        )


@dataclass(frozen=True, slots=True)
class GateDecision:
    outcome: GateOutcome
    violations: tuple[ThresholdViolation, ...] = ()
    warnings: tuple[ThresholdViolation, ...] = ()
    reasons: tuple[str, ...] = ()

    @property
    def blocked(self) -> bool:
        return self.outcome is GateOutcome.BLOCK

    def summary(self) -> str:
        if not self.blocked:
            if not self.warnings:
                return "gate passed"
            return f"gate passed with {len(self.warnings)} warning(s)"
        return "; ".join(self.reasons) if self.reasons else "gate blocked"

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "outcome": self.outcome.value,
            "reasons": list(self.reasons),
            "violations": [item.to_dict() for item in self.violations],
            "warnings": [item.to_dict() for item in self.warnings],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> GateDecision:
        parsed = _as_object(data, "GateDecision")
        return cls(
            outcome=_as_enum(GateOutcome, parsed.get("outcome"), "GateDecision.outcome"),
            violations=tuple(
                ThresholdViolation.from_dict(_as_object(item, "GateDecision.violations[]"))
                for item in _as_list(parsed.get("violations", []), "GateDecision.violations")
            ),
            warnings=tuple(
                ThresholdViolation.from_dict(_as_object(item, "GateDecision.warnings[]"))
                for item in _as_list(parsed.get("warnings", []), "GateDecision.warnings")
            ),
            reasons=tuple(
                _as_str(item, "GateDecision.reasons[]")
                for item in _as_list(parsed.get("reasons", []), "GateDecision.reasons")
            ),
        )


def _as_list(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


@dataclass(frozen=True, slots=True)
class AttemptRecord:
    """One earlier, failed attempt of a stage that was later retried or given up on."""

    attempt: int
    started_at: datetime
    finished_at: datetime
    reason: str
    failure_kind: str | None = None
    diagnostics: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "attempt", _as_int(self.attempt, "AttemptRecord.attempt", minimum=1)
        )
        object.__setattr__(
            self, "started_at", _as_datetime(self.started_at, "AttemptRecord.started_at")
        )
        object.__setattr__(
            self, "finished_at", _as_datetime(self.finished_at, "AttemptRecord.finished_at")
        )
        if self.finished_at < self.started_at:
            _fail("AttemptRecord.finished_at", "must be >= started_at")
        object.__setattr__(
            self,
            "reason",
            _as_str(self.reason, "AttemptRecord.reason", max_len=MAX_REASON_CHARS),
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "attempt": self.attempt,
            "diagnostics": self.diagnostics,
            "failure_kind": self.failure_kind,
            "finished_at": _iso(self.finished_at),
            "reason": self.reason,
            "started_at": _iso(self.started_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> AttemptRecord:
        parsed = _as_object(data, "AttemptRecord")
        return cls(
            attempt=_as_int(parsed.get("attempt"), "AttemptRecord.attempt", minimum=1),
            started_at=_as_datetime(parsed.get("started_at"), "AttemptRecord.started_at"),
            finished_at=_as_datetime(parsed.get("finished_at"), "AttemptRecord.finished_at"),
            reason=_as_str(parsed.get("reason"), "AttemptRecord.reason"),
            failure_kind=_as_optional_str(
                parsed.get("failure_kind"), "AttemptRecord.failure_kind"
            ),
            diagnostics=_as_str(
                parsed.get("diagnostics", ""), "AttemptRecord.diagnostics", allow_empty=True
            ),
        )


@dataclass(frozen=True, slots=True)
class StageResult:
    """Outcome of one logical stage. Earlier failed attempts are kept in ``attempts``."""

    name: str
    order: int
    status: StageStatus
    attempt_count: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    reason: str | None = None
    diagnostics: str = ""
    verdict: GateVerdict | None = None
    gate_decision: GateDecision | None = None
    attempts: tuple[AttemptRecord, ...] = ()
    outputs: Mapping[str, Finding] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _as_str(self.name, "StageResult.name", max_len=128))
        object.__setattr__(self, "order", _as_int(self.order, "StageResult.order", minimum=0))
        object.__setattr__(self, "status", _as_enum(StageStatus, self.status, "StageResult.status"))
        object.__setattr__(
            self,
            "attempt_count",
            _as_int(self.attempt_count, "StageResult.attempt_count", minimum=0),
        )
        object.__setattr__(
            self, "started_at", _as_optional_datetime(self.started_at, "StageResult.started_at")
        )
        object.__setattr__(
            self, "finished_at", _as_optional_datetime(self.finished_at, "StageResult.finished_at")
        )
        if (
            self.started_at is not None
            and self.finished_at is not None
            and self.finished_at < self.started_at
        ):
            _fail("StageResult.finished_at", "must be >= started_at")
        object.__setattr__(
            self,
            "reason",
            _as_optional_str(self.reason, "StageResult.reason", max_len=MAX_REASON_CHARS),
        )
        if self.status is not StageStatus.PASSED and self.reason is None:
            _fail("StageResult.reason", f"required for status {self.status.value!r}")
        if self.status is StageStatus.SKIPPED and self.attempt_count != 0:
            _fail("StageResult.attempt_count", "skipped stages have no attempts")
        object.__setattr__(self, "attempts", tuple(self.attempts))
        object.__setattr__(self, "outputs", _as_scalar_mapping(self.outputs, "StageResult.outputs"))

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    @classmethod
    def skipped(cls, name: str, order: int, reason: str) -> StageResult:
        return cls(name=name, order=order, status=StageStatus.SKIPPED, reason=reason)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "attempt_count": self.attempt_count,
            "attempts": [item.to_dict() for item in self.attempts],
            "diagnostics": self.diagnostics,
            "duration_seconds": self.duration_seconds,
            "finished_at": _iso(self.finished_at),
            "gate_decision": None if self.gate_decision is None else self.gate_decision.to_dict(),
            "name": self.name,
            "order": self.order,
            "outputs": dict(self.outputs),
            "reason": self.reason,
            "started_at": _iso(self.started_at),
            "status": self.status.value,
            "verdict": None if self.verdict is None else self.verdict.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StageResult:
        parsed = _as_object(data, "StageResult")
        verdict_raw = parsed.get("verdict")
        decision_raw = parsed.get("gate_decision")
        return cls(
            name=_as_str(parsed.get("name"), "StageResult.name"),
            order=_as_int(parsed.get("order"), "StageResult.order", minimum=0),
            status=_as_enum(StageStatus, parsed.get("status"), "StageResult.status"),
            attempt_count=_as_int(parsed.get("attempt_count", 0), "StageResult.attempt_count"),
            started_at=_as_optional_datetime(parsed.get("started_at"), "StageResult.started_at"),
            finished_at=_as_optional_datetime(parsed.get("finished_at"), "StageResult.finished_at"),
            reason=_as_optional_str(parsed.get("reason"), "StageResult.reason"),
            diagnostics=_as_str(
                parsed.get("diagnostics", ""), "StageResult.diagnostics", allow_empty=True
            ),
            verdict=None
            if verdict_raw is None
            else GateVerdict.from_dict(_as_object(verdict_raw, "StageResult.verdict")),
            gate_decision=None
            if decision_raw is None
            else GateDecision.from_dict(_as_object(decision_raw, "StageResult.gate_decision")),
            attempts=tuple(
                AttemptRecord.from_dict(_as_object(item, "StageResult.attempts[]"))
                for item in _as_list(parsed.get("attempts", []), "StageResult.attempts")
            ),
            outputs=_as_scalar_mapping(parsed.get("outputs", {}), "StageResult.outputs"),
        )


@dataclass(frozen=True, slots=True)
class Run:
    """Immutable snapshot of a pipeline run."""

    run_id: str
    pipeline_id: str
    cause: TriggerCause
    status: RunStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    current_stage_index: int = 0
    stage_results: tuple[StageResult, ...] = ()

    def __post_init__(self) -> None:
        try:
            domain_ids.validate_run_id(self.run_id)
        except ValueError as exc:
            _fail("Run.run_id", str(exc))
        object.__setattr__(
            self, "pipeline_id", _as_str(self.pipeline_id, "Run.pipeline_id", max_len=256)
        )
        if not isinstance(self.cause, TriggerCause):
            _fail("Run.cause", f"expected TriggerCause, got {type(self.cause).__name__}")
        object.__setattr__(self, "status", _as_enum(RunStatus, self.status, "Run.status"))
        object.__setattr__(self, "created_at", _as_datetime(self.created_at, "Run.created_at"))
        object.__setattr__(
            self, "started_at", _as_optional_datetime(self.started_at, "Run.started_at")
        )
        object.__setattr__(
            self, "finished_at", _as_optional_datetime(self.finished_at, "Run.finished_at")
        )
        object.__setattr__(
            self,
            "current_stage_index",
            _as_int(self.current_stage_index, "Run.current_stage_index", minimum=0),
        )
        results = tuple(self.stage_results)
        for previous, result in zip(results, results[1:], strict=False):
            if result.order <= previous.order:
                _fail("Run.stage_results", f"result {result.name!r} out of declared order")
        object.__setattr__(self, "stage_results", results)
        if self.status.is_terminal and self.finished_at is None:
            _fail("Run.finished_at", "terminal runs must have finished_at")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def result_for(self, stage_name: str) -> StageResult | None:
        for result in self.stage_results:
            if result.name == stage_name:
                return result
        return None

    def first_unsuccessful(self) -> StageResult | None:
        for result in self.stage_results:
            if result.status in (StageStatus.FAILED, StageStatus.BLOCKED):
                return result
        return None

    def summary(self) -> dict[str, JSONValue]:
        """Compact, secret-free summary handed to notifiers and the CLI."""

        culprit = self.first_unsuccessful()
        return {
            "cause": self.cause.describe(),
            "failed_stage": None if culprit is None else culprit.name,
            "failure_reason": None if culprit is None else culprit.reason,
            "finished_at": _iso(self.finished_at),
            "pipeline_id": self.pipeline_id,
            "run_id": self.run_id,
            "stages": {result.name: result.status.value for result in self.stage_results},
            "status": self.status.value,
        }

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "cause": self.cause.to_dict(),
            "created_at": _iso(self.created_at),
            "current_stage_index": self.current_stage_index,
            "finished_at": _iso(self.finished_at),
            "pipeline_id": self.pipeline_id,
            "run_id": self.run_id,
            "stage_results": [item.to_dict() for item in self.stage_results],
            "started_at": _iso(self.started_at),
            "status": self.status.value,
        }

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Run:
        parsed = _as_object(data, "Run")
        return cls(
            run_id=_as_str(parsed.get("run_id"), "Run.run_id"),
            pipeline_id=_as_str(parsed.get("pipeline_id"), "Run.pipeline_id"),
            cause=TriggerCause.from_dict(_as_object(parsed.get("cause"), "Run.cause")),
            status=_as_enum(RunStatus, parsed.get("status"), "Run.status"),
            created_at=_as_datetime(parsed.get("created_at"), "Run.created_at"),
            started_at=_as_optional_datetime(parsed.get("started_at"), "Run.started_at"),
            finished_at=_as_optional_datetime(parsed.get("finished_at"), "Run.finished_at"),
            current_stage_index=_as_int(
                parsed.get("current_stage_index", 0), "Run.current_stage_index", minimum=0
            ),
            stage_results=tuple(
                StageResult.from_dict(_as_object(item, "Run.stage_results[]"))
                for item in _as_list(parsed.get("stage_results", []), "Run.stage_results")
            ),
        )

    @classmethod
    def from_json(cls, raw: str) -> Run:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail("Run", f"invalid JSON: {exc}")
        return cls.from_dict(_as_object(parsed, "Run"))


__all__ = [
    "AttemptRecord",
    "Finding",
    "GateDecision",
    "GateOutcome",
    "GateVerdict",
    "GatingPolicy",
    "JSONScalar",
    "JSONValue",
    "MAX_REASON_CHARS",
    "Run",
    "RunStatus",
    "StageResult",
    "StageStatus",
    "ThresholdViolation",
    "TriggerCause",
    "TriggerKind",
    "canonical_json",
    "clip_reason",
    "utc_now",
]
