"""
stagegate — stage model and stage-graph validation

File: src/stagegate/engine/stages.py

Purpose
- Declare stages (adapter calls, gating, retry, timeout) and validate the graph once at
  engine startup.

Graph rules
- Names and positions are unique; execution order is ascending ``order``.
- ``depends_on`` must name known stages, must not form a cycle, and must point to stages
  that run earlier.
- Every key an adapter call consumes must be seeded by the trigger or produced by an
  earlier stage.
- Every referenced adapter must be registered.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Final

from stagegate.constants import (
    BUILD_ADAPTER,
    BUILD_STAGE,
    CHECKOUT_STAGE,
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_BACKOFF_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_BACKOFF_SECONDS,
    DEFAULT_STAGE_TIMEOUT_SECONDS,
    DEPLOY_SSH_CREDENTIAL,
    DEPLOY_STAGE,
    IMAGE_BUILD_STAGE,
    IMAGE_BUILDER_ADAPTER,
    QUALITY_GATE_ADAPTER,
    QUALITY_GATE_STAGE,
    REGISTRY_CREDENTIAL,
    REGISTRY_PUSH_ADAPTER,
    REGISTRY_PUSH_STAGE,
    REMOTE_DEPLOY_ADAPTER,
    SOURCE_ADAPTER,
    TEST_REPORT_ADAPTER,
    TEST_REPORT_STAGE,
    VULNERABILITY_SCAN_STAGE,
    VULNERABILITY_SCANNER_ADAPTER,
)
from stagegate.domain.models import Finding, GatingPolicy
from stagegate.errors import EngineConfigError
from stagegate.utils.concurrency import backoff_delay

# Keys every run context starts with, before any stage has produced output.
TRIGGER_CONTEXT_KEYS: Final[frozenset[str]] = frozenset(
    {"pipeline_id", "run_id", "repo", "branch", "commit"}
)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
            raise EngineConfigError("RetryPolicy.max_attempts must be an integer")
        if self.max_attempts < 1:
            raise EngineConfigError("RetryPolicy.max_attempts must be >= 1")
        if self.backoff_seconds < 0 or self.max_backoff_seconds < 0:
            raise EngineConfigError("RetryPolicy backoff seconds must be >= 0")
        if self.multiplier < 1:
            raise EngineConfigError("RetryPolicy.multiplier must be >= 1")

    def delay_before(self, attempt: int) -> float:
        """Backoff before ``attempt`` (2 = first retry)."""

        return backoff_delay(
            attempt - 1,
            base_seconds=self.backoff_seconds,
            multiplier=self.multiplier,
            max_seconds=self.max_backoff_seconds,
        )


NO_RETRY: Final[RetryPolicy] = RetryPolicy()


@dataclass(frozen=True, slots=True)
class AdapterCall:
    """
    One adapter invocation inside a stage.

    The request is built from ``params`` plus the run-context values named in ``consumes``
    (required) and ``optional`` (passed when present). ``credential`` is passed by name as
    ``credential_ref``. ``expect`` lists output values the call must report for the stage
    to pass.
    """

    adapter_id: str
    consumes: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()
    produces: tuple[str, ...] = ()
    params: Mapping[str, Finding] = field(default_factory=dict)
    credential: str | None = None
    expect: Mapping[str, Finding] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.adapter_id:
            raise EngineConfigError("AdapterCall.adapter_id must be non-empty")
        object.__setattr__(self, "consumes", tuple(self.consumes))
        object.__setattr__(self, "optional", tuple(self.optional))
        object.__setattr__(self, "produces", tuple(self.produces))
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))
        object.__setattr__(self, "expect", MappingProxyType(dict(self.expect)))


@dataclass(frozen=True, slots=True)
class StageDefinition:
    name: str
    order: int
    calls: tuple[AdapterCall, ...]
    gating: GatingPolicy = GatingPolicy.NONE
    retry: RetryPolicy = NO_RETRY
    timeout_seconds: float = DEFAULT_STAGE_TIMEOUT_SECONDS
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise EngineConfigError("StageDefinition.name must be non-empty")
        if isinstance(self.order, bool) or not isinstance(self.order, int) or self.order < 0:
            raise EngineConfigError(f"stage {self.name!r}: order must be a non-negative integer")
        calls = tuple(self.calls)
        if not calls:
            raise EngineConfigError(f"stage {self.name!r}: at least one adapter call is required")
        object.__setattr__(self, "calls", calls)
        try:
            object.__setattr__(self, "gating", GatingPolicy(self.gating))
        except ValueError as exc:
            raise EngineConfigError(f"stage {self.name!r}: unknown gating {self.gating!r}") from exc
        if self.timeout_seconds <= 0:
            raise EngineConfigError(f"stage {self.name!r}: timeout_seconds must be > 0")
        deps = tuple(self.depends_on)
        if self.name in deps:
            raise EngineConfigError(f"stage {self.name!r} cannot depend on itself")
        object.__setattr__(self, "depends_on", deps)

    @property
    def is_gated(self) -> bool:
        return self.gating is not GatingPolicy.NONE

    @property
    def credential_names(self) -> tuple[str, ...]:
        return tuple(call.credential for call in self.calls if call.credential is not None)


def validate_stage_graph(
    stages: Sequence[StageDefinition],
    *,
    adapter_ids: Iterable[str] | None = None,
    seed_keys: Iterable[str] = TRIGGER_CONTEXT_KEYS,
) -> tuple[StageDefinition, ...]:
    """Return stages in execution order or raise ``EngineConfigError``."""

    if not stages:
        raise EngineConfigError("pipeline must declare at least one stage")

    ordered = tuple(sorted(stages, key=lambda stage: (stage.order, stage.name)))
    by_name: dict[str, StageDefinition] = {}
    seen_orders: dict[int, str] = {}
    for stage in ordered:
        if stage.name in by_name:
            raise EngineConfigError(f"duplicate stage name: {stage.name!r}")
        if stage.order in seen_orders:
            raise EngineConfigError(
                f"duplicate stage order {stage.order}: "
                f"{seen_orders[stage.order]!r} and {stage.name!r}"
            )
        by_name[stage.name] = stage
        seen_orders[stage.order] = stage.name

    for stage in ordered:
        for dependency in stage.depends_on:
            if dependency not in by_name:
                raise EngineConfigError(
                    f"stage {stage.name!r} depends on unknown stage {dependency!r}"
                )
    _reject_cycles(by_name)
    for stage in ordered:
        for dependency in stage.depends_on:
            if by_name[dependency].order >= stage.order:
                raise EngineConfigError(
                    "stage dependencies must point to earlier stages: "
                    f"{stage.name!r} -> {dependency!r}"
                )

    known_adapters = None if adapter_ids is None else frozenset(adapter_ids)
    available = set(seed_keys)
    for stage in ordered:
        for call in stage.calls:
            if known_adapters is not None and call.adapter_id not in known_adapters:
                raise EngineConfigError(
                    f"stage {stage.name!r} references unregistered adapter {call.adapter_id!r}"
                )
            missing = sorted(key for key in call.consumes if key not in available)
            if missing:
                raise EngineConfigError(
                    f"stage {stage.name!r}: {call.adapter_id!r} consumes {missing} "
                    "which no earlier stage produces"
                )
        for call in stage.calls:
            available.update(call.produces)
    return ordered


def _reject_cycles(by_name: Mapping[str, StageDefinition]) -> None:
    visiting: set[str] = set()
    done: set[str] = set()

    def visit(name: str, path: tuple[str, ...]) -> None:
        if name in done:
            return
        if name in visiting:
            cycle = " -> ".join((*path[path.index(name) :], name))
            raise EngineConfigError(f"stage dependency cycle: {cycle}")
        visiting.add(name)
        for dependency in by_name[name].depends_on:
            visit(dependency, (*path, name))
        visiting.discard(name)
        done.add(name)

    for name in sorted(by_name):
        visit(name, ())


@dataclass(frozen=True, slots=True)
class StageOverride:
    """Per-stage settings from ``[stages.<name>]``."""

    timeout_seconds: float | None = None
    retry: RetryPolicy | None = None


IDEMPOTENT_RETRY: Final[RetryPolicy] = RetryPolicy(max_attempts=2)


def default_stage_catalog(
    *,
    project_key: str,
    target_host: str,
    severity_thresholds: str = "CRITICAL,HIGH,MEDIUM",
    default_timeout_seconds: float = DEFAULT_STAGE_TIMEOUT_SECONDS,
    overrides: Mapping[str, StageOverride] | None = None,
) -> tuple[StageDefinition, ...]:
    """
    The checkout -> build -> test report -> quality gate -> image -> scan -> push -> deploy
    pipeline. Build and scan are idempotent and retry once by default.
    """

    overrides = overrides or {}

    def stage(
        name: str,
        order: int,
        call: AdapterCall,
        *,
        gating: GatingPolicy = GatingPolicy.NONE,
        retry: RetryPolicy = NO_RETRY,
        depends_on: tuple[str, ...] = (),
    ) -> StageDefinition:
        override = overrides.get(name, StageOverride())
        return StageDefinition(
            name=name,
            order=order,
            calls=(call,),
            gating=gating,
            retry=override.retry if override.retry is not None else retry,
            timeout_seconds=(
                override.timeout_seconds
                if override.timeout_seconds is not None
                else default_timeout_seconds
            ),
            depends_on=depends_on,
        )

    return (
        stage(
            CHECKOUT_STAGE,
            0,
            AdapterCall(
                SOURCE_ADAPTER,
                consumes=("repo",),
                optional=("commit", "branch"),
                produces=("source_ref", "workspace_path"),
            ),
        ),
        stage(
            BUILD_STAGE,
            1,
            AdapterCall(
                BUILD_ADAPTER,
                consumes=("source_ref", "workspace_path"),
                produces=("artifact_ref",),
            ),
            retry=IDEMPOTENT_RETRY,
            depends_on=(CHECKOUT_STAGE,),
        ),
        stage(
            TEST_REPORT_STAGE,
            2,
            AdapterCall(
                TEST_REPORT_ADAPTER,
                consumes=("artifact_ref", "workspace_path"),
                produces=("report_ref", "pass_count", "fail_count"),
            ),
            depends_on=(BUILD_STAGE,),
        ),
        stage(
            QUALITY_GATE_STAGE,
            3,
            AdapterCall(
                QUALITY_GATE_ADAPTER,
                consumes=("source_ref",),
                optional=("workspace_path",),
                params={"project_key": project_key},
            ),
            gating=GatingPolicy.QUALITY,
            depends_on=(CHECKOUT_STAGE,),
        ),
        stage(
            IMAGE_BUILD_STAGE,
            4,
            AdapterCall(
                IMAGE_BUILDER_ADAPTER,
                consumes=("artifact_ref", "workspace_path", "source_ref"),
                produces=("image_ref",),
            ),
            depends_on=(BUILD_STAGE,),
        ),
        stage(
            VULNERABILITY_SCAN_STAGE,
            5,
            AdapterCall(
                VULNERABILITY_SCANNER_ADAPTER,
                consumes=("image_ref",),
                params={"severity_thresholds": severity_thresholds},
            ),
            gating=GatingPolicy.SECURITY,
            retry=IDEMPOTENT_RETRY,
            depends_on=(IMAGE_BUILD_STAGE,),
        ),
        stage(
            REGISTRY_PUSH_STAGE,
            6,
            AdapterCall(
                REGISTRY_PUSH_ADAPTER,
                consumes=("image_ref",),
                produces=("pushed_ref",),
                credential=REGISTRY_CREDENTIAL,
            ),
            depends_on=(VULNERABILITY_SCAN_STAGE,),
        ),
        stage(
            DEPLOY_STAGE,
            7,
            AdapterCall(
                REMOTE_DEPLOY_ADAPTER,
                consumes=("image_ref", "pushed_ref"),
                produces=("health_check_passed",),
                params={"target_host": target_host},
                credential=DEPLOY_SSH_CREDENTIAL,
                expect={"health_check_passed": True},
            ),
            depends_on=(REGISTRY_PUSH_STAGE,),
        ),
    )


__all__ = [
    "IDEMPOTENT_RETRY",
    "NO_RETRY",
    "TRIGGER_CONTEXT_KEYS",
    "AdapterCall",
    "RetryPolicy",
    "StageDefinition",
    "StageOverride",
    "default_stage_catalog",
    "validate_stage_graph",
]
