"""
stagegate — error taxonomy.

File: src/stagegate/errors.py

Purpose
- Typed exceptions shared by adapters, the stage executor, and the pipeline engine.

Propagation
- ``AdapterTransientError`` is absorbed by the executor's retry loop.
- ``AdapterPermanentError`` fails a stage immediately.
- ``GateBlocked`` is an expected terminal outcome, not a tool failure.
- ``EngineConfigError`` is raised while loading the stage graph, before any run starts.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stagegate.domain.models import GateDecision


class StagegateError(Exception):
    """Base class for all stagegate errors."""


class AdapterError(StagegateError):
    """Normalized adapter failure raised inside the executor."""

    retryable: bool = False

    def __init__(self, adapter_id: str, kind: str, message: str) -> None:
        self.adapter_id = adapter_id
        self.kind = kind
        self.message = message
        super().__init__(f"{adapter_id}: {kind}: {message}")


class AdapterTransientError(AdapterError):
    """Network/timeout style failure; retried per stage policy."""

    retryable = True


class AdapterPermanentError(AdapterError):
    """Invalid credential/config or a non-retryable tool error."""

    retryable = False


class GateBlocked(StagegateError):
    """A quality or security gate rejected the verdict."""

    def __init__(
        self, stage_name: str, reasons: Sequence[str], decision: GateDecision | None = None
    ) -> None:
        self.stage_name = stage_name
        self.reasons = tuple(reasons)
        self.decision = decision
        rendered = "; ".join(self.reasons) if self.reasons else "gate blocked"
        super().__init__(f"{stage_name}: {rendered}")


class CredentialError(StagegateError):
    """A credential reference could not be resolved to a usable secret."""

    def __init__(self, name: str, message: str) -> None:
        self.name = name
        super().__init__(f"credential {name!r}: {message}")


class EngineConfigError(StagegateError, ValueError):
    """Malformed stage graph or adapter wiring detected at load time."""


class TriggerPayloadError(StagegateError, ValueError):
    """A webhook or poll payload could not be mapped to a trigger cause."""


class RunConflictError(StagegateError):
    """A run for the same pipeline identity is already active (HTTP 409 equivalent)."""

    def __init__(self, pipeline_id: str, active_run_id: str) -> None:
        self.pipeline_id = pipeline_id
        self.active_run_id = active_run_id
        super().__init__(
            f"pipeline {pipeline_id!r} already has an active run {active_run_id!r}"
        )


class UnknownRunError(StagegateError, KeyError):
    """Requested run id is not known to the engine."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(run_id)

    def __str__(self) -> str:
        return f"unknown run id: {self.run_id!r}"


__all__ = [
    "AdapterError",
    "AdapterPermanentError",
    "AdapterTransientError",
    "CredentialError",
    "EngineConfigError",
    "GateBlocked",
    "RunConflictError",
    "StagegateError",
    "TriggerPayloadError",
    "UnknownRunError",
]
