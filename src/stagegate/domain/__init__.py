"""
stagegate — domain layer

File: src/stagegate/domain/__init__.py

Purpose
- Value types shared by the engine, adapters, gates, and persistence: Run, StageResult,
  GateVerdict, GateDecision, TriggerCause, identifiers.

Import boundary rules
- No IO side effects; stdlib only.
"""

from stagegate.domain.ids import generate_event_id, generate_run_id, validate_run_id
from stagegate.domain.models import (
    AttemptRecord,
    GateDecision,
    GateOutcome,
    GateVerdict,
    GatingPolicy,
    Run,
    RunStatus,
    StageResult,
    StageStatus,
    ThresholdViolation,
    TriggerCause,
    TriggerKind,
)

__all__ = [
    "AttemptRecord",
    "GateDecision",
    "GateOutcome",
    "GateVerdict",
    "GatingPolicy",
    "Run",
    "RunStatus",
    "StageResult",
    "StageStatus",
    "ThresholdViolation",
    "TriggerCause",
    "TriggerKind",
    "generate_event_id",
    "generate_run_id",
    "validate_run_id",
]
