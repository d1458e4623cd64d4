"""Pipeline engine: stage model, per-stage executor, run driver, and config wiring."""

from stagegate.engine.bootstrap import build_engine
from stagegate.engine.engine import NOTIFY_STAGE_NAME, ConcurrencyPolicy, PipelineEngine
from stagegate.engine.executor import RunContext, StageExecutor
from stagegate.engine.stages import (
    AdapterCall,
    RetryPolicy,
    StageDefinition,
    StageOverride,
    default_stage_catalog,
    validate_stage_graph,
)

__all__ = [
    "NOTIFY_STAGE_NAME",
    "AdapterCall",
    "ConcurrencyPolicy",
    "PipelineEngine",
    "RetryPolicy",
    "RunContext",
    "StageDefinition",
    "StageExecutor",
    "StageOverride",
    "build_engine",
    "default_stage_catalog",
    "validate_stage_graph",
]
