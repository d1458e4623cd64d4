"""
stagegate — gate evaluator.

File: src/stagegate/gates/evaluator.py

Purpose
- Pure decision function mapping a tool verdict and a policy to pass/block.

Semantics
- Every threshold is evaluated; the gate passes only when all blocking thresholds hold.
- All violations are reported together, in policy declaration order.
- Missing verdicts and missing blocking metrics block (fail-closed).
- A verdict flagged ``blocking`` by the tool blocks even if every threshold holds.
- Warn-enforced thresholds never block; they surface as ``warnings``.
"""

from __future__ import annotations

from stagegate.domain.models import (
    Finding,
    GateDecision,
    GateOutcome,
    GateVerdict,
    ThresholdViolation,
    clip_reason,
)
from stagegate.gates.policy import Enforcement, GatePolicy, Threshold

TOOL_BLOCKING_REASON = "tool reported a blocking verdict"


def evaluate_gate(verdict: GateVerdict | None, policy: GatePolicy) -> GateDecision:
    if verdict is None:
        return GateDecision(
            outcome=GateOutcome.BLOCK,
            reasons=(f"{policy.name} verdict unavailable",),
        )
    if not verdict.available:
        detail = clip_reason(verdict.detail) if verdict.detail else "no detail"
        return GateDecision(
            outcome=GateOutcome.BLOCK,
            reasons=(f"{policy.name} verdict unavailable: {detail}",),
        )

    violations: list[ThresholdViolation] = []
    warnings: list[ThresholdViolation] = []
    for threshold in policy.thresholds:
        violation = _check(threshold, verdict.findings.get(threshold.metric))
        if violation is None:
            continue
        if threshold.enforcement is Enforcement.BLOCK:
            violations.append(violation)
        else:
            warnings.append(violation)

    reasons = [item.message for item in violations]
    if verdict.blocking and policy.honor_tool_blocking:
        if verdict.detail:
            reasons.append(f"{TOOL_BLOCKING_REASON}: {clip_reason(verdict.detail)}")
        else:
            reasons.append(TOOL_BLOCKING_REASON)

    outcome = GateOutcome.BLOCK if reasons else GateOutcome.PASS
    return GateDecision(
        outcome=outcome,
        violations=tuple(violations),
        warnings=tuple(warnings),
        reasons=tuple(reasons),
    )


def _check(threshold: Threshold, actual: Finding | None) -> ThresholdViolation | None:
    if actual is None:
        message = f"{threshold.metric} missing from verdict (requires {threshold.describe()})"
        return _violation(threshold, None, message)
    if not _comparable(actual, threshold.limit):
        return _violation(
            threshold,
            actual,
            f"{threshold.metric}={actual!r} is not comparable with {threshold.describe()}",
        )
    if threshold.comparator.apply(actual, threshold.limit):
        return None
    message = f"{threshold.metric}={actual} violates {threshold.describe()}"
    return _violation(threshold, actual, message)


def _comparable(actual: Finding, limit: Finding) -> bool:
    numeric = (int, float)
    if isinstance(actual, numeric) and isinstance(limit, numeric):
        return True
    return isinstance(actual, str) and isinstance(limit, str)


def _violation(threshold: Threshold, actual: Finding | None, message: str) -> ThresholdViolation:
    return ThresholdViolation(
        metric=threshold.metric,
        comparator=threshold.comparator.value,
        limit=threshold.limit,
        actual=actual,
        enforcement=threshold.enforcement.value,
        message=message,
    )


__all__ = ["TOOL_BLOCKING_REASON", "evaluate_gate"]
