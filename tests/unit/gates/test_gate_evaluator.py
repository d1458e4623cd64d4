"""Unit tests for the pure gate decision function."""

from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st

from stagegate.domain.models import GateOutcome, GateVerdict
from stagegate.gates.evaluator import TOOL_BLOCKING_REASON, evaluate_gate
from stagegate.gates.policy import (
    DEFAULT_QUALITY_POLICY,
    DEFAULT_SECURITY_POLICY,
    Comparator,
    Enforcement,
    GatePolicy,
    Threshold,
)


def _security(**findings: object) -> GateVerdict:
    base = {"critical_cves": 0, "high_cves": 0, "secrets": 0, "malware": 0}
    base.update(findings)
    return GateVerdict(blocking=False, findings=base)  # type: ignore[arg-type]


def test_clean_verdict_passes() -> None:
    decision = evaluate_gate(_security(), DEFAULT_SECURITY_POLICY)

    assert decision.outcome is GateOutcome.PASS
    assert decision.violations == ()
    assert decision.reasons == ()


def test_all_violations_are_reported_in_policy_order() -> None:
    decision = evaluate_gate(_security(critical_cves=2, malware=1), DEFAULT_SECURITY_POLICY)

    assert decision.blocked
    assert [item.metric for item in decision.violations] == ["critical_cves", "malware"]
    assert decision.reasons[0] == "critical_cves=2 violates critical_cves == 0"
    assert decision.violations[0].actual == 2


def test_warn_threshold_never_blocks() -> None:
    verdict = GateVerdict(
        blocking=False, findings={"new_issues": 0, "coverage": 85.0, "critical_bugs": 0, "rating": "D"}
    )

    decision = evaluate_gate(verdict, DEFAULT_QUALITY_POLICY)

    assert decision.outcome is GateOutcome.PASS
    assert [item.metric for item in decision.warnings] == ["rating"]
    assert decision.summary() == "gate passed with 1 warning(s)"


def test_default_security_policy_blocks_above_two_high_cves() -> None:
    assert not evaluate_gate(_security(high_cves=2), DEFAULT_SECURITY_POLICY).blocked

    decision = evaluate_gate(_security(high_cves=3), DEFAULT_SECURITY_POLICY)

    assert decision.blocked
    assert decision.reasons == ("high_cves=3 violates high_cves <= 2",)


def test_missing_verdict_blocks() -> None:
    decision = evaluate_gate(None, DEFAULT_QUALITY_POLICY)

    assert decision.blocked
    assert decision.reasons == ("quality verdict unavailable",)


def test_unavailable_verdict_blocks_with_detail() -> None:
    decision = evaluate_gate(GateVerdict.unavailable("timeout: deadline exceeded"), DEFAULT_SECURITY_POLICY)

    assert decision.blocked
    assert decision.reasons == ("security verdict unavailable: timeout: deadline exceeded",)


def test_missing_blocking_metric_blocks() -> None:
    verdict = GateVerdict(blocking=False, findings={"new_issues": 0, "critical_bugs": 0, "rating": "A"})

    decision = evaluate_gate(verdict, DEFAULT_QUALITY_POLICY)

    assert decision.blocked
    assert decision.violations[0].metric == "coverage"
    assert decision.violations[0].actual is None
    assert "coverage missing from verdict" in decision.reasons[0]


def test_incomparable_types_are_a_violation() -> None:
    policy = GatePolicy(name="quality", thresholds=(Threshold("coverage", Comparator.GE, 80.0),))
    verdict = GateVerdict(blocking=False, findings={"coverage": "high"})

    decision = evaluate_gate(verdict, policy)

    assert decision.blocked
    assert "is not comparable" in decision.reasons[0]


def test_string_rating_threshold() -> None:
    policy = GatePolicy(name="quality", thresholds=(Threshold("rating", Comparator.LE, "B"),))

    assert not evaluate_gate(GateVerdict(blocking=False, findings={"rating": "A"}), policy).blocked
    assert evaluate_gate(GateVerdict(blocking=False, findings={"rating": "D"}), policy).blocked


def test_tool_blocking_flag_is_honored() -> None:
    verdict = GateVerdict(
        blocking=True,
        findings={"new_issues": 0, "coverage": 90.0, "critical_bugs": 0, "rating": "A"},
        detail="quality gate status ERROR",
    )

    decision = evaluate_gate(verdict, DEFAULT_QUALITY_POLICY)

    assert decision.blocked
    assert decision.violations == ()
    assert decision.reasons == (f"{TOOL_BLOCKING_REASON}: quality gate status ERROR",)


def test_tool_blocking_flag_ignored_when_policy_opts_out() -> None:
    policy = GatePolicy(
        name="quality",
        thresholds=DEFAULT_QUALITY_POLICY.thresholds,
        honor_tool_blocking=False,
    )
    verdict = GateVerdict(
        blocking=True, findings={"new_issues": 0, "coverage": 90.0, "critical_bugs": 0, "rating": "A"}
    )

    assert evaluate_gate(verdict, policy).outcome is GateOutcome.PASS


_METRICS = ("alpha", "beta", "gamma", "delta")


@settings(max_examples=200, deadline=None)
@given(
    limits=st.lists(st.integers(min_value=0, max_value=10), min_size=4, max_size=4),
    actuals=st.lists(st.integers(min_value=0, max_value=10), min_size=4, max_size=4),
    enforcement=st.lists(st.sampled_from(list(Enforcement)), min_size=4, max_size=4),
)
def test_gate_passes_iff_every_blocking_threshold_holds(
    limits: list[int], actuals: list[int], enforcement: list[Enforcement]
) -> None:
    policy = GatePolicy(
        name="property",
        thresholds=tuple(
            Threshold(metric, Comparator.LE, limit, mode)
            for metric, limit, mode in zip(_METRICS, limits, enforcement, strict=True)
        ),
    )
    verdict = GateVerdict(blocking=False, findings=dict(zip(_METRICS, actuals, strict=True)))

    decision = evaluate_gate(verdict, policy)

    expected_block = any(
        actual > limit and mode is Enforcement.BLOCK
        for actual, limit, mode in zip(actuals, limits, enforcement, strict=True)
    )
    assert decision.blocked is expected_block
    assert len(decision.violations) + len(decision.warnings) == sum(
        1 for actual, limit in zip(actuals, limits, strict=True) if actual > limit
    )
