"""Quality and security gate policies and their pure evaluator."""

from stagegate.gates.evaluator import evaluate_gate
from stagegate.gates.policy import (
    DEFAULT_QUALITY_POLICY,
    DEFAULT_SECURITY_POLICY,
    Comparator,
    Enforcement,
    GatePolicy,
    Threshold,
    default_policy_for,
    policy_from_config,
)

__all__ = [
    "DEFAULT_QUALITY_POLICY",
    "DEFAULT_SECURITY_POLICY",
    "Comparator",
    "Enforcement",
    "GatePolicy",
    "Threshold",
    "default_policy_for",
    "evaluate_gate",
    "policy_from_config",
]
