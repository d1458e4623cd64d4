"""Gate policies: named sets of metric thresholds with block/warn enforcement."""

from __future__ import annotations

import operator
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Final, NoReturn

from stagegate.domain.models import Finding, GatingPolicy


class Comparator(StrEnum):
    LE = "<="
    LT = "<"
    GE = ">="
    GT = ">"
    EQ = "=="
    NE = "!="

    def apply(self, actual: Finding, limit: Finding) -> bool:
        return _OPERATORS[self](actual, limit)


_OPERATORS: Final[dict[Comparator, Callable[[object, object], bool]]] = {
    Comparator.LE: operator.le,
    Comparator.LT: operator.lt,
    Comparator.GE: operator.ge,
    Comparator.GT: operator.gt,
    Comparator.EQ: operator.eq,
    Comparator.NE: operator.ne,
}


class Enforcement(StrEnum):
    BLOCK = "block"
    WARN = "warn"


_EXPRESSION_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*(<=|>=|==|!=|<|>)\s*(\S+)\s*$")


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _coerce_limit(raw: object, path: str) -> Finding:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return raw
    if isinstance(raw, str) and raw.strip():
        text = raw.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            return text
    _fail(path, f"expected number or non-empty string, got {type(raw).__name__}")


@dataclass(frozen=True, slots=True)
class Threshold:
    metric: str
    comparator: Comparator
    limit: Finding
    enforcement: Enforcement = Enforcement.BLOCK

    def __post_init__(self) -> None:
        if not isinstance(self.metric, str) or not self.metric.strip():
            _fail("Threshold.metric", "must be a non-empty string")
        object.__setattr__(self, "comparator", Comparator(self.comparator))
        object.__setattr__(self, "enforcement", Enforcement(self.enforcement))
        object.__setattr__(self, "limit", _coerce_limit(self.limit, "Threshold.limit"))

    def describe(self) -> str:
        return f"{self.metric} {self.comparator.value} {self.limit}"

    @classmethod
    def parse(cls, expression: str, *, enforcement: Enforcement = Enforcement.BLOCK) -> Threshold:
        """Parse ``"<metric> <comparator> <limit>"``, e.g. ``"critical_cves == 0"``."""

        match = _EXPRESSION_RE.match(expression)
        if match is None:
            _fail("Threshold", f"cannot parse threshold expression {expression!r}")
        metric, comparator, limit = match.groups()
        return cls(
            metric=metric,
            comparator=Comparator(comparator),
            limit=limit,
            enforcement=enforcement,
        )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object], path: str = "threshold") -> Threshold:
        metric = payload.get("metric")
        comparator = payload.get("comparator", payload.get("op"))
        if not isinstance(metric, str):
            _fail(f"{path}.metric", "must be a string")
        if not isinstance(comparator, str):
            _fail(f"{path}.comparator", "must be a string")
        try:
            parsed_comparator = Comparator(comparator)
        except ValueError:
            allowed = ", ".join(item.value for item in Comparator)
            _fail(f"{path}.comparator", f"invalid value {comparator!r}; expected one of: {allowed}")
        enforcement_raw = payload.get("enforcement", Enforcement.BLOCK.value)
        try:
            enforcement = Enforcement(enforcement_raw)
        except ValueError:
            _fail(
                f"{path}.enforcement",
                f"invalid value {enforcement_raw!r}; expected block or warn",
            )
        return cls(
            metric=metric,
            comparator=parsed_comparator,
            limit=_coerce_limit(payload.get("limit"), f"{path}.limit"),
            enforcement=enforcement,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "comparator": self.comparator.value,
            "enforcement": self.enforcement.value,
            "limit": self.limit,
            "metric": self.metric,
        }


@dataclass(frozen=True, slots=True)
class GatePolicy:
    """
    Thresholds a verdict must satisfy.

    ``honor_tool_blocking`` keeps the tool's own blocking flag authoritative; a verdict
    flagged blocking by the tool blocks even when every threshold passes.
    """

    name: str
    thresholds: tuple[Threshold, ...] = ()
    honor_tool_blocking: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "thresholds", tuple(self.thresholds))
        seen: set[tuple[str, Comparator]] = set()
        for threshold in self.thresholds:
            key = (threshold.metric, threshold.comparator)
            if key in seen:
                _fail(f"GatePolicy[{self.name}]", f"duplicate threshold {threshold.describe()!r}")
            seen.add(key)

    @property
    def blocking_metrics(self) -> frozenset[str]:
        return frozenset(
            item.metric for item in self.thresholds if item.enforcement is Enforcement.BLOCK
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "honor_tool_blocking": self.honor_tool_blocking,
            "name": self.name,
            "thresholds": [item.to_dict() for item in self.thresholds],
        }


DEFAULT_QUALITY_POLICY: Final[GatePolicy] = GatePolicy(
    name=GatingPolicy.QUALITY.value,
    thresholds=(
        Threshold("new_issues", Comparator.EQ, 0),
        Threshold("coverage", Comparator.GE, 80.0),
        Threshold("critical_bugs", Comparator.EQ, 0),
        Threshold("rating", Comparator.LE, "B", Enforcement.WARN),
    ),
)

DEFAULT_SECURITY_POLICY: Final[GatePolicy] = GatePolicy(
    name=GatingPolicy.SECURITY.value,
    thresholds=(
        Threshold("critical_cves", Comparator.EQ, 0),
        Threshold("secrets", Comparator.EQ, 0),
        Threshold("malware", Comparator.EQ, 0),
        Threshold("high_cves", Comparator.LE, 2),
    ),
)


def default_policy_for(gating: GatingPolicy) -> GatePolicy | None:
    if gating is GatingPolicy.QUALITY:
        return DEFAULT_QUALITY_POLICY
    if gating is GatingPolicy.SECURITY:
        return DEFAULT_SECURITY_POLICY
    return None


def policy_from_config(name: str, section: Mapping[str, object]) -> GatePolicy:
    """
    Build a policy from a ``[gates.<name>]`` table.

    ``thresholds`` entries may be tables (``metric``/``comparator``/``limit``/``enforcement``)
    or expression strings; ``warn`` lists expression strings with warn enforcement.
    """

    path = f"gates.{name}"
    parsed: list[Threshold] = []
    raw_thresholds = section.get("thresholds", [])
    raw_warnings = section.get("warn", [])
    if not isinstance(raw_thresholds, Sequence) or isinstance(raw_thresholds, str):
        _fail(f"{path}.thresholds", "must be an array")
    if not isinstance(raw_warnings, Sequence) or isinstance(raw_warnings, str):
        _fail(f"{path}.warn", "must be an array")

    for index, item in enumerate(raw_thresholds):
        item_path = f"{path}.thresholds[{index}]"
        if isinstance(item, str):
            parsed.append(Threshold.parse(item))
        elif isinstance(item, Mapping):
            parsed.append(Threshold.from_mapping(item, item_path))
        else:
            _fail(item_path, "must be a table or expression string")
    for index, item in enumerate(raw_warnings):
        if not isinstance(item, str):
            _fail(f"{path}.warn[{index}]", "must be an expression string")
        parsed.append(Threshold.parse(item, enforcement=Enforcement.WARN))

    honor = section.get("honor_tool_blocking", True)
    if not isinstance(honor, bool):
        _fail(f"{path}.honor_tool_blocking", "must be a boolean")
    return GatePolicy(name=name, thresholds=tuple(parsed), honor_tool_blocking=honor)


__all__ = [
    "DEFAULT_QUALITY_POLICY",
    "DEFAULT_SECURITY_POLICY",
    "Comparator",
    "Enforcement",
    "GatePolicy",
    "Threshold",
    "default_policy_for",
    "policy_from_config",
]
