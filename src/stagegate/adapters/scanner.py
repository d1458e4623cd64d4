"""Vulnerability scanning with a trivy-compatible CLI and JSON report."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence

from stagegate.adapters.base import (
    AdapterContext,
    AdapterFailure,
    AdapterOutcome,
    AdapterRequest,
    AdapterSuccess,
    FailureKind,
    require_str,
)
from stagegate.adapters.command import CommandExecutor, CommandSpec, failure_from_command
from stagegate.constants import VULNERABILITY_SCANNER_ADAPTER
from stagegate.domain.models import GateVerdict


def summarize_trivy_report(report: Mapping[str, object]) -> dict[str, int]:
    """
    Count findings in a ``trivy image --format json`` report.

    ``malware`` counts entries of a ``Malware`` section when the scanner emits one.
    Absent sections count zero.
    """

    counts = {"critical_cves": 0, "high_cves": 0, "medium_cves": 0, "secrets": 0, "malware": 0}
    results = report.get("Results") or []
    if not isinstance(results, list):
        raise ValueError("Results must be a list")
    for result in results:
        if not isinstance(result, Mapping):
            raise ValueError("each result must be an object")
        for vuln in result.get("Vulnerabilities") or []:
            severity = str(vuln.get("Severity", "")).upper()
            if severity == "CRITICAL":
                counts["critical_cves"] += 1
            elif severity == "HIGH":
                counts["high_cves"] += 1
            elif severity == "MEDIUM":
                counts["medium_cves"] += 1
        counts["secrets"] += len(result.get("Secrets") or [])
        counts["malware"] += len(result.get("Malware") or [])
    return counts


class TrivyScannerAdapter:
    """``{image_ref, severity_thresholds}`` -> verdict with CVE, secret and malware counts."""

    adapter_id = VULNERABILITY_SCANNER_ADAPTER

    def __init__(
        self,
        executor: CommandExecutor,
        *,
        trivy_binary: str = "trivy",
        scanners: Sequence[str] = ("vuln", "secret"),
        ignore_unfixed: bool = False,
        retryable_exit_codes: Sequence[int] = (),
    ) -> None:
        self._executor = executor
        self._trivy = trivy_binary
        self._scanners = tuple(scanners)
        self._ignore_unfixed = ignore_unfixed
        self._retryable_exit_codes = tuple(retryable_exit_codes)

    async def invoke(self, request: AdapterRequest, context: AdapterContext) -> AdapterOutcome:
        image_ref = require_str(request, "image_ref", self.adapter_id)
        severities = request.get("severity_thresholds", "CRITICAL,HIGH,MEDIUM")
        argv = [
            self._trivy,
            "image",
            "--quiet",
            "--format",
            "json",
            "--scanners",
            ",".join(self._scanners),
            "--severity",
            str(severities),
        ]
        if self._ignore_unfixed:
            argv.append("--ignore-unfixed")
        argv.append(image_ref)

        result = await self._executor.run(CommandSpec(argv=tuple(argv)))
        if not result.ok:
            return failure_from_command(result, retryable_exit_codes=self._retryable_exit_codes)
        try:
            report = json.loads(result.stdout)
            if not isinstance(report, Mapping):
                raise ValueError("report root must be an object")
            counts = summarize_trivy_report(report)
        except (json.JSONDecodeError, ValueError, AttributeError) as exc:
            return AdapterFailure(
                kind=FailureKind.INVALID_RESPONSE,
                message=f"unreadable scanner report: {exc}",
                diagnostics=result.stderr,
            )
        detail = ", ".join(f"{key}={value}" for key, value in sorted(counts.items()))
        return AdapterSuccess(
            verdict=GateVerdict(blocking=False, findings=counts, detail=detail),
            diagnostics=result.stderr,
        )


__all__ = ["TrivyScannerAdapter", "summarize_trivy_report"]
