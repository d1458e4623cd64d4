"""JUnit XML test report collection."""

from __future__ import annotations

import asyncio
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path

from stagegate.adapters.base import (
    AdapterContext,
    AdapterFailure,
    AdapterOutcome,
    AdapterRequest,
    AdapterSuccess,
    FailureKind,
    require_str,
)
from stagegate.constants import TEST_REPORT_ADAPTER

DEFAULT_REPORT_GLOB = "**/TEST-*.xml"


@dataclass(frozen=True, slots=True)
class JUnitTotals:
    tests: int = 0
    failures: int = 0
    errors: int = 0
    skipped: int = 0

    @property
    def failed(self) -> int:
        return self.failures + self.errors

    @property
    def passed(self) -> int:
        return max(0, self.tests - self.failed - self.skipped)

    def __add__(self, other: JUnitTotals) -> JUnitTotals:
        return JUnitTotals(
            tests=self.tests + other.tests,
            failures=self.failures + other.failures,
            errors=self.errors + other.errors,
            skipped=self.skipped + other.skipped,
        )


def parse_junit_xml(text: str) -> JUnitTotals:
    """
    Sum counts across ``<testsuite>`` elements, whether the root is a single suite or a
    ``<testsuites>`` wrapper. Raises ``ValueError`` for non-JUnit documents.
    """

    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise ValueError(f"malformed XML: {exc}") from exc

    if root.tag == "testsuite":
        suites = [root]
    elif root.tag == "testsuites":
        suites = root.findall("testsuite")
    else:
        raise ValueError(f"unexpected root element <{root.tag}>")

    totals = JUnitTotals()
    for suite in suites:
        totals = totals + JUnitTotals(
            tests=_int_attr(suite, "tests"),
            failures=_int_attr(suite, "failures"),
            errors=_int_attr(suite, "errors"),
            skipped=_int_attr(suite, "skipped"),
        )
    return totals


def _int_attr(element: ET.Element, name: str) -> int:
    raw = element.get(name, "0") or "0"
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"<{element.tag}> attribute {name}={raw!r} is not an integer") from exc


class JUnitReportAdapter:
    """
    ``{artifact_ref, workspace_path}`` -> ``{report_ref, pass_count, fail_count}``.

    A report with failures or errors fails the stage; a missing or unparseable report
    is an invalid response.
    """

    adapter_id = TEST_REPORT_ADAPTER

    def __init__(self, *, report_glob: str = DEFAULT_REPORT_GLOB) -> None:
        self._report_glob = report_glob

    async def invoke(self, request: AdapterRequest, context: AdapterContext) -> AdapterOutcome:
        require_str(request, "artifact_ref", self.adapter_id)
        workspace = Path(require_str(request, "workspace_path", self.adapter_id))
        return await asyncio.to_thread(self._collect, workspace)

    def _collect(self, workspace: Path) -> AdapterOutcome:
        reports = sorted(workspace.glob(self._report_glob))
        if not reports:
            return AdapterFailure(
                kind=FailureKind.INVALID_RESPONSE,
                message=f"no test reports matched {self._report_glob!r}",
            )

        totals = JUnitTotals()
        for report in reports:
            try:
                totals = totals + parse_junit_xml(report.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                return AdapterFailure(
                    kind=FailureKind.INVALID_RESPONSE,
                    message=f"{report.name}: {exc}",
                )

        report_ref = str(reports[0].parent if len(reports) > 1 else reports[0])
        summary = (
            f"{len(reports)} report(s): {totals.tests} tests, {totals.passed} passed, "
            f"{totals.failed} failed, {totals.skipped} skipped"
        )
        if totals.failed:
            return AdapterFailure(
                kind=FailureKind.TOOL_ERROR,
                code="test_failures",
                message=f"{totals.failed} test(s) failed",
                retryable=False,
                diagnostics=summary,
            )
        return AdapterSuccess(
            outputs={
                "report_ref": report_ref,
                "pass_count": totals.passed,
                "fail_count": totals.failed,
            },
            diagnostics=summary,
        )


__all__ = ["DEFAULT_REPORT_GLOB", "JUnitReportAdapter", "JUnitTotals", "parse_junit_xml"]
