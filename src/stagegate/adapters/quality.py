"""
stagegate — static-analysis quality gate adapter

File: src/stagegate/adapters/quality.py

Purpose
- Obtain a GateVerdict from a SonarQube-compatible analysis server.

Flow
1. Optionally run the scanner command; it leaves ``report-task.txt`` with the server-side
   analysis task id.
2. Poll ``/api/ce/task`` until the task is terminal or ``poll_timeout_seconds`` elapses.
3. Read ``/api/qualitygates/project_status`` (blocking flag), ``/api/measures/component``
   (coverage, new issues, rating), and ``/api/issues/search`` (critical bugs).

Poll exhaustion and transport errors are adapter failures; the gated stage then
blocks.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Final

import httpx

from stagegate.adapters.base import (
    AdapterContext,
    AdapterFailure,
    AdapterOutcome,
    AdapterRequest,
    AdapterSuccess,
    FailureKind,
    require_str,
)
from stagegate.adapters.command import (
    CommandExecutor,
    CommandSpec,
    failure_from_command,
    render_argv,
)
from stagegate.adapters.http import (
    ClientFactory,
    apply_auth,
    default_client_factory,
    failure_from_http_error,
)
from stagegate.constants import QUALITY_GATE_ADAPTER
from stagegate.domain.models import Finding, GateVerdict
from stagegate.utils.concurrency import Sleeper

REPORT_TASK_FILE: Final[str] = ".scannerwork/report-task.txt"
_TERMINAL_TASK_STATES: Final[frozenset[str]] = frozenset({"SUCCESS", "FAILED", "CANCELED"})
_RATING_LETTERS: Final[dict[int, str]] = {1: "A", 2: "B", 3: "C", 4: "D", 5: "E"}
_METRIC_KEYS: Final[str] = "new_violations,coverage,new_coverage,reliability_rating,sqale_rating"


class SonarQualityGateAdapter:
    """``{source_ref, project_key}`` -> GateVerdict{new_issues, coverage, critical_bugs, rating}."""

    adapter_id = QUALITY_GATE_ADAPTER

    def __init__(
        self,
        *,
        base_url: str,
        credential: str | None = None,
        executor: CommandExecutor | None = None,
        scanner_command: Sequence[str] = (),
        poll_interval_seconds: float = 5.0,
        poll_timeout_seconds: float = 300.0,
        request_timeout_seconds: float = 30.0,
        client_factory: ClientFactory = default_client_factory,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if scanner_command and executor is None:
            raise ValueError("scanner_command requires a command executor")
        if poll_interval_seconds <= 0 or poll_timeout_seconds <= 0:
            raise ValueError("poll interval and timeout must be > 0")
        self._base_url = base_url.rstrip("/")
        self._credential = credential
        self._executor = executor
        self._scanner_command = tuple(scanner_command)
        self._poll_interval = poll_interval_seconds
        self._poll_timeout = poll_timeout_seconds
        self._request_timeout = request_timeout_seconds
        self._client_factory = client_factory
        self._sleep = sleep

    async def invoke(self, request: AdapterRequest, context: AdapterContext) -> AdapterOutcome:
        source_ref = require_str(request, "source_ref", self.adapter_id)
        project_key = require_str(request, "project_key", self.adapter_id)

        task_id = request.get("analysis_task_id")
        if self._scanner_command:
            scanned = await self._run_scanner(request, context, source_ref, project_key)
            if isinstance(scanned, AdapterFailure):
                return scanned
            task_id = scanned

        headers: dict[str, str] = {}
        credential = context.credential(self._credential) if self._credential else None
        auth = apply_auth(headers, credential)
        async with self._client_factory(self._request_timeout) as client:
            client.headers.update(headers)
            if auth is not None:
                client.auth = auth
            try:
                analysis_id: str | None = None
                if isinstance(task_id, str) and task_id:
                    polled = await self._wait_for_task(client, task_id, context)
                    if isinstance(polled, AdapterFailure):
                        return polled
                    analysis_id = polled
                return await self._read_verdict(client, project_key, analysis_id)
            except httpx.HTTPError as exc:
                return failure_from_http_error(exc, target=self._base_url)
            except (KeyError, TypeError, ValueError) as exc:
                return AdapterFailure(
                    kind=FailureKind.INVALID_RESPONSE,
                    message=f"unexpected analysis server payload: {type(exc).__name__}: {exc}",
                )

    async def _run_scanner(
        self,
        request: AdapterRequest,
        context: AdapterContext,
        source_ref: str,
        project_key: str,
    ) -> str | AdapterFailure:
        if self._executor is None:
            return AdapterFailure(
                kind=FailureKind.CONFIGURATION, message="scanner_command needs a command executor"
            )
        workspace = request.get("workspace_path")
        if not isinstance(workspace, str):
            return AdapterFailure(
                kind=FailureKind.CONFIGURATION, message="scanner needs workspace_path"
            )
        values = {
            "source_ref": source_ref,
            "project_key": project_key,
            "workspace": workspace,
            "base_url": self._base_url,
        }
        env: dict[str, str] = {"SONAR_HOST_URL": self._base_url}
        if self._credential:
            env["SONAR_TOKEN"] = context.credential(self._credential).secret
        argv = render_argv(self._scanner_command, values, adapter_id=self.adapter_id)
        result = await self._executor.run(CommandSpec(argv=argv, cwd=workspace, env=env))
        if not result.ok:
            return failure_from_command(result)
        report = Path(workspace) / REPORT_TASK_FILE
        try:
            properties = parse_report_task(report.read_text(encoding="utf-8"))
        except OSError as exc:
            return AdapterFailure(
                kind=FailureKind.INVALID_RESPONSE, message=f"scanner left no task report: {exc}"
            )
        task_id = properties.get("ceTaskId")
        if not task_id:
            return AdapterFailure(
                kind=FailureKind.INVALID_RESPONSE, message="task report lacks ceTaskId"
            )
        return task_id

    async def _wait_for_task(
        self, client: httpx.AsyncClient, task_id: str, context: AdapterContext
    ) -> str | AdapterFailure:
        deadline = time.monotonic() + self._poll_timeout
        while True:
            response = await client.get(f"{self._base_url}/api/ce/task", params={"id": task_id})
            response.raise_for_status()
            task = response.json()["task"]
            status = str(task["status"])
            if status in _TERMINAL_TASK_STATES:
                if status != "SUCCESS":
                    return AdapterFailure(
                        kind=FailureKind.TOOL_ERROR,
                        code=f"analysis_{status.lower()}",
                        message=str(task.get("errorMessage") or f"analysis task {status}"),
                        retryable=False,
                    )
                return str(task["analysisId"])
            if time.monotonic() >= deadline:
                return AdapterFailure(
                    kind=FailureKind.TIMEOUT,
                    message=f"analysis task {task_id} still {status} after {self._poll_timeout}s",
                )
            context.logger.debug("quality_task_pending", task_id=task_id, status=status)
            await self._sleep(self._poll_interval)

    async def _read_verdict(
        self, client: httpx.AsyncClient, project_key: str, analysis_id: str | None
    ) -> AdapterOutcome:
        status_params = {"analysisId": analysis_id} if analysis_id else {"projectKey": project_key}
        gate_response = await client.get(
            f"{self._base_url}/api/qualitygates/project_status", params=status_params
        )
        gate_response.raise_for_status()
        project_status = gate_response.json()["projectStatus"]

        measures_response = await client.get(
            f"{self._base_url}/api/measures/component",
            params={"component": project_key, "metricKeys": _METRIC_KEYS},
        )
        measures_response.raise_for_status()
        measures = _measures_by_metric(measures_response.json()["component"]["measures"])

        issues_response = await client.get(
            f"{self._base_url}/api/issues/search",
            params={
                "componentKeys": project_key,
                "types": "BUG",
                "severities": "BLOCKER,CRITICAL",
                "resolved": "false",
                "ps": "1",
            },
        )
        issues_response.raise_for_status()
        critical_bugs = int(issues_response.json()["total"])

        findings: dict[str, Finding] = {"critical_bugs": critical_bugs}
        if "new_violations" in measures:
            findings["new_issues"] = int(float(measures["new_violations"]))
        coverage = measures.get("coverage", measures.get("new_coverage"))
        if coverage is not None:
            findings["coverage"] = float(coverage)
        rating = measures.get("reliability_rating")
        if rating is not None:
            findings["rating"] = _RATING_LETTERS.get(int(float(rating)), "E")

        gate_status = str(project_status["status"])
        return AdapterSuccess(
            verdict=GateVerdict(
                blocking=gate_status == "ERROR",
                findings=findings,
                detail=f"server quality gate {gate_status}",
            ),
            diagnostics=_failed_conditions(project_status),
        )


def parse_report_task(text: str) -> dict[str, str]:
    properties: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        properties[key.strip()] = value.strip()
    return properties


def _measures_by_metric(measures: Sequence[Mapping[str, object]]) -> dict[str, str]:
    out: dict[str, str] = {}
    for measure in measures:
        metric = str(measure["metric"])
        value = measure.get("value")
        if value is None:
            period = measure.get("period")
            if isinstance(period, Mapping):
                value = period.get("value")
        if value is not None:
            out[metric] = str(value)
    return out


def _failed_conditions(project_status: Mapping[str, object]) -> str:
    conditions = project_status.get("conditions", [])
    if not isinstance(conditions, list):
        return ""
    lines = [
        f"{item.get('metricKey')}: {item.get('actualValue')} "
        f"(threshold {item.get('errorThreshold')})"
        for item in conditions
        if isinstance(item, Mapping) and item.get("status") == "ERROR"
    ]
    return "\n".join(lines)


__all__ = ["REPORT_TASK_FILE", "SonarQualityGateAdapter", "parse_report_task"]
