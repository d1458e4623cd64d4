"""Unit tests for HTTP-speaking adapters using ``httpx.MockTransport``."""

from __future__ import annotations

import hashlib
import hmac
import json
from pathlib import Path

import httpx
import pytest

from stagegate.adapters.base import AdapterFailure, AdapterSuccess, FailureKind
from stagegate.adapters.deploy import SshDeployAdapter
from stagegate.adapters.http import apply_auth, failure_from_http_error, transport_client_factory
from stagegate.adapters.notify import SIGNATURE_HEADER, LogNotifier, WebhookNotifier
from stagegate.adapters.quality import REPORT_TASK_FILE, SonarQualityGateAdapter, parse_report_task
from stagegate.security.credentials import CredentialKind, ResolvedCredential, StaticCredentialResolver
from tests.support import FakeExecutor, adapter_context, command_result, no_sleep, static_credentials

SONAR = "https://sonar.example.com"


def _sonar_credentials() -> StaticCredentialResolver:
    return StaticCredentialResolver(
        {
            "quality_token": ResolvedCredential(
                name="quality_token", kind=CredentialKind.TOKEN, secret="squ_" + "x" * 36
            ),
            "hook_key": ResolvedCredential(name="hook_key", kind=CredentialKind.TOKEN, secret="hmac-key-1"),
        }
    )


class SonarStub:
    """Minimal analysis-server double; records every request."""

    def __init__(self, *, gate_status: str = "OK", task_states: tuple[str, ...] = ("SUCCESS",)) -> None:
        self.gate_status = gate_status
        self.task_states = list(task_states)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/api/ce/task":
            status = self.task_states.pop(0) if len(self.task_states) > 1 else self.task_states[0]
            return httpx.Response(200, json={"task": {"status": status, "analysisId": "AX-1"}})
        if path == "/api/qualitygates/project_status":
            return httpx.Response(
                200,
                json={
                    "projectStatus": {
                        "status": self.gate_status,
                        "conditions": [
                            {"status": "ERROR", "metricKey": "coverage", "actualValue": "61.0", "errorThreshold": "80"}
                        ]
                        if self.gate_status == "ERROR"
                        else [],
                    }
                },
            )
        if path == "/api/measures/component":
            return httpx.Response(
                200,
                json={
                    "component": {
                        "measures": [
                            {"metric": "new_violations", "period": {"value": "0"}},
                            {"metric": "coverage", "value": "87.5"},
                            {"metric": "reliability_rating", "value": "1.0"},
                        ]
                    }
                },
            )
        if path == "/api/issues/search":
            return httpx.Response(200, json={"total": 0, "issues": []})
        return httpx.Response(404)


def _sonar(stub: SonarStub, **kwargs: object) -> SonarQualityGateAdapter:
    return SonarQualityGateAdapter(
        base_url=SONAR + "/",
        credential="quality_token",
        client_factory=transport_client_factory(httpx.MockTransport(stub)),
        sleep=no_sleep,
        **kwargs,  # type: ignore[arg-type]
    )


async def test_sonar_verdict_from_project_status_and_measures() -> None:
    stub = SonarStub()

    outcome = await _sonar(stub).invoke(
        {"source_ref": "abc", "project_key": "acme-app"},
        adapter_context("quality_gate", credentials=_sonar_credentials()),
    )

    assert isinstance(outcome, AdapterSuccess)
    assert outcome.verdict is not None
    assert dict(outcome.verdict.findings) == {
        "critical_bugs": 0,
        "new_issues": 0,
        "coverage": 87.5,
        "rating": "A",
    }
    assert outcome.verdict.blocking is False
    assert stub.requests[0].headers["Authorization"] == "Bearer squ_" + "x" * 36
    assert stub.requests[0].url.params["projectKey"] == "acme-app"


async def test_sonar_polls_task_until_terminal() -> None:
    stub = SonarStub(task_states=("PENDING", "IN_PROGRESS", "SUCCESS"))

    outcome = await _sonar(stub).invoke(
        {"source_ref": "abc", "project_key": "acme-app", "analysis_task_id": "T-1"},
        adapter_context("quality_gate", credentials=_sonar_credentials()),
    )

    assert isinstance(outcome, AdapterSuccess)
    paths = [request.url.path for request in stub.requests]
    assert paths.count("/api/ce/task") == 3
    status_request = next(r for r in stub.requests if r.url.path == "/api/qualitygates/project_status")
    assert status_request.url.params["analysisId"] == "AX-1"


async def test_sonar_error_status_is_a_blocking_verdict() -> None:
    outcome = await _sonar(SonarStub(gate_status="ERROR")).invoke(
        {"source_ref": "abc", "project_key": "acme-app"},
        adapter_context("quality_gate", credentials=_sonar_credentials()),
    )

    assert isinstance(outcome, AdapterSuccess)
    assert outcome.verdict is not None and outcome.verdict.blocking
    assert "coverage: 61.0 (threshold 80)" in outcome.diagnostics


async def test_sonar_failed_task_is_tool_error() -> None:
    outcome = await _sonar(SonarStub(task_states=("FAILED",))).invoke(
        {"source_ref": "abc", "project_key": "acme-app", "analysis_task_id": "T-1"},
        adapter_context("quality_gate", credentials=_sonar_credentials()),
    )

    assert isinstance(outcome, AdapterFailure)
    assert outcome.code == "analysis_failed"


async def test_sonar_poll_exhaustion_is_timeout() -> None:
    adapter = _sonar(SonarStub(task_states=("PENDING",)), poll_timeout_seconds=0.001, poll_interval_seconds=0.001)

    outcome = await adapter.invoke(
        {"source_ref": "abc", "project_key": "acme-app", "analysis_task_id": "T-1"},
        adapter_context("quality_gate", credentials=_sonar_credentials()),
    )

    assert isinstance(outcome, AdapterFailure)
    assert outcome.kind is FailureKind.TIMEOUT


async def test_sonar_rejected_token_is_invalid_credential() -> None:
    adapter = SonarQualityGateAdapter(
        base_url=SONAR,
        credential="quality_token",
        client_factory=transport_client_factory(httpx.MockTransport(lambda request: httpx.Response(401))),
    )

    outcome = await adapter.invoke(
        {"source_ref": "abc", "project_key": "acme-app"},
        adapter_context("quality_gate", credentials=_sonar_credentials()),
    )

    assert isinstance(outcome, AdapterFailure)
    assert outcome.kind is FailureKind.INVALID_CREDENTIAL


async def test_sonar_runs_scanner_and_reads_task_report(tmp_path: Path) -> None:
    report = tmp_path / REPORT_TASK_FILE
    report.parent.mkdir(parents=True)
    report.write_text("projectKey=acme-app\nceTaskId=T-42\n", encoding="utf-8")
    executor = FakeExecutor()
    stub = SonarStub()
    adapter = _sonar(stub, executor=executor, scanner_command=("sonar-scanner", "-Dsonar.projectKey={project_key}"))

    outcome = await adapter.invoke(
        {"source_ref": "abc", "project_key": "acme-app", "workspace_path": str(tmp_path)},
        adapter_context("quality_gate", credentials=_sonar_credentials()),
    )

    assert isinstance(outcome, AdapterSuccess)
    assert executor.specs[0].argv == ("sonar-scanner", "-Dsonar.projectKey=acme-app")
    assert executor.specs[0].env["SONAR_HOST_URL"] == SONAR
    assert stub.requests[0].url.params["id"] == "T-42"


async def test_sonar_scanner_without_executor_is_configuration_failure(tmp_path: Path) -> None:
    stub = SonarStub()
    adapter = _sonar(stub, executor=FakeExecutor(), scanner_command=("sonar-scanner",))
    adapter._executor = None

    outcome = await adapter.invoke(
        {"source_ref": "abc", "project_key": "acme-app", "workspace_path": str(tmp_path)},
        adapter_context("quality_gate", credentials=_sonar_credentials()),
    )

    assert isinstance(outcome, AdapterFailure)
    assert outcome.kind is FailureKind.CONFIGURATION
    assert "command executor" in outcome.message
    assert stub.requests == []


def test_parse_report_task() -> None:
    assert parse_report_task("# comment\nceTaskId = T-1\nbogus\n") == {"ceTaskId": "T-1"}


def test_sonar_requires_executor_for_scanner_command() -> None:
    with pytest.raises(ValueError):
        SonarQualityGateAdapter(base_url=SONAR, scanner_command=("sonar-scanner",))


# -- http error mapping -------------------------------------------------------------------------


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://x.example.com")
    return httpx.HTTPStatusError("boom", request=request, response=httpx.Response(status, request=request))


@pytest.mark.parametrize(
    ("exc", "kind", "retryable"),
    [
        (_status_error(401), FailureKind.INVALID_CREDENTIAL, False),
        (_status_error(403), FailureKind.INVALID_CREDENTIAL, False),
        (_status_error(503), FailureKind.TOOL_ERROR, True),
        (_status_error(429), FailureKind.TOOL_ERROR, True),
        (_status_error(404), FailureKind.TOOL_ERROR, False),
        (httpx.ConnectError("refused"), FailureKind.UNREACHABLE, True),
        (httpx.ReadTimeout("slow"), FailureKind.TIMEOUT, True),
    ],
)
def test_failure_from_http_error(exc: httpx.HTTPError, kind: FailureKind, retryable: bool) -> None:
    failure = failure_from_http_error(exc, target="server")

    assert failure.kind is kind
    assert failure.is_retryable is retryable


def test_apply_auth() -> None:
    headers: dict[str, str] = {}
    token = ResolvedCredential(name="t", kind=CredentialKind.TOKEN, secret="tok-1")
    basic = ResolvedCredential(name="b", kind=CredentialKind.USERNAME_PASSWORD, secret="pw", username="u")

    assert apply_auth(headers, token) is None
    assert headers == {"Authorization": "Bearer tok-1"}
    assert isinstance(apply_auth({}, basic), httpx.BasicAuth)
    assert apply_auth({}, None) is None


# -- notifiers ----------------------------------------------------------------------------------

_SUMMARY = {"run_id": "run-1", "status": "succeeded", "pipeline_id": "acme-app"}


async def test_webhook_posts_signed_summary() -> None:
    received: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(202)

    notifier = WebhookNotifier(
        url="https://hooks.example.com/ci",
        signing_credential="hook_key",
        client_factory=transport_client_factory(httpx.MockTransport(handler)),
    )

    outcome = await notifier.invoke(
        {"run_summary": _SUMMARY}, adapter_context("notify", credentials=_sonar_credentials())
    )

    assert isinstance(outcome, AdapterSuccess)
    assert outcome.outputs["status_code"] == 202
    body = received[0].content
    assert json.loads(body) == _SUMMARY
    expected = hmac.new(b"hmac-key-1", body, hashlib.sha256).hexdigest()
    assert received[0].headers[SIGNATURE_HEADER] == expected


async def test_webhook_server_error_is_retryable_failure() -> None:
    notifier = WebhookNotifier(
        url="https://hooks.example.com/ci",
        client_factory=transport_client_factory(httpx.MockTransport(lambda request: httpx.Response(502))),
    )

    outcome = await notifier.invoke({"run_summary": _SUMMARY}, adapter_context("notify"))

    assert isinstance(outcome, AdapterFailure)
    assert outcome.is_retryable


async def test_log_notifier() -> None:
    class Recorder:
        def __init__(self) -> None:
            self.events: list[tuple[str, dict[str, object]]] = []

        def info(self, event: str, **fields: object) -> None:
            self.events.append((event, fields))

    recorder = Recorder()
    notifier = LogNotifier(logger=recorder)

    ok = await notifier.invoke({"run_summary": _SUMMARY}, adapter_context("notify"))
    missing = await notifier.invoke({"run_summary": {"run_id": "x"}}, adapter_context("notify"))

    assert isinstance(ok, AdapterSuccess)
    assert recorder.events == [("run_notification", _SUMMARY)]
    assert isinstance(missing, AdapterFailure)
    assert missing.kind is FailureKind.INVALID_RESPONSE


# -- deploy -------------------------------------------------------------------------------------


def _deploy(executor: FakeExecutor, handler: object | None = None, **kwargs: object) -> SshDeployAdapter:
    transport = httpx.MockTransport(handler or (lambda request: httpx.Response(200)))  # type: ignore[arg-type]
    return SshDeployAdapter(
        executor,
        service="app",
        client_factory=transport_client_factory(transport),
        sleep=no_sleep,
        **kwargs,  # type: ignore[arg-type]
    )


_DEPLOY_REQUEST = {"image_ref": "registry.local/app:abc", "target_host": "app.internal", "credential_ref": "deploy_ssh"}


async def test_deploy_runs_ssh_with_key_and_checks_health() -> None:
    executor = FakeExecutor()
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200)

    adapter = _deploy(executor, handler, health_url="http://{target_host}:8080/healthz")

    outcome = await adapter.invoke(_DEPLOY_REQUEST, adapter_context("deploy"))

    assert isinstance(outcome, AdapterSuccess)
    assert outcome.outputs["health_check_passed"] is True
    argv = executor.specs[0].argv
    assert argv[:3] == ("ssh", "-i", "/keys/deploy_ed25519")
    assert "deploy@app.internal" in argv
    assert "registry.local/app:abc" in argv[-1]
    assert seen == ["http://app.internal:8080/healthz"]


async def test_deploy_reports_failed_health_as_data() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(503)

    adapter = _deploy(FakeExecutor(), handler, health_url="http://{target_host}/health", health_attempts=3)

    outcome = await adapter.invoke(_DEPLOY_REQUEST, adapter_context("deploy"))

    assert isinstance(outcome, AdapterSuccess)
    assert outcome.outputs["health_check_passed"] is False
    assert len(calls) == 3
    assert "health attempt 3: HTTP 503" in outcome.diagnostics


async def test_deploy_ssh_connection_error_is_unreachable() -> None:
    executor = FakeExecutor(default=command_result(exit_code=255, stderr="ssh: connect to host: refused"))

    outcome = await _deploy(executor).invoke(_DEPLOY_REQUEST, adapter_context("deploy"))

    assert isinstance(outcome, AdapterFailure)
    assert outcome.kind is FailureKind.UNREACHABLE
    assert outcome.is_retryable


async def test_deploy_requires_ssh_key_credential() -> None:
    request = dict(_DEPLOY_REQUEST, credential_ref="registry")

    outcome = await _deploy(FakeExecutor()).invoke(request, adapter_context("deploy", credentials=static_credentials()))

    assert isinstance(outcome, AdapterFailure)
    assert outcome.kind is FailureKind.INVALID_CREDENTIAL
