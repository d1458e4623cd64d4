"""httpx plumbing shared by HTTP-speaking adapters (analysis server, webhooks, health checks)."""

from __future__ import annotations

from collections.abc import Callable

import httpx

from stagegate.adapters.base import AdapterFailure, FailureKind
from stagegate.security.credentials import CredentialKind, ResolvedCredential

ClientFactory = Callable[[float], httpx.AsyncClient]

_USER_AGENT = "stagegate/0.1"


def default_client_factory(timeout_seconds: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_seconds),
        headers={"User-Agent": _USER_AGENT, "Accept": "application/json"},
        follow_redirects=True,
    )


def transport_client_factory(transport: httpx.AsyncBaseTransport) -> ClientFactory:
    """Factory bound to a fixed transport, e.g. ``httpx.MockTransport`` in tests."""

    def factory(timeout_seconds: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers={"User-Agent": _USER_AGENT, "Accept": "application/json"},
            transport=transport,
        )

    return factory


def apply_auth(
    headers: dict[str, str], credential: ResolvedCredential | None
) -> httpx.BasicAuth | None:
    """Attach credential material: bearer header for tokens, basic auth for username/password."""

    if credential is None:
        return None
    if credential.kind is CredentialKind.TOKEN:
        headers["Authorization"] = f"Bearer {credential.secret}"
        return None
    if credential.kind is CredentialKind.USERNAME_PASSWORD and credential.username is not None:
        return httpx.BasicAuth(credential.username, credential.secret)
    return None


def failure_from_http_error(exc: httpx.HTTPError, *, target: str) -> AdapterFailure:
    """
    Map httpx errors onto the adapter taxonomy.

    5xx and 429 responses are transient; 401/403 mean the credential is wrong; any other
    status is a permanent tool error.
    """

    if isinstance(exc, httpx.TimeoutException):
        return AdapterFailure(kind=FailureKind.TIMEOUT, message=f"{target}: request timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        body = exc.response.text[:200]
        if status in (401, 403):
            return AdapterFailure(
                kind=FailureKind.INVALID_CREDENTIAL,
                message=f"{target}: HTTP {status}",
                diagnostics=body,
            )
        return AdapterFailure(
            kind=FailureKind.TOOL_ERROR,
            code=f"http_{status}",
            message=f"{target}: HTTP {status}",
            retryable=status >= 500 or status == 429,
            diagnostics=body,
        )
    if isinstance(exc, httpx.TransportError):
        return AdapterFailure(
            kind=FailureKind.UNREACHABLE, message=f"{target}: {type(exc).__name__}: {exc}"
        )
    return AdapterFailure(
        kind=FailureKind.TOOL_ERROR,
        code=type(exc).__name__,
        message=f"{target}: {exc}",
        retryable=False,
    )


__all__ = [
    "ClientFactory",
    "apply_auth",
    "default_client_factory",
    "failure_from_http_error",
    "transport_client_factory",
]
