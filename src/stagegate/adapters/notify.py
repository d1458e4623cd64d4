"""Post-run notification sinks: JSON webhook and structured log line."""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Mapping
from typing import Any

import httpx
import structlog

from stagegate.adapters.base import (
    AdapterContext,
    AdapterFailure,
    AdapterOutcome,
    AdapterRequest,
    AdapterSuccess,
    FailureKind,
)
from stagegate.adapters.http import ClientFactory, default_client_factory, failure_from_http_error
from stagegate.constants import NOTIFIER_ADAPTER

SIGNATURE_HEADER = "X-Stagegate-Signature"


def _summary(request: AdapterRequest) -> Mapping[str, object]:
    summary = request.get("run_summary")
    if not isinstance(summary, Mapping):
        raise TypeError("notifier request requires a run_summary object")
    return summary


class WebhookNotifier:
    """
    ``{run_summary}`` -> acknowledgment.

    POSTs the summary as JSON. When ``signing_credential`` is set, the body is signed
    with HMAC-SHA256 and the hex digest sent in ``X-Stagegate-Signature``.
    """

    adapter_id = NOTIFIER_ADAPTER

    def __init__(
        self,
        *,
        url: str,
        signing_credential: str | None = None,
        client_factory: ClientFactory = default_client_factory,
    ) -> None:
        self._url = url
        self._signing_credential = signing_credential
        self._client_factory = client_factory

    async def invoke(self, request: AdapterRequest, context: AdapterContext) -> AdapterOutcome:
        body = json.dumps(dict(_summary(request)), sort_keys=True, separators=(",", ":")).encode()
        headers = {"Content-Type": "application/json"}
        if self._signing_credential is not None:
            key = context.credential(self._signing_credential).secret.encode()
            headers[SIGNATURE_HEADER] = hmac.new(key, body, hashlib.sha256).hexdigest()
        async with self._client_factory(context.timeout_seconds) as client:
            try:
                response = await client.post(self._url, content=body, headers=headers)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                return failure_from_http_error(exc, target=self._url)
        return AdapterSuccess(outputs={"acknowledged": True, "status_code": response.status_code})


class LogNotifier:
    """Writes the summary as a single ``run_notification`` log event."""

    adapter_id = NOTIFIER_ADAPTER

    def __init__(self, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def invoke(self, request: AdapterRequest, context: AdapterContext) -> AdapterOutcome:
        summary = _summary(request)
        if "status" not in summary:
            return AdapterFailure(
                kind=FailureKind.INVALID_RESPONSE, message="summary has no status"
            )
        fields = {str(key): value for key, value in summary.items()}
        self._logger.info("run_notification", **fields)
        return AdapterSuccess(outputs={"acknowledged": True})


__all__ = ["SIGNATURE_HEADER", "LogNotifier", "WebhookNotifier"]
