"""
stagegate — external tool adapter contract

File: src/stagegate/adapters/base.py

Purpose
- Uniform request/response contract for every external collaborator (source control,
  build tool, report parser, analysis server, image builder, scanner, registry, remote
  host, notification sink).
- ``invoke_adapter`` wraps each call with the stage deadline and normalizes anything an
  adapter raises into an ``AdapterFailure`` so transport errors never escape upward.

Failure taxonomy
- ``timeout`` and ``unreachable`` are transient.
- ``invalid_credential``, ``invalid_response`` and ``configuration`` are permanent.
- ``tool_error`` carries the tool's code and is transient only when the adapter says so.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

import structlog

from stagegate.constants import DEADLINE_EXCEEDED
from stagegate.domain.models import Finding, GateVerdict
from stagegate.errors import AdapterError, AdapterPermanentError, CredentialError, EngineConfigError
from stagegate.security.credentials import CredentialRef, CredentialResolver, ResolvedCredential
from stagegate.security.redaction import SecretMasker
from stagegate.utils.concurrency import run_with_timeout

AdapterRequest = Mapping[str, object]

_MAX_DIAGNOSTICS = 16_000


class FailureKind(StrEnum):
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    INVALID_CREDENTIAL = "invalid_credential"
    TOOL_ERROR = "tool_error"
    INVALID_RESPONSE = "invalid_response"
    CONFIGURATION = "configuration"


_TRANSIENT_KINDS = frozenset({FailureKind.TIMEOUT, FailureKind.UNREACHABLE})


@dataclass(frozen=True, slots=True)
class AdapterSuccess:
    outputs: Mapping[str, Finding] = field(default_factory=dict)
    verdict: GateVerdict | None = None
    diagnostics: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "outputs", MappingProxyType(dict(self.outputs)))


@dataclass(frozen=True, slots=True)
class AdapterFailure:
    kind: FailureKind
    message: str
    code: str | None = None
    retryable: bool | None = None
    diagnostics: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", FailureKind(self.kind))

    @property
    def is_retryable(self) -> bool:
        if self.retryable is not None:
            return self.retryable
        return self.kind in _TRANSIENT_KINDS

    def describe(self) -> str:
        if self.kind is FailureKind.TOOL_ERROR and self.code:
            return f"tool_error[{self.code}]: {self.message}"
        return f"{self.kind.value}: {self.message}"


AdapterOutcome = AdapterSuccess | AdapterFailure


@dataclass(slots=True)
class AdapterContext:
    """Per-call context handed to adapters. Credentials are resolved lazily by name."""

    run_id: str
    pipeline_id: str
    stage_name: str
    attempt: int
    timeout_seconds: float
    credentials: CredentialResolver
    masker: SecretMasker
    workspace: Path | None = None
    logger: Any = None

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = structlog.get_logger(__name__).bind(
                run_id=self.run_id, stage=self.stage_name, attempt=self.attempt
            )

    def credential(self, name: str) -> ResolvedCredential:
        resolved = self.credentials.resolve(CredentialRef(name))
        self.masker.register(resolved.secret)
        return resolved


@runtime_checkable
class ToolAdapter(Protocol):
    """Adapter protocol implemented by built-ins and embedder-supplied fakes."""

    adapter_id: str

    async def invoke(self, request: AdapterRequest, context: AdapterContext) -> AdapterOutcome: ...


class AdapterRegistry:
    """Adapter instances keyed by id. Stage wiring is validated against it at load time."""

    def __init__(self, adapters: Mapping[str, ToolAdapter] | None = None) -> None:
        self._adapters: dict[str, ToolAdapter] = {}
        for adapter_id in sorted(adapters or {}):
            self.register((adapters or {})[adapter_id], adapter_id=adapter_id)

    def register(
        self, adapter: ToolAdapter, *, adapter_id: str | None = None, replace: bool = False
    ) -> None:
        if not isinstance(adapter, ToolAdapter):
            raise EngineConfigError(f"{type(adapter).__name__} does not implement ToolAdapter")
        key = adapter_id if adapter_id is not None else adapter.adapter_id
        if not key:
            raise EngineConfigError("adapter id must be non-empty")
        if key in self._adapters and not replace:
            raise EngineConfigError(f"adapter {key!r} already registered")
        self._adapters[key] = adapter

    def contains(self, adapter_id: str) -> bool:
        return adapter_id in self._adapters

    def get(self, adapter_id: str) -> ToolAdapter:
        adapter = self._adapters.get(adapter_id)
        if adapter is None:
            known = ", ".join(self.registered_ids())
            raise EngineConfigError(f"unknown adapter {adapter_id!r}; registered: [{known}]")
        return adapter

    def registered_ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._adapters))


async def invoke_adapter(
    adapter: ToolAdapter,
    request: AdapterRequest,
    context: AdapterContext,
    *,
    timeout_seconds: float,
) -> AdapterOutcome:
    """Call ``adapter`` under a hard deadline and return a normalized, secret-masked outcome."""

    adapter_id = getattr(adapter, "adapter_id", type(adapter).__name__)
    try:
        outcome = await run_with_timeout(adapter.invoke(request, context), timeout_seconds)
    except TimeoutError:
        outcome = AdapterFailure(kind=FailureKind.TIMEOUT, message=DEADLINE_EXCEEDED)
    except CredentialError as exc:
        outcome = AdapterFailure(kind=FailureKind.INVALID_CREDENTIAL, message=str(exc))
    except AdapterError as exc:
        outcome = AdapterFailure(
            kind=_kind_from_error(exc.kind),
            message=exc.message,
            retryable=exc.retryable,
        )
    except Exception as exc:  # noqa: BLE001
        context.logger.warning(
            "adapter_unexpected_error", adapter=adapter_id, error_type=type(exc).__name__
        )
        outcome = AdapterFailure(
            kind=FailureKind.TOOL_ERROR,
            code=type(exc).__name__,
            message=str(exc) or type(exc).__name__,
            retryable=False,
        )

    if not isinstance(outcome, (AdapterSuccess, AdapterFailure)):
        outcome = AdapterFailure(
            kind=FailureKind.INVALID_RESPONSE,
            message=f"adapter {adapter_id!r} returned {type(outcome).__name__}",
        )
    return _mask_outcome(outcome, context.masker.mask)


def _kind_from_error(kind: str) -> FailureKind:
    try:
        return FailureKind(kind)
    except ValueError:
        return FailureKind.TOOL_ERROR


def _mask_outcome(outcome: AdapterOutcome, mask: Callable[[str], str]) -> AdapterOutcome:
    if isinstance(outcome, AdapterFailure):
        return AdapterFailure(
            kind=outcome.kind,
            message=mask(outcome.message),
            code=outcome.code,
            retryable=outcome.retryable,
            diagnostics=truncate(mask(outcome.diagnostics)),
        )
    outputs = {
        key: mask(value) if isinstance(value, str) else value
        for key, value in outcome.outputs.items()
    }
    return AdapterSuccess(
        outputs=outputs,
        verdict=outcome.verdict,
        diagnostics=truncate(mask(outcome.diagnostics)),
    )


def truncate(text: str, max_chars: int = _MAX_DIAGNOSTICS) -> str:
    if len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"{text[-max_chars:]}\n...[truncated {omitted} leading chars]"


def require_str(request: AdapterRequest, key: str, adapter_id: str) -> str:
    """Fetch a required string field from a request or raise a permanent configuration error."""

    value = request.get(key)
    if not isinstance(value, str) or not value.strip():
        raise AdapterPermanentError(
            adapter_id, FailureKind.CONFIGURATION.value, f"request field {key!r} is required"
        )
    return value


__all__ = [
    "AdapterContext",
    "AdapterFailure",
    "AdapterOutcome",
    "AdapterRegistry",
    "AdapterRequest",
    "AdapterSuccess",
    "FailureKind",
    "ToolAdapter",
    "invoke_adapter",
    "require_str",
    "truncate",
]
