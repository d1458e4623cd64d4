"""
stagegate — external tool adapters

Purpose
- One adapter per collaborator behind the uniform ``ToolAdapter`` contract. Concrete
  adapters are imported from their modules; this package re-exports the contract only.
"""

from stagegate.adapters.base import (
    AdapterContext,
    AdapterFailure,
    AdapterOutcome,
    AdapterRegistry,
    AdapterRequest,
    AdapterSuccess,
    FailureKind,
    ToolAdapter,
    invoke_adapter,
)

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
]
