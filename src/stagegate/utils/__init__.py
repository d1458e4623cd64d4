"""Utility exports for async concurrency helpers."""

from stagegate.utils.concurrency import (
    CancellationToken,
    backoff_delay,
    run_with_timeout,
)

__all__ = [
    "CancellationToken",
    "backoff_delay",
    "run_with_timeout",
]
