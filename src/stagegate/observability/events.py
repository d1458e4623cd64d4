"""In-process run lifecycle event bus with replay and captured dispatch errors."""

from __future__ import annotations

import inspect
import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Final

from stagegate.domain.ids import generate_event_id
from stagegate.domain.models import utc_now

_DEFAULT_ERROR_BUFFER: Final[int] = 256


class RunEventType(StrEnum):
    RUN_QUEUED = "run_queued"
    RUN_STARTED = "run_started"
    STAGE_STARTED = "stage_started"
    STAGE_RETRY = "stage_retry"
    STAGE_PASSED = "stage_passed"
    STAGE_FAILED = "stage_failed"
    GATE_BLOCKED = "gate_blocked"
    STAGE_SKIPPED = "stage_skipped"
    RUN_ABORT_REQUESTED = "run_abort_requested"
    RUN_FINISHED = "run_finished"
    NOTIFIER_FAILED = "notifier_failed"


@dataclass(frozen=True, slots=True)
class RunEvent:
    event_type: RunEventType
    run_id: str
    pipeline_id: str
    payload: Mapping[str, object] = field(default_factory=dict)
    event_id: str = field(default_factory=generate_event_id)
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        object.__setattr__(self, "event_type", RunEventType(self.event_type))
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))


Subscriber = Callable[[RunEvent], object]


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Subscriber failure captured without interrupting the engine."""

    event_id: str
    target: str
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class _Subscription:
    token: int
    event_type: RunEventType | None
    callback: Subscriber


class RunEventBus:
    """Sync and async subscribers, bounded replay buffer."""

    def __init__(self, *, buffer_size: int = 512) -> None:
        if isinstance(buffer_size, bool) or not isinstance(buffer_size, int) or buffer_size <= 0:
            raise ValueError("buffer_size must be a positive integer")
        self._buffer: deque[RunEvent] = deque(maxlen=buffer_size)
        self._errors: deque[DispatchError] = deque(maxlen=_DEFAULT_ERROR_BUFFER)
        self._subscriptions: dict[int, _Subscription] = {}
        self._next_token = 1
        self._lock = threading.RLock()

    def subscribe(self, event_type: RunEventType | str | None, callback: Subscriber) -> int:
        """Subscribe to one event type, or to every event when ``event_type`` is ``None``."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        normalized = None if event_type is None else RunEventType(event_type)
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscriptions[token] = _Subscription(token, normalized, callback)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscriptions.pop(token, None) is not None

    async def publish(self, event: RunEvent) -> tuple[DispatchError, ...]:
        with self._lock:
            self._buffer.append(event)
            subscriptions = tuple(self._subscriptions.values())

        errors: list[DispatchError] = []
        for subscription in subscriptions:
            wanted = subscription.event_type
            if wanted is not None and wanted is not event.event_type:
                continue
            try:
                result = subscription.callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                errors.append(
                    DispatchError(
                        event_id=event.event_id,
                        target=getattr(
                            subscription.callback, "__qualname__", repr(subscription.callback)
                        ),
                        error_type=type(exc).__name__,
                        message=str(exc),
                    )
                )
        if errors:
            with self._lock:
                self._errors.extend(errors)
        return tuple(errors)

    async def emit(
        self,
        event_type: RunEventType,
        *,
        run_id: str,
        pipeline_id: str,
        **payload: object,
    ) -> RunEvent:
        event = RunEvent(
            event_type=event_type, run_id=run_id, pipeline_id=pipeline_id, payload=payload
        )
        await self.publish(event)
        return event

    def replay(
        self,
        *,
        run_id: str | None = None,
        event_type: RunEventType | str | None = None,
        limit: int | None = None,
    ) -> tuple[RunEvent, ...]:
        type_filter = None if event_type is None else RunEventType(event_type)
        with self._lock:
            events = tuple(self._buffer)
        filtered = [
            event
            for event in events
            if (run_id is None or event.run_id == run_id)
            and (type_filter is None or event.event_type is type_filter)
        ]
        if limit is not None:
            if limit <= 0:
                return ()
            filtered = filtered[-limit:]
        return tuple(filtered)

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._errors)


__all__ = [
    "DispatchError",
    "RunEvent",
    "RunEventBus",
    "RunEventType",
    "Subscriber",
]
