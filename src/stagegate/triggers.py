"""
stagegate — trigger sources

File: src/stagegate/triggers.py

Purpose
- Map external events to ``TriggerCause`` values: push webhooks (GitHub and GitLab body
  shapes) and a fixed-interval poll loop.
- Tag pushes, branch deletions and branches outside the configured filter produce no
  cause.
"""

from __future__ import annotations

import asyncio
import fnmatch
from collections.abc import Awaitable, Callable, Collection, Mapping
from dataclasses import dataclass
from typing import Any, Final

import structlog

from stagegate.domain.models import TriggerCause, TriggerKind
from stagegate.errors import RunConflictError, TriggerPayloadError
from stagegate.utils.concurrency import CancellationToken, Sleeper

BRANCH_REF_PREFIX: Final[str] = "refs/heads/"
_NULL_SHA: Final[str] = "0" * 40

StartRun = Callable[[TriggerCause], Awaitable[str]]


@dataclass(frozen=True, slots=True)
class PushEvent:
    repo: str
    branch: str
    commit: str
    actor: str | None = None

    def to_cause(self) -> TriggerCause:
        return TriggerCause(
            kind=TriggerKind.PUSH,
            repo=self.repo,
            branch=self.branch,
            commit=self.commit,
            actor=self.actor,
        )


@dataclass(frozen=True, slots=True)
class PollEvent:
    schedule_expr: str
    repo: str | None = None
    branch: str | None = None

    def to_cause(self) -> TriggerCause:
        return TriggerCause(
            kind=TriggerKind.POLL,
            schedule_expr=self.schedule_expr,
            repo=self.repo,
            branch=self.branch,
        )


def branch_matches(branch: str, patterns: Collection[str] | None) -> bool:
    """Glob match against the configured branch filter; an empty filter matches all."""

    if not patterns:
        return True
    return any(fnmatch.fnmatchcase(branch, pattern) for pattern in patterns)


def parse_push_payload(
    payload: Mapping[str, object],
    *,
    branches: Collection[str] | None = None,
) -> PushEvent | None:
    """
    Extract ``{repo, branch, commit}`` from a GitHub or GitLab push webhook body.

    Returns ``None`` for events that must not start a run. Raises ``TriggerPayloadError``
    when the body is not a recognizable push.
    """

    if not isinstance(payload, Mapping):
        raise TriggerPayloadError("push payload must be a JSON object")

    ref = _text(payload.get("ref"))
    if ref is None:
        raise TriggerPayloadError("push payload has no 'ref'")
    if not ref.startswith(BRANCH_REF_PREFIX):
        return None
    branch = ref[len(BRANCH_REF_PREFIX) :]

    if payload.get("deleted") is True:
        return None
    commit = _text(payload.get("checkout_sha")) or _text(payload.get("after"))
    if commit is None or commit == _NULL_SHA:
        return None

    repo = _repo_url(payload)
    if repo is None:
        raise TriggerPayloadError("push payload has no repository URL")
    if not branch_matches(branch, branches):
        return None
    return PushEvent(repo=repo, branch=branch, commit=commit, actor=_actor(payload))


def _text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _repo_url(payload: Mapping[str, object]) -> str | None:
    # GitHub sends repository.clone_url; GitLab sends git_http_url on repository and project.
    for section_key, url_keys in (
        ("repository", ("clone_url", "git_http_url", "url")),
        ("project", ("git_http_url", "http_url", "git_ssh_url")),
    ):
        section = payload.get(section_key)
        if not isinstance(section, Mapping):
            continue
        for url_key in url_keys:
            url = _text(section.get(url_key))
            if url is not None:
                return url
    return None


def _actor(payload: Mapping[str, object]) -> str | None:
    pusher = payload.get("pusher")
    if isinstance(pusher, Mapping):
        name = _text(pusher.get("name"))
        if name is not None:
            return name
    return _text(payload.get("user_username")) or _text(payload.get("user_name"))


class PollTrigger:
    """
    Fires ``start_run`` with a poll cause every ``interval_seconds``.

    A tick that lands while a run is active is skipped, not queued.
    """

    def __init__(
        self,
        start_run: StartRun,
        *,
        interval_seconds: float,
        schedule_expr: str | None = None,
        repo: str | None = None,
        branch: str | None = None,
        sleep: Sleeper = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._start_run = start_run
        self._interval = interval_seconds
        self._event = PollEvent(
            schedule_expr=schedule_expr or f"every {interval_seconds:g}s",
            repo=repo,
            branch=branch,
        )
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self.started_run_ids: list[str] = []
        self.skipped_ticks = 0

    async def tick(self) -> str | None:
        try:
            run_id = await self._start_run(self._event.to_cause())
        except RunConflictError as exc:
            self.skipped_ticks += 1
            self._logger.info("poll_tick_skipped", active_run_id=exc.active_run_id)
            return None
        self.started_run_ids.append(run_id)
        return run_id

    async def run(self, stop: CancellationToken, *, max_ticks: int | None = None) -> None:
        ticks = 0
        while not stop.is_cancelled:
            await self.tick()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                return
            await self._sleep(self._interval)


__all__ = [
    "BRANCH_REF_PREFIX",
    "PollEvent",
    "PollTrigger",
    "PushEvent",
    "branch_matches",
    "parse_push_payload",
]
