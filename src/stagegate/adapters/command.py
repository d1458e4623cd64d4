"""Subprocess execution contract shared by command-line tool adapters."""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from stagegate.adapters.base import AdapterFailure, FailureKind, truncate
from stagegate.errors import AdapterPermanentError

_MAX_OUTPUT_CHARS = 200_000


@dataclass(frozen=True, slots=True)
class CommandSpec:
    """Portable command invocation: argv, working directory, extra env, optional stdin."""

    argv: tuple[str, ...]
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    stdin_text: str | None = None
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        argv = tuple(self.argv)
        if not argv or any(not isinstance(part, str) or not part for part in argv):
            raise ValueError("CommandSpec.argv must be a non-empty sequence of non-empty strings")
        object.__setattr__(self, "argv", argv)
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("CommandSpec.timeout_seconds must be > 0")

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.env)
        return env

    def display(self) -> str:
        """argv joined for diagnostics; stdin is never shown."""

        return " ".join(self.argv)


@dataclass(frozen=True, slots=True)
class CommandResult:
    argv: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.error is None and self.exit_code == 0

    def combined_output(self) -> str:
        parts = [part for part in (self.stdout.strip(), self.stderr.strip()) if part]
        return "\n".join(parts)


@runtime_checkable
class CommandExecutor(Protocol):
    """Pluggable async command execution; tests substitute a scripted fake."""

    async def run(self, spec: CommandSpec) -> CommandResult: ...


class LocalSubprocessExecutor:
    """Runs commands with ``asyncio.create_subprocess_exec``; output is captured and truncated."""

    def __init__(self, *, max_output_chars: int = _MAX_OUTPUT_CHARS) -> None:
        if max_output_chars <= 0:
            raise ValueError("max_output_chars must be > 0")
        self._max_output_chars = max_output_chars

    async def run(self, spec: CommandSpec) -> CommandResult:
        started_ns = time.monotonic_ns()
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                env=spec.build_env(),
                stdin=(
                    asyncio.subprocess.PIPE
                    if spec.stdin_text is not None
                    else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return CommandResult(
                argv=spec.argv,
                exit_code=None,
                stdout="",
                stderr="",
                duration_ms=_elapsed_ms(started_ns),
                error=str(exc),
            )

        stdin_bytes = spec.stdin_text.encode("utf-8") if spec.stdin_text is not None else None
        timed_out = False
        try:
            if spec.timeout_seconds is None:
                stdout_bytes, stderr_bytes = await process.communicate(stdin_bytes)
            else:
                stdout_bytes, stderr_bytes = await asyncio.wait_for(
                    process.communicate(stdin_bytes), timeout=spec.timeout_seconds
                )
        except TimeoutError:
            with suppress(ProcessLookupError):
                process.kill()
            stdout_bytes, stderr_bytes = await process.communicate()
            timed_out = True
        except asyncio.CancelledError:
            # The stage deadline cancels us; never leave the child running.
            with suppress(ProcessLookupError):
                process.kill()
            await process.communicate()
            raise

        return CommandResult(
            argv=spec.argv,
            exit_code=None if timed_out else process.returncode,
            stdout=truncate(_normalize(stdout_bytes), self._max_output_chars),
            stderr=truncate(_normalize(stderr_bytes), self._max_output_chars),
            duration_ms=_elapsed_ms(started_ns),
            timed_out=timed_out,
        )


def failure_from_command(
    result: CommandResult,
    *,
    retryable_exit_codes: Sequence[int] = (),
) -> AdapterFailure:
    """Map a non-successful command result onto the adapter failure taxonomy."""

    output = result.combined_output()
    if result.timed_out:
        return AdapterFailure(
            kind=FailureKind.TIMEOUT,
            message=f"{result.argv[0]} timed out",
            diagnostics=output,
        )
    if result.error is not None:
        return AdapterFailure(
            kind=FailureKind.CONFIGURATION,
            message=f"cannot start {result.argv[0]}: {result.error}",
        )
    return AdapterFailure(
        kind=FailureKind.TOOL_ERROR,
        code=f"exit_{result.exit_code}",
        message=_last_line(output) or f"{result.argv[0]} exited with {result.exit_code}",
        retryable=result.exit_code in retryable_exit_codes,
        diagnostics=output,
    )


def render_argv(
    template: Sequence[str], values: Mapping[str, object], *, adapter_id: str
) -> tuple[str, ...]:
    """Expand ``{placeholder}`` fields in a configured argv template."""

    rendered: list[str] = []
    for part in template:
        try:
            rendered.append(part.format_map(values))
        except KeyError as exc:
            raise AdapterPermanentError(
                adapter_id,
                FailureKind.CONFIGURATION.value,
                f"command template references unknown field {exc.args[0]!r}",
            ) from exc
        except (ValueError, IndexError) as exc:
            raise AdapterPermanentError(
                adapter_id,
                FailureKind.CONFIGURATION.value,
                f"malformed command template {part!r}: {exc}",
            ) from exc
    return tuple(rendered)


def _last_line(text: str) -> str:
    for line in reversed(text.splitlines()):
        if line.strip():
            return line.strip()[:500]
    return ""


def _normalize(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _elapsed_ms(started_ns: int) -> int:
    return max(0, (time.monotonic_ns() - started_ns) // 1_000_000)


__all__ = [
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "LocalSubprocessExecutor",
    "failure_from_command",
    "render_argv",
]
