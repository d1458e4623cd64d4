"""Output rendering for the stagegate CLI.

File: src/stagegate/ui/render.py

Purpose
- Plain-text rendering of runs, stage tables, and gate decisions.
- Output is identical on a TTY and in a pipe; there are no escape sequences.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from stagegate.domain.models import GateDecision, Run


class CLIRenderer:
    """Thin CLI output renderer.

    Produces clean, deterministic plain-text output.
    """

    def __init__(self, *, verbose: bool = False) -> None:
        self.verbose = verbose

    def heading(self, text: str) -> None:
        print(text)

    def kv(self, key: str, value: object) -> None:
        print(f"{key}: {value}")

    def text(self, line: str) -> None:
        print(line)

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        print(f"\n{title}")

    def warning(self, text: str) -> None:
        print(f"  Warning: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            print(f"  {prefix}{entry}")


    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        print(f"  {_pad(list(headers))}")
        print(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            print(f"  {_pad(list(row))}")

    def run(self, run: Run) -> None:
        """Print a run header and its per-stage results."""

        self.kv("Run", run.run_id)
        self.kv("Pipeline", run.pipeline_id)
        self.kv("Cause", run.cause.describe())
        self.kv("Status", run.status.value)
        rows: list[list[str]] = []
        for result in run.stage_results:
            duration = result.duration_seconds
            rows.append(
                [
                    result.name,
                    result.status.value,
                    str(result.attempt_count),
                    "-" if duration is None else f"{duration:.1f}s",
                    result.reason or "",
                ]
            )
        self.table(("stage", "status", "attempts", "duration", "reason"), rows, title="Stages:")
        if self.verbose:
            for result in run.stage_results:
                if result.diagnostics:
                    self.section(f"Diagnostics ({result.name}):")
                    self.text(result.diagnostics)

    def decision(self, decision: GateDecision) -> None:
        self.kv("Outcome", decision.outcome.value)
        if decision.reasons:
            self.section("Reasons:")
            self.items(list(decision.reasons))
        if decision.violations:
            self.section("Violations:")
            self.items([item.message for item in decision.violations])
        if decision.warnings:
            self.section("Warnings:")
            self.items([item.message for item in decision.warnings])

    def ok(self, label: str) -> None:
        print(f"  OK  {label}")

    def fail(self, label: str) -> None:
        print(f"  FAIL  {label}")


def create_renderer(*, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
