"""Build tool invocation: a configured command run inside the checked-out workspace."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from stagegate.adapters.base import (
    AdapterContext,
    AdapterFailure,
    AdapterOutcome,
    AdapterRequest,
    AdapterSuccess,
    FailureKind,
    require_str,
)
from stagegate.adapters.command import (
    CommandExecutor,
    CommandSpec,
    failure_from_command,
    render_argv,
)
from stagegate.constants import BUILD_ADAPTER

DEFAULT_BUILD_COMMAND: tuple[str, ...] = ("make", "build")


class CommandBuildAdapter:
    """
    ``{source_ref, workspace_path}`` -> ``{artifact_ref, build_log}``.

    ``artifact_path`` is resolved relative to the workspace and must exist after the
    command succeeds; the build log travels back as diagnostics.
    """

    adapter_id = BUILD_ADAPTER

    def __init__(
        self,
        executor: CommandExecutor,
        *,
        command: Sequence[str] = DEFAULT_BUILD_COMMAND,
        artifact_path: str = "dist",
        env: dict[str, str] | None = None,
        retryable_exit_codes: Sequence[int] = (),
    ) -> None:
        if not command:
            raise ValueError("build command must not be empty")
        self._executor = executor
        self._command = tuple(command)
        self._artifact_path = artifact_path
        self._env = dict(env or {})
        self._retryable_exit_codes = tuple(retryable_exit_codes)

    async def invoke(self, request: AdapterRequest, context: AdapterContext) -> AdapterOutcome:
        source_ref = require_str(request, "source_ref", self.adapter_id)
        workspace = Path(require_str(request, "workspace_path", self.adapter_id))
        values = {"source_ref": source_ref, "workspace": str(workspace), "run_id": context.run_id}
        argv = render_argv(self._command, values, adapter_id=self.adapter_id)

        result = await self._executor.run(CommandSpec(argv=argv, cwd=str(workspace), env=self._env))
        build_log = result.combined_output()
        if not result.ok:
            return failure_from_command(result, retryable_exit_codes=self._retryable_exit_codes)

        artifact = workspace / self._artifact_path.format_map(values)
        if not artifact.exists():
            return AdapterFailure(
                kind=FailureKind.INVALID_RESPONSE,
                message=f"build succeeded but artifact {self._artifact_path!r} is missing",
                diagnostics=build_log,
            )
        return AdapterSuccess(
            outputs={"artifact_ref": str(artifact)},
            diagnostics=build_log,
        )


__all__ = ["DEFAULT_BUILD_COMMAND", "CommandBuildAdapter"]
