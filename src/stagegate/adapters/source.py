"""Source checkout through the ``git`` CLI."""

from __future__ import annotations

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
from stagegate.adapters.command import CommandExecutor, CommandSpec, failure_from_command
from stagegate.constants import SOURCE_ADAPTER

# git exits 128 for network failures as well as for bad refs; only the former is
# worth retrying, so callers opt in per deployment.
GIT_FATAL_EXIT_CODE = 128


class GitSourceAdapter:
    """
    Fetches the triggering commit into ``<workspace>/<run_id>/src``.

    Request: ``repo`` and ``commit`` or ``branch``. Outputs: ``source_ref`` (resolved
    commit sha) and ``workspace_path``.
    """

    adapter_id = SOURCE_ADAPTER

    def __init__(
        self,
        executor: CommandExecutor,
        *,
        git_binary: str = "git",
        credential: str | None = None,
        retry_fatal_errors: bool = False,
    ) -> None:
        self._executor = executor
        self._git = git_binary
        self._credential = credential
        self._retryable_exit_codes = (GIT_FATAL_EXIT_CODE,) if retry_fatal_errors else ()

    async def invoke(self, request: AdapterRequest, context: AdapterContext) -> AdapterOutcome:
        repo = require_str(request, "repo", self.adapter_id)
        commit = request.get("commit")
        branch = request.get("branch")
        target = commit if isinstance(commit, str) and commit else branch
        if not isinstance(target, str) or not target:
            return AdapterFailure(
                kind=FailureKind.CONFIGURATION, message="checkout needs a commit or branch"
            )
        if context.workspace is None:
            return AdapterFailure(kind=FailureKind.CONFIGURATION, message="no workspace configured")

        checkout_dir = context.workspace / context.run_id / "src"
        checkout_dir.mkdir(parents=True, exist_ok=True)
        auth_args: tuple[str, ...] = ()
        if self._credential is not None:
            token = context.credential(self._credential).secret
            auth_args = ("-c", f"http.extraHeader=Authorization: Bearer {token}")

        git = (self._git, "-C", str(checkout_dir))
        steps: list[tuple[str, ...]] = []
        if not (checkout_dir / ".git").exists():
            steps.append((self._git, "init", "--quiet", str(checkout_dir)))
        steps.extend(
            [
                (*git, *auth_args, "fetch", "--depth", "1", repo, target),
                (*git, "checkout", "--force", "--quiet", "FETCH_HEAD"),
            ]
        )
        log: list[str] = []
        for argv in steps:
            result = await self._executor.run(CommandSpec(argv=argv))
            if result.combined_output():
                log.append(result.combined_output())
            if not result.ok:
                return failure_from_command(result, retryable_exit_codes=self._retryable_exit_codes)

        rev = await self._executor.run(
            CommandSpec(argv=(self._git, "-C", str(checkout_dir), "rev-parse", "HEAD"))
        )
        if not rev.ok:
            return failure_from_command(rev)
        sha = rev.stdout.strip()
        if not sha:
            return AdapterFailure(
                kind=FailureKind.INVALID_RESPONSE, message="git rev-parse printed nothing"
            )
        context.logger.info("source_checked_out", repo=repo, source_ref=sha)
        return AdapterSuccess(
            outputs={"source_ref": sha, "workspace_path": str(Path(checkout_dir))},
            diagnostics="\n".join(log),
        )


__all__ = ["GitSourceAdapter"]
