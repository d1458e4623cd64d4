"""Container image build and registry push through a docker-compatible CLI."""

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
from stagegate.adapters.command import CommandExecutor, CommandSpec, failure_from_command
from stagegate.constants import IMAGE_BUILDER_ADAPTER, REGISTRY_PUSH_ADAPTER


def image_tag(repository: str, tag_template: str, *, source_ref: str, run_id: str) -> str:
    tag = tag_template.format_map(
        {"source_ref": source_ref, "short_ref": source_ref[:12], "run_id": run_id}
    )
    return f"{repository}:{tag}"


class DockerImageBuildAdapter:
    """``{artifact_ref, tag}`` -> ``{image_ref}``."""

    adapter_id = IMAGE_BUILDER_ADAPTER

    def __init__(
        self,
        executor: CommandExecutor,
        *,
        repository: str,
        tag_template: str = "{short_ref}",
        dockerfile: str = "Dockerfile",
        docker_binary: str = "docker",
        build_args: Sequence[str] = (),
    ) -> None:
        self._executor = executor
        self._repository = repository
        self._tag_template = tag_template
        self._dockerfile = dockerfile
        self._docker = docker_binary
        self._build_args = tuple(build_args)

    async def invoke(self, request: AdapterRequest, context: AdapterContext) -> AdapterOutcome:
        require_str(request, "artifact_ref", self.adapter_id)
        workspace = require_str(request, "workspace_path", self.adapter_id)
        tag = request.get("tag")
        if not isinstance(tag, str) or not tag:
            tag = image_tag(
                self._repository,
                self._tag_template,
                source_ref=require_str(request, "source_ref", self.adapter_id),
                run_id=context.run_id,
            )
        argv = (
            self._docker,
            "build",
            "--file",
            str(Path(workspace) / self._dockerfile),
            "--tag",
            tag,
            *(arg for item in self._build_args for arg in ("--build-arg", item)),
            workspace,
        )
        result = await self._executor.run(CommandSpec(argv=argv, cwd=workspace))
        if not result.ok:
            return failure_from_command(result)
        return AdapterSuccess(outputs={"image_ref": tag}, diagnostics=result.combined_output())


class DockerRegistryPushAdapter:
    """
    ``{image_ref, credential_ref}`` -> ``{pushed_ref}``.

    Logs in with ``--password-stdin`` so the secret never appears in argv, pushes, and
    reports the pushed digest when the CLI prints one.
    """

    adapter_id = REGISTRY_PUSH_ADAPTER

    def __init__(
        self,
        executor: CommandExecutor,
        *,
        registry: str,
        docker_binary: str = "docker",
        retryable_exit_codes: Sequence[int] = (),
    ) -> None:
        self._executor = executor
        self._registry = registry
        self._docker = docker_binary
        self._retryable_exit_codes = tuple(retryable_exit_codes)

    async def invoke(self, request: AdapterRequest, context: AdapterContext) -> AdapterOutcome:
        image_ref = require_str(request, "image_ref", self.adapter_id)
        credential_name = require_str(request, "credential_ref", self.adapter_id)
        credential = context.credential(credential_name)
        if credential.username is None:
            return AdapterFailure(
                kind=FailureKind.INVALID_CREDENTIAL,
                message=f"credential {credential_name!r} has no username for registry login",
            )

        login = await self._executor.run(
            CommandSpec(
                argv=(
                    self._docker,
                    "login",
                    self._registry,
                    "--username",
                    credential.username,
                    "--password-stdin",
                ),
                stdin_text=credential.secret,
            )
        )
        if not login.ok:
            failure = failure_from_command(login)
            if failure.kind is FailureKind.TOOL_ERROR:
                return AdapterFailure(
                    kind=FailureKind.INVALID_CREDENTIAL,
                    message=f"registry login rejected: {failure.message}",
                    diagnostics=failure.diagnostics,
                )
            return failure

        push = await self._executor.run(CommandSpec(argv=(self._docker, "push", image_ref)))
        if not push.ok:
            return failure_from_command(push, retryable_exit_codes=self._retryable_exit_codes)
        digest = parse_push_digest(push.stdout)
        pushed_ref = f"{image_ref.rsplit(':', 1)[0]}@{digest}" if digest else image_ref
        return AdapterSuccess(
            outputs={"pushed_ref": pushed_ref}, diagnostics=push.combined_output()
        )


def parse_push_digest(output: str) -> str | None:
    """Extract ``sha256:...`` from docker's ``<tag>: digest: sha256:... size: N`` line."""

    for line in output.splitlines():
        marker = "digest: "
        index = line.find(marker)
        if index < 0:
            continue
        digest = line[index + len(marker) :].split()[0]
        if digest.startswith("sha256:"):
            return digest
    return None


__all__ = [
    "DockerImageBuildAdapter",
    "DockerRegistryPushAdapter",
    "image_tag",
    "parse_push_digest",
]
