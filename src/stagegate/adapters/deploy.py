"""Remote deploy over ssh followed by an HTTP health check."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import httpx

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
from stagegate.adapters.http import ClientFactory, default_client_factory
from stagegate.constants import REMOTE_DEPLOY_ADAPTER
from stagegate.security.credentials import CredentialKind
from stagegate.utils.concurrency import Sleeper

DEFAULT_REMOTE_COMMAND: tuple[str, ...] = (
    "docker pull {image_ref} && docker rm -f {service} ; "
    "docker run -d --restart unless-stopped --name {service} {image_ref}",
)

# ssh reserves 255 for its own connection errors.
SSH_CONNECTION_ERROR = 255


class SshDeployAdapter:
    """
    ``{image_ref, target_host, credential_ref}`` -> ``{health_check_passed}``.

    The credential must be an ``ssh_key`` credential whose secret is the private key path.
    ``health_check_passed`` is reported as data; the stage definition decides that
    ``False`` fails the stage.
    """

    adapter_id = REMOTE_DEPLOY_ADAPTER

    def __init__(
        self,
        executor: CommandExecutor,
        *,
        service: str,
        remote_command: Sequence[str] = DEFAULT_REMOTE_COMMAND,
        health_url: str | None = None,
        health_attempts: int = 5,
        health_interval_seconds: float = 3.0,
        ssh_binary: str = "ssh",
        ssh_port: int = 22,
        client_factory: ClientFactory = default_client_factory,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if health_attempts < 1:
            raise ValueError("health_attempts must be >= 1")
        self._executor = executor
        self._service = service
        self._remote_command = tuple(remote_command)
        self._health_url = health_url
        self._health_attempts = health_attempts
        self._health_interval = health_interval_seconds
        self._ssh = ssh_binary
        self._ssh_port = ssh_port
        self._client_factory = client_factory
        self._sleep = sleep

    async def invoke(self, request: AdapterRequest, context: AdapterContext) -> AdapterOutcome:
        image_ref = require_str(request, "image_ref", self.adapter_id)
        target_host = require_str(request, "target_host", self.adapter_id)
        credential_name = require_str(request, "credential_ref", self.adapter_id)
        credential = context.credential(credential_name)
        if credential.kind is not CredentialKind.SSH_KEY or credential.username is None:
            return AdapterFailure(
                kind=FailureKind.INVALID_CREDENTIAL,
                message=(
                    f"credential {credential_name!r} must be an ssh_key credential with a username"
                ),
            )

        values = {"image_ref": image_ref, "target_host": target_host, "service": self._service}
        remote = " ".join(render_argv(self._remote_command, values, adapter_id=self.adapter_id))
        argv = (
            self._ssh,
            "-i",
            credential.secret,
            "-p",
            str(self._ssh_port),
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=accept-new",
            f"{credential.username}@{target_host}",
            remote,
        )
        result = await self._executor.run(CommandSpec(argv=argv))
        if not result.ok:
            failure = failure_from_command(result, retryable_exit_codes=(SSH_CONNECTION_ERROR,))
            if failure.code == f"exit_{SSH_CONNECTION_ERROR}":
                return AdapterFailure(
                    kind=FailureKind.UNREACHABLE,
                    message=f"ssh to {target_host} failed: {failure.message}",
                    diagnostics=failure.diagnostics,
                )
            return failure

        passed, health_log = await self._check_health(values, context)
        diagnostics = "\n".join(part for part in (result.combined_output(), health_log) if part)
        return AdapterSuccess(outputs={"health_check_passed": passed}, diagnostics=diagnostics)

    async def _check_health(
        self, values: dict[str, str], context: AdapterContext
    ) -> tuple[bool, str]:
        if self._health_url is None:
            return True, "no health check configured"
        url = self._health_url.format_map(values)
        log: list[str] = []
        async with self._client_factory(context.timeout_seconds) as client:
            for attempt in range(1, self._health_attempts + 1):
                try:
                    response = await client.get(url)
                    log.append(f"health attempt {attempt}: HTTP {response.status_code}")
                    if response.is_success:
                        return True, "\n".join(log)
                except httpx.HTTPError as exc:
                    log.append(f"health attempt {attempt}: {type(exc).__name__}")
                if attempt < self._health_attempts:
                    await self._sleep(self._health_interval)
        return False, "\n".join(log)


__all__ = ["DEFAULT_REMOTE_COMMAND", "SshDeployAdapter"]
