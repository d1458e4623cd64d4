"""
stagegate — engine wiring from validated config

File: src/stagegate/engine/bootstrap.py

Purpose
- Turn a validated config mapping into the default stage catalog, the adapter registry,
  credential specs, gate policies, and a ready ``PipelineEngine``.
- Every collaborator can be replaced by the caller (executor, HTTP client factory, history).
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from stagegate.adapters.base import AdapterRegistry, ToolAdapter
from stagegate.adapters.build import CommandBuildAdapter
from stagegate.adapters.command import CommandExecutor, LocalSubprocessExecutor
from stagegate.adapters.deploy import SshDeployAdapter
from stagegate.adapters.http import ClientFactory, default_client_factory
from stagegate.adapters.images import DockerImageBuildAdapter, DockerRegistryPushAdapter
from stagegate.adapters.notify import LogNotifier, WebhookNotifier
from stagegate.adapters.quality import SonarQualityGateAdapter
from stagegate.adapters.reports import JUnitReportAdapter
from stagegate.adapters.scanner import TrivyScannerAdapter
from stagegate.adapters.source import GitSourceAdapter
from stagegate.constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_BACKOFF_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_BACKOFF_SECONDS,
    DEFAULT_MAX_RETAINED_RUNS,
    DEFAULT_NOTIFIER_TIMEOUT_SECONDS,
    DEFAULT_STAGE_TIMEOUT_SECONDS,
)
from stagegate.domain.models import Finding, GatingPolicy
from stagegate.engine.engine import ConcurrencyPolicy, PipelineEngine
from stagegate.engine.stages import (
    RetryPolicy,
    StageDefinition,
    StageOverride,
    default_stage_catalog,
)
from stagegate.gates.policy import GatePolicy, policy_from_config
from stagegate.observability.events import RunEventBus
from stagegate.persistence.run_history import RunHistoryDB
from stagegate.security.credentials import CredentialKind, CredentialSpec, EnvCredentialResolver
from stagegate.security.redaction import SecretMasker
from stagegate.utils.concurrency import Sleeper


def _section(config: Mapping[str, Any], *path: str) -> Mapping[str, Any]:
    cursor: object = config
    for part in path:
        if not isinstance(cursor, Mapping):
            return {}
        cursor = cursor.get(part, {})
    return cursor if isinstance(cursor, Mapping) else {}


def credential_specs_from_config(config: Mapping[str, Any]) -> dict[str, CredentialSpec]:
    specs: dict[str, CredentialSpec] = {}
    for name, entry in sorted(_section(config, "credentials").items()):
        specs[name] = CredentialSpec(
            name=name,
            kind=CredentialKind(entry["kind"]),
            secret_env=entry["secret_env"],
            username_env=entry.get("username_env"),
            username=entry.get("username"),
        )
    return specs


def gate_policies_from_config(config: Mapping[str, Any]) -> dict[GatingPolicy, GatePolicy]:
    gates = _section(config, "gates")
    return {
        GatingPolicy(name): policy_from_config(name, section)
        for name, section in sorted(gates.items())
    }


def stage_overrides_from_config(config: Mapping[str, Any]) -> dict[str, StageOverride]:
    """``[stages.<name>]`` tables; retry fields not given fall back to the engine defaults."""

    overrides: dict[str, StageOverride] = {}
    for name, entry in sorted(_section(config, "stages").items()):
        retry: RetryPolicy | None = None
        if any(key != "timeout_seconds" for key in entry):
            retry = RetryPolicy(
                max_attempts=entry.get("max_attempts", DEFAULT_MAX_ATTEMPTS),
                backoff_seconds=entry.get("backoff_seconds", DEFAULT_BACKOFF_SECONDS),
                multiplier=entry.get("backoff_multiplier", DEFAULT_BACKOFF_MULTIPLIER),
                max_backoff_seconds=entry.get("max_backoff_seconds", DEFAULT_MAX_BACKOFF_SECONDS),
            )
        overrides[name] = StageOverride(timeout_seconds=entry.get("timeout_seconds"), retry=retry)
    return overrides


def build_stage_catalog(config: Mapping[str, Any]) -> tuple[StageDefinition, ...]:
    adapters = _section(config, "adapters")
    pipeline = _section(config, "pipeline")
    return default_stage_catalog(
        project_key=adapters["quality_gate"]["project_key"],
        target_host=adapters["remote_deploy"]["target_host"],
        severity_thresholds=adapters["vulnerability_scanner"].get(
            "severity_thresholds", "CRITICAL,HIGH,MEDIUM"
        ),
        default_timeout_seconds=pipeline.get(
            "default_timeout_seconds", DEFAULT_STAGE_TIMEOUT_SECONDS
        ),
        overrides=stage_overrides_from_config(config),
    )


def build_adapter_registry(
    config: Mapping[str, Any],
    *,
    executor: CommandExecutor,
    client_factory: ClientFactory = default_client_factory,
    sleep: Sleeper = asyncio.sleep,
) -> AdapterRegistry:
    """One adapter per catalog stage, configured from ``[adapters.*]``."""

    source = _section(config, "adapters", "source")
    build = _section(config, "adapters", "build")
    report = _section(config, "adapters", "test_report")
    quality = _section(config, "adapters", "quality_gate")
    image = _section(config, "adapters", "image_builder")
    scanner = _section(config, "adapters", "vulnerability_scanner")
    push = _section(config, "adapters", "registry_push")
    deploy = _section(config, "adapters", "remote_deploy")

    adapters: list[ToolAdapter] = [
        GitSourceAdapter(executor, git_binary=source.get("git_binary", "git")),
        CommandBuildAdapter(
            executor,
            command=tuple(build.get("command", ("make", "build"))),
            artifact_path=build.get("artifact_path", "dist"),
            retryable_exit_codes=tuple(build.get("retryable_exit_codes", ())),
        ),
        JUnitReportAdapter(report_glob=report.get("report_glob", "**/TEST-*.xml")),
        SonarQualityGateAdapter(
            base_url=quality["base_url"],
            credential=quality.get("credential_ref"),
            executor=executor,
            scanner_command=tuple(quality.get("scanner_command", ())),
            poll_interval_seconds=quality.get("poll_interval_seconds", 5.0),
            poll_timeout_seconds=quality.get("poll_timeout_seconds", 300.0),
            request_timeout_seconds=quality.get("request_timeout_seconds", 30.0),
            client_factory=client_factory,
            sleep=sleep,
        ),
        DockerImageBuildAdapter(
            executor,
            repository=image["repository"],
            tag_template=image.get("tag_template", "{short_ref}"),
            dockerfile=image.get("dockerfile", "Dockerfile"),
            docker_binary=image.get("docker_binary", "docker"),
            build_args=tuple(image.get("build_args", ())),
        ),
        TrivyScannerAdapter(
            executor,
            trivy_binary=scanner.get("trivy_binary", "trivy"),
            ignore_unfixed=scanner.get("ignore_unfixed", False),
            retryable_exit_codes=tuple(scanner.get("retryable_exit_codes", ())),
        ),
        DockerRegistryPushAdapter(
            executor,
            registry=push["registry"],
            docker_binary=push.get("docker_binary", "docker"),
            retryable_exit_codes=tuple(push.get("retryable_exit_codes", ())),
        ),
        SshDeployAdapter(
            executor,
            service=deploy.get("service", "app"),
            health_url=deploy.get("health_url"),
            health_attempts=deploy.get("health_attempts", 5),
            health_interval_seconds=deploy.get("health_interval_seconds", 3.0),
            ssh_binary=deploy.get("ssh_binary", "ssh"),
            ssh_port=deploy.get("ssh_port", 22),
            client_factory=client_factory,
            sleep=sleep,
        ),
    ]
    registry = AdapterRegistry()
    for adapter in adapters:
        registry.register(adapter)
    return registry


def build_notifier(
    config: Mapping[str, Any],
    *,
    client_factory: ClientFactory = default_client_factory,
    logger: Any | None = None,
) -> ToolAdapter:
    notifier = _section(config, "notifier")
    if notifier.get("kind") == "webhook":
        return WebhookNotifier(
            url=notifier["url"],
            signing_credential=notifier.get("signing_credential_ref"),
            client_factory=client_factory,
        )
    return LogNotifier(logger)


def build_engine(
    config: Mapping[str, Any],
    *,
    environ: Mapping[str, str] | None = None,
    executor: CommandExecutor | None = None,
    client_factory: ClientFactory = default_client_factory,
    history: RunHistoryDB | None = None,
    events: RunEventBus | None = None,
    masker: SecretMasker | None = None,
    sleep: Sleeper = asyncio.sleep,
    logger: Any | None = None,
) -> PipelineEngine:
    """
    Assemble a ``PipelineEngine`` for the pipeline described by ``config``.

    Pass the same ``masker`` to the logging setup so resolved secrets are masked in log
    lines as well as in stage diagnostics.
    """

    pipeline = _section(config, "pipeline")
    paths = _section(config, "paths")
    resolver = EnvCredentialResolver(
        credential_specs_from_config(config), environ=environ, masker=masker
    )

    if history is None and isinstance(paths.get("state_db"), str):
        history = RunHistoryDB(paths["state_db"])

    context_defaults: dict[str, Finding] = {"branch": pipeline.get("branch", "main")}
    if isinstance(pipeline.get("repo"), str):
        context_defaults["repo"] = pipeline["repo"]

    workspace_root = paths.get("workspace_root")
    return PipelineEngine(
        pipeline_id=pipeline["id"],
        stages=build_stage_catalog(config),
        adapters=build_adapter_registry(
            config,
            executor=executor if executor is not None else LocalSubprocessExecutor(),
            client_factory=client_factory,
            sleep=sleep,
        ),
        credentials=resolver,
        masker=resolver.masker,
        policies=gate_policies_from_config(config),
        notifier=build_notifier(config, client_factory=client_factory, logger=logger),
        concurrency=ConcurrencyPolicy(pipeline.get("concurrency", ConcurrencyPolicy.REJECT.value)),
        context_defaults=context_defaults,
        workspace=Path(workspace_root) if isinstance(workspace_root, str) else None,
        history=history,
        events=events,
        notifier_timeout_seconds=pipeline.get(
            "notifier_timeout_seconds", DEFAULT_NOTIFIER_TIMEOUT_SECONDS
        ),
        max_retained_runs=pipeline.get("max_retained_runs", DEFAULT_MAX_RETAINED_RUNS),
        sleep=sleep,
        logger=logger,
    )


__all__ = [
    "build_adapter_registry",
    "build_engine",
    "build_notifier",
    "build_stage_catalog",
    "credential_specs_from_config",
    "gate_policies_from_config",
    "stage_overrides_from_config",
]
