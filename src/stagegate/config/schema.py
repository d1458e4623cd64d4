"""
stagegate — configuration schema and validation.

File: src/stagegate/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.
- Return structured issues (field path + message) instead of failing on the first error.

Rules
- Unknown keys are rejected. Keys that look like secrets are rejected with a message
  pointing at the ``*_env`` convention; credentials are declared by env var name only.
- Gate thresholds are parsed with the same code the engine uses, so a config that
  validates here evaluates identically at run time.
- Profile overlays (``strict``, ``permissive``, or user-defined) are validated as partial
  documents and re-validated after merging.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, TypedDict

from stagegate.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_MAX_RETAINED_RUNS,
    DEFAULT_NOTIFIER_TIMEOUT_SECONDS,
    DEFAULT_STAGE_NAMES_IN_ORDER,
    DEFAULT_STAGE_TIMEOUT_SECONDS,
    DEPLOY_SSH_CREDENTIAL,
    REGISTRY_CREDENTIAL,
)
from stagegate.gates.policy import policy_from_config
from stagegate.security.credentials import CredentialKind

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "permissive")
CONCURRENCY_POLICIES: Final[tuple[str, ...]] = ("reject", "queue")
NOTIFIER_KINDS: Final[tuple[str, ...]] = ("log", "webhook")
GATE_NAMES: Final[tuple[str, ...]] = ("quality", "security")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "passphrase", "apikey", "private", "auth"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)
_REFERENCE_SUFFIXES: Final[tuple[str, ...]] = ("_env", "_ref")

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "workspace_root"),
    ("paths", "state_db"),
    ("observability", "log_dir"),
)

_ROOT_SECTIONS: Final[frozenset[str]] = frozenset(
    {
        "meta",
        "pipeline",
        "stages",
        "gates",
        "adapters",
        "credentials",
        "notifier",
        "paths",
        "observability",
        "profiles",
    }
)
_REQUIRED_ROOT_SECTIONS: Final[frozenset[str]] = frozenset(
    {"meta", "pipeline", "gates", "adapters", "credentials", "notifier", "paths", "observability"}
)
_OVERLAY_SECTIONS: Final[frozenset[str]] = frozenset(
    {"pipeline", "stages", "gates", "adapters", "notifier", "paths", "observability"}
)


class PipelineConfig(TypedDict, total=False):
    id: str
    repo: str
    branch: str
    branches: list[str]
    concurrency: str
    default_timeout_seconds: float
    poll_interval_seconds: float
    notifier_timeout_seconds: float
    max_retained_runs: int


class CredentialConfig(TypedDict, total=False):
    kind: str
    secret_env: str
    username_env: str
    username: str


class StagegateConfig(TypedDict, total=False):
    meta: dict[str, int]
    pipeline: PipelineConfig
    stages: dict[str, dict[str, Any]]
    gates: dict[str, dict[str, Any]]
    adapters: dict[str, dict[str, Any]]
    credentials: dict[str, CredentialConfig]
    notifier: dict[str, Any]
    paths: dict[str, str]
    observability: dict[str, Any]
    profiles: dict[str, dict[str, Any]]


DEFAULT_CONFIG: Final[StagegateConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "pipeline": {
        "id": "default",
        "branch": "main",
        "branches": [],
        "concurrency": "reject",
        "default_timeout_seconds": DEFAULT_STAGE_TIMEOUT_SECONDS,
        "notifier_timeout_seconds": DEFAULT_NOTIFIER_TIMEOUT_SECONDS,
        "max_retained_runs": DEFAULT_MAX_RETAINED_RUNS,
    },
    "stages": {},
    "gates": {
        "quality": {
            "thresholds": ["new_issues == 0", "coverage >= 80.0", "critical_bugs == 0"],
            "warn": ["rating <= B"],
            "honor_tool_blocking": True,
        },
        "security": {
            "thresholds": ["critical_cves == 0", "secrets == 0", "malware == 0", "high_cves <= 2"],
            "warn": [],
            "honor_tool_blocking": True,
        },
    },
    "adapters": {
        "source": {"git_binary": "git"},
        "build": {"command": ["make", "build"], "artifact_path": "dist"},
        "test_report": {"report_glob": "**/TEST-*.xml"},
        "quality_gate": {
            "base_url": "http://localhost:9000",
            "project_key": "default",
            "scanner_command": [],
            "poll_interval_seconds": 5.0,
            "poll_timeout_seconds": 300.0,
        },
        "image_builder": {
            "repository": "stagegate/app",
            "tag_template": "{short_ref}",
            "dockerfile": "Dockerfile",
            "docker_binary": "docker",
        },
        "vulnerability_scanner": {
            "trivy_binary": "trivy",
            "severity_thresholds": "CRITICAL,HIGH,MEDIUM",
            "ignore_unfixed": False,
        },
        "registry_push": {"registry": "registry.local:5000", "docker_binary": "docker"},
        "remote_deploy": {
            "target_host": "localhost",
            "service": "app",
            "health_attempts": 5,
            "health_interval_seconds": 3.0,
            "ssh_port": 22,
            "ssh_binary": "ssh",
        },
    },
    "credentials": {
        REGISTRY_CREDENTIAL: {
            "kind": "username_password",
            "secret_env": "REGISTRY_PASSWORD",
            "username_env": "REGISTRY_USERNAME",
        },
        DEPLOY_SSH_CREDENTIAL: {
            "kind": "ssh_key",
            "secret_env": "DEPLOY_SSH_KEY_PATH",
            "username": "deploy",
        },
    },
    "notifier": {"kind": "log"},
    "paths": {"workspace_root": "workspace/", "state_db": "state/runs.sqlite"},
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs/",
        "redact_secrets": True,
        "log_to_stdout": False,
    },
    "profiles": {
        "strict": {
            "pipeline": {"concurrency": "reject"},
            "gates": {
                "quality": {"honor_tool_blocking": True},
                "security": {"honor_tool_blocking": True},
            },
        },
        "permissive": {
            "pipeline": {"concurrency": "queue"},
            "gates": {"quality": {"honor_tool_blocking": False}},
            "stages": {"build": {"max_attempts": 3}, "deploy": {"max_attempts": 2}},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


_SectionValidator = Callable[[dict[str, object], str, _IssueCollector, bool], dict[str, Any]]


def default_config() -> StagegateConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade stagegate.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the stagegate runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``. Arrays are replaced."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the result."""

    materialized = _deep_copy_mapping(config)
    if profile is None or not profile.strip():
        return materialized
    selected = profile.strip()

    profiles = materialized.get("profiles")
    overlay = profiles.get(selected) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(materialized, overlay))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Deterministic redacted representation for logs and ``stagegate config``."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    return redacted if isinstance(redacted, dict) else {}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, _ROOT_SECTIONS, "", issues)
    _require_keys(payload, _REQUIRED_ROOT_SECTIONS, "", issues)

    out: dict[str, Any] = {}
    validators: dict[str, _SectionValidator] = {
        "meta": _validate_meta,
        "pipeline": _validate_pipeline,
        "stages": _validate_stages,
        "gates": _validate_gates,
        "adapters": _validate_adapters,
        "credentials": _validate_credentials,
        "notifier": _validate_notifier,
        "paths": _validate_paths,
        "observability": _validate_observability,
    }
    for key in sorted(validators):
        _section(
            payload,
            key,
            issues,
            lambda section, path, key=key: validators[key](section, path, issues, False),
            out,
        )

    profiles_raw = payload.get("profiles")
    if profiles_raw is not None:
        profiles = _as_object(profiles_raw, "profiles", issues)
        if profiles is not None:
            out["profiles"] = _validate_profiles(profiles, "profiles", issues, validators)

    _validate_credential_references(out, issues)
    return out


def _section(
    payload: Mapping[str, object],
    key: str,
    issues: _IssueCollector,
    validator: Callable[[dict[str, object], str], dict[str, Any]],
    out: dict[str, Any],
    *,
    path: str = "",
) -> None:
    raw = payload.get(key)
    if raw is None:
        return
    section_path = _join(path, key)
    section = _as_object(raw, section_path, issues)
    if section is None:
        return
    out[key] = validator(section, section_path)


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    if not partial:
        _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_pipeline(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    fields: dict[str, Callable[[object, str], object]] = {
        "id": lambda value, field_path: _as_name(value, field_path, issues),
        "repo": lambda value, field_path: _as_str(value, field_path, issues),
        "branch": lambda value, field_path: _as_str(value, field_path, issues),
        "branches": lambda value, field_path: _as_str_list(value, field_path, issues),
        "concurrency": lambda value, field_path: _as_enum(
            value, field_path, issues, allowed_values=CONCURRENCY_POLICIES
        ),
        "default_timeout_seconds": lambda value, field_path: _as_float(
            value, field_path, issues, minimum=0.001
        ),
        "poll_interval_seconds": lambda value, field_path: _as_float(
            value, field_path, issues, minimum=1.0
        ),
        "notifier_timeout_seconds": lambda value, field_path: _as_float(
            value, field_path, issues, minimum=0.001
        ),
        "max_retained_runs": lambda value, field_path: _as_int(
            value, field_path, issues, minimum=1
        ),
    }
    required = set() if partial else {"id", "branch", "concurrency", "default_timeout_seconds"}
    return _validate_fields(payload, path, issues, fields, required=required)


def _validate_stages(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    del partial
    fields: dict[str, Callable[[object, str], object]] = {
        "timeout_seconds": _bounded_float(issues, 0.001),
        "max_attempts": lambda value, field_path: _as_int(value, field_path, issues, minimum=1),
        "backoff_seconds": _bounded_float(issues, 0.0),
        "backoff_multiplier": _bounded_float(issues, 1.0),
        "max_backoff_seconds": _bounded_float(issues, 0.0),
    }
    out: dict[str, Any] = {}
    for stage_name in sorted(payload):
        stage_path = _join(path, stage_name)
        if stage_name not in DEFAULT_STAGE_NAMES_IN_ORDER:
            expected = ", ".join(DEFAULT_STAGE_NAMES_IN_ORDER)
            issues.add(stage_path, f"unknown stage; expected one of: {expected}")
            continue
        stage = _as_object(payload[stage_name], stage_path, issues)
        if stage is not None:
            out[stage_name] = _validate_fields(stage, stage_path, issues, fields, required=set())
    return out


def _validate_gates(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(GATE_NAMES), path, issues)
    if not partial:
        _require_keys(payload, set(GATE_NAMES), path, issues)
    fields: dict[str, Callable[[object, str], object]] = {
        "thresholds": lambda value, field_path: _as_threshold_list(value, field_path, issues),
        "warn": lambda value, field_path: _as_str_list(value, field_path, issues),
        "honor_tool_blocking": lambda value, field_path: _as_bool(value, field_path, issues),
    }
    out: dict[str, Any] = {}
    for gate_name in GATE_NAMES:
        if gate_name not in payload:
            continue
        gate_path = _join(path, gate_name)
        gate = _as_object(payload[gate_name], gate_path, issues)
        if gate is None:
            continue
        parsed = _validate_fields(gate, gate_path, issues, fields, required=set())
        if not partial:
            try:
                policy_from_config(gate_name, parsed)
            except ValueError as exc:
                issues.add(gate_path, str(exc))
        out[gate_name] = parsed
    return out


_ADAPTER_FIELDS: Final[dict[str, dict[str, str]]] = {
    "source": {"git_binary": "str"},
    "build": {"command": "str_list", "artifact_path": "str", "retryable_exit_codes": "int_list"},
    "test_report": {"report_glob": "str"},
    "quality_gate": {
        "base_url": "url",
        "project_key": "str",
        "credential_ref": "name",
        "scanner_command": "str_list",
        "poll_interval_seconds": "positive_float",
        "poll_timeout_seconds": "positive_float",
        "request_timeout_seconds": "positive_float",
    },
    "image_builder": {
        "repository": "str",
        "tag_template": "str",
        "dockerfile": "str",
        "docker_binary": "str",
        "build_args": "str_list",
    },
    "vulnerability_scanner": {
        "trivy_binary": "str",
        "severity_thresholds": "str",
        "ignore_unfixed": "bool",
        "retryable_exit_codes": "int_list",
    },
    "registry_push": {
        "registry": "str",
        "docker_binary": "str",
        "retryable_exit_codes": "int_list",
    },
    "remote_deploy": {
        "target_host": "str",
        "service": "str",
        "health_url": "url",
        "health_attempts": "positive_int",
        "health_interval_seconds": "non_negative_float",
        "ssh_port": "positive_int",
        "ssh_binary": "str",
    },
}


def _validate_adapters(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(_ADAPTER_FIELDS), path, issues)
    out: dict[str, Any] = {}
    for adapter_name in sorted(_ADAPTER_FIELDS):
        if adapter_name not in payload:
            continue
        adapter_path = _join(path, adapter_name)
        section = _as_object(payload[adapter_name], adapter_path, issues)
        if section is None:
            continue
        fields = {
            key: _typed_field(kind, issues) for key, kind in _ADAPTER_FIELDS[adapter_name].items()
        }
        out[adapter_name] = _validate_fields(section, adapter_path, issues, fields, required=set())
    return out


def _validate_credentials(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    del partial
    fields: dict[str, Callable[[object, str], object]] = {
        "kind": lambda value, field_path: _as_enum(
            value, field_path, issues, allowed_values=tuple(item.value for item in CredentialKind)
        ),
        "secret_env": lambda value, field_path: _as_env_name(value, field_path, issues),
        "username_env": lambda value, field_path: _as_env_name(value, field_path, issues),
        "username": lambda value, field_path: _as_str(value, field_path, issues),
    }
    out: dict[str, Any] = {}
    for name in sorted(payload):
        entry_path = _join(path, name)
        if not _NAME_PATTERN.fullmatch(name):
            issues.add(entry_path, "credential name must match ^[a-z][a-z0-9_-]*$")
            continue
        entry = _as_object(payload[name], entry_path, issues)
        if entry is None:
            continue
        parsed = _validate_fields(
            entry, entry_path, issues, fields, required={"kind", "secret_env"}
        )
        kind = parsed.get("kind")
        if kind in {CredentialKind.USERNAME_PASSWORD.value, CredentialKind.SSH_KEY.value}:
            if "username" not in parsed and "username_env" not in parsed:
                issues.add(entry_path, f"{kind} credentials require username or username_env")
        out[name] = parsed
    return out


def _validate_notifier(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    fields: dict[str, Callable[[object, str], object]] = {
        "kind": lambda value, field_path: _as_enum(
            value, field_path, issues, allowed_values=NOTIFIER_KINDS
        ),
        "url": _typed_field("url", issues),
        "signing_credential_ref": lambda value, field_path: _as_name(value, field_path, issues),
    }
    required = set() if partial else {"kind"}
    parsed = _validate_fields(payload, path, issues, fields, required=required)
    if not partial and parsed.get("kind") == "webhook" and "url" not in parsed:
        issues.add(_join(path, "url"), "webhook notifier requires url")
    return parsed


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    fields: dict[str, Callable[[object, str], object]] = {
        "workspace_root": lambda value, field_path: _as_path_text(value, field_path, issues),
        "state_db": lambda value, field_path: _as_path_text(value, field_path, issues),
    }
    required = set() if partial else {"workspace_root"}
    return _validate_fields(payload, path, issues, fields, required=required)


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    fields: dict[str, Callable[[object, str], object]] = {
        "log_level": lambda value, field_path: _as_enum(
            value, field_path, issues, allowed_values=LOG_LEVELS
        ),
        "log_dir": lambda value, field_path: _as_path_text(value, field_path, issues),
        "redact_secrets": lambda value, field_path: _as_bool(value, field_path, issues),
        "log_to_stdout": lambda value, field_path: _as_bool(value, field_path, issues),
    }
    required = set() if partial else {"log_level", "log_dir", "redact_secrets"}
    return _validate_fields(payload, path, issues, fields, required=required)


def _validate_profiles(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    validators: Mapping[str, _SectionValidator],
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        overlay = _as_object(payload[profile_name], profile_path, issues)
        if overlay is None:
            continue
        _reject_unknown_keys(overlay, _OVERLAY_SECTIONS, profile_path, issues)
        parsed: dict[str, Any] = {}
        for section in sorted(_OVERLAY_SECTIONS):
            _section(
                overlay,
                section,
                issues,
                lambda section_obj, section_path, section=section: validators[section](
                    section_obj, section_path, issues, True
                ),
                parsed,
                path=profile_path,
            )
        out[profile_name] = parsed
    return out


def _validate_credential_references(config: Mapping[str, Any], issues: _IssueCollector) -> None:
    credentials = config.get("credentials")
    if not isinstance(credentials, Mapping):
        return
    references: list[tuple[str, str]] = []
    adapters = config.get("adapters", {})
    quality = adapters.get("quality_gate", {}) if isinstance(adapters, Mapping) else {}
    if isinstance(quality, Mapping) and isinstance(quality.get("credential_ref"), str):
        references.append(("adapters.quality_gate.credential_ref", quality["credential_ref"]))
    notifier = config.get("notifier", {})
    if isinstance(notifier, Mapping) and isinstance(notifier.get("signing_credential_ref"), str):
        references.append(("notifier.signing_credential_ref", notifier["signing_credential_ref"]))
    for name in (REGISTRY_CREDENTIAL, DEPLOY_SSH_CREDENTIAL):
        references.append((f"credentials.{name}", name))
    for field_path, name in references:
        if name not in credentials:
            issues.add(field_path, f"credential {name!r} is not declared under [credentials]")


def _validate_fields(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    fields: Mapping[str, Callable[[object, str], object]],
    *,
    required: set[str],
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(fields), path, issues)
    _require_keys(payload, required, path, issues)
    out: dict[str, Any] = {}
    for key in sorted(fields):
        if key not in payload:
            continue
        parsed = fields[key](payload[key], _join(path, key))
        if parsed is not None:
            out[key] = parsed
    return out


def _typed_field(kind: str, issues: _IssueCollector) -> Callable[[object, str], object]:
    if kind == "str":
        return lambda value, path: _as_str(value, path, issues)
    if kind == "name":
        return lambda value, path: _as_name(value, path, issues)
    if kind == "url":
        return lambda value, path: _as_url(value, path, issues)
    if kind == "bool":
        return lambda value, path: _as_bool(value, path, issues)
    if kind == "str_list":
        return lambda value, path: _as_str_list(value, path, issues)
    if kind == "int_list":
        return lambda value, path: _as_int_list(value, path, issues)
    if kind == "positive_int":
        return lambda value, path: _as_int(value, path, issues, minimum=1)
    if kind == "positive_float":
        return lambda value, path: _as_float(value, path, issues, minimum=0.001)
    if kind == "non_negative_float":
        return lambda value, path: _as_float(value, path, issues, minimum=0.0)
    raise ValueError(f"unknown field kind {kind!r}")


def _bounded_float(issues: _IssueCollector, minimum: float) -> Callable[[object, str], object]:
    return lambda value, path: _as_float(value, path, issues, minimum=minimum)


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must match ^[a-z][a-z0-9_-]*$")
        return None
    return parsed


def _as_url(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not parsed.startswith(("http://", "https://")):
        issues.add(path, "must be an http(s) URL")
        return None
    if "@" in parsed.split("//", 1)[1].split("/", 1)[0]:
        issues.add(path, "embedded credentials in URLs are forbidden; use a credential reference")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: REGISTRY_PASSWORD)")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object, path: str, issues: _IssueCollector, *, minimum: int | None = None
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object, path: str, issues: _IssueCollector, *, minimum: float | None = None
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object, path: str, issues: _IssueCollector, *, allowed_values: tuple[str, ...]
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, list):
        issues.add(path, f"expected array, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]", issues)
        if parsed is not None:
            out.append(parsed)
    return out


def _as_int_list(value: object, path: str, issues: _IssueCollector) -> list[int] | None:
    if not isinstance(value, list):
        issues.add(path, f"expected array, got {type(value).__name__}")
        return None
    out: list[int] = []
    for index, item in enumerate(value):
        parsed = _as_int(item, f"{path}[{index}]", issues, minimum=0)
        if parsed is not None:
            out.append(parsed)
    return out


def _as_threshold_list(value: object, path: str, issues: _IssueCollector) -> list[object] | None:
    if not isinstance(value, list):
        issues.add(path, f"expected array, got {type(value).__name__}")
        return None
    out: list[object] = []
    for index, item in enumerate(value):
        item_path = f"{path}[{index}]"
        if isinstance(item, str):
            out.append(item.strip())
        elif isinstance(item, Mapping):
            out.append(_deep_copy_mapping(item))
        else:
            issues.add(item_path, f"expected expression string or table, got {type(item).__name__}")
    return out


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str] | frozenset[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str] | frozenset[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith(_REFERENCE_SUFFIXES):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    return any(token in _SENSITIVE_KEY_TOKENS for token in normalized.split("_") if token)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    return key if not path else f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            nested = _deep_copy_mapping(existing) if isinstance(existing, Mapping) else {}
            _merge_into(nested, value)
            target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value) if isinstance(key, str)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return _deep_copy_mapping(value)
    if isinstance(value, (list, tuple)):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        return {
            key: (
                "<redacted>"
                if _key_is_sensitive_for_redaction(key)
                else _redact_value(value[key], key)
            )
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


def _key_is_sensitive_for_redaction(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return True
    return _looks_sensitive_key(normalized)


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "CONCURRENCY_POLICIES",
    "DEFAULT_CONFIG",
    "GATE_NAMES",
    "NOTIFIER_KINDS",
    "PATH_FIELDS",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "StagegateConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
