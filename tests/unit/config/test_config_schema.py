"""Unit tests for config schema validation, profiles, and redaction."""

from __future__ import annotations

from typing import Any

import pytest

from stagegate.config.schema import (
    ConfigSchemaVersion,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)


def _issues(config: object) -> dict[str, str]:
    result = validate_config(config)
    assert not result.is_valid
    return {issue.path: issue.message for issue in result.issues}


def _with(**sections: dict[str, Any]) -> dict[str, Any]:
    return merge_config(default_config(), sections)


def test_defaults_are_valid() -> None:
    result = validate_config(default_config())

    assert result.is_valid
    assert result.config is not None
    assert result.config["meta"]["schema_version"] == ConfigSchemaVersion
    assert set(result.config["profiles"]) == {"strict", "permissive"}


def test_default_config_returns_independent_copies() -> None:
    first = default_config()
    first["pipeline"]["id"] = "changed"

    assert default_config()["pipeline"]["id"] == "default"


def test_non_object_root() -> None:
    assert _issues([]) == {"<root>": "expected object, got list"}


def test_unknown_root_section_is_rejected() -> None:
    config = default_config()
    config["plugins"] = {}  # type: ignore[typeddict-unknown-key]

    assert _issues(config) == {"plugins": "unknown field"}


def test_missing_required_sections_are_reported() -> None:
    config = dict(default_config())
    del config["gates"]
    del config["paths"]

    issues = _issues(config)

    assert issues["gates"] == "missing required field"
    assert issues["paths"] == "missing required field"


@pytest.mark.parametrize(
    ("sections", "path", "fragment"),
    [
        ({"pipeline": {"concurrency": "parallel"}}, "pipeline.concurrency", "expected one of: queue, reject"),
        ({"pipeline": {"default_timeout_seconds": 0}}, "pipeline.default_timeout_seconds", "must be >= 0.001"),
        ({"pipeline": {"id": "Acme App"}}, "pipeline.id", "must match"),
        ({"pipeline": {"poll_interval_seconds": True}}, "pipeline.poll_interval_seconds", "expected number"),
        ({"stages": {"lint": {"max_attempts": 2}}}, "stages.lint", "unknown stage"),
        ({"stages": {"build": {"max_attempts": 0}}}, "stages.build.max_attempts", "must be >= 1"),
        ({"stages": {"build": {"retries": 2}}}, "stages.build.retries", "unknown field"),
        ({"adapters": {"quality_gate": {"base_url": "ftp://sonar"}}}, "adapters.quality_gate.base_url", "http(s)"),
        (
            {"adapters": {"quality_gate": {"base_url": "https://admin:pw@sonar"}}},
            "adapters.quality_gate.base_url",
            "embedded credentials",
        ),
        ({"adapters": {"kubernetes": {}}}, "adapters.kubernetes", "unknown field"),
        ({"notifier": {"kind": "webhook"}}, "notifier.url", "requires url"),
        ({"observability": {"log_level": "TRACE"}}, "observability.log_level", "expected one of"),
        ({"meta": {"schema_version": 99}}, "meta.schema_version", "newer than supported"),
        ({"gates": {"quality": {"thresholds": ["coverage >>> 80"]}}}, "gates.quality", ""),
    ],
)
def test_field_validation(sections: dict[str, Any], path: str, fragment: str) -> None:
    issues = _issues(_with(**sections))

    assert path in issues
    assert fragment in issues[path]


@pytest.mark.parametrize("key", ["password", "apiKey", "client_secret", "auth_token"])
def test_secret_looking_keys_are_rejected(key: str) -> None:
    issues = _issues(_with(pipeline={key: "hunter2"}))

    assert "embedded secret values are forbidden" in issues[f"pipeline.{key}"]


def test_credentials_are_declared_by_env_var_name() -> None:
    issues = _issues(
        _with(credentials={"registry": {"secret_env": "registry-password"}, "Bad Name": {"kind": "token"}})
    )

    assert issues["credentials.registry.secret_env"].startswith("must be an env var name")
    assert "credential name must match" in issues["credentials.Bad Name"]


def test_password_credentials_need_a_username() -> None:
    config = default_config()
    config["credentials"]["registry"] = {"kind": "username_password", "secret_env": "REGISTRY_PASSWORD"}

    assert _issues(config) == {
        "credentials.registry": "username_password credentials require username or username_env"
    }


def test_references_must_name_declared_credentials() -> None:
    config = default_config()
    del config["credentials"]["deploy_ssh"]
    config["notifier"] = {"kind": "webhook", "url": "https://hooks.example.com/ci", "signing_credential_ref": "hmac"}

    issues = _issues(config)

    assert issues["credentials.deploy_ssh"] == "credential 'deploy_ssh' is not declared under [credentials]"
    assert issues["notifier.signing_credential_ref"] == "credential 'hmac' is not declared under [credentials]"


def test_issues_are_collected_not_first_only() -> None:
    issues = _issues(
        _with(
            pipeline={"concurrency": "x", "default_timeout_seconds": -1},
            observability={"redact_secrets": "yes"},
        )
    )

    assert len(issues) == 3


def test_assert_valid_config_raises_with_rendered_issues() -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(_with(pipeline={"concurrency": "x"}))

    assert "- pipeline.concurrency: invalid value 'x'" in str(excinfo.value)
    assert len(excinfo.value.issues) == 1


def test_merge_replaces_arrays_and_merges_tables() -> None:
    merged = merge_config(
        {"gates": {"quality": {"thresholds": ["a == 1"], "warn": ["b <= 2"]}}},
        {"gates": {"quality": {"thresholds": ["c >= 3"]}}},
    )

    assert merged == {"gates": {"quality": {"thresholds": ["c >= 3"], "warn": ["b <= 2"]}}}


def test_permissive_profile_overlay() -> None:
    config = apply_profile_overlay(default_config(), "permissive")

    assert config["pipeline"]["concurrency"] == "queue"
    assert config["gates"]["quality"]["honor_tool_blocking"] is False
    assert config["stages"]["build"]["max_attempts"] == 3
    assert config["gates"]["quality"]["thresholds"] == default_config()["gates"]["quality"]["thresholds"]


def test_unknown_profile_is_rejected() -> None:
    with pytest.raises(ConfigValidationError, match="profile 'fast' is not defined"):
        apply_profile_overlay(default_config(), "fast")


def test_profile_overlays_are_validated_as_partial_documents() -> None:
    config = default_config()
    config["profiles"]["nightly"] = {"pipeline": {"concurrency": "queue"}, "credentials": {}}

    issues = _issues(config)

    assert list(issues) == ["profiles.nightly.credentials"]


def test_redact_config_hides_env_references() -> None:
    redacted = redact_config(default_config())

    assert redacted["credentials"]["registry"]["secret_env"] == "<redacted>"
    assert redacted["credentials"]["deploy_ssh"]["username"] == "deploy"
    assert redact_config("not-a-mapping") == {}


def test_migration_guidance_messages() -> None:
    assert "older than supported" in migration_guidance(ConfigSchemaVersion - 1)
    assert "newer than supported" in migration_guidance(ConfigSchemaVersion + 1)
    assert migration_guidance(ConfigSchemaVersion) == "schema version is current"
