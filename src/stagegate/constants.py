"""Stable constants shared across the engine, adapters, and config layers."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Stage identifiers of the default pipeline catalog, in declared order.
CHECKOUT_STAGE: Final[str] = "checkout"
BUILD_STAGE: Final[str] = "build"
TEST_REPORT_STAGE: Final[str] = "test_report"
QUALITY_GATE_STAGE: Final[str] = "quality_gate"
IMAGE_BUILD_STAGE: Final[str] = "image_build"
VULNERABILITY_SCAN_STAGE: Final[str] = "vulnerability_scan"
REGISTRY_PUSH_STAGE: Final[str] = "registry_push"
DEPLOY_STAGE: Final[str] = "deploy"

DEFAULT_STAGE_NAMES_IN_ORDER: Final[tuple[str, ...]] = (
    CHECKOUT_STAGE,
    BUILD_STAGE,
    TEST_REPORT_STAGE,
    QUALITY_GATE_STAGE,
    IMAGE_BUILD_STAGE,
    VULNERABILITY_SCAN_STAGE,
    REGISTRY_PUSH_STAGE,
    DEPLOY_STAGE,
)

# Adapter identifiers.
SOURCE_ADAPTER: Final[str] = "source"
BUILD_ADAPTER: Final[str] = "build"
TEST_REPORT_ADAPTER: Final[str] = "test_report"
QUALITY_GATE_ADAPTER: Final[str] = "quality_gate"
IMAGE_BUILDER_ADAPTER: Final[str] = "image_builder"
VULNERABILITY_SCANNER_ADAPTER: Final[str] = "vulnerability_scanner"
REGISTRY_PUSH_ADAPTER: Final[str] = "registry_push"
REMOTE_DEPLOY_ADAPTER: Final[str] = "remote_deploy"
NOTIFIER_ADAPTER: Final[str] = "notifier"

# Credential reference names used by the default catalog.
REGISTRY_CREDENTIAL: Final[str] = "registry"
DEPLOY_SSH_CREDENTIAL: Final[str] = "deploy_ssh"
QUALITY_TOKEN_CREDENTIAL: Final[str] = "quality_token"

# Execution defaults.
DEFAULT_STAGE_TIMEOUT_SECONDS: Final[float] = 600.0
DEFAULT_MAX_ATTEMPTS: Final[int] = 1
DEFAULT_BACKOFF_SECONDS: Final[float] = 2.0
DEFAULT_BACKOFF_MULTIPLIER: Final[float] = 2.0
DEFAULT_MAX_BACKOFF_SECONDS: Final[float] = 60.0
DEFAULT_NOTIFIER_TIMEOUT_SECONDS: Final[float] = 30.0
DEFAULT_MAX_RETAINED_RUNS: Final[int] = 200
DEADLINE_EXCEEDED: Final[str] = "deadline exceeded"

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
RUN_HISTORY_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
WORKSPACE_DIR: Final[PurePosixPath] = PurePosixPath("workspace")
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")

__all__ = [
    "BUILD_ADAPTER",
    "BUILD_STAGE",
    "CHECKOUT_STAGE",
    "CONFIG_SCHEMA_VERSION",
    "DEADLINE_EXCEEDED",
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_BACKOFF_SECONDS",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MAX_BACKOFF_SECONDS",
    "DEFAULT_MAX_RETAINED_RUNS",
    "DEFAULT_NOTIFIER_TIMEOUT_SECONDS",
    "DEFAULT_STAGE_NAMES_IN_ORDER",
    "DEFAULT_STAGE_TIMEOUT_SECONDS",
    "DEPLOY_SSH_CREDENTIAL",
    "DEPLOY_STAGE",
    "IMAGE_BUILDER_ADAPTER",
    "IMAGE_BUILD_STAGE",
    "LOG_DIR",
    "NOTIFIER_ADAPTER",
    "QUALITY_GATE_ADAPTER",
    "QUALITY_GATE_STAGE",
    "QUALITY_TOKEN_CREDENTIAL",
    "REGISTRY_CREDENTIAL",
    "REGISTRY_PUSH_ADAPTER",
    "REGISTRY_PUSH_STAGE",
    "REMOTE_DEPLOY_ADAPTER",
    "RUN_HISTORY_SCHEMA_VERSION",
    "SOURCE_ADAPTER",
    "STATE_DIR",
    "TEST_REPORT_ADAPTER",
    "TEST_REPORT_STAGE",
    "VULNERABILITY_SCANNER_ADAPTER",
    "VULNERABILITY_SCAN_STAGE",
    "WORKSPACE_DIR",
]
