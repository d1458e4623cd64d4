"""Credential resolution and secret redaction."""

from stagegate.security.credentials import (
    CredentialKind,
    CredentialRef,
    CredentialResolver,
    CredentialSpec,
    EnvCredentialResolver,
    ResolvedCredential,
    StaticCredentialResolver,
)
from stagegate.security.redaction import (
    REDACTED_VALUE,
    SecretMasker,
    is_sensitive_key,
    redact_structure,
    redact_text,
)

__all__ = [
    "REDACTED_VALUE",
    "CredentialKind",
    "CredentialRef",
    "CredentialResolver",
    "CredentialSpec",
    "EnvCredentialResolver",
    "ResolvedCredential",
    "SecretMasker",
    "StaticCredentialResolver",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
]
