"""
stagegate — secret redaction

File: src/stagegate/security/redaction.py

Purpose
- Pattern-based redaction of secret-looking text (bearer tokens, key assignments, private
  key blocks, userinfo in URLs, well-known token formats).
- Exact masking of every resolved credential value through ``SecretMasker``; adapter
  diagnostics pass through both layers before they enter a StageResult.

Behavior
- Deterministic and idempotent for stable inputs.
- Structures are deep-copied; values under sensitive keys are replaced wholesale.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Final

REDACTED_VALUE: Final[str] = "***REDACTED***"

# Values shorter than this are not masked verbatim; they would shred ordinary words.
MIN_MASKABLE_SECRET_LENGTH: Final[int] = 4

_SENSITIVE_KEYS: Final[frozenset[str]] = frozenset(
    {
        "access_token",
        "api_key",
        "apikey",
        "authorization",
        "client_secret",
        "password",
        "passwd",
        "private_key",
        "secret",
        "token",
        "webhook_secret",
    }
)
_SENSITIVE_SUFFIXES: Final[tuple[str, ...]] = (
    "_password",
    "_secret",
    "_token",
    "_private_key",
    "_api_key",
)
# ``*_env`` keys name environment variables; they are references, never secrets.
_REFERENCE_SUFFIXES: Final[tuple[str, ...]] = ("_env", "_ref")

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")


@dataclass(frozen=True, slots=True)
class _TextRule:
    name: str
    pattern: re.Pattern[str]
    sensitive_group: int | None = None


_TEXT_RULES: Final[tuple[_TextRule, ...]] = (
    _TextRule(
        name="private_key_block",
        pattern=re.compile(
            r"-----BEGIN(?: [A-Z0-9]+)* PRIVATE KEY-----[\s\S]+?-----END(?: [A-Z0-9]+)* PRIVATE KEY-----"
        ),
    ),
    _TextRule(
        name="authorization_header",
        pattern=re.compile(r"(?i)(\bauthorization\s*:\s*(?:bearer|basic|token)\s+)([A-Za-z0-9\-._~+/=]{6,})"),
        sensitive_group=2,
    ),
    _TextRule(
        name="url_userinfo",
        pattern=re.compile(r"(\b[a-z][a-z0-9+.-]*://[^\s:/@]+:)([^\s@/]+)(@)"),
        sensitive_group=2,
    ),
    _TextRule(
        name="secret_assignment",
        pattern=re.compile(
            r"(?i)(\b(?:password|passwd|secret|api[_-]?key|client[_-]?secret|token|"
            r"access[_-]?token)\b\s*[:=]\s*[\"']?)([A-Za-z0-9._~+/=-]{6,})"
        ),
        sensitive_group=2,
    ),
    _TextRule(
        name="password_flag",
        pattern=re.compile(r"(\s(?:-p|--password)[ =])(\S{4,})"),
        sensitive_group=2,
    ),
    _TextRule(name="aws_access_key", pattern=re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b")),
    _TextRule(name="github_token", pattern=re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,255}\b")),
    _TextRule(name="gitlab_token", pattern=re.compile(r"\bglpat-[A-Za-z0-9_-]{20,}\b")),
    _TextRule(name="sonar_token", pattern=re.compile(r"\bsq[apu]_[A-Za-z0-9]{30,}\b")),
    _TextRule(
        name="jwt",
        pattern=re.compile(r"\beyJ[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\b"),
    ),
)


def _normalize_key(key: str) -> str:
    spaced = _CAMEL_BOUNDARY.sub(r"\1_\2", key)
    return _NON_ALNUM.sub("_", spaced.lower()).strip("_")


def is_sensitive_key(key: str) -> bool:
    """Return whether values stored under ``key`` must never be rendered."""

    normalized = _normalize_key(key)
    if not normalized:
        return False
    if normalized.endswith(_REFERENCE_SUFFIXES):
        return False
    if normalized in _SENSITIVE_KEYS:
        return True
    return normalized.endswith(_SENSITIVE_SUFFIXES)


def redact_text(text: str, *, replacement: str = REDACTED_VALUE) -> str:
    """Replace secret-looking fragments of ``text``."""

    if not isinstance(text, str):
        raise TypeError(f"text must be a string, got {type(text).__name__}")
    redacted = text
    for rule in _TEXT_RULES:
        redacted = rule.pattern.sub(
            lambda match, rule=rule: _replace(match, rule.sensitive_group, replacement), redacted
        )
    return redacted


def redact_structure(value: object, *, replacement: str = REDACTED_VALUE) -> object:
    """Return a deep-redacted copy of nested mappings/sequences."""

    return _redact(value, replacement=replacement, seen=set())


def _redact(value: object, *, replacement: str, seen: set[int]) -> object:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return redact_text(value, replacement=replacement)
    if isinstance(value, Mapping):
        if id(value) in seen:
            return replacement
        seen.add(id(value))
        try:
            out: dict[str, object] = {}
            for key in sorted(value, key=str):
                key_text = str(key)
                if is_sensitive_key(key_text):
                    out[key_text] = replacement
                else:
                    out[key_text] = _redact(value[key], replacement=replacement, seen=seen)
            return out
        finally:
            seen.discard(id(value))
    if isinstance(value, (list, tuple)):
        if id(value) in seen:
            return replacement
        seen.add(id(value))
        try:
            return [_redact(item, replacement=replacement, seen=seen) for item in value]
        finally:
            seen.discard(id(value))
    return redact_text(repr(value), replacement=replacement)


def _replace(match: re.Match[str], group: int | None, replacement: str) -> str:
    if group is None:
        return replacement
    full = match.group(0)
    start = match.start(group) - match.start(0)
    end = match.end(group) - match.start(0)
    return f"{full[:start]}{replacement}{full[end:]}"


class SecretMasker:
    """
    Masks exact occurrences of resolved credential values.

    The credential resolver registers every value it hands out, so a tool that echoes a
    password into its stderr still cannot leak it into a StageResult.
    """

    def __init__(self, secrets: Iterable[str] = (), *, replacement: str = REDACTED_VALUE) -> None:
        self._lock = threading.Lock()
        self._secrets: set[str] = set()
        self._replacement = replacement
        for secret in secrets:
            self.register(secret)

    def register(self, secret: str) -> None:
        if not isinstance(secret, str) or len(secret) < MIN_MASKABLE_SECRET_LENGTH:
            return
        with self._lock:
            self._secrets.add(secret)

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._secrets)

    def mask(self, text: str) -> str:
        """Mask registered secrets, then apply pattern redaction."""

        if not text:
            return text
        with self._lock:
            # Longest first so a secret containing another secret is masked whole.
            ordered = sorted(self._secrets, key=len, reverse=True)
        masked = text
        for secret in ordered:
            masked = masked.replace(secret, self._replacement)
        return redact_text(masked, replacement=self._replacement)

    def mask_structure(self, value: object) -> object:
        redacted = redact_structure(value, replacement=self._replacement)
        return _mask_nested(redacted, self)


def _mask_nested(value: object, masker: SecretMasker) -> object:
    if isinstance(value, str):
        return masker.mask(value)
    if isinstance(value, dict):
        return {key: _mask_nested(item, masker) for key, item in value.items()}
    if isinstance(value, list):
        return [_mask_nested(item, masker) for item in value]
    return value


__all__ = [
    "MIN_MASKABLE_SECRET_LENGTH",
    "REDACTED_VALUE",
    "SecretMasker",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
]
