"""
stagegate — credential references and resolution

File: src/stagegate/security/credentials.py

Purpose
- Map opaque credential names (``registry``, ``deploy_ssh``, ...) to secrets at invocation
  time. Configuration only ever names environment variables; secret values never appear
  in config files, StageResults, or logs.

Concurrency
- Resolvers are shared by every pipeline running in the event loop. Specs are read-only
  after construction; the resolved-value cache is guarded by a lock.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol

from stagegate.errors import CredentialError
from stagegate.security.redaction import REDACTED_VALUE, SecretMasker


class CredentialKind(StrEnum):
    TOKEN = "token"
    USERNAME_PASSWORD = "username_password"
    SSH_KEY = "ssh_key"


@dataclass(frozen=True, slots=True)
class CredentialRef:
    """Name-only handle; safe to log."""

    name: str

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("CredentialRef.name must be a non-empty string")

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True, slots=True)
class ResolvedCredential:
    name: str
    kind: CredentialKind
    secret: str = field(repr=False)
    username: str | None = None

    def __repr__(self) -> str:
        return (
            f"ResolvedCredential(name={self.name!r}, kind={self.kind.value!r}, "
            f"username={self.username!r}, secret={REDACTED_VALUE!r})"
        )


@dataclass(frozen=True, slots=True)
class CredentialSpec:
    """
    Declarative credential source.

    ``secret_env`` names the variable holding the token/password, or the private key path
    for ``ssh_key`` credentials. ``username`` may be given literally since it is not secret.
    """

    name: str
    kind: CredentialKind
    secret_env: str
    username_env: str | None = None
    username: str | None = None


class CredentialResolver(Protocol):
    def resolve(self, ref: CredentialRef) -> ResolvedCredential: ...

    def known_names(self) -> frozenset[str]: ...


class EnvCredentialResolver:
    """Resolve credentials from environment variables named by ``CredentialSpec``."""

    def __init__(
        self,
        specs: Mapping[str, CredentialSpec],
        *,
        environ: Mapping[str, str] | None = None,
        masker: SecretMasker | None = None,
    ) -> None:
        self._specs = dict(specs)
        self._environ = environ if environ is not None else os.environ
        self._masker = masker if masker is not None else SecretMasker()
        self._cache: dict[str, ResolvedCredential] = {}
        self._lock = threading.Lock()

    @property
    def masker(self) -> SecretMasker:
        return self._masker

    def known_names(self) -> frozenset[str]:
        return frozenset(self._specs)

    def resolve(self, ref: CredentialRef) -> ResolvedCredential:
        with self._lock:
            cached = self._cache.get(ref.name)
            if cached is not None:
                return cached
            spec = self._specs.get(ref.name)
            if spec is None:
                raise CredentialError(ref.name, "no credential declared with this name")
            resolved = self._load(spec)
            self._cache[ref.name] = resolved
        self._masker.register(resolved.secret)
        return resolved

    def invalidate(self, name: str | None = None) -> None:
        with self._lock:
            if name is None:
                self._cache.clear()
            else:
                self._cache.pop(name, None)

    def _load(self, spec: CredentialSpec) -> ResolvedCredential:
        secret = self._environ.get(spec.secret_env, "")
        if not secret.strip():
            raise CredentialError(
                spec.name, f"environment variable {spec.secret_env} is unset or empty"
            )

        username = spec.username
        if spec.username_env is not None:
            username = self._environ.get(spec.username_env, "").strip() or None
            if username is None:
                raise CredentialError(
                    spec.name, f"environment variable {spec.username_env} is unset or empty"
                )
        if spec.kind is not CredentialKind.TOKEN and username is None:
            raise CredentialError(spec.name, f"{spec.kind.value} credentials require a username")
        return ResolvedCredential(name=spec.name, kind=spec.kind, secret=secret, username=username)


class StaticCredentialResolver:
    """In-memory resolver for embedding and tests."""

    def __init__(
        self,
        credentials: Mapping[str, ResolvedCredential],
        *,
        masker: SecretMasker | None = None,
    ) -> None:
        self._credentials = dict(credentials)
        self._masker = masker if masker is not None else SecretMasker()

    @property
    def masker(self) -> SecretMasker:
        return self._masker

    def known_names(self) -> frozenset[str]:
        return frozenset(self._credentials)

    def resolve(self, ref: CredentialRef) -> ResolvedCredential:
        credential = self._credentials.get(ref.name)
        if credential is None:
            raise CredentialError(ref.name, "no credential declared with this name")
        self._masker.register(credential.secret)
        return credential


__all__ = [
    "CredentialKind",
    "CredentialRef",
    "CredentialResolver",
    "CredentialSpec",
    "EnvCredentialResolver",
    "ResolvedCredential",
    "StaticCredentialResolver",
]
