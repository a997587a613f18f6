"""Secret store adapter.

Credentials are fetched lazily, exactly when a stage needs them, and are
held only by the caller for the duration of the call that uses them. The
resolver never caches values and never writes them anywhere; each value it
hands out is registered with the run's Redactor so it is masked in every
console line, error message and persisted run record.

The API key id and issuer id are identifiers rather than secrets: both travel
in cleartext in every token header and payload, and the upload tool takes
them as arguments. They resolve through the same backends and scopes but are
not registered with the Redactor.

Two backends are provided:
- EnvSecretStore: `SHIP_SECRET_<NAME>` environment variables (CI secrets)
- FileSecretStore: one file per secret in a directory (vault agent / mounted
  secrets volume)
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from ship.core.config import SecretsConfig
from ship.core.redact import MIN_SECRET_LENGTH, Redactor
from ship.core.result import Err, Ok, Result
from ship.pipeline.errors import StageError
from ship.pipeline.model import Credential, Stage

__all__ = [
    "DEFAULT_IDENTIFIERS",
    "DEFAULT_SCOPES",
    "default_identifiers",
    "default_scopes",
    "EnvSecretStore",
    "FileSecretStore",
    "SecretResolver",
    "SecretStore",
    "build_secret_store",
]


class SecretStore(Protocol):
    """Backend lookup; returns None when the secret does not exist."""

    def fetch(self, name: str) -> str | None: ...


@dataclass(frozen=True, slots=True)
class EnvSecretStore:
    prefix: str = "SHIP_SECRET_"
    environ: Mapping[str, str] = field(default_factory=lambda: os.environ)

    def fetch(self, name: str) -> str | None:
        value = self.environ.get(f"{self.prefix}{name.upper()}")
        if value is None or not value.strip():
            return None
        return value


@dataclass(frozen=True, slots=True)
class FileSecretStore:
    directory: Path

    def fetch(self, name: str) -> str | None:
        path = self.directory / name
        try:
            value = path.read_text(encoding="utf-8")
        except (FileNotFoundError, IsADirectoryError):
            return None
        value = value.rstrip("\n")
        return value or None


def build_secret_store(config: SecretsConfig) -> SecretStore:
    if config.backend == "file" and config.directory is not None:
        return FileSecretStore(directory=config.directory)
    return EnvSecretStore(prefix=config.prefix)


def default_scopes(config: SecretsConfig) -> dict[str, tuple[Stage, ...]]:
    """Which stages may read each configured credential."""
    api = (Stage.AUTHENTICATING, Stage.UPLOADING)
    return {
        config.key_id: api,
        config.issuer_id: api,
        config.private_key: api,
        config.store_passphrase: (Stage.SYNCING, Stage.BUILDING),
    }


def default_identifiers(config: SecretsConfig) -> frozenset[str]:
    return frozenset((config.key_id, config.issuer_id))


DEFAULT_SCOPES = default_scopes(SecretsConfig())
DEFAULT_IDENTIFIERS = default_identifiers(SecretsConfig())


class SecretResolver:
    """Scoped, lazy credential resolution for one run."""

    def __init__(
        self,
        store: SecretStore,
        *,
        redactor: Redactor,
        scopes: Mapping[str, tuple[Stage, ...]] | None = None,
        identifiers: frozenset[str] | None = None,
    ) -> None:
        self._store = store
        self._redactor = redactor
        self._scopes = dict(scopes if scopes is not None else DEFAULT_SCOPES)
        self._identifiers = identifiers if identifiers is not None else DEFAULT_IDENTIFIERS

    def resolve(self, name: str, *, stage: Stage) -> Result[Credential, StageError]:
        scope = self._scopes.get(name, ())
        if scope and stage not in scope:
            return Err(
                StageError(
                    kind="not_found",
                    message=f"credential {name!r} is not available to stage {stage}",
                    hint=f"allowed stages: {', '.join(s.value for s in scope)}",
                )
            )

        value = self._store.fetch(name)
        if value is None:
            return Err(
                StageError(
                    kind="not_found",
                    message=f"credential not found: {name}",
                    hint="Check the [secrets] table in ship.toml and the secret backend.",
                )
            )

        sensitive = name not in self._identifiers
        if sensitive:
            if len(value.strip()) < MIN_SECRET_LENGTH:
                return Err(
                    StageError(
                        kind="config",
                        message=f"credential {name!r} is too short to be masked in output",
                        hint=f"secrets must be at least {MIN_SECRET_LENGTH} characters",
                    )
                )
            self._redactor.register(value)
        return Ok(Credential(name=name, scope=scope, value=value, sensitive=sensitive))
