"""Canonical signing store: a versioned (git) repository of signing identities.

Layout:
    .ship-signing-store                         marker (schema)
    identities/<distribution>/<app>.json        identity record
    material/<distribution>/<app>/certificate.cer
    material/<distribution>/<app>/key.pem       encrypted with the store passphrase
    material/<distribution>/<app>/profile.mobileprovision
    .locks/                                     advisory leases (never committed)

Concurrent synchronizations of one (app, distribution) key are serialized
with a lease: an in-process lock plus an exclusive lease file in the
checkout. Across hosts the remote is the arbiter: a rejected push resets the
checkout to the remote and surfaces as a `sync` error, which the
synchronizer retries once against the winner's record.
"""

from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from ship.core.cancel import CancelToken
from ship.core.result import Err, Ok, Result
from ship.core.structured import as_str_dict, get_int, get_str
from ship.output.console import ConsoleProtocol, Style
from ship.pipeline.authority import IssuedIdentity
from ship.pipeline.errors import StageError, cancelled
from ship.pipeline.material import SigningMaterial
from ship.pipeline.model import DistributionType, SigningIdentity
from ship.pipeline.timeouts import (
    GIT_NETWORK_TIMEOUT_SECONDS,
    GIT_TIMEOUT_SECONDS,
    SIGNING_LEASE_POLL_SECONDS,
)
from ship.platform.files import atomic_write_bytes, atomic_write_text
from ship.platform.process import run as run_process

__all__ = ["ALL_APPS", "GitSigningStore", "Lease", "SigningStore", "StoredIdentity", "STORE_SCHEMA"]

STORE_SCHEMA = 1
MARKER = ".ship-signing-store"
# Key of the distribution-wide lease; bundle identifiers never start with "_".
ALL_APPS = "_all"

StoreKey = tuple[str, str]

_process_locks: dict[StoreKey, threading.Lock] = {}
_process_locks_guard = threading.Lock()


def _process_lock(key: StoreKey) -> threading.Lock:
    with _process_locks_guard:
        return _process_locks.setdefault(key, threading.Lock())


@dataclass(frozen=True, slots=True)
class StoredIdentity:
    identity: SigningIdentity
    version: int


class Lease:
    """Held advisory lease on one store key; release exactly once."""

    def __init__(self, *, key: StoreKey, path: Path, token: str, lock: threading.Lock) -> None:
        self.key = key
        self._path = path
        self._token = token
        self._lock = lock
        self._released = False

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            if self._path.read_text(encoding="utf-8").split("\n", 1)[0] == self._token:
                self._path.unlink(missing_ok=True)
        except FileNotFoundError:
            pass
        finally:
            self._lock.release()

    def __enter__(self) -> Lease:
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


class SigningStore(Protocol):
    def initialized(self) -> bool: ...

    def acquire(
        self,
        app_identifier: str,
        distribution_type: DistributionType,
        *,
        ttl: float,
        wait: float,
        cancel: CancelToken | None = None,
    ) -> Result[Lease, StageError]: ...

    def acquire_distribution(
        self,
        distribution_type: DistributionType,
        *,
        ttl: float,
        wait: float,
        cancel: CancelToken | None = None,
    ) -> Result[Lease, StageError]: ...

    def refresh(self) -> Result[None, StageError]: ...

    def read(
        self, app_identifier: str, distribution_type: DistributionType
    ) -> Result[StoredIdentity | None, StageError]: ...

    def read_material(self, identity: SigningIdentity) -> Result[SigningMaterial, StageError]: ...

    def write(self, issued: IssuedIdentity) -> Result[SigningIdentity, StageError]: ...

    def clear(self, distribution_type: DistributionType) -> Result[int, StageError]: ...


def _identity_to_dict(identity: SigningIdentity, *, version: int) -> dict[str, object]:
    return {
        "version": version,
        "identifier": identity.identifier,
        "app_identifier": identity.app_identifier,
        "distribution_type": identity.distribution_type,
        "team_id": identity.team_id,
        "certificate_id": identity.certificate_id,
        "profile_id": identity.profile_id,
        "profile_name": identity.profile_name,
        "profile_uuid": identity.profile_uuid,
        "expires_at": identity.expires_at.isoformat(),
        "location": identity.location,
    }


def _identity_from_dict(data: dict[str, object]) -> StoredIdentity | None:
    fields = {
        k: get_str(data, k)
        for k in (
            "identifier",
            "app_identifier",
            "distribution_type",
            "team_id",
            "certificate_id",
            "profile_id",
            "profile_name",
            "expires_at",
            "location",
        )
    }
    if any(v is None for v in fields.values()):
        return None
    try:
        expires_at = datetime.fromisoformat(fields["expires_at"] or "")
    except ValueError:
        return None
    identity = SigningIdentity(
        identifier=fields["identifier"] or "",
        app_identifier=fields["app_identifier"] or "",
        distribution_type=fields["distribution_type"],  # type: ignore[arg-type]
        team_id=fields["team_id"] or "",
        certificate_id=fields["certificate_id"] or "",
        profile_id=fields["profile_id"] or "",
        profile_name=fields["profile_name"] or "",
        profile_uuid=get_str(data, "profile_uuid") or "",
        expires_at=expires_at,
        location=fields["location"] or "",
    )
    return StoredIdentity(identity=identity, version=get_int(data, "version") or 0)


class GitSigningStore:
    """Signing store backed by a local checkout, optionally synced with a git remote.

    With `git=False` the checkout is a plain directory (local single-host
    stores and tests); versions still increment on every write.
    """

    def __init__(
        self,
        *,
        root: Path,
        remote: str | None = None,
        git: bool = True,
        console: ConsoleProtocol | None = None,
    ) -> None:
        self.root = root
        self.remote = remote
        self._git = git
        self._console = console
        self.writes = 0

    # -- layout ---------------------------------------------------------

    def _record_path(self, app_identifier: str, distribution_type: str) -> Path:
        return self.root / "identities" / distribution_type / f"{app_identifier}.json"

    def _material_dir(self, app_identifier: str, distribution_type: str) -> Path:
        return self.root / "material" / distribution_type / app_identifier

    def _lease_path(self, key: StoreKey) -> Path:
        return self.root / ".locks" / f"{key[1]}__{key[0]}.lease"

    def initialized(self) -> bool:
        return (self.root / MARKER).is_file()

    # -- git --------------------------------------------------------------

    def _run_git(self, args: list[str], *, network: bool = False) -> Result[str, StageError]:
        cmd = ["git", *args]
        if self._console is not None:
            self._console.print(" ".join(cmd[:3]), Style.DIM)
        timeout = GIT_NETWORK_TIMEOUT_SECONDS if network else GIT_TIMEOUT_SECONDS
        result = run_process(cmd, cwd=self.root, timeout=timeout)
        if isinstance(result, Err):
            e = result.error
            return Err(
                StageError(
                    kind="sync",
                    message=f"signing store git failed: {' '.join(cmd[:3])}",
                    hint=e.stderr.strip() or None,
                )
            )
        return Ok(result.value)

    def _commit_and_push(self, paths: list[Path], message: str) -> Result[None, StageError]:
        if not self._git:
            return Ok(None)
        rels = [str(p.relative_to(self.root)) for p in paths]
        for args in (["add", "-A", "--", *rels], ["commit", "-m", message]):
            result = self._run_git(args)
            if isinstance(result, Err):
                return result
        if self.remote:
            pushed = self._run_git(["push", "origin", "HEAD"], network=True)
            if isinstance(pushed, Err):
                # Rejected push: the retry reads the remote record.
                reset = self._reset_to_remote()
                if isinstance(reset, Err):
                    return Err(
                        StageError(
                            kind="sync",
                            message=f"{pushed.error.message}; resetting the checkout also failed",
                            hint=reset.error.hint or pushed.error.hint,
                        )
                    )
                return pushed
        return Ok(None)

    def _reset_to_remote(self) -> Result[None, StageError]:
        branch = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"])
        if isinstance(branch, Err):
            return branch
        fetched = self._run_git(["fetch", "origin"], network=True)
        if isinstance(fetched, Err):
            return fetched
        upstream = f"origin/{branch.value.strip()}"
        if isinstance(self._run_git(["rev-parse", "--verify", "--quiet", upstream]), Err):
            # The remote has no history for this branch yet.
            return Ok(None)
        reset = self._run_git(["reset", "--hard", upstream])
        if isinstance(reset, Err):
            return reset
        return Ok(None)

    def refresh(self) -> Result[None, StageError]:
        """Move the checkout to the remote's current state, dropping unpushed commits."""
        if not self._git or not self.remote:
            return Ok(None)
        return self._reset_to_remote()

    # -- admin ------------------------------------------------------------

    def bootstrap(self, *, dry_run: bool = False) -> Result[bool, StageError]:
        """Initialize an empty store. Returns False when it already exists."""
        if self._git and self.remote and not (self.root / ".git").is_dir():
            if self._console is not None:
                self._console.print(f"git clone {self.remote} -> {self.root}", Style.DIM)
            if not dry_run:
                self.root.parent.mkdir(parents=True, exist_ok=True)
                cloned = run_process(
                    ["git", "clone", self.remote, str(self.root)],
                    cwd=self.root.parent,
                    timeout=GIT_NETWORK_TIMEOUT_SECONDS,
                )
                if isinstance(cloned, Err):
                    return Err(
                        StageError(
                            kind="sync",
                            message="failed to clone signing store",
                            hint=cloned.error.stderr.strip() or None,
                        )
                    )

        if self.initialized():
            return Ok(False)
        if dry_run:
            return Ok(True)

        self.root.mkdir(parents=True, exist_ok=True)
        if self._git and not (self.root / ".git").is_dir():
            initialized = self._run_git(["init"])
            if isinstance(initialized, Err):
                return initialized

        marker = self.root / MARKER
        ignore = self.root / ".gitignore"
        atomic_write_text(marker, json.dumps({"schema": STORE_SCHEMA}, indent=2) + "\n")
        atomic_write_text(ignore, ".locks/\n")
        (self.root / "identities").mkdir(exist_ok=True)
        (self.root / "material").mkdir(exist_ok=True)
        committed = self._commit_and_push([marker, ignore], "ship: initialize signing store")
        if isinstance(committed, Err):
            return committed
        return Ok(True)

    def clear(self, distribution_type: DistributionType) -> Result[int, StageError]:
        """Remove every record and material of one distribution type."""
        removed: list[Path] = []
        records_dir = self.root / "identities" / distribution_type
        material_dir = self.root / "material" / distribution_type
        if records_dir.is_dir():
            for record in sorted(records_dir.glob("*.json")):
                record.unlink()
                removed.append(record)
        if material_dir.is_dir():
            for path in sorted(material_dir.rglob("*"), reverse=True):
                if path.is_file():
                    path.unlink()
                else:
                    path.rmdir()
        if not removed:
            return Ok(0)
        self.writes += 1
        committed = self._commit_and_push(
            [records_dir, material_dir] if material_dir.exists() else [records_dir],
            f"ship: revoke all {distribution_type} identities",
        )
        if isinstance(committed, Err):
            return committed
        return Ok(len(removed))

    # -- lease --------------------------------------------------------------

    def acquire(
        self,
        app_identifier: str,
        distribution_type: DistributionType,
        *,
        ttl: float,
        wait: float,
        cancel: CancelToken | None = None,
    ) -> Result[Lease, StageError]:
        """Lease one (app, distribution) key.

        Yields to a held distribution-wide lease: the key lease is dropped
        and retried until that lease is released or `wait` runs out.
        """
        key: StoreKey = (app_identifier, distribution_type)
        deadline = time.monotonic() + wait
        while True:
            lease = self._acquire_key(key, ttl=ttl, deadline=deadline, cancel=cancel)
            if isinstance(lease, Err):
                return lease
            if self._lease_expired(self._lease_path((ALL_APPS, distribution_type))):
                return lease
            lease.value.release()
            waited = self._pause(key, deadline=deadline, cancel=cancel)
            if isinstance(waited, Err):
                return waited

    def acquire_distribution(
        self,
        distribution_type: DistributionType,
        *,
        ttl: float,
        wait: float,
        cancel: CancelToken | None = None,
    ) -> Result[Lease, StageError]:
        """Lease every key of a distribution type, including apps with no record yet.

        Waits for key leases already held to be released.
        """
        key: StoreKey = (ALL_APPS, distribution_type)
        deadline = time.monotonic() + wait
        lease = self._acquire_key(key, ttl=ttl, deadline=deadline, cancel=cancel)
        if isinstance(lease, Err):
            return lease
        own = self._lease_path(key)
        while any(
            p != own and not self._lease_expired(p)
            for p in (self.root / ".locks").glob(f"{distribution_type}__*.lease")
        ):
            waited = self._pause(key, deadline=deadline, cancel=cancel)
            if isinstance(waited, Err):
                lease.value.release()
                return waited
        return lease

    def _pause(self, key: StoreKey, *, deadline: float, cancel: CancelToken | None) -> Result[None, StageError]:
        if cancel is not None and cancel.cancelled:
            return Err(cancelled(cancel.reason))
        if time.monotonic() >= deadline:
            return Err(self._lease_busy(key))
        time.sleep(SIGNING_LEASE_POLL_SECONDS)
        return Ok(None)

    def _acquire_key(
        self,
        key: StoreKey,
        *,
        ttl: float,
        deadline: float,
        cancel: CancelToken | None,
    ) -> Result[Lease, StageError]:
        lock = _process_lock(key)
        while not lock.acquire(timeout=SIGNING_LEASE_POLL_SECONDS):
            if cancel is not None and cancel.cancelled:
                return Err(cancelled(cancel.reason))
            if time.monotonic() >= deadline:
                return Err(self._lease_busy(key))

        path = self._lease_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        token = uuid4().hex
        while True:
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._lease_expired(path):
                    path.unlink(missing_ok=True)
                    continue
                waited = self._pause(key, deadline=deadline, cancel=cancel)
                if isinstance(waited, Err):
                    lock.release()
                    return waited
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(f"{token}\n{time.time() + ttl}\n{os.getpid()}\n")
            return Ok(Lease(key=key, path=path, token=token, lock=lock))

    @staticmethod
    def _lease_expired(path: Path) -> bool:
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return True
        try:
            return time.time() >= float(lines[1])
        except (IndexError, ValueError):
            # Unreadable lease: treat as stale.
            return True

    @staticmethod
    def _lease_busy(key: StoreKey) -> StageError:
        subject = f"all {key[1]} identities" if key[0] == ALL_APPS else f"{key[0]} ({key[1]})"
        return StageError(
            kind="sync",
            message=f"signing store key is locked by another run: {subject}",
            hint="Another pipeline is synchronizing the same identity; retry after it finishes.",
        )

    # -- records ------------------------------------------------------------

    def read(
        self, app_identifier: str, distribution_type: DistributionType
    ) -> Result[StoredIdentity | None, StageError]:
        path = self._record_path(app_identifier, distribution_type)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return Ok(None)
        except OSError as e:
            return Err(StageError(kind="sync", message=f"failed to read identity record: {e}", hint=str(path)))

        try:
            obj: object = json.loads(text)
        except json.JSONDecodeError as e:
            return Err(StageError(kind="sync", message=f"invalid identity record: {e}", hint=str(path)))
        data = as_str_dict(obj)
        stored = _identity_from_dict(data) if data is not None else None
        if stored is None:
            return Err(StageError(kind="sync", message="identity record is incomplete", hint=str(path)))
        return Ok(stored)

    def read_material(self, identity: SigningIdentity) -> Result[SigningMaterial, StageError]:
        base = self._material_dir(identity.app_identifier, identity.distribution_type)
        try:
            return Ok(
                SigningMaterial(
                    certificate_der=(base / "certificate.cer").read_bytes(),
                    encrypted_key_pem=(base / "key.pem").read_bytes(),
                    profile_content=(base / "profile.mobileprovision").read_bytes(),
                )
            )
        except OSError as e:
            return Err(
                StageError(
                    kind="not_found",
                    message=f"signing material missing for {identity.app_identifier}",
                    hint=str(e),
                )
            )

    def write(self, issued: IssuedIdentity) -> Result[SigningIdentity, StageError]:
        identity = issued.identity
        current = self.read(identity.app_identifier, identity.distribution_type)
        version = 1
        if isinstance(current, Ok) and current.value is not None:
            version = current.value.version + 1

        record = self._record_path(identity.app_identifier, identity.distribution_type)
        material_dir = self._material_dir(identity.app_identifier, identity.distribution_type)
        stored = SigningIdentity(
            identifier=identity.identifier,
            app_identifier=identity.app_identifier,
            distribution_type=identity.distribution_type,
            team_id=identity.team_id,
            certificate_id=identity.certificate_id,
            profile_id=identity.profile_id,
            profile_name=identity.profile_name,
            profile_uuid=identity.profile_uuid,
            expires_at=identity.expires_at,
            location=str(record.relative_to(self.root)),
        )

        try:
            atomic_write_bytes(material_dir / "certificate.cer", issued.material.certificate_der)
            atomic_write_bytes(material_dir / "key.pem", issued.material.encrypted_key_pem, mode=0o600)
            atomic_write_bytes(material_dir / "profile.mobileprovision", issued.material.profile_content)
            atomic_write_text(record, json.dumps(_identity_to_dict(stored, version=version), indent=2) + "\n")
        except OSError as e:
            return Err(StageError(kind="sync", message=f"failed to write signing store: {e}", hint=str(record)))

        self.writes += 1
        committed = self._commit_and_push(
            [record, material_dir],
            f"ship: update {identity.distribution_type} identity for {identity.app_identifier}",
        )
        if isinstance(committed, Err):
            return committed
        return Ok(stored)
