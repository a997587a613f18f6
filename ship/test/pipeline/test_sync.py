from __future__ import annotations

import shutil
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import pytest

from ship.core.result import Err, Ok, Result
from ship.output.console import MockConsole
from ship.pipeline.authority import IdentityState, IssuedIdentity
from ship.pipeline.errors import StageError
from ship.pipeline.material import SigningMaterial
from ship.pipeline.model import AuthToken, DistributionType, SigningIdentity
from ship.pipeline.store import GitSigningStore
from ship.pipeline.sync import SigningSynchronizer

TOKEN = AuthToken(value="token", expires_at=9e12)


@dataclass
class FakeAuthority:
    state: IdentityState = "valid"
    issue_errors: list[StageError] = field(default_factory=list)
    issued: int = 0
    checks: int = 0
    revoked: list[str] = field(default_factory=list)
    discarded: list[str] = field(default_factory=list)
    on_issue: Callable[[], None] | None = None
    label: str = ""

    def check(self, identity: SigningIdentity) -> Result[IdentityState, StageError]:
        self.checks += 1
        return Ok(self.state)

    def issue(
        self,
        *,
        app_identifier: str,
        distribution_type: DistributionType,
        team_id: str,
        passphrase: str,
    ) -> Result[IssuedIdentity, StageError]:
        if self.issue_errors:
            return Err(self.issue_errors.pop(0))
        if self.on_issue is not None:
            self.on_issue()
        self.issued += 1
        n = f"{self.label}{self.issued}"
        return Ok(
            IssuedIdentity(
                identity=SigningIdentity(
                    identifier=f"C{n}:P{n}",
                    app_identifier=app_identifier,
                    distribution_type=distribution_type,
                    team_id=team_id,
                    certificate_id=f"C{n}",
                    profile_id=f"P{n}",
                    profile_name=f"ship {app_identifier} {distribution_type}",
                    profile_uuid=f"uuid-{n}",
                    expires_at=datetime(2027, 1, 1, tzinfo=UTC),
                    location="",
                ),
                material=SigningMaterial(
                    certificate_der=b"cert", encrypted_key_pem=passphrase.encode(), profile_content=b"profile"
                ),
            )
        )

    def revoke_all(self, *, distribution_type: DistributionType) -> Result[int, StageError]:
        self.revoked.append(distribution_type)
        return Ok(2)

    def discard(self, identity: SigningIdentity) -> Result[None, StageError]:
        self.discarded.append(identity.identifier)
        return Ok(None)


@pytest.fixture
def store(tmp_path: Path) -> GitSigningStore:
    s = GitSigningStore(root=tmp_path / "store", git=False)
    s.bootstrap()
    return s


def _synchronizer(store: GitSigningStore, authority: FakeAuthority) -> SigningSynchronizer:
    return SigningSynchronizer(
        store=store,
        authority=authority,
        team_id="ABCDE12345",
        passphrase=lambda: Ok("store-pass"),
        console=MockConsole(),
        lease_seconds=5,
    )


def test_first_sync_generates_identity(store: GitSigningStore) -> None:
    authority = FakeAuthority()
    result = _synchronizer(store, authority).sync_detailed("com.example.app", "appstore", TOKEN)

    assert isinstance(result, Ok)
    assert result.value.regenerated
    assert result.value.identity.identifier == "C1:P1"
    assert authority.checks == 0
    assert store.writes == 1


def test_second_sync_without_changes_writes_nothing(store: GitSigningStore) -> None:
    authority = FakeAuthority()
    sync = _synchronizer(store, authority)

    first = sync.sync("com.example.app", "appstore", TOKEN)
    second = sync.sync("com.example.app", "appstore", TOKEN)

    assert isinstance(first, Ok)
    assert second == first
    assert store.writes == 1
    assert authority.issued == 1
    assert authority.checks == 1


@pytest.mark.parametrize("state", ["revoked", "expired", "missing"])
def test_invalid_identity_is_regenerated(store: GitSigningStore, state: IdentityState) -> None:
    authority = FakeAuthority()
    sync = _synchronizer(store, authority)
    sync.sync("com.example.app", "appstore", TOKEN)
    authority.state = state

    result = sync.sync_detailed("com.example.app", "appstore", TOKEN)

    assert isinstance(result, Ok)
    assert result.value.regenerated
    assert result.value.identity.identifier == "C2:P2"
    stored = store.read("com.example.app", "appstore")
    assert isinstance(stored, Ok) and stored.value is not None
    assert stored.value.version == 2


def test_sync_error_is_retried_once(store: GitSigningStore) -> None:
    authority = FakeAuthority(issue_errors=[StageError(kind="sync", message="conflict")])
    sync = _synchronizer(store, authority)

    result = sync.sync_detailed("com.example.app", "appstore", TOKEN)

    assert isinstance(result, Ok)
    assert result.value.retries == 1
    assert sync.last_retries == 1


def test_second_sync_error_fails(store: GitSigningStore) -> None:
    authority = FakeAuthority(
        issue_errors=[StageError(kind="sync", message="conflict"), StageError(kind="sync", message="again")]
    )
    sync = _synchronizer(store, authority)

    result = sync.sync("com.example.app", "appstore", TOKEN)

    assert isinstance(result, Err)
    assert result.error.message == "again"
    assert sync.last_retries == 1


def test_other_errors_are_not_retried(store: GitSigningStore) -> None:
    authority = FakeAuthority(issue_errors=[StageError(kind="rate_limited", message="slow down", retry_after=60)])
    sync = _synchronizer(store, authority)

    result = sync.sync("com.example.app", "appstore", TOKEN)

    assert isinstance(result, Err)
    assert result.error.kind == "rate_limited"
    assert sync.last_retries == 0


def test_missing_passphrase_fails_before_issuing(store: GitSigningStore) -> None:
    authority = FakeAuthority()
    sync = SigningSynchronizer(
        store=store,
        authority=authority,
        team_id="ABCDE12345",
        passphrase=lambda: Err(StageError(kind="auth", message="secret not set")),
        console=MockConsole(),
        lease_seconds=5,
    )

    result = sync.sync("com.example.app", "appstore", TOKEN)

    assert isinstance(result, Err)
    assert result.error.kind == "auth"
    assert authority.issued == 0


def test_lease_is_released_after_sync(store: GitSigningStore) -> None:
    _synchronizer(store, FakeAuthority()).sync("com.example.app", "appstore", TOKEN)
    assert not (store.root / ".locks" / "appstore__com.example.app.lease").exists()


def test_nuke_revokes_and_clears(store: GitSigningStore) -> None:
    authority = FakeAuthority()
    sync = _synchronizer(store, authority)
    sync.sync("com.example.app", "appstore", TOKEN)

    result = sync.nuke("appstore")

    assert result == Ok(2)
    assert authority.revoked == ["appstore"]
    assert store.read("com.example.app", "appstore") == Ok(None)


def test_nuke_waits_for_syncs_of_other_apps(store: GitSigningStore) -> None:
    held = store.acquire("com.example.other", "appstore", ttl=60, wait=0)
    assert isinstance(held, Ok)
    authority = FakeAuthority()
    sync = SigningSynchronizer(
        store=store,
        authority=authority,
        team_id="ABCDE12345",
        passphrase=lambda: Ok("store-pass"),
        console=MockConsole(),
        lease_seconds=0,
    )

    result = sync.nuke("appstore")

    assert isinstance(result, Err)
    assert result.error.kind == "sync"
    assert authority.revoked == []
    held.value.release()


def test_concurrent_syncs_of_one_key_issue_once(store: GitSigningStore) -> None:
    issuing = threading.Event()
    proceed = threading.Event()

    def block() -> None:
        issuing.set()
        assert proceed.wait(timeout=10)

    authority = FakeAuthority(on_issue=block)
    results: dict[str, Result[SigningIdentity, StageError]] = {}

    def run(name: str) -> None:
        results[name] = _synchronizer(store, authority).sync("com.example.app", "appstore", TOKEN)

    first = threading.Thread(target=run, args=("first",))
    first.start()
    assert issuing.wait(timeout=10)
    second = threading.Thread(target=run, args=("second",))
    second.start()
    second.join(timeout=0.3)
    assert second.is_alive()
    proceed.set()
    first.join(timeout=10)
    second.join(timeout=10)

    assert authority.issued == 1
    assert authority.checks == 1
    assert results["first"] == results["second"]
    assert isinstance(results["first"], Ok)
    assert results["first"].value.identifier == "C1:P1"
    assert store.writes == 1


class FlakyWriteStore(GitSigningStore):
    def __init__(self, root: Path) -> None:
        super().__init__(root=root, git=False)
        self.failures = 1

    def write(self, issued: IssuedIdentity) -> Result[SigningIdentity, StageError]:
        if self.failures:
            self.failures -= 1
            return Err(StageError(kind="sync", message="push rejected"))
        return super().write(issued)


def test_unrecorded_identity_is_discarded(tmp_path: Path) -> None:
    store = FlakyWriteStore(tmp_path / "store")
    store.bootstrap()
    authority = FakeAuthority()

    result = _synchronizer(store, authority).sync_detailed("com.example.app", "appstore", TOKEN)

    assert isinstance(result, Ok)
    assert result.value.retries == 1
    assert result.value.identity.identifier == "C2:P2"
    assert authority.discarded == ["C1:P1"]


def _git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=False)
    if result.returncode != 0:
        raise RuntimeError(f"git {' '.join(args)} failed (code {result.returncode}): {result.stderr.strip()}")
    return result.stdout.strip()


def _host(tmp_path: Path, url: str, name: str) -> GitSigningStore:
    host = GitSigningStore(root=tmp_path / name, remote=url)
    assert host.bootstrap() == Ok(False)
    _git(host.root, "config", "user.email", "ci@example.com")
    _git(host.root, "config", "user.name", "CI")
    return host


@pytest.mark.skipif(shutil.which("git") is None, reason="git not available")
def test_host_losing_push_race_adopts_winning_identity(tmp_path: Path) -> None:
    remote = tmp_path / "signing.git"
    seed = tmp_path / "seed"
    _git(tmp_path, "init", "--bare", "-b", "main", str(remote))
    seed.mkdir()
    _git(seed, "init", "-b", "main")
    _git(seed, "config", "user.email", "ci@example.com")
    _git(seed, "config", "user.name", "CI")
    assert GitSigningStore(root=seed).bootstrap() == Ok(True)
    _git(seed, "remote", "add", "origin", remote.as_uri())
    _git(seed, "push", "-u", "origin", "main")
    host_a = _host(tmp_path, remote.as_uri(), "a")
    host_b = _host(tmp_path, remote.as_uri(), "b")

    winner = FakeAuthority(label="a")

    def other_host_syncs_first() -> None:
        if winner.issued == 0:
            assert isinstance(_synchronizer(host_a, winner).sync("com.example.app", "appstore", TOKEN), Ok)

    loser = FakeAuthority(on_issue=other_host_syncs_first)

    result = _synchronizer(host_b, loser).sync_detailed("com.example.app", "appstore", TOKEN)

    assert isinstance(result, Ok)
    assert result.value.identity.identifier == "Ca1:Pa1"
    assert result.value.retries == 1
    assert loser.issued == 1
    assert loser.discarded == ["C1:P1"]

    again = _synchronizer(host_b, loser).sync_detailed("com.example.app", "appstore", TOKEN)
    assert isinstance(again, Ok)
    assert again.value.identity.identifier == "Ca1:Pa1"
    assert not again.value.regenerated
    assert loser.issued == 1
