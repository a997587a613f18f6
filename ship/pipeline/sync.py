"""Signing material synchronizer.

`sync` compares the canonical store's identity for (app, distribution type)
with what the signing authority considers valid, and only regenerates when
the stored identity is missing, revoked or expired. Regeneration never
revokes other identities; that is `nuke`, an explicit admin operation.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from ship.core.cancel import CancelToken
from ship.core.result import Err, Ok, Result
from ship.output.console import ConsoleProtocol, Style
from ship.pipeline.authority import SigningAuthority
from ship.pipeline.errors import StageError, cancelled
from ship.pipeline.model import AuthToken, DistributionType, SigningIdentity
from ship.pipeline.store import SigningStore
from ship.pipeline.timeouts import SYNC_RETRY_ATTEMPTS

__all__ = ["SigningSynchronizer", "SyncOutcome"]

PassphraseSource = Callable[[], Result[str, StageError]]


@dataclass(frozen=True, slots=True)
class SyncOutcome:
    identity: SigningIdentity
    regenerated: bool
    retries: int


class SigningSynchronizer:
    def __init__(
        self,
        *,
        store: SigningStore,
        authority: SigningAuthority,
        team_id: str,
        passphrase: PassphraseSource,
        console: ConsoleProtocol,
        lease_seconds: float,
        cancel: CancelToken | None = None,
    ) -> None:
        self._store = store
        self._authority = authority
        self._team_id = team_id
        self._passphrase = passphrase
        self._console = console
        self._lease_seconds = lease_seconds
        self._cancel = cancel
        self.last_retries = 0

    def sync(
        self,
        app_identifier: str,
        distribution_type: DistributionType,
        token: AuthToken,
    ) -> Result[SigningIdentity, StageError]:
        """Return a valid identity, regenerating only when required."""
        outcome = self.sync_detailed(app_identifier, distribution_type, token)
        if isinstance(outcome, Err):
            return outcome
        return Ok(outcome.value.identity)

    def sync_detailed(
        self,
        app_identifier: str,
        distribution_type: DistributionType,
        token: AuthToken,
    ) -> Result[SyncOutcome, StageError]:
        # The token proves authentication happened; the authority adapter
        # fetches fresh tokens itself when this one expires mid-sync.
        del token
        lease = self._store.acquire(
            app_identifier,
            distribution_type,
            ttl=self._lease_seconds,
            wait=self._lease_seconds,
            cancel=self._cancel,
        )
        if isinstance(lease, Err):
            return lease

        with lease.value:
            retries = 0
            while True:
                result = self._sync_locked(app_identifier, distribution_type)
                if isinstance(result, Ok):
                    self.last_retries = retries
                    return Ok(SyncOutcome(identity=result.value[0], regenerated=result.value[1], retries=retries))
                if result.error.kind != "sync" or retries >= SYNC_RETRY_ATTEMPTS:
                    self.last_retries = retries
                    return result
                retries += 1
                self._console.print(
                    f"signing sync failed ({result.error.message}); re-fetching authority state",
                    Style.DIM,
                )

    def _sync_locked(
        self,
        app_identifier: str,
        distribution_type: DistributionType,
    ) -> Result[tuple[SigningIdentity, bool], StageError]:
        if self._cancel is not None and self._cancel.cancelled:
            return Err(cancelled(self._cancel.reason))

        refreshed = self._store.refresh()
        if isinstance(refreshed, Err):
            return refreshed

        stored = self._store.read(app_identifier, distribution_type)
        if isinstance(stored, Err):
            return stored

        if stored.value is not None:
            state = self._authority.check(stored.value.identity)
            if isinstance(state, Err):
                return state
            if state.value == "valid":
                self._console.print(
                    f"signing identity up to date: {stored.value.identity.identifier}", Style.DIM
                )
                return Ok((stored.value.identity, False))
            self._console.print(f"stored signing identity is {state.value}; regenerating", Style.DIM)
        else:
            self._console.print(
                f"no signing identity for {app_identifier} ({distribution_type}); generating", Style.DIM
            )

        passphrase = self._passphrase()
        if isinstance(passphrase, Err):
            return passphrase

        issued = self._authority.issue(
            app_identifier=app_identifier,
            distribution_type=distribution_type,
            team_id=self._team_id,
            passphrase=passphrase.value,
        )
        if isinstance(issued, Err):
            return issued

        written = self._store.write(issued.value)
        if isinstance(written, Err):
            discarded = self._authority.discard(issued.value.identity)
            if isinstance(discarded, Err):
                self._console.warning(
                    f"unrecorded signing identity {issued.value.identity.identifier} was not revoked: "
                    f"{discarded.error.message}"
                )
            return written
        return Ok((written.value, True))

    def nuke(self, distribution_type: DistributionType) -> Result[int, StageError]:
        """Revoke every identity of a distribution type and clear the store.

        Invalidates identities other pipelines may be using; callers must
        confirm with the operator first. Holds the distribution-wide lease, so
        no sync of that type runs at the same time.
        """
        lease = self._store.acquire_distribution(
            distribution_type,
            ttl=self._lease_seconds,
            wait=self._lease_seconds,
            cancel=self._cancel,
        )
        if isinstance(lease, Err):
            return lease
        with lease.value:
            refreshed = self._store.refresh()
            if isinstance(refreshed, Err):
                return refreshed
            revoked = self._authority.revoke_all(distribution_type=distribution_type)
            if isinstance(revoked, Err):
                return revoked
            cleared = self._store.clear(distribution_type)
            if isinstance(cleared, Err):
                return cleared
            self._console.print(
                f"revoked {revoked.value} authority object(s); cleared {cleared.value} record(s)",
                Style.DIM,
            )
            return Ok(revoked.value)
