"""Ephemeral build keychain (macOS `security` CLI).

The signing identity is imported into a throwaway keychain for the duration
of one build and the keychain is deleted afterwards. Its password is a
random one-time value, never a stored credential; it is registered with the
redactor like any other secret.
"""

from __future__ import annotations

import secrets
import tempfile
from pathlib import Path

from ship.core.cancel import CancelToken
from ship.core.redact import Redactor
from ship.core.result import Err, Ok, Result
from ship.pipeline.errors import StageError, from_process_error
from ship.platform.process import run as run_process

__all__ = ["BuildKeychain"]

_SECURITY_TIMEOUT_SECONDS = 60.0


class BuildKeychain:
    def __init__(self, *, workdir: Path, redactor: Redactor, cancel: CancelToken | None = None) -> None:
        self.path = workdir / f"ship-{secrets.token_hex(6)}.keychain-db"
        self.password = secrets.token_urlsafe(24)
        redactor.register(self.password)
        self._workdir = workdir
        self._cancel = cancel
        self._created = False

    def _security(
        self, args: list[str], *, message: str, cancellable: bool = True
    ) -> Result[str, StageError]:
        result = run_process(
            ["security", *args],
            cwd=self._workdir,
            timeout=_SECURITY_TIMEOUT_SECONDS,
            cancel=self._cancel if cancellable else None,
        )
        if isinstance(result, Err):
            return Err(from_process_error(result.error, kind="build", message=message))
        return Ok(result.value)

    def _search_list(self, *, cancellable: bool = True) -> Result[list[str], StageError]:
        listed = self._security(
            ["list-keychains", "-d", "user"], message="failed to list keychains", cancellable=cancellable
        )
        if isinstance(listed, Err):
            return listed
        return Ok([line.strip().strip('"') for line in listed.value.splitlines() if line.strip()])

    def _is_self(self, entry: str) -> bool:
        return entry == str(self.path) or Path(entry).resolve() == self.path.resolve()

    def create(self) -> Result[None, StageError]:
        created = self._security(
            ["create-keychain", "-p", self.password, str(self.path)],
            message="failed to create build keychain",
        )
        if isinstance(created, Err):
            return created
        self._created = True

        for args, message in (
            (["set-keychain-settings", "-lut", "21600", str(self.path)], "failed to configure build keychain"),
            (["unlock-keychain", "-p", self.password, str(self.path)], "failed to unlock build keychain"),
        ):
            result = self._security(args, message=message)
            if isinstance(result, Err):
                return result

        current = self._search_list()
        if isinstance(current, Err):
            return current
        return self._security(
            ["list-keychains", "-d", "user", "-s", str(self.path), *current.value],
            message="failed to add build keychain to search list",
        ).map(lambda _: None)

    def import_pkcs12(self, bundle: bytes, *, bundle_password: str) -> Result[None, StageError]:
        with tempfile.TemporaryDirectory(dir=self._workdir) as tmp:
            p12 = Path(tmp) / "identity.p12"
            p12.touch(mode=0o600)
            p12.write_bytes(bundle)
            imported = self._security(
                [
                    "import",
                    str(p12),
                    "-k",
                    str(self.path),
                    "-P",
                    bundle_password,
                    "-T",
                    "/usr/bin/codesign",
                    "-T",
                    "/usr/bin/security",
                ],
                message="failed to import signing identity",
            )
        if isinstance(imported, Err):
            return imported
        return self._security(
            ["set-key-partition-list", "-S", "apple-tool:,apple:", "-s", "-k", self.password, str(self.path)],
            message="failed to authorize codesign access",
        ).map(lambda _: None)

    def delete(self) -> Result[None, StageError]:
        """Take the keychain off the search list and delete it.

        Runs even after the run was cancelled. Only this keychain is removed
        from the search list; entries added by concurrent builds stay.
        """
        if not self._created:
            return Ok(None)
        self._created = False
        unlisted = self._unlist()
        deleted = self._security(
            ["delete-keychain", str(self.path)], message="failed to delete build keychain", cancellable=False
        )
        if isinstance(unlisted, Err):
            return unlisted
        return deleted.map(lambda _: None)

    def _unlist(self) -> Result[None, StageError]:
        current = self._search_list(cancellable=False)
        if isinstance(current, Err):
            return current
        remaining = [entry for entry in current.value if not self._is_self(entry)]
        if len(remaining) == len(current.value):
            return Ok(None)
        return self._security(
            ["list-keychains", "-d", "user", "-s", *remaining],
            message="failed to restore keychain search list",
            cancellable=False,
        ).map(lambda _: None)
