"""Upload stage runner.

Submission goes through Apple's transporter (`xcrun altool --upload-app`).
Processing state, encryption compliance and review attachment go through
the App Store Connect API.

Uploads are not idempotent: a second submission of the same build number
is rejected by the store, so nothing in this module retries a submission.
"""

from __future__ import annotations

import os
import re
import shutil
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import quote

from ship.core.cancel import CancelToken, Deadline
from ship.core.config import AppConfig, SecretsConfig, UploadConfig
from ship.core.result import Err, Ok, Result
from ship.core.structured import get_str
from ship.output.console import ConsoleProtocol, Style
from ship.pipeline.appstore import AppStoreConnect, attributes, resources
from ship.pipeline.errors import DEFAULT_RATE_LIMIT_BACKOFF_SECONDS, StageError, cancelled, from_process_error
from ship.pipeline.model import BuildArtifact, Destination, Stage, UploadReceipt
from ship.pipeline.secrets import SecretResolver
from ship.pipeline.timeouts import PROCESSING_LOOKUP_ATTEMPTS
from ship.platform.process import run as run_process

__all__ = [
    "AppStoreBuilds",
    "Transporter",
    "UploadRunner",
    "rate_limit_backoff",
]

_RATE_LIMITED = re.compile(r"\b429\b|too many requests|rate[- ]limit|throttl", re.IGNORECASE)
_RETRY_AFTER = re.compile(r"retry[- ]after[:=\s]+(\d+)", re.IGNORECASE)
_EDITABLE_VERSION_STATES = "PREPARE_FOR_SUBMISSION,DEVELOPER_REJECTED,REJECTED,METADATA_REJECTED"


def rate_limit_backoff(output: str) -> float | None:
    """Return the backoff in seconds if transporter output reports throttling."""
    if not _RATE_LIMITED.search(output):
        return None
    m = _RETRY_AFTER.search(output)
    if m:
        return float(m.group(1))
    return DEFAULT_RATE_LIMIT_BACKOFF_SECONDS


class Transporter:
    """Runs `xcrun altool --upload-app` with API key authentication.

    altool only reads the private key from `AuthKey_<id>.p8` files in a
    directory; the key is written to a private temporary directory that is
    named by API_PRIVATE_KEYS_DIR in the child environment and removed when
    the call returns. Only the key id and issuer id, which are identifiers,
    appear in the arguments.
    """

    def __init__(
        self,
        *,
        secrets: SecretResolver,
        names: SecretsConfig,
        platform: str = "ios",
        console: ConsoleProtocol,
        cancel: CancelToken | None = None,
    ) -> None:
        self._secrets = secrets
        self._names = names
        self._platform = platform
        self._console = console
        self._cancel = cancel

    def upload_app(self, ipa: Path, *, deadline: Deadline) -> Result[None, StageError]:
        values: list[str] = []
        for name in (self._names.key_id, self._names.issuer_id, self._names.private_key):
            resolved = self._secrets.resolve(name, stage=Stage.UPLOADING)
            if isinstance(resolved, Err):
                return resolved
            values.append(resolved.value.value.strip())
        key_id, issuer_id, private_key = values

        keys_dir = Path(tempfile.mkdtemp(prefix="ship-asc-"))
        try:
            key_file = keys_dir / f"AuthKey_{key_id}.p8"
            fd = os.open(key_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(private_key + "\n")

            env = dict(os.environ)
            env["API_PRIVATE_KEYS_DIR"] = str(keys_dir)
            cmd = [
                "xcrun",
                "altool",
                "--upload-app",
                "-f",
                str(ipa),
                "-t",
                self._platform,
                "--apiKey",
                key_id,
                "--apiIssuer",
                issuer_id,
                "--output-format",
                "normal",
            ]
            self._console.print(f"xcrun altool --upload-app {ipa.name}", Style.DIM)
            result = run_process(cmd, cwd=ipa.parent, env=env, timeout=deadline.remaining(), cancel=self._cancel)
        finally:
            shutil.rmtree(keys_dir, ignore_errors=True)

        if isinstance(result, Ok):
            return Ok(None)

        error = result.error
        if not error.cancelled and not error.timed_out:
            backoff = rate_limit_backoff(f"{error.stdout}\n{error.stderr}")
            if backoff is not None:
                return Err(
                    StageError(
                        kind="rate_limited",
                        message="upload throttled by App Store Connect",
                        hint=f"retry after {backoff:g}s; the artifact was kept for resubmission",
                        retry_after=backoff,
                    )
                )
        return Err(from_process_error(error, kind="upload", message="upload rejected"))


class AppStoreBuilds:
    """Build records, compliance flags and version attachment on App Store Connect."""

    def __init__(self, *, api: AppStoreConnect, app: AppConfig) -> None:
        self._api = api
        self._app = app
        self._app_id = app.apple_app_id

    def app_id(self) -> Result[str, StageError]:
        if self._app_id:
            return Ok(self._app_id)
        listing = self._api.get(f"/v1/apps?filter[bundleId]={quote(self._app.bundle_id, safe='')}", kind="upload")
        if isinstance(listing, Err):
            return listing
        for item in resources(listing.value):
            if get_str(attributes(item), "bundleId") == self._app.bundle_id:
                app_id = get_str(item, "id")
                if app_id:
                    self._app_id = app_id
                    return Ok(app_id)
        return Err(
            StageError(
                kind="not_found",
                message=f"no App Store Connect app for {self._app.bundle_id}",
                hint="Create the app record in App Store Connect or set app.apple_app_id.",
            )
        )

    def next_build_number(self) -> Result[str, StageError]:
        """One more than the highest build number uploaded so far (1 for a new app)."""
        app_id = self.app_id()
        if isinstance(app_id, Err):
            return app_id
        listing = self._api.get(f"/v1/builds?filter[app]={app_id.value}&sort=-version&limit=1", kind="build")
        if isinstance(listing, Err):
            return listing
        items = resources(listing.value)
        if not items:
            return Ok("1")
        latest = get_str(attributes(items[0]), "version") or "0"
        if not latest.isdigit():
            return Err(
                StageError(
                    kind="build",
                    message=f"cannot derive the next build number from {latest!r}",
                    hint="Set build.bump_build_number = false and manage CURRENT_PROJECT_VERSION manually.",
                )
            )
        return Ok(str(int(latest) + 1))

    def find_build(self, build_number: str, version: str | None = None) -> Result[tuple[str, str] | None, StageError]:
        """Return (build id, processing state) of exactly this build.

        None while the upload is not yet visible. A build with another
        build number or marketing version never matches.
        """
        app_id = self.app_id()
        if isinstance(app_id, Err):
            return app_id
        query = f"filter[app]={app_id.value}&filter[version]={quote(build_number, safe='')}"
        if version:
            query += f"&filter[preReleaseVersion.version]={quote(version, safe='')}"
        listing = self._api.get(f"/v1/builds?{query}&sort=-uploadedDate&limit=10", kind="upload")
        if isinstance(listing, Err):
            return listing
        for item in resources(listing.value):
            build_id = get_str(item, "id")
            attrs = attributes(item)
            if build_id is None or get_str(attrs, "version") != build_number:
                continue
            return Ok((build_id, get_str(attrs, "processingState") or "PROCESSING"))
        return Ok(None)

    def set_encryption_compliance(self, build_id: str, *, uses_non_exempt_encryption: bool) -> Result[None, StageError]:
        return self._api.patch(
            f"/v1/builds/{build_id}",
            {
                "data": {
                    "type": "builds",
                    "id": build_id,
                    "attributes": {"usesNonExemptEncryption": uses_non_exempt_encryption},
                }
            },
            kind="upload",
        )

    def attach_to_editable_version(self, build_id: str) -> Result[str, StageError]:
        """Select the build on the App Store version being prepared for review."""
        app_id = self.app_id()
        if isinstance(app_id, Err):
            return app_id
        platform = self._app.platform.upper()
        listing = self._api.get(
            f"/v1/apps/{app_id.value}/appStoreVersions"
            f"?filter[appStoreState]={_EDITABLE_VERSION_STATES}&filter[platform]={platform}&limit=1",
            kind="upload",
        )
        if isinstance(listing, Err):
            return listing
        items = resources(listing.value)
        version_id = get_str(items[0], "id") if items else None
        if version_id is None:
            return Err(
                StageError(
                    kind="upload",
                    message="no editable App Store version to attach the build to",
                    hint="Create the next version in App Store Connect before releasing for review.",
                )
            )
        attached = self._api.patch(
            f"/v1/appStoreVersions/{version_id}/relationships/build",
            {"data": {"type": "builds", "id": build_id}},
            kind="upload",
        )
        if isinstance(attached, Err):
            return attached
        return Ok(version_id)


class UploadRunner:
    def __init__(
        self,
        *,
        transporter: Transporter,
        builds: AppStoreBuilds,
        config: UploadConfig,
        console: ConsoleProtocol,
        cancel: CancelToken | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._transporter = transporter
        self._builds = builds
        self._config = config
        self._console = console
        self._cancel = cancel or CancelToken()
        self._now = now

    def upload(
        self,
        artifact: BuildArtifact,
        destination: Destination,
        *,
        deadline: Deadline | None = None,
    ) -> Result[UploadReceipt, StageError]:
        deadline = deadline or Deadline.after(None)
        if not artifact.path.is_file():
            return Err(StageError(kind="not_found", message=f"artifact not found: {artifact.path}"))
        waits = not (destination == "beta" and self._config.skip_waiting)
        if waits and not artifact.build_number:
            return Err(
                StageError(
                    kind="upload",
                    message="artifact has no build number; the uploaded build cannot be identified",
                    hint="Set CURRENT_PROJECT_VERSION in the project or enable build.bump_build_number.",
                )
            )

        submitted = self._transporter.upload_app(artifact.path, deadline=deadline)
        if isinstance(submitted, Err):
            return submitted
        receipt = UploadReceipt(artifact_path=artifact.path, destination=destination, submitted_at=self._now())
        self._console.print(f"submitted {artifact.path.name} for {destination}", Style.DIM)

        if not waits or artifact.build_number is None:
            return Ok(receipt)

        processed = self._wait_until_processed(artifact.build_number, artifact.version, deadline)
        if isinstance(processed, Err):
            return processed
        build_id, state = processed.value

        compliance = self._builds.set_encryption_compliance(
            build_id, uses_non_exempt_encryption=self._config.uses_non_exempt_encryption
        )
        if isinstance(compliance, Err):
            return compliance

        if destination == "review":
            attached = self._builds.attach_to_editable_version(build_id)
            if isinstance(attached, Err):
                return attached
            self._console.print(f"build attached to App Store version {attached.value}", Style.DIM)

        return Ok(
            UploadReceipt(
                artifact_path=receipt.artifact_path,
                destination=destination,
                submitted_at=receipt.submitted_at,
                build_id=build_id,
                processing_state=state,
            )
        )

    def _wait_until_processed(
        self, build_number: str, version: str | None, deadline: Deadline
    ) -> Result[tuple[str, str], StageError]:
        unseen = 0
        while True:
            found = self._builds.find_build(build_number, version)
            if isinstance(found, Err):
                return found
            if found.value is None:
                unseen += 1
                if unseen >= PROCESSING_LOOKUP_ATTEMPTS:
                    return Err(
                        StageError(
                            kind="upload",
                            message="uploaded build never appeared in App Store Connect",
                            hint="Check the App Store Connect activity tab for a processing email.",
                        )
                    )
            else:
                build_id, state = found.value
                match state:
                    case "VALID":
                        return Ok((build_id, state))
                    case "FAILED" | "INVALID":
                        return Err(
                            StageError(
                                kind="upload",
                                message=f"App Store Connect processing ended in {state}",
                                hint=f"build {build_id}",
                            )
                        )
                    case _:
                        self._console.print(f"build {build_id} is {state.lower()}", Style.DIM)

            pause = self._config.poll_interval_seconds
            remaining = deadline.remaining()
            if remaining is not None:
                if remaining <= 0:
                    return Err(
                        StageError(kind="timeout", message="timed out waiting for build processing")
                    )
                pause = min(pause, remaining)
            if self._cancel.wait(pause):
                return Err(cancelled(self._cancel.reason))
