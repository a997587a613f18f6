"""Build stage runner: signing settings, archive, export.

Signing settings are applied in two phases: first the target is switched to
automatic signing (explicit specifiers cleared), then to manual signing with
the synchronized identity. Writing the manual settings directly leaves
stale automatic-signing state in some projects and xcodebuild then ignores
the manual profile; the automatic pass resets it. This ordering is a
workaround for that toolchain behaviour and is kept as-is.
"""

from __future__ import annotations

import plistlib
import secrets
import shutil
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from ship.core.cancel import CancelToken, Deadline
from ship.core.config import AppConfig, BuildConfig
from ship.core.redact import Redactor
from ship.core.result import Err, Ok, Result
from ship.output.console import ConsoleProtocol, Style
from ship.pipeline.errors import StageError, cancelled, from_process_error
from ship.pipeline.keychain import BuildKeychain
from ship.pipeline.material import export_pkcs12
from ship.pipeline.model import BuildArtifact, DistributionType, SigningIdentity
from ship.pipeline.store import SigningStore
from ship.pipeline.sync import PassphraseSource
from ship.pipeline.xcodeproj import (
    automatic_signing,
    manual_signing,
    read_setting,
    update_project_file,
)
from ship.platform.files import atomic_write_bytes
from ship.platform.process import run as run_process

__all__ = ["BuildRunner", "export_options", "identity_name_for"]

_EXPORT_METHODS: dict[str, str] = {
    "appstore": "app-store",
    "adhoc": "ad-hoc",
    "development": "development",
    "enterprise": "enterprise",
}


def identity_name_for(distribution_type: DistributionType) -> str:
    """Code signing identity name xcodebuild resolves in the keychain."""
    return "Apple Development" if distribution_type == "development" else "Apple Distribution"


def export_options(
    identity: SigningIdentity,
    *,
    method: str | None = None,
) -> dict[str, object]:
    return {
        "method": method or _EXPORT_METHODS[identity.distribution_type],
        "teamID": identity.team_id,
        "signingStyle": "manual",
        "signingCertificate": identity_name_for(identity.distribution_type),
        "provisioningProfiles": {identity.app_identifier: identity.profile_name},
        "uploadSymbols": True,
        "compileBitcode": False,
    }


class BuildRunner:
    def __init__(
        self,
        *,
        store: SigningStore,
        passphrase: PassphraseSource,
        app: AppConfig,
        config: BuildConfig,
        profiles_dir: Path,
        redactor: Redactor,
        console: ConsoleProtocol,
        cancel: CancelToken | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._store = store
        self._passphrase = passphrase
        self._app = app
        self._config = config
        self._profiles_dir = profiles_dir
        self._redactor = redactor
        self._console = console
        self._cancel = cancel
        self._now = now

    def build(
        self,
        project_path: Path,
        signing_identity: SigningIdentity,
        scheme: str,
        *,
        output_dir: Path | None = None,
        build_number: str | None = None,
        deadline: Deadline | None = None,
    ) -> Result[BuildArtifact, StageError]:
        """Archive and export a signed `.ipa`.

        Never retried: a failed build returns a `build` error carrying the
        tail of the toolchain log.
        """
        out = output_dir or self._config.output_dir
        deadline = deadline or Deadline.after(None)

        material = self._store.read_material(signing_identity)
        if isinstance(material, Err):
            return material

        installed = self._install_profile(signing_identity, material.value.profile_content)
        if isinstance(installed, Err):
            return installed

        signed = self._apply_signing(project_path, signing_identity)
        if isinstance(signed, Err):
            return signed

        if build_number is not None:
            bumped = update_project_file(
                project_path,
                bundle_id=signing_identity.app_identifier,
                settings={"CURRENT_PROJECT_VERSION": build_number},
            )
            if isinstance(bumped, Err):
                return bumped
            self._console.print(f"build number set to {build_number}", Style.DIM)

        passphrase = self._passphrase()
        if isinstance(passphrase, Err):
            return passphrase

        export_password = secrets.token_urlsafe(24)
        self._redactor.register(export_password)
        bundle = export_pkcs12(
            material.value,
            passphrase=passphrase.value,
            export_password=export_password,
            friendly_name=f"{identity_name_for(signing_identity.distribution_type)}: {signing_identity.team_id}",
        )
        if isinstance(bundle, Err):
            return bundle

        out.mkdir(parents=True, exist_ok=True)
        keychain = BuildKeychain(workdir=out, redactor=self._redactor, cancel=self._cancel)
        result = self._with_keychain(
            keychain,
            bundle.value,
            export_password,
            project_path=project_path,
            identity=signing_identity,
            scheme=scheme,
            out=out,
            deadline=deadline,
        )
        deleted = keychain.delete()
        if isinstance(deleted, Err):
            if isinstance(result, Ok):
                return deleted
            self._console.warning(f"build keychain cleanup failed: {deleted.error.message}")
        if isinstance(result, Err):
            return result

        bundle_id = signing_identity.app_identifier
        version = self._project_setting(project_path, bundle_id, "MARKETING_VERSION")
        if build_number is None:
            build_number = self._project_setting(project_path, bundle_id, "CURRENT_PROJECT_VERSION")
        return Ok(
            BuildArtifact(
                path=result.value,
                platform=self._app.platform,
                signing_identity=signing_identity,
                built_at=self._now(),
                version=version,
                build_number=build_number,
            )
        )

    def _install_profile(self, identity: SigningIdentity, content: bytes) -> Result[Path, StageError]:
        name = identity.profile_uuid or identity.profile_id
        target = self._profiles_dir / f"{name}.mobileprovision"
        try:
            atomic_write_bytes(target, content)
        except OSError as e:
            return Err(
                StageError(kind="build", message=f"cannot install provisioning profile: {e}", hint=str(target))
            )
        self._console.print(f"installed profile {identity.profile_name}", Style.DIM)
        return Ok(target)

    def _apply_signing(self, project_path: Path, identity: SigningIdentity) -> Result[None, StageError]:
        # Phase 1 then phase 2; see module docstring.
        phases = (
            automatic_signing(identity.team_id),
            manual_signing(
                team_id=identity.team_id,
                identity_name=identity_name_for(identity.distribution_type),
                profile_name=identity.profile_name,
            ),
        )
        for settings in phases:
            updated = update_project_file(project_path, bundle_id=identity.app_identifier, settings=settings)
            if isinstance(updated, Err):
                return updated
            self._console.print(
                f"signing style {settings['CODE_SIGN_STYLE']} applied to {updated.value} configuration(s)",
                Style.DIM,
            )
        return Ok(None)

    def _with_keychain(
        self,
        keychain: BuildKeychain,
        bundle: bytes,
        bundle_password: str,
        *,
        project_path: Path,
        identity: SigningIdentity,
        scheme: str,
        out: Path,
        deadline: Deadline,
    ) -> Result[Path, StageError]:
        created = keychain.create()
        if isinstance(created, Err):
            return created
        imported = keychain.import_pkcs12(bundle, bundle_password=bundle_password)
        if isinstance(imported, Err):
            return imported

        archive_path = out / f"{scheme}.xcarchive"
        export_path = out / "export"
        if export_path.exists():
            shutil.rmtree(export_path)

        archived = self._xcodebuild(
            [
                "xcodebuild",
                "-project",
                str(project_path),
                "-scheme",
                scheme,
                "-configuration",
                self._config.configuration,
                "-destination",
                "generic/platform=iOS",
                "-archivePath",
                str(archive_path),
                "archive",
                f"OTHER_CODE_SIGN_FLAGS=--keychain {keychain.path}",
            ],
            cwd=project_path.parent,
            message="xcodebuild archive failed",
            deadline=deadline,
        )
        if isinstance(archived, Err):
            return archived

        options_path = out / "ExportOptions.plist"
        atomic_write_bytes(
            options_path,
            plistlib.dumps(export_options(identity, method=self._config.export_method)),
        )
        exported = self._xcodebuild(
            [
                "xcodebuild",
                "-exportArchive",
                "-archivePath",
                str(archive_path),
                "-exportPath",
                str(export_path),
                "-exportOptionsPlist",
                str(options_path),
            ],
            cwd=project_path.parent,
            message="xcodebuild -exportArchive failed",
            deadline=deadline,
        )
        if isinstance(exported, Err):
            return exported

        ipas = sorted(export_path.glob("*.ipa"))
        if not ipas:
            return Err(
                StageError(
                    kind="build",
                    message="export finished but produced no .ipa",
                    hint=str(export_path),
                )
            )
        self._console.print(f"exported {ipas[0].name}", Style.DIM)
        return Ok(ipas[0])

    def _xcodebuild(
        self,
        cmd: list[str],
        *,
        cwd: Path,
        message: str,
        deadline: Deadline,
    ) -> Result[str, StageError]:
        if self._cancel is not None and self._cancel.cancelled:
            return Err(cancelled(self._cancel.reason))
        self._console.print(" ".join(cmd[:4]), Style.DIM)
        result = run_process(cmd, cwd=cwd, timeout=deadline.remaining(), cancel=self._cancel)
        if isinstance(result, Err):
            return Err(from_process_error(result.error, kind="build", message=message))
        return Ok(result.value)

    def _project_setting(self, project_path: Path, bundle_id: str, key: str) -> str | None:
        try:
            text = (project_path / "project.pbxproj").read_text(encoding="utf-8")
        except OSError:
            return None
        return read_setting(text, bundle_id=bundle_id, key=key)
