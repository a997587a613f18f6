"""Typed pipeline configuration loading and validation.

The pipeline is configured by a single `ship.toml` file. Every value the
engine needs (bundle identifier, team, project, signing store, upload
destination, secret references, stage timeouts) is enumerated here and
validated before a run starts, so a misconfiguration fails at startup and
never halfway through a release.

Secret *values* never live in this file: the `[secrets]` table only names
the credentials that the secret store resolves at stage boundaries.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from .result import Err, Ok, Result
from .structured import StrDict, as_str_dict, get_bool, get_float, get_str, get_table

__all__ = [
    "AppConfig",
    "BuildConfig",
    "ConfigError",
    "DISTRIBUTION_TYPES",
    "PipelineConfig",
    "RunsConfig",
    "SecretsConfig",
    "SigningConfig",
    "TimeoutsConfig",
    "UploadConfig",
    "load_config",
]

DistributionType = Literal["appstore", "adhoc", "development", "enterprise"]
Destination = Literal["review", "beta"]
SecretBackend = Literal["env", "file"]

DISTRIBUTION_TYPES: tuple[str, ...] = ("appstore", "adhoc", "development", "enterprise")
DESTINATIONS: tuple[str, ...] = ("review", "beta")
SECRET_BACKENDS: tuple[str, ...] = ("env", "file")

DEFAULT_PROFILES_DIR = "~/Library/MobileDevice/Provisioning Profiles"


@dataclass(frozen=True, slots=True)
class ConfigError:
    """Error when config cannot be loaded, parsed or validated."""

    message: str
    path: Path | None = None
    problems: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AppConfig:
    bundle_id: str = ""
    team_id: str = ""
    # App Store Connect numeric app id; looked up by bundle id when empty.
    apple_app_id: str | None = None
    platform: str = "ios"


@dataclass(frozen=True, slots=True)
class BuildConfig:
    project_path: Path = Path(".")
    scheme: str = ""
    configuration: str = "Release"
    output_dir: Path = Path(".build/ship")
    # Derived from signing.distribution_type when unset.
    export_method: str | None = None
    bump_build_number: bool = True


@dataclass(frozen=True, slots=True)
class SigningConfig:
    store_path: Path = Path(".ship/signing-store")
    store_remote: str | None = None
    distribution_type: DistributionType = "appstore"
    lease_seconds: float = 15 * 60.0
    profiles_dir: Path = field(default_factory=lambda: Path(DEFAULT_PROFILES_DIR).expanduser())


@dataclass(frozen=True, slots=True)
class UploadConfig:
    skip_waiting: bool = False
    uses_non_exempt_encryption: bool = False
    poll_interval_seconds: float = 30.0


@dataclass(frozen=True, slots=True)
class SecretsConfig:
    """Names of the credentials to resolve, plus where to resolve them from."""

    backend: SecretBackend = "env"
    prefix: str = "SHIP_SECRET_"
    directory: Path | None = None
    key_id: str = "asc_key_id"
    issuer_id: str = "asc_issuer_id"
    private_key: str = "asc_private_key"
    store_passphrase: str = "signing_store_passphrase"


@dataclass(frozen=True, slots=True)
class TimeoutsConfig:
    """Per-stage wall-clock limits in seconds."""

    authenticating: float = 2 * 60.0
    syncing: float = 10 * 60.0
    building: float = 60 * 60.0
    uploading: float = 2 * 60 * 60.0

    def for_stage(self, stage: str) -> float:
        return float(getattr(self, stage))


@dataclass(frozen=True, slots=True)
class RunsConfig:
    directory: Path = Path(".ship/runs")


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Main configuration container, passed to the orchestrator at construction."""

    app: AppConfig = field(default_factory=AppConfig)
    build: BuildConfig = field(default_factory=BuildConfig)
    signing: SigningConfig = field(default_factory=SigningConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    secrets: SecretsConfig = field(default_factory=SecretsConfig)
    timeouts: TimeoutsConfig = field(default_factory=TimeoutsConfig)
    runs: RunsConfig = field(default_factory=RunsConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, object], *, base_dir: Path) -> PipelineConfig:
        """Create a config from parsed TOML; relative paths resolve against base_dir."""
        app: StrDict = get_table(data, "app") or {}
        build: StrDict = get_table(data, "build") or {}
        signing: StrDict = get_table(data, "signing") or {}
        upload: StrDict = get_table(data, "upload") or {}
        secrets: StrDict = get_table(data, "secrets") or {}
        timeouts: StrDict = get_table(data, "timeouts") or {}
        runs: StrDict = get_table(data, "runs") or {}

        def path_of(table: StrDict, key: str, default: Path) -> Path:
            raw = get_str(table, key)
            p = Path(raw).expanduser() if raw is not None else default
            return p if p.is_absolute() else base_dir / p

        secrets_dir = get_str(secrets, "directory")
        defaults_secrets = SecretsConfig()
        defaults_timeouts = TimeoutsConfig()
        defaults_signing = SigningConfig()

        return cls(
            app=AppConfig(
                bundle_id=get_str(app, "bundle_id") or "",
                team_id=get_str(app, "team_id") or "",
                apple_app_id=get_str(app, "apple_app_id"),
                platform=get_str(app, "platform") or "ios",
            ),
            build=BuildConfig(
                project_path=path_of(build, "project_path", Path(".")),
                scheme=get_str(build, "scheme") or "",
                configuration=get_str(build, "configuration") or "Release",
                output_dir=path_of(build, "output_dir", Path(".build/ship")),
                export_method=get_str(build, "export_method"),
                bump_build_number=_bool_or(build, "bump_build_number", True),
            ),
            signing=SigningConfig(
                store_path=path_of(signing, "store_path", Path(".ship/signing-store")),
                store_remote=get_str(signing, "store_remote"),
                distribution_type=get_str(signing, "distribution_type") or "appstore",  # type: ignore[arg-type]
                lease_seconds=_float_or(signing, "lease_seconds", defaults_signing.lease_seconds),
                profiles_dir=path_of(signing, "profiles_dir", defaults_signing.profiles_dir),
            ),
            upload=UploadConfig(
                skip_waiting=_bool_or(upload, "skip_waiting", False),
                uses_non_exempt_encryption=_bool_or(upload, "uses_non_exempt_encryption", False),
                poll_interval_seconds=_float_or(upload, "poll_interval_seconds", 30.0),
            ),
            secrets=SecretsConfig(
                backend=get_str(secrets, "backend") or "env",  # type: ignore[arg-type]
                prefix=get_str(secrets, "prefix") or defaults_secrets.prefix,
                directory=(path_of(secrets, "directory", Path(".")) if secrets_dir else None),
                key_id=get_str(secrets, "key_id") or defaults_secrets.key_id,
                issuer_id=get_str(secrets, "issuer_id") or defaults_secrets.issuer_id,
                private_key=get_str(secrets, "private_key") or defaults_secrets.private_key,
                store_passphrase=get_str(secrets, "store_passphrase")
                or defaults_secrets.store_passphrase,
            ),
            timeouts=TimeoutsConfig(
                authenticating=_float_or(
                    timeouts, "authenticating", defaults_timeouts.authenticating
                ),
                syncing=_float_or(timeouts, "syncing", defaults_timeouts.syncing),
                building=_float_or(timeouts, "building", defaults_timeouts.building),
                uploading=_float_or(timeouts, "uploading", defaults_timeouts.uploading),
            ),
            runs=RunsConfig(directory=path_of(runs, "directory", Path(".ship/runs"))),
        )

    def validate(self) -> list[str]:
        """Return every problem found (empty list when the config is usable)."""
        problems: list[str] = []
        if not self.app.bundle_id:
            problems.append("app.bundle_id is required")
        if not self.app.team_id:
            problems.append("app.team_id is required")
        if not self.build.scheme:
            problems.append("build.scheme is required")
        if self.build.project_path.suffix != ".xcodeproj":
            problems.append(f"build.project_path must point to a .xcodeproj: {self.build.project_path}")
        if self.signing.distribution_type not in DISTRIBUTION_TYPES:
            problems.append(
                f"signing.distribution_type must be one of {', '.join(DISTRIBUTION_TYPES)}"
            )
        if self.signing.lease_seconds <= 0:
            problems.append("signing.lease_seconds must be positive")
        if self.secrets.backend not in SECRET_BACKENDS:
            problems.append(f"secrets.backend must be one of {', '.join(SECRET_BACKENDS)}")
        if self.secrets.backend == "file" and self.secrets.directory is None:
            problems.append("secrets.directory is required for the file backend")
        if self.upload.poll_interval_seconds <= 0:
            problems.append("upload.poll_interval_seconds must be positive")
        for stage in ("authenticating", "syncing", "building", "uploading"):
            if self.timeouts.for_stage(stage) <= 0:
                problems.append(f"timeouts.{stage} must be positive")
        return problems


def _bool_or(table: StrDict, key: str, default: bool) -> bool:
    value = get_bool(table, key)
    return default if value is None else value


def _float_or(table: StrDict, key: str, default: float) -> float:
    value = get_float(table, key)
    return default if value is None else value


def _parse_toml(path: Path) -> Result[StrDict, ConfigError]:
    """Parse a TOML file, handling read and parse errors."""
    import tomllib

    try:
        content = path.read_bytes()
        data_obj: object = tomllib.loads(content.decode("utf-8"))
        data = as_str_dict(data_obj)
        if data is None:
            return Err(ConfigError("Config root must be a TOML table", path=path))
        return Ok(data)
    except FileNotFoundError:
        return Err(ConfigError(f"Config file not found: {path}", path=path))
    except PermissionError:
        return Err(ConfigError(f"Permission denied reading: {path}", path=path))
    except tomllib.TOMLDecodeError as e:
        return Err(ConfigError(f"Invalid TOML syntax: {e}", path=path))
    except UnicodeDecodeError as e:
        return Err(ConfigError(f"Error reading config: {e}", path=path))


def load_config(path: Path) -> Result[PipelineConfig, ConfigError]:
    """Load, parse and validate the pipeline configuration.

    Args:
        path: Path to ship.toml

    Returns:
        Ok(PipelineConfig) when usable, Err(ConfigError) listing every problem otherwise.
    """
    result = _parse_toml(path)
    if isinstance(result, Err):
        return result

    try:
        config = PipelineConfig.from_dict(result.value, base_dir=path.resolve().parent)
    except (KeyError, TypeError, ValueError) as e:
        return Err(ConfigError(f"Invalid config structure: {e}", path=path))

    problems = config.validate()
    if problems:
        return Err(
            ConfigError(
                f"Invalid config: {len(problems)} problem(s)",
                path=path,
                problems=tuple(problems),
            )
        )
    return Ok(config)
