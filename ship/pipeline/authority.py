"""Signing authority adapter (App Store Connect certificates and profiles API)."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal, Protocol
from urllib.parse import quote

from ship.core.result import Err, Ok, Result
from ship.core.structured import get_str
from ship.pipeline.appstore import AppStoreConnect, attributes, resource, resources
from ship.pipeline.errors import StageError
from ship.pipeline.material import SigningMaterial, decode_b64, new_key_and_csr
from ship.pipeline.model import DistributionType, SigningIdentity

__all__ = [
    "AppStoreConnectAuthority",
    "IdentityState",
    "IssuedIdentity",
    "SigningAuthority",
    "parse_asc_datetime",
]

IdentityState = Literal["valid", "missing", "revoked", "expired"]

_CERTIFICATE_TYPES: dict[str, str] = {
    "appstore": "IOS_DISTRIBUTION",
    "adhoc": "IOS_DISTRIBUTION",
    "enterprise": "IOS_DISTRIBUTION",
    "development": "IOS_DEVELOPMENT",
}

_PROFILE_TYPES: dict[str, str] = {
    "appstore": "IOS_APP_STORE",
    "adhoc": "IOS_APP_ADHOC",
    "enterprise": "IOS_APP_INHOUSE",
    "development": "IOS_APP_DEVELOPMENT",
}

_TZ_NO_COLON = re.compile(r"([+-]\d{2})(\d{2})$")


def parse_asc_datetime(value: str | None) -> datetime | None:
    """Parse App Store Connect timestamps like `2027-01-01T00:00:00.000+0000`."""
    if value is None:
        return None
    text = value.strip().replace("Z", "+00:00")
    text = _TZ_NO_COLON.sub(r"\1:\2", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True, slots=True)
class IssuedIdentity:
    identity: SigningIdentity
    material: SigningMaterial


class SigningAuthority(Protocol):
    def check(self, identity: SigningIdentity) -> Result[IdentityState, StageError]:
        """Report what the authority currently thinks of a stored identity."""
        ...

    def issue(
        self,
        *,
        app_identifier: str,
        distribution_type: DistributionType,
        team_id: str,
        passphrase: str,
    ) -> Result[IssuedIdentity, StageError]:
        """Create a new certificate + profile pair."""
        ...

    def revoke_all(self, *, distribution_type: DistributionType) -> Result[int, StageError]:
        """Revoke every certificate and profile of a distribution type."""
        ...

    def discard(self, identity: SigningIdentity) -> Result[None, StageError]:
        """Delete one issued certificate and profile; already gone counts as done."""
        ...


class AppStoreConnectAuthority:
    def __init__(
        self,
        *,
        api: AppStoreConnect,
        now: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
    ) -> None:
        self._api = api
        self._now = now

    def check(self, identity: SigningIdentity) -> Result[IdentityState, StageError]:
        cert = self._api.get(f"/v1/certificates/{identity.certificate_id}", kind="sync")
        if isinstance(cert, Err):
            if cert.error.kind == "not_found":
                return Ok("revoked")
            return cert

        profile = self._api.get(f"/v1/profiles/{identity.profile_id}", kind="sync")
        if isinstance(profile, Err):
            if profile.error.kind == "not_found":
                return Ok("missing")
            return profile

        now = self._now()
        cert_data = resource(cert.value)
        profile_data = resource(profile.value)
        if cert_data is None or profile_data is None:
            return Err(StageError(kind="sync", message="unexpected certificate/profile payload"))

        cert_exp = parse_asc_datetime(get_str(attributes(cert_data), "expirationDate"))
        profile_attrs = attributes(profile_data)
        profile_exp = parse_asc_datetime(get_str(profile_attrs, "expirationDate"))
        if get_str(profile_attrs, "profileState") not in (None, "ACTIVE"):
            return Ok("revoked")
        for exp in (cert_exp, profile_exp):
            if exp is not None and exp <= now:
                return Ok("expired")
        return Ok("valid")

    def issue(
        self,
        *,
        app_identifier: str,
        distribution_type: DistributionType,
        team_id: str,
        passphrase: str,
    ) -> Result[IssuedIdentity, StageError]:
        bundle_id = self._bundle_id_resource(app_identifier)
        if isinstance(bundle_id, Err):
            return bundle_id

        encrypted_key, csr_pem = new_key_and_csr(
            common_name=f"ship {team_id} {distribution_type}", passphrase=passphrase
        )
        cert = self._api.post(
            "/v1/certificates",
            {
                "data": {
                    "type": "certificates",
                    "attributes": {
                        "certificateType": _CERTIFICATE_TYPES[distribution_type],
                        "csrContent": csr_pem,
                    },
                }
            },
            kind="sync",
        )
        if isinstance(cert, Err):
            return cert
        cert_data = resource(cert.value)
        if cert_data is None or get_str(cert_data, "id") is None:
            return Err(StageError(kind="sync", message="certificate creation returned no id"))
        cert_id = get_str(cert_data, "id") or ""
        cert_attrs = attributes(cert_data)
        cert_der = decode_b64(get_str(cert_attrs, "certificateContent") or "", what="certificate")
        if isinstance(cert_der, Err):
            return cert_der

        profile_name = f"ship {app_identifier} {distribution_type}"
        cleared = self._delete_profiles_named(profile_name)
        if isinstance(cleared, Err):
            return cleared

        relationships: dict[str, object] = {
            "bundleId": {"data": {"type": "bundleIds", "id": bundle_id.value}},
            "certificates": {"data": [{"type": "certificates", "id": cert_id}]},
        }
        if distribution_type in ("adhoc", "development"):
            devices = self._device_ids()
            if isinstance(devices, Err):
                return devices
            relationships["devices"] = {"data": [{"type": "devices", "id": d} for d in devices.value]}

        profile = self._api.post(
            "/v1/profiles",
            {
                "data": {
                    "type": "profiles",
                    "attributes": {
                        "name": profile_name,
                        "profileType": _PROFILE_TYPES[distribution_type],
                    },
                    "relationships": relationships,
                }
            },
            kind="sync",
        )
        if isinstance(profile, Err):
            return profile
        profile_data = resource(profile.value)
        if profile_data is None or get_str(profile_data, "id") is None:
            return Err(StageError(kind="sync", message="profile creation returned no id"))
        profile_id = get_str(profile_data, "id") or ""
        profile_attrs = attributes(profile_data)
        profile_content = decode_b64(get_str(profile_attrs, "profileContent") or "", what="profile")
        if isinstance(profile_content, Err):
            return profile_content

        expiries = [
            e
            for e in (
                parse_asc_datetime(get_str(cert_attrs, "expirationDate")),
                parse_asc_datetime(get_str(profile_attrs, "expirationDate")),
            )
            if e is not None
        ]
        if not expiries:
            return Err(StageError(kind="sync", message="authority returned no expiration dates"))

        identity = SigningIdentity(
            identifier=f"{cert_id}:{profile_id}",
            app_identifier=app_identifier,
            distribution_type=distribution_type,
            team_id=team_id,
            certificate_id=cert_id,
            profile_id=profile_id,
            profile_name=get_str(profile_attrs, "name") or profile_name,
            profile_uuid=get_str(profile_attrs, "uuid") or "",
            expires_at=min(expiries),
            location="",
        )
        material = SigningMaterial(
            certificate_der=cert_der.value,
            encrypted_key_pem=encrypted_key,
            profile_content=profile_content.value,
        )
        return Ok(IssuedIdentity(identity=identity, material=material))

    def revoke_all(self, *, distribution_type: DistributionType) -> Result[int, StageError]:
        revoked = 0
        for collection, filter_key, filter_value in (
            ("profiles", "profileType", _PROFILE_TYPES[distribution_type]),
            ("certificates", "certificateType", _CERTIFICATE_TYPES[distribution_type]),
        ):
            listing = self._api.get(
                f"/v1/{collection}?filter[{filter_key}]={filter_value}&limit=200", kind="sync"
            )
            if isinstance(listing, Err):
                return listing
            for item in resources(listing.value):
                item_id = get_str(item, "id")
                if item_id is None:
                    continue
                deleted = self._api.delete(f"/v1/{collection}/{item_id}", kind="sync")
                if isinstance(deleted, Err):
                    return deleted
                revoked += 1
        return Ok(revoked)

    def discard(self, identity: SigningIdentity) -> Result[None, StageError]:
        for path in (f"/v1/profiles/{identity.profile_id}", f"/v1/certificates/{identity.certificate_id}"):
            deleted = self._api.delete(path, kind="sync")
            if isinstance(deleted, Err) and deleted.error.kind != "not_found":
                return deleted
        return Ok(None)

    def _bundle_id_resource(self, app_identifier: str) -> Result[str, StageError]:
        identifier = quote(app_identifier, safe="")
        listing = self._api.get(f"/v1/bundleIds?filter[identifier]={identifier}", kind="sync")
        if isinstance(listing, Err):
            return listing
        # The filter matches prefixes; only an exact identifier counts.
        for item in resources(listing.value):
            if get_str(attributes(item), "identifier") == app_identifier:
                resource_id = get_str(item, "id")
                if resource_id is not None:
                    return Ok(resource_id)
        return Err(
            StageError(
                kind="not_found",
                message=f"bundle identifier not registered: {app_identifier}",
                hint="Register the App ID in the developer portal first.",
            )
        )

    def _delete_profiles_named(self, name: str) -> Result[None, StageError]:
        listing = self._api.get(f"/v1/profiles?filter[name]={quote(name, safe='')}", kind="sync")
        if isinstance(listing, Err):
            return listing
        for item in resources(listing.value):
            item_id = get_str(item, "id")
            if item_id is None or get_str(attributes(item), "name") != name:
                continue
            deleted = self._api.delete(f"/v1/profiles/{item_id}", kind="sync")
            if isinstance(deleted, Err):
                return deleted
        return Ok(None)

    def _device_ids(self) -> Result[list[str], StageError]:
        listing = self._api.get("/v1/devices?filter[platform]=IOS&filter[status]=ENABLED&limit=200", kind="sync")
        if isinstance(listing, Err):
            return listing
        return Ok([d for d in (get_str(i, "id") for i in resources(listing.value)) if d])
