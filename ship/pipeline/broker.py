"""Credential broker: non-interactive App Store Connect authentication.

Authentication uses an App Store Connect API key, never an Apple ID
password or a two-factor prompt. The broker signs a short-lived ES256 JWT;
the token lives in memory for the run and is re-minted when it nears expiry.
"""

from __future__ import annotations

import time
from collections.abc import Callable

import jwt

from ship.core.result import Err, Ok, Result
from ship.pipeline.errors import StageError
from ship.pipeline.model import AuthToken, Stage
from ship.pipeline.secrets import SecretResolver
from ship.pipeline.timeouts import ASC_TOKEN_LIFETIME_SECONDS, ASC_TOKEN_REFRESH_SKEW_SECONDS

__all__ = ["ASC_AUDIENCE", "CredentialBroker", "TokenSource"]

ASC_AUDIENCE = "appstoreconnect-v1"

TokenCheck = Callable[[AuthToken], Result[None, StageError]]
Clock = Callable[[], float]


class CredentialBroker:
    """Mints and caches App Store Connect bearer tokens.

    `verify`, when given, performs one cheap authenticated call; a rejected
    key fails here with an `auth` error.
    """

    def __init__(
        self,
        *,
        verify: TokenCheck | None = None,
        clock: Clock = time.time,
        lifetime: float = ASC_TOKEN_LIFETIME_SECONDS,
    ) -> None:
        self._verify = verify
        self._clock = clock
        self._lifetime = min(lifetime, ASC_TOKEN_LIFETIME_SECONDS)
        self._cached: AuthToken | None = None

    @property
    def cached(self) -> AuthToken | None:
        return self._cached

    def authenticate(
        self,
        key_id: str,
        issuer_id: str,
        private_key: str,
    ) -> Result[AuthToken, StageError]:
        if not key_id.strip() or not issuer_id.strip():
            return Err(StageError(kind="auth", message="API key id and issuer id are required"))

        now = self._clock()
        exp = now + self._lifetime
        payload = {
            "iss": issuer_id.strip(),
            "iat": int(now),
            "exp": int(exp),
            "aud": ASC_AUDIENCE,
        }
        try:
            encoded = jwt.encode(
                payload,
                private_key,
                algorithm="ES256",
                headers={"kid": key_id.strip(), "typ": "JWT"},
            )
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            # Never include the key material itself, only the failure class.
            return Err(
                StageError(
                    kind="auth",
                    message="could not sign App Store Connect token",
                    hint=f"invalid API private key ({type(e).__name__}); expected a .p8 PEM key",
                )
            )

        token = AuthToken(value=encoded, key_id=key_id.strip(), issued_at=now, expires_at=float(int(exp)))

        if self._verify is not None:
            verified = self._verify(token)
            if isinstance(verified, Err):
                error = verified.error
                if error.kind in ("rate_limited", "cancelled", "timeout"):
                    return Err(error)
                return Err(
                    StageError(
                        kind="auth",
                        message="App Store Connect rejected the API key",
                        hint=error.pretty(),
                    )
                )

        self._cached = token
        return Ok(token)

    def valid_cached(self) -> AuthToken | None:
        token = self._cached
        if token is None:
            return None
        if token.expired(self._clock(), skew=ASC_TOKEN_REFRESH_SKEW_SECONDS):
            return None
        return token

    def forget(self) -> None:
        self._cached = None


class TokenSource:
    """Hands stages a valid token, re-authenticating when the cached one expires.

    API key parts are re-resolved from the secret store on each
    authentication and dropped immediately after signing.
    """

    def __init__(
        self,
        *,
        broker: CredentialBroker,
        secrets: SecretResolver,
        key_id_name: str,
        issuer_id_name: str,
        private_key_name: str,
    ) -> None:
        self._broker = broker
        self._secrets = secrets
        self._names = (key_id_name, issuer_id_name, private_key_name)

    def current_token(self) -> Result[AuthToken, StageError]:
        cached = self._broker.valid_cached()
        if cached is not None:
            return Ok(cached)
        return self.refresh()

    def refresh(self) -> Result[AuthToken, StageError]:
        # Re-authentication is always the broker acting, whichever stage asked.
        self._broker.forget()
        values: list[str] = []
        for name in self._names:
            resolved = self._secrets.resolve(name, stage=Stage.AUTHENTICATING)
            if isinstance(resolved, Err):
                return resolved
            values.append(resolved.value.value)
        key_id, issuer_id, private_key = values
        return self._broker.authenticate(key_id, issuer_id, private_key)
