"""Thin App Store Connect REST client.

Maps HTTP outcomes onto the pipeline's error kinds:
- 401: token rejected; re-authenticated once transparently, then `auth`
- 403: `auth` (key lacks the required role)
- 404: `not_found`
- 409 / 422: `upload` or `sync` validation failure (caller supplies the kind)
- 429: `rate_limited` with the server's Retry-After as backoff hint
Idempotent reads are retried on transient network failures; writes never are.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from time import sleep
from typing import Any, Literal

from ship.core.result import Err, Ok, Result
from ship.core.structured import StrDict, as_obj_list, as_str_dict, get_list, get_str, get_table
from ship.pipeline.errors import DEFAULT_RATE_LIMIT_BACKOFF_SECONDS, StageError, StageErrorKind
from ship.pipeline.model import AuthToken
from ship.pipeline.timeouts import ASC_READ_RETRY_ATTEMPTS, ASC_READ_RETRY_DELAY_SECONDS
from ship.platform.http import HttpClient, HttpError

__all__ = [
    "ASC_BASE_URL",
    "AppStoreConnect",
    "api_error_detail",
    "attributes",
    "resource",
    "resources",
]

ASC_BASE_URL = "https://api.appstoreconnect.apple.com"

JsonObject = dict[str, Any]
TokenProvider = Callable[[], Result[AuthToken, StageError]]
Method = Literal["GET", "POST", "PATCH", "DELETE"]


def api_error_detail(error: HttpError) -> str | None:
    """Extract `errors[].detail` from a JSON:API error body."""
    if not error.body:
        return None
    try:
        obj: object = json.loads(error.body)
    except json.JSONDecodeError:
        return None
    data = as_str_dict(obj)
    if data is None:
        return None
    items = as_obj_list(get_list(data, "errors"))
    if not items:
        return None
    details: list[str] = []
    for item in items:
        d = as_str_dict(item)
        if d is None:
            continue
        detail = get_str(d, "detail") or get_str(d, "title")
        if detail:
            details.append(detail)
    return "; ".join(details) or None


def resource(payload: StrDict) -> StrDict | None:
    """The single `data` resource of a JSON:API document."""
    return get_table(payload, "data")


def resources(payload: StrDict) -> list[StrDict]:
    items = as_obj_list(get_list(payload, "data")) or []
    return [d for d in (as_str_dict(item) for item in items) if d is not None]


def attributes(item: StrDict) -> StrDict:
    return get_table(item, "attributes") or {}


def _is_transient(error: HttpError) -> bool:
    return error.status == 0 or error.status in (500, 502, 503, 504)


class AppStoreConnect:
    def __init__(
        self,
        *,
        http: HttpClient,
        token: TokenProvider,
        refresh: TokenProvider | None = None,
        base_url: str = ASC_BASE_URL,
        read_attempts: int = ASC_READ_RETRY_ATTEMPTS,
    ) -> None:
        self._http = http
        self._token = token
        self._refresh = refresh
        self._base_url = base_url.rstrip("/")
        self._read_attempts = max(1, read_attempts)

    def url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def verify_token(self, token: AuthToken) -> Result[None, StageError]:
        """Confirm a freshly minted token is accepted (one cheap read)."""
        result = self._http.request_json(
            "GET",
            self.url("/v1/apps?limit=1"),
            headers={"Authorization": f"Bearer {token.value}"},
        )
        if isinstance(result, Err):
            return Err(self._map_error(result.error, kind="auth", message="token verification failed"))
        return Ok(None)

    def get(self, path: str, *, kind: StageErrorKind) -> Result[JsonObject, StageError]:
        result = self._call("GET", path, body=None, kind=kind)
        if isinstance(result, Err):
            return result
        return Ok(result.value or {})

    def post(self, path: str, body: JsonObject, *, kind: StageErrorKind) -> Result[JsonObject, StageError]:
        result = self._call("POST", path, body=body, kind=kind)
        if isinstance(result, Err):
            return result
        return Ok(result.value or {})

    def patch(self, path: str, body: JsonObject, *, kind: StageErrorKind) -> Result[None, StageError]:
        result = self._call("PATCH", path, body=body, kind=kind)
        if isinstance(result, Err):
            return result
        return Ok(None)

    def delete(self, path: str, *, kind: StageErrorKind) -> Result[None, StageError]:
        result = self._call("DELETE", path, body=None, kind=kind)
        if isinstance(result, Err):
            return result
        return Ok(None)

    def _call(
        self,
        method: Method,
        path: str,
        *,
        body: JsonObject | None,
        kind: StageErrorKind,
    ) -> Result[JsonObject | None, StageError]:
        token = self._token()
        if isinstance(token, Err):
            return token

        reauthenticated = False
        attempts = self._read_attempts if method == "GET" else 1
        attempt = 0
        while True:
            result = self._http.request_json(
                method,
                self.url(path),
                headers={"Authorization": f"Bearer {token.value.value}"},
                body=body,
            )
            if isinstance(result, Ok):
                return result

            error = result.error
            if error.status == 401 and self._refresh is not None and not reauthenticated:
                # Token expired mid-stage: mint a new one and replay once.
                reauthenticated = True
                token = self._refresh()
                if isinstance(token, Err):
                    return token
                continue

            attempt += 1
            if attempt < attempts and _is_transient(error):
                sleep(ASC_READ_RETRY_DELAY_SECONDS * attempt)
                continue

            return Err(self._map_error(error, kind=kind, message=f"{method} {path} failed"))

    @staticmethod
    def _map_error(error: HttpError, *, kind: StageErrorKind, message: str) -> StageError:
        detail = api_error_detail(error) or error.message
        if error.status == 429:
            return StageError(
                kind="rate_limited",
                message="App Store Connect rate limit reached",
                hint=detail,
                retry_after=error.retry_after or DEFAULT_RATE_LIMIT_BACKOFF_SECONDS,
            )
        if error.status in (401, 403):
            return StageError(kind="auth", message=f"{message}: HTTP {error.status}", hint=detail)
        if error.status == 404:
            return StageError(kind="not_found", message=f"{message}: not found", hint=detail)
        return StageError(kind=kind, message=f"{message}: {error}", hint=detail)
