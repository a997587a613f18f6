"""HTTP client abstraction for the App Store Connect REST API.

This module provides:
- HttpClient: Protocol for JSON requests (injectable for tests)
- RealHttpClient: Real implementation using urllib
- MockHttpClient: Scripted implementation for testing
"""

from __future__ import annotations

import json
import ssl
import urllib.error
import urllib.request
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Protocol, cast, runtime_checkable

from ship.core.result import Err, Ok, Result
from ship.core.structured import as_str_dict

__all__ = [
    "HttpClient",
    "HttpError",
    "HttpCall",
    "MockHttpClient",
    "RealHttpClient",
]

JsonObject = dict[str, Any]


@dataclass(frozen=True, slots=True)
class HttpError:
    """HTTP error details.

    Attributes:
        url: The URL that failed
        status: HTTP status code (0 for network errors)
        message: Human-readable error message
        retry_after: Seconds from a Retry-After header, when the server sent one
        body: Raw error body (JSON:API `errors` payload for App Store Connect)
    """

    url: str
    status: int
    message: str
    retry_after: float | None = None
    body: str = ""

    def __str__(self) -> str:
        if self.status:
            return f"HTTP {self.status}: {self.message} ({self.url})"
        return f"{self.message} ({self.url})"


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


@runtime_checkable
class HttpClient(Protocol):
    """Protocol for JSON-over-HTTP calls."""

    def request_json(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: JsonObject | None = None,
    ) -> Result[JsonObject | None, HttpError]:
        """Send a request and parse the JSON response.

        Returns:
            Ok with the parsed object (None for empty bodies such as 204),
            or Err with HttpError.
        """
        ...


class RealHttpClient:
    """Real HTTP client using urllib with system certificates."""

    def __init__(self, timeout: float = 60.0, user_agent: str = "ship/0.1.0") -> None:
        self.timeout = timeout
        self.user_agent = user_agent
        self._ssl_context = ssl.create_default_context()

    def request_json(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: JsonObject | None = None,
    ) -> Result[JsonObject | None, HttpError]:
        all_headers = {"User-Agent": self.user_agent, "Accept": "application/json"}
        all_headers.update(headers or {})
        data: bytes | None = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            all_headers["Content-Type"] = "application/json"

        try:
            req = urllib.request.Request(url, data=data, headers=all_headers, method=method)
            with urllib.request.urlopen(
                req,
                timeout=self.timeout,
                context=self._ssl_context,
            ) as response:
                raw = response.read()
        except urllib.error.HTTPError as e:
            err_body = ""
            try:
                err_body = e.read().decode("utf-8", errors="replace")
            except OSError:
                err_body = ""
            return Err(
                HttpError(
                    url=url,
                    status=e.code,
                    message=str(e.reason),
                    retry_after=_parse_retry_after(e.headers.get("Retry-After") if e.headers else None),
                    body=err_body,
                )
            )
        except urllib.error.URLError as e:
            return Err(HttpError(url=url, status=0, message=str(e.reason)))
        except TimeoutError:
            return Err(HttpError(url=url, status=0, message="Request timed out"))
        except (ValueError, OSError) as e:
            return Err(HttpError(url=url, status=0, message=str(e)))

        if not raw.strip():
            return Ok(None)
        try:
            obj: object = json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return Err(HttpError(url=url, status=0, message=f"JSON parse error: {e}"))
        data_obj = as_str_dict(obj)
        if data_obj is None:
            return Err(HttpError(url=url, status=0, message="Expected JSON object"))
        return Ok(cast(JsonObject, data_obj))


@dataclass(frozen=True, slots=True)
class HttpCall:
    method: str
    url: str
    headers: dict[str, str]
    body: JsonObject | None


def _empty_calls() -> list[HttpCall]:
    return []


@dataclass
class MockHttpClient:
    """Scripted HTTP client for testing.

    Responses are queued per (method, url); the last queued response is
    repeated once the queue is down to one entry.

    Usage:
        client = MockHttpClient()
        client.add("GET", "https://api.example.com/v1/apps", {"data": []})
        result = client.request_json("GET", "https://api.example.com/v1/apps")
        assert result == Ok({"data": []})
    """

    calls: list[HttpCall] = field(default_factory=_empty_calls)
    _responses: dict[tuple[str, str], deque[JsonObject | None | HttpError]] = field(
        default_factory=dict
    )

    def add(self, method: str, url: str, response: JsonObject | None | HttpError) -> None:
        self._responses.setdefault((method, url), deque()).append(response)

    def request_json(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: JsonObject | None = None,
    ) -> Result[JsonObject | None, HttpError]:
        self.calls.append(HttpCall(method=method, url=url, headers=dict(headers or {}), body=body))

        queue = self._responses.get((method, url))
        if not queue:
            return Err(HttpError(url=url, status=404, message="Not found (mock)"))
        response = queue.popleft() if len(queue) > 1 else queue[0]
        if isinstance(response, HttpError):
            return Err(response)
        return Ok(response)

    def calls_to(self, method: str, url_prefix: str) -> list[HttpCall]:
        return [c for c in self.calls if c.method == method and c.url.startswith(url_prefix)]
