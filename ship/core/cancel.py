"""Cooperative cancellation and deadlines for long-running stage calls."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field

__all__ = ["CancelToken", "Deadline"]


class CancelToken:
    """Run-level cancellation flag shared by every stage of a run.

    Blocking calls (subprocess polling, HTTP processing-state polling) check
    the token between waits so an operator abort stops the current external
    call promptly.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled by operator") -> None:
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; return True if cancelled meanwhile."""
        return self._event.wait(timeout=max(0.0, seconds))


@dataclass(frozen=True, slots=True)
class Deadline:
    """Absolute monotonic deadline for one stage (None means unbounded)."""

    expires_at: float | None = None
    started_at: float = field(default_factory=time.monotonic)

    @classmethod
    def after(cls, seconds: float | None) -> Deadline:
        now = time.monotonic()
        if seconds is None:
            return cls(expires_at=None, started_at=now)
        return cls(expires_at=now + seconds, started_at=now)

    def remaining(self) -> float | None:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0
