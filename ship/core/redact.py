"""Masking of secret values in any text leaving the process.

Every credential value resolved during a run is registered here. Console
output, error messages and persisted run records are passed through
`Redactor.scrub` so a secret can never be printed or written to disk.
"""

from __future__ import annotations

import threading

__all__ = ["MASK", "MIN_SECRET_LENGTH", "Redactor"]

MASK = "***"

# Shorter values would mask ordinary words; SecretResolver refuses such secrets.
MIN_SECRET_LENGTH = 4


class Redactor:
    def __init__(self) -> None:
        self._secrets: set[str] = set()
        self._lock = threading.Lock()

    def register(self, value: str) -> None:
        """Remember a secret value, including each line of multi-line secrets (PEM keys)."""
        candidates = {value.strip()}
        candidates.update(line.strip() for line in value.splitlines())
        with self._lock:
            for c in candidates:
                if len(c) >= MIN_SECRET_LENGTH and not c.startswith("-----"):
                    self._secrets.add(c)

    def scrub(self, text: str) -> str:
        if not text:
            return text
        with self._lock:
            # Longest first so a secret containing another is masked whole.
            secrets = sorted(self._secrets, key=len, reverse=True)
        for s in secrets:
            if s in text:
                text = text.replace(s, MASK)
        return text

    def __len__(self) -> int:
        return len(self._secrets)
