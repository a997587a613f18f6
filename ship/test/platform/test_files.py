from __future__ import annotations

import stat
import sys
from pathlib import Path

import pytest

from ship.platform.files import atomic_write_bytes, atomic_write_text


def test_atomic_write_creates_parents(tmp_path: Path) -> None:
    target = tmp_path / "a" / "b" / "record.json"
    atomic_write_text(target, '{"ok": true}\n')
    assert target.read_text(encoding="utf-8") == '{"ok": true}\n'
    assert [p.name for p in target.parent.iterdir()] == ["record.json"]


def test_atomic_write_replaces_existing(tmp_path: Path) -> None:
    target = tmp_path / "key.pem"
    atomic_write_bytes(target, b"old")
    atomic_write_bytes(target, b"new")
    assert target.read_bytes() == b"new"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
def test_atomic_write_mode(tmp_path: Path) -> None:
    target = tmp_path / "key.pem"
    atomic_write_bytes(target, b"secret", mode=0o600)
    assert stat.S_IMODE(target.stat().st_mode) == 0o600
