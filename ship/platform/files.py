"""Atomic file writes for run records, store records and signing files."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

__all__ = ["atomic_write_bytes", "atomic_write_text"]


def atomic_write_bytes(path: Path, content: bytes, *, mode: int | None = None) -> None:
    """Replace `path` with `content` in one rename.

    The sibling temp file gets `mode` before the rename, so a key file is
    never visible with looser permissions.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
    ) as tmp:
        staged = Path(tmp.name)
        try:
            tmp.write(content)
            tmp.flush()
            os.fsync(tmp.fileno())
        except OSError:
            staged.unlink(missing_ok=True)
            raise
    try:
        if mode is not None:
            staged.chmod(mode)
        staged.replace(path)
    except OSError:
        staged.unlink(missing_ok=True)
        raise


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    atomic_write_bytes(path, content.encode(encoding))
