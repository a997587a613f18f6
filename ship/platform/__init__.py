"""Platform adapters: subprocesses, files, HTTP."""

from .files import atomic_write_bytes, atomic_write_text
from .process import ProcessError, run

__all__ = ["ProcessError", "atomic_write_bytes", "atomic_write_text", "run"]
