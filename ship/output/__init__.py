"""Output abstraction layer."""

from .console import (
    ConsoleProtocol,
    MockConsole,
    RedactingConsole,
    RichConsole,
    Style,
)

__all__ = [
    "ConsoleProtocol",
    "MockConsole",
    "RedactingConsole",
    "RichConsole",
    "Style",
]
