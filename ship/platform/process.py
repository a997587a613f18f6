"""Subprocess execution with Result-based error handling.

Wraps the external toolchain calls (xcodebuild, xcrun altool, git) so they
capture output, honour a timeout, and can be aborted by a run-level
CancelToken instead of requiring try/except blocks in every stage.

Usage:
    result = run(["xcodebuild", "-version"], cwd=Path("."), timeout=30)
    match result:
        case Ok(stdout):
            print(stdout)
        case Err(error):
            print(f"Failed: {error.stderr}")
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from ship.core.cancel import CancelToken
from ship.core.result import Err, Ok, Result

__all__ = ["ProcessError", "run", "tail"]

_POLL_SECONDS = 0.5
_TERMINATE_GRACE_SECONDS = 5.0


@dataclass(frozen=True, slots=True)
class ProcessError:
    """Error from a failed subprocess execution.

    Attributes:
        command: The command that was executed.
        returncode: The exit code of the process (-1 when it never finished).
        stdout: Standard output (may be empty).
        stderr: Standard error (contains error details).
        timed_out: True when the timeout expired and the process was killed.
        cancelled: True when the CancelToken fired and the process was killed.
    """

    command: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    cancelled: bool = False

    def __str__(self) -> str:
        cmd_str = " ".join(self.command[:3])
        if len(self.command) > 3:
            cmd_str += " ..."
        if self.cancelled:
            return f"{cmd_str} cancelled"
        if self.timed_out:
            return f"{cmd_str} timed out"
        return f"{cmd_str} failed (exit {self.returncode})"


def tail(text: str, lines: int = 40) -> str:
    """Return the last `lines` lines of a log."""
    parts = text.rstrip().splitlines()
    return "\n".join(parts[-lines:])


def _stop(proc: subprocess.Popen[str]) -> tuple[str, str]:
    proc.terminate()
    try:
        out, err = proc.communicate(timeout=_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        proc.kill()
        out, err = proc.communicate()
    return out or "", err or ""


def run(
    cmd: list[str],
    cwd: Path,
    env: dict[str, str] | None = None,
    *,
    timeout: float | None = None,
    cancel: CancelToken | None = None,
) -> Result[str, ProcessError]:
    """Execute a command and return stdout or error.

    Args:
        cmd: Command and arguments to execute. Never put secrets here; pass
            them through `env`.
        cwd: Working directory for the command.
        env: Environment variables (uses current env if None).
        timeout: Maximum seconds to wait (None for no limit).
        cancel: Token checked while waiting; when it fires the process is
            terminated.

    Returns:
        Ok(stdout) on success, Err(ProcessError) on failure.
    """
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=str(cwd),
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as e:
        return Err(ProcessError(command=tuple(cmd), returncode=-1, stdout="", stderr=str(e)))

    waited = 0.0
    while True:
        if cancel is not None and cancel.cancelled:
            out, err = _stop(proc)
            return Err(
                ProcessError(
                    command=tuple(cmd),
                    returncode=-1,
                    stdout=out,
                    stderr=err or (cancel.reason or "cancelled"),
                    cancelled=True,
                )
            )
        if timeout is not None and waited >= timeout:
            out, err = _stop(proc)
            return Err(
                ProcessError(
                    command=tuple(cmd),
                    returncode=-1,
                    stdout=out,
                    stderr=f"Command timed out after {timeout}s\n{err}".rstrip(),
                    timed_out=True,
                )
            )

        step = _POLL_SECONDS if timeout is None else max(0.0, min(_POLL_SECONDS, timeout - waited))
        try:
            stdout, stderr = proc.communicate(timeout=step)
            break
        except subprocess.TimeoutExpired:
            waited += step

    if proc.returncode != 0:
        return Err(
            ProcessError(
                command=tuple(cmd),
                returncode=proc.returncode,
                stdout=stdout,
                stderr=stderr,
            )
        )

    return Ok(stdout)
