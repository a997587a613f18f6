"""Exit codes for the ship CLI.

Calling automation relies on these values to tell retry-worthy outcomes
(rate limiting, cancellation, timeouts) apart from hard failures, so they
must remain stable:
- 0: Run succeeded
- 1: User error (bad arguments, invalid config)
- 2: Environment error (missing tools, unreadable store)
- 3: Stage failure (auth, signing sync, build, upload, missing credential)
- 4: Rate limited by the distribution target
- 5: Cancelled by the operator
- 6: A stage exceeded its timeout
"""

from enum import IntEnum

__all__ = ["ErrorCode"]


class ErrorCode(IntEnum):
    """Exit codes for CLI commands."""

    OK = 0
    USER_ERROR = 1
    ENV_ERROR = 2
    STAGE_FAILED = 3
    RATE_LIMITED = 4
    CANCELLED = 5
    TIMED_OUT = 6

    def __str__(self) -> str:
        return self.name.lower().replace("_", " ")

    @property
    def is_success(self) -> bool:
        return self == ErrorCode.OK

    @property
    def is_retryable(self) -> bool:
        """True for outcomes an external scheduler may retry with a new run."""
        return self in (ErrorCode.RATE_LIMITED, ErrorCode.TIMED_OUT)
