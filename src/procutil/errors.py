"""procutil exception classes.

Every failure raised by the runner carries the bounded output tail so a
failing command can be diagnosed without re-running it.
"""

from __future__ import annotations

__all__ = [
    "ProcessError",
    "ProcessStartError",
    "NonZeroExitError",
    "ProcessTimeoutError",
    "ProcessCancelledError",
    "ProcessExecutionError",
]


def _with_tail(message: str, tail: list[str]) -> str:
    if not tail:
        return message
    return message + "\n" + "\n".join(tail)


class ProcessError(Exception):
    """Base error for a single process run.

    Attributes:
        command: Executable that was launched
        tail: Last captured output lines (may be empty)
    """

    def __init__(self, command: str, message: str, tail: list[str] | None = None) -> None:
        self.command = command
        self.tail = list(tail or [])
        super().__init__(_with_tail(message, self.tail))


class ProcessStartError(ProcessError):
    """The OS refused to create the process. Not retried."""

    def __init__(self, command: str, reason: str = "") -> None:
        message = f"Failed to start process '{command}'"
        if reason:
            message += f": {reason}"
        super().__init__(command, message)


class NonZeroExitError(ProcessError):
    """The process ran to completion but reported failure.

    Attributes:
        exit_code: Process exit status
    """

    def __init__(self, command: str, exit_code: int, tail: list[str] | None = None) -> None:
        self.exit_code = exit_code
        super().__init__(command, f"Process '{command}' exited with code {exit_code}.", tail)


class ProcessTimeoutError(ProcessError, TimeoutError):
    """The deadline elapsed before the process completed; the tree was killed.

    Attributes:
        timeout: Configured deadline in seconds
    """

    def __init__(self, command: str, timeout: float, tail: list[str] | None = None) -> None:
        self.timeout = timeout
        super().__init__(
            command,
            f"Process '{command}' did not exit within {timeout * 1000:.0f} ms.",
            tail,
        )


class ProcessCancelledError(ProcessError):
    """Cancellation was requested before the process completed; the tree was killed."""

    def __init__(self, command: str, tail: list[str] | None = None) -> None:
        super().__init__(command, f"Process '{command}' was cancelled.", tail)


class ProcessExecutionError(ProcessError):
    """Unexpected failure while waiting for the process."""

    def __init__(self, command: str, reason: str, tail: list[str] | None = None) -> None:
        super().__init__(command, f"Error running process '{command}': {reason}", tail)
