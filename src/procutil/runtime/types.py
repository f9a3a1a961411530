"""Result types for process runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

__all__ = [
    "RunState",
    "ExecutionResult",
]


class RunState(str, Enum):
    """Exit coordinator states.

    RUNNING is entered when the process has been spawned; exactly one of the
    other states is reached per run.
    """

    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not RunState.RUNNING


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of a successful run.

    Attributes:
        lines: Captured lines in arrival order, stderr lines tagged
        exit_code: Exit status (None when the process was not waited for)
        stdout_lines: Untagged stdout lines
        stderr_lines: Untagged stderr lines
    """

    lines: list[str] = field(default_factory=list)
    exit_code: int | None = None
    stdout_lines: list[str] = field(default_factory=list)
    stderr_lines: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code in (0, None)

    @property
    def stdout(self) -> str:
        return "\n".join(self.stdout_lines)

    @property
    def stderr(self) -> str:
        return "\n".join(self.stderr_lines)
