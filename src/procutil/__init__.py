"""procutil - run external processes and capture their output.

Environment variables:
    PROCUTIL_TAIL_LINES: lines of output attached to failures (default 40)
    PROCUTIL_TERM_TIMEOUT: grace period before the kill (default 2.0)
    PROCUTIL_LOG_OUTPUT: log captured lines (default true)

Usage:
    procutil --timeout 60 make -j4
"""

__version__ = "0.1.0"

from .errors import (
    NonZeroExitError,
    ProcessCancelledError,
    ProcessError,
    ProcessExecutionError,
    ProcessStartError,
    ProcessTimeoutError,
)
from .runtime import (
    ExecutionResult,
    ProcessRunner,
    ProcessSpec,
    RunState,
    apply_elevation_policy,
    build_spec,
)

__all__ = [
    "__version__",
    "ExecutionResult",
    "NonZeroExitError",
    "ProcessCancelledError",
    "ProcessError",
    "ProcessExecutionError",
    "ProcessRunner",
    "ProcessSpec",
    "ProcessStartError",
    "ProcessTimeoutError",
    "RunState",
    "apply_elevation_policy",
    "build_spec",
]
