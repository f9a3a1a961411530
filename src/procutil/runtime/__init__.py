"""Runtime module for process execution and output capture.

This module provides isolated process execution with concurrent output
pumps, an exit coordinator, and reliable process-tree termination.
"""

from __future__ import annotations

from .capture import CaptureState, MergeSink, OutputLine, Stream
from .process_runner import ExitCoordinator, ProcessRunner
from .spec import ProcessSpec, apply_elevation_policy, build_spec
from .types import ExecutionResult, RunState

__all__ = [
    "CaptureState",
    "ExecutionResult",
    "ExitCoordinator",
    "MergeSink",
    "OutputLine",
    "ProcessRunner",
    "ProcessSpec",
    "RunState",
    "Stream",
    "apply_elevation_policy",
    "build_spec",
]
