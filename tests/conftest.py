"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from procutil.config import Config  # noqa: E402
from procutil.runtime import ProcessRunner, ProcessSpec  # noqa: E402


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Create temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def test_config() -> Config:
    """Configuration with short termination timeouts and quiet output."""
    return Config(term_timeout=0.5, kill_timeout=1.0, log_output=False)


@pytest.fixture
def runner(test_config: Config) -> ProcessRunner:
    """Create ProcessRunner instance with short timeouts for testing."""
    return ProcessRunner(config=test_config)


@pytest.fixture
def python_spec(temp_workspace: Path) -> Callable[..., ProcessSpec]:
    """Build a spec running a Python snippet with the current interpreter."""

    def factory(code: str, **kwargs) -> ProcessSpec:
        return ProcessSpec(
            command=sys.executable,
            arguments=("-c", textwrap.dedent(code)),
            cwd=kwargs.pop("cwd", temp_workspace),
            **kwargs,
        )

    return factory
