"""procutil environment configuration.

Environment variables:
    PROCUTIL_TAIL_LINES: number of captured lines attached to failures
        - default 40, clamped to 1-10000

    PROCUTIL_TERM_TIMEOUT: seconds between the graceful signal and the kill
        - default 2.0, clamped to 0-60
        - 0 = kill immediately

    PROCUTIL_KILL_TIMEOUT: seconds to wait for the tree to die after the kill
        - default 1.0, clamped to 0.1-60

    PROCUTIL_STDERR_PREFIX: prefix added to captured stderr lines
        - default "ERROR: "

    PROCUTIL_ENCODING: text encoding of the child's output
        - default utf-8

    PROCUTIL_LOG_OUTPUT: log every captured line
        - true/1/yes = on (default)
        - false/0/no = off

    PROCUTIL_LOG_DEBUG: CLI debug logging
        - true/1/yes = DEBUG level, written to a temporary file
        - false/0/no = INFO level on stderr (default)
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_TAIL_LINES = 40
DEFAULT_TERM_TIMEOUT = 2.0
DEFAULT_KILL_TIMEOUT = 1.0
DEFAULT_STDERR_PREFIX = "ERROR: "
DEFAULT_ENCODING = "utf-8"


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(value: str | None, default: float, low: float, high: float) -> float:
    """Parse a float environment variable, clamped to [low, high]."""
    if not value:
        return default
    try:
        return max(low, min(float(value), high))
    except ValueError:
        return default


def _parse_int(value: str | None, default: int, low: int, high: int) -> int:
    if not value:
        return default
    try:
        return max(low, min(int(value), high))
    except ValueError:
        return default


@dataclass
class Config:
    """procutil configuration.

    Attributes:
        tail_lines: Lines of captured output attached to failures
        term_timeout: Grace period after the terminate signal (seconds)
        kill_timeout: Wait after the kill signal (seconds)
        stderr_prefix: Tag prepended to captured stderr lines
        encoding: Encoding used to decode child output
        log_output: Default for logging each captured line
        log_debug: CLI debug logging to a temporary file
        log_file: Log file path (set when log_debug=True)
    """

    tail_lines: int = DEFAULT_TAIL_LINES
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    stderr_prefix: str = DEFAULT_STDERR_PREFIX
    encoding: str = DEFAULT_ENCODING
    log_output: bool = True
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(tail_lines={self.tail_lines}, "
            f"term_timeout={self.term_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"stderr_prefix={self.stderr_prefix!r}, "
            f"encoding={self.encoding}, "
            f"log_output={self.log_output}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """Return a timestamped log file path under the system temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "procutil"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"procutil_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """Load configuration from environment variables."""
    log_debug = _parse_bool(os.environ.get("PROCUTIL_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    prefix = os.environ.get("PROCUTIL_STDERR_PREFIX")
    encoding = os.environ.get("PROCUTIL_ENCODING", "").strip()

    return Config(
        tail_lines=_parse_int(
            os.environ.get("PROCUTIL_TAIL_LINES"), DEFAULT_TAIL_LINES, 1, 10_000
        ),
        term_timeout=_parse_float(
            os.environ.get("PROCUTIL_TERM_TIMEOUT"), DEFAULT_TERM_TIMEOUT, 0.0, 60.0
        ),
        kill_timeout=_parse_float(
            os.environ.get("PROCUTIL_KILL_TIMEOUT"), DEFAULT_KILL_TIMEOUT, 0.1, 60.0
        ),
        stderr_prefix=prefix if prefix is not None else DEFAULT_STDERR_PREFIX,
        encoding=encoding or DEFAULT_ENCODING,
        log_output=_parse_bool(os.environ.get("PROCUTIL_LOG_OUTPUT"), default=True),
        log_debug=log_debug,
        log_file=log_file,
    )


# Global instance, loaded lazily
_config: Config | None = None


def get_config() -> Config:
    """Return the global configuration."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload configuration from the environment (used by tests)."""
    global _config
    _config = load_config()
    return _config
