"""Config module tests.

Covers PROCUTIL_* environment parsing and the global config instance.
"""

from __future__ import annotations

import os
from pathlib import Path
from unittest import mock

import pytest

from procutil.config import Config, get_config, load_config, reload_config

PROCUTIL_VARS = (
    "PROCUTIL_TAIL_LINES",
    "PROCUTIL_TERM_TIMEOUT",
    "PROCUTIL_KILL_TIMEOUT",
    "PROCUTIL_STDERR_PREFIX",
    "PROCUTIL_ENCODING",
    "PROCUTIL_LOG_OUTPUT",
    "PROCUTIL_LOG_DEBUG",
)


def _clean_env(**overrides: str) -> dict[str, str]:
    env = {k: v for k, v in os.environ.items() if k not in PROCUTIL_VARS}
    env.update(overrides)
    return env


class TestDefaults:
    """Unset variables fall back to defaults."""

    def test_defaults(self):
        with mock.patch.dict(os.environ, _clean_env(), clear=True):
            config = load_config()

        assert config.tail_lines == 40
        assert config.term_timeout == 2.0
        assert config.kill_timeout == 1.0
        assert config.stderr_prefix == "ERROR: "
        assert config.encoding == "utf-8"
        assert config.log_output is True
        assert config.log_debug is False
        assert config.log_file is None

    def test_dataclass_defaults_match(self):
        with mock.patch.dict(os.environ, _clean_env(), clear=True):
            assert load_config() == Config()


class TestNumbers:
    """Numeric variables are parsed and clamped."""

    def test_tail_lines(self):
        with mock.patch.dict(os.environ, _clean_env(PROCUTIL_TAIL_LINES="5"), clear=True):
            assert load_config().tail_lines == 5

    @pytest.mark.parametrize(
        "value,expected",
        [("0", 1), ("-3", 1), ("999999", 10_000), ("abc", 40), ("", 40)],
    )
    def test_tail_lines_clamped(self, value, expected):
        with mock.patch.dict(os.environ, _clean_env(PROCUTIL_TAIL_LINES=value), clear=True):
            assert load_config().tail_lines == expected

    def test_term_timeout_zero_allowed(self):
        with mock.patch.dict(os.environ, _clean_env(PROCUTIL_TERM_TIMEOUT="0"), clear=True):
            assert load_config().term_timeout == 0.0

    def test_term_timeout_clamped(self):
        with mock.patch.dict(os.environ, _clean_env(PROCUTIL_TERM_TIMEOUT="600"), clear=True):
            assert load_config().term_timeout == 60.0

    def test_kill_timeout_floor(self):
        with mock.patch.dict(os.environ, _clean_env(PROCUTIL_KILL_TIMEOUT="0"), clear=True):
            assert load_config().kill_timeout == 0.1

    def test_invalid_float_uses_default(self):
        with mock.patch.dict(os.environ, _clean_env(PROCUTIL_KILL_TIMEOUT="soon"), clear=True):
            assert load_config().kill_timeout == 1.0


class TestStrings:
    """Prefix and encoding."""

    def test_empty_prefix_allowed(self):
        with mock.patch.dict(os.environ, _clean_env(PROCUTIL_STDERR_PREFIX=""), clear=True):
            assert load_config().stderr_prefix == ""

    def test_custom_prefix(self):
        with mock.patch.dict(os.environ, _clean_env(PROCUTIL_STDERR_PREFIX="[err] "), clear=True):
            assert load_config().stderr_prefix == "[err] "

    def test_encoding(self):
        with mock.patch.dict(os.environ, _clean_env(PROCUTIL_ENCODING=" cp1252 "), clear=True):
            assert load_config().encoding == "cp1252"


class TestBooleans:
    """Boolean variables."""

    @pytest.mark.parametrize("value", ["false", "0", "no", "FALSE"])
    def test_log_output_off(self, value):
        with mock.patch.dict(os.environ, _clean_env(PROCUTIL_LOG_OUTPUT=value), clear=True):
            assert load_config().log_output is False

    @pytest.mark.parametrize("value", ["true", "1", "yes", "on", "True"])
    def test_log_output_on(self, value):
        with mock.patch.dict(os.environ, _clean_env(PROCUTIL_LOG_OUTPUT=value), clear=True):
            assert load_config().log_output is True

    def test_log_debug_creates_log_file_path(self):
        with mock.patch.dict(os.environ, _clean_env(PROCUTIL_LOG_DEBUG="true"), clear=True):
            config = load_config()

        assert config.log_debug is True
        assert config.log_file is not None
        path = Path(config.log_file)
        assert path.name.startswith("procutil_debug_")
        assert path.suffix == ".log"
        assert path.parent.is_dir()


class TestGlobalConfig:
    """get_config / reload_config."""

    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_reload_picks_up_changes(self):
        try:
            with mock.patch.dict(os.environ, _clean_env(PROCUTIL_TAIL_LINES="7"), clear=True):
                assert reload_config().tail_lines == 7
                assert get_config().tail_lines == 7
        finally:
            reload_config()

    def test_repr(self):
        text = repr(Config(stderr_prefix="E: "))

        assert "tail_lines=40" in text
        assert "stderr_prefix='E: '" in text
