"""procutil command line.

Runs one command, prints its captured lines, and exits with its exit code.

Exit codes:
    <child code>: the command ran and exited
    124: the timeout elapsed (the process tree was killed)
    127: the command could not be started
    130: cancelled with Ctrl+C (the process tree was killed)
    2:   invalid arguments
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import shlex
import signal
import subprocess
import sys
from collections.abc import Sequence

from . import __version__
from .config import Config, get_config
from .errors import (
    NonZeroExitError,
    ProcessCancelledError,
    ProcessError,
    ProcessStartError,
    ProcessTimeoutError,
)
from .runtime import ProcessRunner, ProcessSpec, apply_elevation_policy, build_spec
from .runtime.spec import IS_WINDOWS

__all__ = ["main", "build_parser", "setup_logging"]

logger = logging.getLogger(__name__)

EXIT_TIMEOUT = 124
EXIT_START_FAILED = 127
EXIT_CANCELLED = 130
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="procutil",
        description="Run a command and capture its stdout/stderr in arrival order.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--cwd", default=None, help="Working directory")
    parser.add_argument(
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Environment variable for the child (repeatable)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds before the tree is killed (not used with --stream)",
    )
    parser.add_argument("--admin", action="store_true", help="Run elevated (Windows: no output capture)")
    parser.add_argument("--no-wait", action="store_true", help="Launch detached and return immediately")
    parser.add_argument("--stream", action="store_true", help="Print lines as they arrive")
    parser.add_argument("--log-output", action="store_true", help="Also log each captured line")
    parser.add_argument(
        "--shell",
        choices=("bash", "cmd"),
        default=None,
        help="Run through bash -lc or cmd.exe /c (a lone command is passed verbatim)",
    )
    parser.add_argument("command", help="Executable to run")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="Arguments for the command")
    return parser


def setup_logging(config: Config) -> None:
    """Configure logging for the CLI process."""
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # Debug mode: write to a temporary file
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # Third-party loggers stay at WARNING
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    logging.getLogger("procutil").setLevel(log_level)


def _parse_env(items: Sequence[str]) -> dict[str, str]:
    env: dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(f"invalid --env value (expected KEY=VALUE): {item}")
        env[key] = value
    return env


def _shell_line(args: argparse.Namespace) -> str:
    """Command line for --shell.

    A lone command is the shell line itself; with arguments, each word
    is quoted for the target shell.
    """
    if not args.args:
        return args.command
    words = [args.command, *args.args]
    if args.shell == "cmd":
        return subprocess.list2cmdline(words)
    return shlex.join(words)


def _build_cli_spec(args: argparse.Namespace, config: Config) -> ProcessSpec:
    env = _parse_env(args.env)
    if args.shell is not None and args.admin:
        raise ValueError("--admin cannot be combined with --shell")
    if args.shell == "bash":
        return build_spec(
            "bash", ["-lc", _shell_line(args)], args.cwd, env, encoding=config.encoding
        )
    if args.shell == "cmd":
        return build_spec(
            "cmd.exe", ["/c", _shell_line(args)], args.cwd, env, encoding=config.encoding
        )

    spec = build_spec(
        args.command,
        list(args.args),
        args.cwd,
        env,
        admin=args.admin,
        encoding=config.encoding,
    )
    return apply_elevation_policy(spec)


def _install_sigint(cancel_event: asyncio.Event) -> None:
    """Turn Ctrl+C into a cancellation request for the running command."""
    loop = asyncio.get_running_loop()
    if not IS_WINDOWS:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    else:
        signal.signal(
            signal.SIGINT,
            lambda sig, frame: loop.call_soon_threadsafe(cancel_event.set),
        )


async def run_cli(args: argparse.Namespace, config: Config) -> int:
    """Run the command described by args and return the process exit code."""
    try:
        spec = _build_cli_spec(args, config)
    except ValueError as e:
        print(f"procutil: {e}", file=sys.stderr)
        return EXIT_USAGE

    logger.debug(f"Running argv={spec.argv} cwd={spec.cwd or '.'} stream={args.stream}")

    cancel_event = asyncio.Event()
    _install_sigint(cancel_event)
    runner = ProcessRunner(config=config)

    try:
        if args.stream:
            async for line in runner.stream_lines(
                spec, log=args.log_output, cancel_event=cancel_event
            ):
                print(line, flush=True)
            return 0

        result = await runner.run(
            spec,
            wait_for_exit=not args.no_wait,
            timeout=args.timeout,
            log=args.log_output,
            cancel_event=cancel_event,
        )
    except NonZeroExitError as e:
        print(str(e), file=sys.stderr)
        return e.exit_code
    except ProcessTimeoutError as e:
        print(str(e), file=sys.stderr)
        return EXIT_TIMEOUT
    except ProcessCancelledError as e:
        print(str(e), file=sys.stderr)
        return EXIT_CANCELLED
    except ProcessStartError as e:
        print(str(e), file=sys.stderr)
        return EXIT_START_FAILED
    except ProcessError as e:
        print(str(e), file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"procutil: {e}", file=sys.stderr)
        return EXIT_USAGE

    for line in result.lines:
        print(line)
    return result.exit_code or 0


def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point."""
    config = get_config()
    setup_logging(config)

    args = build_parser().parse_args(argv)
    sys.exit(asyncio.run(run_cli(args, config)))


if __name__ == "__main__":
    main()
