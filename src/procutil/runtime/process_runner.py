"""Process runner with output capture and reliable termination.

This module provides:
- Concurrent stdout/stderr pumps feeding one ordered capture buffer
- An exit coordinator racing process exit against a timeout and cancellation
- Process-tree termination when a run is aborted
- Cancel-safe cleanup using asyncio.shield

Key design points:
- POSIX: start_new_session=True so the whole tree shares one process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- A run never returns before every redirected stream reached end-of-stream,
  unless it is aborted by the timeout or cancellation
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import subprocess
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import anyio

from ..config import Config, get_config
from ..errors import (
    NonZeroExitError,
    ProcessCancelledError,
    ProcessError,
    ProcessExecutionError,
    ProcessStartError,
    ProcessTimeoutError,
)
from .capture import CaptureState, MergeSink, Stream, pump_stream
from .spec import IS_WINDOWS, ProcessSpec, apply_elevation_policy, build_spec, elevated_argv
from .termination import terminate_process_tree
from .types import ExecutionResult, RunState

__all__ = [
    "ExitCoordinator",
    "InvalidTransition",
    "ProcessRunner",
    "OUTPUT_LOGGER_NAME",
    "STREAM_STDERR_PREFIX",
]

logger = logging.getLogger(__name__)

# Captured lines are logged here unless the caller passes its own logger
OUTPUT_LOGGER_NAME = "procutil.output"

# stderr tag used by stream_lines()
STREAM_STDERR_PREFIX = "[stderr] "

# Detached children still running; polled so finished ones are reaped
_detached: list[subprocess.Popen[bytes]] = []


def _reap_detached() -> None:
    _detached[:] = [process for process in _detached if process.poll() is None]


class InvalidTransition(RuntimeError):
    """The coordinator already reached a terminal state."""


class ExitCoordinator:
    """Races "exited and drained" against a deadline and a cancel event.

    States: RUNNING -> COMPLETED | TIMED_OUT | CANCELLED | FAILED.
    Abort paths (timeout, cancellation, failure) kill the process tree.

    When completion and cancellation are both ready by the time the wait
    returns, completion wins. Which one becomes ready first is up to the
    scheduler, so the tie-break is best-effort.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        spec: ProcessSpec,
        capture: CaptureState | None,
        pumps: Sequence[asyncio.Task[None]] = (),
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
        pgid: int | None = None,
        term_timeout: float = 2.0,
        kill_timeout: float = 1.0,
        tail_lines: int = 40,
    ) -> None:
        self._process = process
        self._spec = spec
        self._capture = capture
        self._pumps = list(pumps)
        self._timeout = timeout
        self._cancel_event = cancel_event
        self._pgid = pgid
        self._term_timeout = term_timeout
        self._kill_timeout = kill_timeout
        self._tail_lines = tail_lines
        self.state = RunState.RUNNING

    def _transition(self, new_state: RunState) -> None:
        if self.state.is_terminal:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        logger.debug(
            f"Run state pid={self._process.pid}: {self.state.value} -> {new_state.value}"
        )
        self.state = new_state

    def tail(self) -> list[str]:
        if self._capture is None:
            return []
        return self._capture.tail(self._tail_lines)

    async def _completion(self) -> int:
        """Process exit plus end-of-stream on every redirected pipe."""
        await self._process.wait()
        if self._capture is not None:
            if self._spec.redirect_stdout:
                await self._capture.stdout_done.wait()
            if self._spec.redirect_stderr:
                await self._capture.stderr_done.wait()
        assert self._process.returncode is not None
        return self._process.returncode

    async def abort(self) -> None:
        """Kill the tree, then stop the pumps."""
        await terminate_process_tree(
            self._process,
            pgid=self._pgid,
            term_timeout=self._term_timeout,
            kill_timeout=self._kill_timeout,
        )
        for task in self._pumps:
            if not task.done():
                task.cancel()
        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)

    async def wait(self) -> int:
        """Wait for one terminal state.

        Returns:
            The exit code (always 0)

        Raises:
            NonZeroExitError: Completed with a non-zero exit code
            ProcessTimeoutError: Deadline elapsed first
            ProcessCancelledError: cancel_event was set first
            ProcessExecutionError: Waiting failed unexpectedly
        """
        completion = asyncio.ensure_future(self._completion())
        waiters: set[asyncio.Future[Any]] = {completion}
        cancel_waiter: asyncio.Future[Any] | None = None
        if self._cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(self._cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self._timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

        command = self._spec.command

        if completion in done:
            error = completion.exception()
            if error is not None:
                self._transition(RunState.FAILED)
                await self.abort()
                raise ProcessExecutionError(command, str(error), self.tail()) from error

            self._transition(RunState.COMPLETED)
            exit_code = completion.result()
            if exit_code != 0:
                raise NonZeroExitError(command, exit_code, self.tail())
            return exit_code

        if cancel_waiter is not None and cancel_waiter in done:
            self._transition(RunState.CANCELLED)
            await self.abort()
            raise ProcessCancelledError(command, self.tail())

        self._transition(RunState.TIMED_OUT)
        await self.abort()
        assert self._timeout is not None
        raise ProcessTimeoutError(command, self._timeout, self.tail())


@dataclass
class ProcessRunner:
    """Runs one external process per call and captures its output.

    Example:
        runner = ProcessRunner()
        lines = await runner.start("git", arguments="status --short", cwd="/repo")

        spec = build_spec("make", ["-j4"])
        async for line in runner.stream_lines(spec):
            print(line)
    """

    config: Config = field(default_factory=get_config)

    @property
    def term_timeout(self) -> float:
        return self.config.term_timeout

    @property
    def kill_timeout(self) -> float:
        return self.config.kill_timeout

    # =========================================================================
    # Engine
    # =========================================================================

    async def run(
        self,
        spec: ProcessSpec,
        *,
        wait_for_exit: bool = True,
        timeout: float | None = None,
        log: bool | None = None,
        cancel_event: asyncio.Event | None = None,
        output_logger: logging.Logger | None = None,
    ) -> ExecutionResult:
        """Run a process and collect its output.

        Args:
            spec: Process specification
            wait_for_exit: False launches detached and returns an empty result
            timeout: Seconds to wait before killing the tree (None = no limit)
            log: Log each captured line (None = config default)
            cancel_event: Setting it kills the tree and raises
                ProcessCancelledError
            output_logger: Destination for captured lines

        Returns:
            ExecutionResult with lines in arrival order

        Raises:
            ProcessStartError: The process could not be created
            NonZeroExitError: The process exited with a non-zero code
            ProcessTimeoutError: The timeout elapsed first
            ProcessCancelledError: cancel_event was set first
            ProcessExecutionError: Waiting failed unexpectedly
        """
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be positive")

        log = self.config.log_output if log is None else log

        if not wait_for_exit:
            await self._launch_detached(spec)
            return ExecutionResult()

        capture: CaptureState | None = None
        if spec.captures_output:
            capture = CaptureState(
                logger=output_logger or logging.getLogger(OUTPUT_LOGGER_NAME),
                log=log,
                encoding=spec.encoding,
                stderr_prefix=self.config.stderr_prefix,
            )

        process = await self._spawn(spec)
        pgid = None if IS_WINDOWS else process.pid
        pumps = self._start_pumps(process, spec, capture)

        coordinator = ExitCoordinator(
            process,
            spec,
            capture,
            pumps,
            timeout=timeout,
            cancel_event=cancel_event,
            pgid=pgid,
            term_timeout=self.term_timeout,
            kill_timeout=self.kill_timeout,
            tail_lines=self.config.tail_lines,
        )

        try:
            exit_code = await coordinator.wait()
        except asyncio.CancelledError:
            logger.warning(
                f"Process '{spec.command}' cancelled by the awaiting task "
                f"(pid={process.pid}, alive={process.returncode is None})"
            )
            raise
        except (ProcessCancelledError, ProcessTimeoutError) as e:
            if log:
                logger.warning(str(e).splitlines()[0])
            raise
        except ProcessError as e:
            if log:
                logger.error(str(e).splitlines()[0])
            raise
        finally:
            await self._safe_cleanup(process, pumps, pgid)

        if capture is None:
            return ExecutionResult(exit_code=exit_code)

        return ExecutionResult(
            lines=capture.rendered(),
            exit_code=exit_code,
            stdout_lines=capture.stream_text(Stream.STDOUT),
            stderr_lines=capture.stream_text(Stream.STDERR),
        )

    async def stream_lines(
        self,
        spec: ProcessSpec,
        *,
        log: bool | None = None,
        cancel_event: asyncio.Event | None = None,
        cancel_scope: anyio.CancelScope | None = None,
        output_logger: logging.Logger | None = None,
    ) -> AsyncIterator[str]:
        """Run a process and yield every line as it arrives.

        stdout and stderr are merged in arrival order; stderr lines carry
        STREAM_STDERR_PREFIX. Leaving the loop early (or closing the
        iterator) kills the process tree.

        Args:
            spec: Process specification
            log: Log each line (stderr at WARNING)
            cancel_event: Setting it kills the tree; iteration then ends
                with ProcessCancelledError
            cancel_scope: Optional anyio.CancelScope; once cancel is called
                iteration stops quietly
            output_logger: Destination for captured lines

        Yields:
            Output lines without line terminators

        Raises:
            ProcessStartError: The process could not be created
            NonZeroExitError: After the last line, if the exit code is non-zero
            ProcessCancelledError: cancel_event was set
        """
        log = self.config.log_output if log is None else log

        sink = MergeSink()
        capture = CaptureState(
            logger=output_logger or logging.getLogger(OUTPUT_LOGGER_NAME),
            log=log,
            encoding=spec.encoding,
            stderr_prefix=STREAM_STDERR_PREFIX,
            stderr_level=logging.WARNING,
            sink=sink,
        )

        process = await self._spawn(spec)
        pgid = None if IS_WINDOWS else process.pid
        pumps = self._start_pumps(process, spec, capture)
        closer = asyncio.create_task(self._close_when_drained(pumps, sink))
        watcher: asyncio.Task[None] | None = None
        if cancel_event is not None:
            watcher = asyncio.create_task(self._kill_on_cancel(cancel_event, process, pgid))

        try:
            async for line in sink:
                if cancel_scope is not None and cancel_scope.cancel_called:
                    logger.debug(f"Cancel scope triggered, stopping pid={process.pid}")
                    return
                yield line

            await process.wait()

            if cancel_event is not None and cancel_event.is_set():
                raise ProcessCancelledError(spec.command, capture.tail(self.config.tail_lines))
            if process.returncode != 0:
                raise NonZeroExitError(
                    spec.command,
                    process.returncode,
                    capture.tail(self.config.tail_lines),
                )
        finally:
            if not closer.done():
                closer.cancel()
            helpers: list[asyncio.Task[None]] = [closer]
            if watcher is not None:
                # A kill already in progress is allowed to finish
                if not (cancel_event is not None and cancel_event.is_set()):
                    watcher.cancel()
                helpers.append(watcher)
            await asyncio.gather(*helpers, return_exceptions=True)
            await self._safe_cleanup(process, pumps, pgid)

    # =========================================================================
    # Call-sites
    # =========================================================================

    async def start(
        self,
        command: str,
        cwd: str | None = None,
        arguments: str | Sequence[str] | None = None,
        admin: bool = False,
        wait_for_exit: bool = True,
        timeout: float | None = None,
        log: bool | None = None,
        env: Mapping[str, str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[str]:
        """Start a process, optionally wait for it, and return its lines.

        stdout lines are returned unchanged; stderr lines carry the
        configured prefix ("ERROR: " by default). Elevated runs on Windows
        are launched through the shell and return no lines.
        """
        spec = build_spec(
            command,
            arguments,
            cwd,
            env,
            admin=admin,
            encoding=self.config.encoding,
        )
        spec = apply_elevation_policy(spec)
        result = await self.run(
            spec,
            wait_for_exit=wait_for_exit,
            timeout=timeout,
            log=log,
            cancel_event=cancel_event,
        )
        return result.lines

    async def run_bash(
        self,
        command: str,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[str]:
        """Run a line through a bash login shell."""
        logger.info(f"Running command: {command} (in {cwd or '.'})")
        spec = build_spec("bash", ["-lc", command], cwd, env, encoding=self.config.encoding)
        result = await self.run(spec, timeout=timeout, cancel_event=cancel_event)
        return result.lines

    async def run_cmd(
        self,
        command: str,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[str]:
        """Run a line through cmd.exe."""
        logger.info(f"Running CMD command: {command} (in {cwd or '.'})")
        spec = build_spec("cmd.exe", ["/c", command], cwd, env, encoding=self.config.encoding)
        result = await self.run(spec, timeout=timeout, cancel_event=cancel_event)
        return result.lines

    async def start_and_get_output(
        self,
        command: str,
        arguments: str | Sequence[str] | None = None,
        cwd: str | None = None,
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """Run a process quietly and return its stdout text.

        Raises:
            NonZeroExitError: With the stderr tail in the message
        """
        logger.info(f"Starting: {command} (in {cwd or '.'})")
        spec = build_spec(command, arguments, cwd, encoding=self.config.encoding)
        result = await self.run(spec, timeout=timeout, log=False, cancel_event=cancel_event)
        return result.stdout

    async def command_exists(self, command: str) -> bool:
        """Whether command resolves on PATH."""
        try:
            if IS_WINDOWS:
                await self.start_and_get_output("where", [command])
            else:
                await self.start_and_get_output(
                    "bash", ["-lc", f"command -v {shlex.quote(command)}"]
                )
            return True
        except ProcessError as e:
            logger.debug(f"Command not found: {command} ({type(e).__name__})")
            return False

    # =========================================================================
    # Internals
    # =========================================================================

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs.

        Args:
            spec: Process specification

        Returns:
            Dict of kwargs for asyncio.create_subprocess_exec / Popen
        """
        kwargs: dict[str, Any] = {}

        env = spec.build_env()
        if env is not None:
            kwargs["env"] = env

        if spec.cwd is not None:
            kwargs["cwd"] = spec.cwd

        # Platform-specific isolation
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        return kwargs

    def _launch_argv(self, spec: ProcessSpec) -> list[str]:
        return elevated_argv(spec) if spec.shell_execute else spec.argv

    async def _spawn(self, spec: ProcessSpec) -> asyncio.subprocess.Process:
        """Start the process with the redirects the spec asks for.

        Raises:
            ProcessStartError: If the OS refuses to create the process
        """
        capture = not spec.shell_execute
        kwargs = self._build_subprocess_kwargs(spec)

        try:
            # stdin is never inherited
            process = await asyncio.create_subprocess_exec(
                *self._launch_argv(spec),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if capture and spec.redirect_stdout else None,
                stderr=asyncio.subprocess.PIPE if capture and spec.redirect_stderr else None,
                **kwargs,
            )
        except OSError as e:
            logger.error(f"Failed to start process '{spec.command}': {e}")
            raise ProcessStartError(spec.command, str(e)) from e

        logger.debug(
            f"Started process pid={process.pid} "
            f"command={spec.command} cwd={spec.cwd or '.'} "
            f"shell_execute={spec.shell_execute}"
        )
        return process

    async def _launch_detached(self, spec: ProcessSpec) -> None:
        """Start the process without waiting and without capturing output.

        The handle stays in _detached until the child exits; finished
        children are reaped on the next launch.
        """
        _reap_detached()
        kwargs = self._build_subprocess_kwargs(spec)
        try:
            # fork/exec off the event loop
            process = await asyncio.to_thread(
                subprocess.Popen,
                self._launch_argv(spec),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                **kwargs,
            )
        except OSError as e:
            logger.error(f"Failed to start process '{spec.command}': {e}")
            raise ProcessStartError(spec.command, str(e)) from e

        _detached.append(process)
        logger.debug(
            f"Started detached process pid={process.pid} command={spec.command} "
            f"tracked={len(_detached)}"
        )

    def _start_pumps(
        self,
        process: asyncio.subprocess.Process,
        spec: ProcessSpec,
        capture: CaptureState | None,
    ) -> list[asyncio.Task[None]]:
        if capture is None:
            return []
        pumps: list[asyncio.Task[None]] = []
        if spec.redirect_stdout and process.stdout is not None:
            pumps.append(asyncio.create_task(pump_stream(process.stdout, Stream.STDOUT, capture)))
        else:
            capture.stdout_done.set()
        if spec.redirect_stderr and process.stderr is not None:
            pumps.append(asyncio.create_task(pump_stream(process.stderr, Stream.STDERR, capture)))
        else:
            capture.stderr_done.set()
        return pumps

    async def _close_when_drained(
        self,
        pumps: Sequence[asyncio.Task[None]],
        sink: MergeSink,
    ) -> None:
        try:
            if pumps:
                await asyncio.gather(*pumps, return_exceptions=True)
        finally:
            sink.close()

    async def _kill_on_cancel(
        self,
        cancel_event: asyncio.Event,
        process: asyncio.subprocess.Process,
        pgid: int | None,
    ) -> None:
        await cancel_event.wait()
        logger.warning(f"Cancellation requested, killing process tree pid={process.pid}")
        await terminate_process_tree(
            process,
            pgid=pgid,
            term_timeout=self.term_timeout,
            kill_timeout=self.kill_timeout,
        )

    async def _safe_cleanup(
        self,
        process: asyncio.subprocess.Process,
        pumps: Sequence[asyncio.Task[None]],
        pgid: int | None,
    ) -> None:
        """Release the process and its pumps, shielded from cancellation."""
        try:
            await asyncio.shield(self._do_cleanup(process, pumps, pgid))
        except asyncio.CancelledError:
            # If shield itself is cancelled, still try cleanup
            await self._do_cleanup(process, pumps, pgid)
            raise

    async def _do_cleanup(
        self,
        process: asyncio.subprocess.Process,
        pumps: Sequence[asyncio.Task[None]],
        pgid: int | None,
    ) -> None:
        if process.returncode is None:
            logger.debug(f"Process still running at cleanup, terminating pid={process.pid}")
            await terminate_process_tree(
                process,
                pgid=pgid,
                term_timeout=self.term_timeout,
                kill_timeout=self.kill_timeout,
            )

        for task in pumps:
            if not task.done():
                task.cancel()
        if pumps:
            results = await asyncio.gather(*pumps, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.warning(f"Output pump failed pid={process.pid}: {result}")

        if process.returncode is None:
            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Process not reaped at cleanup pid={process.pid}")

        logger.debug(f"Process released pid={process.pid} returncode={process.returncode}")
