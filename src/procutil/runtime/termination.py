"""Process-tree termination.

Termination strategy:
1. Snapshot the descendants (psutil) while the parent is still alive
2. Graceful signal: SIGTERM to the process group (CTRL_BREAK_EVENT on Windows)
3. Wait up to term_timeout for the parent to exit
4. SIGKILL the process group (kill() on Windows)
5. Kill every snapshotted descendant that is still running

Descendants that moved to their own session escape the process group, so the
psutil sweep catches them. Signalling an exited process is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal

import psutil

from .spec import IS_WINDOWS

__all__ = [
    "collect_descendants",
    "kill_tree_now",
    "terminate_process_tree",
    "is_alive",
]

logger = logging.getLogger(__name__)


def collect_descendants(pid: int) -> list[psutil.Process]:
    """Return all descendants of pid, or [] if it is gone."""
    try:
        return psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


def is_alive(pid: int) -> bool:
    """Whether pid refers to a running, non-zombie process."""
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def _own_group(pid: int) -> int | None:
    """Process group led by pid, if pid leads one that is not ours."""
    if IS_WINDOWS:
        return None
    try:
        pgid = os.getpgid(pid)
    except (ProcessLookupError, OSError):
        return None
    if pgid != pid or pgid == os.getpgrp():
        return None
    return pgid


def _signal_group(pgid: int, sig: int) -> bool:
    try:
        os.killpg(pgid, sig)
        logger.debug(f"Sent {signal.Signals(sig).name} to process group pgid={pgid}")
        return True
    except ProcessLookupError:
        return False
    except OSError as e:
        logger.debug(f"killpg failed pgid={pgid}: {e}")
        return False


def _kill_descendants(descendants: list[psutil.Process]) -> int:
    """Kill still-running descendants, children first."""
    killed = 0
    for proc in reversed(descendants):
        try:
            if proc.is_running():
                proc.kill()
                killed += 1
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning(f"Failed to kill descendant pid={proc.pid}: {e}")
    return killed


def kill_tree_now(pid: int) -> int:
    """Kill pid and all its descendants immediately.

    Safe to call on a pid that has already exited.

    Args:
        pid: Root of the tree

    Returns:
        Number of processes signalled
    """
    descendants = collect_descendants(pid)
    signalled = 0

    pgid = _own_group(pid)
    if pgid is not None and _signal_group(pgid, signal.SIGKILL):
        signalled += 1
    else:
        try:
            psutil.Process(pid).kill()
            signalled += 1
        except psutil.NoSuchProcess:
            logger.debug(f"Process already exited pid={pid}")
        except psutil.AccessDenied as e:
            logger.warning(f"Failed to kill pid={pid}: {e}")

    signalled += _kill_descendants(descendants)
    return signalled


async def _graceful(process: asyncio.subprocess.Process, pgid: int | None) -> None:
    if IS_WINDOWS:
        try:
            # Works because the child was started with CREATE_NEW_PROCESS_GROUP
            os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            process.terminate()
    elif pgid is None or not _signal_group(pgid, signal.SIGTERM):
        process.terminate()


async def _force(process: asyncio.subprocess.Process, pgid: int | None) -> None:
    if pgid is not None and _signal_group(pgid, signal.SIGKILL):
        return
    process.kill()


async def terminate_process_tree(
    process: asyncio.subprocess.Process,
    *,
    pgid: int | None = None,
    term_timeout: float = 2.0,
    kill_timeout: float = 1.0,
) -> None:
    """Terminate a spawned process and its whole tree, best effort.

    Never raises for an already-exited process; other errors are logged.

    Args:
        process: Process created by the runner
        pgid: Process group the runner created for it (POSIX)
        term_timeout: Grace period after the graceful signal (0 = skip)
        kill_timeout: Wait after the kill
    """
    pid = process.pid
    descendants = collect_descendants(pid)
    logger.debug(f"Terminating process tree pid={pid} descendants={len(descendants)}")

    try:
        if process.returncode is None:
            if term_timeout > 0:
                await _graceful(process, pgid)
                try:
                    await asyncio.wait_for(process.wait(), timeout=term_timeout)
                    logger.debug(
                        f"Process terminated gracefully pid={pid} "
                        f"returncode={process.returncode}"
                    )
                except asyncio.TimeoutError:
                    pass

            if process.returncode is None:
                logger.debug(f"Force killing process pid={pid}")
                await _force(process, pgid)
                try:
                    await asyncio.wait_for(process.wait(), timeout=kill_timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"Process did not exit after kill pid={pid}")

        # Leader gone; clear anything left in its group
        if pgid is not None:
            _signal_group(pgid, signal.SIGKILL)
    except ProcessLookupError:
        logger.debug(f"Process already exited pid={pid}")
    except Exception as e:
        logger.warning(f"Error terminating process pid={pid}: {e}")

    killed = _kill_descendants(descendants)
    if killed:
        logger.debug(f"Killed {killed} escaped descendant(s) of pid={pid}")
