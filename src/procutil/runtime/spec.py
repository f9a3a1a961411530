"""Launch configuration for a single process run.

This module provides:
- ProcessSpec: immutable launch configuration
- build_spec(): validates the command and assembles a spec
- apply_elevation_policy(): reconciles elevation with output capture

On Windows an elevated launch has to be owned by the OS shell, which rules
out stream redirection. The policy clears both redirects and marks the spec
for shell execution; the runner then supervises the exit code only.
"""

from __future__ import annotations

import codecs
import dataclasses
import logging
import os
import shlex
import subprocess
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

__all__ = [
    "IS_WINDOWS",
    "ProcessSpec",
    "build_spec",
    "apply_elevation_policy",
    "requires_shell_elevation",
    "elevated_argv",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"


def _split_arguments(arguments: str | Sequence[str] | None) -> tuple[str, ...]:
    if arguments is None:
        return ()
    if isinstance(arguments, str):
        return tuple(shlex.split(arguments))
    return tuple(str(a) for a in arguments)


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a process to run.

    Attributes:
        command: Executable name or path
        arguments: Arguments passed after the executable
        cwd: Working directory (None = current directory)
        env: Variables applied on top of the inherited environment
        admin: Elevation requested
        redirect_stdout: Capture stdout
        redirect_stderr: Capture stderr
        encoding: Text encoding of the child's output
        shell_execute: Launch through the OS shell (set by the elevation policy)
    """

    command: str
    arguments: tuple[str, ...] = ()
    cwd: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    admin: bool = False
    redirect_stdout: bool = True
    redirect_stderr: bool = True
    encoding: str = "utf-8"
    shell_execute: bool = False

    def __post_init__(self) -> None:
        if not self.command or not self.command.strip():
            raise ValueError("command is required")
        try:
            codecs.lookup(self.encoding)
        except LookupError as e:
            raise ValueError(f"unknown encoding: {self.encoding}") from e

    @property
    def argv(self) -> list[str]:
        """Command line, executable first."""
        return [self.command, *self.arguments]

    @property
    def captures_output(self) -> bool:
        """Whether at least one stream will be read by a pump."""
        return not self.shell_execute and (self.redirect_stdout or self.redirect_stderr)

    def build_env(self) -> dict[str, str] | None:
        """Return the child environment, or None to inherit unchanged."""
        if not self.env:
            return None
        merged = dict(os.environ)
        merged.update(self.env)
        return merged


def build_spec(
    command: str,
    arguments: str | Sequence[str] | None = None,
    cwd: str | os.PathLike[str] | None = None,
    env: Mapping[str, str] | None = None,
    *,
    admin: bool = False,
    encoding: str = "utf-8",
) -> ProcessSpec:
    """Assemble a ProcessSpec.

    Only the command (and encoding) are validated; a missing executable fails
    at spawn time.

    Args:
        command: Executable name or path
        arguments: Argument string (split with shell rules) or sequence
        cwd: Working directory; blank means the current directory
        env: Environment overlay
        admin: Request elevation
        encoding: Output encoding

    Returns:
        A spec redirecting both streams

    Raises:
        ValueError: If the command is empty or the encoding unknown
    """
    work_dir: Path | None = None
    if cwd is not None and str(cwd).strip():
        work_dir = Path(cwd)

    return ProcessSpec(
        command=command,
        arguments=_split_arguments(arguments),
        cwd=work_dir,
        env=dict(env or {}),
        admin=admin,
        redirect_stdout=True,
        redirect_stderr=True,
        encoding=encoding,
    )


def requires_shell_elevation(platform: str = sys.platform) -> bool:
    """Whether elevation on this platform forbids stream redirection."""
    return platform == "win32"


def apply_elevation_policy(spec: ProcessSpec, platform: str = sys.platform) -> ProcessSpec:
    """Downgrade an elevated spec to exit-only supervision where required.

    Args:
        spec: Spec produced by build_spec()
        platform: sys.platform value to decide for

    Returns:
        The spec unchanged, or a copy with redirects cleared and
        shell_execute set
    """
    if not spec.admin or not requires_shell_elevation(platform):
        return spec

    if spec.redirect_stdout or spec.redirect_stderr:
        logger.debug(
            f"Elevation requested for '{spec.command}': launching through the shell, "
            f"output will not be captured"
        )

    return dataclasses.replace(
        spec,
        redirect_stdout=False,
        redirect_stderr=False,
        shell_execute=True,
    )


def _ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def elevated_argv(spec: ProcessSpec) -> list[str]:
    """Command line that runs spec elevated through the Windows shell.

    PowerShell's Start-Process -Verb RunAs owns the elevated process; the
    wrapper waits for it and exits with its exit code. The environment
    overlay does not cross the elevation boundary.
    """
    script = f"$p = Start-Process -FilePath {_ps_quote(spec.command)} -Verb RunAs -Wait -PassThru"
    if spec.arguments:
        script += f" -ArgumentList {_ps_quote(subprocess.list2cmdline(spec.arguments))}"
    if spec.cwd is not None:
        script += f" -WorkingDirectory {_ps_quote(str(spec.cwd))}"
    script += "; exit $p.ExitCode"
    return ["powershell.exe", "-NoProfile", "-NonInteractive", "-Command", script]
