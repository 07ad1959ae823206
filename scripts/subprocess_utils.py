#!/usr/bin/env python3
"""
subprocess_utils.py - Secure subprocess utilities for the bencher pipeline

This module provides secure subprocess wrappers that:
- Use full executable paths instead of command names
- Validate executables exist before running
- Provide consistent error handling
- Allow long-running commands (benchmark suites) to be cancelled

All modules should use these functions instead of calling subprocess directly.
"""

import shutil
import subprocess
import threading
import time
from pathlib import Path

# How often a cancellable command checks its cancellation event (seconds)
CANCEL_POLL_INTERVAL = 0.2


class ExecutableNotFoundError(Exception):
    """Raised when a required executable is not found in PATH."""


class CommandCancelledError(Exception):
    """Raised when a running command was terminated by its cancellation event."""


def get_safe_executable(command: str) -> str:
    """
    Get the full path to an executable, validating it exists.

    Args:
        command: Command name to find (e.g., "go", "git")

    Returns:
        Full path to the executable

    Raises:
        ExecutableNotFoundError: If executable is not found in PATH
    """
    full_path = shutil.which(command)
    if full_path is None:
        raise ExecutableNotFoundError(f"Required executable '{command}' not found in PATH")
    return full_path


def run_cancellable_command(
    command: str,
    args: list[str],
    cwd: Path | None = None,
    cancel_event: threading.Event | None = None,
    timeout: float | None = None,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    """
    Run a command that may be aborted by the caller while it is running.

    The child process is polled every CANCEL_POLL_INTERVAL seconds; when
    ``cancel_event`` is set the process is killed and CommandCancelledError
    is raised. Output is collected as UTF-8 text.

    Args:
        command: Command name to run (e.g., "go")
        args: Command arguments
        cwd: Working directory for the command
        cancel_event: Event that, once set, aborts the command
        timeout: Overall time limit in seconds (None for no limit)
        check: Raise CalledProcessError on non-zero exit status

    Returns:
        CompletedProcess result with captured stdout/stderr

    Raises:
        ExecutableNotFoundError: If command is not found
        CommandCancelledError: If cancel_event was set before completion
        subprocess.TimeoutExpired: If the command exceeded timeout
        subprocess.CalledProcessError: If command fails and check=True
    """
    command_path = get_safe_executable(command)
    argv = [command_path, *args]
    deadline = None if timeout is None else time.monotonic() + timeout

    with subprocess.Popen(  # noqa: S603  # Uses validated full executable path, no shell=True
        argv,
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
    ) as proc:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                proc.kill()
                proc.communicate()
                msg = f"Command '{command}' was cancelled"
                raise CommandCancelledError(msg)

            wait_for = CANCEL_POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    proc.kill()
                    stdout, stderr = proc.communicate()
                    raise subprocess.TimeoutExpired(argv, timeout, output=stdout, stderr=stderr)
                wait_for = min(wait_for, remaining)

            try:
                stdout, stderr = proc.communicate(timeout=wait_for)
                break
            except subprocess.TimeoutExpired:
                continue

    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, argv, output=stdout, stderr=stderr)
    return subprocess.CompletedProcess(argv, proc.returncode, stdout, stderr)
