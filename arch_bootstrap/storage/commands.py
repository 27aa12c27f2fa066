"""External command execution with logging and time budgets."""

from __future__ import annotations

import subprocess
from typing import Optional, Sequence

from arch_bootstrap.logging import LoggerFactory
from arch_bootstrap.storage.exceptions import CommandError, CommandTimeoutError


log = LoggerFactory.for_command()
output_log = log.bind(tags=["command", "command-output"])


def run_command(
    command: Sequence[str],
    check: bool = True,
    timeout: Optional[float] = None,
    input_text: Optional[str] = None,
    log_output: bool = True,
    log_command: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command given as an argument list.

    Input passed on stdin is never logged: the chroot payload carries
    passwords.

    Raises:
        CommandTimeoutError: If the command outlives ``timeout`` seconds
        CommandError: If the executable is missing, or ``check`` is set and
            the command exits non-zero
    """
    command = [str(part) for part in command]
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            input=input_text,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as error:
        log.error(f"Command timed out after {timeout}s: {' '.join(command)}")
        raise CommandTimeoutError(command, timeout or 0) from error
    except FileNotFoundError as error:
        raise CommandError(command, None, f"{command[0]} not found") from error

    if result.stdout and (log_output or result.returncode != 0):
        output_log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        output_log.debug(f"stderr: {result.stderr.strip()}")
    if check and result.returncode != 0:
        stderr = (result.stderr or result.stdout or "").strip()
        raise CommandError(command, result.returncode, stderr)
    return result


def settle_device(device_path: str, timeout: Optional[float] = None) -> None:
    """Ask the kernel and udev to catch up with partition table changes."""
    for cmd in (
        ["sync"],
        ["partprobe", device_path],
        ["udevadm", "settle", "--timeout=10"],
    ):
        try:
            run_command(cmd, check=False, timeout=timeout, log_output=False)
        except CommandError as error:
            log.debug(f"Ignoring settle failure: {error}")
