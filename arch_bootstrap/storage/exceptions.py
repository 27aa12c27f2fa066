"""Custom exceptions for provisioning operations.

This module defines a hierarchy of exceptions for the install pipeline so the
CLI can map every failure to a distinct exit code and a useful message.

Exception Hierarchy:
    InstallerError (base)
        ├── ConfigError
        │   └── ConfirmationDeclinedError
        ├── DeviceError
        │   ├── DeviceNotFoundError
        │   ├── DeviceUnsafeError
        │   └── DeviceBusyError
        ├── PlanError
        │   ├── InsufficientSpaceError
        │   └── PlanConflictError
        ├── CommandError
        │   └── CommandTimeoutError
        ├── TransientError
        │   ├── NetworkUnreachableError
        │   └── PackageBootstrapError
        ├── VerificationError
        ├── StageTimeoutError
        ├── StageFailure
        └── LedgerError

Usage:
    from arch_bootstrap.storage.exceptions import DeviceUnsafeError

    if device_type == "loop":
        raise DeviceUnsafeError(device_path, "loop devices are never targets")
"""

from __future__ import annotations

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_CONFIG = 2
EXIT_DEVICE_UNSAFE = 3
EXIT_INSUFFICIENT_SPACE = 4
EXIT_STAGE_FAILURE = 5
EXIT_PLAN_CONFLICT = 6
EXIT_DEVICE_NOT_FOUND = 7
EXIT_LEDGER = 8
EXIT_CANCELLED = 130


class InstallerError(Exception):
    """Base exception for all provisioning operations."""

    exit_code = EXIT_UNEXPECTED


class ConfigError(InstallerError):
    """User input is invalid. Correctable before the device is touched."""

    exit_code = EXIT_CONFIG

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class ConfirmationDeclinedError(ConfigError):
    """The operator did not confirm the destructive plan."""

    def __init__(self, device_path: str):
        self.device_path = device_path
        super().__init__(f"Destruction of {device_path} was not confirmed")


class DeviceError(InstallerError):
    """Base exception for device-related errors."""

    exit_code = EXIT_DEVICE_UNSAFE


class DeviceNotFoundError(DeviceError):
    """Device was not found or is not a block device."""

    exit_code = EXIT_DEVICE_NOT_FOUND

    def __init__(self, device_path: str):
        self.device_path = device_path
        super().__init__(f"Device not found or not a block device: {device_path}")


class DeviceUnsafeError(DeviceError):
    """Device matched the deny-list and must never be written to."""

    def __init__(self, device_path: str, reason: str):
        self.device_path = device_path
        self.reason = reason
        super().__init__(f"Refusing to use {device_path}: {reason}")


class DeviceBusyError(DeviceError):
    """Device is currently in use or mounted."""

    def __init__(self, device_path: str, reason: str = ""):
        self.device_path = device_path
        self.reason = reason
        msg = f"Device {device_path} is busy"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PlanError(InstallerError):
    """Base exception for partition plan errors."""


class InsufficientSpaceError(PlanError):
    """Requested layout does not fit on the device."""

    exit_code = EXIT_INSUFFICIENT_SPACE

    def __init__(self, required_bytes: int, available_bytes: int):
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        super().__init__(
            f"Layout needs {required_bytes} bytes "
            f"but the device only has {available_bytes} bytes"
        )


class PlanConflictError(PlanError):
    """Plan is internally inconsistent or incompatible with the boot mode."""

    exit_code = EXIT_PLAN_CONFLICT


class CommandError(InstallerError):
    """An external command failed."""

    def __init__(
        self,
        command: list[str],
        returncode: int | None = None,
        stderr: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command failed ({' '.join(self.command)})"
        if returncode is not None:
            message += f" rc={returncode}"
        if stderr:
            message += f": {stderr}"
        super().__init__(message)


class CommandTimeoutError(CommandError):
    """An external command exceeded its time budget."""

    def __init__(self, command: list[str], timeout: float):
        self.timeout = timeout
        super().__init__(command, None, f"timed out after {timeout:.0f}s")


class TransientError(InstallerError):
    """Failure that is commonly transient and may be retried."""


class NetworkUnreachableError(TransientError):
    """The reachability probe could not reach its target."""

    def __init__(self, target: str, reason: str = ""):
        self.target = target
        self.reason = reason
        msg = f"Network unreachable: {target}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class PackageBootstrapError(TransientError):
    """The package bootstrap tool exited unsuccessfully."""


class VerificationError(InstallerError):
    """A stage's side effect could not be confirmed after it ran."""


class StageTimeoutError(InstallerError):
    """A stage exhausted its time budget."""

    def __init__(self, stage_name: str, timeout: float):
        self.stage_name = stage_name
        self.timeout = timeout
        super().__init__(f"Stage {stage_name} exceeded {timeout:.0f}s")


class StageFailure(InstallerError):
    """A pipeline stage failed; the pipeline halted at this stage."""

    exit_code = EXIT_STAGE_FAILURE

    def __init__(self, stage_name: str, cause: BaseException):
        self.stage_name = stage_name
        self.cause = cause
        super().__init__(f"Stage {stage_name} failed: {cause}")


class LedgerError(InstallerError):
    """The progress ledger is unreadable or corrupt."""

    exit_code = EXIT_LEDGER
