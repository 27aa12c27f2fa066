"""Host checks run before touching the disk.

Operations:
    - detect_boot_mode(): UEFI when the firmware exposes an EFI platform size
    - check_boot_mode(): Refuse a plan whose boot mode the host cannot boot
    - check_clock_sync(): Enable NTP and report whether the clock is synced
    - detect_microcode(): intel-ucode / amd-ucode from /proc/cpuinfo
    - list_keymaps(): Console keymaps known to localectl
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from arch_bootstrap.domain.models import BootMode
from arch_bootstrap.logging import LoggerFactory
from arch_bootstrap.storage.commands import run_command
from arch_bootstrap.storage.exceptions import CommandError, PlanConflictError


log = LoggerFactory.for_system()

EFI_PLATFORM_SIZE = Path("/sys/firmware/efi/fw_platform_size")
CPUINFO = Path("/proc/cpuinfo")

MICROCODE_PACKAGES = {
    "GenuineIntel": "intel-ucode",
    "AuthenticAMD": "amd-ucode",
}


def detect_boot_mode(platform_size_path: Path = EFI_PLATFORM_SIZE) -> BootMode:
    try:
        bits = platform_size_path.read_text(encoding="utf-8").strip()
    except OSError:
        log.debug("No EFI platform size exposed, assuming BIOS")
        return BootMode.BIOS
    log.debug(f"{bits}-bit UEFI firmware detected")
    return BootMode.UEFI


def check_boot_mode(planned: BootMode, platform_size_path: Path = EFI_PLATFORM_SIZE) -> None:
    """
    Raises:
        PlanConflictError: If the plan targets UEFI on a BIOS-booted host
    """
    detected = detect_boot_mode(platform_size_path)
    if planned == BootMode.UEFI and detected == BootMode.BIOS:
        raise PlanConflictError(
            "Plan targets UEFI but the live system was booted in BIOS mode"
        )
    if planned != detected:
        log.warning(
            f"Plan targets {planned.value.upper()} while the host booted in "
            f"{detected.value.upper()} mode"
        )


def check_clock_sync(timeout: Optional[float] = None) -> bool:
    """Turn on NTP and report whether timedatectl sees a synced clock.

    An unsynchronised clock only earns a warning: pacman keyring checks may
    complain, but nothing on the disk depends on it.
    """
    try:
        run_command(["timedatectl", "set-ntp", "true"], timeout=timeout)
        result = run_command(
            ["timedatectl", "show", "--property=NTPSynchronized", "--value"],
            timeout=timeout,
            log_output=False,
        )
    except CommandError as error:
        log.warning(f"Could not query clock synchronisation: {error}")
        return False
    synced = result.stdout.strip() == "yes"
    if synced:
        log.info("System clock is synchronised")
    else:
        log.warning("System clock is not synchronised yet")
    return synced


def detect_microcode(cpuinfo_path: Path = CPUINFO) -> Optional[str]:
    try:
        text = cpuinfo_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    for line in text.splitlines():
        key, _, value = line.partition(":")
        if key.strip() == "vendor_id":
            return MICROCODE_PACKAGES.get(value.strip())
    return None


def list_keymaps(timeout: Optional[float] = 30) -> Optional[list[str]]:
    """Console keymaps from ``localectl list-keymaps``.

    Returns None when localectl is unavailable, in which case keymaps are
    only checked for shape.
    """
    try:
        result = run_command(["localectl", "list-keymaps"], timeout=timeout, log_output=False)
    except CommandError as error:
        log.warning(f"Could not list keymaps, skipping keymap check: {error}")
        return None
    keymaps = [line.strip() for line in result.stdout.splitlines() if line.strip()]
    return keymaps or None
