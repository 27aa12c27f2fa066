"""Base system installation with pacstrap.

pacstrap reinstalls already-present packages without complaint, so the
bootstrap stage may be repeated against the same mounted root.
"""

from __future__ import annotations

import glob
import os
from pathlib import Path
from typing import Iterable, Optional

from arch_bootstrap.domain.models import BootMode, InstallConfig
from arch_bootstrap.logging import LoggerFactory
from arch_bootstrap.storage.commands import run_command
from arch_bootstrap.storage.exceptions import (
    CommandError,
    CommandTimeoutError,
    PackageBootstrapError,
    VerificationError,
)


log = LoggerFactory.for_bootstrap()

BOOTLOADER_PACKAGES = {
    BootMode.UEFI: ("grub", "efibootmgr"),
    BootMode.BIOS: ("grub",),
}
BLUETOOTH_PACKAGES = ("bluez", "bluez-utils")
# verify_base_installed checks for this one
BASE_PACKAGE = "base"


def resolve_packages(
    config: InstallConfig,
    boot_mode: BootMode,
    microcode: Optional[str] = None,
) -> list[str]:
    """Configured package set plus bootloader, microcode and bluetooth extras.

    ``base`` is always installed and comes first unless the package set
    already names it. Order is preserved and duplicates are dropped.
    """
    packages: list[str] = []
    extras: Iterable[str] = (
        *((BASE_PACKAGE,) if BASE_PACKAGE not in config.package_set else ()),
        *config.package_set,
        *BOOTLOADER_PACKAGES[boot_mode],
        *((microcode,) if microcode else ()),
        *(BLUETOOTH_PACKAGES if config.enable_bluetooth else ()),
    )
    for package in extras:
        if package not in packages:
            packages.append(package)
    return packages


def run_pacstrap(
    mount_root: str, packages: list[str], timeout: Optional[float] = None
) -> None:
    """
    Raises:
        PackageBootstrapError: If pacstrap fails (mirror or network trouble
            is the usual cause, so the error is transient)
        CommandTimeoutError: If pacstrap outlives the stage budget
    """
    log.info(f"Installing {len(packages)} packages into {mount_root}: {' '.join(packages)}")
    try:
        run_command(["pacstrap", "-K", mount_root, *packages], timeout=timeout)
    except CommandTimeoutError:
        raise
    except CommandError as error:
        raise PackageBootstrapError(f"pacstrap failed: {error.stderr or error}") from error


def verify_base_installed(mount_root: str) -> None:
    local_db = os.path.join(mount_root, "var", "lib", "pacman", "local")
    if not glob.glob(os.path.join(local_db, f"{BASE_PACKAGE}-[0-9]*")):
        raise VerificationError(f"Package '{BASE_PACKAGE}' is not installed under {mount_root}")


def generate_fstab(mount_root: str, timeout: Optional[float] = None) -> Path:
    """Write ``genfstab -U`` output to the target's /etc/fstab, replacing it."""
    result = run_command(["genfstab", "-U", mount_root], timeout=timeout, log_output=False)
    fstab = Path(mount_root) / "etc" / "fstab"
    fstab.parent.mkdir(parents=True, exist_ok=True)
    fstab.write_text(result.stdout, encoding="utf-8")
    log.debug(f"Wrote {fstab} ({len(result.stdout.splitlines())} lines)")
    return fstab
