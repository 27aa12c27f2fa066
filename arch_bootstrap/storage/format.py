"""Filesystem creation for planned partitions.

Supported Filesystems:
    fat32:  EFI system partition (mkfs.fat -F32)
    ext4:   Root and home (mkfs.ext4 -F)
    swap:   Swap space (mkswap)
    none:   Left unformatted (bios_grub)

Every formatter overwrites an existing signature, so re-running the format
stage against the same plan starts from scratch.

Operations:
    - build_format_command(): Formatter argument list for one partition
    - format_partition(): Format one partition
    - probe_filesystem(): Ask blkid for a partition's filesystem type
    - verify_formatted(): Check every partition carries its filesystem
"""

from __future__ import annotations

from typing import Optional

from arch_bootstrap.domain.models import Filesystem, PartitionPlan, PartitionSpec
from arch_bootstrap.logging import LoggerFactory
from arch_bootstrap.storage.commands import run_command
from arch_bootstrap.storage.devices import partition_path
from arch_bootstrap.storage.exceptions import CommandError, VerificationError


log = LoggerFactory.for_device()

# blkid TYPE values for each filesystem
BLKID_TYPES = {
    Filesystem.FAT32: "vfat",
    Filesystem.EXT4: "ext4",
    Filesystem.SWAP: "swap",
}


def build_format_command(spec: PartitionSpec, path: str) -> Optional[list[str]]:
    """Return the formatter command, or None for unformatted partitions."""
    label = spec.role.label
    if spec.filesystem == Filesystem.FAT32:
        return ["mkfs.fat", "-F32", "-n", label.upper(), path]
    if spec.filesystem == Filesystem.EXT4:
        return ["mkfs.ext4", "-F", "-L", label.lower(), path]
    if spec.filesystem == Filesystem.SWAP:
        return ["mkswap", "-L", label.lower(), path]
    return None


def format_partition(
    spec: PartitionSpec, device_path: str, timeout: Optional[float] = None
) -> None:
    path = partition_path(device_path, spec.number)
    command = build_format_command(spec, path)
    if command is None:
        log.debug(f"Leaving {path} ({spec.role.label}) unformatted")
        return
    log.info(f"Formatting {path} as {spec.filesystem.value} ({spec.role.label})")
    run_command(command, timeout=timeout)


def probe_filesystem(path: str, timeout: Optional[float] = None) -> Optional[str]:
    """Filesystem type reported by blkid, or None when there is none."""
    try:
        result = run_command(
            ["blkid", "-p", "-o", "value", "-s", "TYPE", path],
            timeout=timeout,
            log_output=False,
        )
    except CommandError as error:
        # blkid exits 2 when it finds nothing to report
        if error.returncode == 2:
            return None
        raise
    return result.stdout.strip() or None


def verify_formatted(plan: PartitionPlan, timeout: Optional[float] = None) -> None:
    """
    Raises:
        VerificationError: If a partition lacks its planned filesystem
    """
    for spec in plan.partitions:
        expected = BLKID_TYPES.get(spec.filesystem)
        if expected is None:
            continue
        path = partition_path(plan.device_path, spec.number)
        actual = probe_filesystem(path, timeout=timeout)
        if actual != expected:
            raise VerificationError(
                f"{path} ({spec.role.label}) has filesystem {actual or 'none'}, "
                f"expected {expected}"
            )
    log.debug(f"All filesystems present for plan {plan.short_hash}")
