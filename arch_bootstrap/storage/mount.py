"""Mounting the planned partitions under the install root.

Layout under the mount root (default /mnt):

    /mnt            Root
    /mnt/boot/efi   EFI system partition (UEFI only)
    /mnt/home       Home (when planned)

Swap is activated with swapon. Mounting is idempotent: a target already
mounted from the expected partition is left alone, while a target mounted
from anything else raises DeviceBusyError.

Operations:
    - mount_plan(): Mount root, ESP and home, then activate swap
    - unmount_tree(): Recursive unmount with retry and lazy fallback
    - release_device(): Deactivate swap and unmount everything on a device
    - verify_mounted() / verify_unmounted(): Check the mount table
    - active_swaps(): Devices listed in /proc/swaps
    - mounted_targets(): Mountpoint -> device, from psutil
    - mounts_from_device(): Mounts under the root that belong to the plan
"""

from __future__ import annotations

import os
import re
import time
from pathlib import Path
from typing import Optional

import psutil

from arch_bootstrap.domain.models import PartitionPlan, Role
from arch_bootstrap.logging import LoggerFactory
from arch_bootstrap.storage.commands import run_command
from arch_bootstrap.storage.devices import partition_path
from arch_bootstrap.storage.exceptions import (
    CommandError,
    DeviceBusyError,
    VerificationError,
)


log = LoggerFactory.for_device()

PROC_SWAPS = Path("/proc/swaps")

# Mount order matters: root first, then the directories inside it
MOUNT_SUBDIRS = (
    (Role.ROOT, ""),
    (Role.EFI, "boot/efi"),
    (Role.HOME, "home"),
)


def _real(path: str) -> str:
    return os.path.realpath(path)


def mounted_targets() -> dict[str, str]:
    """Mountpoint -> resolved device node for every /dev-backed mount."""
    targets: dict[str, str] = {}
    for partition in psutil.disk_partitions(all=True):
        if partition.device.startswith("/dev/"):
            targets[os.path.normpath(partition.mountpoint)] = _real(partition.device)
    return targets


def active_swaps(swaps_path: Path = PROC_SWAPS) -> set[str]:
    try:
        lines = swaps_path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return set()
    return {_real(line.split()[0]) for line in lines[1:] if line.strip()}


def planned_mounts(plan: PartitionPlan, mount_root: str) -> list[tuple[str, str]]:
    """Ordered (partition path, mountpoint) pairs for a plan."""
    mounts = []
    for role, subdir in MOUNT_SUBDIRS:
        spec = plan.by_role(role)
        if spec is None:
            continue
        target = os.path.normpath(os.path.join(mount_root, subdir))
        mounts.append((partition_path(plan.device_path, spec.number), target))
    return mounts


def swap_partition(plan: PartitionPlan) -> Optional[str]:
    spec = plan.by_role(Role.SWAP)
    return partition_path(plan.device_path, spec.number) if spec else None


def mount_plan(plan: PartitionPlan, mount_root: str, timeout: Optional[float] = None) -> None:
    """
    Raises:
        DeviceBusyError: If a target is already mounted from another device
        CommandError: If mount or swapon fails
    """
    for source, target in planned_mounts(plan, mount_root):
        current = mounted_targets().get(target)
        if current == _real(source):
            log.debug(f"{target} already mounted from {source}")
            continue
        if current is not None:
            raise DeviceBusyError(target, f"already mounted from {current}")
        Path(target).mkdir(parents=True, exist_ok=True)
        log.info(f"Mounting {source} at {target}")
        run_command(["mount", source, target], timeout=timeout)

    swap = swap_partition(plan)
    if swap:
        activate_swap(swap, timeout=timeout)


def activate_swap(path: str, timeout: Optional[float] = None) -> None:
    if _real(path) in active_swaps():
        log.debug(f"Swap {path} already active")
        return
    log.info(f"Activating swap on {path}")
    run_command(["swapon", path], timeout=timeout)


def deactivate_swap(path: str, timeout: Optional[float] = None) -> None:
    if _real(path) not in active_swaps():
        return
    log.info(f"Deactivating swap on {path}")
    run_command(["swapoff", path], timeout=timeout)


def _mounted_under(mount_root: str) -> list[str]:
    root = os.path.normpath(mount_root)
    return [
        target
        for target in mounted_targets()
        if target == root or target.startswith(root.rstrip("/") + "/")
    ]


def unmount_tree(
    mount_root: str,
    timeout: Optional[float] = None,
    attempts: int = 3,
    delay: float = 1.0,
) -> bool:
    """Recursively unmount ``mount_root``.

    Tries a normal `umount -R` up to ``attempts`` times, then a lazy one.

    Returns:
        True if the lazy fallback was needed
    """
    if not _mounted_under(mount_root):
        log.debug(f"Nothing mounted under {mount_root}")
        return False

    run_command(["sync"], check=False, timeout=timeout)
    for attempt in range(1, attempts + 1):
        try:
            run_command(["umount", "-R", mount_root], timeout=timeout)
        except CommandError as error:
            log.debug(f"Unmount attempt {attempt}/{attempts} failed: {error}")
        if not _mounted_under(mount_root):
            log.info(f"Unmounted {mount_root}")
            return False
        if attempt < attempts:
            time.sleep(delay)

    log.warning(f"Normal unmount of {mount_root} failed, attempting lazy unmount")
    run_command(["umount", "-R", "-l", mount_root], timeout=timeout)
    return True


def _belongs_to(node: str, device_path: str) -> bool:
    """True for the disk itself and any of its partition nodes."""
    disk = _real(device_path)
    return re.fullmatch(re.escape(disk) + r"p?\d*", node) is not None


def release_device(
    plan: PartitionPlan, mount_root: str, timeout: Optional[float] = None
) -> None:
    """Deactivate swap and unmount every partition of the plan's device.

    Used before wiping so a previous half-finished run cannot keep the disk
    busy.

    Raises:
        DeviceBusyError: If a partition of the device stays mounted
    """
    for swap in active_swaps():
        if _belongs_to(swap, plan.device_path):
            run_command(["swapoff", swap], timeout=timeout)

    unmount_tree(mount_root, timeout=timeout)
    for target, device in mounted_targets().items():
        if _belongs_to(device, plan.device_path):
            try:
                run_command(["umount", target], timeout=timeout)
            except CommandError as error:
                raise DeviceBusyError(plan.device_path, f"{target} is still in use") from error


def verify_mounted(plan: PartitionPlan, mount_root: str) -> None:
    targets = mounted_targets()
    for source, target in planned_mounts(plan, mount_root):
        if targets.get(target) != _real(source):
            raise VerificationError(f"{source} is not mounted at {target}")
    swap = swap_partition(plan)
    if swap and _real(swap) not in active_swaps():
        raise VerificationError(f"Swap {swap} is not active")


def verify_unmounted(plan: PartitionPlan, mount_root: str) -> None:
    remaining = _mounted_under(mount_root)
    if remaining:
        raise VerificationError(f"Still mounted: {', '.join(sorted(remaining))}")
    swap = swap_partition(plan)
    if swap and _real(swap) in active_swaps():
        raise VerificationError(f"Swap {swap} is still active")


def mounts_from_device(plan: PartitionPlan, mount_root: str) -> list[str]:
    """Mountpoints under ``mount_root`` backed by the plan's device."""
    targets = mounted_targets()
    return [
        target
        for target in _mounted_under(mount_root)
        if _belongs_to(targets.get(target, ""), plan.device_path)
    ]
