"""Block device inspection using lsblk, os.stat and psutil.

This module answers "what is this device and is it safe to destroy?"
without ever issuing a mutating command.

Safety Filters:
    The inspector refuses a target (DeviceUnsafeError) when:

    1. Its path or kernel name matches the deny-list (loop, sr*, rom,
       airootfs)
    2. lsblk reports a TYPE other than "disk"
    3. It is read-only
    4. It, or any of its partitions, backs the running system or the live
       boot media (/, /boot, /run/archiso/bootmnt, /run/archiso/airootfs)

Operations:
    - DeviceInspector.inspect(): Snapshot a device as DeviceInfo
    - read_lsblk(): Raw lsblk JSON tree for one device
    - list_candidate_disks(): Whole disks a user may pick as a target
    - mounted_devices(): Map of mounted device node -> mountpoints
    - partition_path(): Partition node for a device and number
"""

from __future__ import annotations

import json
import os
import re
import stat
from typing import Callable, Iterable, Optional

import psutil

from arch_bootstrap.domain.models import DeviceInfo
from arch_bootstrap.logging import LoggerFactory
from arch_bootstrap.storage.commands import run_command
from arch_bootstrap.storage.exceptions import (
    CommandError,
    DeviceNotFoundError,
    DeviceUnsafeError,
)


log = LoggerFactory.for_device()

DENY_PATTERN = re.compile(r"loop|sr\d*|rom|airootfs")
PROTECTED_MOUNTPOINTS = {
    "/",
    "/boot",
    "/boot/efi",
    "/run/archiso/bootmnt",
    "/run/archiso/airootfs",
}
LSBLK_COLUMNS = "NAME,PATH,TYPE,SIZE,RO,PTTYPE,MOUNTPOINT,FSTYPE,MODEL"


def partition_path(device_path: str, number: int) -> str:
    """/dev/sda + 1 -> /dev/sda1, /dev/nvme0n1 + 1 -> /dev/nvme0n1p1."""
    suffix = "p" if device_path[-1].isdigit() else ""
    return f"{device_path}{suffix}{number}"


def read_lsblk(device_path: str, timeout: Optional[float] = None) -> dict:
    """Return the lsblk JSON node (with children) for one device.

    Raises:
        DeviceNotFoundError: If lsblk does not know the device
    """
    try:
        result = run_command(
            ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS, device_path],
            timeout=timeout,
            log_output=False,
        )
        data = json.loads(result.stdout)
    except (CommandError, json.JSONDecodeError) as error:
        log.debug(f"lsblk failed for {device_path}: {error}")
        raise DeviceNotFoundError(device_path) from error
    devices = data.get("blockdevices") or []
    if not devices:
        raise DeviceNotFoundError(device_path)
    return devices[0]


def list_candidate_disks(
    deny_pattern: re.Pattern = DENY_PATTERN, timeout: Optional[float] = 30
) -> list[DeviceInfo]:
    """Whole disks outside the deny-list, for showing before the device prompt.

    Only a listing: the chosen disk still goes through DeviceInspector.
    """
    try:
        result = run_command(
            ["lsblk", "-J", "-b", "-d", "-o", LSBLK_COLUMNS],
            timeout=timeout,
            log_output=False,
        )
        data = json.loads(result.stdout)
    except (CommandError, json.JSONDecodeError) as error:
        log.warning(f"Could not list disks: {error}")
        return []

    disks = []
    for node in data.get("blockdevices") or []:
        name = node.get("name") or ""
        if node.get("type") != "disk" or deny_pattern.search(name):
            continue
        disks.append(
            DeviceInfo(
                path=node.get("path") or f"/dev/{name}",
                size_bytes=_as_int(node.get("size")),
                is_block_device=True,
                is_mounted=bool(node.get("mountpoint")),
                existing_partition_table=node.get("pttype") or None,
                device_type="disk",
                model=(node.get("model") or "").strip() or None,
            )
        )
    return disks


def get_children(device: dict) -> list[dict]:
    return device.get("children", []) or []


def _collect_mountpoints(device: dict) -> list[str]:
    mountpoints: list[str] = []
    mountpoint = device.get("mountpoint")
    if mountpoint:
        mountpoints.append(mountpoint)
    for child in get_children(device):
        mountpoints.extend(_collect_mountpoints(child))
    return mountpoints


def _collect_nodes(device: dict) -> set[str]:
    nodes = set()
    path = device.get("path") or (f"/dev/{device['name']}" if device.get("name") else None)
    if path:
        nodes.add(path)
    for child in get_children(device):
        nodes.update(_collect_nodes(child))
    return nodes


def mounted_devices() -> dict[str, list[str]]:
    """Mounted device node -> mountpoints, from psutil."""
    mounts: dict[str, list[str]] = {}
    for partition in psutil.disk_partitions(all=True):
        if partition.device.startswith("/dev/"):
            mounts.setdefault(partition.device, []).append(partition.mountpoint)
    return mounts


def _is_block_device(device_path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(device_path).st_mode)
    except OSError:
        return False


def _as_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class DeviceInspector:
    """Read-only inspection of candidate target devices."""

    def __init__(
        self,
        deny_pattern: re.Pattern = DENY_PATTERN,
        protected_mountpoints: Iterable[str] = PROTECTED_MOUNTPOINTS,
        is_block_device: Callable[[str], bool] = _is_block_device,
    ):
        self.deny_pattern = deny_pattern
        self.protected_mountpoints = set(protected_mountpoints)
        self.is_block_device = is_block_device

    def inspect(self, device_path: str, timeout: Optional[float] = None) -> DeviceInfo:
        """Snapshot a device.

        Raises:
            DeviceNotFoundError: If the path is not a block device
            DeviceUnsafeError: If the device matches the deny-list
        """
        if not self.is_block_device(device_path):
            raise DeviceNotFoundError(device_path)

        name = os.path.basename(device_path)
        if self.deny_pattern.search(name):
            raise DeviceUnsafeError(device_path, "system device (loop/optical/live media)")

        node = read_lsblk(device_path, timeout=timeout)
        device_type = node.get("type") or "unknown"
        if device_type != "disk":
            raise DeviceUnsafeError(device_path, f"device type is {device_type}, not disk")
        if node.get("ro") in (True, 1, "1"):
            raise DeviceUnsafeError(device_path, "device is read-only")

        mountpoints = _collect_mountpoints(node)
        system_mounts = self._system_mounts(node, mountpoints)
        if system_mounts:
            raise DeviceUnsafeError(
                device_path,
                f"backs the running system ({', '.join(sorted(system_mounts))})",
            )

        info = DeviceInfo(
            path=device_path,
            size_bytes=_as_int(node.get("size")),
            is_block_device=True,
            is_mounted=bool(mountpoints) or bool(self._psutil_mounts(node)),
            existing_partition_table=node.get("pttype") or None,
            device_type=device_type,
            model=(node.get("model") or "").strip() or None,
        )
        log.debug(
            f"Inspected {info.format_label()}: mounted={info.is_mounted} "
            f"table={info.existing_partition_table}"
        )
        return info

    def _psutil_mounts(self, node: dict) -> list[str]:
        nodes = _collect_nodes(node)
        found: list[str] = []
        for device, mountpoints in mounted_devices().items():
            if device in nodes:
                found.extend(mountpoints)
        return found

    def _system_mounts(self, node: dict, mountpoints: list[str]) -> set[str]:
        candidates = set(mountpoints) | set(self._psutil_mounts(node))
        return candidates & self.protected_mountpoints
