"""Disk wiping and GPT partition table writing with parted.

Operations:
    - wipe_device(): Remove signatures and zero the head and tail of a disk
    - verify_wiped(): Confirm wipefs finds no signatures left
    - build_parted_command(): One parted invocation for a whole plan
    - write_partition_table(): Write the plan and wait for partition nodes
    - read_partition_table(): Parse `parted -m unit B print`
    - verify_partition_table(): Compare the re-read table with the plan

Writing always starts with `mklabel gpt`, so a repeated run replaces any
half-written table instead of building on it.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Optional

from arch_bootstrap.domain.models import MIB, Filesystem, PartitionPlan
from arch_bootstrap.logging import LoggerFactory
from arch_bootstrap.storage.commands import run_command, settle_device
from arch_bootstrap.storage.devices import partition_path
from arch_bootstrap.storage.exceptions import VerificationError
from arch_bootstrap.storage.sizing import ALIGNMENT_BYTES, format_mib


log = LoggerFactory.for_device()

PARTED_FS_TYPES = {
    Filesystem.FAT32: "fat32",
    Filesystem.EXT4: "ext4",
    Filesystem.SWAP: "linux-swap",
    Filesystem.NONE: None,
}


@dataclass(frozen=True)
class TableEntry:
    """One partition as reported by parted (end is inclusive)."""

    number: int
    start: int
    end: int
    name: str
    flags: frozenset[str]


def wipe_device(
    device_path: str,
    device_size_bytes: int,
    wipe_bytes: int = 100 * MIB,
    timeout: Optional[float] = None,
) -> None:
    """Remove all signatures, then zero the first and last ``wipe_bytes``."""
    log.info(f"Wiping signatures on {device_path}")
    run_command(["wipefs", "-af", device_path], timeout=timeout)

    device_mib = device_size_bytes // MIB
    count = max(1, min(wipe_bytes // MIB, device_mib))
    run_command(
        ["dd", "if=/dev/zero", f"of={device_path}", "bs=1M", f"count={count}",
         "conv=fsync", "status=none"],
        timeout=timeout,
    )
    tail_start = device_mib - count
    if tail_start > count:
        run_command(
            ["dd", "if=/dev/zero", f"of={device_path}", "bs=1M", f"count={count}",
             f"seek={tail_start}", "conv=fsync", "status=none"],
            timeout=timeout,
        )
    settle_device(device_path, timeout=timeout)


def verify_wiped(device_path: str, timeout: Optional[float] = None) -> None:
    result = run_command(["wipefs", "-n", device_path], timeout=timeout, log_output=False)
    if result.stdout.strip():
        raise VerificationError(
            f"Signatures still present on {device_path}: {result.stdout.strip()}"
        )


def build_parted_command(plan: PartitionPlan) -> list[str]:
    command = ["parted", "-s", "-a", "optimal", plan.device_path, "--", "mklabel", plan.table]
    for spec in plan.partitions:
        end = (
            "100%"
            if spec.end_offset_bytes == plan.device_size_bytes
            else format_mib(spec.end_offset_bytes)
        )
        command += ["mkpart", spec.role.label]
        fs_type = PARTED_FS_TYPES[spec.filesystem]
        if fs_type:
            command.append(fs_type)
        command += [format_mib(spec.start_offset_bytes), end]
        for flag in sorted(flag.value for flag in spec.flags):
            command += ["set", str(spec.number), flag, "on"]
    return command


def write_partition_table(plan: PartitionPlan, timeout: Optional[float] = None) -> None:
    log.info(f"Writing {plan.table} table with {len(plan.partitions)} partitions to {plan.device_path}")
    run_command(build_parted_command(plan), timeout=timeout)
    settle_device(plan.device_path, timeout=timeout)
    _wait_for_partition_nodes(plan)


def _wait_for_partition_nodes(plan: PartitionPlan, attempts: int = 10, delay: float = 0.5) -> None:
    expected = [partition_path(plan.device_path, spec.number) for spec in plan.partitions]
    for _ in range(attempts):
        missing = [path for path in expected if not os.path.exists(path)]  # noqa: PTH110
        if not missing:
            return
        time.sleep(delay)
    raise VerificationError(
        f"Partition nodes did not appear: {', '.join(missing)}"
    )


def read_partition_table(
    device_path: str, timeout: Optional[float] = None
) -> tuple[Optional[str], list[TableEntry]]:
    """Return (table type, entries) from parted's machine-readable output."""
    result = run_command(
        ["parted", "-m", "-s", device_path, "unit", "B", "print"],
        timeout=timeout,
        log_output=False,
    )
    table_type: Optional[str] = None
    entries: list[TableEntry] = []
    for line in result.stdout.splitlines():
        line = line.strip().rstrip(";")
        if not line or line == "BYT":
            continue
        fields = line.split(":")
        if fields[0].startswith("/dev/"):
            table_type = fields[5] if len(fields) > 5 and fields[5] != "unknown" else None
            continue
        if not fields[0].isdigit() or len(fields) < 3:
            continue
        flags = fields[6] if len(fields) > 6 else ""
        entries.append(
            TableEntry(
                number=int(fields[0]),
                start=int(fields[1].rstrip("B")),
                end=int(fields[2].rstrip("B")),
                name=fields[5] if len(fields) > 5 else "",
                flags=frozenset(flag.strip() for flag in flags.split(",") if flag.strip()),
            )
        )
    return table_type, entries


def verify_partition_table(plan: PartitionPlan, timeout: Optional[float] = None) -> None:
    """Re-read the table and compare every partition with the plan.

    Raises:
        VerificationError: On any mismatch
    """
    table_type, entries = read_partition_table(plan.device_path, timeout=timeout)
    if table_type != plan.table:
        raise VerificationError(
            f"Expected a {plan.table} table on {plan.device_path}, found {table_type}"
        )
    if len(entries) != len(plan.partitions):
        raise VerificationError(
            f"Expected {len(plan.partitions)} partitions on {plan.device_path}, "
            f"found {len(entries)}"
        )

    for spec, entry in zip(plan.partitions, entries):
        if entry.number != spec.number or entry.start != spec.start_offset_bytes:
            raise VerificationError(
                f"Partition {spec.number} starts at {entry.start}, "
                f"expected {spec.start_offset_bytes}"
            )
        actual_end = entry.end + 1
        if spec.end_offset_bytes == plan.device_size_bytes:
            # parted keeps the GPT backup header out of a 100% partition
            in_range = plan.device_size_bytes - ALIGNMENT_BYTES <= actual_end <= plan.device_size_bytes
        else:
            in_range = actual_end == spec.end_offset_bytes
        if not in_range:
            raise VerificationError(
                f"Partition {spec.number} ends at {actual_end}, "
                f"expected {spec.end_offset_bytes}"
            )
        missing_flags = {flag.value for flag in spec.flags} - entry.flags
        if missing_flags:
            raise VerificationError(
                f"Partition {spec.number} is missing flags: {', '.join(sorted(missing_flags))}"
            )
    log.debug(f"Partition table on {plan.device_path} matches plan {plan.short_hash}")
