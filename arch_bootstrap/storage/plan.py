"""Partition plan building.

PlanBuilder combines device inspection with the size calculator and turns
size requests into an immutable PartitionPlan. The table is always GPT:

    UEFI:  EFI (fat32, esp+boot) ... Root ... [Home]
    BIOS:  BIOS boot (unformatted, bios_grub) ... Root ... [Home]

The two schemes never mix; a request that belongs to the other scheme is a
PlanConflictError.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional, Sequence

from arch_bootstrap.domain.models import (
    MIB,
    REMAINING,
    BootMode,
    Filesystem,
    PartitionFlag,
    PartitionPlan,
    PartitionSpec,
    Role,
    SizeRequest,
    SizeSpec,
)
from arch_bootstrap.logging import LoggerFactory
from arch_bootstrap.storage.devices import DeviceInspector
from arch_bootstrap.storage.exceptions import PlanConflictError
from arch_bootstrap.storage.sizing import ALIGNMENT_BYTES, compute_layout, format_mib


log = LoggerFactory.for_plan()

ROLE_FILESYSTEMS = {
    Role.EFI: Filesystem.FAT32,
    Role.BIOS_BOOT: Filesystem.NONE,
    Role.SWAP: Filesystem.SWAP,
    Role.ROOT: Filesystem.EXT4,
    Role.HOME: Filesystem.EXT4,
}

ROLE_FLAGS = {
    Role.EFI: frozenset({PartitionFlag.ESP, PartitionFlag.BOOT}),
    Role.BIOS_BOOT: frozenset({PartitionFlag.BIOS_GRUB}),
}

BOOT_ROLES = {BootMode.UEFI: Role.EFI, BootMode.BIOS: Role.BIOS_BOOT}

DEFAULT_BOOT_SIZES = {
    BootMode.UEFI: Decimal("1"),
    # bios_grub only holds GRUB's core image
    BootMode.BIOS: Decimal(1) / 1024,
}
DEFAULT_SWAP_GB = Decimal("8")
DEFAULT_ROOT_GB = Decimal("40")


def default_requests(
    boot_mode: BootMode,
    boot: Optional[SizeSpec] = None,
    swap: Optional[SizeSpec] = DEFAULT_SWAP_GB,
    root: SizeSpec = DEFAULT_ROOT_GB,
    home: Optional[SizeSpec] = REMAINING,
) -> list[SizeRequest]:
    """Boot, swap, root and home requests in installation order.

    Passing ``None`` for swap or home leaves that partition out.
    """
    if boot is None:
        boot = DEFAULT_BOOT_SIZES[boot_mode]
    requests = [SizeRequest(BOOT_ROLES[boot_mode], boot)]
    if swap is not None:
        requests.append(SizeRequest(Role.SWAP, swap))
    requests.append(SizeRequest(Role.ROOT, root))
    if home is not None:
        requests.append(SizeRequest(Role.HOME, home))
    return requests


class PlanBuilder:
    """Build immutable partition plans for a target device."""

    def __init__(self, inspector: Optional[DeviceInspector] = None):
        self.inspector = inspector or DeviceInspector()

    def build(
        self,
        device_path: str,
        boot_mode: BootMode,
        requests: Sequence[SizeRequest],
    ) -> PartitionPlan:
        """Inspect the device and lay out the requested partitions.

        Raises:
            DeviceNotFoundError, DeviceUnsafeError: From inspection
            ConfigError, InsufficientSpaceError: From the size calculator
            PlanConflictError: If roles do not fit the boot mode or the
                computed layout is inconsistent
        """
        self._check_roles(boot_mode, requests)
        log.debug(f"Planning {device_path} ({boot_mode.value}): " + ", ".join(
            request.describe() for request in requests
        ))
        device = self.inspector.inspect(device_path)
        layout = compute_layout(device.size_bytes, requests)

        partitions = tuple(
            PartitionSpec(
                number=index,
                role=request.role,
                filesystem=ROLE_FILESYSTEMS[request.role],
                start_offset_bytes=start,
                end_offset_bytes=end,
                flags=ROLE_FLAGS.get(request.role, frozenset()),
            )
            for index, (request, (start, end)) in enumerate(zip(requests, layout), start=1)
        )
        self._check_layout(device.size_bytes, partitions)

        plan = PartitionPlan(
            device_path=device_path,
            device_size_bytes=device.size_bytes,
            boot_mode=boot_mode,
            partitions=partitions,
        )
        log.info(
            f"Built plan {plan.short_hash} for {device.format_label()}: "
            + ", ".join(
                f"{spec.role.label} [{format_mib(spec.start_offset_bytes)}, "
                f"{format_mib(spec.end_offset_bytes)})"
                for spec in partitions
            )
        )
        return plan

    @staticmethod
    def _check_roles(boot_mode: BootMode, requests: Sequence[SizeRequest]) -> None:
        roles = [request.role for request in requests]
        duplicates = {role.value for role in roles if roles.count(role) > 1}
        if duplicates:
            raise PlanConflictError(
                f"Each role may appear once; duplicated: {', '.join(sorted(duplicates))}"
            )
        if boot_mode == BootMode.BIOS and Role.EFI in roles:
            raise PlanConflictError("An EFI system partition cannot be used in BIOS mode")
        if boot_mode == BootMode.UEFI and Role.BIOS_BOOT in roles:
            raise PlanConflictError("A bios_grub partition cannot be used in UEFI mode")
        boot_role = BOOT_ROLES[boot_mode]
        if boot_role not in roles:
            raise PlanConflictError(
                f"{boot_mode.value.upper()} mode needs a {boot_role.label} partition"
            )
        if Role.ROOT not in roles:
            raise PlanConflictError("A root partition is required")

    @staticmethod
    def _check_layout(device_size: int, partitions: Sequence[PartitionSpec]) -> None:
        previous_end = ALIGNMENT_BYTES
        for spec in partitions:
            if spec.start_offset_bytes < previous_end:
                raise PlanConflictError(
                    f"Partition {spec.number} ({spec.role.label}) overlaps its predecessor"
                )
            if spec.end_offset_bytes <= spec.start_offset_bytes:
                raise PlanConflictError(
                    f"Partition {spec.number} ({spec.role.label}) is empty"
                )
            if spec.end_offset_bytes > device_size:
                raise PlanConflictError(
                    f"Partition {spec.number} ({spec.role.label}) ends past the device"
                )
            previous_end = spec.end_offset_bytes
        if partitions and partitions[0].start_offset_bytes % MIB:
            raise PlanConflictError("First partition is not MiB-aligned")
