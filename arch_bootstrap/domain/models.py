"""Domain model for disk provisioning and system bootstrap.

Plans, partitions, ledger records and install answers are immutable value
objects threaded explicitly through the planner and the pipeline.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Union


MIB = 1024**2
GIB = 1024**3


# ==============================================================================
# Partition Domain
# ==============================================================================


class Role(Enum):
    """Purpose of a partition in the installed system."""

    EFI = "efi"
    SWAP = "swap"
    ROOT = "root"
    HOME = "home"
    BIOS_BOOT = "bios_boot"

    @property
    def label(self) -> str:
        """GPT partition name written by parted."""
        return _ROLE_LABELS[self]


_ROLE_LABELS = {
    Role.EFI: "EFI",
    Role.SWAP: "Swap",
    Role.ROOT: "Root",
    Role.HOME: "Home",
    Role.BIOS_BOOT: "BIOS",
}


class Filesystem(Enum):
    """Filesystems the formatter knows how to create."""

    FAT32 = "fat32"
    EXT4 = "ext4"
    SWAP = "swap"
    NONE = "none"


class PartitionFlag(Enum):
    """GPT partition flags understood by parted."""

    ESP = "esp"
    BOOT = "boot"
    BIOS_GRUB = "bios_grub"


class BootMode(Enum):
    """Firmware interface of the machine being installed."""

    UEFI = "uefi"
    BIOS = "bios"


class _Remaining:
    """Sentinel for "use whatever space is left"."""

    _instance: _Remaining | None = None

    def __new__(cls) -> _Remaining:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "REMAINING"

    def __reduce__(self):
        return (_Remaining, ())


REMAINING = _Remaining()

SizeSpec = Union[Decimal, _Remaining]


@dataclass(frozen=True)
class SizeRequest:
    """A user's size intent for one partition role."""

    role: Role
    size: SizeSpec  # binary gigabytes or REMAINING

    @property
    def is_remaining(self) -> bool:
        return self.size is REMAINING

    def describe(self) -> str:
        if self.is_remaining:
            return f"{self.role.value}=remaining"
        return f"{self.role.value}={self.size}G"


@dataclass(frozen=True)
class PartitionSpec:
    """One partition of a plan with byte-exact, end-exclusive offsets."""

    number: int  # 1-based partition number on the device
    role: Role
    filesystem: Filesystem
    start_offset_bytes: int
    end_offset_bytes: int
    flags: frozenset[PartitionFlag] = frozenset()

    @property
    def size_bytes(self) -> int:
        return self.end_offset_bytes - self.start_offset_bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "role": self.role.value,
            "filesystem": self.filesystem.value,
            "start": self.start_offset_bytes,
            "end": self.end_offset_bytes,
            "flags": sorted(flag.value for flag in self.flags),
        }


@dataclass(frozen=True)
class PartitionPlan:
    """Immutable partition layout for one target device.

    The plan hash binds ledger progress to this exact layout: any change to
    the device, its size or a partition spec produces a different hash.
    """

    device_path: str
    device_size_bytes: int
    boot_mode: BootMode
    partitions: tuple[PartitionSpec, ...]
    table: str = "gpt"
    plan_hash: str = field(init=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "partitions", tuple(self.partitions))
        object.__setattr__(self, "plan_hash", compute_plan_hash(self))

    def by_role(self, role: Role) -> PartitionSpec | None:
        for spec in self.partitions:
            if spec.role == role:
                return spec
        return None

    @property
    def short_hash(self) -> str:
        return self.plan_hash[:12]

    def to_dict(self) -> dict[str, Any]:
        return {
            "device": self.device_path,
            "device_size_bytes": self.device_size_bytes,
            "boot_mode": self.boot_mode.value,
            "table": self.table,
            "partitions": [spec.to_dict() for spec in self.partitions],
            "plan_hash": self.plan_hash,
        }


def compute_plan_hash(plan: PartitionPlan) -> str:
    """SHA-256 over device path, device size and the ordered spec list."""
    payload = {
        "device": plan.device_path,
        "size": plan.device_size_bytes,
        "partitions": [spec.to_dict() for spec in plan.partitions],
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ==============================================================================
# Device Domain
# ==============================================================================


@dataclass(frozen=True)
class DeviceInfo:
    """Read-only snapshot of a block device."""

    path: str
    size_bytes: int
    is_block_device: bool
    is_mounted: bool
    existing_partition_table: str | None = None  # "gpt", "dos" or None
    device_type: str = "disk"
    model: str | None = None

    @property
    def size_gib(self) -> float:
        return self.size_bytes / GIB

    def format_label(self) -> str:
        """e.g. "/dev/sda Samsung SSD (100.0GiB)"."""
        size_str = f"{self.size_gib:.1f}GiB"
        if self.model:
            return f"{self.path} {self.model.strip()} ({size_str})"
        return f"{self.path} ({size_str})"


# ==============================================================================
# Pipeline Domain
# ==============================================================================


class StageStatus(Enum):
    """Status of a stage for one plan hash."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class StageRecord:
    """One append-only ledger entry."""

    stage_name: str
    plan_hash: str
    status: StageStatus
    timestamp: str = field(default_factory=lambda: utc_timestamp())
    error: str | None = None
    detail: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "stage": self.stage_name,
            "plan_hash": self.plan_hash,
            "status": self.status.value,
            "timestamp": self.timestamp,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.detail:
            data["detail"] = self.detail
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StageRecord:
        """Convert a decoded ledger line to a record.

        Raises:
            KeyError: If stage, plan_hash or status is missing
            ValueError: If status is not a known StageStatus value
        """
        return cls(
            stage_name=data["stage"],
            plan_hash=data["plan_hash"],
            status=StageStatus(data["status"]),
            timestamp=data.get("timestamp") or utc_timestamp(),
            error=data.get("error"),
            detail=dict(data.get("detail") or {}),
        )


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# ==============================================================================
# Install Answers
# ==============================================================================


@dataclass(frozen=True)
class InstallConfig:
    """Validated install answers for one run.

    Passwords live only in memory: they are excluded from repr and from
    every serialised form.
    """

    hostname: str
    username: str
    timezone: str
    keymap: str
    locale: str
    package_set: tuple[str, ...]
    services: tuple[str, ...] = ("NetworkManager",)
    enable_bluetooth: bool = False
    root_password: str = field(default="", repr=False)
    user_password: str = field(default="", repr=False)

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "hostname": self.hostname,
            "username": self.username,
            "timezone": self.timezone,
            "keymap": self.keymap,
            "locale": self.locale,
            "package_set": list(self.package_set),
            "services": list(self.services),
            "enable_bluetooth": self.enable_bluetooth,
        }
