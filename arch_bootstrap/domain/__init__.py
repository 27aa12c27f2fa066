"""Domain models for disk provisioning and system bootstrap.

This package contains the immutable value objects shared by the planner,
the pipeline and the CLI.
"""

from __future__ import annotations

from .models import (
    GIB,
    MIB,
    REMAINING,
    BootMode,
    DeviceInfo,
    Filesystem,
    InstallConfig,
    PartitionFlag,
    PartitionPlan,
    PartitionSpec,
    Role,
    SizeRequest,
    StageRecord,
    StageStatus,
)


__all__ = [
    "GIB",
    "MIB",
    "REMAINING",
    "BootMode",
    "DeviceInfo",
    "Filesystem",
    "InstallConfig",
    "PartitionFlag",
    "PartitionPlan",
    "PartitionSpec",
    "Role",
    "SizeRequest",
    "StageRecord",
    "StageStatus",
]
