"""Install pipeline stage definitions.

Each stage pairs an action with an independent verification. The executor
writes a Running record before the action and a Done record only once the
verification passes.

    Stage       Reaches          Flags
    checks      ChecksPassed     retry-eligible, ephemeral
    wipe        Wiped            destructive
    partition   Partitioned      destructive
    format      Formatted        destructive
    mount       Mounted          ephemeral
    bootstrap   BaseInstalled    retry-eligible
    configure   Configured
    unmount     Unmounted

Ephemeral stages leave nothing behind once the process exits, so a resumed
run applies them again whenever a later stage still has work to do.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from arch_bootstrap.domain.models import InstallConfig, PartitionPlan
from arch_bootstrap.services import bootstrap, chroot, system
from arch_bootstrap.services.network import NetworkProbe
from arch_bootstrap.storage import format as formatter
from arch_bootstrap.storage import mount, partition
from arch_bootstrap.storage.devices import DeviceInspector
from arch_bootstrap.storage.exceptions import (
    ConfigError,
    PlanConflictError,
    StageTimeoutError,
)


class PipelineState(Enum):
    INIT = "Init"
    CHECKS_PASSED = "ChecksPassed"
    WIPED = "Wiped"
    PARTITIONED = "Partitioned"
    FORMATTED = "Formatted"
    MOUNTED = "Mounted"
    BASE_INSTALLED = "BaseInstalled"
    CONFIGURED = "Configured"
    UNMOUNTED = "Unmounted"
    FAILED = "Failed"


@dataclass
class StageContext:
    """Everything a stage action needs, with the stage's time budget."""

    plan: PartitionPlan
    config: Optional[InstallConfig]
    mount_root: str
    wipe_bytes: int
    probe: NetworkProbe
    inspector: DeviceInspector
    stage_name: str = ""
    timeout: Optional[float] = None
    clock: Callable[[], float] = time.monotonic
    deadline: Optional[float] = field(default=None, init=False)

    def __post_init__(self) -> None:
        if self.timeout is not None:
            self.deadline = self.clock() + self.timeout

    def time_left(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - self.clock()

    def remaining(self) -> Optional[float]:
        """Budget for the next subprocess.

        Raises:
            StageTimeoutError: If the stage deadline has passed
        """
        left = self.time_left()
        if left is None:
            return None
        if left <= 0:
            raise StageTimeoutError(self.stage_name, self.timeout or 0)
        return left

    def require_config(self) -> InstallConfig:
        if self.config is None:
            raise ConfigError(f"Stage {self.stage_name} needs install answers")
        return self.config


@dataclass(frozen=True)
class Stage:
    name: str
    reaches: PipelineState
    action: Callable[[StageContext], None]
    verify: Optional[Callable[[StageContext], None]] = None
    destructive: bool = False
    retry_eligible: bool = False
    ephemeral: bool = False


# ---------------------------------------------------------------------------
# checks
# ---------------------------------------------------------------------------


def run_checks(ctx: StageContext) -> None:
    plan = ctx.plan
    device = ctx.inspector.inspect(plan.device_path, timeout=ctx.remaining())
    if device.size_bytes != plan.device_size_bytes:
        raise PlanConflictError(
            f"{plan.device_path} is {device.size_bytes} bytes, plan was built for "
            f"{plan.device_size_bytes}"
        )
    system.check_boot_mode(plan.boot_mode)
    system.check_clock_sync(timeout=ctx.remaining())
    ctx.probe.check()


# ---------------------------------------------------------------------------
# wipe / partition / format
# ---------------------------------------------------------------------------


def run_wipe(ctx: StageContext) -> None:
    mount.release_device(ctx.plan, ctx.mount_root, timeout=ctx.remaining())
    partition.wipe_device(
        ctx.plan.device_path,
        ctx.plan.device_size_bytes,
        wipe_bytes=ctx.wipe_bytes,
        timeout=ctx.remaining(),
    )


def verify_wipe(ctx: StageContext) -> None:
    partition.verify_wiped(ctx.plan.device_path, timeout=ctx.remaining())


def run_partition(ctx: StageContext) -> None:
    mount.release_device(ctx.plan, ctx.mount_root, timeout=ctx.remaining())
    partition.write_partition_table(ctx.plan, timeout=ctx.remaining())


def verify_partition(ctx: StageContext) -> None:
    partition.verify_partition_table(ctx.plan, timeout=ctx.remaining())


def run_format(ctx: StageContext) -> None:
    mount.release_device(ctx.plan, ctx.mount_root, timeout=ctx.remaining())
    for spec in ctx.plan.partitions:
        formatter.format_partition(spec, ctx.plan.device_path, timeout=ctx.remaining())


def verify_format(ctx: StageContext) -> None:
    formatter.verify_formatted(ctx.plan, timeout=ctx.remaining())


# ---------------------------------------------------------------------------
# mount / unmount
# ---------------------------------------------------------------------------


def run_mount(ctx: StageContext) -> None:
    mount.mount_plan(ctx.plan, ctx.mount_root, timeout=ctx.remaining())


def verify_mount(ctx: StageContext) -> None:
    mount.verify_mounted(ctx.plan, ctx.mount_root)


def run_unmount(ctx: StageContext) -> None:
    swap = mount.swap_partition(ctx.plan)
    if swap:
        mount.deactivate_swap(swap, timeout=ctx.remaining())
    mount.unmount_tree(ctx.mount_root, timeout=ctx.remaining())


def verify_unmount(ctx: StageContext) -> None:
    mount.verify_unmounted(ctx.plan, ctx.mount_root)


# ---------------------------------------------------------------------------
# bootstrap / configure
# ---------------------------------------------------------------------------


def run_bootstrap(ctx: StageContext) -> None:
    config = ctx.require_config()
    packages = bootstrap.resolve_packages(
        config, ctx.plan.boot_mode, microcode=system.detect_microcode()
    )
    bootstrap.run_pacstrap(ctx.mount_root, packages, timeout=ctx.remaining())


def verify_bootstrap(ctx: StageContext) -> None:
    bootstrap.verify_base_installed(ctx.mount_root)


def run_configure(ctx: StageContext) -> None:
    config = ctx.require_config()
    bootstrap.generate_fstab(ctx.mount_root, timeout=ctx.remaining())
    chroot.run_configure(
        ctx.mount_root,
        config,
        ctx.plan.boot_mode,
        ctx.plan.device_path,
        timeout=ctx.remaining(),
    )


def verify_configure(ctx: StageContext) -> None:
    chroot.verify_configured(ctx.mount_root, ctx.require_config())


def default_stages() -> list[Stage]:
    """The install pipeline in dependency order."""
    return [
        Stage("checks", PipelineState.CHECKS_PASSED, run_checks,
              retry_eligible=True, ephemeral=True),
        Stage("wipe", PipelineState.WIPED, run_wipe, verify_wipe, destructive=True),
        Stage("partition", PipelineState.PARTITIONED, run_partition, verify_partition,
              destructive=True),
        Stage("format", PipelineState.FORMATTED, run_format, verify_format, destructive=True),
        Stage("mount", PipelineState.MOUNTED, run_mount, verify_mount, ephemeral=True),
        Stage("bootstrap", PipelineState.BASE_INSTALLED, run_bootstrap, verify_bootstrap,
              retry_eligible=True),
        Stage("configure", PipelineState.CONFIGURED, run_configure, verify_configure),
        Stage("unmount", PipelineState.UNMOUNTED, run_unmount, verify_unmount),
    ]

