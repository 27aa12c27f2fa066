"""Tests for pipeline/stages.py - stage actions and their wiring."""

from dataclasses import replace
from unittest.mock import Mock, call, patch

import pytest

from arch_bootstrap.pipeline.stages import (
    PipelineState,
    StageContext,
    default_stages,
    run_bootstrap,
    run_checks,
    run_configure,
    run_format,
    run_mount,
    run_partition,
    run_unmount,
    run_wipe,
)
from arch_bootstrap.storage.exceptions import (
    ConfigError,
    PlanConflictError,
    StageTimeoutError,
)
from tests.conftest import make_inspector


def make_context(plan, config=None, **kwargs):
    kwargs.setdefault("inspector", make_inspector())
    return StageContext(
        plan=plan,
        config=config,
        mount_root="/mnt",
        wipe_bytes=100 * 1024**2,
        probe=Mock(),
        **kwargs,
    )


class TestDefaultStages:
    """Tests for default_stages()."""

    def test_order_and_states(self):
        stages = default_stages()

        assert [stage.name for stage in stages] == [
            "checks", "wipe", "partition", "format", "mount", "bootstrap", "configure", "unmount",
        ]
        assert [stage.reaches for stage in stages] == [
            PipelineState.CHECKS_PASSED,
            PipelineState.WIPED,
            PipelineState.PARTITIONED,
            PipelineState.FORMATTED,
            PipelineState.MOUNTED,
            PipelineState.BASE_INSTALLED,
            PipelineState.CONFIGURED,
            PipelineState.UNMOUNTED,
        ]

    def test_flags(self):
        stages = {stage.name: stage for stage in default_stages()}

        assert {name for name, s in stages.items() if s.destructive} == {
            "wipe", "partition", "format",
        }
        assert {name for name, s in stages.items() if s.retry_eligible} == {"checks", "bootstrap"}
        assert {name for name, s in stages.items() if s.ephemeral} == {"checks", "mount"}

    def test_every_mutating_stage_is_verified(self):
        unverified = [stage.name for stage in default_stages() if stage.verify is None]

        assert unverified == ["checks"]


class TestStageContext:
    """Tests for StageContext time budgets."""

    def test_no_timeout(self, uefi_plan):
        ctx = make_context(uefi_plan)

        assert ctx.remaining() is None
        assert ctx.time_left() is None

    def test_budget_counts_down(self, uefi_plan):
        clock = Mock(side_effect=[100.0, 130.0])
        ctx = make_context(uefi_plan, timeout=60, clock=clock)

        assert ctx.remaining() == 30.0

    def test_exhausted_budget(self, uefi_plan):
        clock = Mock(side_effect=[100.0, 161.0])
        ctx = make_context(uefi_plan, stage_name="bootstrap", timeout=60, clock=clock)

        with pytest.raises(StageTimeoutError, match="bootstrap"):
            ctx.remaining()

    def test_require_config(self, uefi_plan):
        with pytest.raises(ConfigError):
            make_context(uefi_plan).require_config()


class TestChecks:
    """Tests for run_checks()."""

    @patch("arch_bootstrap.pipeline.stages.system")
    def test_runs_all_checks(self, mock_system, uefi_plan):
        ctx = make_context(uefi_plan)

        run_checks(ctx)

        ctx.inspector.inspect.assert_called_once_with("/dev/sda", timeout=None)
        mock_system.check_boot_mode.assert_called_once_with(uefi_plan.boot_mode)
        mock_system.check_clock_sync.assert_called_once()
        ctx.probe.check.assert_called_once()

    @patch("arch_bootstrap.pipeline.stages.system")
    def test_device_size_changed(self, mock_system, uefi_plan):
        ctx = make_context(uefi_plan, inspector=make_inspector(size_bytes=50 * 1024**3))

        with pytest.raises(PlanConflictError):
            run_checks(ctx)

        ctx.probe.check.assert_not_called()


class TestDestructiveStages:
    """wipe, partition and format release the device first."""

    @patch("arch_bootstrap.pipeline.stages.partition")
    @patch("arch_bootstrap.pipeline.stages.mount")
    def test_wipe(self, mock_mount, mock_partition, uefi_plan):
        run_wipe(make_context(uefi_plan))

        mock_mount.release_device.assert_called_once_with(uefi_plan, "/mnt", timeout=None)
        mock_partition.wipe_device.assert_called_once_with(
            "/dev/sda", uefi_plan.device_size_bytes, wipe_bytes=100 * 1024**2, timeout=None
        )

    @patch("arch_bootstrap.pipeline.stages.partition")
    @patch("arch_bootstrap.pipeline.stages.mount")
    def test_partition(self, mock_mount, mock_partition, uefi_plan):
        run_partition(make_context(uefi_plan))

        mock_mount.release_device.assert_called_once()
        mock_partition.write_partition_table.assert_called_once_with(uefi_plan, timeout=None)

    @patch("arch_bootstrap.pipeline.stages.formatter")
    @patch("arch_bootstrap.pipeline.stages.mount")
    def test_format_every_partition(self, mock_mount, mock_formatter, uefi_plan):
        run_format(make_context(uefi_plan))

        assert mock_formatter.format_partition.call_args_list == [
            call(spec, "/dev/sda", timeout=None) for spec in uefi_plan.partitions
        ]


class TestMountStages:
    """Tests for run_mount() and run_unmount()."""

    @patch("arch_bootstrap.pipeline.stages.mount")
    def test_mount(self, mock_mount, uefi_plan):
        run_mount(make_context(uefi_plan))

        mock_mount.mount_plan.assert_called_once_with(uefi_plan, "/mnt", timeout=None)

    @patch("arch_bootstrap.pipeline.stages.mount")
    def test_unmount_turns_swap_off_first(self, mock_mount, uefi_plan):
        mock_mount.swap_partition.return_value = "/dev/sda2"

        run_unmount(make_context(uefi_plan))

        assert mock_mount.mock_calls[1:] == [
            call.deactivate_swap("/dev/sda2", timeout=None),
            call.unmount_tree("/mnt", timeout=None),
        ]

    @patch("arch_bootstrap.pipeline.stages.mount")
    def test_unmount_without_swap(self, mock_mount, uefi_plan):
        mock_mount.swap_partition.return_value = None

        run_unmount(make_context(uefi_plan))

        mock_mount.deactivate_swap.assert_not_called()


class TestSystemStages:
    """Tests for run_bootstrap() and run_configure()."""

    @patch("arch_bootstrap.pipeline.stages.system")
    @patch("arch_bootstrap.pipeline.stages.bootstrap")
    def test_bootstrap(self, mock_bootstrap, mock_system, uefi_plan, install_config):
        mock_system.detect_microcode.return_value = "intel-ucode"
        mock_bootstrap.resolve_packages.return_value = ["base", "linux"]

        run_bootstrap(make_context(uefi_plan, install_config))

        mock_bootstrap.resolve_packages.assert_called_once_with(
            install_config, uefi_plan.boot_mode, microcode="intel-ucode"
        )
        mock_bootstrap.run_pacstrap.assert_called_once_with("/mnt", ["base", "linux"], timeout=None)

    @patch("arch_bootstrap.pipeline.stages.bootstrap")
    def test_bootstrap_needs_answers(self, mock_bootstrap, uefi_plan):
        with pytest.raises(ConfigError):
            run_bootstrap(make_context(uefi_plan))

        mock_bootstrap.run_pacstrap.assert_not_called()

    @patch("arch_bootstrap.pipeline.stages.chroot")
    @patch("arch_bootstrap.pipeline.stages.bootstrap")
    def test_configure(self, mock_bootstrap, mock_chroot, bios_plan, install_config):
        run_configure(make_context(bios_plan, replace(install_config, enable_bluetooth=True)))

        mock_bootstrap.generate_fstab.assert_called_once_with("/mnt", timeout=None)
        args = mock_chroot.run_configure.call_args[0]
        assert args[0] == "/mnt"
        assert args[2] == bios_plan.boot_mode
        assert args[3] == "/dev/sda"
