"""Tests for pipeline/executor.py - resumable stage execution.

This test suite covers:
- Full runs and idempotent re-runs
- Resuming after a failure or a crash mid-stage
- Retrying transient failures with a single Done record
- Cancellation and cleanup
- Plan adoption and confirmation
- Plan hash isolation
"""

from unittest.mock import Mock, patch

import pytest

from arch_bootstrap.domain.models import StageRecord, StageStatus
from arch_bootstrap.pipeline.executor import CANCELLED_MESSAGE, StageExecutor
from arch_bootstrap.pipeline.ledger import PLAN_ADOPTION_STAGE
from arch_bootstrap.pipeline.retry import RetryPolicy
from arch_bootstrap.pipeline.stages import PipelineState, Stage
from arch_bootstrap.storage.exceptions import (
    CommandError,
    CommandTimeoutError,
    ConfirmationDeclinedError,
    PackageBootstrapError,
    StageFailure,
    StageTimeoutError,
    VerificationError,
)

STAGE_ORDER = ["checks", "wipe", "partition", "mount", "bootstrap", "unmount"]


@pytest.fixture(autouse=True)
def mock_mount():
    """Cleanup must never touch the real mount table."""
    with patch("arch_bootstrap.pipeline.executor.mount") as mocked:
        mocked.swap_partition.return_value = "/dev/sda2"
        mocked.mounts_from_device.return_value = []
        yield mocked


def build_stages(calls, effects=None, verifies=None):
    """Stand-in pipeline whose actions record their names in ``calls``."""
    effects = effects or {}
    verifies = verifies or {}

    def action_for(name):
        def action(ctx):
            calls.append(name)
            effect = effects.get(name)
            if effect is not None:
                effect(ctx)
        return action

    def stage(name, reaches, **flags):
        return Stage(name, reaches, action_for(name), verifies.get(name), **flags)

    return [
        stage("checks", PipelineState.CHECKS_PASSED, retry_eligible=True, ephemeral=True),
        stage("wipe", PipelineState.WIPED, destructive=True),
        stage("partition", PipelineState.PARTITIONED, destructive=True),
        stage("mount", PipelineState.MOUNTED, ephemeral=True),
        stage("bootstrap", PipelineState.BASE_INSTALLED, retry_eligible=True),
        stage("unmount", PipelineState.UNMOUNTED),
    ]


def make_executor(plan, ledger, calls, effects=None, verifies=None, **kwargs):
    kwargs.setdefault("retry_policy", RetryPolicy(attempts=3, base_delay=1.0))
    kwargs.setdefault("sleep", Mock())
    return StageExecutor(
        plan,
        ledger,
        stages=build_stages(calls, effects, verifies),
        probe=Mock(),
        inspector=Mock(),
        **kwargs,
    )


def statuses(ledger, plan, stage_name):
    return [r.status for r in ledger.records_for(plan.plan_hash) if r.stage_name == stage_name]


def confirm_yes(plan):
    return True


class TestFullRun:
    """A fresh run executes every stage in order."""

    def test_runs_all_stages(self, uefi_plan, ledger):
        calls = []
        executor = make_executor(uefi_plan, ledger, calls)
        executor.adopt_plan(confirm_yes)

        state = executor.run()

        assert calls == STAGE_ORDER
        assert state == PipelineState.UNMOUNTED
        assert all(status == StageStatus.DONE for _, status in executor.status())

    def test_each_stage_records_running_then_done(self, uefi_plan, ledger):
        executor = make_executor(uefi_plan, ledger, [])
        executor.adopt_plan(confirm_yes)

        executor.run()

        assert statuses(ledger, uefi_plan, "wipe") == [
            StageStatus.PENDING, StageStatus.RUNNING, StageStatus.DONE,
        ]

    def test_progress_callback(self, uefi_plan, ledger):
        progress = Mock()
        executor = make_executor(uefi_plan, ledger, [], on_progress=progress)
        executor.adopt_plan(confirm_yes)

        executor.run()

        progress.assert_any_call("checks", "running")
        progress.assert_any_call("unmount", "done")

    def test_verification_runs_after_action(self, uefi_plan, ledger):
        calls = []
        verify = Mock(side_effect=lambda ctx: calls.append("verify-wipe"))
        executor = make_executor(uefi_plan, ledger, calls, verifies={"wipe": verify})
        executor.adopt_plan(confirm_yes)

        executor.run()

        assert calls.index("verify-wipe") == calls.index("wipe") + 1
        assert verify.call_args[0][0].plan is uefi_plan


class TestIdempotentRerun:
    """A second run of a finished plan does nothing."""

    def test_second_run_skips_everything(self, uefi_plan, ledger):
        make_executor(uefi_plan, ledger, []).adopt_plan(confirm_yes)
        make_executor(uefi_plan, ledger, []).run()
        calls = []
        progress = Mock()

        state = make_executor(uefi_plan, ledger, calls, on_progress=progress).run()

        assert calls == []
        assert state == PipelineState.UNMOUNTED
        progress.assert_any_call("wipe", "skipped")

    def test_second_run_appends_no_stage_records(self, uefi_plan, ledger):
        executor = make_executor(uefi_plan, ledger, [])
        executor.adopt_plan(confirm_yes)
        executor.run()
        before = len(ledger.records_for(uefi_plan.plan_hash))

        make_executor(uefi_plan, ledger, []).run()

        assert len(ledger.records_for(uefi_plan.plan_hash)) == before


class TestResume:
    """Interrupted runs continue at the first unfinished stage."""

    def test_resume_after_failure(self, uefi_plan, ledger):
        broken = Mock(side_effect=CommandError(["pacstrap"], 1, "conflicting files"))
        first = make_executor(uefi_plan, ledger, [], effects={"bootstrap": broken})
        first.adopt_plan(confirm_yes)
        with pytest.raises(StageFailure):
            first.run()
        calls = []

        make_executor(uefi_plan, ledger, calls).run()

        assert calls == ["checks", "mount", "bootstrap", "unmount"]

    def test_running_record_is_rerun(self, uefi_plan, ledger):
        """A stage left Running by a crash runs again, after the mounts it needs."""
        executor = make_executor(uefi_plan, ledger, [])
        executor.adopt_plan(confirm_yes)
        executor.run()
        ledger.append(StageRecord("unmount", uefi_plan.plan_hash, StageStatus.RUNNING))
        calls = []

        make_executor(uefi_plan, ledger, calls).run()

        assert calls == ["checks", "mount", "unmount"]

    def test_other_plan_progress_is_ignored(self, uefi_plan, bios_plan, ledger):
        done = make_executor(uefi_plan, ledger, [])
        done.adopt_plan(confirm_yes)
        done.run()
        calls = []
        other = make_executor(bios_plan, ledger, calls)
        other.adopt_plan(confirm_yes)

        other.run()

        assert calls == STAGE_ORDER


class TestRetry:
    """Transient failures inside retry-eligible stages."""

    def test_bootstrap_succeeds_on_third_attempt(self, uefi_plan, ledger):
        flaky = Mock(side_effect=[
            PackageBootstrapError("mirror timeout"),
            PackageBootstrapError("mirror timeout"),
            None,
        ])
        sleep = Mock()
        executor = make_executor(
            uefi_plan, ledger, [], effects={"bootstrap": flaky}, sleep=sleep
        )
        executor.adopt_plan(confirm_yes)

        executor.run()

        assert flaky.call_count == 3
        assert sleep.call_count == 2
        assert statuses(ledger, uefi_plan, "bootstrap") == [
            StageStatus.PENDING, StageStatus.RUNNING, StageStatus.DONE,
        ]

    def test_transient_failure_in_destructive_stage_is_not_retried(self, uefi_plan, ledger):
        flaky = Mock(side_effect=PackageBootstrapError("odd"))
        executor = make_executor(uefi_plan, ledger, [], effects={"wipe": flaky})
        executor.adopt_plan(confirm_yes)

        with pytest.raises(StageFailure):
            executor.run()

        assert flaky.call_count == 1

    def test_retries_exhausted(self, uefi_plan, ledger):
        flaky = Mock(side_effect=PackageBootstrapError("mirror down"))
        executor = make_executor(uefi_plan, ledger, [], effects={"bootstrap": flaky})
        executor.adopt_plan(confirm_yes)

        with pytest.raises(StageFailure) as exc_info:
            executor.run()

        assert flaky.call_count == 3
        assert isinstance(exc_info.value.cause, PackageBootstrapError)
        assert statuses(ledger, uefi_plan, "bootstrap")[-1] == StageStatus.FAILED


class TestFailure:
    """A failing stage halts the pipeline."""

    def test_stage_failure_carries_stage_and_cause(self, uefi_plan, ledger):
        broken = Mock(side_effect=CommandError(["parted"], 1, "unrecognised disk label"))
        calls = []
        executor = make_executor(uefi_plan, ledger, calls, effects={"partition": broken})
        executor.adopt_plan(confirm_yes)

        with pytest.raises(StageFailure) as exc_info:
            executor.run()

        assert exc_info.value.stage_name == "partition"
        assert exc_info.value.exit_code == 5
        assert calls == ["checks", "wipe", "partition"]
        assert executor.state == PipelineState.FAILED
        record = ledger.latest_for(uefi_plan.plan_hash, "partition")
        assert record.status == StageStatus.FAILED
        assert "unrecognised disk label" in record.error
        assert record.detail["error_type"] == "CommandError"

    def test_verification_failure_fails_stage(self, uefi_plan, ledger):
        verify = Mock(side_effect=VerificationError("signatures still present"))
        executor = make_executor(uefi_plan, ledger, [], verifies={"wipe": verify})
        executor.adopt_plan(confirm_yes)

        with pytest.raises(StageFailure):
            executor.run()

        assert ledger.latest_for(uefi_plan.plan_hash, "wipe").status == StageStatus.FAILED

    def test_command_timeout_becomes_stage_timeout(self, uefi_plan, ledger):
        slow = Mock(side_effect=CommandTimeoutError(["pacstrap"], 60))
        executor = make_executor(
            uefi_plan, ledger, [], effects={"bootstrap": slow}, timeouts={"bootstrap": 60}
        )
        executor.adopt_plan(confirm_yes)

        with pytest.raises(StageFailure) as exc_info:
            executor.run()

        assert isinstance(exc_info.value.cause, StageTimeoutError)
        record = ledger.latest_for(uefi_plan.plan_hash, "bootstrap")
        assert record.detail["error_type"] == "StageTimeoutError"


class TestCancellation:
    """Ctrl-C mid-stage."""

    def test_cancel_records_failed_and_cleans_up(self, uefi_plan, ledger, mock_mount):
        interrupted = Mock(side_effect=KeyboardInterrupt)
        executor = make_executor(uefi_plan, ledger, [], effects={"bootstrap": interrupted})
        executor.adopt_plan(confirm_yes)

        with pytest.raises(KeyboardInterrupt):
            executor.run()

        record = ledger.latest_for(uefi_plan.plan_hash, "bootstrap")
        assert record.status == StageStatus.FAILED
        assert record.error == CANCELLED_MESSAGE
        mock_mount.deactivate_swap.assert_called_once_with("/dev/sda2")


class TestCleanup:
    """Tests for StageExecutor.cleanup()."""

    def test_unmounts_device_mounts(self, uefi_plan, ledger, mock_mount):
        mock_mount.mounts_from_device.return_value = ["/mnt"]
        executor = make_executor(uefi_plan, ledger, [], mount_root="/mnt")

        executor.cleanup()

        mock_mount.unmount_tree.assert_called_once_with("/mnt")

    def test_leaves_foreign_mounts_alone(self, uefi_plan, ledger, mock_mount):
        executor = make_executor(uefi_plan, ledger, [])

        executor.cleanup()

        mock_mount.unmount_tree.assert_not_called()

    def test_errors_are_swallowed(self, uefi_plan, ledger, mock_mount):
        mock_mount.deactivate_swap.side_effect = CommandError(["swapoff"], 255)
        mock_mount.mounts_from_device.return_value = ["/mnt"]
        mock_mount.unmount_tree.side_effect = CommandError(["umount"], 32)
        executor = make_executor(uefi_plan, ledger, [])

        executor.cleanup()

    def test_cleanup_runs_after_success(self, uefi_plan, ledger, mock_mount):
        executor = make_executor(uefi_plan, ledger, [])
        executor.adopt_plan(confirm_yes)

        executor.run()

        mock_mount.mounts_from_device.assert_called_once()


class TestAdoption:
    """Plan adoption and destructive-action confirmation."""

    def test_adoption_records_confirmation_and_pending(self, uefi_plan, ledger):
        executor = make_executor(uefi_plan, ledger, [])

        assert executor.adopt_plan(confirm_yes) is True

        record = ledger.confirmation_for(uefi_plan.plan_hash)
        assert record.stage_name == PLAN_ADOPTION_STAGE
        assert record.detail["device"] == "/dev/sda"
        assert executor.status() == [(name, StageStatus.PENDING) for name in STAGE_ORDER]

    def test_confirmation_is_not_requested_again(self, uefi_plan, ledger):
        make_executor(uefi_plan, ledger, []).adopt_plan(confirm_yes)
        confirm = Mock(return_value=True)

        assert make_executor(uefi_plan, ledger, []).adopt_plan(confirm) is False

        confirm.assert_not_called()

    def test_declined(self, uefi_plan, ledger):
        executor = make_executor(uefi_plan, ledger, [])

        with pytest.raises(ConfirmationDeclinedError):
            executor.adopt_plan(lambda plan: False)

        assert ledger.records_for(uefi_plan.plan_hash) == []

    def test_unconfirmed_run_refuses_destructive_stages(self, uefi_plan, ledger):
        calls = []
        executor = make_executor(uefi_plan, ledger, calls)

        with pytest.raises(ConfirmationDeclinedError):
            executor.run()

        assert calls == []
        assert ledger.records_for(uefi_plan.plan_hash) == []

    def test_new_plan_needs_new_confirmation(self, uefi_plan, bios_plan, ledger):
        make_executor(uefi_plan, ledger, []).adopt_plan(confirm_yes)

        assert make_executor(bios_plan, ledger, []).is_confirmed() is False
