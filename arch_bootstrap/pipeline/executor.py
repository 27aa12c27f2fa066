"""Resumable stage execution.

The executor walks the stages in order and consults the ledger before each
one, keyed by the plan hash:

    - Done          skip (ephemeral stages re-run while later work remains)
    - Running       the process died mid-stage, run it again from scratch
    - Failed        run it again from scratch
    - no record     run it

A failure halts the pipeline. Only TransientError inside a retry-eligible
stage is retried, and however many attempts it takes the ledger gets one
Running and one Done (or Failed) record for the stage.

Example:
    executor = StageExecutor(plan, ProgressLedger(path), config=config)
    executor.adopt_plan(confirm=lambda plan: True)
    executor.run()
"""

from __future__ import annotations

import time
from typing import Callable, Optional, Sequence

from arch_bootstrap.config.settings import (
    DEFAULT_MOUNT_ROOT,
    DEFAULT_WIPE_BYTES,
    get_setting,
    get_stage_timeout,
)
from arch_bootstrap.domain.models import (
    InstallConfig,
    PartitionPlan,
    StageRecord,
    StageStatus,
)
from arch_bootstrap.logging import EventLogger, LoggerFactory, operation_context
from arch_bootstrap.pipeline.ledger import PLAN_ADOPTION_STAGE, ProgressLedger
from arch_bootstrap.pipeline.retry import NO_RETRY, RetryPolicy, retry_call
from arch_bootstrap.pipeline.stages import (
    PipelineState,
    Stage,
    StageContext,
    default_stages,
)
from arch_bootstrap.services.network import NetworkProbe
from arch_bootstrap.storage import mount
from arch_bootstrap.storage.devices import DeviceInspector
from arch_bootstrap.storage.exceptions import (
    CommandTimeoutError,
    ConfirmationDeclinedError,
    StageFailure,
    StageTimeoutError,
)


CANCELLED_MESSAGE = "cancelled by user"

ProgressCallback = Callable[[str, str], None]


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        attempts=int(get_setting("retry_attempts", 3)),
        base_delay=float(get_setting("retry_base_delay", 2.0)),
        max_delay=float(get_setting("retry_max_delay", 30.0)),
    )


class StageExecutor:
    """Run the install pipeline for one adopted plan."""

    def __init__(
        self,
        plan: PartitionPlan,
        ledger: ProgressLedger,
        config: Optional[InstallConfig] = None,
        stages: Optional[Sequence[Stage]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        mount_root: Optional[str] = None,
        wipe_bytes: Optional[int] = None,
        probe: Optional[NetworkProbe] = None,
        inspector: Optional[DeviceInspector] = None,
        timeouts: Optional[dict[str, float]] = None,
        on_progress: Optional[ProgressCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.plan = plan
        self.ledger = ledger
        self.config = config
        self.stages = list(stages) if stages is not None else default_stages()
        self.retry_policy = retry_policy or default_retry_policy()
        self.mount_root = mount_root or get_setting("mount_root", DEFAULT_MOUNT_ROOT)
        self.wipe_bytes = wipe_bytes or int(get_setting("wipe_bytes", DEFAULT_WIPE_BYTES))
        self.probe = probe or NetworkProbe(
            get_setting("probe_url"), float(get_setting("probe_timeout", 5.0))
        )
        self.inspector = inspector or DeviceInspector()
        self.timeouts = timeouts or {}
        self.on_progress = on_progress
        self.sleep = sleep
        self.clock = clock
        self.state = PipelineState.INIT
        self.log = LoggerFactory.for_pipeline(plan.plan_hash)

    # ------------------------------------------------------------------
    # plan adoption
    # ------------------------------------------------------------------

    def is_confirmed(self) -> bool:
        return self.ledger.confirmation_for(self.plan.plan_hash) is not None

    def adopt_plan(self, confirm: Callable[[PartitionPlan], bool]) -> bool:
        """Record the plan and its destructive-action confirmation once.

        ``confirm`` is only called when this plan hash has never been
        confirmed, so resumed runs do not prompt again.

        Returns:
            True if a new confirmation was recorded

        Raises:
            ConfirmationDeclinedError: If ``confirm`` returns False
        """
        if self.is_confirmed():
            self.log.info(f"Plan {self.plan.short_hash} already confirmed, resuming")
            return False
        if not confirm(self.plan):
            raise ConfirmationDeclinedError(self.plan.device_path)

        self.ledger.append(
            StageRecord(
                stage_name=PLAN_ADOPTION_STAGE,
                plan_hash=self.plan.plan_hash,
                status=StageStatus.DONE,
                detail={
                    "confirmed": True,
                    "device": self.plan.device_path,
                    "boot_mode": self.plan.boot_mode.value,
                    "partitions": len(self.plan.partitions),
                },
            )
        )
        for stage in self.stages:
            if self.ledger.latest_for(self.plan.plan_hash, stage.name) is None:
                self._record(stage, StageStatus.PENDING)
        self.log.success(f"Adopted plan {self.plan.short_hash} for {self.plan.device_path}")
        return True

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------

    def status(self) -> list[tuple[str, StageStatus]]:
        """Latest status of every stage for this plan, in pipeline order."""
        latest = self._latest_statuses()
        return [(stage.name, latest.get(stage.name, StageStatus.PENDING)) for stage in self.stages]

    def _latest_statuses(self) -> dict[str, StageStatus]:
        latest: dict[str, StageStatus] = {}
        for record in self.ledger.records_for(self.plan.plan_hash):
            latest[record.stage_name] = record.status
        return latest

    def _needs_run(self, index: int, latest: dict[str, StageStatus]) -> bool:
        stage = self.stages[index]
        if latest.get(stage.name) != StageStatus.DONE:
            return True
        if stage.ephemeral:
            return any(
                latest.get(later.name) != StageStatus.DONE
                for later in self.stages[index + 1:]
            )
        return False

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

    def run(self) -> PipelineState:
        """Run every stage that still needs to run, then clean up.

        Raises:
            ConfirmationDeclinedError: If a destructive stage must run but the
                plan was never confirmed
            StageFailure: If a stage fails; carries the stage name and cause
            KeyboardInterrupt: If cancelled; the stage is recorded as Failed
        """
        latest = self._latest_statuses()
        pending = [i for i in range(len(self.stages)) if self._needs_run(i, latest)]
        if any(self.stages[i].destructive for i in pending) and not self.is_confirmed():
            raise ConfirmationDeclinedError(self.plan.device_path)

        try:
            for index, stage in enumerate(self.stages):
                if index not in pending:
                    EventLogger.log_stage_skipped(self.log, stage.name)
                    self._progress(stage.name, "skipped")
                    self.state = stage.reaches
                    continue
                self._run_stage(stage)
                self.state = stage.reaches
        except BaseException:
            self.state = PipelineState.FAILED
            raise
        finally:
            self.cleanup()

        self.log.success(f"Pipeline finished for plan {self.plan.short_hash}")
        return self.state

    def _context(self, stage: Stage) -> StageContext:
        timeout = self.timeouts.get(stage.name, get_stage_timeout(stage.name))
        return StageContext(
            plan=self.plan,
            config=self.config,
            mount_root=self.mount_root,
            wipe_bytes=self.wipe_bytes,
            probe=self.probe,
            inspector=self.inspector,
            stage_name=stage.name,
            timeout=timeout,
            clock=self.clock,
        )

    def _run_stage(self, stage: Stage) -> None:
        ctx = self._context(stage)
        policy = self.retry_policy if stage.retry_eligible else NO_RETRY

        self._record(stage, StageStatus.RUNNING)
        self._progress(stage.name, StageStatus.RUNNING.value)
        try:
            with operation_context(stage.name, plan=self.plan.short_hash):
                retry_call(
                    lambda: stage.action(ctx),
                    policy,
                    operation=stage.name,
                    sleep=self.sleep,
                    budget=ctx.time_left,
                )
                if stage.verify is not None:
                    stage.verify(ctx)
        except KeyboardInterrupt:
            self._record(stage, StageStatus.FAILED, error=CANCELLED_MESSAGE)
            self._progress(stage.name, StageStatus.FAILED.value)
            raise
        except Exception as error:
            cause: Exception = error
            if isinstance(error, CommandTimeoutError):
                cause = StageTimeoutError(stage.name, ctx.timeout or 0)
                cause.__cause__ = error
            self._record(
                stage,
                StageStatus.FAILED,
                error=str(cause) or type(cause).__name__,
                detail={"error_type": type(cause).__name__},
            )
            self._progress(stage.name, StageStatus.FAILED.value)
            raise StageFailure(stage.name, cause) from error

        self._record(stage, StageStatus.DONE)
        self._progress(stage.name, StageStatus.DONE.value)

    def _record(
        self,
        stage: Stage,
        status: StageStatus,
        error: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        self.ledger.append(
            StageRecord(
                stage_name=stage.name,
                plan_hash=self.plan.plan_hash,
                status=status,
                error=error,
                detail=detail or {},
            )
        )
        if status != StageStatus.PENDING:
            extra = {"error": error} if error else {}
            EventLogger.log_stage_transition(self.log, stage.name, status.value, **extra)

    def _progress(self, stage_name: str, status: str) -> None:
        if self.on_progress is not None:
            self.on_progress(stage_name, status)

    # ------------------------------------------------------------------
    # cleanup
    # ------------------------------------------------------------------

    def cleanup(self) -> None:
        """Best-effort swapoff and unmount; errors are logged, never raised."""
        swap = mount.swap_partition(self.plan)
        if swap:
            try:
                mount.deactivate_swap(swap)
            except Exception as error:
                self.log.warning(f"Cleanup: could not deactivate swap {swap}: {error}")
        try:
            if mount.mounts_from_device(self.plan, self.mount_root):
                mount.unmount_tree(self.mount_root)
                self.log.info(f"Cleanup: unmounted {self.mount_root}")
        except Exception as error:
            self.log.warning(f"Cleanup: could not unmount {self.mount_root}: {error}")
