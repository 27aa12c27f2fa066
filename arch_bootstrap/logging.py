from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "ARCH_BOOTSTRAP_LOG_DIR",
        Path.home() / ".local" / "state" / "arch-bootstrap" / "logs",
    )
)


def _should_log_command_output(record) -> bool:
    """Command stdout/stderr echoes are DEBUG noise on the console."""
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "command-output" in tags:
        return record["level"].no <= logger.level("DEBUG").no

    return True


def _should_log_retry_wait(record) -> bool:
    """Backoff sleeps are only interesting when tracing."""
    message = record["message"].lower()

    if "backing off" in message:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all console suppression rules."""
    return _should_log_command_output(record) and _should_log_retry_wait(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Stage failures, unsafe devices, corrupt ledger
    - SUCCESS/INFO: Stage transitions, plan adoption, cleanup results
    - DEBUG: Command lines and their output
    - TRACE: Retry backoff timing

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/arch-bootstrap/logs)
    """
    logger.remove()
    logger.configure(extra={"plan": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - User-facing, filtered
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[plan]: <12} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[plan]: <12} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    plan: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        plan: Short plan hash the messages belong to
        tags: Tags for filtering (e.g., ["partition", "storage"])
        source: Source component (e.g., "pipeline", "ledger")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if plan is not None:
        extras["plan"] = plan
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Automatically logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "partition", "bootstrap")
        **details: Operation-specific details to log

    Yields:
        Logger bound with the operation context

    Example:
        with operation_context("format", device="/dev/sda") as log:
            log.debug("Formatting root")
    """
    op_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(op_id=op_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, tags=[operation])

        log.info(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except BaseException as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the domain.
    """

    @staticmethod
    def for_plan() -> Logger:
        """Logger for layout arithmetic and plan building."""
        return logger.bind(source="plan", tags=["plan", "storage"])

    @staticmethod
    def for_device() -> Logger:
        """Logger for block device inspection and mutation."""
        return logger.bind(source="device", tags=["device", "storage"])

    @staticmethod
    def for_command() -> Logger:
        """Logger for external command execution."""
        return logger.bind(source="command", tags=["command"])

    @staticmethod
    def for_pipeline(plan_hash: str | None = None) -> Logger:
        """Logger for stage execution."""
        return logger.bind(
            source="pipeline",
            tags=["pipeline"],
            plan=(plan_hash or "-")[:12],
        )

    @staticmethod
    def for_ledger() -> Logger:
        """Logger for the progress ledger."""
        return logger.bind(source="ledger", tags=["ledger"])

    @staticmethod
    def for_network() -> Logger:
        """Logger for reachability probing."""
        return logger.bind(source="network", tags=["network"])

    @staticmethod
    def for_bootstrap() -> Logger:
        """Logger for package bootstrap and chroot configuration."""
        return logger.bind(source="bootstrap", tags=["bootstrap", "chroot"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for host checks, startup and configuration."""
        return logger.bind(source="system", tags=["system"])


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging pipeline events with consistent
    structure and fields.
    """

    @staticmethod
    def log_stage_transition(
        log: Logger, stage: str, status: str, **extra
    ) -> None:
        """Log a stage status change."""
        log.info(
            f"Stage {stage} -> {status}",
            event_type="stage_transition",
            stage=stage,
            status=status,
            **extra,
        )

    @staticmethod
    def log_stage_skipped(log: Logger, stage: str, **extra) -> None:
        """Log a stage skipped because the ledger already has it done."""
        log.info(
            f"Stage {stage} already done, skipping",
            event_type="stage_skipped",
            stage=stage,
            **extra,
        )

    @staticmethod
    def log_retry(
        log: Logger, operation: str, attempt: int, attempts: int, delay: float, error: str
    ) -> None:
        """Log a failed attempt that will be retried."""
        log.warning(
            "{operation} attempt {attempt}/{attempts} failed: {error}",
            event_type="retry",
            error=error,
            operation=operation,
            attempt=attempt,
            attempts=attempts,
            delay_seconds=round(delay, 2),
        )
