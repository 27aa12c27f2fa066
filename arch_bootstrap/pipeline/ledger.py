"""Append-only progress ledger.

One JSON object per line:

    {"stage": "partition", "plan_hash": "3f2a...", "status": "running", "timestamp": "..."}

Records are only ever appended; the last record for a (plan hash, stage)
pair wins. A crash mid-append leaves at most one torn (truncated) line,
which the next append terminates with a newline. On load a torn line is
salvaged as a Failed record when its stage and plan hash can still be read,
and dropped otherwise. Any other malformed line means the file was edited
or damaged and raises LedgerError.
"""

from __future__ import annotations

import fcntl
import json
import os
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from arch_bootstrap.domain.models import StageRecord, StageStatus
from arch_bootstrap.logging import LoggerFactory
from arch_bootstrap.storage.exceptions import LedgerError


log = LoggerFactory.for_ledger()

# Pseudo-stage holding the destructive-action confirmation for a plan
PLAN_ADOPTION_STAGE = "plan-adopted"

_TORN_STAGE = re.compile(r'"stage"\s*:\s*"(?P<value>[^"]+)"')
_TORN_HASH = re.compile(r'"plan_hash"\s*:\s*"(?P<value>[0-9a-f]+)"')


class ProgressLedger:
    """Durable stage progress keyed by plan hash."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    @contextmanager
    def _locked(self) -> Iterator:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a+b") as handle:
            log.trace(f"locking exclusive {self.path}")
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield handle
            finally:
                log.trace(f"unlocking {self.path}")
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def append(self, record: StageRecord) -> None:
        """Append one record and fsync it.

        Raises:
            LedgerError: If the ledger cannot be written
        """
        line = json.dumps(record.to_dict(), sort_keys=True) + "\n"
        try:
            with self._locked() as handle:
                handle.seek(0, os.SEEK_END)
                if handle.tell() > 0:
                    handle.seek(-1, os.SEEK_END)
                    if handle.read(1) != b"\n":
                        # terminate a torn line so this record stays parseable
                        handle.write(b"\n")
                handle.write(line.encode("utf-8"))
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as error:
            raise LedgerError(f"Cannot write ledger {self.path}: {error}") from error
        log.debug(
            f"Recorded {record.stage_name} {record.status.value} for {record.plan_hash[:12]}"
        )

    def load(self) -> dict[str, list[StageRecord]]:
        """Read every record, grouped by plan hash in file order.

        Raises:
            LedgerError: If the file is unreadable or holds a line that is
                neither a record nor a torn record
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except (OSError, UnicodeDecodeError) as error:
            raise LedgerError(f"Cannot read ledger {self.path}: {error}") from error

        lines = raw.splitlines()
        records: dict[str, list[StageRecord]] = {}
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            record = self._parse(line, number, is_last=number == len(lines))
            if record is not None:
                records.setdefault(record.plan_hash, []).append(record)
        return records

    def _parse(self, line: str, number: int, is_last: bool) -> Optional[StageRecord]:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            # A torn append is a truncated object; append() later terminates
            # it with a newline, so it may also sit before newer records.
            if is_last or line.lstrip().startswith("{"):
                return self._salvage(line)
            raise LedgerError(f"Corrupt ledger line {number} in {self.path}") from None
        try:
            if not isinstance(data, dict):
                raise ValueError("not an object")
            return StageRecord.from_dict(data)
        except (KeyError, ValueError) as error:
            raise LedgerError(
                f"Invalid record on ledger line {number} in {self.path}: {error}"
            ) from error

    def _salvage(self, line: str) -> Optional[StageRecord]:
        stage = _TORN_STAGE.search(line)
        plan_hash = _TORN_HASH.search(line)
        if not stage or not plan_hash:
            log.warning(f"Dropping unreadable torn ledger line in {self.path}")
            return None
        log.warning(
            f"Treating torn ledger record for {stage.group('value')} as failed"
        )
        return StageRecord(
            stage_name=stage.group("value"),
            plan_hash=plan_hash.group("value"),
            status=StageStatus.FAILED,
            error="incomplete ledger record",
        )

    def records_for(self, plan_hash: str) -> list[StageRecord]:
        return self.load().get(plan_hash, [])

    def latest_for(self, plan_hash: str, stage_name: str) -> Optional[StageRecord]:
        """Last record for the stage under this plan, or None."""
        latest = None
        for record in self.records_for(plan_hash):
            if record.stage_name == stage_name:
                latest = record
        return latest

    def confirmation_for(self, plan_hash: str) -> Optional[StageRecord]:
        record = self.latest_for(plan_hash, PLAN_ADOPTION_STAGE)
        if record and record.status == StageStatus.DONE and record.detail.get("confirmed"):
            return record
        return None
