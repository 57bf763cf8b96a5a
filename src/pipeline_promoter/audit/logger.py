"""
Audit log writer for Pipeline Promoter.

Provides thread-safe audit logging to date-stamped JSONL files.
"""

import fcntl
import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from .models import AuditEvent, AuditEventType, AuditLevel, AuditResult

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    """Result of a log write operation."""

    success: bool
    event_id: str
    log_file: str
    error: str | None = None
    bytes_written: int = 0


class AuditLogger:
    """
    Thread-safe audit log writer.

    Writes structured audit events to the audit directory with
    date-based filenames (audit_YYYYMMDD.jsonl).
    """

    DEFAULT_AUDIT_DIR = Path("var/audit")
    LOG_PREFIX = "audit_"
    LOG_SUFFIX = ".jsonl"

    def __init__(self, audit_dir: Path | None = None):
        """Initialize the audit logger."""
        self._audit_dir = Path(audit_dir) if audit_dir else self.DEFAULT_AUDIT_DIR
        self._audit_dir.mkdir(parents=True, exist_ok=True)

        self._file_locks: dict[str, threading.Lock] = {}
        self._file_lock = threading.Lock()  # For _file_locks dict access

    @property
    def audit_dir(self) -> Path:
        return self._audit_dir

    def _get_log_file(self, date: datetime | None = None) -> Path:
        """Get the log file path for a specific date."""
        if date is None:
            date = datetime.now(timezone.utc)
        filename = f"{self.LOG_PREFIX}{date.strftime('%Y%m%d')}{self.LOG_SUFFIX}"
        return self._audit_dir / filename

    def _get_file_lock(self, file_path: str) -> threading.Lock:
        """Get or create a file-specific lock for concurrent writes."""
        with self._file_lock:
            if file_path not in self._file_locks:
                self._file_locks[file_path] = threading.Lock()
            return self._file_locks[file_path]

    def log(self, event: AuditEvent) -> WriteResult:
        """
        Append an audit event to today's log file.

        Write failures are reported in the WriteResult and logged; they never
        interrupt the operation being audited.
        """
        log_file = self._get_log_file()
        log_file_str = str(log_file)
        file_lock = self._get_file_lock(log_file_str)

        try:
            log_line = event.to_log_line() + "\n"
            bytes_to_write = len(log_line.encode("utf-8"))

            # Thread lock in-process, flock across processes
            with file_lock:
                with open(log_file, "a", encoding="utf-8") as f:
                    fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                    try:
                        f.write(log_line)
                        f.flush()
                        os.fsync(f.fileno())
                    finally:
                        fcntl.flock(f.fileno(), fcntl.LOCK_UN)

            return WriteResult(
                success=True,
                event_id=event.event_id,
                log_file=log_file_str,
                bytes_written=bytes_to_write,
            )

        except OSError as e:
            logger.warning(f"Failed to write audit event {event.event_id}: {e}")
            return WriteResult(
                success=False,
                event_id=event.event_id,
                log_file=log_file_str,
                error=str(e),
            )

    def record(
        self,
        event_type: AuditEventType,
        action: str,
        *,
        actor: str = "system",
        target: str | None = None,
        result: AuditResult = AuditResult.SUCCESS,
        severity: AuditLevel = AuditLevel.INFO,
        run_id: str | None = None,
        error_message: str | None = None,
        **metadata: Any,
    ) -> WriteResult:
        """Build and log an event in one call."""
        event = AuditEvent(
            event_type=event_type,
            action=action,
            actor=actor,
            target=target,
            result=result,
            severity=severity,
            run_id=run_id,
            error_message=error_message,
            metadata=metadata,
        )
        return self.log(event)

    def read_events(
        self,
        *,
        run_id: str | None = None,
        event_types: Iterable[AuditEventType] | None = None,
        target: str | None = None,
    ) -> list[AuditEvent]:
        """
        Read events back from every log file, oldest first.

        Lines that fail to parse are skipped.
        """
        wanted = set(event_types) if event_types else None
        events = []

        for log_file in sorted(self._audit_dir.glob(f"{self.LOG_PREFIX}*{self.LOG_SUFFIX}")):
            for line in log_file.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    event = AuditEvent(**json.loads(line))
                except (json.JSONDecodeError, ValidationError, TypeError):
                    continue

                if run_id is not None and event.run_id != run_id:
                    continue
                if wanted is not None and event.event_type not in wanted:
                    continue
                if target is not None and event.target != target:
                    continue
                events.append(event)

        return events
