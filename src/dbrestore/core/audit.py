"""Audit trail of restore runs.

Every event is one JSON line in ~/.db-restore/audit.log. Events of one
restore share a ``run_id``; events of one CLI invocation share a
``session_id``. Keys that look like secrets are redacted before writing.

Writing is best-effort: a failure shows up at debug level and never
interrupts a restore.
"""

import fcntl
import getpass
import json
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Generator, Optional

from dbrestore.core.config import DEFAULT_CONFIG_DIR
from dbrestore.core.output import console


DEFAULT_LOG_PATH = DEFAULT_CONFIG_DIR / "audit.log"
DEFAULT_MAX_SIZE_MB = 20
DEFAULT_BACKUP_COUNT = 5

REDACTED = "***REDACTED***"
SENSITIVE_KEYS = ("password", "passwd", "secret", "token", "credential", "access_key")


class AuditEventType(Enum):
    """What happened."""
    SESSION_START = "session.start"
    SESSION_END = "session.end"
    BACKUP_DOWNLOAD = "backup.download"
    BACKUP_EXTRACT = "backup.extract"
    DATABASE_CREATE = "database.create"
    DATABASE_DROP = "database.drop"
    RESTORE_START = "restore.start"
    RESTORE_ATTEMPT = "restore.attempt"
    OWNERSHIP_FIX = "restore.ownership_fix"
    VERIFY = "restore.verify"
    RESTORE_COMPLETE = "restore.complete"
    DBEAVER_REGISTER = "dbeaver.register"


class AuditResult(Enum):
    """How it ended."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"
    CANCELLED = "cancelled"


def redact(details: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``details`` with secret-looking keys masked, recursively."""
    clean: dict[str, Any] = {}
    for key, value in details.items():
        if any(s in key.lower() for s in SENSITIVE_KEYS):
            clean[key] = REDACTED
        elif isinstance(value, dict):
            clean[key] = redact(value)
        else:
            clean[key] = value
    return clean


def _username() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


@dataclass
class AuditEvent:
    """One line of the audit trail."""

    event_type: AuditEventType
    result: AuditResult
    database: Optional[str] = None
    backup: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    user: str = field(default_factory=_username)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: Optional[str] = None
    run_id: Optional[str] = None

    def to_json(self) -> str:
        record = {
            "timestamp": self.timestamp.isoformat(),
            "event": self.event_type.value,
            "result": self.result.value,
            "user": self.user,
            "database": self.database,
            "backup": self.backup,
            "details": redact(self.details),
            "error": self.error,
            "session_id": self.session_id,
            "run_id": self.run_id,
        }
        return json.dumps(record, default=str)


class AuditLogger:
    """Appends AuditEvents to a locked, size-rotated JSON-lines file.

    Usage:
        audit = get_audit_logger()
        with audit.restore_run():
            audit.success(AuditEventType.RESTORE_START, database="app_2024_01_15")
    """

    def __init__(
        self,
        log_path: Optional[Path] = None,
        max_size_mb: int = DEFAULT_MAX_SIZE_MB,
        backup_count: int = DEFAULT_BACKUP_COUNT,
        enabled: bool = True,
    ) -> None:
        self.log_path = log_path or DEFAULT_LOG_PATH
        self.max_size_bytes = max_size_mb * 1024 * 1024
        self.backup_count = backup_count
        self.enabled = enabled
        self.session_id = uuid.uuid4().hex
        self.run_id: Optional[str] = None

    @contextmanager
    def restore_run(self) -> Generator[str, None, None]:
        """Tag every event inside the block with a fresh run id."""
        self.run_id = f"restore_{uuid.uuid4().hex[:12]}"
        try:
            yield self.run_id
        finally:
            self.run_id = None

    def log(self, event: AuditEvent) -> None:
        if not self.enabled:
            return
        event.session_id = self.session_id
        event.run_id = self.run_id
        try:
            self._append(event.to_json() + "\n")
            self._rotate_if_needed()
        except OSError as e:
            console.debug(f"Audit log not written: {e}")

    def record(
        self,
        event_type: AuditEventType,
        result: AuditResult,
        *,
        database: Optional[str] = None,
        backup: Optional[str] = None,
        error: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Log one event; extra keyword arguments land in ``details``."""
        self.log(AuditEvent(
            event_type=event_type,
            result=result,
            database=database,
            backup=backup,
            details=details,
            error=error,
        ))

    def success(self, event_type: AuditEventType, **kwargs: Any) -> None:
        self.record(event_type, AuditResult.SUCCESS, **kwargs)

    def failure(self, event_type: AuditEventType, error: str, **kwargs: Any) -> None:
        self.record(event_type, AuditResult.FAILURE, error=error, **kwargs)

    def session_started(self, command: str, args: list[str]) -> None:
        self.record(AuditEventType.SESSION_START, AuditResult.SUCCESS, command=command, args=args)

    def session_ended(self, exit_code: int) -> None:
        result = {0: AuditResult.SUCCESS, 130: AuditResult.CANCELLED}.get(exit_code, AuditResult.FAILURE)
        self.record(AuditEventType.SESSION_END, result, exit_code=exit_code)

    def _append(self, line: str) -> None:
        self.log_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        with open(self.log_path, "a", encoding="utf-8") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.write(line)
                f.flush()
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        self.log_path.chmod(0o600)

    def _rotate_if_needed(self) -> None:
        if self.log_path.stat().st_size <= self.max_size_bytes:
            return
        # audit.log -> audit.log.1 -> ... -> audit.log.N (dropped)
        rotated = [self.log_path.with_name(f"{self.log_path.name}.{i}") for i in range(1, self.backup_count + 1)]
        rotated[-1].unlink(missing_ok=True)
        for older, newer in zip(reversed(rotated), reversed(rotated[:-1])):
            if newer.exists():
                newer.rename(older)
        self.log_path.rename(rotated[0])


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Process-wide audit logger, created on first use."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def configure_audit_logger(
    log_path: Optional[Path] = None,
    enabled: bool = True,
) -> AuditLogger:
    """Replace the process-wide audit logger."""
    global _audit_logger
    _audit_logger = AuditLogger(log_path=log_path, enabled=enabled)
    return _audit_logger
