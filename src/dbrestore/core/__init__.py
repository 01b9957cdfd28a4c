"""Core framework components for the DB Restore CLI."""

from dbrestore.core.exceptions import (
    DBRestoreError,
    ConfigurationError,
    ValidationError,
    PrerequisiteError,
    ExecutionError,
    ExtractionError,
    RestoreError,
    VerificationError,
    PostgresError,
    StorageError,
    IntegrationError,
)

from dbrestore.core.context import ExecutionContext, create_context
from dbrestore.core.output import console, Console, Verbosity
from dbrestore.core.config import AppConfig, CloudSelection, ToolConfig
from dbrestore.core.audit import AuditLogger, AuditEvent, AuditEventType, AuditResult, get_audit_logger
from dbrestore.core.executor import CommandExecutor, CommandResult
from dbrestore.core.workspace import RestoreWorkspace

__all__ = [
    # Exceptions
    "DBRestoreError",
    "ConfigurationError",
    "ValidationError",
    "PrerequisiteError",
    "ExecutionError",
    "ExtractionError",
    "RestoreError",
    "VerificationError",
    "PostgresError",
    "StorageError",
    "IntegrationError",
    # Context
    "ExecutionContext",
    "create_context",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Config
    "AppConfig",
    "CloudSelection",
    "ToolConfig",
    # Audit
    "AuditLogger",
    "AuditEvent",
    "AuditEventType",
    "AuditResult",
    "get_audit_logger",
    # Executor
    "CommandExecutor",
    "CommandResult",
    # Workspace
    "RestoreWorkspace",
]
