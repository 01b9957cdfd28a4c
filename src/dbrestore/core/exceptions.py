"""Custom exceptions for the DB Restore CLI.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging

Every error exits with status 1; the class tells the reader what failed,
not how the shell should react.
"""

from typing import Any, Optional


class DBRestoreError(Exception):
    """Base exception for all db-restore errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional context for debugging
        exit_code: Shell exit code
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or []

    def __str__(self) -> str:
        return self.message


class ConfigurationError(DBRestoreError):
    """Configuration file or settings errors.

    Raised when:
    - Config file unreadable or invalid YAML
    - Environment values fail validation
    - No bucket configured for the selected environment
    """


class ValidationError(DBRestoreError):
    """Input validation errors.

    Raised when:
    - Invalid PostgreSQL identifiers
    - Local dump path missing, empty or not a file
    """


class PrerequisiteError(DBRestoreError):
    """Missing prerequisites.

    Raised when:
    - Required command not found (psql, pg_restore, tar, gunzip)
    - PostgreSQL server not accepting connections
    """


class ExecutionError(DBRestoreError):
    """External command failures.

    Raised when:
    - Shell command returns non-zero exit code
    - SQL statement fails
    """

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr.strip()[:500]}")
        super().__init__(message, hint=hint, details=details)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


class ExtractionError(DBRestoreError):
    """Archive extraction or dump discovery failures.

    Raised when:
    - tar/gunzip exits non-zero
    - No database dump found among the extracted files
    """


class RestoreError(DBRestoreError):
    """Restore failures that could not be remediated.

    Raised when:
    - Restore output matches a fatal pattern
    - Every rung of the alternative-restore ladder failed
    - Dump file vanished or is empty before restore
    """

    def __init__(
        self,
        message: str,
        *,
        category: Optional[str] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if stderr:
            details.append(f"Error output: {stderr.strip()[:500]}")
        super().__init__(message, hint=hint, details=details)
        self.category = category
        self.stderr = stderr


class VerificationError(DBRestoreError):
    """Post-restore verification failures.

    Raised when:
    - Restored database has no tables
    - Basic connectivity to the restored database fails
    """

    def __init__(
        self,
        message: str,
        *,
        report: Optional[Any] = None,
        connectivity: bool = False,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.report = report
        self.connectivity = connectivity


# Domain-specific exceptions

class PostgresError(DBRestoreError):
    """PostgreSQL-specific errors.

    Raised when:
    - Database create/drop fails
    - Catalog query fails where a result is required
    """


class StorageError(DBRestoreError):
    """Cloud storage errors.

    Raised when:
    - AWS profile not found or credentials invalid
    - Bucket not reachable
    - Listing or download fails
    """


class IntegrationError(DBRestoreError):
    """DBeaver integration errors.

    Raised when:
    - data-sources.json is unreadable or not valid JSON
    - Connection entry cannot be written
    """
