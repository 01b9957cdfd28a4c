"""Classification of restore tool output.

psql and pg_restore have no structured error channel, so the outcome of
a restore attempt is decided by matching its output against three named
pattern lists. classify() is pure: same input, same category.

Precedence: fatal > ownership > recoverable. Fatal patterns are only
considered for a non-zero exit and only in stderr.
"""

import re
from enum import Enum


class ErrorCategory(str, Enum):
    """Classified outcome of one restore attempt."""
    NONE = "none"
    RECOVERABLE = "recoverable"
    OWNERSHIP = "ownership"
    GENERAL = "general"
    FATAL = "fatal"


FATAL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE) for p in (
        r"authentication failed",
        r"could not connect to server",
        r"connection refused",
        r'database "[^"]*" does not exist(?!, skipping)',
        r"syntax error at or near",
        r"invalid command",
        r"no such file or directory",
    )
)

OWNERSHIP_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE) for p in (
        r"must be owner of",
        r"permission denied for",
        r'role "[^"]*" does not exist',
        r"must be member of role",
        r"cannot drop owned by",
        r"owner of database",
        r"must be superuser",
    )
)

RECOVERABLE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE) for p in (
        r"already exists",
        r"does not exist, skipping",
        r"multiple primary key",
        r"constraint .* already exists",
        r"duplicate key value",
    )
)


def _matches(text: str, patterns: tuple[re.Pattern[str], ...]) -> bool:
    return any(p.search(text) for p in patterns)


def classify(stderr: str, stdout: str, exit_code: int) -> ErrorCategory:
    """Classify the output of a restore command.

    Args:
        stderr: Captured standard error
        stdout: Captured standard output
        exit_code: Process exit status

    Returns:
        ErrorCategory for the attempt
    """
    stderr = stderr or ""
    combined = f"{stderr}\n{stdout or ''}"

    if exit_code != 0 and _matches(stderr, FATAL_PATTERNS):
        return ErrorCategory.FATAL

    if _matches(combined, OWNERSHIP_PATTERNS):
        return ErrorCategory.OWNERSHIP

    if _matches(combined, RECOVERABLE_PATTERNS):
        return ErrorCategory.RECOVERABLE

    if exit_code != 0:
        return ErrorCategory.GENERAL

    return ErrorCategory.NONE


def error_lines(text: str, limit: int = 5) -> list[str]:
    """First ``limit`` lines that look like errors, for display."""
    lines = [
        line.strip() for line in (text or "").splitlines()
        if "error" in line.lower() or "fatal" in line.lower()
    ]
    return lines[:limit]
