"""Database and service names derived from backup files."""

import re
from datetime import date
from pathlib import PurePosixPath
from typing import Optional

from dbrestore.core.validation import sanitize_database_name
from dbrestore.services.dumpfile import BACKUP_SUFFIXES


# Trailing tokens stripped from a local file name, applied in order
_SERVICE_SUFFIX_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE) for p in (
        r"[-_]\d{4}[-_]\d{2}[-_]\d{2}.*$",  # -2024-01-15..., _2024_01_15...
        r"[-_]\d{14}.*$",  # timestamp
        r"[-_]\d{8}.*$",  # 20240115
        r"[-_]backup.*$",
        r"[-_]dump.*$",
    )
)

_DASHED_DATE = re.compile(r"(\d{4})-(\d{2})-(\d{2})")
_COMPACT_DATE = re.compile(r"(?<!\d)(\d{4})(\d{2})(\d{2})(?!\d)")

UNKNOWN_SERVICE = "unknown_service"


def strip_backup_suffix(filename: str) -> str:
    """Remove a recognized backup suffix (compound suffixes first)."""
    lower = filename.lower()
    for suffix in BACKUP_SUFFIXES:
        if lower.endswith(suffix):
            return filename[: -len(suffix)]
    return PurePosixPath(filename).stem


def service_from_filename(filename: str) -> str:
    """Guess the service a local dump belongs to.

    Example:
        >>> service_from_filename("billing-api_2024-01-15_0300.tar.gz")
        'billing-api'
    """
    name = strip_backup_suffix(PurePosixPath(filename).name)
    for pattern in _SERVICE_SUFFIX_PATTERNS:
        name = pattern.sub("", name)
    return name or UNKNOWN_SERVICE


def backup_date(key: str) -> Optional[date]:
    """Date embedded in a backup key as YYYY-MM-DD or YYYYMMDD."""
    name = PurePosixPath(key).name
    for pattern in (_DASHED_DATE, _COMPACT_DATE):
        match = pattern.search(name)
        if match is None:
            continue
        try:
            return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        except ValueError:
            continue
    return None


def dated_database_name(
    service: str,
    *,
    environment: Optional[str] = None,
    on: Optional[date] = None,
) -> str:
    """Build the default database name for a restore.

    ``{env}_{service}_{YYYY_MM_DD}`` for cloud backups and
    ``{service}_local_{YYYY_MM_DD}`` for local files. The result is
    always a valid PostgreSQL identifier.

    Args:
        service: Service name (S3 prefix or guessed from a file name)
        environment: dev/stage/prod for cloud backups, None for local files
        on: Backup date; defaults to today
    """
    stamp = (on or date.today()).strftime("%Y_%m_%d")
    if environment:
        raw = f"{environment}_{service}_{stamp}"
    else:
        raw = f"{service}_local_{stamp}"
    return sanitize_database_name(raw)
