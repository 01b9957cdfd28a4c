"""Backup artifact model and dump format detection.

detect_format() classifies a file as one of the fixed dump formats from
its extension and, failing that, from its first 512 bytes. It has no
side effects and never raises for a file it cannot read: the fallback
format is ``sql``.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from dbrestore.core.output import console


# "PGDMP" - header of pg_dump custom-format archives
PGDMP_MAGIC = b"\x50\x47\x44\x4d\x50"
GZIP_MAGIC = b"\x1f\x8b"
SNIFF_BYTES = 512

# Recognized backup file suffixes, compound suffixes first
BACKUP_SUFFIXES: tuple[str, ...] = (
    ".tar.gz", ".tgz", ".tar", ".gz",
    ".sql", ".dump", ".dmp", ".pg_dump", ".backup", ".bak",
)

# Text that only appears in plain SQL scripts
SQL_MARKERS: tuple[str, ...] = ("--", "CREATE", "INSERT", "SET ", "\\connect", "BEGIN;")

# Member names of a directory-format dump
DIRECTORY_MARKERS: tuple[str, ...] = ("toc.dat", "restore.sql")


class DumpFormat(str, Enum):
    """Restore strategy selector."""
    SQL = "sql"
    CUSTOM = "custom"
    DIRECTORY = "directory"
    UNKNOWN = "unknown"


class SourceKind(str, Enum):
    """Where a backup came from."""
    CLOUD = "cloud"
    LOCAL = "local"


@dataclass(frozen=True)
class BackupArtifact:
    """A selected backup file, downloaded or local. Never mutated."""

    path: Path
    size_bytes: int
    last_modified: datetime
    source_kind: SourceKind
    key: Optional[str] = None  # S3 key for cloud backups

    @classmethod
    def from_path(
        cls,
        path: Path,
        source_kind: SourceKind,
        *,
        key: Optional[str] = None,
        last_modified: Optional[datetime] = None,
    ) -> "BackupArtifact":
        stat = path.stat()
        return cls(
            path=path,
            size_bytes=stat.st_size,
            last_modified=last_modified
            or datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            source_kind=source_kind,
            key=key,
        )

    @property
    def name(self) -> str:
        return self.key.rsplit("/", 1)[-1] if self.key else self.path.name


@dataclass(frozen=True)
class DetectedDump:
    """The one dump file chosen for restore.

    priority: lower is more preferred (1 = .sql ... 10 = name-only guess)
    """

    path: Path
    format: DumpFormat
    priority: int
    size_bytes: int


def is_backup_file(name: str) -> bool:
    """Check whether a file or key name has a recognized backup suffix."""
    lower = name.lower()
    return any(lower.endswith(suffix) for suffix in BACKUP_SUFFIXES)


def read_prefix(path: Path, size: int = SNIFF_BYTES) -> bytes:
    """Read the first ``size`` bytes of a file."""
    with open(path, "rb") as f:
        return f.read(size)


def has_gzip_magic(path: Path) -> bool:
    """Check for the gzip header. Unreadable files are not gzip."""
    try:
        return read_prefix(path, len(GZIP_MAGIC)) == GZIP_MAGIC
    except OSError:
        return False


def detect_format(path: Path) -> DumpFormat:
    """Classify a dump file.

    Order of checks:
    1. ``.sql`` extension -> sql, ``.dump`` extension -> custom
    2. PGDMP magic in the first 5 bytes -> custom
    3. SQL markers in the first 512 bytes -> sql
    4. directory-dump member names in the first 512 bytes -> directory
    5. anything else -> sql

    Args:
        path: File to inspect (or an unpacked directory-format dump)

    Returns:
        Detected format
    """
    suffix = path.suffix.lower()
    if suffix == ".sql":
        return DumpFormat.SQL
    if suffix == ".dump":
        return DumpFormat.CUSTOM

    if path.is_dir():
        if (path / "toc.dat").exists():
            return DumpFormat.DIRECTORY
        console.warn(f"Directory does not look like a pg_dump directory: {path}")
        return DumpFormat.SQL

    try:
        prefix = read_prefix(path)
    except OSError as e:
        console.warn(f"Could not read {path.name} to detect its format, assuming SQL: {e}")
        return DumpFormat.SQL

    if prefix[:len(PGDMP_MAGIC)] == PGDMP_MAGIC:
        return DumpFormat.CUSTOM

    text = prefix.decode("utf-8", errors="ignore")
    if any(marker in text for marker in SQL_MARKERS):
        return DumpFormat.SQL

    if any(marker in text for marker in DIRECTORY_MARKERS):
        return DumpFormat.DIRECTORY

    console.debug(f"No format markers in {path.name}, defaulting to SQL")
    return DumpFormat.SQL


def format_bytes(size_bytes: float) -> str:
    """Format bytes as human-readable string (e.g. "1.5 GB")."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if abs(size_bytes) < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} PB"
