"""Archive extraction and dump discovery.

ArchiveExtractor.extract() turns a downloaded or local backup into the
single dump file that will be restored:

1. Dispatch on the filename suffix (.tar.gz/.tgz, .tar, .gz, .sql/.dump),
   falling back to the gzip magic number for unknown suffixes.
2. Run tar or gunzip through the command runner.
3. Walk the extracted tree through DISCOVERY_RULES, top-down. The first
   rule with any candidate wins; inside a rule the lowest priority wins,
   and equal priorities go to the largest file.

Extraction failures are fatal for the artifact. There is no retry with
another tool.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from dbrestore.core.context import ExecutionContext
from dbrestore.core.exceptions import ExecutionError, ExtractionError
from dbrestore.core.executor import CommandExecutor
from dbrestore.services.dumpfile import (
    PGDMP_MAGIC,
    DetectedDump,
    DumpFormat,
    detect_format,
    format_bytes,
    has_gzip_magic,
    read_prefix,
)


# Extension -> (priority, fixed format). None means sniff the content.
EXTENSION_PRIORITIES: dict[str, tuple[int, Optional[DumpFormat]]] = {
    ".sql": (1, DumpFormat.SQL),
    ".dump": (2, DumpFormat.CUSTOM),
    ".dmp": (3, None),
    ".pg_dump": (4, None),
    ".backup": (5, None),
    ".bak": (6, None),
}

DIRECTORY_DUMP_PRIORITY = 2
BINARY_DUMP_PRIORITY = 2
BINARY_DUMP_MIN_SIZE = 1024
NAME_GUESS_PRIORITY = 10

# Table of contents written by pg_dump --format=directory
TOC_FILENAME = "toc.dat"

# Case-insensitive filename fragments that hint at a database dump
NAME_HINTS: tuple[str, ...] = ("database", "backup", "dump", "postgres", "pg_")
NAME_HINT_SUFFIXES: tuple[str, ...] = (".db", ".bak")

# Offset of the "ustar" marker in a tar header
_TAR_MAGIC_OFFSET = 257


Classifier = Callable[[Path, int], Optional[DetectedDump]]


@dataclass(frozen=True)
class DiscoveryRule:
    """One stage of dump discovery.

    Attributes:
        name: Shown in verbose output
        classify: (path, size) -> DetectedDump or None
        largest_wins: Break priority ties by size; otherwise first match in path order
    """

    name: str
    classify: Classifier
    largest_wins: bool = True


def _by_extension(path: Path, size: int) -> Optional[DetectedDump]:
    match = EXTENSION_PRIORITIES.get(path.suffix.lower())
    if match is None:
        return None
    priority, fmt = match
    return DetectedDump(path, fmt or detect_format(path), priority, size)


def _directory_dump(path: Path, size: int) -> Optional[DetectedDump]:
    """A toc.dat file stands for its whole directory."""
    if path.name != TOC_FILENAME:
        return None
    dump_dir = path.parent
    total = sum(p.stat().st_size for p in dump_dir.rglob("*") if p.is_file())
    return DetectedDump(dump_dir, DumpFormat.DIRECTORY, DIRECTORY_DUMP_PRIORITY, total)


def _binary_without_extension(path: Path, size: int) -> Optional[DetectedDump]:
    if path.suffix or size <= BINARY_DUMP_MIN_SIZE:
        return None
    try:
        magic = read_prefix(path, len(PGDMP_MAGIC))
    except OSError:
        return None
    if magic == PGDMP_MAGIC:
        return DetectedDump(path, DumpFormat.CUSTOM, BINARY_DUMP_PRIORITY, size)
    return None


def _by_name_hint(path: Path, size: int) -> Optional[DetectedDump]:
    if size <= 0:
        return None
    name = path.name.lower()
    if any(hint in name for hint in NAME_HINTS) or name.endswith(NAME_HINT_SUFFIXES):
        return DetectedDump(path, DumpFormat.UNKNOWN, NAME_GUESS_PRIORITY, size)
    return None


DISCOVERY_RULES: tuple[DiscoveryRule, ...] = (
    DiscoveryRule("dump file extension", _by_extension),
    DiscoveryRule("directory-format dump", _directory_dump),
    DiscoveryRule("binary dump without extension", _binary_without_extension),
    DiscoveryRule("dump-like file name", _by_name_hint, largest_wins=False),
)


def _is_tar(path: Path) -> bool:
    try:
        header = read_prefix(path, _TAR_MAGIC_OFFSET + 5)
    except OSError:
        return False
    return header[_TAR_MAGIC_OFFSET:_TAR_MAGIC_OFFSET + 5] == b"ustar"


class ArchiveExtractor:
    """Extracts backup archives and locates the dump inside.

    Usage:
        extractor = ArchiveExtractor(ctx, executor)
        dump = extractor.extract(Path("backup.tar.gz"), workspace.subdir("extracted"))
    """

    def __init__(self, ctx: ExecutionContext, executor: CommandExecutor) -> None:
        self.ctx = ctx
        self.executor = executor

    def extract(self, artifact_path: Path, work_dir: Path) -> DetectedDump:
        """Extract an artifact (if needed) and return the dump to restore.

        Args:
            artifact_path: Downloaded or local backup file
            work_dir: Empty directory to extract into

        Returns:
            The selected dump

        Raises:
            ExtractionError: If the archive tool fails or no dump is found
            PrerequisiteError: If tar or gunzip is not installed
        """
        name = artifact_path.name.lower()
        work_dir.mkdir(parents=True, exist_ok=True)

        if name.endswith((".tar.gz", ".tgz")):
            self._untar(artifact_path, work_dir, gzipped=True)
            return self.discover(work_dir)

        if name.endswith(".tar"):
            self._untar(artifact_path, work_dir, gzipped=False)
            return self.discover(work_dir)

        if name.endswith(".gz"):
            return self._from_gunzipped(artifact_path, work_dir)

        if name.endswith((".sql", ".dump")):
            self.ctx.console.verbose(f"Using {artifact_path.name} directly (no extraction needed)")
            return self._direct(artifact_path)

        if has_gzip_magic(artifact_path):
            self.ctx.console.info(f"{artifact_path.name} is gzip-compressed, extracting")
            return self._from_gunzipped(artifact_path, work_dir)

        self.ctx.console.verbose(f"Treating {artifact_path.name} as a raw dump file")
        return self._direct(artifact_path)

    def discover(self, directory: Path) -> DetectedDump:
        """Find the most plausible dump file under an extracted tree.

        Args:
            directory: Root of the extracted files

        Returns:
            The selected dump

        Raises:
            ExtractionError: If no rule matches any file
        """
        files = sorted(p for p in directory.rglob("*") if p.is_file())
        self._show_tree(directory, files)

        for rule in DISCOVERY_RULES:
            candidates = [
                dump for dump in (rule.classify(path, path.stat().st_size) for path in files)
                if dump is not None
            ]
            if not candidates:
                continue

            chosen = self._select(candidates, rule.largest_wins)
            label = f"{chosen.path.name}/" if chosen.format == DumpFormat.DIRECTORY else chosen.path.name
            self.ctx.console.success(
                f"Found database file: {label} "
                f"({chosen.format.value} format, {format_bytes(chosen.size_bytes)})"
            )
            if len(candidates) > 1:
                self.ctx.console.verbose(
                    f"Selected by rule '{rule.name}' from {len(candidates)} candidates"
                )
            return chosen

        names = [str(p.relative_to(directory)) for p in files]
        raise ExtractionError(
            "No database file found in the backup archive",
            hint="Supported: .sql, .dump, .dmp, .pg_dump, .backup, .bak and binary pg_dump files",
            details=[f"Found files: {', '.join(names) if names else '(none)'}"],
        )

    @staticmethod
    def _select(candidates: list[DetectedDump], largest_wins: bool) -> DetectedDump:
        best = min(c.priority for c in candidates)
        tied = [c for c in candidates if c.priority == best]
        if largest_wins:
            # Largest file; shallower path then name keep the choice deterministic
            return min(
                tied,
                key=lambda c: (-c.size_bytes, len(c.path.parts), str(c.path)),
            )
        return tied[0]

    def _direct(self, path: Path) -> DetectedDump:
        fmt = detect_format(path)
        priority = EXTENSION_PRIORITIES.get(path.suffix.lower(), (1, None))[0]
        return DetectedDump(path, fmt, priority, path.stat().st_size)

    def _untar(self, archive: Path, work_dir: Path, *, gzipped: bool) -> None:
        flags = "-xzf" if gzipped else "-xf"
        self.ctx.console.step(f"Extracting {archive.name}...")
        try:
            self.executor.run(["tar", flags, str(archive), "-C", str(work_dir)])
        except ExecutionError as e:
            raise ExtractionError(
                f"Extraction failed: {archive.name}",
                hint="The archive may be corrupted or incomplete; download it again",
                details=e.details,
            ) from e

    def _from_gunzipped(self, archive: Path, work_dir: Path) -> DetectedDump:
        # "app.sql.gz" -> "app.sql"; "app.gz" -> "app"; "backup" -> "backup.out"
        output_name = archive.name[:-3] if archive.name.lower().endswith(".gz") else f"{archive.name}.out"
        output = work_dir / output_name

        self.ctx.console.step(f"Decompressing {archive.name}...")
        try:
            self.executor.run(["gunzip", "-c", str(archive)], stdout_path=output)
        except ExecutionError as e:
            output.unlink(missing_ok=True)
            raise ExtractionError(
                f"Extraction failed: {archive.name}",
                hint="The file may not be valid gzip data or may be truncated",
                details=e.details,
            ) from e

        if not output.exists() or output.stat().st_size == 0:
            raise ExtractionError(
                f"Extraction failed: {archive.name} decompressed to an empty file",
            )

        if _is_tar(output):
            self.ctx.console.verbose(f"{output.name} is a tar archive, unpacking")
            unpack_dir = work_dir / "unpacked"
            unpack_dir.mkdir(exist_ok=True)
            self._untar(output, unpack_dir, gzipped=False)
            return self.discover(unpack_dir)

        dump = self._direct(output)
        self.ctx.console.success(
            f"Extracted file: {output.name} ({dump.format.value} format, {format_bytes(dump.size_bytes)})"
        )
        return dump

    def _show_tree(self, root: Path, files: list[Path]) -> None:
        if not self.ctx.is_verbose:
            return
        self.ctx.console.verbose("Extracted contents:")
        for path in files:
            self.ctx.console.verbose(
                f"  {path.relative_to(root)} ({format_bytes(path.stat().st_size)})"
            )
