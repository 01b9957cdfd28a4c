"""Restore and inspect commands.

run_restore() drives the interactive restore flow; run_inspect() shows
which dump a backup file resolves to without touching any database.
Both raise DBRestoreError subclasses and leave exit-code handling to
the CLI layer.
"""

from pathlib import Path
from typing import Optional

from dbrestore.core import (
    CommandExecutor,
    ExecutionContext,
    RestoreWorkspace,
)
from dbrestore.core.validation import validate_local_path
from dbrestore.services.dumpfile import detect_format, format_bytes, is_backup_file
from dbrestore.services.extract import ArchiveExtractor
from dbrestore.services.orchestrator import RestoreOrchestrator, RestoreRequest
from dbrestore.services.restore import RestoreResult


def run_restore(ctx: ExecutionContext, request: RestoreRequest) -> Optional[RestoreResult]:
    """Run the restore flow.

    Returns:
        The result, or None when the user cancelled
    """
    ctx.console.rule("Database Restore")
    executor = CommandExecutor(ctx)
    orchestrator = RestoreOrchestrator(ctx, executor)
    return orchestrator.run(request)


def run_inspect(ctx: ExecutionContext, file: str) -> None:
    """Show how a backup file would be extracted and restored."""
    path = validate_local_path(file)
    executor = CommandExecutor(ctx)
    extractor = ArchiveExtractor(ctx, executor)

    ctx.console.summary("Backup file", {
        "Path": path,
        "Size": format_bytes(path.stat().st_size),
        "Recognized suffix": is_backup_file(path.name),
        "Sniffed format": detect_format(path).value,
    })

    with RestoreWorkspace(base_dir=ctx.config.restore.temp_dir) as workspace:
        dump = extractor.extract(path, workspace.subdir("extracted"))
        strategy = "pg_restore" if dump.format.value in ("custom", "directory") else "psql"
        ctx.console.summary("Selected dump", {
            "File": Path(dump.path).name,
            "Format": dump.format.value,
            "Priority": dump.priority,
            "Size": format_bytes(dump.size_bytes),
            "Restored with": strategy,
        })
