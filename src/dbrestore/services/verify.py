"""Post-restore verification.

Restore tools exit non-zero for benign reasons and zero for partial
restores, so the outcome of every attempt is judged by what actually
exists in the database afterwards.

VerificationGate.verify() only escalates two things: a failed
connectivity check (nothing else can be tried) and an empty database.
Every secondary query is best-effort and logged.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from dbrestore.core.context import ExecutionContext
from dbrestore.core.exceptions import DBRestoreError, VerificationError
from dbrestore.core.executor import CommandExecutor
from dbrestore.services.postgresql import PostgresClient, quote_literal


TOP_TABLES_LIMIT = 10

_SYSTEM_SCHEMAS = "('information_schema', 'pg_catalog', 'pg_toast')"

TABLE_COUNT_SQL = (
    "SELECT COUNT(*) FROM information_schema.tables "
    f"WHERE table_type = 'BASE TABLE' AND table_schema NOT IN {_SYSTEM_SCHEMAS}"
)

SEQUENCE_COUNT_SQL = (
    "SELECT COUNT(*) FROM information_schema.sequences "
    f"WHERE sequence_schema NOT IN {_SYSTEM_SCHEMAS}"
)

VIEW_COUNT_SQL = (
    "SELECT COUNT(*) FROM information_schema.views "
    f"WHERE table_schema NOT IN {_SYSTEM_SCHEMAS}"
)

# Exact row counts through query_to_xml so no per-table round trip is needed
TOP_TABLES_SQL = (
    "SELECT schemaname, tablename, rowcount FROM ("
    "SELECT schemaname, tablename, "
    "(xpath('/row/cnt/text()', query_to_xml("
    "format('SELECT count(*) AS cnt FROM %I.%I', schemaname, tablename), "
    "false, true, '')))[1]::text::bigint AS rowcount "
    f"FROM pg_tables WHERE schemaname NOT IN {_SYSTEM_SCHEMAS} "
    f"ORDER BY schemaname, tablename LIMIT {TOP_TABLES_LIMIT}"
    ") counted ORDER BY rowcount DESC NULLS LAST"
)

FAILURE_CAUSES: tuple[str, ...] = (
    "Dump file may be empty or corrupted",
    "Restore command may have failed silently",
    "Permission issues preventing table creation",
    "Dump format not compatible with pg_restore/psql",
)


@dataclass
class TableInfo:
    """One row of the top-tables listing."""

    schema: str
    name: str
    rows: Optional[int] = None  # None when only the \dt fallback worked


@dataclass
class VerificationReport:
    """What a restored database contains."""

    database: str
    table_count: int = 0
    sequence_count: int = 0
    view_count: int = 0
    database_size_pretty: str = "unknown"
    top_tables: list[TableInfo] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.table_count > 0


def parse_count(output: str) -> int:
    """Parse a scalar COUNT(*) result, dropping whitespace and CR/LF residue.

    Returns 0 when no digits are left.
    """
    digits = re.sub(r"[^0-9]", "", output or "")
    return int(digits) if digits else 0


class VerificationGate:
    """Decides whether a restore produced a usable database.

    Usage:
        gate = VerificationGate(ctx, executor, client)
        report = gate.verify("dev_app_2024_01_15")
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        client: PostgresClient,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.client = client

    def inspect(self, database: str) -> VerificationReport:
        """Collect counts and size without judging them.

        Raises:
            VerificationError: If a trivial query cannot be executed
        """
        self._check_connectivity(database)

        report = VerificationReport(database=database)
        report.table_count = self._count(database, TABLE_COUNT_SQL, "tables")
        report.top_tables = self._top_tables(database)
        report.database_size_pretty = self._database_size(database)
        report.sequence_count = self._count(database, SEQUENCE_COUNT_SQL, "sequences")
        report.view_count = self._count(database, VIEW_COUNT_SQL, "views")
        return report

    def verify(self, database: str) -> VerificationReport:
        """Inspect the database and fail when it has no tables.

        Args:
            database: Restored database

        Returns:
            A passing VerificationReport

        Raises:
            VerificationError: If connectivity fails (``connectivity=True``)
                or no tables were found (``report`` attached)
        """
        self.ctx.console.step(f"Verifying database '{database}'...")
        report = self.inspect(database)
        self._show(report)

        if report.passed:
            self.ctx.console.success(
                f"Verification passed: {report.table_count} table(s) restored"
            )
            return report

        self._show_failure(report)
        raise VerificationError(
            f"Verification failed: no tables found in '{database}'",
            report=report,
            hint="Inspect the restore output above for the first error",
            details=[f"Possible cause: {cause}" for cause in FAILURE_CAUSES],
        )

    def _check_connectivity(self, database: str) -> None:
        try:
            result = self.client.run_sql("SELECT 1", database=database, check=False)
        except DBRestoreError as e:
            raise VerificationError(
                f"Cannot connect to database '{database}'",
                connectivity=True,
                details=[e.message],
            ) from e
        if not result.success:
            raise VerificationError(
                f"Cannot connect to database '{database}'",
                connectivity=True,
                hint="Check that the server is running and the restore user can connect",
                details=[result.stderr.strip()] if result.stderr.strip() else None,
            )
        self.ctx.console.verbose("Database connection: OK")

    def _count(self, database: str, sql: str, label: str) -> int:
        try:
            result = self.client.run_sql(sql, database=database, check=False)
        except DBRestoreError as e:
            self.ctx.console.warn(f"Could not count {label}: {e.message}")
            return 0
        if not result.success:
            self.ctx.console.warn(f"Could not count {label}")
            self.ctx.console.debug(result.stderr.strip())
            return 0
        count = parse_count(result.stdout)
        self.ctx.console.debug(f"{label}: raw={result.stdout!r} parsed={count}")
        return count

    def _top_tables(self, database: str) -> list[TableInfo]:
        try:
            result = self.client.run_sql(TOP_TABLES_SQL, database=database, check=False)
            if result.success:
                return _parse_top_tables(result.stdout)
            self.ctx.console.verbose("Row-count listing failed, falling back to \\dt")
        except DBRestoreError as e:
            self.ctx.console.verbose(f"Row-count listing failed ({e.message}), falling back to \\dt")

        try:
            result = self.client.run_sql("\\dt", database=database, check=False)
        except DBRestoreError:
            self.ctx.console.warn("Could not list tables")
            return []
        if not result.success:
            self.ctx.console.warn("Could not list tables")
            return []
        return _parse_dt(result.stdout)[:TOP_TABLES_LIMIT]

    def _database_size(self, database: str) -> str:
        try:
            result = self.client.run_sql(
                f"SELECT pg_size_pretty(pg_database_size({quote_literal(database)}))",
                check=False,
            )
        except DBRestoreError:
            result = None
        if result is None or not result.success or not result.stdout.strip():
            self.ctx.console.warn("Could not determine database size")
            return "unknown"
        return result.stdout.strip()

    def _show(self, report: VerificationReport) -> None:
        if report.top_tables:
            rows = [
                [t.schema, t.name, str(t.rows) if t.rows is not None else "-"]
                for t in report.top_tables
            ]
            self.ctx.console.table("Tables", ["Schema", "Table", "Rows"], rows)
        self.ctx.console.info(
            f"Tables: {report.table_count}, sequences: {report.sequence_count}, "
            f"views: {report.view_count}, size: {report.database_size_pretty}"
        )

    def _show_failure(self, report: VerificationReport) -> None:
        console = self.ctx.console
        console.error("No tables found in restored database")
        console.print("[bold]Possible causes:[/bold]")
        for cause in FAILURE_CAUSES:
            console.print(f"  - {cause}")
        connect = " ".join(self.client.psql_command(report.database))
        console.print("[bold]Manual verification steps:[/bold]")
        console.print(f"  1. Connect: {connect}")
        console.print("  2. Run: \\dt+ (list all tables with details)")
        console.print("  3. Run: \\dn (list all schemas)")
        console.print("  4. Check the restore output above for specific errors")


def _parse_top_tables(output: str) -> list[TableInfo]:
    tables: list[TableInfo] = []
    for line in output.splitlines():
        parts = [p.strip() for p in line.split("|")]
        if len(parts) < 3 or not parts[1]:
            continue
        rows = parse_count(parts[2]) if parts[2] else None
        tables.append(TableInfo(schema=parts[0], name=parts[1], rows=rows))
    return tables


def _parse_dt(output: str) -> list[TableInfo]:
    """Parse unaligned ``\\dt`` output: schema|name|type|owner."""
    tables: list[TableInfo] = []
    for line in output.splitlines():
        parts = [p.strip() for p in line.split("|")]
        if len(parts) >= 2 and parts[1]:
            tables.append(TableInfo(schema=parts[0], name=parts[1]))
    return tables
