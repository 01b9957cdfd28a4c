"""Post-restore ownership normalization.

Dumps taken in another environment carry that environment's role names.
OwnershipNormalizer reassigns the database and every non-system schema,
table, sequence, view and function to the restore user.

Nothing in this module raises: each category is enumerated with a fresh
catalog query and applied in its own psql run with ON_ERROR_STOP=0, so a
failing object neither stops its category nor the following ones.
Failures end up in the returned OwnershipReport.
"""

from dataclasses import dataclass, field
from typing import Iterator

from dbrestore.core.context import ExecutionContext
from dbrestore.core.exceptions import DBRestoreError
from dbrestore.core.executor import CommandExecutor
from dbrestore.services.postgresql import PostgresClient, quote_ident


# Statements per psql invocation; keeps command lines well under ARG_MAX
BATCH_SIZE = 200

SYSTEM_SCHEMA_FILTER = (
    "NOT IN ('pg_catalog', 'information_schema', 'pg_toast') "
    "AND {col} NOT LIKE 'pg_temp_%' AND {col} NOT LIKE 'pg_toast_temp_%'"
)


@dataclass
class DatabaseObject:
    """A database object whose owner may need to change."""

    object_type: str  # schema, table, sequence, view, function
    schema: str  # empty for schemas
    name: str
    owner: str
    arguments: str | None = None  # functions: identity argument list

    @property
    def qualified_name(self) -> str:
        """Quoted name usable in DDL."""
        if self.object_type == "schema":
            return quote_ident(self.name)
        qualified = f"{quote_ident(self.schema)}.{quote_ident(self.name)}"
        if self.object_type == "function":
            return f"{qualified}({self.arguments or ''})"
        return qualified

    @property
    def display_name(self) -> str:
        if self.object_type == "schema":
            return self.name
        if self.object_type == "function":
            return f"{self.schema}.{self.name}({self.arguments or ''})"
        return f"{self.schema}.{self.name}"

    def get_alter_statement(self, new_owner: str) -> str:
        """ALTER ... OWNER TO statement for this object."""
        return f"ALTER {self.object_type.upper()} {self.qualified_name} OWNER TO {quote_ident(new_owner)}"

    def get_grant_statements(self, grantee: str) -> list[str]:
        """GRANT statements that accompany the ownership change."""
        role = quote_ident(grantee)
        if self.object_type == "schema":
            return [
                f"GRANT ALL ON SCHEMA {self.qualified_name} TO {role}",
                f"GRANT USAGE ON SCHEMA {self.qualified_name} TO {role}",
            ]
        if self.object_type in ("table", "sequence"):
            return [f"GRANT ALL ON {self.object_type.upper()} {self.qualified_name} TO {role}"]
        return []


# Catalog queries, one per category, in normalization order
_CATEGORY_QUERIES: dict[str, str] = {
    "schema": (
        "SELECT 'schema', '', nspname, pg_get_userbyid(nspowner), '' FROM pg_namespace "
        "WHERE nspname " + SYSTEM_SCHEMA_FILTER.format(col="nspname") + " ORDER BY nspname"
    ),
    "table": (
        "SELECT 'table', schemaname, tablename, tableowner, '' FROM pg_tables "
        "WHERE schemaname " + SYSTEM_SCHEMA_FILTER.format(col="schemaname")
        + " ORDER BY schemaname, tablename"
    ),
    "sequence": (
        "SELECT 'sequence', schemaname, sequencename, sequenceowner, '' FROM pg_sequences "
        "WHERE schemaname " + SYSTEM_SCHEMA_FILTER.format(col="schemaname")
        + " ORDER BY schemaname, sequencename"
    ),
    "view": (
        "SELECT 'view', schemaname, viewname, viewowner, '' FROM pg_views "
        "WHERE schemaname " + SYSTEM_SCHEMA_FILTER.format(col="schemaname")
        + " ORDER BY schemaname, viewname"
    ),
    "function": (
        "SELECT 'function', n.nspname, p.proname, pg_get_userbyid(p.proowner), "
        "pg_get_function_identity_arguments(p.oid) "
        "FROM pg_proc p JOIN pg_namespace n ON p.pronamespace = n.oid "
        "LEFT JOIN pg_depend d ON d.objid = p.oid AND d.deptype = 'e' "
        "WHERE p.prokind = 'f' AND d.objid IS NULL "
        "AND n.nspname " + SYSTEM_SCHEMA_FILTER.format(col="n.nspname")
        + " ORDER BY n.nspname, p.proname"
    ),
}


@dataclass
class OwnershipReport:
    """Outcome of one normalization pass."""

    database: str
    owner: str
    changed: dict[str, int] = field(default_factory=dict)
    unchanged: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def total_changed(self) -> int:
        return sum(self.changed.values())


def _chunks(items: list[str], size: int) -> Iterator[list[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class OwnershipNormalizer:
    """Reassigns restored objects to the restore user.

    Usage:
        normalizer = OwnershipNormalizer(ctx, executor, client)
        report = normalizer.normalize("dev_app_2024_01_15", "postgres")
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

    def prepare(self, database: str, owner: str) -> OwnershipReport:
        """Database-level ownership and grants only. Used before a restore."""
        report = OwnershipReport(database=database, owner=owner)
        self._normalize_database(report)
        return report

    def normalize(self, database: str, owner: str) -> OwnershipReport:
        """Reassign the database and all its non-system objects to ``owner``.

        Args:
            database: Restored database
            owner: Role that should own everything

        Returns:
            OwnershipReport with per-category counts and failures
        """
        self.ctx.console.step(f"Normalizing ownership in '{database}' to '{owner}'...")
        report = OwnershipReport(database=database, owner=owner)

        self._normalize_database(report)

        for category, sql in _CATEGORY_QUERIES.items():
            objects = self._list_objects(report, category, sql)
            to_change = [obj for obj in objects if obj.owner != owner]
            report.unchanged += len(objects) - len(to_change)

            statements: list[str] = []
            for obj in to_change:
                statements.append(obj.get_alter_statement(owner))
                statements.extend(obj.get_grant_statements(owner))

            if category == "schema":
                # The default schema is re-granted even when already owned
                public = DatabaseObject("schema", "", "public", "")
                statements.extend(public.get_grant_statements(owner))

            self._apply(report, category, statements)
            if to_change:
                report.changed[category] = len(to_change)

        if report.ok:
            self.ctx.console.success(
                f"Ownership normalized ({report.total_changed} objects reassigned, "
                f"{report.unchanged} already owned)"
            )
        else:
            self.ctx.console.warn(
                f"Ownership normalization finished with {len(report.failures)} error(s)"
            )
            for failure in report.failures[:5]:
                self.ctx.console.verbose(f"  {failure}")
        return report

    def _normalize_database(self, report: OwnershipReport) -> None:
        db = quote_ident(report.database)
        role = quote_ident(report.owner)
        for sql in (
            f"ALTER DATABASE {db} OWNER TO {role}",
            f"GRANT ALL PRIVILEGES ON DATABASE {db} TO {role}",
            f"GRANT CREATE ON DATABASE {db} TO {role}",
        ):
            try:
                result = self.client.run_sql(sql, check=False)
            except DBRestoreError as e:
                report.failures.append(f"{sql}: {e.message}")
                continue
            if not result.success:
                report.failures.append(f"{sql}: {result.stderr.strip()}")
                self.ctx.console.verbose(f"Could not run '{sql}': {result.stderr.strip()}")

    def _list_objects(self, report: OwnershipReport, category: str, sql: str) -> list[DatabaseObject]:
        try:
            result = self.client.run_sql(sql, database=report.database, check=False)
        except DBRestoreError as e:
            report.failures.append(f"list {category}s: {e.message}")
            return []
        if not result.success:
            report.failures.append(f"list {category}s: {result.stderr.strip()}")
            self.ctx.console.warn(f"Could not list {category}s in '{report.database}'")
            return []

        objects: list[DatabaseObject] = []
        for line in result.stdout.splitlines():
            parts = line.split("|")
            if len(parts) < 4:
                continue
            objects.append(DatabaseObject(
                object_type=parts[0].strip(),
                schema=parts[1].strip(),
                name=parts[2].strip(),
                owner=parts[3].strip(),
                arguments=parts[4].strip() if len(parts) > 4 else None,
            ))
        return objects

    def _apply(self, report: OwnershipReport, category: str, statements: list[str]) -> None:
        """Run statements in batches, recording every ERROR line."""
        for batch in _chunks(statements, BATCH_SIZE):
            args = ["-X", "-q", "-v", "ON_ERROR_STOP=0"]
            for statement in batch:
                args.extend(["-c", statement])
            try:
                result = self.executor.run(
                    self.client.psql_command(report.database, *args),
                    check=False,
                    env=self.client.env,
                )
            except DBRestoreError as e:
                report.failures.append(f"{category}: {e.message}")
                continue

            errors = [line.strip() for line in result.stderr.splitlines() if "ERROR:" in line]
            if errors or not result.success:
                report.failures.extend(f"{category}: {line}" for line in errors)
                if not errors:
                    report.failures.append(f"{category}: psql exited with {result.return_code}")
