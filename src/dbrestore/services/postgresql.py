"""PostgreSQL client service.

Thin wrapper around psql, pg_isready and the connection settings used by
every other service. Identifiers and literals are quoted with
quote_ident()/quote_literal() before they reach SQL text.
"""

import shutil
from typing import Optional

from dbrestore.core.context import ExecutionContext
from dbrestore.core.exceptions import ExecutionError, PostgresError, PrerequisiteError
from dbrestore.core.executor import CommandExecutor, CommandResult


# Client tools the restore pipeline shells out to
REQUIRED_TOOLS: tuple[str, ...] = ("psql", "pg_restore", "pg_isready", "tar", "gunzip")


def quote_ident(name: str) -> str:
    """Quote a SQL identifier (database, role, schema, table)."""
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quote a SQL string literal."""
    return "'" + value.replace("'", "''") + "'"


class PostgresClient:
    """psql-backed access to the target server.

    Usage:
        client = PostgresClient.from_context(ctx, executor)
        if not client.database_exists("dev_app_2024_01_15"):
            client.create_database("dev_app_2024_01_15")
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        *,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: Optional[str] = None,
        admin_db: str = "postgres",
    ) -> None:
        """Initialize the client.

        Args:
            ctx: Execution context
            executor: Command executor
            host: PostgreSQL host
            port: PostgreSQL port
            user: Role used for the restore; also the ownership target
            password: Password passed via PGPASSWORD (never on the command line)
            admin_db: Database to connect to for server-level statements
        """
        self.ctx = ctx
        self.executor = executor
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.admin_db = admin_db

    @classmethod
    def from_context(cls, ctx: ExecutionContext, executor: CommandExecutor) -> "PostgresClient":
        pg = ctx.config.postgres
        return cls(
            ctx,
            executor,
            host=pg.host,
            port=pg.port,
            user=pg.user,
            password=ctx.config.pg_password,
        )

    def connection_args(self) -> list[str]:
        """-h/-p/-U plus --no-password so a missing password fails instead of prompting."""
        return ["-h", self.host, "-p", str(self.port), "-U", self.user, "-w"]

    @property
    def env(self) -> dict[str, str]:
        """Environment for client tools."""
        return {"PGPASSWORD": self.password or ""}

    def psql_command(self, database: str, *args: str) -> list[str]:
        """Build a psql command line against ``database``."""
        return ["psql", *self.connection_args(), "-d", database, *args]

    def run_sql(
        self,
        sql: str,
        *,
        database: Optional[str] = None,
        check: bool = True,
        description: Optional[str] = None,
    ) -> CommandResult:
        """Run SQL with ON_ERROR_STOP and tuples-only unaligned output."""
        command = self.psql_command(
            database or self.admin_db,
            "-X", "-v", "ON_ERROR_STOP=1", "-t", "-A", "-c", sql,
        )
        if self.ctx.is_debug:
            sql_display = sql[:200] + "..." if len(sql) > 200 else sql
            self.ctx.console.debug(f"SQL: {sql_display}")
        return self.executor.run(
            command,
            description=description,
            check=check,
            env=self.env,
        )

    def query(self, sql: str, *, database: Optional[str] = None) -> str:
        """Run a query and return its trimmed output.

        Raises:
            PostgresError: If the query fails
        """
        try:
            return self.run_sql(sql, database=database).stdout.strip()
        except ExecutionError as e:
            raise PostgresError(
                f"Query failed on {database or self.admin_db}",
                details=e.details,
            ) from e

    def execute(self, sql: str, *, database: Optional[str] = None, description: Optional[str] = None) -> None:
        """Run a statement.

        Raises:
            PostgresError: If the statement fails
        """
        try:
            self.run_sql(sql, database=database, description=description)
        except ExecutionError as e:
            raise PostgresError(
                f"Statement failed: {description or sql[:80]}",
                details=e.details,
            ) from e

    # Pre-flight
    def missing_tools(self, tools: tuple[str, ...] = REQUIRED_TOOLS) -> list[str]:
        """Return the client tools not found on PATH."""
        return [tool for tool in tools if shutil.which(tool) is None]

    def is_ready(self) -> bool:
        """Check if the server accepts connections (pg_isready)."""
        result = self.executor.run(
            ["pg_isready", "-h", self.host, "-p", str(self.port)],
            check=False,
            env=self.env,
        )
        return result.success

    def check_connection(self) -> None:
        """Authenticate and run a trivial query.

        Raises:
            PrerequisiteError: If the server is unreachable or rejects the credentials
        """
        result = self.run_sql("SELECT 1", check=False)
        if result.success:
            return
        stderr = result.stderr.strip()
        hint = "Check PG_HOST and PG_PORT, and that PostgreSQL is running"
        if "authentication failed" in stderr or "no password supplied" in stderr:
            hint = "Check PG_USER and PG_PASSWORD in your environment or .env"
        raise PrerequisiteError(
            f"Cannot connect to PostgreSQL at {self.host}:{self.port} as {self.user}",
            hint=hint,
            details=[stderr] if stderr else None,
        )

    # Database lifecycle
    def database_exists(self, database: str) -> bool:
        """Check if a database exists."""
        result = self.query(
            f"SELECT 1 FROM pg_database WHERE datname = {quote_literal(database)}"
        )
        return result == "1"

    def create_database(self, database: str) -> None:
        """Create an empty database.

        Raises:
            PostgresError: If creation fails
        """
        self.execute(
            f"CREATE DATABASE {quote_ident(database)}",
            description=f"Creating database {database}",
        )

    def drop_database(self, database: str) -> None:
        """Terminate sessions on a database and drop it.

        Raises:
            PostgresError: If the drop fails
        """
        self.execute(
            "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
            f"WHERE datname = {quote_literal(database)} AND pid <> pg_backend_pid()",
            description=f"Terminating connections to {database}",
        )
        self.execute(
            f"DROP DATABASE IF EXISTS {quote_ident(database)}",
            description=f"Dropping database {database}",
        )
