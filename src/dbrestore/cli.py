"""Main CLI entry point using Typer.

This module defines the root CLI application, its global options and
the config command group.
"""

import sys
from pathlib import Path
from typing import Optional, Annotated

import typer
from rich.console import Console

from dbrestore import __version__
from dbrestore.core.audit import get_audit_logger
from dbrestore.core.context import ExecutionContext, create_context
from dbrestore.core.output import console as app_console
from dbrestore.core.config import (
    DEFAULT_CONFIG_PATH,
    AppConfig,
    get_example_config,
    init_config,
)
from dbrestore.core.exceptions import DBRestoreError
from dbrestore.commands.restore import run_inspect, run_restore
from dbrestore.services.orchestrator import RestoreRequest


# Create the main Typer app
app = typer.Typer(
    name="db-restore",
    help="Restore PostgreSQL databases from S3 backups or local dump files.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

config_app = typer.Typer(
    name="config",
    help="Configuration management.",
    no_args_is_help=True,
)

app.add_typer(config_app, name="config")


# Type aliases for common options
YesOption = Annotated[
    bool,
    typer.Option(
        "--yes",
        "-y",
        help="Skip confirmation prompts, including overwrite of an existing database.",
        is_flag=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet",
        "-q",
        help="Suppress non-essential output. Only show errors.",
        is_flag=True,
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Disable colored output.",
        is_flag=True,
    ),
]

ForceOption = Annotated[
    bool,
    typer.Option(
        "--force",
        "-f",
        help="Overwrite an existing configuration file.",
        is_flag=True,
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help=f"Path to configuration file. Default: {DEFAULT_CONFIG_PATH}",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console = Console()
        console.print(f"db-restore version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """DB Restore - PostgreSQL restore tool.

    Downloads or reads a backup, extracts the dump inside it, restores it
    into a new or existing database, fixes ownership, verifies the result
    and can register the database in DBeaver.

    [bold]Examples:[/bold]
        db-restore restore
        db-restore restore --source local --file ./billing_2024-01-15.tar.gz
        db-restore restore --source cloud --env dev --service billing --yes
        db-restore inspect ./backup.tar.gz
        db-restore config show
    """
    pass


def get_context(
    yes: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> ExecutionContext:
    """Create execution context from CLI options.

    This is a helper for commands to create a context from global options.
    """
    return create_context(
        yes=yes,
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
        config=config,
    )


def handle_error(error: DBRestoreError) -> None:
    """Handle a DBRestoreError by printing formatted error and exiting."""
    app_console.error(error.message)

    if error.details:
        for detail in error.details:
            app_console.print(f"  [dim]{detail}[/dim]")

    if error.hint:
        app_console.hint(error.hint)

    raise typer.Exit(error.exit_code)


def handle_interrupt() -> None:
    """Ctrl+C or SIGTERM: temporary files are already gone, exit 130."""
    app_console.print()
    app_console.warn("Interrupted, temporary files removed")
    raise typer.Exit(130)


# ============================================================================
# Restore commands
# ============================================================================

@app.command("restore")
def restore_cmd(
    source: Annotated[
        Optional[str],
        typer.Option("--source", "-s", help="Backup source: cloud or local."),
    ] = None,
    file: Annotated[
        Optional[str],
        typer.Option("--file", help="Local dump file (implies --source local)."),
    ] = None,
    profile: Annotated[
        Optional[str],
        typer.Option("--profile", help="AWS profile for cloud backups."),
    ] = None,
    env: Annotated[
        Optional[str],
        typer.Option("--env", "-e", help="Backup environment: dev, stage or prod."),
    ] = None,
    service: Annotated[
        Optional[str],
        typer.Option("--service", help="Service (top-level S3 prefix) to restore."),
    ] = None,
    backup: Annotated[
        Optional[str],
        typer.Option("--backup", help="Backup file name or S3 key. Default: choose from list."),
    ] = None,
    database: Annotated[
        Optional[str],
        typer.Option("--database", "-d", help="Target database name."),
    ] = None,
    policy: Annotated[
        Optional[str],
        typer.Option(
            "--policy",
            "-p",
            help="create-new-dated, create-new-named, restore-existing or replace-existing.",
        ),
    ] = None,
    dbeaver: Annotated[
        Optional[bool],
        typer.Option("--dbeaver/--no-dbeaver", help="Register the restored database in DBeaver."),
    ] = None,
    config: ConfigOption = None,
    yes: YesOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Restore a database from S3 or a local dump file.

    Every option left out is asked for interactively.

    Examples:

        # Fully interactive
        db-restore restore

        # Local file into a dated database
        db-restore restore --file ./billing_2024-01-15.sql --policy create-new-dated

        # Newest dev backup of a service, no prompts
        db-restore restore -s cloud -e dev --profile dev --service billing -p create-new-dated -y
    """
    ctx = get_context(yes=yes, verbose=verbose, quiet=quiet, no_color=no_color, config=config)
    audit = get_audit_logger()
    audit.session_started("restore", sys.argv[1:])

    if file is not None and source is None:
        source = "local"

    request = RestoreRequest(
        source=source,
        file=file,
        profile=profile,
        environment=env,
        service=service,
        backup=backup,
        database=database,
        policy=policy,
        dbeaver=dbeaver,
    )

    exit_code = 0
    try:
        result = run_restore(ctx, request)
        if result is None:
            raise typer.Exit(0)
    except DBRestoreError as e:
        exit_code = e.exit_code
        handle_error(e)
    except KeyboardInterrupt:
        exit_code = 130
        handle_interrupt()
    finally:
        audit.session_ended(exit_code)


@app.command("inspect")
def inspect_cmd(
    file: Annotated[str, typer.Argument(help="Backup or dump file to inspect.")],
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Show which dump a backup file contains and how it would be restored.

    Extracts into a temporary directory that is removed afterwards.
    No database is touched.
    """
    ctx = get_context(verbose=verbose, no_color=no_color, config=config)
    try:
        run_inspect(ctx, file)
    except DBRestoreError as e:
        handle_error(e)
    except KeyboardInterrupt:
        handle_interrupt()


# ============================================================================
# Config commands
# ============================================================================

@config_app.command("show")
def config_show(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Show current configuration.

    Displays the configuration file merged with environment overrides.
    Secrets are not shown.
    """
    ctx = get_context(verbose=verbose, no_color=no_color, config=config)

    try:
        app_config = ctx.config

        ctx.console.print()
        ctx.console.print(f"[bold]Configuration file:[/bold] {ctx.config_path}")
        ctx.console.print(f"[bold]File exists:[/bold] {ctx.config_path.exists()}")
        ctx.console.print()

        ctx.console.yaml(app_config.config.to_yaml(), title="Configuration")

        # Show secrets status (not values)
        ctx.console.summary("Secrets (from environment)", {
            "PG_PASSWORD": "Set" if app_config.pg_password else "Not set",
        })

    except DBRestoreError as e:
        handle_error(e)


@config_app.command("init")
def config_init(
    config: ConfigOption = None,
    force: ForceOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Initialize a new configuration file.

    Creates a configuration file with sensible defaults and comments.
    """
    ctx = get_context(no_color=no_color, config=config)
    config_path = ctx.config_path

    try:
        if config_path.exists() and not force:
            ctx.console.error(f"Configuration file already exists: {config_path}")
            ctx.console.hint("Use --force to overwrite")
            raise typer.Exit(1)

        init_config(config_path, force=force)
        ctx.console.success(f"Configuration file created: {config_path}")
        ctx.console.info("Edit the file to set your buckets, then run: db-restore restore")
        ctx.console.hint("Set the database password via PG_PASSWORD (environment or .env)")

    except DBRestoreError as e:
        handle_error(e)


@config_app.command("validate")
def config_validate(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Validate configuration file.

    Checks that the configuration file exists, is valid YAML,
    and all values pass validation.
    """
    ctx = get_context(verbose=verbose, no_color=no_color, config=config)

    try:
        if not ctx.config_path.exists():
            ctx.console.warn(f"No configuration file at {ctx.config_path}, checking defaults and environment")

        # This will raise ConfigurationError if invalid
        app_config = AppConfig(config_path=ctx.config_path)

        ctx.console.success(f"Configuration is valid: {ctx.config_path}")

        if ctx.is_verbose:
            ctx.console.yaml(app_config.config.to_yaml())

        # Check for missing recommended settings
        warnings = []

        if not app_config.configured_environments():
            warnings.append("No S3 bucket configured; only local restores are possible (S3_BUCKET_DEV, etc.)")

        if not app_config.pg_password:
            warnings.append("PG_PASSWORD not set; psql will rely on ~/.pgpass or trust authentication")

        if warnings:
            ctx.console.print()
            for warning in warnings:
                ctx.console.warn(warning)

    except DBRestoreError as e:
        handle_error(e)


@config_app.command("example")
def config_example(no_color: NoColorOption = False) -> None:
    """Print example configuration file.

    Outputs a complete example configuration with comments.
    Useful as a starting point for creating your own config.
    """
    ctx = get_context(no_color=no_color)
    example = get_example_config()
    ctx.console.print(example, markup=False)


# Entry point
if __name__ == "__main__":
    app()
