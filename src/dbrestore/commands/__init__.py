"""CLI command implementations."""

from dbrestore.commands.restore import run_inspect, run_restore

__all__ = ["run_inspect", "run_restore"]
