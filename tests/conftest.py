"""Shared fixtures for unit and integration tests."""

from pathlib import Path
from typing import Callable, Generator
from unittest.mock import MagicMock

import pytest

from dbrestore.core.audit import configure_audit_logger
from dbrestore.core.config import AppConfig, EnvSettings, ToolConfig
from dbrestore.core.context import ExecutionContext
from dbrestore.core.executor import CommandResult


@pytest.fixture(autouse=True)
def disable_audit(tmp_path: Path) -> Generator[None, None, None]:
    """Keep tests from writing to the real audit log."""
    configure_audit_logger(log_path=tmp_path / "audit.log", enabled=False)
    yield


def make_app_config(**sections) -> AppConfig:
    """AppConfig built from keyword sections, ignoring the real environment."""
    return AppConfig(config=ToolConfig(**sections), env=EnvSettings.model_construct())


@pytest.fixture
def ctx() -> ExecutionContext:
    """Context with default configuration and the real console."""
    context = ExecutionContext()
    context._config = make_app_config()
    return context


@pytest.fixture
def mock_console() -> MagicMock:
    """Console whose prompts can be scripted."""
    console = MagicMock()
    console.confirm.return_value = True
    console.choose.return_value = 0
    return console


@pytest.fixture
def scripted_ctx(mock_console: MagicMock) -> ExecutionContext:
    """Context with a mocked console."""
    context = ExecutionContext(_console=mock_console)
    context._config = make_app_config()
    return context


def result(stdout: str = "", stderr: str = "", return_code: int = 0) -> CommandResult:
    """Build a CommandResult for scripted executors."""
    return CommandResult(command=[], return_code=return_code, stdout=stdout, stderr=stderr)


@pytest.fixture
def make_result() -> Callable[..., CommandResult]:
    return result


@pytest.fixture
def mock_client() -> MagicMock:
    """PostgresClient stand-in with realistic command builders."""
    client = MagicMock()
    client.host = "localhost"
    client.port = 5432
    client.user = "postgres"
    client.env = {"PGPASSWORD": ""}
    client.connection_args.return_value = ["-h", "localhost", "-p", "5432", "-U", "postgres", "-w"]
    client.psql_command.side_effect = lambda database, *args: [
        "psql", "-h", "localhost", "-p", "5432", "-U", "postgres", "-w", "-d", database, *args,
    ]
    client.database_exists.return_value = False
    client.missing_tools.return_value = []
    client.is_ready.return_value = True
    return client
