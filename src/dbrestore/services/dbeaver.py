"""DBeaver connection registration.

Restored databases can be added to a local DBeaver workspace by editing
``<workspace>/General/.dbeaver/data-sources.json``. The file is owned
by DBeaver, so every write keeps all entries this tool did not create
and replaces the file atomically.

The password is not written to data-sources.json; DBeaver asks for it
on first connect.
"""

import json
import os
import secrets
import sys
import tempfile
import time
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Optional

from dbrestore.core.context import ExecutionContext
from dbrestore.core.exceptions import IntegrationError
from dbrestore.services.dumpfile import SourceKind


DATA_SOURCES_RELATIVE = Path("General") / ".dbeaver" / "data-sources.json"

LOCAL_FOLDER = "2.Postgres - LOCAL"
ENVIRONMENT_FOLDERS: dict[str, str] = {
    "dev": "Postgres - 1.DEV",
    "stage": "Postgres - 2.STAGE",
    "prod": "Postgres - 3.PROD",
}

UBUNTU_LOCAL_FOLDER = "PostgreSQL - Local Restores"
UBUNTU_ENVIRONMENT_FOLDERS: dict[str, str] = {
    "dev": "PostgreSQL - Development",
    "stage": "PostgreSQL - Staging",
    "prod": "PostgreSQL - Production",
}


def workspace_candidates(home: Optional[Path] = None, platform: Optional[str] = None) -> list[Path]:
    """DBeaver workspace directories to check, most likely first."""
    home = home or Path.home()
    platform = platform or sys.platform

    if platform == "darwin":
        return [
            home / "Library" / "DBeaverData" / "workspace6",
            home / "Documents" / "DBeaver" / "workspace6",
            home / ".dbeaver" / "workspace6",
        ]
    if platform.startswith("win"):
        return [
            home / "AppData" / "Roaming" / "DBeaverData" / "workspace6",
            home / "Documents" / "DBeaver" / "workspace6",
        ]
    return [
        home / "snap" / "dbeaver-ce" / "current" / ".local" / "share" / "DBeaverData" / "workspace6",
        home / ".var" / "app" / "io.dbeaver.DBeaverCommunity" / "data" / "DBeaverData" / "workspace6",
        home / ".local" / "share" / "DBeaverData" / "workspace6",
        home / ".dbeaver" / "workspace6",
        home / "Documents" / "DBeaver" / "workspace6",
    ]


def find_workspace(candidates: list[Path]) -> Optional[Path]:
    """First candidate that already has a General/.dbeaver directory."""
    for workspace in candidates:
        if (workspace / DATA_SOURCES_RELATIVE).parent.is_dir():
            return workspace
    return None


def generate_connection_id(now_ms: Optional[int] = None) -> str:
    """``postgres-jdbc-<hex milliseconds>-<16 hex chars>``."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"postgres-jdbc-{now_ms:x}-{secrets.token_hex(8)}"


def folder_name(source_kind: SourceKind, environment: Optional[str], style: str = "default") -> str:
    """Folder a restored connection is filed under."""
    if style == "ubuntu":
        if source_kind == SourceKind.LOCAL:
            return UBUNTU_LOCAL_FOLDER
        return UBUNTU_ENVIRONMENT_FOLDERS.get(environment or "", UBUNTU_LOCAL_FOLDER)
    if source_kind == SourceKind.LOCAL:
        return LOCAL_FOLDER
    return ENVIRONMENT_FOLDERS.get(environment or "", LOCAL_FOLDER)


def connection_name(
    database: str,
    source_kind: SourceKind,
    *,
    environment: Optional[str] = None,
    backup_date: Optional[date] = None,
    service: Optional[str] = None,
    style: str = "default",
    today: Optional[date] = None,
) -> str:
    """Display name of a restored connection.

    Examples:
        ``app_local_2024_01_15 [LOCAL] - Restored 2024-01-20``
        ``dev_app_2024_01_15 [2024-01-15] - Restored 2024-01-20 (DEV)``
    """
    restored = (today or date.today()).isoformat()
    if source_kind == SourceKind.LOCAL:
        if style == "ubuntu":
            return f"{database} - Local Restore ({service or 'unknown'}) - {restored}"
        return f"{database} [LOCAL] - Restored {restored}"

    env = environment or ""
    stamp = f"[{backup_date.isoformat()}]" if backup_date else ""
    if style == "ubuntu":
        return f"{database} - {env.capitalize()} {stamp} - Restored {restored}"
    return f"{database} {stamp} - Restored {restored} ({env.upper()})"


@dataclass
class ConnectionSettings:
    """What goes into a data-sources.json connection entry."""

    name: str
    folder: str
    host: str
    port: int
    database: str
    user: str

    @property
    def url(self) -> str:
        return f"jdbc:postgresql://{self.host}:{self.port}/{self.database}"

    def to_entry(self) -> dict[str, Any]:
        return {
            "provider": "postgresql",
            "driver": "postgres-jdbc",
            "name": self.name,
            "save-password": False,
            "folder": self.folder,
            "configuration": {
                "host": self.host,
                "port": str(self.port),
                "database": self.database,
                "url": self.url,
                "configurationType": "MANUAL",
                "type": "dev",
                "closeIdleConnection": True,
                "provider-properties": {
                    "@dbeaver-show-non-default-db@": "false",
                    "@dbeaver-chosen-role@": "",
                },
                "auth-model": "native",
                "user": self.user,
            },
        }


class DBeaverRegistry:
    """Reads and updates one workspace's data-sources.json.

    Usage:
        registry = DBeaverRegistry(ctx, workspace)
        connection_id = registry.add_connection(settings)
        registry.validate(connection_id)
    """

    def __init__(self, ctx: ExecutionContext, workspace: Path) -> None:
        self.ctx = ctx
        self.workspace = workspace
        self.path = workspace / DATA_SOURCES_RELATIVE

    def read(self) -> dict[str, Any]:
        """Load data-sources.json, creating an empty one if it is missing.

        Raises:
            IntegrationError: If the file cannot be read or is not a JSON object
        """
        if not self.path.exists():
            data: dict[str, Any] = {"folders": {}, "connections": {}}
            self._write(data)
            self.ctx.console.verbose(f"Created {self.path}")
            return data

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise IntegrationError(
                f"Cannot read DBeaver data sources: {self.path}",
                hint="Close DBeaver and check that the file is valid JSON",
                details=[str(e)],
            ) from e
        if not isinstance(data, dict):
            raise IntegrationError(f"Unexpected content in {self.path}")
        for section in ("folders", "connections"):
            if not isinstance(data.get(section, {}), dict):
                raise IntegrationError(
                    f"Unexpected '{section}' section in {self.path}",
                    hint="Expected a JSON object; repair the file in DBeaver or remove the section",
                )
        return data

    def add_connection(self, settings: ConnectionSettings) -> str:
        """Add a connection (and its folder) and return the new id.

        Raises:
            IntegrationError: If the file cannot be read or written
        """
        data = self.read()
        connections = data.setdefault("connections", {})
        folders = data.setdefault("folders", {})

        connection_id = generate_connection_id()
        while connection_id in connections:
            connection_id = generate_connection_id()

        connections[connection_id] = settings.to_entry()
        if settings.folder not in folders:
            folders[settings.folder] = {
                "id": settings.folder,
                "label": settings.folder,
                "description": "Databases restored by db-restore",
            }

        self._write(data)
        return connection_id

    def validate(self, connection_id: str) -> bool:
        """Re-read the file and check the connection is there."""
        try:
            data = self.read()
        except IntegrationError as e:
            self.ctx.console.warn(f"Could not validate DBeaver connection: {e.message}")
            return False
        connection = data.get("connections", {}).get(connection_id)
        if not connection:
            return False
        self.ctx.console.verbose(
            f"Connection {connection_id}: {connection.get('name')} in folder {connection.get('folder')}"
        )
        return True

    def _write(self, data: dict[str, Any]) -> None:
        """Write via a temporary file in the same directory, then rename."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=".data-sources-", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                    f.write("\n")
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise IntegrationError(
                f"Cannot write DBeaver data sources: {self.path}",
                hint="Check file permissions",
                details=[str(e)],
            ) from e


def manual_instructions(settings: ConnectionSettings) -> list[str]:
    """Steps for adding the connection by hand."""
    return [
        "Open DBeaver",
        'Click "New Database Connection" (+) and select "PostgreSQL"',
        f"Host: {settings.host}",
        f"Port: {settings.port}",
        f"Database: {settings.database}",
        f"Username: {settings.user}",
        "Password: your PostgreSQL password",
        f"Connection name: {settings.name}",
        "Test the connection and save",
    ]
