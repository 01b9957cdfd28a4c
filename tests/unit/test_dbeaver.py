"""Unit tests for DBeaver connection registration."""

import json
import re
from datetime import date
from pathlib import Path

import pytest

from dbrestore.core.exceptions import IntegrationError
from dbrestore.services.dbeaver import (
    DATA_SOURCES_RELATIVE,
    ConnectionSettings,
    DBeaverRegistry,
    connection_name,
    find_workspace,
    folder_name,
    generate_connection_id,
    manual_instructions,
    workspace_candidates,
)
from dbrestore.services.dumpfile import SourceKind


@pytest.fixture
def settings() -> ConnectionSettings:
    return ConnectionSettings(
        name="dev_billing_2024_01_15 [2024-01-15] - Restored 2024-01-20 (DEV)",
        folder="Postgres - 1.DEV",
        host="localhost",
        port=5432,
        database="dev_billing_2024_01_15",
        user="postgres",
    )


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "workspace6"
    (ws / DATA_SOURCES_RELATIVE).parent.mkdir(parents=True)
    return ws


class TestConnectionId:
    """Tests for connection id generation."""

    def test_format(self):
        """Should embed hex milliseconds and 16 random hex characters."""
        connection_id = generate_connection_id(now_ms=0x18d0c2a1b2c)
        assert re.fullmatch(r"postgres-jdbc-18d0c2a1b2c-[0-9a-f]{16}", connection_id)

    def test_unique(self):
        """Should not repeat within the same millisecond."""
        assert generate_connection_id(now_ms=1) != generate_connection_id(now_ms=1)


class TestNaming:
    """Tests for folder and connection names."""

    def test_folders(self):
        """Should file connections by source and environment."""
        assert folder_name(SourceKind.LOCAL, None) == "2.Postgres - LOCAL"
        assert folder_name(SourceKind.CLOUD, "dev") == "Postgres - 1.DEV"
        assert folder_name(SourceKind.CLOUD, "prod") == "Postgres - 3.PROD"
        assert folder_name(SourceKind.CLOUD, "stage", "ubuntu") == "PostgreSQL - Staging"

    def test_local_name(self):
        """Should mark local restores."""
        name = connection_name("app_local_2024_01_15", SourceKind.LOCAL, today=date(2024, 1, 20))
        assert name == "app_local_2024_01_15 [LOCAL] - Restored 2024-01-20"

    def test_cloud_name(self):
        """Should include the backup date and environment."""
        name = connection_name(
            "dev_app_2024_01_15",
            SourceKind.CLOUD,
            environment="dev",
            backup_date=date(2024, 1, 15),
            today=date(2024, 1, 20),
        )
        assert name == "dev_app_2024_01_15 [2024-01-15] - Restored 2024-01-20 (DEV)"


class TestConnectionSettings:
    """Tests for the connection entry."""

    def test_entry(self, settings: ConnectionSettings):
        """Should produce a DBeaver PostgreSQL entry without a password."""
        entry = settings.to_entry()
        assert entry["provider"] == "postgresql"
        assert entry["save-password"] is False
        assert entry["configuration"]["url"] == "jdbc:postgresql://localhost:5432/dev_billing_2024_01_15"
        assert entry["configuration"]["port"] == "5432"
        assert "password" not in entry["configuration"]

    def test_manual_instructions(self, settings: ConnectionSettings):
        """Should list the values to type in by hand."""
        steps = manual_instructions(settings)
        assert "Database: dev_billing_2024_01_15" in steps
        assert "Port: 5432" in steps


class TestRegistry:
    """Tests for DBeaverRegistry."""

    def test_creates_missing_file(self, ctx, workspace: Path, settings: ConnectionSettings):
        """Should start an empty data-sources.json when none exists."""
        registry = DBeaverRegistry(ctx, workspace)
        connection_id = registry.add_connection(settings)

        data = json.loads(registry.path.read_text())
        assert data["connections"][connection_id]["name"] == settings.name
        assert data["folders"]["Postgres - 1.DEV"]["label"] == "Postgres - 1.DEV"
        assert registry.validate(connection_id)

    def test_preserves_existing_entries(self, ctx, workspace: Path, settings: ConnectionSettings):
        """Should keep connections, folders and unknown keys it did not create."""
        path = workspace / DATA_SOURCES_RELATIVE
        path.write_text(json.dumps({
            "folders": {"Mine": {"id": "Mine"}},
            "connections": {"mysql-1": {"name": "Other DB", "folder": "Mine"}},
            "connection-types": {"dev": {"name": "Development"}},
        }))

        connection_id = DBeaverRegistry(ctx, workspace).add_connection(settings)

        data = json.loads(path.read_text())
        assert data["connections"]["mysql-1"] == {"name": "Other DB", "folder": "Mine"}
        assert data["folders"]["Mine"] == {"id": "Mine"}
        assert "connection-types" in data
        assert set(data["connections"]) == {"mysql-1", connection_id}

    def test_no_temp_files_left(self, ctx, workspace: Path, settings: ConnectionSettings):
        """Should leave only data-sources.json behind after the atomic write."""
        DBeaverRegistry(ctx, workspace).add_connection(settings)
        files = [p.name for p in (workspace / DATA_SOURCES_RELATIVE).parent.iterdir()]
        assert files == ["data-sources.json"]

    def test_invalid_json(self, ctx, workspace: Path, settings: ConnectionSettings):
        """Should refuse to overwrite a file it cannot parse."""
        path = workspace / DATA_SOURCES_RELATIVE
        path.write_text("{ not json")
        with pytest.raises(IntegrationError):
            DBeaverRegistry(ctx, workspace).add_connection(settings)
        assert path.read_text() == "{ not json"

    @pytest.mark.parametrize("section,value", [
        ("connections", []),
        ("folders", "shared"),
    ])
    def test_malformed_section(self, ctx, workspace: Path, settings: ConnectionSettings, section: str, value):
        """Should refuse a file whose folders or connections are not objects."""
        path = workspace / DATA_SOURCES_RELATIVE
        original = json.dumps({section: value})
        path.write_text(original)
        with pytest.raises(IntegrationError) as exc:
            DBeaverRegistry(ctx, workspace).add_connection(settings)
        assert section in exc.value.message
        assert path.read_text() == original

    def test_validate_unknown_id(self, ctx, workspace: Path):
        """Should report a connection that is not in the file."""
        assert not DBeaverRegistry(ctx, workspace).validate("postgres-jdbc-0-0")


class TestWorkspaceDiscovery:
    """Tests for workspace discovery."""

    def test_linux_candidates(self, tmp_path: Path):
        """Should look in snap, flatpak and XDG locations."""
        candidates = workspace_candidates(tmp_path, "linux")
        assert tmp_path / ".local" / "share" / "DBeaverData" / "workspace6" in candidates
        assert any("snap" in str(c) for c in candidates)

    def test_macos_candidates(self, tmp_path: Path):
        """Should look under Library on macOS."""
        candidates = workspace_candidates(tmp_path, "darwin")
        assert candidates[0] == tmp_path / "Library" / "DBeaverData" / "workspace6"

    def test_find_first_existing(self, tmp_path: Path, workspace: Path):
        """Should return the first candidate with a .dbeaver directory."""
        missing = tmp_path / "nothing"
        assert find_workspace([missing, workspace]) == workspace
        assert find_workspace([missing]) is None
