"""Unit tests for the restore orchestrator, with scripted prompts."""

import json
import shutil
from datetime import date, datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from dbrestore.core.config import AppConfig, EnvSettings, ToolConfig
from dbrestore.core.context import ExecutionContext
from dbrestore.core.exceptions import (
    ExtractionError,
    PrerequisiteError,
    RestoreError,
    ValidationError,
    VerificationError,
)
from dbrestore.core.executor import CommandExecutor
from dbrestore.core.workspace import RestoreWorkspace
from dbrestore.services.dbeaver import DATA_SOURCES_RELATIVE
from dbrestore.services.dumpfile import BackupArtifact, DetectedDump, DumpFormat, SourceKind
from dbrestore.services.orchestrator import (
    RestoreCancelled,
    RestoreOrchestrator,
    RestoreRequest,
    SourceSelection,
)
from dbrestore.services.restore import CreatePolicy, RestoreResult, RestoreState, RestoreTarget
from dbrestore.services.storage import S3ObjectInfo
from dbrestore.services.verify import VerificationReport


def configure(ctx: ExecutionContext, **sections) -> None:
    ctx._config = AppConfig(config=ToolConfig(**sections), env=EnvSettings.model_construct())


@pytest.fixture
def orchestrator(scripted_ctx, mock_client) -> RestoreOrchestrator:
    return RestoreOrchestrator(scripted_ctx, MagicMock(), client=mock_client)


@pytest.fixture
def sql_file(tmp_path: Path) -> Path:
    path = tmp_path / "billing_2024-01-15.sql"
    path.write_text("CREATE TABLE invoices (id int);\n")
    return path


@pytest.fixture
def local_source(sql_file: Path) -> SourceSelection:
    return SourceSelection(
        artifact=BackupArtifact.from_path(sql_file, SourceKind.LOCAL),
        service="billing",
    )


@pytest.fixture
def cloud_source(sql_file: Path) -> SourceSelection:
    return SourceSelection(
        artifact=BackupArtifact.from_path(sql_file, SourceKind.CLOUD, key="billing/billing_2024-01-15.sql"),
        service="billing",
        environment="dev",
        backup_date=date(2024, 1, 15),
    )


def make_result(target: RestoreTarget, dump_path: Path, strategy: str = "primary") -> RestoreResult:
    return RestoreResult(
        target=target,
        dump=DetectedDump(dump_path, DumpFormat.SQL, 1, dump_path.stat().st_size),
        state=RestoreState.SUCCEEDED,
        report=VerificationReport(database=target.database_name, table_count=2),
        strategy=strategy,
    )


class TestChooseTarget:
    """Tests for target database selection."""

    def test_dated_cloud_name(self, orchestrator, cloud_source, mock_client):
        """Should derive env_service_date for cloud backups."""
        target = orchestrator.choose_target(RestoreRequest(policy="create-new-dated"), cloud_source)
        assert target.database_name == "dev_billing_2024_01_15"
        assert target.create_policy == CreatePolicy.CREATE_NEW_DATED
        mock_client.database_exists.assert_called_once_with("dev_billing_2024_01_15")

    def test_explicit_database(self, orchestrator, local_source, mock_client):
        """Should use --database as given."""
        mock_client.database_exists.return_value = True
        target = orchestrator.choose_target(
            RestoreRequest(policy="restore-existing", database="billing_copy"), local_source
        )
        assert target.database_name == "billing_copy"
        assert target.exists

    def test_unknown_policy(self, orchestrator, local_source):
        """Should reject an unknown policy."""
        with pytest.raises(ValidationError):
            orchestrator.choose_target(RestoreRequest(policy="overwrite"), local_source)

    def test_prompt_until_valid(self, orchestrator, local_source, mock_console):
        """Should ask again after an invalid name."""
        mock_console.prompt.side_effect = ["bad-name", "good_name"]
        target = orchestrator.choose_target(RestoreRequest(policy="create-new-named"), local_source)
        assert target.database_name == "good_name"
        assert mock_console.prompt.call_count == 2

    def test_policy_menu_default(self, orchestrator, local_source, mock_console):
        """Should offer the configured default policy."""
        mock_console.choose.return_value = 0
        target = orchestrator.choose_target(RestoreRequest(), local_source)
        assert target.create_policy == CreatePolicy.CREATE_NEW_DATED
        assert target.database_name.startswith("billing_local_")


class TestPrepareTarget:
    """Tests for applying the policy to an existing database."""

    def test_restore_existing_keeps_database(self, orchestrator, mock_client):
        """Should never drop for restore-existing."""
        target = RestoreTarget("app_db", CreatePolicy.RESTORE_EXISTING, exists=True)
        orchestrator.prepare_target(target)
        mock_client.drop_database.assert_not_called()
        assert target.exists

    def test_replace_existing_drops(self, orchestrator, mock_client, mock_console):
        """Should drop after confirmation."""
        target = RestoreTarget("app_db", CreatePolicy.REPLACE_EXISTING, exists=True)
        orchestrator.prepare_target(target)
        mock_client.drop_database.assert_called_once_with("app_db")
        assert not target.exists

    def test_declined_overwrite_cancels(self, orchestrator, mock_client, mock_console):
        """Should cancel without dropping when the user declines."""
        mock_console.confirm.return_value = False
        target = RestoreTarget("app_db", CreatePolicy.CREATE_NEW_DATED, exists=True)
        with pytest.raises(RestoreCancelled):
            orchestrator.prepare_target(target)
        mock_client.drop_database.assert_not_called()

    def test_new_database_untouched(self, orchestrator, mock_client, mock_console):
        """Should not ask anything for a database that does not exist."""
        orchestrator.prepare_target(RestoreTarget("app_db", CreatePolicy.REPLACE_EXISTING))
        mock_console.confirm.assert_not_called()
        mock_client.drop_database.assert_not_called()


class TestCloudSelection:
    """Tests for S3 backup selection and download."""

    def test_yes_picks_newest(self, scripted_ctx, mock_client, tmp_path: Path):
        """Should take the newest backup without prompting under --yes."""
        scripted_ctx.yes = True
        configure(scripted_ctx, cloud={"environments": {"dev": {"bucket": "dev-backups"}}})

        store = MagicMock()
        store.list_services.return_value = ["billing", "orders"]
        store.list_backups.return_value = [
            S3ObjectInfo("billing/billing_2024-01-15.sql", 30, datetime(2024, 1, 15, tzinfo=timezone.utc)),
            S3ObjectInfo("billing/billing_2024-01-14.sql", 30, datetime(2024, 1, 14, tzinfo=timezone.utc)),
        ]
        store.build_s3_uri.side_effect = lambda key: f"s3://dev-backups/{key}"
        store.download.side_effect = lambda key, path: path.write_text("CREATE TABLE t();\n")
        factory = MagicMock(return_value=store)

        orchestrator = RestoreOrchestrator(scripted_ctx, MagicMock(), client=mock_client, store_factory=factory)
        request = RestoreRequest(source="cloud", profile="dev", environment="dev", service="billing")

        with patch("dbrestore.services.orchestrator.available_profiles", return_value=["dev"]):
            with RestoreWorkspace(base_dir=tmp_path) as workspace:
                source = orchestrator.select_source(request, workspace)
                assert source.artifact.path.exists()

        selection = factory.call_args.args[1]
        assert selection.bucket == "dev-backups"
        store.check_bucket.assert_called_once()
        assert source.artifact.key == "billing/billing_2024-01-15.sql"
        assert source.backup_date == date(2024, 1, 15)
        assert source.environment == "dev"
        scripted_ctx.console.choose.assert_not_called()

    def test_yes_skips_every_menu(self, scripted_ctx, mock_client, tmp_path: Path):
        """Should take the first environment and service under --yes instead of asking."""
        scripted_ctx.yes = True
        configure(scripted_ctx, cloud={"environments": {
            "dev": {"bucket": "dev-backups"},
            "prod": {"bucket": "prod-backups"},
        }})

        store = MagicMock()
        store.list_services.return_value = ["auth", "billing"]
        store.list_backups.return_value = [
            S3ObjectInfo("auth/auth_2024-02-01.sql", 30, datetime(2024, 2, 1, tzinfo=timezone.utc)),
        ]
        store.build_s3_uri.side_effect = lambda key: f"s3://dev-backups/{key}"
        store.download.side_effect = lambda key, path: path.write_text("CREATE TABLE t();\n")
        factory = MagicMock(return_value=store)

        orchestrator = RestoreOrchestrator(scripted_ctx, MagicMock(), client=mock_client, store_factory=factory)

        with patch("dbrestore.services.orchestrator.available_profiles", return_value=["dev", "prod"]):
            with RestoreWorkspace(base_dir=tmp_path) as workspace:
                source = orchestrator.select_source(RestoreRequest(), workspace)

        scripted_ctx.console.choose.assert_not_called()
        assert source.environment == "dev"
        assert source.service == "auth"
        assert factory.call_args.args[1].bucket == "dev-backups"
        store.list_backups.assert_called_once_with("auth")

    def test_undated_key_uses_last_modified(self, scripted_ctx, mock_client, tmp_path: Path):
        """Should date an undated backup by its last-modified time."""
        scripted_ctx.yes = True
        configure(scripted_ctx, cloud={"environments": {"dev": {"bucket": "dev-backups"}}})

        store = MagicMock()
        store.list_services.return_value = ["billing"]
        store.list_backups.return_value = [
            S3ObjectInfo("billing/latest.sql", 30, datetime(2024, 3, 9, 22, 15, tzinfo=timezone.utc)),
        ]
        store.build_s3_uri.side_effect = lambda key: f"s3://dev-backups/{key}"
        store.download.side_effect = lambda key, path: path.write_text("CREATE TABLE t();\n")
        orchestrator = RestoreOrchestrator(
            scripted_ctx, MagicMock(), client=mock_client, store_factory=MagicMock(return_value=store)
        )
        request = RestoreRequest(source="cloud", profile="dev", environment="dev", service="billing")

        with patch("dbrestore.services.orchestrator.available_profiles", return_value=["dev"]):
            with RestoreWorkspace(base_dir=tmp_path) as workspace:
                source = orchestrator.select_source(request, workspace)

        assert source.backup_date == date(2024, 3, 9)

    def test_unknown_service(self, scripted_ctx, mock_client, tmp_path: Path):
        """Should list available services when --service does not exist."""
        configure(scripted_ctx, cloud={"environments": {"dev": {"bucket": "dev-backups"}}})
        store = MagicMock()
        store.list_services.return_value = ["billing"]
        orchestrator = RestoreOrchestrator(
            scripted_ctx, MagicMock(), client=mock_client, store_factory=MagicMock(return_value=store)
        )
        request = RestoreRequest(source="cloud", profile="dev", environment="dev", service="missing")

        with patch("dbrestore.services.orchestrator.available_profiles", return_value=["dev"]):
            with RestoreWorkspace(base_dir=tmp_path) as workspace:
                with pytest.raises(ValidationError) as exc:
                    orchestrator.select_source(request, workspace)
        assert "Available: billing" in exc.value.details


class TestRestoreWithRetries:
    """Tests for the retry offer after failed verification."""

    def test_retry_runs_alternatives(self, orchestrator, mock_console, sql_file):
        """Should run the fallback ladder when the user accepts a retry."""
        target = RestoreTarget("app_db", CreatePolicy.CREATE_NEW_DATED)
        dump = DetectedDump(sql_file, DumpFormat.SQL, 1, 10)
        orchestrator.restorer = MagicMock()
        orchestrator.restorer.restore.side_effect = VerificationError("no tables")
        orchestrator.restorer.run_alternatives.return_value = make_result(target, sql_file, "single transaction")

        result = orchestrator.restore_with_retries(dump, target)

        assert result.strategy == "single transaction"
        orchestrator.restorer.run_alternatives.assert_called_once_with(dump, target)
        mock_console.confirm.assert_called_once()

    def test_retry_budget(self, scripted_ctx, mock_client, mock_console, sql_file):
        """Should stop once max_retries passes have been used."""
        configure(scripted_ctx, restore={"max_retries": 1})
        orchestrator = RestoreOrchestrator(scripted_ctx, MagicMock(), client=mock_client)
        orchestrator.restorer = MagicMock()
        orchestrator.restorer.restore.side_effect = VerificationError("no tables")

        with pytest.raises(VerificationError):
            orchestrator.restore_with_retries(
                DetectedDump(sql_file, DumpFormat.SQL, 1, 10),
                RestoreTarget("app_db", CreatePolicy.CREATE_NEW_DATED),
            )
        mock_console.confirm.assert_not_called()

    def test_declined_retry(self, orchestrator, mock_console, sql_file):
        """Should re-raise when the user declines."""
        mock_console.confirm.return_value = False
        orchestrator.restorer = MagicMock()
        orchestrator.restorer.restore.side_effect = VerificationError("no tables")
        with pytest.raises(VerificationError):
            orchestrator.restore_with_retries(
                DetectedDump(sql_file, DumpFormat.SQL, 1, 10),
                RestoreTarget("app_db", CreatePolicy.CREATE_NEW_DATED),
            )
        orchestrator.restorer.run_alternatives.assert_not_called()

    def test_fatal_not_retried(self, orchestrator, mock_console, sql_file):
        """Should not offer a retry after a fatal error."""
        orchestrator.restorer = MagicMock()
        orchestrator.restorer.restore.side_effect = RestoreError("fatal", category="fatal")
        with pytest.raises(RestoreError):
            orchestrator.restore_with_retries(
                DetectedDump(sql_file, DumpFormat.SQL, 1, 10),
                RestoreTarget("app_db", CreatePolicy.CREATE_NEW_DATED),
            )
        mock_console.confirm.assert_not_called()


class TestRun:
    """Tests for the full flow with the executor mocked."""

    def test_cancel_at_plan(self, orchestrator, mock_console, sql_file, mock_client):
        """Should return None and touch nothing when the plan is declined."""
        mock_console.confirm.return_value = False
        request = RestoreRequest(source="local", file=str(sql_file), policy="create-new-dated")

        assert orchestrator.run(request) is None
        mock_client.create_database.assert_not_called()

    def test_local_restore(self, orchestrator, sql_file, mock_client):
        """Should run every stage and return the executor result."""
        orchestrator.restorer = MagicMock()
        orchestrator.restorer.restore.side_effect = lambda dump, target: make_result(target, sql_file)
        request = RestoreRequest(
            source="local", file=str(sql_file), policy="create-new-dated", dbeaver=False,
        )

        result = orchestrator.run(request)

        assert result.target.database_name.startswith("billing_local_")
        dump, target = orchestrator.restorer.restore.call_args.args
        assert dump.path == sql_file.resolve()
        assert dump.format == DumpFormat.SQL

    @pytest.mark.skipif(shutil.which("tar") is None, reason="tar is required")
    def test_corrupt_archive_is_fatal(self, scripted_ctx, mock_client, tmp_path: Path):
        """Should stop at extraction, never restore, and leave no temp files."""
        work = tmp_path / "work"
        configure(scripted_ctx, restore={"temp_dir": str(work)})
        orchestrator = RestoreOrchestrator(scripted_ctx, CommandExecutor(scripted_ctx), client=mock_client)
        orchestrator.restorer = MagicMock()
        archive = tmp_path / "billing_2024-01-15.tar.gz"
        archive.write_bytes(b"this is not a gzip stream" * 40)

        with pytest.raises(ExtractionError) as exc:
            orchestrator.run(RestoreRequest(source="local", file=str(archive), policy="create-new-dated"))

        assert "Extraction failed" in exc.value.message
        orchestrator.restorer.restore.assert_not_called()
        mock_client.create_database.assert_not_called()
        assert work.exists()
        assert not any(work.iterdir())

    def test_missing_tools(self, orchestrator, mock_client, sql_file):
        """Should fail pre-flight before selecting anything."""
        mock_client.missing_tools.return_value = ["pg_restore"]
        with pytest.raises(PrerequisiteError):
            orchestrator.run(RestoreRequest(source="local", file=str(sql_file)))


class TestOfferDBeaver:
    """Tests for the DBeaver offer."""

    def test_registers_connection(self, scripted_ctx, mock_client, local_source, sql_file, tmp_path: Path):
        """Should add the restored database to the configured workspace."""
        workspace = tmp_path / "workspace6"
        configure(scripted_ctx, dbeaver={"workspace": str(workspace)})
        orchestrator = RestoreOrchestrator(scripted_ctx, MagicMock(), client=mock_client)
        target = RestoreTarget("billing_local_2024_01_15", CreatePolicy.CREATE_NEW_DATED)

        orchestrator.offer_dbeaver(RestoreRequest(dbeaver=True), local_source, make_result(target, sql_file))

        data = json.loads((workspace / DATA_SOURCES_RELATIVE).read_text())
        (entry,) = data["connections"].values()
        assert entry["configuration"]["database"] == "billing_local_2024_01_15"
        assert entry["folder"] == "2.Postgres - LOCAL"

    def test_skipped(self, orchestrator, local_source, sql_file, mock_console):
        """Should not ask when --no-dbeaver is given."""
        target = RestoreTarget("db", CreatePolicy.CREATE_NEW_DATED)
        orchestrator.offer_dbeaver(RestoreRequest(dbeaver=False), local_source, make_result(target, sql_file))
        mock_console.confirm.assert_not_called()

    def test_no_workspace_shows_manual_steps(self, orchestrator, local_source, sql_file, mock_console):
        """Should fall back to manual instructions."""
        target = RestoreTarget("db", CreatePolicy.CREATE_NEW_DATED)
        with patch("dbrestore.services.orchestrator.find_workspace", return_value=None):
            orchestrator.offer_dbeaver(RestoreRequest(dbeaver=True), local_source, make_result(target, sql_file))
        mock_console.panel.assert_called_once()

    def test_malformed_data_sources_shows_manual_steps(
        self, scripted_ctx, mock_client, mock_console, local_source, sql_file, tmp_path: Path
    ):
        """Should fall back to manual instructions when data-sources.json has a bad section."""
        workspace = tmp_path / "workspace6"
        path = workspace / DATA_SOURCES_RELATIVE
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"connections": ["not", "a", "mapping"]}))
        configure(scripted_ctx, dbeaver={"workspace": str(workspace)})
        orchestrator = RestoreOrchestrator(scripted_ctx, MagicMock(), client=mock_client)
        target = RestoreTarget("db", CreatePolicy.CREATE_NEW_DATED)

        orchestrator.offer_dbeaver(RestoreRequest(dbeaver=True), local_source, make_result(target, sql_file))

        mock_console.panel.assert_called_once()
        assert json.loads(path.read_text()) == {"connections": ["not", "a", "mapping"]}
