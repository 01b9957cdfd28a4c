"""Restore orchestration.

RestoreOrchestrator sequences one restore run:

1. Pre-flight: client tools, server readiness, credentials
2. Source selection: S3 (profile, environment, service, backup) or a local file
3. Download and extraction inside a scoped RestoreWorkspace
4. Target database decision (policy, name, overwrite confirmation)
5. RestoreExecutor (restore, ownership fix, verification, fallbacks)
6. Retry offer while verification still fails
7. Optional DBeaver registration, after a successful restore only

Every value that was not passed in a RestoreRequest is asked for
interactively. The workspace is removed on every exit path.
"""

from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Optional

from dbrestore.core.audit import AuditEventType, AuditResult, get_audit_logger
from dbrestore.core.config import ENVIRONMENTS, RESTORE_POLICIES, CloudSelection
from dbrestore.core.context import ExecutionContext
from dbrestore.core.exceptions import (
    ConfigurationError,
    DBRestoreError,
    IntegrationError,
    PrerequisiteError,
    StorageError,
    ValidationError,
    VerificationError,
)
from dbrestore.core.executor import CommandExecutor
from dbrestore.core.validation import validate_database_name, validate_local_path
from dbrestore.core.workspace import RestoreWorkspace
from dbrestore.services.dbeaver import (
    ConnectionSettings,
    DBeaverRegistry,
    connection_name,
    find_workspace,
    folder_name,
    manual_instructions,
    workspace_candidates,
)
from dbrestore.services.dumpfile import (
    BackupArtifact,
    DetectedDump,
    SourceKind,
    format_bytes,
    is_backup_file,
)
from dbrestore.services.extract import ArchiveExtractor
from dbrestore.services.naming import backup_date, dated_database_name, service_from_filename
from dbrestore.services.ownership import OwnershipNormalizer
from dbrestore.services.postgresql import PostgresClient
from dbrestore.services.restore import (
    CreatePolicy,
    RestoreExecutor,
    RestoreResult,
    RestoreTarget,
    describe,
)
from dbrestore.services.storage import S3BackupStore, available_profiles
from dbrestore.services.verify import VerificationGate


POLICY_LABELS: dict[CreatePolicy, str] = {
    CreatePolicy.CREATE_NEW_DATED: "Create new database with date suffix",
    CreatePolicy.CREATE_NEW_NAMED: "Create new database with a custom name",
    CreatePolicy.RESTORE_EXISTING: "Restore into an existing database (created if missing)",
    CreatePolicy.REPLACE_EXISTING: "Replace an existing database (drop and recreate)",
}


class RestoreCancelled(Exception):
    """The user declined a confirmation."""


@dataclass
class RestoreRequest:
    """Choices made up front (CLI flags). None means ask."""

    source: Optional[str] = None  # "cloud" or "local"
    file: Optional[str] = None
    profile: Optional[str] = None
    environment: Optional[str] = None
    service: Optional[str] = None
    backup: Optional[str] = None
    database: Optional[str] = None
    policy: Optional[str] = None
    dbeaver: Optional[bool] = None


@dataclass
class SourceSelection:
    """The chosen backup plus what is known about where it came from."""

    artifact: BackupArtifact
    service: str
    environment: Optional[str] = None
    backup_date: Optional[date] = None

    @property
    def kind(self) -> SourceKind:
        return self.artifact.source_kind


StoreFactory = Callable[[ExecutionContext, CloudSelection], S3BackupStore]


class RestoreOrchestrator:
    """Runs the interactive restore flow end to end.

    Usage:
        orchestrator = RestoreOrchestrator(ctx, executor)
        result = orchestrator.run(RestoreRequest(source="local", file="app.sql"))
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        *,
        client: Optional[PostgresClient] = None,
        store_factory: Optional[StoreFactory] = None,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.config = ctx.config
        self.console = ctx.console
        self.audit = get_audit_logger()

        self.client = client or PostgresClient.from_context(ctx, executor)
        self.extractor = ArchiveExtractor(ctx, executor)
        self.normalizer = OwnershipNormalizer(ctx, executor, self.client)
        self.gate = VerificationGate(ctx, executor, self.client)
        self.restorer = RestoreExecutor(ctx, executor, self.client, self.normalizer, self.gate)
        self.store_factory: StoreFactory = store_factory or S3BackupStore

    def run(self, request: RestoreRequest) -> Optional[RestoreResult]:
        """Run one restore.

        Returns:
            The RestoreResult, or None when the user cancelled

        Raises:
            DBRestoreError: Any failure that ends the run
        """
        with self.audit.restore_run():
            try:
                self.preflight()
                with RestoreWorkspace(base_dir=self.config.restore.temp_dir) as workspace:
                    source = self.select_source(request, workspace)
                    dump = self.extract(source, workspace)
                    target = self.choose_target(request, source)
                    self.confirm_plan(source, dump, target)
                    self.prepare_target(target)
                    result = self.restore_with_retries(dump, target)
            except RestoreCancelled:
                self.console.warn("Operation cancelled")
                self.audit.record(AuditEventType.RESTORE_COMPLETE, AuditResult.CANCELLED)
                return None

            self.console.operation_summary("Restore", True, describe(result))
            self.offer_dbeaver(request, source, result)
            return result

    # Pre-flight
    def preflight(self) -> None:
        """Check client tools and the server before touching anything.

        Raises:
            PrerequisiteError: If a tool is missing or the server is unreachable
        """
        self.console.step("Checking prerequisites...")
        missing = self.client.missing_tools()
        if missing:
            raise PrerequisiteError(
                f"Required commands not found: {', '.join(missing)}",
                hint="Install the PostgreSQL client tools (postgresql-client) plus tar and gzip",
            )

        if not self.client.is_ready():
            raise PrerequisiteError(
                f"PostgreSQL is not accepting connections at {self.client.host}:{self.client.port}",
                hint="Start PostgreSQL or check PG_HOST and PG_PORT",
            )
        self.client.check_connection()
        self.console.success(
            f"PostgreSQL is ready at {self.client.host}:{self.client.port} (user {self.client.user})"
        )

    # Source selection
    def select_source(self, request: RestoreRequest, workspace: RestoreWorkspace) -> SourceSelection:
        kind = request.source
        if kind is None:
            index = self._pick("Select backup source", ["Cloud (S3)", "Local file"])
            kind = "cloud" if index == 0 else "local"
        if kind not in ("cloud", "local"):
            raise ValidationError(
                f"Unknown source: {kind}",
                hint="Use --source cloud or --source local",
            )
        if kind == "cloud":
            return self.select_cloud_backup(request, workspace)
        return self.select_local_file(request)

    def select_cloud_backup(self, request: RestoreRequest, workspace: RestoreWorkspace) -> SourceSelection:
        """Pick profile, environment, service and backup, then download it.

        Raises:
            ConfigurationError: If no environment has a bucket configured
            StorageError: If listing or download fails, or nothing is found
        """
        profiles = available_profiles(self.config.cloud.profiles)
        profile = request.profile
        if profile is None:
            profile = profiles[self._pick("Select AWS profile", profiles)]

        environments = self.config.configured_environments()
        if not environments:
            raise ConfigurationError(
                "No S3 bucket configured for any environment",
                hint="Set S3_BUCKET_DEV, S3_BUCKET_STAGE or S3_BUCKET_PROD",
            )
        environment = request.environment
        if environment is None:
            labels = [f"{env.upper()} ({self.config.cloud.environments[env].bucket})" for env in environments]
            environment = environments[self._pick("Select environment", labels)]
        elif environment not in ENVIRONMENTS:
            raise ValidationError(
                f"Unknown environment: {environment}",
                hint=f"Use one of: {', '.join(ENVIRONMENTS)}",
            )

        selection = self.config.select_cloud(profile, environment)
        store = self.store_factory(self.ctx, selection)
        store.check_bucket()

        services = store.list_services()
        if not services:
            raise StorageError(f"No services found in s3://{selection.bucket}")
        service = request.service
        if service is None:
            service = services[self._pick("Select service", services)]
        elif service not in services:
            raise ValidationError(
                f"Service '{service}' not found in s3://{selection.bucket}",
                details=[f"Available: {', '.join(services)}"],
            )

        backups = store.list_backups(service)
        if not backups:
            raise StorageError(
                f"No backups found for service '{service}'",
                hint="Supported files: .sql, .tar.gz, .tgz, .tar, .gz, .dump, .dmp, .pg_dump, .backup, .bak",
            )
        if request.backup is None:
            labels = [
                f"{b.name} ({b.last_modified:%Y-%m-%d %H:%M}, {format_bytes(b.size)})"
                for b in backups
            ]
            backup = backups[self._pick("Select backup (newest first)", labels)]
        else:
            matches = [b for b in backups if request.backup in (b.name, b.key)]
            if not matches:
                raise ValidationError(
                    f"Backup '{request.backup}' not found for service '{service}'",
                    details=[f"Newest: {backups[0].name}"],
                )
            backup = matches[0]

        local_path = workspace.subdir("download") / backup.name
        self.console.step(f"Downloading {store.build_s3_uri(backup.key)} ({format_bytes(backup.size)})...")
        try:
            with self.console.status(f"Downloading {backup.name}..."):
                store.download(backup.key, local_path)
        except StorageError as e:
            self.audit.failure(AuditEventType.BACKUP_DOWNLOAD, e.message, backup=backup.key)
            raise
        self.audit.success(AuditEventType.BACKUP_DOWNLOAD, backup=backup.key, size=backup.size)
        self.console.success(f"Downloaded {backup.name}")

        artifact = BackupArtifact.from_path(
            local_path,
            SourceKind.CLOUD,
            key=backup.key,
            last_modified=backup.last_modified,
        )
        return SourceSelection(
            artifact=artifact,
            service=service,
            environment=environment,
            backup_date=backup_date(backup.key) or backup.last_modified.date(),
        )

    def _pick(self, message: str, labels: list[str]) -> int:
        """Choose from a list; with --yes the first entry is taken."""
        if self.ctx.yes:
            self.console.info(f"{message}: {labels[0]}")
            return 0
        return self.console.choose(message, labels)

    def select_local_file(self, request: RestoreRequest) -> SourceSelection:
        """Validate a local path, asking again on bad interactive input."""
        if request.file is not None:
            path = validate_local_path(request.file)
        else:
            while True:
                raw = self.console.prompt("Path to the dump file")
                try:
                    path = validate_local_path(raw)
                    break
                except ValidationError as e:
                    self.console.error(e.message)
                    if e.hint:
                        self.console.hint(e.hint)

        if not is_backup_file(path.name):
            self.console.warn(
                f"{path.name} has no recognized backup extension; its format will be detected from content"
            )

        artifact = BackupArtifact.from_path(path, SourceKind.LOCAL)
        self.console.success(f"Using {path} ({format_bytes(artifact.size_bytes)})")
        return SourceSelection(artifact=artifact, service=service_from_filename(path.name))

    # Extraction
    def extract(self, source: SourceSelection, workspace: RestoreWorkspace) -> DetectedDump:
        artifact = source.artifact
        try:
            dump = self.extractor.extract(artifact.path, workspace.subdir("extracted"))
        except DBRestoreError as e:
            self.audit.failure(AuditEventType.BACKUP_EXTRACT, e.message, backup=artifact.name)
            raise
        self.audit.success(
            AuditEventType.BACKUP_EXTRACT,
            backup=artifact.name,
            dump=dump.path.name,
            format=dump.format.value,
        )
        return dump

    # Target database
    def choose_target(self, request: RestoreRequest, source: SourceSelection) -> RestoreTarget:
        policy = self._choose_policy(request)

        default_name = dated_database_name(
            source.service,
            environment=source.environment,
            on=source.backup_date if source.kind == SourceKind.CLOUD else None,
        )

        if request.database is not None:
            name = validate_database_name(request.database)
        elif policy == CreatePolicy.CREATE_NEW_DATED or self.ctx.yes:
            name = default_name
            self.console.info(f"New database name: {name}")
        else:
            questions = {
                CreatePolicy.CREATE_NEW_NAMED: "New database name",
                CreatePolicy.RESTORE_EXISTING: "Database name (created if it does not exist)",
                CreatePolicy.REPLACE_EXISTING: "Database name to replace",
            }
            while True:
                raw = self.console.prompt(questions[policy], default=default_name)
                try:
                    name = validate_database_name(raw)
                    break
                except ValidationError as e:
                    self.console.error(e.message)
                    for detail in e.details:
                        self.console.print(f"  [dim]{detail}[/dim]")

        target = RestoreTarget(name, policy)
        target.exists = self.client.database_exists(name)
        return target

    def _choose_policy(self, request: RestoreRequest) -> CreatePolicy:
        if request.policy is not None:
            if request.policy not in RESTORE_POLICIES:
                raise ValidationError(
                    f"Unknown policy: {request.policy}",
                    hint=f"Use one of: {', '.join(RESTORE_POLICIES)}",
                )
            return CreatePolicy(request.policy)

        policies = list(CreatePolicy)
        default = policies.index(CreatePolicy(self.config.restore.default_policy))
        if self.ctx.yes:
            self.console.info(f"Database configuration: {policies[default].value}")
            return policies[default]
        index = self.console.choose(
            "Database configuration",
            [POLICY_LABELS[p] for p in policies],
            default=default,
        )
        return policies[index]

    def confirm_plan(self, source: SourceSelection, dump: DetectedDump, target: RestoreTarget) -> None:
        artifact = source.artifact
        items = {
            "Source": (
                f"s3 {source.environment.upper()} / {source.service}"
                if source.kind == SourceKind.CLOUD and source.environment
                else "local file"
            ),
            "Backup": artifact.name,
            "Size": format_bytes(artifact.size_bytes),
            "Dump": f"{dump.path.name} ({dump.format.value}, {format_bytes(dump.size_bytes)})",
            "Server": f"{self.client.host}:{self.client.port} as {self.client.user}",
            "Database": target.database_name,
            "Policy": target.create_policy.value,
            "Database exists": target.exists,
        }
        self.console.summary("Restore plan", items)
        if not self.console.confirm("Proceed with restore?", default=True, skip_confirm=self.ctx.yes):
            raise RestoreCancelled()

    def prepare_target(self, target: RestoreTarget) -> None:
        """Apply the policy to an existing database before restoring.

        create-new-* and replace-existing drop an existing database after
        confirmation; restore-existing reuses it in place.
        """
        if not target.exists or target.create_policy == CreatePolicy.RESTORE_EXISTING:
            if target.exists:
                self.console.info(f"Restoring into existing database '{target.database_name}'")
            return

        if target.create_policy.creates_new:
            question = (
                f"Database '{target.database_name}' already exists. Overwrite it?"
            )
        else:
            question = f"Drop and recreate database '{target.database_name}'? All its data will be lost"
        self.console.warn(f"Database '{target.database_name}' already exists")
        if not self.console.confirm(question, default=False, skip_confirm=self.ctx.yes):
            raise RestoreCancelled()

        self.console.step(f"Dropping database '{target.database_name}'...")
        try:
            self.client.drop_database(target.database_name)
        except DBRestoreError as e:
            self.audit.failure(AuditEventType.DATABASE_DROP, e.message, database=target.database_name)
            raise
        self.audit.success(AuditEventType.DATABASE_DROP, database=target.database_name)
        target.exists = False

    # Restore
    def restore_with_retries(self, dump: DetectedDump, target: RestoreTarget) -> RestoreResult:
        """Restore, then offer the fallback ladder while verification fails.

        The first pass counts toward MAX_RETRIES.
        """
        max_passes = self.config.restore.max_retries
        self.audit.success(
            AuditEventType.RESTORE_START,
            database=target.database_name,
            dump=dump.path.name,
            format=dump.format.value,
            policy=target.create_policy.value,
        )

        passes = 1
        existed = target.exists
        try:
            result = self.restorer.restore(dump, target)
        except VerificationError as e:
            if e.connectivity:
                self._audit_restore_failure(target, e)
                raise
            failure = e
            result = None
        except DBRestoreError as e:
            self._audit_restore_failure(target, e)
            raise
        finally:
            if not existed and target.exists:
                self.audit.success(AuditEventType.DATABASE_CREATE, database=target.database_name)

        while result is None:
            if passes >= max_passes:
                self.console.error(f"Restore still failing after {passes} pass(es)")
                self._audit_restore_failure(target, failure)
                raise failure
            if not self.console.confirm(
                "Verification failed. Try alternative restore strategies?",
                default=True,
                skip_confirm=self.ctx.yes,
            ):
                self._audit_restore_failure(target, failure)
                raise failure
            passes += 1
            self.console.info(f"Restore pass {passes} of {max_passes}")
            try:
                result = self.restorer.run_alternatives(dump, target)
            except VerificationError as e:
                if e.connectivity:
                    self._audit_restore_failure(target, e)
                    raise
                failure = e
            except DBRestoreError as e:
                self._audit_restore_failure(target, e)
                raise

        self.audit.success(
            AuditEventType.RESTORE_COMPLETE,
            database=target.database_name,
            strategy=result.strategy,
            tables=result.report.table_count,
            passes=passes,
        )
        return result

    def _audit_restore_failure(self, target: RestoreTarget, error: DBRestoreError) -> None:
        self.audit.failure(AuditEventType.RESTORE_COMPLETE, error.message, database=target.database_name)

    # DBeaver
    def offer_dbeaver(self, request: RestoreRequest, source: SourceSelection, result: RestoreResult) -> None:
        """Register the restored database in DBeaver. Never fails the run."""
        dbeaver_config = self.config.dbeaver
        if request.dbeaver is False or (request.dbeaver is None and not dbeaver_config.enabled):
            return
        if request.dbeaver is None and not self.console.confirm(
            "Add a DBeaver connection for this database?",
            default=True,
            skip_confirm=self.ctx.yes,
        ):
            return

        database = result.target.database_name
        settings = ConnectionSettings(
            name=connection_name(
                database,
                source.kind,
                environment=source.environment,
                backup_date=source.backup_date,
                service=source.service,
                style=dbeaver_config.folder_style,
            ),
            folder=folder_name(source.kind, source.environment, dbeaver_config.folder_style),
            host=self.client.host,
            port=self.client.port,
            database=database,
            user=self.client.user,
        )

        workspace = dbeaver_config.workspace or find_workspace(workspace_candidates())
        if workspace is None:
            self.console.warn("DBeaver workspace not found")
            self._show_manual_dbeaver(settings)
            return

        try:
            registry = DBeaverRegistry(self.ctx, Path(workspace).expanduser())
            connection_id = registry.add_connection(settings)
        except IntegrationError as e:
            self.console.warn(f"Could not add DBeaver connection: {e.message}")
            self.audit.failure(AuditEventType.DBEAVER_REGISTER, e.message, database=database)
            self._show_manual_dbeaver(settings)
            return

        if registry.validate(connection_id):
            self.console.success(f"DBeaver connection added: {settings.name}")
            self.console.info(f"Folder: {settings.folder}. Restart DBeaver or refresh to see it.")
            self.audit.success(AuditEventType.DBEAVER_REGISTER, database=database, connection_id=connection_id)
        else:
            self.console.warn("DBeaver connection could not be validated")
            self._show_manual_dbeaver(settings)

    def _show_manual_dbeaver(self, settings: ConnectionSettings) -> None:
        lines = [f"{i}. {step}" for i, step in enumerate(manual_instructions(settings), start=1)]
        self.console.panel("\n".join(lines), title="Manual DBeaver setup", border_style="yellow")
