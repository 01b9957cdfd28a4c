"""Restore execution with classification, remediation and fallbacks.

RestoreExecutor drives one DetectedDump into one RestoreTarget:

    Idle -> Preparing -> Executing -> Succeeded
                                   -> OwnershipIssue
                                   -> GeneralFailure
                                   -> FatalFailure

Every attempt that is not fatal is followed by verification, because
psql and pg_restore exit non-zero for benign reasons. Ownership problems
and failed verification trigger the OwnershipNormalizer and a second
verification. A general failure that still does not verify falls
through to the alternative-restore ladder.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from dbrestore.core.audit import AuditEventType, AuditResult, get_audit_logger
from dbrestore.core.context import ExecutionContext
from dbrestore.core.exceptions import ExecutionError, RestoreError, VerificationError
from dbrestore.core.executor import CommandExecutor, CommandResult
from dbrestore.services.classify import ErrorCategory, classify, error_lines
from dbrestore.services.dumpfile import DetectedDump, DumpFormat
from dbrestore.services.ownership import OwnershipNormalizer, OwnershipReport
from dbrestore.services.postgresql import PostgresClient
from dbrestore.services.verify import VerificationGate, VerificationReport


class RestoreState(str, Enum):
    """Restore executor states."""
    IDLE = "idle"
    PREPARING = "preparing"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    OWNERSHIP_ISSUE = "ownership_issue"
    GENERAL_FAILURE = "general_failure"
    FATAL_FAILURE = "fatal_failure"


class CreatePolicy(str, Enum):
    """How the target database is chosen and prepared."""
    CREATE_NEW_DATED = "create-new-dated"
    CREATE_NEW_NAMED = "create-new-named"
    RESTORE_EXISTING = "restore-existing"
    REPLACE_EXISTING = "replace-existing"

    @property
    def creates_new(self) -> bool:
        return self in (CreatePolicy.CREATE_NEW_DATED, CreatePolicy.CREATE_NEW_NAMED)


_CATEGORY_STATE = {
    ErrorCategory.NONE: RestoreState.SUCCEEDED,
    ErrorCategory.RECOVERABLE: RestoreState.SUCCEEDED,
    ErrorCategory.OWNERSHIP: RestoreState.OWNERSHIP_ISSUE,
    ErrorCategory.GENERAL: RestoreState.GENERAL_FAILURE,
    ErrorCategory.FATAL: RestoreState.FATAL_FAILURE,
}

_ATTEMPT_RESULT = {
    ErrorCategory.NONE: AuditResult.SUCCESS,
    ErrorCategory.RECOVERABLE: AuditResult.SUCCESS,
    ErrorCategory.OWNERSHIP: AuditResult.PARTIAL,
    ErrorCategory.GENERAL: AuditResult.PARTIAL,
    ErrorCategory.FATAL: AuditResult.FAILURE,
}


class RestoreTarget:
    """The database a dump is restored into.

    ``database_name`` is fixed once the restore begins; only ``exists``
    keeps changing as the database is created, dropped or re-checked.
    """

    def __init__(self, database_name: str, create_policy: CreatePolicy, exists: bool = False) -> None:
        self._database_name = database_name
        self._locked = False
        self.create_policy = create_policy
        self.exists = exists

    @property
    def database_name(self) -> str:
        return self._database_name

    @database_name.setter
    def database_name(self, value: str) -> None:
        if self._locked:
            raise RestoreError(
                f"Cannot rename restore target '{self._database_name}' after restore has begun"
            )
        self._database_name = value

    @property
    def is_locked(self) -> bool:
        return self._locked

    def lock(self) -> None:
        self._locked = True

    def __repr__(self) -> str:
        return (
            f"RestoreTarget(database_name={self._database_name!r}, "
            f"create_policy={self.create_policy.value!r}, exists={self.exists!r})"
        )


@dataclass(frozen=True)
class RestoreOutcome:
    """One restore attempt, classified on its own."""

    exit_code: int
    stdout: str
    stderr: str
    category: ErrorCategory

    @classmethod
    def from_result(cls, result: CommandResult) -> "RestoreOutcome":
        return cls(
            exit_code=result.return_code,
            stdout=result.stdout,
            stderr=result.stderr,
            category=classify(result.stderr, result.stdout, result.return_code),
        )


@dataclass
class RestoreResult:
    """Final result of RestoreExecutor.restore()."""

    target: RestoreTarget
    dump: DetectedDump
    state: RestoreState
    report: VerificationReport
    outcomes: list[RestoreOutcome] = field(default_factory=list)
    ownership: Optional[OwnershipReport] = None
    strategy: str = "primary"

    @property
    def warnings(self) -> int:
        """Attempts that finished with a non-NONE category."""
        return sum(1 for o in self.outcomes if o.category != ErrorCategory.NONE)


@dataclass(frozen=True)
class AlternativeStrategy:
    """A rung of the fallback ladder: one or more commands run in order."""

    name: str
    commands: tuple[tuple[str, ...], ...]


def primary_command(client: PostgresClient, dump: DetectedDump, database: str) -> list[str]:
    """Build the first restore command for a dump format.

    SQL and unknown formats go through psql without stopping on errors.
    Custom and directory formats go through pg_restore, which drops
    conflicting objects and skips owner, privilege, security-label and
    tablespace directives.
    """
    if dump.format in (DumpFormat.CUSTOM, DumpFormat.DIRECTORY):
        return [
            "pg_restore", *client.connection_args(),
            "-d", database,
            "--clean", "--if-exists",
            "--no-owner", "--no-privileges",
            "--no-security-labels", "--no-tablespaces",
            "--verbose",
            str(dump.path),
        ]
    return client.psql_command(
        database,
        "-X", "-v", "ON_ERROR_STOP=0", "-v", "VERBOSITY=verbose",
        "-f", str(dump.path),
    )


def alternative_strategies(
    client: PostgresClient,
    dump: DetectedDump,
    database: str,
) -> list[AlternativeStrategy]:
    """Fallback ladder, most faithful first."""
    path = str(dump.path)
    if dump.format in (DumpFormat.CUSTOM, DumpFormat.DIRECTORY):
        base = ("pg_restore", *client.connection_args(), "-d", database)
        return [
            AlternativeStrategy("minimal flags", (
                (*base, "--no-owner", "--no-privileges", "--verbose", path),
            )),
            AlternativeStrategy("data only", (
                (*base, "--data-only", "--no-owner", "--no-privileges", "--verbose", path),
            )),
            AlternativeStrategy("schema then data", (
                (*base, "--schema-only", "--no-owner", "--no-privileges", path),
                (*base, "--data-only", "--no-owner", "--no-privileges", path),
            )),
        ]
    return [
        AlternativeStrategy("single transaction", (
            tuple(client.psql_command(
                database, "-X", "--single-transaction", "-v", "ON_ERROR_STOP=0", "-f", path,
            )),
        )),
        AlternativeStrategy("no transaction", (
            tuple(client.psql_command(
                database, "-X", "-v", "ON_ERROR_STOP=0", "-q", "-f", path,
            )),
        )),
    ]


class RestoreExecutor:
    """Runs a restore and recovers from the failures restore tools report.

    Usage:
        executor = RestoreExecutor(ctx, cmd, client, normalizer, gate)
        result = executor.restore(dump, RestoreTarget("app_2024_01_15", CreatePolicy.CREATE_NEW_DATED))
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        client: PostgresClient,
        normalizer: OwnershipNormalizer,
        gate: VerificationGate,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.client = client
        self.normalizer = normalizer
        self.gate = gate
        self.audit = get_audit_logger()
        self.state = RestoreState.IDLE
        self.history: list[RestoreState] = [RestoreState.IDLE]

    def _transition(self, state: RestoreState) -> None:
        self.ctx.console.debug(f"Restore state: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    @property
    def owner(self) -> str:
        return self.client.user

    def restore(self, dump: DetectedDump, target: RestoreTarget) -> RestoreResult:
        """Restore ``dump`` into ``target``.

        Args:
            dump: The selected dump
            target: Destination database; locked for the rest of the run

        Returns:
            RestoreResult with a passing verification report

        Raises:
            RestoreError: On fatal output, a missing dump, or an exhausted ladder
            VerificationError: If the database still has no tables
            PostgresError: If the target database cannot be created
        """
        self._transition(RestoreState.PREPARING)
        self._prepare(dump, target)

        self._transition(RestoreState.EXECUTING)
        command = primary_command(self.client, dump, target.database_name)
        outcome = self._attempt(
            command,
            f"Restoring {dump.format.value} dump into '{target.database_name}'",
            target.database_name,
        )
        result_state = _CATEGORY_STATE[outcome.category]
        self._transition(result_state)
        outcomes = [outcome]

        if outcome.category == ErrorCategory.FATAL:
            raise RestoreError(
                f"Restore of '{target.database_name}' failed with a fatal error",
                category=outcome.category.value,
                stderr=_first_errors(outcome.stderr),
                hint="Fix the reported problem and run the restore again",
            )

        if outcome.category == ErrorCategory.RECOVERABLE:
            self.ctx.console.warn("Restore reported benign errors (objects already exist or were skipped)")
        elif outcome.category == ErrorCategory.OWNERSHIP:
            self.ctx.console.warn("Restore reported ownership or permission errors")
        elif outcome.category == ErrorCategory.GENERAL:
            self.ctx.console.warn(f"Restore exited with code {outcome.exit_code}, checking what was restored")

        report, failure = self._try_verify(target.database_name)
        ownership: Optional[OwnershipReport] = None

        if outcome.category == ErrorCategory.OWNERSHIP or report is None:
            ownership = self._normalize(target.database_name)
            report, failure = self._try_verify(target.database_name)

        if report is not None:
            if self.state != RestoreState.SUCCEEDED:
                self._transition(RestoreState.SUCCEEDED)
            return RestoreResult(
                target=target,
                dump=dump,
                state=self.state,
                report=report,
                outcomes=outcomes,
                ownership=ownership,
            )

        if outcome.category != ErrorCategory.GENERAL and failure is not None:
            raise failure

        return self.run_alternatives(dump, target, original=outcome, outcomes=outcomes)

    def run_alternatives(
        self,
        dump: DetectedDump,
        target: RestoreTarget,
        *,
        original: Optional[RestoreOutcome] = None,
        outcomes: Optional[list[RestoreOutcome]] = None,
    ) -> RestoreResult:
        """Walk the fallback ladder until one rung runs without an error.

        A rung is only tried when the previous one raised. The first rung
        that completes is followed by ownership normalization and
        verification.

        Raises:
            RestoreError: If every rung failed (carries the original error)
            VerificationError: If the accepted rung left no tables behind
        """
        outcomes = list(outcomes or [])
        strategies = alternative_strategies(self.client, dump, target.database_name)
        self.ctx.console.step("Trying alternative restore strategies...")

        accepted: Optional[str] = None
        last_error: Optional[ExecutionError] = None
        for strategy in strategies:
            self.ctx.console.info(f"Alternative restore: {strategy.name}")
            try:
                for command in strategy.commands:
                    result = self.executor.run(
                        list(command),
                        description=f"Alternative restore ({strategy.name})",
                        env=self.client.env,
                    )
                    outcomes.append(RestoreOutcome.from_result(result))
            except ExecutionError as e:
                last_error = e
                self.ctx.console.warn(f"Alternative restore '{strategy.name}' failed")
                self.audit.failure(
                    AuditEventType.RESTORE_ATTEMPT,
                    e.message,
                    database=target.database_name,
                    strategy=strategy.name,
                    exit_code=e.return_code,
                )
                continue
            self.audit.success(
                AuditEventType.RESTORE_ATTEMPT,
                database=target.database_name,
                strategy=strategy.name,
            )
            accepted = strategy.name
            break

        if accepted is None:
            self._transition(RestoreState.FATAL_FAILURE)
            stderr = original.stderr if original else (last_error.stderr if last_error else None)
            raise RestoreError(
                f"All restore strategies failed for '{target.database_name}'",
                category=ErrorCategory.FATAL.value,
                stderr=_first_errors(stderr),
                hint="Check the dump with 'db-restore inspect' and the server logs",
            )

        self.ctx.console.success(f"Alternative restore '{accepted}' completed")
        ownership = self._normalize(target.database_name)
        report = self._verify(target.database_name)
        self._transition(RestoreState.SUCCEEDED)
        return RestoreResult(
            target=target,
            dump=dump,
            state=self.state,
            report=report,
            outcomes=outcomes,
            ownership=ownership,
            strategy=accepted,
        )

    def _prepare(self, dump: DetectedDump, target: RestoreTarget) -> None:
        _check_dump(dump.path)

        target.exists = self.client.database_exists(target.database_name)
        if not target.exists:
            self.ctx.console.step(f"Creating database '{target.database_name}'...")
            self.client.create_database(target.database_name)
            target.exists = True
        target.lock()

        report = self.normalizer.prepare(target.database_name, self.owner)
        for failure in report.failures:
            self.ctx.console.verbose(f"Ownership preparation: {failure}")

    def _attempt(self, command: list[str], description: str, database: str) -> RestoreOutcome:
        self.ctx.console.step(f"{description}...")
        result = self.executor.run(
            command,
            description=description,
            check=False,
            env=self.client.env,
        )
        outcome = RestoreOutcome.from_result(result)
        self.ctx.console.verbose(
            f"Restore finished: exit code {outcome.exit_code}, category {outcome.category.value}"
        )
        for line in error_lines(outcome.stderr):
            self.ctx.console.verbose(f"  {line}")
        self.audit.record(
            AuditEventType.RESTORE_ATTEMPT,
            _ATTEMPT_RESULT[outcome.category],
            database=database,
            strategy="primary",
            exit_code=outcome.exit_code,
            category=outcome.category.value,
        )
        return outcome

    def _normalize(self, database: str) -> OwnershipReport:
        report = self.normalizer.normalize(database, self.owner)
        self.audit.record(
            AuditEventType.OWNERSHIP_FIX,
            AuditResult.SUCCESS if report.ok else AuditResult.PARTIAL,
            database=database,
            owner=report.owner,
            changed=report.total_changed,
            failed=len(report.failures),
        )
        return report

    def _verify(self, database: str) -> VerificationReport:
        try:
            report = self.gate.verify(database)
        except VerificationError as e:
            self.audit.failure(AuditEventType.VERIFY, e.message, database=database)
            raise
        self.audit.success(
            AuditEventType.VERIFY,
            database=database,
            tables=report.table_count,
            size=report.database_size_pretty,
        )
        return report

    def _try_verify(
        self, database: str
    ) -> tuple[Optional[VerificationReport], Optional[VerificationError]]:
        """Verify, returning the error instead of raising it unless connectivity failed."""
        try:
            return self._verify(database), None
        except VerificationError as e:
            if e.connectivity:
                self._transition(RestoreState.FATAL_FAILURE)
                raise
            return None, e


def _check_dump(path: Path) -> None:
    if path.is_dir():
        if not (path / "toc.dat").is_file():
            raise RestoreError(
                f"Dump directory is missing toc.dat: {path}",
                category=ErrorCategory.FATAL.value,
            )
        return
    if not path.is_file():
        raise RestoreError(
            f"Dump file no longer exists: {path}",
            category=ErrorCategory.FATAL.value,
        )
    if path.stat().st_size == 0:
        raise RestoreError(
            f"Dump file is empty: {path}",
            category=ErrorCategory.FATAL.value,
        )


def _first_errors(stderr: Optional[str]) -> Optional[str]:
    if not stderr:
        return None
    lines = error_lines(stderr)
    return "\n".join(lines) if lines else stderr


def describe(result: RestoreResult) -> dict[str, Any]:
    """Summary fields for the final panel."""
    report = result.report
    details: dict[str, Any] = {
        "Database": result.target.database_name,
        "Dump": f"{result.dump.path.name} ({result.dump.format.value})",
        "Strategy": result.strategy,
        "Tables": report.table_count,
        "Sequences": report.sequence_count,
        "Views": report.view_count,
        "Size": report.database_size_pretty,
    }
    if result.ownership is not None:
        details["Ownership"] = (
            f"{result.ownership.total_changed} reassigned"
            + (f", {len(result.ownership.failures)} failed" if result.ownership.failures else "")
        )
    return details
