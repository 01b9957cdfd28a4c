"""External command execution.

Provides:
- Command execution with output capture
- Streaming stdout to a file (for decompression)
- Secret-safe command logging

All database and archive work goes through CommandExecutor.run(), so
services can be tested with a fake runner that returns scripted results.
"""

import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dbrestore.core.context import ExecutionContext
from dbrestore.core.exceptions import ExecutionError, PrerequisiteError


@dataclass
class CommandResult:
    """Result of a command execution."""
    command: list[str]
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """Check if command succeeded."""
        return self.return_code == 0


class CommandExecutor:
    """Synchronous command execution with output capture.

    Features:
    - Output capture for processing
    - Optional stdout redirection to a file
    - Extra environment variables (PGPASSWORD) never logged
    - Sensitive command masking
    """

    def __init__(self, ctx: ExecutionContext) -> None:
        """Initialize executor with context.

        Args:
            ctx: Execution context with flags
        """
        self.ctx = ctx

    def run(
        self,
        command: list[str],
        *,
        description: Optional[str] = None,
        check: bool = True,
        sensitive: bool = False,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Path] = None,
        stdout_path: Optional[Path] = None,
    ) -> CommandResult:
        """Execute an external command.

        Args:
            command: Command as list of strings
            description: Human-readable description for logging
            check: Raise exception on non-zero exit
            sensitive: Don't log the actual command
            env: Additional environment variables
            cwd: Working directory
            stdout_path: Write stdout to this file instead of capturing it

        Returns:
            CommandResult with output

        Raises:
            ExecutionError: If command fails and check=True
            PrerequisiteError: If the executable is not installed
        """
        if description:
            self.ctx.console.step(description)

        cmd_display = "<sensitive command>" if sensitive else shlex.join(command)
        self.ctx.console.debug(f"Running: {cmd_display}")

        run_env = None
        if env:
            run_env = os.environ.copy()
            run_env.update(env)

        out = open(stdout_path, "wb") if stdout_path is not None else None
        try:
            result = subprocess.run(
                command,
                stdout=out if out is not None else subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                env=run_env,
                cwd=cwd,
            )
            stdout = result.stdout if out is None else ""
        except FileNotFoundError as e:
            raise PrerequisiteError(
                f"Required command not found: {command[0]}",
                hint=f"Install {command[0]} and make sure it is on your PATH",
            ) from e
        finally:
            if out is not None:
                out.close()

        cmd_result = CommandResult(
            command=command,
            return_code=result.returncode,
            stdout=stdout or "",
            stderr=result.stderr or "",
        )

        if self.ctx.is_debug and cmd_result.stderr.strip():
            self.ctx.console.debug(f"stderr: {cmd_result.stderr.strip()[:1000]}")

        if check and result.returncode != 0:
            raise ExecutionError(
                f"Command failed: {description or cmd_display}",
                command=cmd_display,
                return_code=result.returncode,
                stderr=result.stderr,
            )

        return cmd_result
