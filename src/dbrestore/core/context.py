"""Per-invocation state for a restore run.

One ExecutionContext is built from the CLI flags and handed to the
executor and every service. Configuration is loaded from it on first
access; nothing reads configuration through a global.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dbrestore.core.config import AppConfig, DEFAULT_CONFIG_PATH
from dbrestore.core.output import Console, console, Verbosity


@dataclass
class ExecutionContext:
    """Flags, configuration and console shared by one restore run.

    ``yes`` makes the run non-interactive: menus take their default and
    confirmations are answered yes.
    """

    yes: bool = False
    verbosity: int = Verbosity.NORMAL
    no_color: bool = False
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG_PATH)

    _config: Optional[AppConfig] = field(default=None, repr=False)
    _console: Console = field(default_factory=lambda: console, repr=False)

    def __post_init__(self) -> None:
        self._console.configure(verbosity=self.verbosity, no_color=self.no_color)

    @property
    def config(self) -> AppConfig:
        """Tool configuration, loaded from ``config_path`` on first use."""
        if self._config is None:
            self._config = AppConfig(config_path=self.config_path)
        return self._config

    @property
    def console(self) -> Console:
        return self._console

    @property
    def is_verbose(self) -> bool:
        return self.verbosity >= Verbosity.VERBOSE

    @property
    def is_debug(self) -> bool:
        return self.verbosity >= Verbosity.DEBUG


def create_context(
    yes: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> ExecutionContext:
    """Build the context for one ``db-restore`` invocation.

    ``quiet`` wins over any number of ``-v`` flags; verbosity is capped
    at debug.
    """
    verbosity = Verbosity.QUIET if quiet else min(Verbosity.NORMAL + verbose, Verbosity.DEBUG)
    return ExecutionContext(
        yes=yes,
        verbosity=verbosity,
        no_color=no_color,
        config_path=config or DEFAULT_CONFIG_PATH,
    )
