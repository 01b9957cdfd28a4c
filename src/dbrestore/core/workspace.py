"""Scoped temporary workspace for downloads and extraction.

The workspace directory is created fresh for every run and removed when
the ``with`` block exits, whether it ends normally, by exception, by
Ctrl+C or by SIGTERM. Cleanup runs at most once.
"""

import signal
import tempfile
import threading
from pathlib import Path
from types import FrameType
from typing import Any, Optional

from dbrestore.core.output import console


class RestoreWorkspace:
    """Temporary directory owned by one restore run.

    Usage:
        with RestoreWorkspace(base_dir) as workspace:
            download_to = workspace.path / "backup.tar.gz"
            extract_dir = workspace.subdir("extracted")
    """

    def __init__(self, base_dir: Optional[Path] = None, prefix: str = "db-restore-") -> None:
        self.base_dir = base_dir
        self.prefix = prefix
        self._tmp: Optional[tempfile.TemporaryDirectory] = None
        self._path: Optional[Path] = None
        self._cleaned = False
        self._previous_handler: Any = None

    @property
    def path(self) -> Path:
        """Root of the workspace. Only valid inside the ``with`` block."""
        if self._path is None:
            raise RuntimeError("Workspace is not active")
        return self._path

    @property
    def is_cleaned(self) -> bool:
        return self._cleaned

    def subdir(self, name: str) -> Path:
        """Create (if needed) and return a subdirectory of the workspace."""
        directory = self.path / name
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def __enter__(self) -> "RestoreWorkspace":
        if self.base_dir is not None:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        self._tmp = tempfile.TemporaryDirectory(
            prefix=self.prefix,
            dir=str(self.base_dir) if self.base_dir is not None else None,
        )
        self._path = Path(self._tmp.name)
        self._cleaned = False
        self._install_signal_handler()
        console.debug(f"Workspace created: {self._path}")
        return self

    def __exit__(self, *exc_info: Any) -> None:
        try:
            self.cleanup()
        finally:
            self._restore_signal_handler()

    def cleanup(self) -> None:
        """Remove the workspace directory. Safe to call repeatedly."""
        if self._cleaned or self._tmp is None:
            return
        self._cleaned = True
        try:
            self._tmp.cleanup()
            console.debug(f"Workspace removed: {self._path}")
        except OSError as e:
            console.warn(f"Could not remove temporary files in {self._path}: {e}")

    def _install_signal_handler(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        self._previous_handler = signal.signal(signal.SIGTERM, _raise_interrupt)

    def _restore_signal_handler(self) -> None:
        if self._previous_handler is None:
            return
        signal.signal(signal.SIGTERM, self._previous_handler)
        self._previous_handler = None


def _raise_interrupt(signum: int, frame: Optional[FrameType]) -> None:
    # SIGTERM takes the same unwinding path as Ctrl+C
    raise KeyboardInterrupt(f"Received signal {signum}")
