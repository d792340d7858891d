"""The monitoring stack directory under the data directory."""
from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path, PurePosixPath

from ..filesystem import Filesystem, read_file, write_file
from ..locking import LockFactory, Locker, NotLockedError
from .dotenv import parse_env, render_env
from .errors import DataDirError

LOCK_FILE = ".lock"
ENV_FILE = ".env"


class MonitoringStack:
    """Handle over ``monitoring/``: service configs, options and lock.

    Paths passed to :meth:`read_file`, :meth:`write_file` and
    :meth:`create_dir` are relative to the stack directory and may not
    escape it.
    """

    def __init__(self, path: Path, fs: Filesystem, locks: LockFactory) -> None:
        """Bind the handle to the stack directory *path*."""
        self._path = Path(path)
        self._fs = fs
        self._locks = locks
        self._lock: Locker | None = None

    @property
    def path(self) -> Path:
        """Return the stack directory."""
        return self._path

    def init(self) -> None:
        """Create the lock marker of a freshly created stack directory."""
        with self._fs.create(self._path / LOCK_FILE):
            pass

    def installed(self) -> bool:
        """Return ``True`` once the stack options have been written."""
        return self._fs.exists(self._path / ENV_FILE)

    # Locking ----------------------------------------------------------
    def lock(self, timeout: float | None = None) -> None:
        """Acquire the stack's advisory lock."""
        if self._lock is None:
            self._lock = self._locks.lock_for(self._path / LOCK_FILE)
        self._lock.lock(timeout)

    def unlock(self) -> None:
        """Release the stack's advisory lock."""
        if self._lock is None or not self._lock.locked:
            raise NotLockedError(self._path / LOCK_FILE)
        self._lock.unlock()

    @contextmanager
    def locked(self, timeout: float | None = None) -> Iterator[MonitoringStack]:
        """Hold the stack lock for the duration of the ``with`` block."""
        self.lock(timeout)
        try:
            yield self
        finally:
            self.unlock()

    # Files ------------------------------------------------------------
    def read_file(self, relative: str | PurePosixPath) -> bytes:
        """Return the content of a file inside the stack."""
        return read_file(self._fs, self._resolve(relative))

    def write_file(self, relative: str | PurePosixPath, data: bytes) -> None:
        """Atomically replace a file inside the stack."""
        write_file(self._fs, self._resolve(relative), data, atomic=True)

    def create_dir(self, relative: str | PurePosixPath) -> None:
        """Create a directory (and parents) inside the stack."""
        self._fs.makedirs(self._resolve(relative))

    def write_env(self, values: Mapping[str, str]) -> None:
        """Persist the merged stack options to ``.env``."""
        self.write_file(ENV_FILE, render_env(values).encode("utf-8"))

    def read_env(self) -> dict[str, str]:
        """Return the stack options stored in ``.env``."""
        try:
            raw = self.read_file(ENV_FILE)
        except FileNotFoundError:
            return {}
        return parse_env(raw.decode("utf-8"))

    def _resolve(self, relative: str | PurePosixPath) -> Path:
        candidate = PurePosixPath(relative)
        if candidate.is_absolute() or ".." in candidate.parts or not candidate.parts:
            raise DataDirError(f"Path {relative!s} escapes the monitoring stack")
        return self._path.joinpath(*candidate.parts)


__all__ = ["MonitoringStack"]
