"""Advisory locks keyed by filesystem paths.

The unit of concurrency for eigenctl is the operating-system process: several
CLI invocations may run against the same data directory at once. Instances
and the monitoring stack therefore carry a zero-byte ``.lock`` marker that is
locked with ``flock(2)`` before their state is mutated. The lock file is never
written to, so acquiring a lock never requires parsing state.

:class:`LockManager` is the lock factory injected into
:class:`~eigenctl.data.datadir.DataDir`. :class:`MemoryLockManager` offers the
same interface with in-process primitives and pairs with
:class:`~eigenctl.filesystem.MemoryFilesystem` in tests.
"""
from __future__ import annotations

import fcntl
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

_POLL_INTERVAL = 0.05


class LockError(RuntimeError):
    """Base class for locking failures."""


class LockTimeoutError(LockError):
    """Raised when a lock cannot be acquired before the timeout expires."""

    def __init__(self, path: Path, timeout: float) -> None:
        """Record the contended *path* and the *timeout* that elapsed."""
        super().__init__(f"Timed out after {timeout:.2f}s waiting for lock {path}")
        self.path = path
        self.timeout = timeout


class NotLockedError(LockError):
    """Raised when releasing a lock that this handle does not hold."""

    def __init__(self, path: Path) -> None:
        """Record the lock *path*."""
        super().__init__(f"Lock {path} is not locked")
        self.path = path


class Locker(Protocol):
    """A single lock handle bound to one path."""

    path: Path
    wait_ms: int

    @property
    def locked(self) -> bool:
        """Return ``True`` while this handle holds the lock."""
        ...

    def lock(self, timeout: float | None = None) -> None:
        """Acquire the lock, blocking or failing according to *timeout*."""
        ...

    def unlock(self) -> None:
        """Release the lock or raise :class:`NotLockedError`."""
        ...


class LockFactory(Protocol):
    """Creates :class:`Locker` handles for paths."""

    def lock_for(self, path: Path) -> Locker:
        """Return a new (unlocked) handle for *path*."""
        ...


class FileLock:
    """Exclusive advisory ``flock`` on a marker file.

    ``timeout=None`` blocks until the lock is available. A numeric timeout
    polls non-blockingly and raises :class:`LockTimeoutError` at the deadline.
    Locking a handle that already holds its lock is a no-op.
    """

    def __init__(self, path: Path, timeout: float | None = None) -> None:
        """Bind the handle to *path* using *timeout* as the default policy."""
        self.path = Path(path)
        self.timeout = timeout
        self.wait_ms = 0
        self._fd: int | None = None

    @property
    def locked(self) -> bool:
        """Return ``True`` while this handle holds the lock."""
        return self._fd is not None

    def lock(self, timeout: float | None = None) -> None:
        """Acquire the lock."""
        if self._fd is not None:
            return
        effective = self.timeout if timeout is None else timeout
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        start = time.monotonic()
        try:
            if effective is None:
                fcntl.flock(fd, fcntl.LOCK_EX)
            else:
                deadline = start + effective
                while True:
                    try:
                        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        if time.monotonic() >= deadline:
                            raise LockTimeoutError(self.path, effective) from None
                        time.sleep(_POLL_INTERVAL)
        except BaseException:
            os.close(fd)
            raise
        self.wait_ms = int((time.monotonic() - start) * 1000)
        self._fd = fd

    def unlock(self) -> None:
        """Release the lock."""
        if self._fd is None:
            raise NotLockedError(self.path)
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


class LockManager:
    """Factory for :class:`FileLock` handles sharing one timeout policy."""

    def __init__(self, default_timeout: float | None = None) -> None:
        """Create a manager whose locks wait *default_timeout* seconds."""
        self.default_timeout = default_timeout

    def lock_for(self, path: Path) -> FileLock:
        """Return a new handle for *path*."""
        return FileLock(Path(path), self.default_timeout)

    @contextmanager
    def hold(self, path: Path, timeout: float | None = None) -> Iterator[FileLock]:
        """Hold the lock on *path* for the duration of the ``with`` block."""
        handle = self.lock_for(path)
        handle.lock(timeout)
        try:
            yield handle
        finally:
            handle.unlock()


class _MemoryLock:
    """In-process stand-in for :class:`FileLock`."""

    def __init__(self, path: Path, primitive: threading.Lock, timeout: float | None) -> None:
        self.path = path
        self.timeout = timeout
        self.wait_ms = 0
        self._primitive = primitive
        self._held = False

    @property
    def locked(self) -> bool:
        return self._held

    def lock(self, timeout: float | None = None) -> None:
        if self._held:
            return
        effective = self.timeout if timeout is None else timeout
        start = time.monotonic()
        acquired = self._primitive.acquire(timeout=-1 if effective is None else effective)
        if not acquired:
            raise LockTimeoutError(self.path, effective or 0.0)
        self.wait_ms = int((time.monotonic() - start) * 1000)
        self._held = True

    def unlock(self) -> None:
        if not self._held:
            raise NotLockedError(self.path)
        self._held = False
        self._primitive.release()


class MemoryLockManager:
    """Lock factory whose locks only exclude other handles in this process."""

    def __init__(self, default_timeout: float | None = None) -> None:
        """Create a manager whose locks wait *default_timeout* seconds."""
        self.default_timeout = default_timeout
        self._primitives: dict[Path, threading.Lock] = {}
        self._mutex = threading.Lock()

    def lock_for(self, path: Path) -> _MemoryLock:
        """Return a new handle for *path*."""
        key = Path(path)
        with self._mutex:
            primitive = self._primitives.setdefault(key, threading.Lock())
        return _MemoryLock(key, primitive, self.default_timeout)


__all__ = [
    "FileLock",
    "LockError",
    "LockFactory",
    "LockManager",
    "LockTimeoutError",
    "Locker",
    "MemoryLockManager",
    "NotLockedError",
]
