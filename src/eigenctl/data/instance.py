"""Persisted state for a single node software instance.

An instance lives in ``nodes/<instance id>/`` under the data directory::

    state.json   # {"name", "url", "version", "profile", "tag"}
    .lock        # zero-byte advisory lock marker
    .env         # optional environment values written by ``setup``

The :class:`Instance` object is a view over that directory; the owning
:class:`~eigenctl.data.datadir.DataDir` decides where it lives and when it is
created or removed.
"""
from __future__ import annotations

import json
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from ..filesystem import Filesystem, read_file, write_file
from ..locking import LockFactory, Locker, NotLockedError
from .dotenv import parse_env, render_env
from .errors import InstanceAlreadyExistsError, InvalidInstanceDirError, InvalidInstanceError

STATE_FILE = "state.json"
LOCK_FILE = ".lock"
ENV_FILE = ".env"

_REQUIRED_FIELDS = ("name", "url", "version", "profile", "tag")
_FORBIDDEN_ID_CHARS = ("/", "\\", "\x00")


def instance_id(name: str, tag: str) -> str:
    """Return the directory-safe identifier for *name* and *tag*."""
    for label, value in (("name", name), ("tag", tag)):
        if any(char in value for char in _FORBIDDEN_ID_CHARS):
            raise InvalidInstanceError(f"{label} contains a path separator", field=label)
    identifier = f"{name}-{tag}"
    if identifier in {".", ".."}:
        raise InvalidInstanceError(f"'{identifier}' is not a valid instance id")
    return identifier


@dataclass(eq=True)
class Instance:
    """A registered node software deployment."""

    name: str
    url: str
    version: str
    profile: str
    tag: str
    path: Path | None = field(default=None, compare=False, repr=False)
    _fs: Filesystem | None = field(default=None, compare=False, repr=False)
    _locks: LockFactory | None = field(default=None, compare=False, repr=False)
    _lock: Locker | None = field(default=None, compare=False, repr=False)

    @property
    def id(self) -> str:
        """Return the instance identifier (``<name>-<tag>``)."""
        return instance_id(self.name, self.tag)

    def validate(self) -> None:
        """Raise :class:`InvalidInstanceError` naming the first empty field."""
        for name in _REQUIRED_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, str):
                raise InvalidInstanceError(f"{name} must be a string", field=name, path=self.path)
            if not value:
                raise InvalidInstanceError(f"{name} is empty", field=name, path=self.path)

    def to_dict(self) -> dict[str, str]:
        """Return the persisted representation."""
        return {name: getattr(self, name) for name in _REQUIRED_FIELDS}

    # Lifecycle --------------------------------------------------------
    def init(self, path: Path, fs: Filesystem, locks: LockFactory) -> None:
        """Persist this instance into the existing directory *path*.

        Creates the lock marker and writes ``state.json``. The state file is
        created exclusively so an existing one is never overwritten.
        """
        self.validate()
        self.path = Path(path)
        self._fs = fs
        self._locks = locks
        self._lock = None

        with fs.create(self.path / LOCK_FILE):
            pass
        payload = json.dumps(self.to_dict(), indent=2) + "\n"
        try:
            write_file(fs, self.path / STATE_FILE, payload.encode("utf-8"), exclusive=True)
        except FileExistsError as exc:
            raise InstanceAlreadyExistsError(self.path.name) from exc

    @classmethod
    def read(cls, path: Path, fs: Filesystem, locks: LockFactory) -> Instance:
        """Load the instance stored in *path*."""
        path = Path(path)
        try:
            raw = read_file(fs, path / STATE_FILE)
        except FileNotFoundError as exc:
            raise InvalidInstanceDirError(path) from exc

        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise InvalidInstanceError(f"invalid state.json file: {exc}", path=path) from exc
        if not isinstance(data, Mapping):
            raise InvalidInstanceError("state.json must contain a JSON object", path=path)

        instance = cls(
            **{name: data.get(name, "") for name in _REQUIRED_FIELDS},
            path=path,
            _fs=fs,
            _locks=locks,
        )
        instance.validate()
        return instance

    # Locking ----------------------------------------------------------
    def lock(self, timeout: float | None = None) -> None:
        """Acquire the instance's advisory lock."""
        if self._lock is None:
            self._lock = self._require_locks().lock_for(self._require_path() / LOCK_FILE)
        self._lock.lock(timeout)

    def unlock(self) -> None:
        """Release the instance's advisory lock."""
        if self._lock is None or not self._lock.locked:
            raise NotLockedError(self._require_path() / LOCK_FILE)
        self._lock.unlock()

    @contextmanager
    def locked(self, timeout: float | None = None) -> Iterator[Instance]:
        """Hold the instance lock for the duration of the ``with`` block."""
        self.lock(timeout)
        try:
            yield self
        finally:
            self.unlock()

    @property
    def lock_wait_ms(self) -> int:
        """Return how long the most recent lock acquisition waited."""
        return self._lock.wait_ms if self._lock is not None else 0

    # Environment ------------------------------------------------------
    def setup(self, env: Mapping[str, str]) -> None:
        """Write the instance ``.env`` file."""
        content = render_env(env).encode("utf-8")
        write_file(self._require_fs(), self._require_path() / ENV_FILE, content, atomic=True)

    def env(self) -> dict[str, str]:
        """Return the values stored in the instance ``.env`` file."""
        try:
            raw = read_file(self._require_fs(), self._require_path() / ENV_FILE)
        except FileNotFoundError:
            return {}
        return parse_env(raw.decode("utf-8"))

    # Internal helpers -------------------------------------------------
    def _require_path(self) -> Path:
        if self.path is None:
            raise InvalidInstanceError(f"instance {self.name!r} is not bound to a directory")
        return self.path

    def _require_fs(self) -> Filesystem:
        if self._fs is None:
            raise InvalidInstanceError(f"instance {self.name!r} is not bound to a filesystem")
        return self._fs

    def _require_locks(self) -> LockFactory:
        if self._locks is None:
            raise InvalidInstanceError(f"instance {self.name!r} has no lock factory")
        return self._locks


__all__ = ["ENV_FILE", "LOCK_FILE", "STATE_FILE", "Instance", "instance_id"]
