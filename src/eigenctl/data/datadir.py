"""The data directory: eigenctl's registry of instances and their artefacts.

Layout under the root path::

    nodes/<instance id>/     instance state (see :mod:`eigenctl.data.instance`)
    temp/<id>/               scratch space
    backup/<backup id>.tar   sealed backup archives
    monitoring/              monitoring stack
    plugin/<id>.tar          plugin image build contexts

Directory and file creation uses exclusive primitives (``mkdir`` without
``exist_ok``, ``open(..., "xb")``). When two processes race to create the same
instance, temp directory or backup, exactly one succeeds and the other receives
the corresponding "already exists" error.
"""
from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import BinaryIO

from ..filesystem import Filesystem
from ..locking import LockFactory
from .backup import ARCHIVE_SUFFIX, Backup, BackupId, seal_archive
from .errors import (
    BackupAlreadyExistsError,
    BackupNotFoundError,
    DataDirError,
    InstanceAlreadyExistsError,
    InstanceNotFoundError,
    InvalidInstanceDirError,
    InvalidInstanceError,
    MonitoringStackNotFoundError,
    TempDirAlreadyExistsError,
    TempDirDoesNotExistError,
    TempIsNotDirError,
)
from .instance import STATE_FILE, Instance
from .monitoring_stack import MonitoringStack

LOGGER = logging.getLogger(__name__)

NODES_DIR = "nodes"
TEMP_DIR = "temp"
BACKUP_DIR = "backup"
PLUGIN_DIR = "plugin"
MONITORING_DIR = "monitoring"
DEFAULT_DIR_NAME = ".eigen"

_UNSAFE_ID_CHARS = ("/", "\\", "\x00")


def default_data_path(env: Mapping[str, str] | None = None) -> Path:
    """Return ``$XDG_DATA_HOME/.eigen`` or ``~/.local/share/.eigen``."""
    resolved_env = os.environ if env is None else env
    data_home = resolved_env.get("XDG_DATA_HOME", "")
    base = Path(data_home) if data_home else Path.home() / ".local" / "share"
    return base / DEFAULT_DIR_NAME


def _is_safe_id(value: str) -> bool:
    """Return ``True`` when *value* names a single entry below its parent."""
    if not value or value in {".", ".."}:
        return False
    return not any(char in value for char in _UNSAFE_ID_CHARS)


class DataDir:
    """Registry rooted at a single directory."""

    def __init__(self, path: Path | str, fs: Filesystem, locks: LockFactory) -> None:
        """Create a data directory handle; *path* is made absolute."""
        self._path = Path(path).expanduser().absolute()
        self._fs = fs
        self._locks = locks

    @classmethod
    def default(
        cls,
        fs: Filesystem,
        locks: LockFactory,
        *,
        env: Mapping[str, str] | None = None,
    ) -> DataDir:
        """Return the data directory at the default XDG location, creating it."""
        path = default_data_path(env)
        fs.makedirs(path)
        return cls(path, fs, locks)

    @property
    def path(self) -> Path:
        """Return the root path."""
        return self._path

    # Instances --------------------------------------------------------
    def instance(self, instance_id: str) -> Instance:
        """Return the instance registered as *instance_id*."""
        instance_path = self._instance_dir(instance_id)
        try:
            return Instance.read(instance_path, self._fs, self._locks)
        except InvalidInstanceDirError:
            if not self._fs.exists(instance_path):
                raise InstanceNotFoundError(instance_id) from None
            raise

    def init_instance(self, instance: Instance) -> Path:
        """Register *instance* and return its directory."""
        instance.validate()
        identifier = instance.id
        self._fs.makedirs(self._nodes_dir())
        instance_path = self._nodes_dir() / identifier
        try:
            self._fs.mkdir(instance_path)
        except FileExistsError as exc:
            raise InstanceAlreadyExistsError(identifier) from exc
        try:
            instance.init(instance_path, self._fs, self._locks)
        except BaseException:
            self._fs.rmtree(instance_path)
            raise
        LOGGER.debug("Initialised instance %s at %s", identifier, instance_path)
        return instance_path

    def has_instance(self, instance_id: str) -> bool:
        """Return ``True`` when *instance_id* has a persisted state file."""
        return self._fs.exists(self._instance_dir(instance_id) / STATE_FILE)

    def instance_path(self, instance_id: str) -> Path:
        """Return the directory of *instance_id*."""
        instance_path = self._instance_dir(instance_id)
        try:
            self._fs.stat(instance_path)
        except FileNotFoundError as exc:
            raise InstanceNotFoundError(instance_id) from exc
        return instance_path

    def remove_instance(self, instance_id: str) -> None:
        """Delete the directory of *instance_id* and everything in it."""
        instance_path = self._instance_dir(instance_id)
        try:
            info = self._fs.stat(instance_path)
        except FileNotFoundError as exc:
            raise InstanceNotFoundError(instance_id) from exc
        if not info.is_dir:
            raise DataDirError(f"{instance_id} is not a directory")
        self._fs.rmtree(instance_path)
        LOGGER.debug("Removed instance %s", instance_id)

    def list_instances(self) -> list[Instance]:
        """Return every registered instance, failing if any cannot be read."""
        nodes_dir = self._nodes_dir()
        try:
            entries = self._fs.read_dir(nodes_dir)
        except FileNotFoundError:
            return []
        return [
            Instance.read(nodes_dir / entry.name, self._fs, self._locks)
            for entry in entries
            if entry.is_dir
        ]

    # Temporary directories --------------------------------------------
    def init_temp(self, temp_id: str) -> Path:
        """Create ``temp/<temp_id>`` and return it."""
        temp_path = self._temp_dir(temp_id)
        self._fs.makedirs(temp_path.parent)
        try:
            self._fs.mkdir(temp_path)
        except FileExistsError as exc:
            raise TempDirAlreadyExistsError(temp_id) from exc
        return temp_path

    def remove_temp(self, temp_id: str) -> None:
        """Remove ``temp/<temp_id>``; missing directories are ignored."""
        self._fs.rmtree(self._temp_dir(temp_id))

    def temp_path(self, temp_id: str) -> Path:
        """Return the path of an existing temporary directory."""
        temp_path = self._temp_dir(temp_id)
        try:
            info = self._fs.stat(temp_path)
        except FileNotFoundError as exc:
            raise TempDirDoesNotExistError(temp_id) from exc
        if not info.is_dir:
            raise TempIsNotDirError(temp_id)
        return temp_path

    # Backups ----------------------------------------------------------
    def init_backup(self, backup_id: BackupId) -> Backup:
        """Seal a new, empty archive for *backup_id*."""
        self._fs.makedirs(self._path / BACKUP_DIR)
        backup_path = self.backup_path(backup_id)
        try:
            seal_archive(self._fs, backup_path)
        except FileExistsError as exc:
            raise BackupAlreadyExistsError(str(backup_id)) from exc
        LOGGER.debug("Sealed backup archive %s", backup_path)
        return Backup(id=backup_id, path=backup_path)

    def backup_path(self, backup_id: BackupId) -> Path:
        """Return the archive path for *backup_id*."""
        return self._path / BACKUP_DIR / f"{backup_id}{ARCHIVE_SUFFIX}"

    def has_backup(self, backup_id: BackupId) -> bool:
        """Return ``True`` when an archive exists for *backup_id*."""
        return self._fs.exists(self.backup_path(backup_id))

    def list_backups(self) -> list[Backup]:
        """Return every sealed backup sorted by id."""
        backup_root = self._path / BACKUP_DIR
        try:
            entries = self._fs.read_dir(backup_root)
        except FileNotFoundError:
            return []
        backups: list[Backup] = []
        for entry in entries:
            if entry.is_dir or not entry.name.endswith(ARCHIVE_SUFFIX):
                continue
            try:
                backup_id = BackupId.parse(entry.name[: -len(ARCHIVE_SUFFIX)])
            except ValueError:
                LOGGER.warning("Ignoring unrecognised backup archive %s", entry.name)
                continue
            backups.append(Backup(id=backup_id, path=backup_root / entry.name))
        return backups

    def remove_backup(self, backup_id: BackupId) -> None:
        """Delete the archive for *backup_id*."""
        try:
            self._fs.remove(self.backup_path(backup_id))
        except FileNotFoundError as exc:
            raise BackupNotFoundError(str(backup_id)) from exc

    # Monitoring stack -------------------------------------------------
    def monitoring_stack(
        self,
        on_init: Callable[[MonitoringStack], None] | None = None,
    ) -> MonitoringStack:
        """Return the monitoring stack, creating it on first use.

        The process that creates ``monitoring/`` initialises it and runs
        *on_init* exactly once; every other call (including a process that
        loses the creation race) gets a pass-through handle. When
        initialisation fails the half-built directory is removed again.
        """
        stack_path = self._path / MONITORING_DIR
        stack = MonitoringStack(stack_path, self._fs, self._locks)
        if self._fs.exists(stack_path):
            return stack
        self._fs.makedirs(self._path)
        try:
            self._fs.mkdir(stack_path)
        except FileExistsError:
            return stack
        try:
            stack.init()
            if on_init is not None:
                on_init(stack)
        except BaseException:
            self._fs.rmtree(stack_path)
            raise
        LOGGER.debug("Initialised monitoring stack at %s", stack_path)
        return stack

    def has_monitoring_stack(self) -> bool:
        """Return ``True`` when the monitoring stack directory exists."""
        return self._fs.exists(self._path / MONITORING_DIR)

    def remove_monitoring_stack(self) -> None:
        """Delete the monitoring stack directory."""
        stack_path = self._path / MONITORING_DIR
        if not self._fs.exists(stack_path):
            raise MonitoringStackNotFoundError(stack_path)
        self._fs.rmtree(stack_path)

    # Plugin contexts --------------------------------------------------
    def save_plugin_image_context(self, plugin_id: str, stream: BinaryIO) -> None:
        """Store *stream* as ``plugin/<plugin_id>.tar`` and close it.

        *stream* is closed on every path. When both copying and closing fail
        the copy error is the one raised.
        """
        try:
            self._fs.makedirs(self._plugin_dir())
            with self._fs.create(self._plugin_path(plugin_id)) as handle:
                shutil.copyfileobj(stream, handle)
        except BaseException:
            try:
                stream.close()
            except OSError as close_exc:
                LOGGER.debug("Ignoring close error after failed copy: %s", close_exc)
            raise
        stream.close()

    def get_plugin_context(self, plugin_id: str) -> BinaryIO:
        """Open the stored build context of *plugin_id*."""
        return self._fs.open(self._plugin_path(plugin_id))

    def remove_plugin_context(self, plugin_id: str) -> None:
        """Delete the stored build context; a missing file is not an error."""
        try:
            self._fs.remove(self._plugin_path(plugin_id))
        except FileNotFoundError:
            pass

    # Internal helpers -------------------------------------------------
    def _nodes_dir(self) -> Path:
        return self._path / NODES_DIR

    def _instance_dir(self, instance_id: str) -> Path:
        if not _is_safe_id(instance_id):
            raise InvalidInstanceError(f"{instance_id!r} is not a valid instance id")
        return self._nodes_dir() / instance_id

    def _temp_dir(self, temp_id: str) -> Path:
        if not _is_safe_id(temp_id):
            raise DataDirError(f"{temp_id!r} is not a valid temporary directory id")
        return self._path / TEMP_DIR / temp_id

    def _plugin_dir(self) -> Path:
        return self._path / PLUGIN_DIR

    def _plugin_path(self, plugin_id: str) -> Path:
        if not _is_safe_id(plugin_id):
            raise DataDirError(f"{plugin_id!r} is not a valid plugin id")
        return self._plugin_dir() / f"{plugin_id}.tar"


__all__ = ["DataDir", "default_data_path"]
