"""Exceptions raised by the data directory and its components."""
from __future__ import annotations

from pathlib import Path


class DataDirError(RuntimeError):
    """Raised when a data directory operation fails."""


class InstanceAlreadyExistsError(DataDirError):
    """Raised when initialising an instance whose id is already taken."""

    def __init__(self, instance_id: str) -> None:
        """Record the conflicting *instance_id*."""
        super().__init__(f"Instance already exists: {instance_id}")
        self.instance_id = instance_id


class InstanceNotFoundError(DataDirError):
    """Raised when an instance id is not registered."""

    def __init__(self, instance_id: str) -> None:
        """Record the missing *instance_id*."""
        super().__init__(f"Instance not found: {instance_id}")
        self.instance_id = instance_id


class InvalidInstanceError(DataDirError):
    """Raised when instance data is incomplete or cannot be parsed."""

    def __init__(self, message: str, *, field: str | None = None, path: Path | None = None) -> None:
        """Record the offending *field* and/or instance *path*."""
        prefix = f"Invalid instance {path}" if path is not None else "Invalid instance"
        super().__init__(f"{prefix}: {message}")
        self.field = field
        self.path = path


class InvalidInstanceDirError(DataDirError):
    """Raised when an instance directory has no ``state.json``."""

    def __init__(self, path: Path) -> None:
        """Record the instance directory *path*."""
        super().__init__(f"Invalid instance directory {path}: state.json not found")
        self.path = path


class TempDirAlreadyExistsError(DataDirError):
    """Raised when a temporary directory id is already in use."""

    def __init__(self, temp_id: str) -> None:
        """Record the conflicting *temp_id*."""
        super().__init__(f"Temporary directory already exists: {temp_id}")
        self.temp_id = temp_id


class TempDirDoesNotExistError(DataDirError):
    """Raised when a temporary directory id is unknown."""

    def __init__(self, temp_id: str) -> None:
        """Record the missing *temp_id*."""
        super().__init__(f"Temporary directory does not exist: {temp_id}")
        self.temp_id = temp_id


class TempIsNotDirError(DataDirError):
    """Raised when a temporary path exists but is not a directory."""

    def __init__(self, temp_id: str) -> None:
        """Record the offending *temp_id*."""
        super().__init__(f"Temporary path is not a directory: {temp_id}")
        self.temp_id = temp_id


class BackupAlreadyExistsError(DataDirError):
    """Raised when a backup archive is already sealed for an id."""

    def __init__(self, backup_id: str) -> None:
        """Record the conflicting *backup_id*."""
        super().__init__(f"Backup already exists: {backup_id}")
        self.backup_id = backup_id


class BackupNotFoundError(DataDirError):
    """Raised when no backup archive exists for an id."""

    def __init__(self, backup_id: str) -> None:
        """Record the missing *backup_id*."""
        super().__init__(f"Backup not found: {backup_id}")
        self.backup_id = backup_id


class MonitoringStackNotFoundError(DataDirError):
    """Raised when the monitoring stack directory does not exist."""

    def __init__(self, path: Path) -> None:
        """Record the expected stack *path*."""
        super().__init__(f"Monitoring stack not found: {path}")
        self.path = path


__all__ = [
    "BackupAlreadyExistsError",
    "BackupNotFoundError",
    "DataDirError",
    "InstanceAlreadyExistsError",
    "InstanceNotFoundError",
    "InvalidInstanceDirError",
    "InvalidInstanceError",
    "MonitoringStackNotFoundError",
    "TempDirAlreadyExistsError",
    "TempDirDoesNotExistError",
    "TempIsNotDirError",
]
