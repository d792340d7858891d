"""Filesystem-backed registry of node instances, backups and the monitoring stack."""
from __future__ import annotations

from .backup import Backup, BackupId
from .datadir import DataDir, default_data_path
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
from .instance import Instance, instance_id
from .monitoring_stack import MonitoringStack

__all__ = [
    "Backup",
    "BackupAlreadyExistsError",
    "BackupId",
    "BackupNotFoundError",
    "DataDir",
    "DataDirError",
    "Instance",
    "InstanceAlreadyExistsError",
    "InstanceNotFoundError",
    "InvalidInstanceDirError",
    "InvalidInstanceError",
    "MonitoringStack",
    "MonitoringStackNotFoundError",
    "TempDirAlreadyExistsError",
    "TempDirDoesNotExistError",
    "TempIsNotDirError",
    "default_data_path",
    "instance_id",
]
