"""Backup identifiers and sealed backup archives."""
from __future__ import annotations

import tarfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from ..filesystem import Filesystem

ARCHIVE_SUFFIX = ".tar"


@dataclass(frozen=True, slots=True)
class BackupId:
    """Identify a backup by instance and creation time (second precision)."""

    instance_id: str
    timestamp: datetime

    def __post_init__(self) -> None:
        """Validate the identifier parts."""
        if not self.instance_id or "/" in self.instance_id:
            raise ValueError(f"Invalid instance id for backup: {self.instance_id!r}")
        if self.timestamp.tzinfo is None:
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=UTC))

    def __str__(self) -> str:
        """Return ``<instance id>-<unix seconds>``."""
        return f"{self.instance_id}-{int(self.timestamp.timestamp())}"

    @classmethod
    def new(cls, instance_id: str) -> BackupId:
        """Return an identifier for a backup of *instance_id* taken now."""
        return cls(instance_id, datetime.now(tz=UTC).replace(microsecond=0))

    @classmethod
    def parse(cls, value: str) -> BackupId:
        """Parse the string form produced by :meth:`__str__`."""
        instance_id, sep, seconds = value.rpartition("-")
        if not sep or not instance_id or not seconds.isdigit():
            raise ValueError(f"Invalid backup id: {value!r}")
        return cls(instance_id, datetime.fromtimestamp(int(seconds), tz=UTC))


@dataclass(frozen=True, slots=True)
class Backup:
    """A sealed archive stored under ``backup/<id>.tar``."""

    id: BackupId
    path: Path

    @property
    def instance_id(self) -> str:
        """Return the id of the instance this backup belongs to."""
        return self.id.instance_id


def seal_archive(fs: Filesystem, path: Path) -> None:
    """Create an empty tar archive at *path*, failing if one already exists."""
    with fs.create(path, exclusive=True) as handle:
        with tarfile.open(fileobj=handle, mode="w", format=tarfile.PAX_FORMAT):
            pass


__all__ = ["ARCHIVE_SUFFIX", "Backup", "BackupId", "seal_archive"]
