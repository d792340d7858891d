"""Enumerations for CLI exit codes and the error families behind them."""
from __future__ import annotations

from enum import IntEnum

from .config import ConfigError
from .data.errors import (
    BackupAlreadyExistsError,
    BackupNotFoundError,
    InstanceAlreadyExistsError,
    InstanceNotFoundError,
    InvalidInstanceError,
    MonitoringStackNotFoundError,
)
from .monitoring.errors import InvalidOptionsError, MonitoringError, NonexistingEndpointError


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4


_VALIDATION_ERRORS: tuple[type[BaseException], ...] = (
    ConfigError,
    InvalidInstanceError,
    InstanceAlreadyExistsError,
    InstanceNotFoundError,
    BackupAlreadyExistsError,
    BackupNotFoundError,
    MonitoringStackNotFoundError,
    InvalidOptionsError,
    NonexistingEndpointError,
    ValueError,
)


def exit_code_for(exc: BaseException) -> ExitCode:
    """Return the exit code reported when a command fails with *exc*.

    Bad input and unknown ids are validation failures; anything the monitoring
    services report (failed reloads, unreadable config) is a provider failure; the
    rest (locks, I/O, templates, corrupt state) is environmental.
    """
    if isinstance(exc, _VALIDATION_ERRORS):
        return ExitCode.VALIDATION
    if isinstance(exc, MonitoringError):
        return ExitCode.PROVIDER
    return ExitCode.ENVIRONMENT


__all__ = ["ExitCode", "exit_code_for"]
