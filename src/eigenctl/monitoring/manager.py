"""Coordinate the monitoring services that share one stack directory."""
from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from ..data.datadir import DataDir
from ..data.monitoring_stack import MonitoringStack
from .errors import MonitoringError
from .service import ServiceAPI, ServiceOptions, TargetService

LOGGER = logging.getLogger(__name__)


class MonitoringManager:
    """Initialise the stack and fan target changes out to its services.

    Options are the services' own defaults overridden by *overrides* (usually
    ``monitoring.options`` from the configuration). The merged set is written
    to the stack's ``.env`` when the stack is created and read back from there
    afterwards.
    """

    def __init__(
        self,
        datadir: DataDir,
        services: Sequence[ServiceAPI],
        overrides: Mapping[str, str] | None = None,
    ) -> None:
        """Manage *services* for the stack living in *datadir*."""
        self._datadir = datadir
        self._services = list(services)
        self._overrides = {str(key): str(value) for key, value in (overrides or {}).items()}
        self._stack: MonitoringStack | None = None

    @property
    def services(self) -> list[ServiceAPI]:
        """Return the managed services."""
        return list(self._services)

    def default_options(self) -> dict[str, str]:
        """Return every service's defaults merged with the overrides."""
        merged: dict[str, str] = {}
        for service in self._services:
            merged.update(service.dotenv())
        merged.update(self._overrides)
        return merged

    def installed(self) -> bool:
        """Return ``True`` when the stack exists and has its options written."""
        if not self._datadir.has_monitoring_stack():
            return False
        return self.stack().installed()

    def stack(self) -> MonitoringStack:
        """Return the stack handle, creating and setting it up on first use."""
        if self._stack is None:
            self._stack = self._datadir.monitoring_stack(on_init=self._setup_stack)
        return self._stack

    def init_stack(self) -> MonitoringStack:
        """Create the stack if needed and initialise every service from it.

        A stack directory without ``.env`` was left behind by an interrupted
        setup; its configuration is deployed again.
        """
        stack = self.stack()
        if not stack.installed():
            self._setup_stack(stack)
        options = stack.read_env()
        for service in self._services:
            service.init(ServiceOptions(stack=stack, dotenv=options))
        return stack

    def add_target(self, endpoint: str, instance_id: str) -> bool:
        """Register *endpoint* with every target-keeping service.

        Returns ``True`` when at least one service added a new job.
        """
        added = [service.add_target(endpoint, instance_id) for service in self._target_services()]
        return any(added)

    def remove_target(self, endpoint: str) -> None:
        """Unregister *endpoint* from every target-keeping service."""
        for service in self._target_services():
            service.remove_target(endpoint)

    def _target_services(self) -> list[TargetService]:
        services = [svc for svc in self._services if isinstance(svc, TargetService)]
        if not services:
            raise MonitoringError("No monitoring service keeps scrape targets")
        return services

    def _setup_stack(self, stack: MonitoringStack) -> None:
        with stack.locked():
            if stack.installed():
                return
            options = self.default_options()
            for service in self._services:
                service.init(ServiceOptions(stack=stack, dotenv=options))
                service.setup(options)
            stack.write_env(options)
        LOGGER.info("Deployed monitoring configuration for %d services", len(self._services))


__all__ = ["MonitoringManager"]
