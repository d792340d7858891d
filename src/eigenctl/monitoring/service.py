"""Capability interface shared by the monitoring stack services."""
from __future__ import annotations

import ipaddress
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from ..data.monitoring_stack import MonitoringStack
from .errors import InvalidOptionsError

PROMETHEUS_CONTAINER_NAME = "egn_prometheus"
GRAFANA_CONTAINER_NAME = "egn_grafana"
NODE_EXPORTER_CONTAINER_NAME = "egn_node_exporter"

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


@dataclass(frozen=True, slots=True)
class ServiceOptions:
    """Options handed to :meth:`ServiceAPI.init`."""

    stack: MonitoringStack
    dotenv: Mapping[str, str] = field(default_factory=dict)


@runtime_checkable
class ServiceAPI(Protocol):
    """A member of the monitoring stack."""

    def init(self, options: ServiceOptions) -> None:
        """Bind the service to a stack and validate its runtime options."""
        ...

    def setup(self, options: Mapping[str, str]) -> None:
        """Deploy the service's configuration files into the stack."""
        ...

    def dotenv(self) -> dict[str, str]:
        """Return the service's option names with their default values."""
        ...

    def container_name(self) -> str:
        """Return the container name the service runs as."""
        ...

    def endpoint(self) -> str:
        """Return the service's HTTP endpoint."""
        ...

    def set_container_ip(self, ip: IPAddress) -> None:
        """Record the address the service container was given."""
        ...


@runtime_checkable
class TargetService(ServiceAPI, Protocol):
    """A service that keeps a list of scrape targets."""

    def add_target(self, endpoint: str, instance_id: str) -> bool:
        """Register *endpoint* for *instance_id*; return ``False`` if already present."""
        ...

    def remove_target(self, endpoint: str) -> None:
        """Unregister *endpoint*."""
        ...


def require_option(options: Mapping[str, str], key: str) -> str:
    """Return the non-empty value of *key* or raise :class:`InvalidOptionsError`."""
    if key not in options:
        raise InvalidOptionsError(key, "missing in options")
    value = str(options[key]).strip()
    if not value:
        raise InvalidOptionsError(key, "can't be empty")
    return value


def require_port(options: Mapping[str, str], key: str) -> int:
    """Return *key* parsed as a TCP port (1-65535)."""
    value = require_option(options, key)
    if not value.isdigit():
        raise InvalidOptionsError(key, "is not a valid port")
    port = int(value)
    if not 1 <= port <= 65535:
        raise InvalidOptionsError(key, "is not a valid port")
    return port


__all__ = [
    "GRAFANA_CONTAINER_NAME",
    "IPAddress",
    "NODE_EXPORTER_CONTAINER_NAME",
    "PROMETHEUS_CONTAINER_NAME",
    "ServiceAPI",
    "ServiceOptions",
    "TargetService",
    "require_option",
    "require_port",
]
