"""Node exporter member of the monitoring stack (host metrics, no config files)."""
from __future__ import annotations

from collections.abc import Mapping

from .service import NODE_EXPORTER_CONTAINER_NAME, IPAddress, ServiceOptions, require_port

_DEFAULT_DOTENV = {"NODE_EXPORTER_PORT": "9100"}


class NodeExporterService:
    """Companion process scraped by Prometheus."""

    def __init__(self) -> None:
        self._port: int | None = None
        self._container_ip: IPAddress | None = None

    def init(self, options: ServiceOptions) -> None:
        """Validate ``NODE_EXPORTER_PORT``."""
        self._port = require_port(options.dotenv, "NODE_EXPORTER_PORT")

    def setup(self, options: Mapping[str, str]) -> None:
        """Node exporter has nothing to deploy."""

    def dotenv(self) -> dict[str, str]:
        """Return the default options."""
        return dict(_DEFAULT_DOTENV)

    def container_name(self) -> str:
        """Return the node exporter container name."""
        return NODE_EXPORTER_CONTAINER_NAME

    def endpoint(self) -> str:
        """Return the metrics endpoint on the container network."""
        return f"http://{self._container_ip}:{self._port}"

    def set_container_ip(self, ip: IPAddress) -> None:
        """Record the container address."""
        self._container_ip = ip


__all__ = ["NodeExporterService"]
