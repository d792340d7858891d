"""Grafana member of the monitoring stack.

``setup`` provisions Prometheus as the default datasource and a file-based
dashboard provider, both rendered from the built-in Jinja2 templates.
"""
from __future__ import annotations

from collections.abc import Mapping

from ..data.monitoring_stack import MonitoringStack
from ..templates import TemplateEngine
from .errors import MonitoringError
from .service import (
    GRAFANA_CONTAINER_NAME,
    PROMETHEUS_CONTAINER_NAME,
    IPAddress,
    ServiceOptions,
    require_port,
)

PROVISIONING_DIR = "grafana/provisioning"
DATASOURCE_PATH = f"{PROVISIONING_DIR}/datasources/datasource.yml"
DASHBOARDS_PATH = f"{PROVISIONING_DIR}/dashboards/dashboards.yml"
DASHBOARDS_CONTAINER_PATH = "/etc/grafana/provisioning/dashboards"

_DEFAULT_DOTENV = {"GRAFANA_PORT": "3000"}


class GrafanaService:
    """Dashboards over the Prometheus datasource."""

    def __init__(self, *, templates: TemplateEngine | None = None) -> None:
        self._templates = templates or TemplateEngine.with_overrides(None)
        self._stack: MonitoringStack | None = None
        self._port: int | None = None
        self._container_ip: IPAddress | None = None

    def init(self, options: ServiceOptions) -> None:
        """Validate ``GRAFANA_PORT`` and bind to the stack."""
        self._port = require_port(options.dotenv, "GRAFANA_PORT")
        self._stack = options.stack

    def setup(self, options: Mapping[str, str]) -> None:
        """Write the datasource and dashboard provisioning files."""
        if self._stack is None:
            raise MonitoringError("Grafana service is not initialised")
        prom_port = require_port(options, "PROM_PORT")
        datasource = self._templates.render_to_string(
            "grafana/datasource.yml.j2",
            {"prometheus_url": f"http://{PROMETHEUS_CONTAINER_NAME}:{prom_port}"},
        )
        dashboards = self._templates.render_to_string(
            "grafana/dashboards.yml.j2",
            {"provider_name": "eigenctl", "dashboards_path": DASHBOARDS_CONTAINER_PATH},
        )
        self._stack.create_dir(f"{PROVISIONING_DIR}/datasources")
        self._stack.create_dir(f"{PROVISIONING_DIR}/dashboards")
        self._stack.write_file(DATASOURCE_PATH, datasource.encode("utf-8"))
        self._stack.write_file(DASHBOARDS_PATH, dashboards.encode("utf-8"))

    def dotenv(self) -> dict[str, str]:
        """Return the default options."""
        return dict(_DEFAULT_DOTENV)

    def container_name(self) -> str:
        """Return the Grafana container name."""
        return GRAFANA_CONTAINER_NAME

    def endpoint(self) -> str:
        """Return the Grafana endpoint on the container network."""
        return f"http://{self._container_ip}:{self._port}"

    def set_container_ip(self, ip: IPAddress) -> None:
        """Record the container address."""
        self._container_ip = ip


__all__ = ["GrafanaService"]
