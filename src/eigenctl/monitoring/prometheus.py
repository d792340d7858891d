"""Prometheus member of the monitoring stack.

Scrape targets live in ``monitoring/prometheus/prometheus.yml``; there is no
in-memory registry. Each node endpoint gets its own job whose ``job_name`` is
the endpoint without its ``http://`` scheme, which is also the key used to
de-duplicate registrations.

Adding or removing a target rewrites the file and then asks the running
Prometheus to reload it. The write is not rolled back if the reload fails, so
the file and the running process may disagree until the next successful
reload.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx
import yaml

from ..data.monitoring_stack import MonitoringStack
from ..templates import TemplateEngine
from .errors import InvalidOptionsError, MonitoringError, NonexistingEndpointError, ReloadFailedError
from .service import (
    NODE_EXPORTER_CONTAINER_NAME,
    PROMETHEUS_CONTAINER_NAME,
    IPAddress,
    ServiceOptions,
    require_option,
    require_port,
)

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = "prometheus"
CONFIG_PATH = "prometheus/prometheus.yml"
TEMPLATE_NAME = "prometheus/prometheus.yml.j2"
DEFAULT_SCRAPE_INTERVAL = "15s"
RELOAD_HOST = "127.0.0.1"

_DEFAULT_DOTENV = {"PROM_PORT": "9090"}


def _expect_mapping(value: object, key: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise MonitoringError(
            f"Prometheus config: {key} must be a mapping, got {type(value).__name__}"
        )
    return value


def _expect_list(value: object, key: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise MonitoringError(
            f"Prometheus config: {key} must be a list, got {type(value).__name__}"
        )
    return value


@dataclass(slots=True)
class StaticConfig:
    """Targets (and optional labels) of a scrape job."""

    targets: list[str]
    labels: dict[str, str] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> StaticConfig:
        """Build from a parsed YAML mapping."""
        data = dict(_expect_mapping(raw, "static_configs entry"))
        targets = _expect_list(data.pop("targets", None), "targets")
        labels = data.pop("labels", None)
        if labels is not None:
            labels = _expect_mapping(labels, "labels")
        return cls(
            targets=[str(target) for target in targets],
            labels={str(k): str(v) for k, v in labels.items()} if labels else None,
            extra=data,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the YAML-ready mapping."""
        payload: dict[str, Any] = {"targets": list(self.targets)}
        if self.labels:
            payload["labels"] = dict(self.labels)
        payload.update(self.extra)
        return payload


@dataclass(slots=True)
class ScrapeConfig:
    """A single scrape job."""

    job_name: str
    static_configs: list[StaticConfig] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> ScrapeConfig:
        """Build from a parsed YAML mapping."""
        data = dict(_expect_mapping(raw, "scrape_configs entry"))
        job_name = data.pop("job_name", None)
        if not job_name:
            raise MonitoringError("Scrape config entry is missing 'job_name'")
        static_configs = _expect_list(data.pop("static_configs", None), "static_configs")
        return cls(
            job_name=str(job_name),
            static_configs=[StaticConfig.from_dict(item) for item in static_configs],
            extra=data,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the YAML-ready mapping."""
        payload: dict[str, Any] = {
            "job_name": self.job_name,
            "static_configs": [item.to_dict() for item in self.static_configs],
        }
        payload.update(self.extra)
        return payload


@dataclass(slots=True)
class GlobalConfig:
    """The ``global`` section."""

    scrape_interval: str = DEFAULT_SCRAPE_INTERVAL
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PrometheusConfig:
    """The subset of ``prometheus.yml`` eigenctl manages.

    Keys the model does not know about are kept in ``extra`` so a
    read/modify/write cycle does not drop them.
    """

    global_config: GlobalConfig = field(default_factory=GlobalConfig)
    scrape_configs: list[ScrapeConfig] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, raw: bytes | str) -> PrometheusConfig:
        """Parse ``prometheus.yml`` content."""
        try:
            data = yaml.safe_load(raw) or {}
        except yaml.YAMLError as exc:
            raise MonitoringError(f"Failed to parse Prometheus config: {exc}") from exc
        if not isinstance(data, Mapping):
            raise MonitoringError("Prometheus config must contain a mapping at the top level")
        data = dict(data)
        global_raw = dict(_expect_mapping(data.pop("global", None) or {}, "global"))
        scrape_interval = str(global_raw.pop("scrape_interval", DEFAULT_SCRAPE_INTERVAL))
        scrape_raw = _expect_list(data.pop("scrape_configs", None), "scrape_configs")
        return cls(
            global_config=GlobalConfig(scrape_interval=scrape_interval, extra=global_raw),
            scrape_configs=[ScrapeConfig.from_dict(item) for item in scrape_raw],
            extra=data,
        )

    def to_yaml(self) -> bytes:
        """Serialise back to YAML."""
        global_section: dict[str, Any] = {"scrape_interval": self.global_config.scrape_interval}
        global_section.update(self.global_config.extra)
        payload: dict[str, Any] = {
            "global": global_section,
            "scrape_configs": [job.to_dict() for job in self.scrape_configs],
        }
        payload.update(self.extra)
        return yaml.safe_dump(payload, sort_keys=False).encode("utf-8")

    def find_job(self, job_name: str) -> ScrapeConfig | None:
        """Return the job called *job_name*, if any."""
        for job in self.scrape_configs:
            if job.job_name == job_name:
                return job
        return None


def job_name_for(endpoint: str) -> str:
    """Return the job key for *endpoint* (its ``http://`` prefix removed)."""
    return endpoint.removeprefix("http://")


class PrometheusService:
    """Manage Prometheus' scrape configuration and live reloads."""

    def __init__(
        self,
        *,
        client: httpx.Client | None = None,
        templates: TemplateEngine | None = None,
        scrape_interval: str = DEFAULT_SCRAPE_INTERVAL,
    ) -> None:
        """Create the service; *client* defaults to a plain :class:`httpx.Client`."""
        self._client = client
        self._templates = templates or TemplateEngine.with_overrides(None)
        self._scrape_interval = scrape_interval
        self._stack: MonitoringStack | None = None
        self._port: int | None = None
        self._container_ip: IPAddress | None = None

    # ServiceAPI -------------------------------------------------------
    def init(self, options: ServiceOptions) -> None:
        """Validate ``PROM_PORT`` and bind to the stack."""
        self._port = require_port(options.dotenv, "PROM_PORT")
        self._stack = options.stack

    def setup(self, options: Mapping[str, str]) -> None:
        """Write the initial config seeded with the node exporter job.

        Any existing scrape jobs are replaced.
        """
        node_exporter_port = require_option(options, "NODE_EXPORTER_PORT")
        rendered = self._templates.render_to_string(
            TEMPLATE_NAME,
            {"scrape_interval": self._scrape_interval},
        )
        config = PrometheusConfig.from_yaml(rendered)
        endpoint = f"{NODE_EXPORTER_CONTAINER_NAME}:{node_exporter_port}"
        config.scrape_configs = [
            ScrapeConfig(job_name=endpoint, static_configs=[StaticConfig(targets=[endpoint])])
        ]
        stack = self._require_stack()
        stack.create_dir(CONFIG_DIR)
        stack.write_file(CONFIG_PATH, config.to_yaml())

    def dotenv(self) -> dict[str, str]:
        """Return the default options."""
        return dict(_DEFAULT_DOTENV)

    def container_name(self) -> str:
        """Return the Prometheus container name."""
        return PROMETHEUS_CONTAINER_NAME

    def endpoint(self) -> str:
        """Return the Prometheus endpoint on the container network."""
        return f"http://{self._container_ip}:{self._port}"

    def set_container_ip(self, ip: IPAddress) -> None:
        """Record the Prometheus container address."""
        self._container_ip = ip

    # Targets ----------------------------------------------------------
    def targets(self) -> list[ScrapeConfig]:
        """Return the scrape jobs currently configured."""
        return self._read_config().scrape_configs

    def add_target(self, endpoint: str, instance_id: str) -> bool:
        """Add a job for *endpoint* and reload Prometheus.

        *endpoint* is expected as ``http://<host>:<port>``. Registering an
        endpoint that already has a job is a no-op (no write, no reload) and
        returns ``False``.
        """
        job_name = job_name_for(endpoint)
        stack = self._require_stack()
        with stack.locked():
            config = self._read_config()
            if config.find_job(job_name) is not None:
                LOGGER.debug("Scrape job %s already present", job_name)
                return False
            config.scrape_configs.append(
                ScrapeConfig(
                    job_name=job_name,
                    static_configs=[
                        StaticConfig(targets=[job_name], labels={"instanceID": instance_id})
                    ],
                )
            )
            stack.write_file(CONFIG_PATH, config.to_yaml())
            self._reload_config()
        LOGGER.info("Added scrape target %s for instance %s", job_name, instance_id)
        return True

    def remove_target(self, endpoint: str) -> None:
        """Remove the job for *endpoint* and reload Prometheus."""
        job_name = job_name_for(endpoint)
        stack = self._require_stack()
        with stack.locked():
            config = self._read_config()
            remaining = [job for job in config.scrape_configs if job.job_name != job_name]
            if len(remaining) == len(config.scrape_configs):
                raise NonexistingEndpointError(job_name)
            config.scrape_configs = remaining
            stack.write_file(CONFIG_PATH, config.to_yaml())
            self._reload_config()
        LOGGER.info("Removed scrape target %s", job_name)

    # Internal helpers -------------------------------------------------
    def _read_config(self) -> PrometheusConfig:
        return PrometheusConfig.from_yaml(self._require_stack().read_file(CONFIG_PATH))

    def _require_stack(self) -> MonitoringStack:
        if self._stack is None:
            raise MonitoringError("Prometheus service is not initialised")
        return self._stack

    def _reload_config(self) -> None:
        """POST to Prometheus' ``/-/reload`` endpoint on the loopback address."""
        if self._port is None:
            raise InvalidOptionsError("PROM_PORT", "is not set")
        url = f"http://{RELOAD_HOST}:{self._port}/-/reload"
        client = self._client or httpx.Client()
        try:
            response = client.post(url)
        except httpx.HTTPError as exc:
            raise ReloadFailedError(str(exc)) from exc
        finally:
            if self._client is None:
                client.close()
        if response.status_code != httpx.codes.OK:
            raise ReloadFailedError(f"{response.status_code} {response.reason_phrase}".strip())


__all__ = [
    "GlobalConfig",
    "PrometheusConfig",
    "PrometheusService",
    "ScrapeConfig",
    "StaticConfig",
    "job_name_for",
]
