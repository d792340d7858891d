"""Monitoring stack services and their coordination."""
from __future__ import annotations

from .errors import (
    InvalidOptionsError,
    MonitoringError,
    NonexistingEndpointError,
    ReloadFailedError,
)
from .grafana import GrafanaService
from .manager import MonitoringManager
from .node_exporter import NodeExporterService
from .prometheus import PrometheusConfig, PrometheusService, ScrapeConfig, StaticConfig
from .service import ServiceAPI, ServiceOptions, TargetService

__all__ = [
    "GrafanaService",
    "InvalidOptionsError",
    "MonitoringError",
    "MonitoringManager",
    "NodeExporterService",
    "NonexistingEndpointError",
    "PrometheusConfig",
    "PrometheusService",
    "ReloadFailedError",
    "ScrapeConfig",
    "ServiceAPI",
    "ServiceOptions",
    "StaticConfig",
    "TargetService",
]
