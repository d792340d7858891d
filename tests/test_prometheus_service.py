"""Tests for Prometheus scrape target management."""
from __future__ import annotations

import ipaddress
from pathlib import Path

import httpx
import pytest
import yaml

from eigenctl.data import DataDir, MonitoringStack
from eigenctl.filesystem import MemoryFilesystem
from eigenctl.locking import MemoryLockManager
from eigenctl.monitoring import (
    InvalidOptionsError,
    MonitoringError,
    NonexistingEndpointError,
    PrometheusConfig,
    PrometheusService,
    ReloadFailedError,
    ServiceOptions,
)
from eigenctl.monitoring.prometheus import CONFIG_PATH, job_name_for


class _ReloadRecorder:
    """Mock transport handler that records reload requests."""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code)


@pytest.fixture
def stack() -> MonitoringStack:
    """Return a fresh monitoring stack on the in-memory filesystem."""
    datadir = DataDir(Path("/data"), MemoryFilesystem(), MemoryLockManager(default_timeout=1.0))
    return datadir.monitoring_stack()


def _service(
    stack: MonitoringStack,
    recorder: _ReloadRecorder,
    *,
    scrape_interval: str = "15s",
) -> PrometheusService:
    client = httpx.Client(transport=httpx.MockTransport(recorder))
    service = PrometheusService(client=client, scrape_interval=scrape_interval)
    service.init(ServiceOptions(stack=stack, dotenv={"PROM_PORT": "9090"}))
    service.setup({"NODE_EXPORTER_PORT": "9100"})
    return service


def _config(stack: MonitoringStack) -> PrometheusConfig:
    return PrometheusConfig.from_yaml(stack.read_file(CONFIG_PATH))


def test_setup_seeds_node_exporter_job(stack: MonitoringStack) -> None:
    """The initial config scrapes node exporter only, with no labels."""
    recorder = _ReloadRecorder()
    _service(stack, recorder, scrape_interval="30s")

    raw = yaml.safe_load(stack.read_file(CONFIG_PATH))
    assert raw["global"]["scrape_interval"] == "30s"
    assert raw["scrape_configs"] == [
        {
            "job_name": "egn_node_exporter:9100",
            "static_configs": [{"targets": ["egn_node_exporter:9100"]}],
        }
    ]
    assert recorder.requests == []


def test_setup_requires_node_exporter_port(stack: MonitoringStack) -> None:
    """Setup fails when the node exporter port is not configured."""
    service = PrometheusService()
    service.init(ServiceOptions(stack=stack, dotenv={"PROM_PORT": "9090"}))

    with pytest.raises(InvalidOptionsError, match="NODE_EXPORTER_PORT missing in options"):
        service.setup({})
    with pytest.raises(InvalidOptionsError, match="can't be empty"):
        service.setup({"NODE_EXPORTER_PORT": ""})


@pytest.mark.parametrize(
    ("dotenv", "message"),
    [
        ({}, "PROM_PORT missing in options"),
        ({"PROM_PORT": ""}, "PROM_PORT can't be empty"),
        ({"PROM_PORT": "ninety"}, "PROM_PORT is not a valid port"),
        ({"PROM_PORT": "70000"}, "PROM_PORT is not a valid port"),
    ],
)
def test_init_validates_prom_port(
    stack: MonitoringStack,
    dotenv: dict[str, str],
    message: str,
) -> None:
    """``PROM_PORT`` must be present, non-empty and a valid port."""
    with pytest.raises(InvalidOptionsError, match=message):
        PrometheusService().init(ServiceOptions(stack=stack, dotenv=dotenv))


def test_add_target_appends_job_and_reloads(stack: MonitoringStack) -> None:
    """A new endpoint becomes its own labelled job and triggers one reload."""
    recorder = _ReloadRecorder()
    service = _service(stack, recorder)

    service.add_target("http://168.66.44.1:8080", "mock-avs-default")

    job = _config(stack).find_job("168.66.44.1:8080")
    assert job is not None
    assert job.to_dict() == {
        "job_name": "168.66.44.1:8080",
        "static_configs": [
            {"targets": ["168.66.44.1:8080"], "labels": {"instanceID": "mock-avs-default"}}
        ],
    }
    assert len(recorder.requests) == 1
    request = recorder.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "http://127.0.0.1:9090/-/reload"


def test_add_target_is_idempotent(stack: MonitoringStack) -> None:
    """Registering the same endpoint twice neither writes nor reloads again."""
    recorder = _ReloadRecorder()
    service = _service(stack, recorder)
    assert service.add_target("http://168.66.44.1:8080", "mock-avs-default") is True
    before = stack.read_file(CONFIG_PATH)

    assert service.add_target("http://168.66.44.1:8080", "other-instance") is False

    assert stack.read_file(CONFIG_PATH) == before
    assert len(recorder.requests) == 1
    assert [job.job_name for job in service.targets()] == [
        "egn_node_exporter:9100",
        "168.66.44.1:8080",
    ]


def test_remove_target_deletes_job_and_reloads(stack: MonitoringStack) -> None:
    """Removing an endpoint drops its job and reloads."""
    recorder = _ReloadRecorder()
    service = _service(stack, recorder)
    service.add_target("http://168.66.44.1:8080", "mock-avs-default")
    service.add_target("http://168.66.44.2:8080", "mock-avs-second")

    service.remove_target("http://168.66.44.1:8080")

    assert [job.job_name for job in service.targets()] == [
        "egn_node_exporter:9100",
        "168.66.44.2:8080",
    ]
    assert len(recorder.requests) == 3


def test_remove_unknown_target_leaves_file_untouched(stack: MonitoringStack) -> None:
    """Removing an unknown endpoint fails without writing or reloading."""
    recorder = _ReloadRecorder()
    service = _service(stack, recorder)
    before = stack.read_file(CONFIG_PATH)

    with pytest.raises(NonexistingEndpointError) as excinfo:
        service.remove_target("http://10.0.0.9:9000")

    assert excinfo.value.endpoint == "10.0.0.9:9000"
    assert stack.read_file(CONFIG_PATH) == before
    assert recorder.requests == []


def test_reload_failure_keeps_written_config(stack: MonitoringStack) -> None:
    """A rejected reload raises but the file change is not rolled back."""
    recorder = _ReloadRecorder(status_code=500)
    service = _service(stack, recorder)

    with pytest.raises(ReloadFailedError, match="500"):
        service.add_target("http://168.66.44.1:8080", "mock-avs-default")

    assert _config(stack).find_job("168.66.44.1:8080") is not None


def test_reload_transport_error_is_wrapped(stack: MonitoringStack) -> None:
    """Connection failures surface as ReloadFailedError."""

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(refuse))
    service = PrometheusService(client=client)
    service.init(ServiceOptions(stack=stack, dotenv={"PROM_PORT": "9090"}))
    service.setup({"NODE_EXPORTER_PORT": "9100"})

    with pytest.raises(ReloadFailedError, match="connection refused"):
        service.add_target("http://168.66.44.1:8080", "mock-avs-default")


def test_unknown_config_keys_survive_rewrite(stack: MonitoringStack) -> None:
    """Hand-added settings are preserved across target updates."""
    recorder = _ReloadRecorder()
    service = _service(stack, recorder)
    raw = yaml.safe_load(stack.read_file(CONFIG_PATH))
    raw["global"]["evaluation_interval"] = "1m"
    raw["rule_files"] = ["alerts.yml"]
    raw["scrape_configs"][0]["scrape_timeout"] = "5s"
    stack.write_file(CONFIG_PATH, yaml.safe_dump(raw).encode("utf-8"))

    service.add_target("http://168.66.44.1:8080", "mock-avs-default")

    updated = yaml.safe_load(stack.read_file(CONFIG_PATH))
    assert updated["global"]["evaluation_interval"] == "1m"
    assert updated["rule_files"] == ["alerts.yml"]
    assert updated["scrape_configs"][0]["scrape_timeout"] == "5s"


@pytest.mark.parametrize(
    ("content", "key"),
    [
        ("global: 15s\nscrape_configs: []\n", "global"),
        ("scrape_configs: {job_name: a}\n", "scrape_configs"),
        ("scrape_configs: [oops]\n", "scrape_configs entry"),
        ("scrape_configs:\n- job_name: a\n  static_configs: [oops]\n", "static_configs entry"),
        ("scrape_configs:\n- job_name: a\n  static_configs: {targets: [a]}\n", "static_configs"),
        (
            "scrape_configs:\n- job_name: a\n  static_configs:\n  - targets: a:1\n",
            "targets",
        ),
        (
            "scrape_configs:\n- job_name: a\n  static_configs:\n  - targets: [a]\n    labels: [x]\n",
            "labels",
        ),
    ],
)
def test_malformed_config_sections_raise_monitoring_error(
    stack: MonitoringStack,
    content: str,
    key: str,
) -> None:
    """Wrongly shaped sections are reported by key, without writing or reloading."""
    recorder = _ReloadRecorder()
    service = _service(stack, recorder)
    stack.write_file(CONFIG_PATH, content.encode("utf-8"))

    with pytest.raises(MonitoringError, match=f"{key} must be a"):
        service.add_target("http://168.66.44.1:8080", "mock-avs-default")

    assert stack.read_file(CONFIG_PATH) == content.encode("utf-8")
    assert recorder.requests == []


def test_targets_require_init() -> None:
    """Target operations need a stack bound through ``init``."""
    with pytest.raises(MonitoringError):
        PrometheusService().targets()


def test_job_name_strips_scheme() -> None:
    """Job names drop the ``http://`` prefix only."""
    assert job_name_for("http://1.2.3.4:80") == "1.2.3.4:80"
    assert job_name_for("1.2.3.4:80") == "1.2.3.4:80"


def test_container_identity(stack: MonitoringStack) -> None:
    """The service reports its container name and network endpoint."""
    service = _service(stack, _ReloadRecorder())
    service.set_container_ip(ipaddress.ip_address("172.20.0.2"))

    assert service.container_name() == "egn_prometheus"
    assert service.endpoint() == "http://172.20.0.2:9090"
    assert service.dotenv() == {"PROM_PORT": "9090"}
