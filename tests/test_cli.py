"""Tests for the eigenctl CLI."""
from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest
import yaml
from typer.testing import CliRunner

from eigenctl import __version__
from eigenctl.cli import app
from eigenctl.data import BackupId, DataDir, Instance
from eigenctl.exit_codes import ExitCode
from eigenctl.filesystem import LocalFilesystem
from eigenctl.locking import LockManager

runner = CliRunner()


def _prepare_environment(
    tmp_path: Path,
    *,
    config_overrides: dict[str, object] | None = None,
) -> tuple[dict[str, str], Path]:
    """Write a config file pointing at a scratch data directory."""
    data_dir = tmp_path / "data"
    config: dict[str, object] = {
        "data_dir": str(data_dir),
        "logs_dir": str(tmp_path / "logs"),
        "lock_timeout": 1.0,
    }
    config.update(config_overrides or {})
    config_file = tmp_path / "config.yml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")
    env = {"EIGENCTL_CONFIG_FILE": str(config_file)}
    return env, data_dir


def _datadir(data_dir: Path) -> DataDir:
    return DataDir(data_dir, LocalFilesystem(), LockManager(default_timeout=1.0))


def _register(data_dir: Path, tag: str = "default") -> Instance:
    instance = Instance(
        name="mock-avs",
        url="https://github.com/NethermindEth/mock-avs",
        version="v3.0.3",
        profile="option-returner",
        tag=tag,
    )
    _datadir(data_dir).init_instance(instance)
    return instance


def _last_operation(tmp_path: Path) -> dict[str, object]:
    lines = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    return json.loads(lines[-1])


@pytest.fixture
def reloads(monkeypatch: pytest.MonkeyPatch) -> list[httpx.Request]:
    """Route Prometheus reload requests to an in-process mock."""
    requests: list[httpx.Request] = []
    original_client = httpx.Client

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200)

    def client_factory(*args: object, **kwargs: object) -> httpx.Client:
        return original_client(transport=httpx.MockTransport(handler))

    monkeypatch.setattr(httpx, "Client", client_factory)
    return requests


def test_version_option_outputs_package_version(tmp_path: Path) -> None:
    """CLI ``--version`` flag emits the package version."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path) -> None:
    """Calling the CLI without a subcommand shows help output."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "EigenLayer node instance registry CLI" in result.stdout


def test_invalid_config_exits_with_validation_code(tmp_path: Path) -> None:
    """Configuration errors stop the CLI before any command runs."""
    env, _ = _prepare_environment(tmp_path, config_overrides={"unknown": True})

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == ExitCode.VALIDATION
    assert "Unknown configuration keys" in result.stdout


def test_config_show_json(tmp_path: Path) -> None:
    """`config show --json` emits JSON with the resolved configuration."""
    env, data_dir = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["data_dir"] == str(data_dir)
    assert payload["lock_timeout"] == 1.0
    assert payload["monitoring"]["scrape_interval"] == "15s"


def test_lock_timeout_flag_overrides_config(tmp_path: Path) -> None:
    """``--lock-timeout`` wins over the config file."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["--lock-timeout", "7", "config", "show", "--json"], env=env)

    assert result.exit_code == 0
    assert json.loads(result.stdout)["lock_timeout"] == 7.0


def test_instance_list_and_show(tmp_path: Path) -> None:
    """Registered instances are listed and shown."""
    env, data_dir = _prepare_environment(tmp_path)
    _register(data_dir, tag="a")
    _register(data_dir, tag="b")

    table = runner.invoke(app, ["instance", "list"], env=env)
    assert table.exit_code == 0
    assert "mock-avs-a" in table.stdout
    assert "mock-avs-b" in table.stdout

    listed = runner.invoke(app, ["instance", "list", "--json"], env=env)
    assert listed.exit_code == 0
    payload = json.loads(listed.stdout)
    assert [entry["id"] for entry in payload["instances"]] == ["mock-avs-a", "mock-avs-b"]

    shown = runner.invoke(app, ["instance", "show", "mock-avs-a", "--json"], env=env)
    assert shown.exit_code == 0
    details = json.loads(shown.stdout)
    assert details["profile"] == "option-returner"
    assert details["path"] == str(data_dir / "nodes" / "mock-avs-a")


def test_instance_show_missing_exits_with_validation_code(tmp_path: Path) -> None:
    """Unknown instances are reported and logged as validation errors."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["instance", "show", "ghost"], env=env)

    assert result.exit_code == ExitCode.VALIDATION
    assert "Instance not found: ghost" in result.stdout
    record = _last_operation(tmp_path)
    assert record["command"] == "instance show"
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["rc"] == ExitCode.VALIDATION  # type: ignore[index]


def test_instance_remove_takes_lock(tmp_path: Path) -> None:
    """``instance remove`` deletes the instance and records the lock wait."""
    env, data_dir = _prepare_environment(tmp_path)
    _register(data_dir)

    result = runner.invoke(app, ["instance", "remove", "mock-avs-default"], env=env)

    assert result.exit_code == 0
    assert not (data_dir / "nodes" / "mock-avs-default").exists()
    record = _last_operation(tmp_path)
    assert "lock_wait_ms" in record
    assert [step["name"] for step in record["steps"]] == [  # type: ignore[union-attr]
        "lock.acquire",
        "instance.remove",
    ]


@pytest.mark.mutation_timeout
def test_instance_remove_times_out_when_locked(tmp_path: Path) -> None:
    """A held instance lock makes ``instance remove`` fail with an environment error."""
    env, data_dir = _prepare_environment(tmp_path, config_overrides={"lock_timeout": 0.1})
    _register(data_dir)
    holder = _datadir(data_dir).instance("mock-avs-default")

    with holder.locked():
        result = runner.invoke(app, ["instance", "remove", "mock-avs-default"], env=env)

    assert result.exit_code == ExitCode.ENVIRONMENT
    assert (data_dir / "nodes" / "mock-avs-default" / "state.json").exists()


def test_instance_remove_rejects_parent_directory_id(tmp_path: Path) -> None:
    """``..`` is refused instead of resolving to the data directory itself."""
    env, data_dir = _prepare_environment(tmp_path)
    _register(data_dir)

    result = runner.invoke(app, ["instance", "remove", ".."], env=env)

    assert result.exit_code == ExitCode.VALIDATION
    assert "not a valid instance id" in result.stdout
    assert (data_dir / "nodes" / "mock-avs-default" / "state.json").exists()


def test_backup_init_and_list(tmp_path: Path) -> None:
    """``backup init`` seals an archive that ``backup list`` reports."""
    env, data_dir = _prepare_environment(tmp_path)
    _register(data_dir)

    created = runner.invoke(app, ["backup", "init", "mock-avs-default"], env=env)
    assert created.exit_code == 0

    backups = _datadir(data_dir).list_backups()
    assert [backup.instance_id for backup in backups] == ["mock-avs-default"]
    record = _last_operation(tmp_path)
    assert record["result"]["backups"] == [str(backups[0].path)]  # type: ignore[index]

    listed = runner.invoke(app, ["backup", "list", "--json"], env=env)
    assert listed.exit_code == 0
    payload = json.loads(listed.stdout)
    assert payload["backups"] == [
        {
            "id": str(backups[0].id),
            "instance_id": "mock-avs-default",
            "created": backups[0].id.timestamp.isoformat(),
            "path": str(backups[0].path),
        }
    ]

    table = runner.invoke(app, ["backup", "list"], env=env)
    assert table.exit_code == 0
    assert "ID" in table.stdout


def test_backup_init_unknown_instance(tmp_path: Path) -> None:
    """Backups can only be sealed for registered instances."""
    env, data_dir = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["backup", "init", "ghost"], env=env)

    assert result.exit_code == ExitCode.VALIDATION
    assert _datadir(data_dir).list_backups() == []


def test_backup_init_same_second_conflicts(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Two backups of one instance within a second collide."""
    env, data_dir = _prepare_environment(tmp_path)
    _register(data_dir)
    fixed = BackupId.new("mock-avs-default")
    monkeypatch.setattr(BackupId, "new", classmethod(lambda cls, instance_id: fixed))

    first = runner.invoke(app, ["backup", "init", "mock-avs-default"], env=env)
    second = runner.invoke(app, ["backup", "init", "mock-avs-default"], env=env)

    assert first.exit_code == 0
    assert second.exit_code == ExitCode.VALIDATION
    assert "Backup already exists" in second.stdout


def test_monitoring_commands_require_init(tmp_path: Path) -> None:
    """Target commands refuse to run before the stack is installed."""
    env, data_dir = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["monitoring", "targets"], env=env)

    assert result.exit_code == ExitCode.VALIDATION
    assert "monitoring init" in result.stdout
    assert not (data_dir / "monitoring").exists()


def test_monitoring_lifecycle(tmp_path: Path, reloads: list[httpx.Request]) -> None:
    """Install the stack, manage a target, then remove the stack."""
    env, data_dir = _prepare_environment(
        tmp_path,
        config_overrides={"monitoring": {"options": {"PROM_PORT": 9091}}},
    )
    _register(data_dir)

    installed = runner.invoke(app, ["monitoring", "init"], env=env)
    assert installed.exit_code == 0
    assert (data_dir / "monitoring" / ".env").exists()
    again = runner.invoke(app, ["monitoring", "init"], env=env)
    assert again.exit_code == 0
    assert "already installed" in again.stdout

    added = runner.invoke(
        app,
        ["monitoring", "add-target", "http://10.0.0.5:8080", "mock-avs-default"],
        env=env,
    )
    assert added.exit_code == 0
    assert [str(request.url) for request in reloads] == ["http://127.0.0.1:9091/-/reload"]

    repeated = runner.invoke(
        app,
        ["monitoring", "add-target", "http://10.0.0.5:8080", "mock-avs-default"],
        env=env,
    )
    assert repeated.exit_code == 0
    assert "already registered" in repeated.stdout
    assert _last_operation(tmp_path)["result"]["changed"] == 0  # type: ignore[index]
    assert len(reloads) == 1

    targets = runner.invoke(app, ["monitoring", "targets", "--json"], env=env)
    assert targets.exit_code == 0
    payload = json.loads(targets.stdout)
    assert payload["targets"][1] == {
        "job_name": "10.0.0.5:8080",
        "targets": ["10.0.0.5:8080"],
        "labels": {"instanceID": "mock-avs-default"},
    }

    missing = runner.invoke(app, ["monitoring", "remove-target", "http://10.9.9.9:1"], env=env)
    assert missing.exit_code == ExitCode.VALIDATION

    removed = runner.invoke(app, ["monitoring", "remove-target", "http://10.0.0.5:8080"], env=env)
    assert removed.exit_code == 0
    assert len(reloads) == 2

    dropped = runner.invoke(app, ["monitoring", "remove"], env=env)
    assert dropped.exit_code == 0
    assert not (data_dir / "monitoring").exists()


def test_add_target_for_unknown_instance(tmp_path: Path, reloads: list[httpx.Request]) -> None:
    """Targets can only be registered for known instances."""
    env, _ = _prepare_environment(tmp_path)
    assert runner.invoke(app, ["monitoring", "init"], env=env).exit_code == 0

    result = runner.invoke(
        app,
        ["monitoring", "add-target", "http://10.0.0.5:8080", "ghost"],
        env=env,
    )

    assert result.exit_code == ExitCode.VALIDATION
    assert reloads == []


def test_failed_reload_exits_with_provider_code(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A Prometheus that rejects the reload maps to the provider exit code."""
    original_client = httpx.Client

    def client_factory(*args: object, **kwargs: object) -> httpx.Client:
        return original_client(transport=httpx.MockTransport(lambda _: httpx.Response(503)))

    monkeypatch.setattr(httpx, "Client", client_factory)
    env, data_dir = _prepare_environment(tmp_path)
    _register(data_dir)
    assert runner.invoke(app, ["monitoring", "init"], env=env).exit_code == 0

    result = runner.invoke(
        app,
        ["monitoring", "add-target", "http://10.0.0.5:8080", "mock-avs-default"],
        env=env,
    )

    assert result.exit_code == ExitCode.PROVIDER
    assert "Reload failed" in result.stdout


def test_monitoring_remove_without_stack(tmp_path: Path) -> None:
    """Removing a stack that does not exist is a validation error."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["monitoring", "remove"], env=env)

    assert result.exit_code == ExitCode.VALIDATION
