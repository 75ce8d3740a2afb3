"""Tests for the gsadmin CLI."""
from __future__ import annotations

import json
import subprocess
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from gsadmin import __version__
from gsadmin.cli import app
from gsadmin.models import ServerState
from gsadmin.providers.query import QueryProbe
from gsadmin.providers.toolchain import ToolchainError, ToolchainProvider

runner = CliRunner()


def _prepare_environment(tmp_path: Path, **config_overrides: object) -> dict[str, str]:
    """Write a config file under *tmp_path* and return the CLI environment."""
    config: dict[str, object] = {
        "toolchain_dir": str(tmp_path / "lgsm"),
        "logs_dir": str(tmp_path / "logs"),
        "instances": {"Default": "vhserver", "Rotis": "vhserver-2"},
    }
    config.update(config_overrides)
    config_path = tmp_path / "config.yml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return {"GSADMIN_CONFIG_FILE": str(config_path)}


def _write_lock(tmp_path: Path, physical_id: str, port: int) -> None:
    lock_dir = tmp_path / "lgsm" / "lock"
    lock_dir.mkdir(parents=True, exist_ok=True)
    (lock_dir / f"{physical_id}.lock").write_text(f"1\nv\n{port}\n", encoding="utf-8")


def _install_toolchain(tmp_path: Path, physical_id: str) -> Path:
    executable = tmp_path / "lgsm" / physical_id
    executable.parent.mkdir(parents=True, exist_ok=True)
    executable.write_text("#!/bin/sh\n", encoding="utf-8")
    executable.chmod(0o755)
    return executable


def _last_operation(tmp_path: Path) -> dict[str, object]:
    lines = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    return json.loads(lines[-1])


@pytest.fixture(autouse=True)
def _probe_running(monkeypatch: pytest.MonkeyPatch) -> None:
    """Every probe answers Running."""
    monkeypatch.setattr(QueryProbe, "probe", lambda self, host, port: ServerState.RUNNING)


def test_version_flag() -> None:
    """``--version`` prints the package version."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_status_json(tmp_path: Path) -> None:
    """``status --json`` reports every configured server."""
    env = _prepare_environment(tmp_path)
    _write_lock(tmp_path, "vhserver-2", 2457)

    result = runner.invoke(app, ["status", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    assert json.loads(result.stdout) == {"servers": {"Default": "Stopped", "Rotis": "Running"}}
    record = _last_operation(tmp_path)
    assert record["command"] == "status"


def test_status_table(tmp_path: Path) -> None:
    """The table view lists servers with their toolchain ids."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["status"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Rotis" in result.stdout
    assert "vhserver-2" in result.stdout
    assert "Stopped" in result.stdout


def test_action_success(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """``action`` waits for the toolchain and reports success."""
    env = _prepare_environment(tmp_path)
    calls: list[tuple[str, str]] = []
    _install_toolchain(tmp_path, "vhserver-2")

    def fake_run(
        self: ToolchainProvider,
        physical_id: str,
        verb: str,
    ) -> subprocess.CompletedProcess[str]:
        calls.append((physical_id, verb))
        return subprocess.CompletedProcess([physical_id, verb], 0, stdout="with code: 0")

    monkeypatch.setattr(ToolchainProvider, "run", fake_run)

    result = runner.invoke(app, ["action", "Rotis", "Start"], env=env)

    assert result.exit_code == 0, result.stdout
    assert calls == [("vhserver-2", "start")]
    assert "Start completed" in result.stdout
    record = _last_operation(tmp_path)
    assert record["command"] == "action"
    assert record["result"]["status"] == "success"


def test_action_failure_exits_provider_code(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Toolchain failures exit with the provider code."""
    env = _prepare_environment(tmp_path)
    _install_toolchain(tmp_path, "vhserver")

    def fake_run(self: ToolchainProvider, physical_id: str, verb: str) -> None:
        raise ToolchainError("vhserver update failed (exit 1): nope", returncode=1, output="nope")

    monkeypatch.setattr(ToolchainProvider, "run", fake_run)

    result = runner.invoke(app, ["action", "Default", "Update", "--json"], env=env)

    assert result.exit_code == 4
    assert '"succeeded": false' in result.stdout
    record = _last_operation(tmp_path)
    assert record["result"]["status"] == "error"
    assert record["result"]["rc"] == 4


@pytest.mark.parametrize(
    ("args", "fragment"),
    [
        (["action", "Nope", "Start"], "Unknown server"),
        (["action", "Default", "Restart"], "Unknown action"),
    ],
)
def test_action_validation_errors(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    args: list[str],
    fragment: str,
) -> None:
    """Validation failures exit 2 without touching the toolchain."""
    env = _prepare_environment(tmp_path)
    calls: list[str] = []
    monkeypatch.setattr(
        ToolchainProvider,
        "run",
        lambda self, physical_id, verb: calls.append(verb),
    )

    result = runner.invoke(app, args, env=env)

    assert result.exit_code == 2
    assert fragment in result.stdout
    assert calls == []


def test_config_show_json(tmp_path: Path) -> None:
    """``config show --json`` renders the merged configuration."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["instances"] == {"Default": "vhserver", "Rotis": "vhserver-2"}
    assert payload["lock_dir"] == str(tmp_path / "lgsm" / "lock")


def test_invalid_config_exits_validation(tmp_path: Path) -> None:
    """Configuration errors are reported with exit code 2."""
    env = _prepare_environment(tmp_path, bogus=True)

    result = runner.invoke(app, ["status"], env=env)

    assert result.exit_code == 2
    assert "Configuration error" in result.stdout


def test_serve_runs_uvicorn(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """``serve`` hands the gateway app to uvicorn with the configured bind."""
    import uvicorn

    env = _prepare_environment(tmp_path, api={"port": 9001})
    captured: dict[str, object] = {}

    def fake_run(app_obj: object, **kwargs: object) -> None:
        captured["app"] = app_obj
        captured.update(kwargs)

    monkeypatch.setattr(uvicorn, "run", fake_run)

    result = runner.invoke(app, ["serve", "--host", "127.0.0.1"], env=env)

    assert result.exit_code == 0, result.stdout
    assert captured["host"] == "127.0.0.1"
    assert captured["port"] == 9001
    assert captured["app"] is not None


def test_action_missing_executable_exits_environment(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A missing toolchain executable is an environment error."""
    env = _prepare_environment(tmp_path)
    calls: list[str] = []
    monkeypatch.setattr(
        ToolchainProvider,
        "run",
        lambda self, physical_id, verb: calls.append(verb),
    )

    result = runner.invoke(app, ["action", "Default", "Stop"], env=env)

    assert result.exit_code == 3
    assert "not found" in result.stdout
    assert calls == []


def test_status_single_server(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Naming a server reconciles only that instance."""
    env = _prepare_environment(tmp_path)
    _write_lock(tmp_path, "vhserver", 2456)
    _write_lock(tmp_path, "vhserver-2", 2457)
    probed: list[int] = []

    def fake_probe(self: QueryProbe, host: str, port: int) -> ServerState:
        probed.append(port)
        return ServerState.RUNNING

    monkeypatch.setattr(QueryProbe, "probe", fake_probe)

    result = runner.invoke(app, ["status", "Rotis", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    assert json.loads(result.stdout) == {"servers": {"Rotis": "Running"}}
    assert probed == [2458]


def test_status_unknown_server(tmp_path: Path) -> None:
    """Unknown server names exit with the validation code."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["status", "Nope"], env=env)

    assert result.exit_code == 2
    assert "Unknown server" in result.stdout


def test_action_progress_message_is_readable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The progress line uses a plain phrase rather than the state name."""
    env = _prepare_environment(tmp_path)
    _install_toolchain(tmp_path, "vhserver")
    monkeypatch.setattr(
        ToolchainProvider,
        "run",
        lambda self, physical_id, verb: subprocess.CompletedProcess(
            [physical_id, verb], 0, stdout="with code: 0"
        ),
    )

    result = runner.invoke(app, ["action", "Default", "Stop"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Stopping server 'Default'..." in result.stdout
    assert "ShuttingDown" not in result.stdout
