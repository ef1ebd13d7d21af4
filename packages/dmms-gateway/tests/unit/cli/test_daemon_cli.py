"""Unit tests — CLI daemon commands."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from dmms_gateway.cli.commands.daemon import app
from dmms_gateway.daemon.models import LifecycleResult, ServiceState
from dmms_gateway.daemon.program_args import build_service_definition
from dmms_gateway.daemon.systemd import SystemdServiceAdapter, render_systemd_unit
from dmms_gateway.diagnostics.engine import DiagnosticsEngine
from dmms_gateway.diagnostics.ports import PortStatus, PortUsageReport
from dmms_gateway.exceptions import (
    PermissionDeniedError,
    ServiceBusyError,
    ServiceNotInstalledError,
    UnsupportedPlatformError,
)
from dmms_gateway.gateway.rpc import RpcProbeResult

runner = CliRunner()

MODULE = "dmms_gateway.cli.commands.daemon"


@pytest.fixture(autouse=True)
def _settings(test_settings, monkeypatch: pytest.MonkeyPatch):
    for key in ("DMMS_AI_GATEWAY_PORT", "DMMS_AI_GATEWAY_TOKEN", "DMMS_AI_PROFILE", "DMMS_AI_STATE_DIR"):
        monkeypatch.delenv(key, raising=False)
    return test_settings


def _controller(**methods) -> MagicMock:
    controller = MagicMock()
    for name, value in methods.items():
        setattr(controller, name, value)
    return controller


@pytest.mark.unit
class TestLifecycleCommands:
    def test_start_json(self) -> None:
        result_obj = LifecycleResult("start", "started", "dmms-ai-gateway.service", state=ServiceState.RUNNING)
        controller = _controller(start=AsyncMock(return_value=result_obj))
        with patch(f"{MODULE}.select_service_adapter", return_value=MagicMock()), \
             patch(f"{MODULE}.LifecycleController", return_value=controller):
            result = runner.invoke(app, ["start", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {
            "ok": True,
            "action": "start",
            "result": "started",
            "service": "dmms-ai-gateway.service",
            "state": "running",
        }

    def test_stop_plain_output(self) -> None:
        result_obj = LifecycleResult("stop", "not-loaded", "dmms-ai-gateway.service", state=ServiceState.NOT_INSTALLED)
        controller = _controller(stop=AsyncMock(return_value=result_obj))
        with patch(f"{MODULE}.select_service_adapter", return_value=MagicMock()), \
             patch(f"{MODULE}.LifecycleController", return_value=controller):
            result = runner.invoke(app, ["stop"])

        assert result.exit_code == 0
        assert "not-loaded" in result.stdout

    @pytest.mark.parametrize("command", ["restart", "uninstall"])
    def test_other_commands_dispatch(self, command: str) -> None:
        result_obj = LifecycleResult(command, "done", "svc")
        controller = _controller(**{command: AsyncMock(return_value=result_obj)})
        with patch(f"{MODULE}.select_service_adapter", return_value=MagicMock()), \
             patch(f"{MODULE}.LifecycleController", return_value=controller):
            result = runner.invoke(app, [command, "--json"])

        assert result.exit_code == 0
        getattr(controller, command).assert_awaited_once()

    def test_not_installed_error_exits_1(self) -> None:
        controller = _controller(start=AsyncMock(side_effect=ServiceNotInstalledError("start", "svc")))
        with patch(f"{MODULE}.select_service_adapter", return_value=MagicMock()), \
             patch(f"{MODULE}.LifecycleController", return_value=controller):
            result = runner.invoke(app, ["start", "--json"])

        assert result.exit_code == 1
        payload = json.loads(result.stdout)
        assert payload["ok"] is False
        assert payload["errorType"] == "ServiceNotInstalledError"
        assert payload["context"] == {"operation": "start", "service": "svc"}

    def test_busy_service_exits_1(self, test_settings) -> None:
        busy = ServiceBusyError("svc", "/state/locks/systemd-svc.lock", 120.0)
        controller = _controller(restart=AsyncMock(side_effect=busy))
        with patch(f"{MODULE}.select_service_adapter", return_value=MagicMock()), \
             patch(f"{MODULE}.LifecycleController", return_value=controller) as controller_cls:
            result = runner.invoke(app, ["restart", "--json"])

        assert result.exit_code == 1
        assert json.loads(result.stdout)["errorType"] == "ServiceBusyError"
        assert controller_cls.call_args.kwargs["lock_timeout"] == test_settings.service.lock_timeout_s

    def test_permission_denied_plain(self) -> None:
        controller = _controller(stop=AsyncMock(side_effect=PermissionDeniedError("stop", "svc", "Access denied")))
        with patch(f"{MODULE}.select_service_adapter", return_value=MagicMock()), \
             patch(f"{MODULE}.LifecycleController", return_value=controller):
            result = runner.invoke(app, ["stop"])

        assert result.exit_code == 1
        assert "Permission denied" in result.stdout

    def test_unsupported_platform(self) -> None:
        with patch(f"{MODULE}.select_service_adapter", side_effect=UnsupportedPlatformError("plan9")):
            result = runner.invoke(app, ["start", "--json"])

        assert result.exit_code == 1
        assert json.loads(result.stdout)["errorType"] == "UnsupportedPlatformError"


@pytest.mark.unit
class TestInstall:
    def test_install_builds_definition(self) -> None:
        result_obj = LifecycleResult("install", "installed", "svc", state=ServiceState.RUNNING)
        controller = _controller(install=AsyncMock(return_value=result_obj))
        with patch(f"{MODULE}.select_service_adapter", return_value=MagicMock()), \
             patch(f"{MODULE}.LifecycleController", return_value=controller):
            result = runner.invoke(app, ["install", "--port", "19005", "--bind", "lan", "--token", " t ", "--json"])

        assert result.exit_code == 0
        definition = controller.install.await_args.args[0]
        assert definition.program_arguments[-4:] == ("--port", "19005", "--bind", "lan")
        assert definition.environment["DMMS_AI_GATEWAY_TOKEN"] == "t"
        assert definition.environment["DMMS_AI_GATEWAY_PORT"] == "19005"

    def test_install_default_port(self) -> None:
        controller = _controller(install=AsyncMock(return_value=LifecycleResult("install", "installed", "svc")))
        with patch(f"{MODULE}.select_service_adapter", return_value=MagicMock()), \
             patch(f"{MODULE}.LifecycleController", return_value=controller):
            result = runner.invoke(app, ["install", "--json"])

        assert result.exit_code == 0
        definition = controller.install.await_args.args[0]
        assert "18789" in definition.program_arguments
        assert "DMMS_AI_GATEWAY_TOKEN" not in definition.environment

    def test_invalid_bind(self) -> None:
        result = runner.invoke(app, ["install", "--bind", "everywhere"])
        assert result.exit_code == 2

    def test_invalid_port(self) -> None:
        result = runner.invoke(app, ["install", "--port", "70000"])
        assert result.exit_code == 2


@pytest.mark.unit
class TestStatus:
    @staticmethod
    def _engine_factory(env, port_status: PortStatus = PortStatus.FREE):
        async def port_probe(port, **kwargs):
            return PortUsageReport(port=port, status=port_status)

        async def rpc_probe(url, **kwargs):
            return RpcProbeResult(ok=False, url=url, error="connection refused")

        def factory(adapter, settings=None):
            return DiagnosticsEngine(
                adapter,
                settings=settings,
                env=env,
                port_probe=port_probe,
                rpc_probe=rpc_probe,
                health_probe=rpc_probe,
            )

        return factory

    def test_unsupported_platform_json(self, env) -> None:
        with patch(f"{MODULE}.select_service_adapter", side_effect=UnsupportedPlatformError("plan9")), \
             patch(f"{MODULE}.DiagnosticsEngine", side_effect=self._engine_factory(env)):
            result = runner.invoke(app, ["status", "--json"])

        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert payload["service"]["state"] == "unknown"
        assert payload["gateway"]["port"] == 18789
        assert payload["gateway"]["portSource"] == "config default"
        assert payload["port"]["status"] == "free"
        assert payload["rpc"]["ok"] is False

    def test_port_mismatch_json(self, env, fake_runner) -> None:
        adapter = SystemdServiceAdapter(env, runner=fake_runner)
        adapter.definition_path.parent.mkdir(parents=True)
        definition = build_service_definition(19002, env=env, python_executable="py", token="hunter2")
        adapter.definition_path.write_text(render_systemd_unit(definition))

        with patch(f"{MODULE}.select_service_adapter", return_value=adapter), \
             patch(f"{MODULE}.DiagnosticsEngine", side_effect=self._engine_factory(env)):
            result = runner.invoke(app, ["status", "--json"])

        assert result.exit_code == 0
        assert "hunter2" not in result.stdout
        payload = json.loads(result.stdout)
        assert payload["config"]["mismatch"] is True
        assert payload["config"]["fields"] == [{"field": "port", "cli": "18789", "service": "19002"}]
        assert payload["gateway"]["port"] == 19002
        assert payload["service"]["tokenConfigured"] is True

    def test_table_output(self, env) -> None:
        with patch(f"{MODULE}.select_service_adapter", side_effect=UnsupportedPlatformError("plan9")), \
             patch(f"{MODULE}.DiagnosticsEngine", side_effect=self._engine_factory(env)):
            result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "DMMS AI Gateway" in result.stdout
        assert "hint:" in result.stdout
