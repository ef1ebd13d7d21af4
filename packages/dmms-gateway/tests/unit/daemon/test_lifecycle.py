"""Unit tests — LifecycleController state machine and serialization."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from dmms_gateway.daemon.base import ServiceAdapter
from dmms_gateway.daemon.lifecycle import LifecycleController
from dmms_gateway.daemon.locking import file_lock
from dmms_gateway.daemon.models import (
    RuntimeStatus,
    ServiceDefinition,
    ServiceRuntimeStatus,
    ServiceState,
)
from dmms_gateway.exceptions import (
    PermissionDeniedError,
    ServiceBusyError,
    ServiceDefinitionParseError,
    ServiceNotInstalledError,
)

DEFINITION = ServiceDefinition(program_arguments=("py", "-m", "dmms_gateway", "gateway", "run"))


@pytest.fixture(autouse=True)
def fake_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Lock files land under the fake home instead of the real one."""
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("USERPROFILE", str(tmp_path))
    return tmp_path


class FakeAdapter(ServiceAdapter):
    """In-memory service manager that records the operations it receives."""

    KIND = "fake"

    def __init__(
        self,
        native_restart: bool = True,
        delay: float = 0.0,
        label: str = "fake-gateway",
        journal: list[str] | None = None,
    ) -> None:
        super().__init__(env={})
        self._label = label
        self.journal = journal if journal is not None else []
        self.supports_restart = native_restart  # type: ignore[misc]
        self.delay = delay
        self.definition: ServiceDefinition | None = None
        self.loaded = False
        self.running = False
        self.ops: list[str] = []
        self.active = 0
        self.max_active = 0
        self.fail_with: Exception | None = None
        self.corrupt = False

    @property
    def label(self) -> str:
        return self._label

    @property
    def definition_path(self) -> Path:
        return Path("/nonexistent/fake-gateway")

    async def _op(self, name: str) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            self.ops.append(name)
            self.journal.append(f"{name}-begin")
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_with is not None:
                raise self.fail_with
            self.journal.append(f"{name}-end")
        finally:
            self.active -= 1

    async def read_definition(self) -> ServiceDefinition | None:
        if self.corrupt:
            raise ServiceDefinitionParseError(str(self.definition_path), "garbage")
        return self.definition

    async def install(self, definition: ServiceDefinition) -> None:
        await self._op("install")
        self.definition = definition
        self.loaded = True
        self.running = True

    async def uninstall(self) -> None:
        await self._op("uninstall")
        self.definition = None
        self.loaded = False
        self.running = False

    async def start(self) -> None:
        await self._op("start")
        self.loaded = True
        self.running = True

    async def restart(self) -> None:
        await self._op("restart")
        self.running = True

    async def stop(self) -> None:
        await self._op("stop")
        self.running = False

    async def is_loaded(self) -> bool:
        return self.loaded

    async def read_runtime_status(self) -> ServiceRuntimeStatus:
        return ServiceRuntimeStatus(
            status=RuntimeStatus.RUNNING if self.running else RuntimeStatus.STOPPED,
            loaded=self.loaded,
        )


@pytest.mark.unit
class TestStates:
    async def test_not_installed(self) -> None:
        assert await LifecycleController(FakeAdapter()).state() is ServiceState.NOT_INSTALLED

    async def test_installed_but_stopped(self) -> None:
        adapter = FakeAdapter()
        adapter.definition = DEFINITION
        assert await LifecycleController(adapter).state() is ServiceState.INSTALLED

    async def test_corrupt_definition_counts_as_absent(self) -> None:
        adapter = FakeAdapter()
        adapter.corrupt = True
        controller = LifecycleController(adapter)
        assert await controller.read_definition() is None
        assert await controller.state() is ServiceState.NOT_INSTALLED


@pytest.mark.unit
class TestOperations:
    async def test_install_then_reinstall(self) -> None:
        adapter = FakeAdapter()
        controller = LifecycleController(adapter)
        first = await controller.install(DEFINITION)
        second = await controller.install(DEFINITION)
        assert (first.result, first.state) == ("installed", ServiceState.RUNNING)
        assert second.result == "reinstalled"
        assert adapter.ops == ["install", "install"]

    async def test_start_requires_install(self) -> None:
        adapter = FakeAdapter()
        with pytest.raises(ServiceNotInstalledError) as exc_info:
            await LifecycleController(adapter).start()
        assert exc_info.value.operation == "start"
        assert adapter.ops == []

    async def test_start_when_running_is_noop(self) -> None:
        adapter = FakeAdapter()
        adapter.definition, adapter.loaded, adapter.running = DEFINITION, True, True
        result = await LifecycleController(adapter).start()
        assert result.result == "already-running"
        assert adapter.ops == []

    async def test_start_stopped_service(self) -> None:
        adapter = FakeAdapter()
        adapter.definition = DEFINITION
        result = await LifecycleController(adapter).start()
        assert (result.result, result.state) == ("started", ServiceState.RUNNING)

    async def test_stop_not_installed_is_noop(self) -> None:
        adapter = FakeAdapter()
        result = await LifecycleController(adapter).stop()
        assert result.result == "not-loaded"
        assert adapter.ops == []

    async def test_stop_already_stopped(self) -> None:
        adapter = FakeAdapter()
        adapter.definition, adapter.loaded = DEFINITION, True
        result = await LifecycleController(adapter).stop()
        assert result.result == "already-stopped"
        assert adapter.ops == []

    async def test_stop_running(self) -> None:
        adapter = FakeAdapter()
        adapter.definition, adapter.loaded, adapter.running = DEFINITION, True, True
        result = await LifecycleController(adapter).stop()
        assert (result.result, result.state) == ("stopped", ServiceState.INSTALLED)

    async def test_restart_native(self) -> None:
        adapter = FakeAdapter(native_restart=True)
        adapter.definition, adapter.loaded, adapter.running = DEFINITION, True, True
        result = await LifecycleController(adapter).restart()
        assert result.result == "restarted"
        assert adapter.ops == ["restart"]

    async def test_restart_composes_stop_and_start(self) -> None:
        adapter = FakeAdapter(native_restart=False)
        adapter.definition, adapter.loaded, adapter.running = DEFINITION, True, True
        await LifecycleController(adapter).restart()
        assert adapter.ops == ["stop", "start"]

    async def test_restart_stopped_without_native_only_starts(self) -> None:
        adapter = FakeAdapter(native_restart=False)
        adapter.definition = DEFINITION
        await LifecycleController(adapter).restart()
        assert adapter.ops == ["start"]

    async def test_restart_requires_install(self) -> None:
        with pytest.raises(ServiceNotInstalledError):
            await LifecycleController(FakeAdapter()).restart()

    async def test_uninstall(self) -> None:
        adapter = FakeAdapter()
        controller = LifecycleController(adapter)
        await controller.install(DEFINITION)
        result = await controller.uninstall()
        assert (result.result, result.state) == ("uninstalled", ServiceState.NOT_INSTALLED)
        again = await controller.uninstall()
        assert again.result == "not-installed"
        assert adapter.ops == ["install", "uninstall", "uninstall"]

    async def test_adapter_errors_propagate(self) -> None:
        adapter = FakeAdapter()
        adapter.fail_with = PermissionDeniedError("install", "fake-gateway", "denied")
        with pytest.raises(PermissionDeniedError):
            await LifecycleController(adapter).install(DEFINITION)


@pytest.mark.unit
class TestSerialization:
    async def test_concurrent_operations_do_not_interleave(self) -> None:
        adapter = FakeAdapter(delay=0.01)
        controller = LifecycleController(adapter)
        await asyncio.gather(
            controller.install(DEFINITION),
            controller.stop(),
            controller.start(),
            controller.restart(),
        )
        assert adapter.max_active == 1
        assert adapter.ops == ["install", "stop", "start", "restart"]

    async def test_cancelled_caller_does_not_abort_operation(self) -> None:
        adapter = FakeAdapter(delay=0.05)
        controller = LifecycleController(adapter)
        caller = asyncio.create_task(controller.install(DEFINITION))
        await asyncio.sleep(0.01)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        await controller.drain()
        assert adapter.definition == DEFINITION
        assert await controller.state() is ServiceState.RUNNING

    async def test_controllers_on_same_service_do_not_interleave(self) -> None:
        journal: list[str] = []
        first = LifecycleController(FakeAdapter(delay=0.02, journal=journal))
        second = LifecycleController(FakeAdapter(delay=0.02, journal=journal))
        await asyncio.gather(first.install(DEFINITION), second.uninstall())
        assert journal == ["install-begin", "install-end", "uninstall-begin", "uninstall-end"]

    async def test_controllers_on_different_services_run_concurrently(self) -> None:
        journal: list[str] = []
        first = LifecycleController(FakeAdapter(delay=0.02, journal=journal))
        second = LifecycleController(FakeAdapter(delay=0.02, label="other-gateway", journal=journal))
        await asyncio.gather(first.install(DEFINITION), second.install(DEFINITION))
        assert journal[:2] == ["install-begin", "install-begin"]

    async def test_lock_file_lives_under_state_dir(self, fake_home: Path) -> None:
        controller = LifecycleController(FakeAdapter())
        assert controller.lock_path == fake_home / ".dmms-ai" / "locks" / "fake-fake-gateway.lock"
        await controller.install(DEFINITION)
        assert controller.lock_path.read_text(encoding="utf-8").startswith("pid=")

    async def test_lock_held_by_another_process_times_out(self) -> None:
        adapter = FakeAdapter()
        controller = LifecycleController(adapter, lock_timeout=0.1)
        async with file_lock(controller.lock_path, "other-cli", timeout=1.0):
            with pytest.raises(ServiceBusyError) as exc_info:
                await controller.install(DEFINITION)
        assert exc_info.value.service == "fake-gateway"
        assert adapter.ops == []

    async def test_lock_released_after_failure(self) -> None:
        adapter = FakeAdapter()
        adapter.fail_with = PermissionDeniedError("install", "fake-gateway", "denied")
        controller = LifecycleController(adapter, lock_timeout=0.1)
        with pytest.raises(PermissionDeniedError):
            await controller.install(DEFINITION)
        adapter.fail_with = None
        result = await controller.install(DEFINITION)
        assert result.result == "installed"
