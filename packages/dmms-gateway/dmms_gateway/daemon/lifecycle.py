"""Daemon layer — Lifecycle controller.

State machine::

    NOT_INSTALLED ──install──▶ INSTALLED ──start──▶ RUNNING
          ▲                        │  ▲                 │
          └───────uninstall────────┘  └──────stop───────┘

  - ``install`` is valid from any state; re-installing overwrites the
    definition and reloads the service.
  - ``start`` / ``restart`` require an installed service.
  - ``stop`` on a service that is not running is a no-op.
  - ``uninstall`` is valid from any state.

Operations on one service are serialized across controllers and across
processes by :func:`dmms_gateway.daemon.locking.service_lock`, keyed by
the adapter KIND and service label.  Each dispatched operation runs in its
own task and the caller awaits it through ``asyncio.shield``: cancelling
the caller never leaves a half-applied install or stop behind.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from dmms_gateway.daemon.base import ServiceAdapter
from dmms_gateway.daemon.locking import service_lock, service_lock_path
from dmms_gateway.daemon.models import (
    LifecycleResult,
    ServiceDefinition,
    ServiceRuntimeStatus,
    ServiceState,
)
from dmms_gateway.exceptions import ServiceDefinitionParseError, ServiceNotInstalledError
from dmms_gateway.logging import bind_service_context, clear_service_context, get_logger
from dmms_gateway.paths import resolve_state_dir

log = get_logger(__name__)

DEFAULT_LOCK_TIMEOUT_S = 120.0


@dataclass(frozen=True)
class ServiceSnapshot:
    definition: ServiceDefinition | None
    loaded: bool
    runtime: ServiceRuntimeStatus

    @property
    def state(self) -> ServiceState:
        if self.runtime.running:
            return ServiceState.RUNNING
        if self.definition is not None or self.loaded:
            return ServiceState.INSTALLED
        return ServiceState.NOT_INSTALLED


class LifecycleController:
    """Drives one service through install/start/stop/restart/uninstall."""

    def __init__(self, adapter: ServiceAdapter, lock_timeout: float = DEFAULT_LOCK_TIMEOUT_S) -> None:
        self._adapter = adapter
        self._lock_timeout = lock_timeout
        self._tasks: set[asyncio.Task[LifecycleResult]] = set()

    @property
    def adapter(self) -> ServiceAdapter:
        return self._adapter

    @property
    def label(self) -> str:
        return self._adapter.label

    @property
    def state_dir(self) -> Path:
        return resolve_state_dir(self._adapter.env)

    @property
    def lock_path(self) -> Path:
        return service_lock_path(self.state_dir, self._adapter.KIND, self.label)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def read_definition(self) -> ServiceDefinition | None:
        """Read the definition; an unparsable file counts as absent."""
        try:
            return await self._adapter.read_definition()
        except ServiceDefinitionParseError as exc:
            log.warning("service_definition_unreadable", path=exc.path, reason=exc.reason)
            return None

    async def snapshot(self) -> ServiceSnapshot:
        definition = await self.read_definition()
        loaded = await self._adapter.is_loaded()
        runtime = await self._adapter.read_runtime_status()
        return ServiceSnapshot(definition=definition, loaded=loaded, runtime=runtime)

    async def state(self) -> ServiceState:
        return (await self.snapshot()).state

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def install(self, definition: ServiceDefinition) -> LifecycleResult:
        async def op() -> LifecycleResult:
            before = await self.snapshot()
            await self._adapter.install(definition)
            result = "installed" if before.state is ServiceState.NOT_INSTALLED else "reinstalled"
            return await self._result("install", result)

        return await self._dispatch("install", op)

    async def start(self) -> LifecycleResult:
        async def op() -> LifecycleResult:
            before = await self.snapshot()
            if before.state is ServiceState.NOT_INSTALLED:
                raise ServiceNotInstalledError("start", self.label)
            if before.state is ServiceState.RUNNING:
                return LifecycleResult("start", "already-running", self.label, state=ServiceState.RUNNING)
            await self._adapter.start()
            return await self._result("start", "started")

        return await self._dispatch("start", op)

    async def stop(self) -> LifecycleResult:
        async def op() -> LifecycleResult:
            before = await self.snapshot()
            if not before.loaded and not before.runtime.running:
                return LifecycleResult("stop", "not-loaded", self.label, state=before.state)
            if not before.runtime.running:
                return LifecycleResult("stop", "already-stopped", self.label, state=before.state)
            await self._adapter.stop()
            return await self._result("stop", "stopped")

        return await self._dispatch("stop", op)

    async def restart(self) -> LifecycleResult:
        async def op() -> LifecycleResult:
            before = await self.snapshot()
            if before.state is ServiceState.NOT_INSTALLED:
                raise ServiceNotInstalledError("restart", self.label)
            if self._adapter.supports_restart:
                await self._adapter.restart()
            else:
                if before.runtime.running:
                    await self._adapter.stop()
                await self._adapter.start()
            return await self._result("restart", "restarted")

        return await self._dispatch("restart", op)

    async def uninstall(self) -> LifecycleResult:
        async def op() -> LifecycleResult:
            before = await self.snapshot()
            # Always run the adapter so stale leftovers are cleaned up.
            await self._adapter.uninstall()
            result = "not-installed" if before.state is ServiceState.NOT_INSTALLED else "uninstalled"
            return LifecycleResult("uninstall", result, self.label, state=ServiceState.NOT_INSTALLED)

        return await self._dispatch("uninstall", op)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _result(self, action: str, result: str) -> LifecycleResult:
        after = await self.snapshot()
        return LifecycleResult(action, result, self.label, state=after.state)

    async def _dispatch(
        self,
        action: str,
        op: Callable[[], Awaitable[LifecycleResult]],
    ) -> LifecycleResult:
        async def run() -> LifecycleResult:
            async with service_lock(self._adapter.KIND, self.label, self.state_dir, self._lock_timeout):
                bind_service_context(service=self.label, operation=action)
                try:
                    log.info("lifecycle_start", kind=self._adapter.KIND)
                    outcome = await op()
                    log.info("lifecycle_done", result=outcome.result)
                    return outcome
                except Exception as exc:
                    log.error("lifecycle_failed", error=str(exc), error_type=type(exc).__name__)
                    raise
                finally:
                    clear_service_context()

        task = asyncio.create_task(run(), name=f"lifecycle:{action}:{self.label}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return await asyncio.shield(task)

    async def drain(self) -> None:
        """Wait for operations whose callers were cancelled."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
