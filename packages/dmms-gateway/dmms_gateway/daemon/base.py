"""Daemon layer — ServiceAdapter interface.

One subclass per OS service manager:

    LaunchdServiceAdapter   — macOS LaunchAgent property list
    SystemdServiceAdapter   — Linux systemd user unit
    SchtasksServiceAdapter  — Windows Scheduled Task + generated .cmd script

Design principles:
  - Exactly one adapter is active per process; it is chosen once by
    ``select_service_adapter()`` and passed down explicitly.
  - Shared logic never branches on the OS; everything platform-specific
    lives behind this interface.
  - Text produced by OS tools is parsed by module-level pure functions
    (``parse_systemd_show`` etc.) so parsers are testable without the tool.
  - Adapters raise ``PermissionDeniedError`` / ``ServiceCommandError`` for
    failed operations.  ``read_definition`` returns None when nothing is
    persisted and raises ``ServiceDefinitionParseError`` for unreadable
    files.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping, Sequence
from pathlib import Path
from typing import Any, ClassVar

from dmms_gateway.daemon.exec import DEFAULT_TIMEOUT_S, CommandResult, run_command
from dmms_gateway.daemon.models import ServiceDefinition, ServiceRuntimeStatus
from dmms_gateway.paths import current_env

CommandRunner = Callable[..., Awaitable[CommandResult]]


class ServiceAdapter(ABC):
    """Contract shared by the three service-manager adapters."""

    KIND: ClassVar[str] = ""
    supports_restart: ClassVar[bool] = False

    def __init__(
        self,
        env: Mapping[str, str] | None = None,
        *,
        command_timeout: float = DEFAULT_TIMEOUT_S,
        runner: CommandRunner = run_command,
    ) -> None:
        self._env: dict[str, str] = dict(current_env() if env is None else env)
        self._timeout = command_timeout
        self._runner = runner

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def env(self) -> Mapping[str, str]:
        return self._env

    @property
    @abstractmethod
    def label(self) -> str:
        """Service name as the OS service manager knows it."""

    @property
    @abstractmethod
    def definition_path(self) -> Path:
        """The unit/plist/script file the definition lives in."""

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def read_definition(self) -> ServiceDefinition | None: ...

    @abstractmethod
    async def install(self, definition: ServiceDefinition) -> None: ...

    @abstractmethod
    async def uninstall(self) -> None: ...

    @abstractmethod
    async def start(self) -> None: ...

    async def restart(self) -> None:
        """Native restart primitive.

        Only adapters that set ``supports_restart`` implement this; the
        lifecycle controller composes stop + start for the others.
        """
        raise NotImplementedError(f"{self.KIND} has no native restart")

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def is_loaded(self) -> bool: ...

    @abstractmethod
    async def read_runtime_status(self) -> ServiceRuntimeStatus: ...

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _run(self, argv: Sequence[str], **kwargs: Any) -> CommandResult:
        kwargs.setdefault("timeout", self._timeout)
        return await self._runner(argv, **kwargs)

    def describe(self) -> dict[str, str]:
        return {
            "kind": self.KIND,
            "label": self.label,
            "path": str(self.definition_path),
        }
