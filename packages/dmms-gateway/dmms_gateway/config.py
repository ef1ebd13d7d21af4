"""DMMS AI Gateway — Control-plane configuration.

Configuration is loaded from (in order of increasing priority):
    1. Built-in defaults (this file)
    2. The persisted JSON config at the resolved config path
       (``DMMS_AI_CONFIG_PATH`` or ``<state dir>/dmms-ai.json``)
    3. An explicit ``config_file`` passed to ``Settings.load()``
    4. Environment variables prefixed with ``DMMS_AI_`` using ``__`` as the
       nested delimiter (e.g. ``DMMS_AI_DIAGNOSTICS__RPC_PROBE_TIMEOUT_S``)

The flat overrides that the service files carry (``DMMS_AI_STATE_DIR``,
``DMMS_AI_CONFIG_PATH``, ``DMMS_AI_GATEWAY_PORT``, ``DMMS_AI_PROFILE``) are
resolved by :mod:`dmms_gateway.paths` against an explicit env mapping, not
here, because diagnostics must evaluate them for the service's environment
as well as the CLI's.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from dmms_gateway.paths import current_env, resolve_config_path, resolve_gateway_port

BindMode = Literal["loopback", "lan"]


# ---------------------------------------------------------------------------
# Sub-configuration blocks
# ---------------------------------------------------------------------------


class GatewayAuthConfig(BaseModel):
    token: str | None = Field(
        default=None,
        description="Shared secret clients present as a bearer token. None = no auth (loopback only).",
    )


class GatewayTlsConfig(BaseModel):
    enabled: bool = False


class GatewayConfig(BaseModel):
    port: Annotated[int, Field(ge=1, le=65535)] | None = Field(
        default=None,
        description="Gateway port. None falls back to the profile default (18789, dev: 19001).",
    )
    bind: BindMode = "loopback"
    auth: GatewayAuthConfig = Field(default_factory=GatewayAuthConfig)
    tls: GatewayTlsConfig = Field(default_factory=GatewayTlsConfig)


class ServiceConfig(BaseModel):
    command_timeout_s: Annotated[float, Field(gt=0, le=600)] = Field(
        default=30.0,
        description="Upper bound for every launchctl/systemctl/schtasks invocation.",
    )
    python_executable: str | None = Field(
        default=None,
        description="Interpreter written into service files. None = the running interpreter.",
    )
    lock_timeout_s: Annotated[float, Field(gt=0, le=3600)] = Field(
        default=120.0,
        description="How long a lifecycle command waits for another process working on the same service.",
    )


class DiagnosticsConfig(BaseModel):
    """Independent time budgets for each diagnostics check.

    The port probe and the RPC probe deliberately do not share a value: a
    TCP connect answers in milliseconds, while a ``status`` call includes a
    WebSocket handshake and the gateway's own work.
    """

    port_probe_timeout_s: Annotated[float, Field(gt=0, le=60)] = 1.5
    rpc_probe_timeout_s: Annotated[float, Field(gt=0, le=120)] = 5.0
    runtime_timeout_s: Annotated[float, Field(gt=0, le=120)] = 10.0


class TrustConfig(BaseModel):
    manual_tls: bool = Field(
        default=True,
        description="Require TLS for manually entered endpoints. False permits plaintext for them only.",
    )
    pin_db_path: Path | None = Field(
        default=None,
        description="SQLite pin store. None = <state dir>/pins.db.",
    )


class LoggingConfig(BaseModel):
    level: Literal["debug", "info", "warning", "error", "critical"] = "warning"
    format: Literal["json", "console"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DMMS_AI_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    diagnostics: DiagnosticsConfig = Field(default_factory=DiagnosticsConfig)
    trust: TrustConfig = Field(default_factory=TrustConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Config file values arrive as init kwargs; DMMS_AI_* env vars override them.
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @classmethod
    def load(
        cls,
        config_file: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> "Settings":
        """Load settings from the persisted config file + environment variables."""
        env = current_env() if env is None else env
        data: dict[str, Any] = {}

        candidates = [resolve_config_path(env)]
        if config_file:
            candidates.append(config_file)

        for path in candidates:
            data.update(read_config_file(path))

        return cls(**data)

    def effective_port(self, env: Mapping[str, str] | None = None) -> int:
        """Port after applying ``DMMS_AI_GATEWAY_PORT`` and profile defaults."""
        env = current_env() if env is None else env
        return resolve_gateway_port(env, self.gateway.port)


def read_config_file(path: Path) -> dict[str, Any]:
    """Read a JSON config file; a missing or corrupt file yields ``{}``."""
    if not path.exists():
        return {}
    try:
        loaded = json.loads(path.read_text(encoding="utf-8") or "{}")
    except (OSError, ValueError):
        return {}
    return loaded if isinstance(loaded, dict) else {}


# Module-level singleton, replaced by ``Settings.load()`` at CLI startup.
_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def override_settings(settings: Settings | None) -> None:
    """Replace the module-level singleton. Used in tests."""
    global _settings
    _settings = settings
