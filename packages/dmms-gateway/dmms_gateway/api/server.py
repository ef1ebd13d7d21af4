"""API layer — FastAPI application factory for the gateway process.

``create_app()`` is the single entry point for building the FastAPI app.
Everything the routes need is stored on ``app.state`` here so that tests
can build an app with custom settings and talk to it through
``TestClient``.
"""

from __future__ import annotations

import os
import time
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import uvicorn
from fastapi import FastAPI

from dmms_gateway import __version__
from dmms_gateway.api.middleware import AccessLogMiddleware, RequestIDMiddleware, build_error_handler
from dmms_gateway.api.routes import health, rpc
from dmms_gateway.config import Settings, get_settings
from dmms_gateway.exceptions import DmmsGatewayError
from dmms_gateway.logging import get_logger
from dmms_gateway.paths import (
    ENV_GATEWAY_TOKEN,
    current_env,
    profile_suffix,
    resolve_config_path,
    resolve_state_dir,
)

log = get_logger(__name__)

BIND_HOSTS = {
    "loopback": "127.0.0.1",
    "lan": "0.0.0.0",
}


def resolve_bind_host(bind: str) -> str:
    try:
        return BIND_HOSTS[bind]
    except KeyError:
        raise ValueError(f"Unknown bind mode '{bind}' (expected one of: {', '.join(BIND_HOSTS)})") from None


@dataclass
class GatewayRuntime:
    """Facts about this gateway process reported by ``status``."""

    port: int | None
    bind: str
    state_dir: str
    config_path: str
    profile: str | None = None
    version: str = __version__
    pid: int = field(default_factory=os.getpid)
    started_at: float = field(default_factory=time.time)

    def uptime_seconds(self) -> float:
        return round(time.time() - self.started_at, 2)


def create_app(
    settings: Settings | None = None,
    *,
    port: int | None = None,
    bind: str | None = None,
    token: str | None = None,
    env: Mapping[str, str] | None = None,
) -> FastAPI:
    """Create and configure the gateway FastAPI application.

    Args:
        settings: Optional settings override (used in tests).
        port: Port the server will listen on, reported by ``status``.
        bind: Bind mode, ``loopback`` or ``lan``.
        token: Bearer token clients must present.  Falls back to
            ``DMMS_AI_GATEWAY_TOKEN`` and then ``gateway.auth.token``.
        env: Environment used to resolve the state dir and profile.
    """
    if settings is None:
        settings = get_settings()
    env = current_env() if env is None else env

    state_dir = resolve_state_dir(env)
    runtime = GatewayRuntime(
        port=port if port is not None else settings.effective_port(env),
        bind=bind or settings.gateway.bind,
        state_dir=str(state_dir),
        config_path=str(resolve_config_path(env, state_dir)),
        profile=profile_suffix(env),
    )
    resolved_token = (token or env.get(ENV_GATEWAY_TOKEN) or settings.gateway.auth.token or "").strip()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info(
            "gateway_starting",
            version=__version__,
            port=runtime.port,
            bind=runtime.bind,
            auth=bool(resolved_token),
        )
        yield
        log.info("gateway_stopped", uptime_seconds=runtime.uptime_seconds())

    app = FastAPI(
        title="DMMS AI Gateway",
        description="Personal-automation gateway: WebSocket RPC and health endpoints.",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    # Middleware (order matters: outermost applied last)
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Exception handlers
    app.add_exception_handler(DmmsGatewayError, build_error_handler())  # type: ignore[arg-type]

    # Routers
    app.include_router(health.router)
    app.include_router(rpc.router)

    app.state.settings = settings
    app.state.runtime = runtime
    app.state.token = resolved_token or None
    return app


def run_gateway(
    settings: Settings,
    port: int,
    bind: str = "loopback",
    token: str | None = None,
) -> None:
    """Serve the gateway in the foreground until interrupted."""
    host = resolve_bind_host(bind)
    app = create_app(settings, port=port, bind=bind, token=token)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=settings.logging.level,
        log_config=None,
    )
