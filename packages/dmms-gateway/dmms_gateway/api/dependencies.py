"""API layer — FastAPI dependency injection.

The process's runtime facts are stored on ``app.state`` by
``create_app()`` and injected through FastAPI's dependency system.
"""

from __future__ import annotations

import hmac
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from starlette.requests import HTTPConnection

from dmms_gateway.api.schemas import StatusPayload


def expected_token(connection: HTTPConnection) -> str | None:
    """Token clients must present; None when the gateway runs without auth."""
    token: str | None = connection.app.state.token
    return token or None


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


def token_matches(expected: str | None, presented: str | None) -> bool:
    if expected is None:
        return True
    if presented is None:
        return False
    return hmac.compare_digest(expected.encode(), presented.encode())


async def verify_gateway_token(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Verify the bearer token if one is configured."""
    if not token_matches(expected_token(request), bearer_token(authorization)):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing gateway token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


def build_status_payload(connection: HTTPConnection) -> StatusPayload:
    """Snapshot of this gateway process for the ``status`` RPC."""
    runtime = connection.app.state.runtime
    return StatusPayload(
        version=runtime.version,
        pid=runtime.pid,
        uptime_seconds=runtime.uptime_seconds(),
        port=runtime.port,
        bind=runtime.bind,
        profile=runtime.profile,
        state_dir=runtime.state_dir,
        config_path=runtime.config_path,
    )


# Shorthand type aliases for route signatures.
AuthDep = Annotated[None, Depends(verify_gateway_token)]
