"""Unit tests — API middleware (RequestIDMiddleware, AccessLogMiddleware, error handler)."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from dmms_gateway.api.middleware import (
    AccessLogMiddleware,
    RequestIDMiddleware,
    build_error_handler,
)
from dmms_gateway.exceptions import DmmsGatewayError, PermissionDeniedError


def _make_test_app() -> FastAPI:
    """Build a minimal FastAPI app with all middleware registered."""
    app = FastAPI()
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(RequestIDMiddleware)
    handler = build_error_handler()
    for exc_cls in [DmmsGatewayError, PermissionDeniedError]:
        app.add_exception_handler(exc_cls, handler)

    @app.get("/ok")
    async def ok() -> dict:
        return {"status": "ok"}

    @app.get("/error/permission")
    async def raise_permission():
        raise PermissionDeniedError("install", "dmms-ai-gateway.service", "Access denied")

    @app.get("/error/internal")
    async def raise_internal():
        raise DmmsGatewayError("unexpected failure")

    return app


@pytest.fixture
def client() -> TestClient:
    return TestClient(_make_test_app(), raise_server_exceptions=False)


@pytest.mark.unit
class TestRequestID:
    def test_generated(self, client: TestClient) -> None:
        response = client.get("/ok")
        assert len(response.headers["X-Request-ID"]) == 36

    def test_propagated(self, client: TestClient) -> None:
        response = client.get("/ok", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


@pytest.mark.unit
class TestErrorHandler:
    @pytest.mark.parametrize(
        "path, status, code",
        [
            ("/error/permission", 403, "permission_denied"),
            ("/error/internal", 500, "internal_error"),
        ],
    )
    def test_mapping(self, client: TestClient, path: str, status: int, code: str) -> None:
        response = client.get(path, headers={"X-Request-ID": "rid"})
        assert response.status_code == status
        body = response.json()
        assert body["code"] == code
        assert body["request_id"] == "rid"

    def test_context_is_reported(self, client: TestClient) -> None:
        body = client.get("/error/permission").json()
        assert body["detail"]["operation"] == "install"
        assert "Permission denied" in body["error"]

    def test_empty_context_is_null(self, client: TestClient) -> None:
        assert client.get("/error/internal").json()["detail"] is None
