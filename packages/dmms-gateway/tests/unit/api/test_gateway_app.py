"""Unit tests — gateway app: WebSocket RPC, /health and token checks."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from dmms_gateway import __version__
from dmms_gateway.api.server import create_app, resolve_bind_host
from dmms_gateway.config import Settings


def _client(env: dict[str, str], token: str | None = None, **kwargs) -> TestClient:
    app = create_app(Settings(), port=19001, bind="loopback", token=token, env=env, **kwargs)
    return TestClient(app)


@pytest.mark.unit
class TestStatusRpc:
    def test_status(self, env: dict[str, str]) -> None:
        with _client(env) as client, client.websocket_connect("/") as ws:
            ws.send_json({"type": "req", "id": "1", "method": "status", "params": {}})
            frame = ws.receive_json()
        assert frame["type"] == "res"
        assert frame["id"] == "1"
        assert frame["ok"] is True
        payload = frame["payload"]
        assert payload["status"] == "ok"
        assert payload["version"] == __version__
        assert payload["port"] == 19001
        assert payload["bind"] == "loopback"
        assert payload["state_dir"].endswith(".dmms-ai")

    def test_several_requests_on_one_socket(self, env: dict[str, str]) -> None:
        with _client(env) as client, client.websocket_connect("/") as ws:
            for request_id in ("a", "b"):
                ws.send_json({"type": "req", "id": request_id, "method": "status"})
                assert ws.receive_json()["id"] == request_id

    def test_unknown_method(self, env: dict[str, str]) -> None:
        with _client(env) as client, client.websocket_connect("/") as ws:
            ws.send_json({"type": "req", "id": "2", "method": "chat.send", "params": {}})
            frame = ws.receive_json()
        assert frame["ok"] is False
        assert frame["error"]["code"] == "unknown_method"
        assert "payload" not in frame

    def test_invalid_json(self, env: dict[str, str]) -> None:
        with _client(env) as client, client.websocket_connect("/") as ws:
            ws.send_text("{not json")
            frame = ws.receive_json()
        assert frame["error"]["code"] == "invalid_request"
        assert "id" not in frame

    def test_invalid_frame_keeps_id(self, env: dict[str, str]) -> None:
        with _client(env) as client, client.websocket_connect("/") as ws:
            ws.send_json({"type": "event", "id": "3", "method": "status"})
            frame = ws.receive_json()
        assert frame["id"] == "3"
        assert frame["error"]["code"] == "invalid_request"


@pytest.mark.unit
class TestTokenAuth:
    def test_missing_token_closes_with_policy_violation(self, env: dict[str, str]) -> None:
        with _client(env, token="s3cret") as client:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect("/"):
                    pass
        assert exc_info.value.code == 1008

    def test_wrong_token(self, env: dict[str, str]) -> None:
        with _client(env, token="s3cret") as client:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect("/", headers={"Authorization": "Bearer nope"}):
                    pass
        assert exc_info.value.code == 1008

    def test_valid_token(self, env: dict[str, str]) -> None:
        with _client(env, token="s3cret") as client:
            with client.websocket_connect("/", headers={"Authorization": "Bearer s3cret"}) as ws:
                ws.send_json({"type": "req", "id": "1", "method": "status"})
                assert ws.receive_json()["ok"] is True

    def test_token_from_environment(self, env: dict[str, str]) -> None:
        env["DMMS_AI_GATEWAY_TOKEN"] = " from-env "
        with _client(env) as client:
            assert client.get("/health").status_code == 401
            response = client.get("/health", headers={"Authorization": "Bearer from-env"})
            assert response.status_code == 200


@pytest.mark.unit
class TestHealth:
    def test_open_health(self, env: dict[str, str]) -> None:
        with _client(env) as client:
            response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["version"] == __version__
        assert "X-Request-ID" in response.headers

    def test_health_requires_token(self, env: dict[str, str]) -> None:
        with _client(env, token="s3cret") as client:
            response = client.get("/health")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_docs_disabled(self, env: dict[str, str]) -> None:
        with _client(env) as client:
            assert client.get("/docs").status_code == 404


@pytest.mark.unit
class TestBindHosts:
    def test_known(self) -> None:
        assert resolve_bind_host("loopback") == "127.0.0.1"
        assert resolve_bind_host("lan") == "0.0.0.0"

    def test_unknown(self) -> None:
        with pytest.raises(ValueError, match="Unknown bind mode"):
            resolve_bind_host("public")
