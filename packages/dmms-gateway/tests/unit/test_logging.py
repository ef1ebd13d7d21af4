"""Unit tests — secret redaction in structured logs."""

from __future__ import annotations

import pytest

from dmms_gateway.logging import (
    REDACTED,
    _redact_secrets,
    configure_logging,
    get_logger,
    is_secret_key,
    redact_environment,
    redact_text,
)


@pytest.mark.unit
class TestRedaction:
    @pytest.mark.parametrize("key", ["DMMS_AI_GATEWAY_TOKEN", "password", "OPENAI_API_KEY", "client_secret"])
    def test_secret_keys(self, key: str) -> None:
        assert is_secret_key(key)

    def test_plain_keys(self) -> None:
        assert not is_secret_key("DMMS_AI_GATEWAY_PORT")

    def test_redact_environment_copies(self) -> None:
        env = {"DMMS_AI_GATEWAY_TOKEN": "abc", "HOME": "/h", "EMPTY_TOKEN": ""}
        redacted = redact_environment(env)
        assert redacted == {"DMMS_AI_GATEWAY_TOKEN": REDACTED, "HOME": "/h", "EMPTY_TOKEN": ""}
        assert env["DMMS_AI_GATEWAY_TOKEN"] == "abc"

    def test_redact_text(self) -> None:
        text = "Environment=DMMS_AI_GATEWAY_TOKEN=abc123 HOME=/h"
        assert redact_text(text) == f"Environment=DMMS_AI_GATEWAY_TOKEN={REDACTED} HOME=/h"

    def test_processor(self) -> None:
        event = {
            "event": "wrote TOKEN=abc",
            "token": "abc",
            "environment": {"DMMS_AI_GATEWAY_PASSWORD": "pw", "PORT": "1"},
            "argv": ["gw", "--x", "API_KEY=zzz"],
            "count": 3,
        }
        out = _redact_secrets(None, "info", event)
        assert out["event"] == f"wrote TOKEN={REDACTED}"
        assert out["token"] == REDACTED
        assert out["environment"] == {"DMMS_AI_GATEWAY_PASSWORD": REDACTED, "PORT": "1"}
        assert out["argv"] == ["gw", "--x", f"API_KEY={REDACTED}"]
        assert out["count"] == 3

    def test_logged_secret_never_reaches_output(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(level="info", format="json")
        get_logger("test").info("service_env", environment={"DMMS_AI_GATEWAY_TOKEN": "hunter2"})
        err = capsys.readouterr().err
        assert "hunter2" not in err
        assert REDACTED in err
