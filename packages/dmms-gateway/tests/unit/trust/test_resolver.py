"""Unit tests — resolve_tls_params decision order."""

from __future__ import annotations

import pytest

from dmms_gateway.trust.models import GatewayEndpoint, TrustDecision
from dmms_gateway.trust.resolver import resolve_tls_params

PIN = "a" * 64
ADVERTISED = "b" * 64


@pytest.mark.unit
class TestManualEndpoints:
    def test_manual_tls_disabled_ignores_stored_pin(self) -> None:
        endpoint = GatewayEndpoint.manual("10.0.0.5", 18789)
        assert endpoint.is_manual
        assert resolve_tls_params(endpoint, PIN, manual_tls_enabled=False) is None

    def test_manual_tls_enabled_with_pin(self) -> None:
        endpoint = GatewayEndpoint.manual("10.0.0.5", 18789)
        decision = resolve_tls_params(endpoint, PIN, manual_tls_enabled=True)
        assert decision is not None
        assert decision.required is True
        assert decision.expected_fingerprint == PIN
        assert decision.allow_tofu is False
        assert decision.stable_id == "manual|10.0.0.5|18789"

    def test_manual_tls_enabled_without_pin_requires_pairing(self) -> None:
        endpoint = GatewayEndpoint.manual("gw.local", 443, tls_enabled=True)
        decision = resolve_tls_params(endpoint, None, manual_tls_enabled=True)
        assert decision is not None
        assert decision.required is True
        assert decision.expected_fingerprint is None


@pytest.mark.unit
class TestDiscoveredEndpoints:
    def test_pin_beats_advertised_fingerprint(self) -> None:
        endpoint = GatewayEndpoint("_dmms._tcp|studio", tls_enabled=True, tls_fingerprint_sha256=ADVERTISED)
        decision = resolve_tls_params(endpoint, PIN, manual_tls_enabled=True)
        assert decision is not None
        assert decision.expected_fingerprint == PIN

    def test_pin_without_hint_still_requires_tls(self) -> None:
        endpoint = GatewayEndpoint("_dmms._tcp|studio")
        decision = resolve_tls_params(endpoint, PIN, manual_tls_enabled=False)
        assert decision is not None
        assert decision.required is True

    def test_advertised_fingerprint_is_never_trusted(self) -> None:
        endpoint = GatewayEndpoint("_dmms._tcp|studio", tls_fingerprint_sha256=ADVERTISED)
        decision = resolve_tls_params(endpoint, None, manual_tls_enabled=True)
        assert decision is not None
        assert decision.required is True
        assert decision.expected_fingerprint is None

    def test_tls_hint_without_pin(self) -> None:
        endpoint = GatewayEndpoint("_dmms._tcp|studio", tls_enabled=True)
        decision = resolve_tls_params(endpoint, None, manual_tls_enabled=True)
        assert decision == TrustDecision(required=True, stable_id="_dmms._tcp|studio")

    def test_no_hint_no_pin_means_no_tls(self) -> None:
        endpoint = GatewayEndpoint("_dmms._tcp|studio")
        assert resolve_tls_params(endpoint, None, manual_tls_enabled=True) is None

    @pytest.mark.parametrize("stored", ["", "   ", None])
    def test_blank_stored_fingerprint_counts_as_absent(self, stored: str | None) -> None:
        endpoint = GatewayEndpoint("_dmms._tcp|studio")
        assert resolve_tls_params(endpoint, stored, manual_tls_enabled=True) is None

    def test_stored_fingerprint_is_trimmed(self) -> None:
        endpoint = GatewayEndpoint("_dmms._tcp|studio")
        decision = resolve_tls_params(endpoint, f"  {PIN}\n", manual_tls_enabled=True)
        assert decision is not None
        assert decision.expected_fingerprint == PIN

    def test_blank_advertised_fingerprint_is_not_a_hint(self) -> None:
        endpoint = GatewayEndpoint("_dmms._tcp|studio", tls_fingerprint_sha256="  ")
        assert resolve_tls_params(endpoint, None, manual_tls_enabled=True) is None


@pytest.mark.unit
class TestTrustDecision:
    def test_tofu_cannot_be_enabled(self) -> None:
        with pytest.raises(ValueError, match="trust-on-first-use"):
            TrustDecision(required=True, allow_tofu=True)

    def test_to_dict(self) -> None:
        decision = TrustDecision(required=True, expected_fingerprint=PIN, stable_id="x")
        assert decision.to_dict() == {
            "required": True,
            "expectedFingerprint": PIN,
            "allowTOFU": False,
            "stableId": "x",
        }

    def test_every_resolved_decision_disallows_tofu(self) -> None:
        endpoints = [
            GatewayEndpoint.manual("h", 1),
            GatewayEndpoint("d", tls_enabled=True),
            GatewayEndpoint("d", tls_fingerprint_sha256=ADVERTISED),
        ]
        for endpoint in endpoints:
            for stored in (None, PIN):
                decision = resolve_tls_params(endpoint, stored, manual_tls_enabled=True)
                assert decision is None or decision.allow_tofu is False
