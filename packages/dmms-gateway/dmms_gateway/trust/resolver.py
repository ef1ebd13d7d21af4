"""Trust layer — TLS parameter resolution.

Decision order (first match wins):

    1. Manual endpoint   — manual TLS off: no TLS.  Otherwise TLS required,
                           validated against the pin if one exists.
    2. Pinned endpoint   — TLS required, validated against the pin.  A pin
                           always beats whatever discovery advertises.
    3. Discovery hint    — TLS required, nothing to validate against yet:
                           the caller must pair before sending credentials.
    4. No hint, no pin   — no TLS.

The advertised fingerprint is never copied into the decision.  The
resolver is pure: no I/O, no exceptions.
"""

from __future__ import annotations

from dmms_gateway.trust.models import GatewayEndpoint, TrustDecision


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def resolve_tls_params(
    endpoint: GatewayEndpoint,
    stored_fingerprint: str | None,
    manual_tls_enabled: bool,
) -> TrustDecision | None:
    stored = _clean(stored_fingerprint)

    if endpoint.is_manual:
        if not manual_tls_enabled:
            return None
        return TrustDecision(
            required=True,
            expected_fingerprint=stored,
            stable_id=endpoint.stable_id,
        )

    if stored is not None:
        return TrustDecision(
            required=True,
            expected_fingerprint=stored,
            stable_id=endpoint.stable_id,
        )

    hinted = endpoint.tls_enabled or _clean(endpoint.tls_fingerprint_sha256) is not None
    if hinted:
        return TrustDecision(required=True, expected_fingerprint=None, stable_id=endpoint.stable_id)

    return None
