"""Trust layer — TLS resolution for gateway endpoints, certificate pins, pairing gate."""

from dmms_gateway.trust.connection import (
    TrustGate,
    fingerprint_from_der,
    is_valid_fingerprint,
    normalize_fingerprint,
)
from dmms_gateway.trust.models import GatewayEndpoint, PinRecord, TrustDecision
from dmms_gateway.trust.pin_store import PinStore
from dmms_gateway.trust.resolver import resolve_tls_params

__all__ = [
    "GatewayEndpoint",
    "PinRecord",
    "PinStore",
    "TrustDecision",
    "TrustGate",
    "fingerprint_from_der",
    "is_valid_fingerprint",
    "normalize_fingerprint",
    "resolve_tls_params",
]
