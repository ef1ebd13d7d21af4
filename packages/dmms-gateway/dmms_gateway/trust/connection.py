"""Trust layer — Connection gate.

Wraps the pure resolver with the pin store and enforces its outcome before
any credential is sent:

    gate = TrustGate(store, manual_tls_enabled=settings.trust.manual_tls)
    decision = await gate.prepare(endpoint)        # may raise UntrustedEndpointError
    ...TLS handshake, read the peer certificate...
    gate.verify_presented(decision, fingerprint_from_der(peer_der))

When ``prepare`` halts, the caller shows the presented fingerprint to the
operator and calls ``complete_pairing`` only with their explicit
confirmation.  The advertised discovery fingerprint is never pinned.
"""

from __future__ import annotations

import hashlib
import re

from dmms_gateway.exceptions import (
    FingerprintMismatchError,
    PairingRejectedError,
    UntrustedEndpointError,
)
from dmms_gateway.logging import get_logger
from dmms_gateway.trust.models import GatewayEndpoint, PinRecord, TrustDecision
from dmms_gateway.trust.pin_store import PinStore
from dmms_gateway.trust.resolver import resolve_tls_params

log = get_logger(__name__)

_SHA256_HEX_RE = re.compile(r"^[0-9a-f]{64}$")


def normalize_fingerprint(value: str) -> str:
    """Canonical form: lower-case hex, no ``sha256:`` prefix, no separators."""
    text = value.strip().lower()
    if text.startswith("sha256:"):
        text = text[len("sha256:") :]
    return re.sub(r"[\s:]", "", text)


def is_valid_fingerprint(value: str) -> bool:
    return bool(_SHA256_HEX_RE.match(normalize_fingerprint(value)))


def fingerprint_from_der(der: bytes) -> str:
    return hashlib.sha256(der).hexdigest()


class TrustGate:
    """Applies trust decisions for one client."""

    def __init__(self, store: PinStore, manual_tls_enabled: bool = True) -> None:
        self._store = store
        self._manual_tls_enabled = manual_tls_enabled

    async def resolve(self, endpoint: GatewayEndpoint) -> TrustDecision | None:
        stored = await self._store.get_fingerprint(endpoint.stable_id)
        return resolve_tls_params(endpoint, stored, self._manual_tls_enabled)

    async def prepare(self, endpoint: GatewayEndpoint) -> TrustDecision | None:
        """Resolve TLS parameters, halting when TLS is required but unpinned.

        Raises:
            UntrustedEndpointError: TLS is required and no verified
                fingerprint exists; pairing must happen first.
        """
        decision = await self.resolve(endpoint)
        if decision is not None and decision.required and decision.expected_fingerprint is None:
            log.warning("endpoint_requires_pairing", stable_id=endpoint.stable_id)
            raise UntrustedEndpointError(endpoint.stable_id)
        return decision

    def verify_presented(self, decision: TrustDecision | None, presented: str) -> None:
        """Check the peer certificate fingerprint against the decision.

        Raises:
            UntrustedEndpointError: No fingerprint to validate against.
            FingerprintMismatchError: The presented fingerprint differs from the pin.
        """
        if decision is None or not decision.required:
            return
        if decision.expected_fingerprint is None:
            raise UntrustedEndpointError(decision.stable_id)
        expected = normalize_fingerprint(decision.expected_fingerprint)
        actual = normalize_fingerprint(presented)
        if expected != actual:
            log.error("fingerprint_mismatch", stable_id=decision.stable_id)
            raise FingerprintMismatchError(decision.stable_id, expected, actual)

    async def complete_pairing(
        self,
        endpoint: GatewayEndpoint,
        presented_fingerprint: str,
        confirmed: bool,
        verified_by: str = "user",
    ) -> PinRecord:
        """Pin *presented_fingerprint* after the operator confirmed it.

        Raises:
            PairingRejectedError: The operator did not confirm.
            UntrustedEndpointError: The fingerprint is not a SHA-256 digest.
        """
        if not confirmed:
            raise PairingRejectedError(endpoint.stable_id)
        if not is_valid_fingerprint(presented_fingerprint):
            raise UntrustedEndpointError(endpoint.stable_id, reason="fingerprint is not a SHA-256 digest")
        record = PinRecord(
            stable_id=endpoint.stable_id,
            fingerprint=normalize_fingerprint(presented_fingerprint),
            verified_by=verified_by,
        )
        await self._store.pin(record)
        return record

    async def unpair(self, stable_id: str) -> bool:
        return await self._store.unpin(stable_id)
