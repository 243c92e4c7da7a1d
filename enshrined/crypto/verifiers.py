from __future__ import annotations

from typing import Dict, Optional, Protocol

import bittensor as bt
from cryptography.exceptions import InvalidSignature as _BadSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, utils
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from enshrined.core.errors import MalformedEncoding

# Order of the secp256k1 group.
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


class SignatureVerifier(Protocol):
    def verify(self, pubkey: bytes, digest: bytes, signature: bytes) -> bool: ...


class Secp256k1Verifier:
    """
    ECDSA over the raw 32-byte digest (no second hash), as produced by the
    validator signing daemons: `r || s` or `r || s || v`.

    High-S signatures are rejected so a relayer cannot re-encode a valid
    signature into a second valid one.
    """

    def verify(self, pubkey: bytes, digest: bytes, signature: bytes) -> bool:
        if len(digest) != 32:
            return False
        if len(signature) == 65:
            signature = signature[:64]
        if len(signature) != 64:
            return False

        r = int.from_bytes(signature[:32], "big")
        s = int.from_bytes(signature[32:], "big")
        if not (0 < r < SECP256K1_N and 0 < s <= SECP256K1_N // 2):
            return False

        try:
            key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), bytes(pubkey))
        except ValueError:
            return False

        try:
            key.verify(
                utils.encode_dss_signature(r, s),
                bytes(digest),
                ec.ECDSA(utils.Prehashed(hashes.SHA256())),
            )
        except _BadSignature:
            return False
        return True


class Ed25519Verifier:
    def verify(self, pubkey: bytes, digest: bytes, signature: bytes) -> bool:
        if len(pubkey) != 32 or len(signature) != 64:
            return False
        try:
            Ed25519PublicKey.from_public_bytes(bytes(pubkey)).verify(bytes(signature), bytes(digest))
        except (_BadSignature, ValueError):
            return False
        return True


class Sr25519Verifier:
    """Schnorrkel signatures checked with the bittensor keypair (substrate hotkeys)."""

    def verify(self, pubkey: bytes, digest: bytes, signature: bytes) -> bool:
        if len(pubkey) != 32 or len(signature) != 64:
            return False
        try:
            kp = bt.Keypair(public_key="0x" + bytes(pubkey).hex())
            return bool(kp.verify(bytes(digest), bytes(signature)))
        except Exception:
            # Malformed key material surfaces as assorted errors from the
            # binding; all of them mean "not a valid signature".
            return False


class VerifierRegistry:
    """Picks the verification primitive by the key type stored on the validator entry."""

    def __init__(self, verifiers: Optional[Dict[str, SignatureVerifier]] = None) -> None:
        self._verifiers: Dict[str, SignatureVerifier] = dict(verifiers or {})

    def register(self, key_type: str, verifier: SignatureVerifier) -> None:
        self._verifiers[key_type] = verifier

    def get(self, key_type: str) -> SignatureVerifier:
        try:
            return self._verifiers[key_type]
        except KeyError:
            raise MalformedEncoding(f"unsupported attestation key type {key_type!r}") from None

    def verify(self, key_type: str, pubkey: bytes, digest: bytes, signature: bytes) -> bool:
        return self.get(key_type).verify(pubkey, digest, signature)


def default_registry() -> VerifierRegistry:
    return VerifierRegistry(
        {
            "secp256k1": Secp256k1Verifier(),
            "ed25519": Ed25519Verifier(),
            "sr25519": Sr25519Verifier(),
        }
    )
