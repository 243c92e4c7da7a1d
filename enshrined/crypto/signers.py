"""Digest signers for local/dev signing services.

Production keys live in external signing daemons; these wrap key material the
caller already holds (devnets, tests) and produce the exact signature formats
`enshrined.crypto.verifiers` accepts.
"""

from __future__ import annotations

from typing import Protocol

import bittensor as bt
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, utils
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from enshrined.crypto.verifiers import SECP256K1_N


class DigestSigner(Protocol):
    key_type: str

    @property
    def public_key(self) -> bytes: ...

    def sign(self, digest: bytes) -> bytes: ...


class Secp256k1Signer:
    key_type = "secp256k1"

    def __init__(self, private_key: ec.EllipticCurvePrivateKey) -> None:
        self._key = private_key

    @classmethod
    def generate(cls) -> "Secp256k1Signer":
        return cls(ec.generate_private_key(ec.SECP256K1()))

    @classmethod
    def from_hex(cls, private_key_hex: str) -> "Secp256k1Signer":
        secret = int(private_key_hex.removeprefix("0x"), 16)
        return cls(ec.derive_private_key(secret, ec.SECP256K1()))

    @property
    def public_key(self) -> bytes:
        return self._key.public_key().public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint
        )

    def sign(self, digest: bytes) -> bytes:
        der = self._key.sign(bytes(digest), ec.ECDSA(utils.Prehashed(hashes.SHA256())))
        r, s = utils.decode_dss_signature(der)
        if s > SECP256K1_N // 2:
            s = SECP256K1_N - s
        return r.to_bytes(32, "big") + s.to_bytes(32, "big")


class Ed25519Signer:
    key_type = "ed25519"

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._key = private_key

    @classmethod
    def generate(cls) -> "Ed25519Signer":
        return cls(Ed25519PrivateKey.generate())

    @property
    def public_key(self) -> bytes:
        return self._key.public_key().public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)

    def sign(self, digest: bytes) -> bytes:
        return self._key.sign(bytes(digest))


class KeypairSigner:
    """sr25519 signing with a bittensor keypair (e.g. a validator hotkey)."""

    key_type = "sr25519"

    def __init__(self, keypair: bt.Keypair) -> None:
        self._kp = keypair

    @property
    def public_key(self) -> bytes:
        return bytes(self._kp.public_key)

    def sign(self, digest: bytes) -> bytes:
        return bytes(self._kp.sign(bytes(digest)))
