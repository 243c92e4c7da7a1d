from __future__ import annotations

import asyncio
import base64
import binascii
from typing import Dict, Optional, Protocol

import requests

from enshrined.crypto.signers import DigestSigner
from enshrined.relayer.errors import SignerRejected, SignerUnavailable


class SigningService(Protocol):
    """
    Boundary to a key custodian. One call per (operator, digest) is enough and
    repeated calls with the same digest are idempotent.
    """

    async def sign(self, operator_id: str, digest: bytes) -> bytes: ...


def _check_digest(operator_id: str, digest: bytes) -> None:
    if len(digest) != 32:
        raise SignerRejected(operator_id, f"digest must be exactly 32 bytes, got {len(digest)}")


class HttpSigningService:
    """
    Client for a validator signing daemon.

    POST {base_url}/sign  {"operatorBech32": <operator>, "digestHex": <hex>}
      -> {"signature": <base64>} | {"error": <text>}
    """

    def __init__(self, base_url: str, *, timeout_s: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    def sign_blocking(self, operator_id: str, digest: bytes) -> bytes:
        _check_digest(operator_id, digest)
        try:
            r = requests.post(
                f"{self.base_url}/sign",
                json={"operatorBech32": operator_id, "digestHex": digest.hex()},
                timeout=self.timeout_s,
            )
        except requests.RequestException as exc:
            raise SignerUnavailable(operator_id, f"{self.base_url} unreachable: {exc}") from exc

        if r.status_code >= 500:
            raise SignerUnavailable(operator_id, f"{self.base_url} returned HTTP {r.status_code}")
        try:
            data = r.json()
        except ValueError as exc:
            raise SignerUnavailable(operator_id, f"{self.base_url} returned non-JSON body") from exc
        if r.status_code >= 400:
            err = data.get("error") if isinstance(data, dict) else None
            raise SignerRejected(operator_id, f"HTTP {r.status_code}: {err or 'rejected'}")

        sig_b64 = data.get("signature") if isinstance(data, dict) else None
        if not sig_b64:
            raise SignerRejected(operator_id, "response carries no signature")
        try:
            return base64.b64decode(sig_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SignerRejected(operator_id, "signature is not valid base64") from exc

    async def sign(self, operator_id: str, digest: bytes) -> bytes:
        return await asyncio.to_thread(self.sign_blocking, operator_id, digest)


class LocalSigningService:
    """In-process signing service for devnets and tests; keys are supplied by the caller."""

    def __init__(self, signers: Optional[Dict[str, DigestSigner]] = None) -> None:
        self._signers: Dict[str, DigestSigner] = dict(signers or {})

    def add(self, operator_id: str, signer: DigestSigner) -> None:
        self._signers[operator_id] = signer

    def public_keys(self) -> Dict[str, bytes]:
        return {op: s.public_key for op, s in self._signers.items()}

    async def sign(self, operator_id: str, digest: bytes) -> bytes:
        _check_digest(operator_id, digest)
        signer = self._signers.get(operator_id)
        if signer is None:
            raise SignerRejected(operator_id, "private key not found for operator")
        return signer.sign(digest)
