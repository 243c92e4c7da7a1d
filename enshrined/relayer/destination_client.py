from __future__ import annotations

import requests

from enshrined.core.errors import error_from_payload
from enshrined.core.models import AttestationProof, Message, SubmitResult


class DestinationClient:
    """Submits proofs to a destination verifier API (`enshrined.api.app`)."""

    def __init__(self, api_url: str, *, timeout_s: float = 10.0) -> None:
        self.api_url = api_url.rstrip("/")
        self.timeout_s = timeout_s

    def submit(self, message: Message, proof: AttestationProof) -> SubmitResult:
        r = requests.post(
            f"{self.api_url}/deliver",
            json={
                "message": message.model_dump(mode="json"),
                "proof": proof.model_dump(mode="json"),
            },
            timeout=self.timeout_s,
        )
        if 400 <= r.status_code < 500:
            try:
                payload = r.json()
            except ValueError:
                payload = {}
            err = error_from_payload(payload) if isinstance(payload, dict) else None
            if err is not None:
                raise err
        r.raise_for_status()
        return SubmitResult(**r.json())

    def next_nonce(self, route: str) -> int:
        r = requests.get(f"{self.api_url}/routes/nonce", params={"route": route}, timeout=self.timeout_s)
        r.raise_for_status()
        return int(r.json()["next_expected_nonce"])
