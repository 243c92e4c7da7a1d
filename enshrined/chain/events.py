"""`hyperlane_send` events from the source chain's tx search endpoint.

    GET {rest}/cosmos/tx/v1beta1/txs?query=hyperlane_send.route EXISTS AND tx.height>=N

Each matching tx response carries typed events with `{key, value}`
attributes; the send event is `{route, nonce, valset_id, digest_hex,
recipient_module}` plus, when the module emits them, `sender_module` and a
base64 `body`.
"""

from __future__ import annotations

from typing import Any, Dict, List

import bittensor as bt
import requests
from pydantic import BaseModel, ConfigDict

from enshrined.core.models import WireBytes

TX_SEARCH_PATH = "/cosmos/tx/v1beta1/txs"
SEND_EVENT_TYPE = "hyperlane_send"


class SendEvent(BaseModel):
    """`hyperlane_send` event as emitted by the source chain."""

    model_config = ConfigDict(frozen=True)

    route: str
    nonce: int
    valset_id: int
    digest_hex: str
    recipient_module: str = ""
    sender_module: str = "hyperlane"
    body: WireBytes = b""
    # Block height of the emitting tx (0 when unknown).
    height: int = 0


def _attributes(event: Dict[str, Any]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for attr in event.get("attributes") or []:
        key = attr.get("key")
        if key is not None:
            value = attr.get("value")
            out[str(key)] = "" if value is None else str(value)
    return out


def parse_send_events(data: Dict[str, Any]) -> List[SendEvent]:
    events: List[SendEvent] = []
    for tx in data.get("tx_responses") or []:
        height = int(tx.get("height") or 0)
        for ev in tx.get("events") or []:
            if ev.get("type") != SEND_EVENT_TYPE:
                continue
            attrs = _attributes(ev)
            try:
                events.append(
                    SendEvent(
                        route=attrs["route"],
                        nonce=int(attrs["nonce"]),
                        valset_id=int(attrs["valset_id"]),
                        digest_hex=attrs["digest_hex"],
                        recipient_module=attrs.get("recipient_module", ""),
                        sender_module=attrs.get("sender_module") or "hyperlane",
                        body=attrs.get("body", ""),
                        height=height,
                    )
                )
            except (KeyError, ValueError) as exc:
                bt.logging.warning(f"Skipping malformed {SEND_EVENT_TYPE} event at height {height}: {exc}")
    return events


class HttpEventSource:
    def __init__(self, rest_url: str, *, timeout_s: float = 10.0, page_limit: int = 100) -> None:
        self.rest_url = rest_url.rstrip("/")
        self.timeout_s = timeout_s
        self.page_limit = int(page_limit)

    def fetch(self, from_height: int = 0) -> List[SendEvent]:
        query = f"{SEND_EVENT_TYPE}.route EXISTS"
        if from_height > 0:
            query += f" AND tx.height>={int(from_height)}"
        r = requests.get(
            f"{self.rest_url}{TX_SEARCH_PATH}",
            params={"query": query, "order_by": "ORDER_BY_ASC", "pagination.limit": str(self.page_limit)},
            timeout=self.timeout_s,
        )
        r.raise_for_status()
        data = r.json()
        if not isinstance(data, dict):
            raise ValueError("unexpected tx search response shape")
        return parse_send_events(data)
