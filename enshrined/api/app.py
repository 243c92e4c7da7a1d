"""Destination verifier API.

Exposes the verification entry point to the destination runtime / relayers:

- GET  /valsets/{id}       read a snapshot (loaded from the source chain on first use)
- POST /deliver            submit (message, proof) -> SubmitResult | error kind
- GET  /routes/nonce       next expected nonce of a route
- GET  /healthz

Validator sets are never accepted from callers: the gateway reads them from
the source chain's REST gateway and re-checks their commitment hash.

Errors come back as `{"kind", "detail", "retryable"}` so relayers can tell
"retry with fresh signatures" from "never acceptable".
"""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from enshrined import __version__
from enshrined.api.schemas import DeliverRequest, ErrorBody, Health, RouteNonce
from enshrined.config import load_verifier_env
from enshrined.core.errors import AttestationError, ErrorKind
from enshrined.core.models import SubmitResult, ValsetSnapshot
from enshrined.utils.env import _env_str
from enshrined.verify.gateway import DeliveryGateway, build_gateway

HTTP_STATUS = {
    ErrorKind.MALFORMED_ENCODING: 400,
    ErrorKind.MALFORMED_PROOF: 400,
    ErrorKind.INVALID_SIGNATURE: 401,
    ErrorKind.QUORUM_NOT_MET: 422,
    ErrorKind.REPLAY_REJECTED: 409,
    # 425 Too Early: earlier nonces of the route are still missing.
    ErrorKind.OUT_OF_ORDER: 425,
    ErrorKind.UNKNOWN_SNAPSHOT: 404,
}


def create_app(gateway: Optional[DeliveryGateway] = None) -> FastAPI:
    gw = gateway if gateway is not None else build_gateway(load_verifier_env())

    api = FastAPI(title="enshrined Destination Verifier", version=__version__)
    _origins_raw = _env_str("ENSHRINED_CORS_ORIGINS", "*") or "*"
    api.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if _origins_raw == "*" else [x.strip() for x in _origins_raw.split(",") if x.strip()],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    api.state.gateway = gw

    @api.exception_handler(AttestationError)
    async def _attestation_error(_request: Request, exc: AttestationError):
        return JSONResponse(status_code=HTTP_STATUS.get(exc.kind, 400), content=exc.to_payload())

    @api.get("/healthz", response_model=Health)
    def healthz():
        return Health(
            chain_id=gw.chain_id,
            threshold=f"{gw.threshold_numerator}/{gw.threshold_denominator}",
            replay_mode=gw.guard.mode,
            snapshots=len(gw.snapshots.ids()),
        )

    @api.get("/valsets/{snapshot_id}", response_model=ValsetSnapshot, responses={404: {"model": ErrorBody}})
    def get_valset(snapshot_id: int):
        return gw.snapshots.get(snapshot_id)

    @api.post(
        "/deliver",
        response_model=SubmitResult,
        responses={code: {"model": ErrorBody} for code in sorted(set(HTTP_STATUS.values()))},
    )
    def deliver(req: DeliverRequest):
        # Sync handler: runs in the threadpool, the gateway serializes per route.
        return gw.submit(req.message, req.proof)

    @api.get("/routes/nonce", response_model=RouteNonce)
    def route_nonce(route: str):
        state = gw.guard.state(route)
        return RouteNonce(
            route=route,
            next_expected_nonce=state.next_expected_nonce,
            pending=sorted(state.pending),
        )

    return api

