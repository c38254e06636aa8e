# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the escrow deal ledger (FastAPI).

Endpoints for the deal lifecycle: create (lock), release, refund, expire,
plus read accessors and an SSE stream of deal notifications.

Ed25519 authentication: every mutating request must be signed by the party
named in the body (buyer for create, caller for transitions).
"""

import sys
import os
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import json as json_mod
import threading
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.responses import StreamingResponse
from pydantic import BaseModel
from typing import Optional, Union

from server.ledger import DealLedger, DealEvent
from crypto import (
    verify_request_ed25519, party_id_to_hex, is_party_id, ReplayGuard,
    HEADER_TIMESTAMP, HEADER_SIGNATURE, HEADER_PUBKEY,
)
from errors import (
    EscrowError, InvalidArgument, Unauthorized, InvalidState, NotFound, PaymentFailed,
)
from protocol import (
    DEFAULT_TIMEOUT_SECONDS, DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT, REQUEST_MAX_AGE, PROTOCOL_VERSION, DealStatus,
)


# --- Request/Response models ---

class CreateDealRequest(BaseModel):
    buyer: str
    seller: str
    amount: Union[str, int, float]
    timeout_secs: Optional[Union[int, float]] = None

class DealActionRequest(BaseModel):
    caller: str


ERROR_STATUS = {
    InvalidArgument: 400,
    Unauthorized: 403,
    NotFound: 404,
    InvalidState: 409,
    PaymentFailed: 502,
}


def _status_for(exc: EscrowError) -> int:
    for cls, code in ERROR_STATUS.items():
        if isinstance(exc, cls):
            return code
    return 400


async def _verify_auth(request: Request, pubkey: str):
    """Verify Ed25519 request signature. Returns True if authenticated, False if no auth headers.

    Requires X-Escrow-Timestamp, X-Escrow-Signature, and X-Escrow-Pubkey headers.
    The signature covers: METHOD\\nPATH\\nTIMESTAMP\\nBODY
    """
    timestamp = request.headers.get(HEADER_TIMESTAMP, "")
    signature = request.headers.get(HEADER_SIGNATURE, "")
    pubkey_hex = request.headers.get(HEADER_PUBKEY, "")

    if not timestamp or not signature or not pubkey_hex:
        return False

    body = (await request.body()).decode("utf-8", errors="replace")
    ok, err = verify_request_ed25519(
        request.method, request.url.path, body,
        timestamp, signature, pubkey_hex,
    )
    if not ok:
        raise HTTPException(401, f"Authentication failed: {err}")

    # Replay protection
    replay_guard = getattr(request.app.state, "replay_guard", None)
    if replay_guard and not replay_guard.check_and_record(signature):
        raise HTTPException(401, "Replay detected")

    # The signer must be the party the request claims to act as
    if pubkey_hex != party_id_to_hex(pubkey):
        raise HTTPException(401, "Pubkey mismatch: header pubkey does not match request body party")

    return True


def _require_auth(authenticated: bool):
    """Raise 401 if request was not authenticated."""
    if not authenticated:
        raise HTTPException(401, "Signed request required (X-Escrow-Timestamp + X-Escrow-Signature + X-Escrow-Pubkey headers)")


def _check_party_id(value: str, field: str):
    if not is_party_id(value):
        raise HTTPException(400, f"Invalid {field}: expected esc_<64 hex>")


SSE_KEEPALIVE_SECONDS = 15.0


class SSESubscriber:
    """One open event stream: a bounded asyncio queue and the loop that owns it."""

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = 256):
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)


def create_app(ledger: DealLedger | None = None, replay_ttl: int = REQUEST_MAX_AGE) -> FastAPI:
    """Create FastAPI app with an injected ledger."""

    app = FastAPI(title="Escrow Deals", version=str(PROTOCOL_VERSION))

    _ledger = ledger or DealLedger()
    _replay_guard = ReplayGuard(ttl=replay_ttl)

    # --- SSE event bus ---
    # Ledger events may be published from any thread; each subscriber's
    # queue is only touched on the event loop that serves its stream.
    MAX_SSE_SUBSCRIBERS = 1000
    _sse_subscribers: list[SSESubscriber] = []
    _sse_lock = threading.Lock()

    def _sse_drop(sub: SSESubscriber):
        with _sse_lock:
            if sub in _sse_subscribers:
                _sse_subscribers.remove(sub)

    def _sse_offer(sub: SSESubscriber, payload: dict):
        try:
            sub.queue.put_nowait(payload)
        except asyncio.QueueFull:
            # Slow consumer
            _sse_drop(sub)

    def _sse_publish(event: DealEvent):
        """Push a deal event to all connected SSE subscribers."""
        payload = event.to_dict()
        with _sse_lock:
            subscribers = list(_sse_subscribers)
        for sub in subscribers:
            try:
                sub.loop.call_soon_threadsafe(_sse_offer, sub, payload)
            except RuntimeError:
                # Loop already closed
                _sse_drop(sub)

    _ledger.subscribe(_sse_publish)

    app.state.ledger = _ledger
    app.state.replay_guard = _replay_guard
    app.state.sse_subscribers = _sse_subscribers
    app.state.sse_publish = _sse_publish

    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError):
        return JSONResponse(
            status_code=_status_for(exc),
            content={"detail": exc.message, "code": exc.code.name},
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "deals": _ledger.deal_count()}

    # --- Deal lifecycle ---

    @app.post("/deals")
    async def create_deal(req: CreateDealRequest, request: Request):
        """Buyer locks `amount` for `seller`. Deal starts Funded."""
        _check_party_id(req.buyer, "buyer")
        _check_party_id(req.seller, "seller")
        authed = await _verify_auth(request, req.buyer)
        _require_auth(authed)

        timeout = DEFAULT_TIMEOUT_SECONDS if req.timeout_secs is None else req.timeout_secs
        deal_id = _ledger.create(req.buyer, req.seller, timeout, req.amount)
        deal = _ledger.get_deal(deal_id)
        return {"id": deal_id, "status": deal.status.value, "deadline": deal.deadline}

    @app.get("/deals")
    async def list_deals(party: str = "", status: str = "", limit: int = DEFAULT_LIST_LIMIT):
        """List deals, newest first."""
        if status:
            try:
                DealStatus(status)
            except ValueError:
                raise HTTPException(400, f"Unknown status: {status}")
        limit = min(limit, MAX_LIST_LIMIT)
        deals = _ledger.list_deals(party=party or None, status=status or None, limit=limit)
        return {"deals": [d.to_dict() for d in deals], "count": _ledger.deal_count()}

    @app.get("/deals/count")
    async def deal_count():
        return {"count": _ledger.deal_count()}

    @app.get("/deals/stream")
    async def stream_deals(party: str = "", event: str = ""):
        """SSE stream of deal notifications.

        Optional filters: party (buyer or seller id), event (funded, released,
        refunded, expired).

        Usage:
            curl -N http://localhost:8000/deals/stream?event=funded

        Events:
            data: {"event": "funded", "deal_id": 0, "buyer": "esc_...", "amount": "1", ...}
        """
        sub = SSESubscriber(asyncio.get_running_loop())
        with _sse_lock:
            if len(_sse_subscribers) >= MAX_SSE_SUBSCRIBERS:
                raise HTTPException(503, "Too many SSE subscribers")
            _sse_subscribers.append(sub)

        async def event_generator():
            try:
                while True:
                    try:
                        item = await asyncio.wait_for(sub.queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
                        continue
                    if party and party not in (item["buyer"], item["seller"]):
                        continue
                    if event and item["event"] != event:
                        continue
                    yield f"data: {json_mod.dumps(item)}\n\n"
            finally:
                _sse_drop(sub)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/deals/{deal_id}")
    async def get_deal(deal_id: int):
        return _ledger.get_deal(deal_id).to_dict()

    @app.get("/deals/{deal_id}/events")
    async def get_deal_events(deal_id: int):
        _ledger.get_deal(deal_id)
        return {"events": [e.to_dict() for e in _ledger.events(deal_id)]}

    @app.post("/deals/{deal_id}/release")
    async def release_deal(deal_id: int, req: DealActionRequest, request: Request):
        """Buyer releases the locked amount to the seller. FUNDED -> RELEASED."""
        authed = await _verify_auth(request, req.caller)
        _require_auth(authed)
        return _ledger.release_to_seller(deal_id, req.caller).to_dict()

    @app.post("/deals/{deal_id}/refund")
    async def refund_deal(deal_id: int, req: DealActionRequest, request: Request):
        """Refund the buyer. Either party before the deadline, buyer only after."""
        authed = await _verify_auth(request, req.caller)
        _require_auth(authed)
        return _ledger.refund_to_buyer(deal_id, req.caller).to_dict()

    @app.post("/deals/{deal_id}/expire")
    async def expire_deal(deal_id: int, req: DealActionRequest, request: Request):
        """Record expiry once the deadline has passed. FUNDED -> EXPIRED, no payout."""
        authed = await _verify_auth(request, req.caller)
        _require_auth(authed)
        return _ledger.expire(deal_id, req.caller).to_dict()

    return app
