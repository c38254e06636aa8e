"""API client for the escrow deal service.

Thin HTTP client with a pluggable transport interface.
Default transport: HTTP with Ed25519 authentication.

This is what external callers (the booking chat UI, scripts) use to lock,
release, refund and expire deals.
"""

import json
import uuid
from abc import ABC, abstractmethod

import httpx

from crypto import sign_request_ed25519, ed25519_privkey_to_pubkey, pubkey_to_party_id


class Transport(ABC):
    """Override this to talk to the ledger some other way."""

    @abstractmethod
    async def post(self, path: str, data: dict) -> dict:
        ...

    @abstractmethod
    async def get(self, path: str, params: dict | None = None) -> dict:
        ...


class DealAPIError(Exception):
    """Non-2xx response from the deal service."""

    def __init__(self, status: int, detail: str, code: str = ""):
        super().__init__(f"{status} {code or 'error'}: {detail}")
        self.status = status
        self.detail = detail
        self.code = code


def _raise_for_status(resp: httpx.Response):
    if resp.status_code < 400:
        return
    try:
        body = resp.json()
    except ValueError:
        body = {"detail": resp.text}
    detail = body.get("detail", "")
    if not isinstance(detail, str):
        detail = json.dumps(detail)
    raise DealAPIError(resp.status_code, detail, body.get("code", ""))


class HTTPTransport(Transport):
    """Default. Talks to the deal service over HTTP with Ed25519 auth."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        privkey_bytes: bytes | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.privkey_bytes = privkey_bytes
        self.timeout = timeout
        if privkey_bytes:
            self.pubkey_hex = ed25519_privkey_to_pubkey(privkey_bytes).hex()
        else:
            self.pubkey_hex = ""

    def _headers(self, method: str = "GET", path: str = "", body: str = "") -> dict:
        h = {"Content-Type": "application/json"}
        if self.privkey_bytes:
            h.update(sign_request_ed25519(
                self.privkey_bytes, self.pubkey_hex, method, path, body
            ))
        return h

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)

    async def post(self, path: str, data: dict) -> dict:
        # Unique per request so identical calls never share a signature
        body = json.dumps({**data, "nonce": uuid.uuid4().hex})
        async with self._client() as client:
            resp = await client.post(path, content=body, headers=self._headers("POST", path, body))
            _raise_for_status(resp)
            return resp.json()

    async def get(self, path: str, params: dict | None = None) -> dict:
        async with self._client() as client:
            resp = await client.get(path, params=params, headers=self._headers("GET", path))
            _raise_for_status(resp)
            return resp.json()


class DealClient:
    """High-level client for the deal service.

    Acts as the party whose private key it holds.
    """

    def __init__(self, transport: Transport | None = None, base_url: str = "http://localhost:8000",
                 privkey_bytes: bytes | None = None):
        if privkey_bytes:
            self.party_id = pubkey_to_party_id(ed25519_privkey_to_pubkey(privkey_bytes))
        else:
            self.party_id = ""
        self.transport = transport or HTTPTransport(base_url, privkey_bytes=privkey_bytes)

    async def create_deal(self, seller: str, amount: str, timeout_secs: float | None = None) -> int:
        """Lock `amount` for `seller` as buyer. Returns the deal id."""
        payload = {"buyer": self.party_id, "seller": seller, "amount": str(amount)}
        if timeout_secs is not None:
            payload["timeout_secs"] = timeout_secs
        resp = await self.transport.post("/deals", payload)
        return resp["id"]

    async def release(self, deal_id: int) -> dict:
        return await self.transport.post(f"/deals/{deal_id}/release", {"caller": self.party_id})

    async def refund(self, deal_id: int) -> dict:
        return await self.transport.post(f"/deals/{deal_id}/refund", {"caller": self.party_id})

    async def expire(self, deal_id: int) -> dict:
        return await self.transport.post(f"/deals/{deal_id}/expire", {"caller": self.party_id})

    async def get_deal(self, deal_id: int) -> dict:
        return await self.transport.get(f"/deals/{deal_id}")

    async def list_deals(self, party: str = "", status: str = "", limit: int = 50) -> list[dict]:
        """List deals, newest first."""
        params = {"limit": limit}
        if party:
            params["party"] = party
        if status:
            params["status"] = status
        resp = await self.transport.get("/deals", params)
        return resp["deals"]

    async def deal_count(self) -> int:
        resp = await self.transport.get("/deals/count")
        return resp["count"]

    async def deal_events(self, deal_id: int) -> list[dict]:
        resp = await self.transport.get(f"/deals/{deal_id}/events")
        return resp["events"]
