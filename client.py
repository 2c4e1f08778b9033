"""Platform API client for the escrowd protocol.

Thin HTTP client with a pluggable transport interface.
Default transport: HTTP with Ed25519 authentication.
"""

import json
from abc import ABC, abstractmethod

import httpx

from crypto import privkey_to_account, sign_request_ed25519


class EscrowAPIError(Exception):
    """Server rejected a call. Carries the HTTP status and error code."""

    def __init__(self, status: int, code: str, detail: str):
        super().__init__(f"{status} {code}: {detail}")
        self.status = status
        self.code = code
        self.detail = detail


class Transport(ABC):
    """Override this to use another wire protocol."""

    @abstractmethod
    async def post(self, path: str, data: dict) -> dict:
        ...

    @abstractmethod
    async def get(self, path: str, params: dict | None = None) -> dict:
        ...


class HTTPTransport(Transport):
    """Default. Talks to an escrowd server over HTTP with Ed25519 auth."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        privkey_bytes: bytes | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.privkey_bytes = privkey_bytes
        self.timeout = timeout

    def _headers(self, method: str = "GET", path: str = "", body: str = "") -> dict:
        h = {"Content-Type": "application/json"}
        if self.privkey_bytes:
            h.update(sign_request_ed25519(self.privkey_bytes, method, path, body))
        return h

    @staticmethod
    def _raise_for_error(resp: httpx.Response):
        if resp.status_code < 400:
            return
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        raise EscrowAPIError(
            resp.status_code,
            payload.get("error", "http_error"),
            str(payload.get("detail", resp.text)),
        )

    async def post(self, path: str, data: dict) -> dict:
        body = json.dumps(data)
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self.base_url}{path}",
                content=body,
                headers=self._headers("POST", path, body),
                timeout=self.timeout,
            )
            self._raise_for_error(resp)
            return resp.json()

    async def get(self, path: str, params: dict | None = None) -> dict:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self.base_url}{path}",
                params=params,
                headers=self._headers("GET", path),
                timeout=self.timeout,
            )
            self._raise_for_error(resp)
            return resp.json()


class EscrowClient:
    """High-level client for the escrowd platform.

    Every mutating call is made as the identity behind privkey_bytes.
    """

    def __init__(self, transport: Transport | None = None, base_url: str = "http://localhost:8000",
                 privkey_bytes: bytes | None = None, account: str = ""):
        if privkey_bytes:
            self.account = privkey_to_account(privkey_bytes)
        else:
            self.account = account
        if transport:
            self.transport = transport
        else:
            self.transport = HTTPTransport(base_url, privkey_bytes=privkey_bytes)

    async def _call(self, path: str, **fields) -> dict:
        return await self.transport.post(path, {"pubkey": self.account, **fields})

    # --- Deals ---

    async def create_deal(self, payee: str, arbiter: str, amount: int, deadline: int,
                          description: str) -> str:
        """Open a deal as payer. Returns deal_id."""
        resp = await self._call("/deals", payee=payee, arbiter=arbiter, amount=amount,
                                deadline=deadline, description=description)
        return resp["deal_id"]

    async def get_deal(self, deal_id: str) -> dict:
        return await self.transport.get(f"/deals/{deal_id}")

    async def list_deals(self, account: str = "", role: str | None = None) -> list[dict]:
        params = {"account": account or self.account}
        if role:
            params["role"] = role
        resp = await self.transport.get("/deals", params)
        return resp["deals"]

    async def get_events(self, deal_id: str) -> list[dict]:
        resp = await self.transport.get(f"/deals/{deal_id}/events")
        return resp["events"]

    async def custody(self, deal_id: str) -> dict:
        return await self.transport.get(f"/deals/{deal_id}/custody")

    async def pending(self, deal_id: str, account: str = "") -> int:
        resp = await self.transport.get(f"/deals/{deal_id}/pending/{account or self.account}")
        return resp["amount"]

    async def fund(self, deal_id: str, value: int) -> dict:
        return await self._call(f"/deals/{deal_id}/fund", value=value)

    async def mark_delivered(self, deal_id: str) -> dict:
        return await self._call(f"/deals/{deal_id}/deliver")

    async def confirm_delivery(self, deal_id: str) -> dict:
        return await self._call(f"/deals/{deal_id}/confirm")

    async def raise_dispute(self, deal_id: str, reason: str) -> dict:
        return await self._call(f"/deals/{deal_id}/dispute", reason=reason)

    async def resolve_dispute(self, deal_id: str, buyer_amount: int, seller_amount: int,
                              resolution: str) -> dict:
        return await self._call(f"/deals/{deal_id}/resolve", buyer_amount=buyer_amount,
                                seller_amount=seller_amount, resolution=resolution)

    async def cancel(self, deal_id: str) -> dict:
        return await self._call(f"/deals/{deal_id}/cancel")

    async def withdraw(self, deal_id: str) -> dict:
        return await self._call(f"/deals/{deal_id}/withdraw")

    # --- Arbiters ---

    async def register_arbiter(self, value: int) -> dict:
        return await self._call("/arbiters/register", value=value)

    async def request_withdrawal(self) -> dict:
        return await self._call("/arbiters/request_withdrawal")

    async def withdraw_stake(self) -> dict:
        return await self._call("/arbiters/withdraw_stake")

    async def get_arbiter(self, account: str = "") -> dict:
        return await self.transport.get(f"/arbiters/{account or self.account}")

    # --- Administrative authority ---

    async def pause(self, deal_id: str) -> dict:
        return await self._call(f"/deals/{deal_id}/pause")

    async def unpause(self, deal_id: str) -> dict:
        return await self._call(f"/deals/{deal_id}/unpause")

    async def record_resolution(self, deal_id: str, successful: bool) -> dict:
        return await self._call(f"/deals/{deal_id}/reputation", successful=successful)

    async def collect_fees(self) -> dict:
        return await self._call("/fees/collect")

    async def platform_info(self) -> dict:
        return await self.transport.get("/platform_info")
