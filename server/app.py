# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the escrowd platform (FastAPI).

Endpoints for the deal lifecycle: create, fund, deliver, confirm, dispute,
resolve, cancel, withdraw, pause; arbiter staking; reputation recording and
fee collection by the administrative authority.

Ed25519 authentication: every mutating request must be signed, and the
caller identity handed to the core is the verified signer.
"""

import logging
import os

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from server.escrow import DealManager
from server.registry import ArbiterRegistry
from server.directory import DealDirectory
from crypto import (
    PUBKEY_HEADER, SIGNATURE_HEADER, ReplayGuard, ed25519_privkey_to_pubkey,
    generate_ed25519_keypair, load_ed25519_key, pubkey_to_account, save_ed25519_key,
    verify_request_ed25519,
)
from protocol import (
    ACCOUNT_PREFIX, BPS_DENOMINATOR, FEE_BPS, PROTOCOL_VERSION, EscrowError, NotFoundError,
)

log = logging.getLogger(__name__)


# --- Request models ---

class CreateDealRequest(BaseModel):
    pubkey: str  # payer
    payee: str
    arbiter: str
    amount: int
    deadline: int
    description: str

class CallerRequest(BaseModel):
    pubkey: str

class FundRequest(BaseModel):
    pubkey: str
    value: int

class DisputeRequest(BaseModel):
    pubkey: str
    reason: str

class ResolveRequest(BaseModel):
    pubkey: str
    buyer_amount: int
    seller_amount: int
    resolution: str

class ReputationRequest(BaseModel):
    pubkey: str
    successful: bool

class RegisterArbiterRequest(BaseModel):
    pubkey: str
    value: int


def _pubkey_str_to_hex(pubkey: str) -> str:
    """Convert an account (esc_<hex>) or raw hex pubkey to raw hex."""
    if pubkey.startswith(ACCOUNT_PREFIX):
        return pubkey[len(ACCOUNT_PREFIX):]
    return pubkey


async def _authenticate(request: Request, pubkey: str) -> str:
    """Verify an Ed25519-signed request and return the caller's account.

    The body's claimed pubkey must be the key that signed the request.
    """
    body = (await request.body()).decode("utf-8", errors="replace")
    ok, err = verify_request_ed25519(request.method, request.url.path, body, request.headers)
    if not ok:
        raise HTTPException(401, f"Authentication failed: {err}")

    signature = request.headers[SIGNATURE_HEADER]
    if not request.app.state.replay_guard.check_and_record(signature):
        raise HTTPException(401, "Replay detected")

    pubkey_hex = request.headers[PUBKEY_HEADER]
    if _pubkey_str_to_hex(pubkey) != pubkey_hex:
        raise HTTPException(401, "Pubkey mismatch: header pubkey does not match request body pubkey")
    return ACCOUNT_PREFIX + pubkey_hex


def load_authority_key(authority_privkey: bytes | None = None, key_path: str = "") -> bytes:
    """Authority key from argument, key file, or generated and persisted.

    key_path defaults to ESCROW_AUTHORITY_KEY.
    """
    if authority_privkey:
        return authority_privkey
    key_path = key_path or os.environ.get("ESCROW_AUTHORITY_KEY", "")
    if key_path and os.path.exists(key_path):
        return load_ed25519_key(key_path)
    privkey, _ = generate_ed25519_keypair()
    default_key_path = key_path or os.path.expanduser("~/.escrowd/authority.key")
    try:
        save_ed25519_key(default_key_path, privkey)
    except OSError as e:
        log.warning("could not persist authority key to %s: %s", default_key_path, e)
    return privkey


# --- App factory ---

def create_app(
    deals: DealManager | None = None,
    registry: ArbiterRegistry | None = None,
    directory: DealDirectory | None = None,
    authority_privkey: bytes | None = None,
    payment_backend=None,
    clock=None,
    fee_sink: str = "",
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    The administrative authority is the server's own Ed25519 identity.
    """

    app = FastAPI(title="escrowd", version="1.0")

    _authority_privkey = load_authority_key(authority_privkey)
    _authority_pubkey = ed25519_privkey_to_pubkey(_authority_privkey)
    _authority = pubkey_to_account(_authority_pubkey)

    _deals = deals or DealManager(payment_backend=payment_backend, clock=clock)
    _registry = registry or ArbiterRegistry(payment_backend=payment_backend,
                                            authority=_authority, clock=clock)
    if not _registry.authority:
        _registry.authority = _authority
    _directory = directory or DealDirectory(_deals, _registry, _authority, fee_sink=fee_sink)

    app.state.deals = _deals
    app.state.registry = _registry
    app.state.directory = _directory
    app.state.authority = _authority
    app.state.replay_guard = ReplayGuard()

    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError):
        log.info("%s %s rejected: %s (%s)", request.method, request.url.path,
                 exc.message, exc.code)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.get("/authority")
    async def get_authority():
        """The administrative authority's identity (pause, reputation, fees)."""
        return {"pubkey": _authority_pubkey.hex(), "account": _authority,
                "fee_sink": _directory.fee_sink}

    @app.get("/platform_info")
    async def platform_info():
        """Advertised platform rates and bonding rules."""
        return {
            "protocol_version": PROTOCOL_VERSION,
            "fee_bps": FEE_BPS,
            "bps_denominator": BPS_DENOMINATOR,
            "min_arbiter_stake": _registry.min_stake,
            "stake_withdrawal_delay": _registry.withdrawal_delay,
            "active_arbiters": _registry.active_arbiter_count(),
        }

    # --- Deals ---

    @app.post("/deals")
    async def create_deal(req: CreateDealRequest, request: Request):
        """Open a deal. The signer becomes the payer."""
        caller = await _authenticate(request, req.pubkey)
        deal_id = _directory.create_deal(caller, req.payee, req.arbiter, req.amount,
                                         req.deadline, req.description)
        return {"deal_id": deal_id, **_directory.get(deal_id)}

    @app.get("/deals")
    async def list_deals(account: str = "", role: str | None = None):
        if account:
            ids = _directory.deals_for(account, role)
        else:
            ids = _directory.all_deals()
        return {"deals": [_deals.get(i) for i in ids]}

    @app.get("/deals/{deal_id}")
    async def get_deal(deal_id: str):
        return _directory.get(deal_id)

    @app.get("/deals/{deal_id}/events")
    async def get_events(deal_id: str):
        return {"deal_id": deal_id, "events": _deals.events(deal_id)}

    @app.get("/deals/{deal_id}/verify_events")
    async def verify_events(deal_id: str):
        ok, err = _deals.verify_events(deal_id)
        return {"valid": ok, "error": err}

    @app.get("/deals/{deal_id}/custody")
    async def get_custody(deal_id: str):
        return _deals.custody(deal_id)

    @app.get("/deals/{deal_id}/pending/{account}")
    async def get_pending(deal_id: str, account: str):
        return {"deal_id": deal_id, "account": account,
                "amount": _deals.pending(deal_id, account)}

    @app.post("/deals/{deal_id}/fund")
    async def fund_deal(deal_id: str, req: FundRequest, request: Request):
        caller = await _authenticate(request, req.pubkey)
        return _deals.fund(deal_id, caller, req.value)

    @app.post("/deals/{deal_id}/deliver")
    async def mark_delivered(deal_id: str, req: CallerRequest, request: Request):
        caller = await _authenticate(request, req.pubkey)
        return _deals.mark_delivered(deal_id, caller)

    @app.post("/deals/{deal_id}/confirm")
    async def confirm_delivery(deal_id: str, req: CallerRequest, request: Request):
        caller = await _authenticate(request, req.pubkey)
        return _deals.confirm_delivery(deal_id, caller)

    @app.post("/deals/{deal_id}/dispute")
    async def raise_dispute(deal_id: str, req: DisputeRequest, request: Request):
        caller = await _authenticate(request, req.pubkey)
        return _deals.raise_dispute(deal_id, caller, req.reason)

    @app.post("/deals/{deal_id}/resolve")
    async def resolve_dispute(deal_id: str, req: ResolveRequest, request: Request):
        caller = await _authenticate(request, req.pubkey)
        return _deals.resolve_dispute(deal_id, caller, req.buyer_amount,
                                      req.seller_amount, req.resolution)

    @app.post("/deals/{deal_id}/cancel")
    async def cancel_deal(deal_id: str, req: CallerRequest, request: Request):
        caller = await _authenticate(request, req.pubkey)
        return _deals.cancel(deal_id, caller)

    @app.post("/deals/{deal_id}/withdraw")
    async def withdraw(deal_id: str, req: CallerRequest, request: Request):
        caller = await _authenticate(request, req.pubkey)
        return _deals.withdraw(deal_id, caller)

    @app.post("/deals/{deal_id}/pause")
    async def pause_deal(deal_id: str, req: CallerRequest, request: Request):
        caller = await _authenticate(request, req.pubkey)
        return _directory.pause_deal(caller, deal_id)

    @app.post("/deals/{deal_id}/unpause")
    async def unpause_deal(deal_id: str, req: CallerRequest, request: Request):
        caller = await _authenticate(request, req.pubkey)
        return _directory.unpause_deal(caller, deal_id)

    @app.post("/deals/{deal_id}/reputation")
    async def record_resolution(deal_id: str, req: ReputationRequest, request: Request):
        """Authority records whether the arbiter's resolution stood."""
        caller = await _authenticate(request, req.pubkey)
        return _directory.record_resolution(caller, deal_id, req.successful)

    # --- Arbiters ---

    @app.post("/arbiters/register")
    async def register_arbiter(req: RegisterArbiterRequest, request: Request):
        caller = await _authenticate(request, req.pubkey)
        return {"account": caller, **_registry.register_arbiter(caller, req.value)}

    @app.post("/arbiters/request_withdrawal")
    async def request_withdrawal(req: CallerRequest, request: Request):
        caller = await _authenticate(request, req.pubkey)
        return {"account": caller, **_registry.request_withdrawal(caller)}

    @app.post("/arbiters/withdraw_stake")
    async def withdraw_stake(req: CallerRequest, request: Request):
        caller = await _authenticate(request, req.pubkey)
        return _registry.withdraw_stake(caller)

    @app.get("/arbiters/{account}")
    async def get_arbiter(account: str):
        record = _registry.get_arbiter(account)
        if not record.is_registered():
            raise NotFoundError(f"arbiter {account} is not registered")
        return {"account": account, **record.to_dict()}

    # --- Fees ---

    @app.post("/fees/collect")
    async def collect_fees(req: CallerRequest, request: Request):
        caller = await _authenticate(request, req.pubkey)
        return _directory.collect_fees(caller)

    return app
