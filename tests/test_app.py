"""Tests for the HTTP API.

Covers: deal lifecycle over HTTP, signed-request auth, error mapping,
arbiter staking endpoints, authority-only endpoints.
"""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import json
import pytest
from starlette.testclient import TestClient
from server.app import create_app
from server.payments import StubBackend
from protocol import MIN_ARBITER_STAKE, STAKE_WITHDRAWAL_DELAY
from conftest import (
    T0, DAY, FakeClock, signed_post, signed_headers,
    PAYER, PAYEE, ARBITER, AUTHORITY, STRANGER, PAYER_PRIV, STRANGER_PRIV, AUTHORITY_PRIV,
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def payments():
    return StubBackend()


@pytest.fixture
def app(clock, payments):
    return create_app(authority_privkey=AUTHORITY_PRIV, payment_backend=payments, clock=clock)


@pytest.fixture
def client(app):
    client = TestClient(app)
    resp = signed_post(client, "/arbiters/register", {"value": MIN_ARBITER_STAKE}, ARBITER)
    assert resp.status_code == 200
    return client


def _create(client, amount=1000):
    resp = signed_post(client, "/deals", {
        "payee": PAYEE, "arbiter": ARBITER, "amount": amount,
        "deadline": T0 + DAY, "description": "logo design",
    }, PAYER)
    assert resp.status_code == 200, resp.text
    return resp.json()["deal_id"]


def _delivered(client):
    did = _create(client)
    assert signed_post(client, f"/deals/{did}/fund", {"value": 1000}, PAYER).status_code == 200
    assert signed_post(client, f"/deals/{did}/deliver", {}, PAYEE).status_code == 200
    return did


# --- Public info ---

def test_authority(client):
    data = client.get("/authority").json()
    assert data["account"] == AUTHORITY
    assert data["fee_sink"] == AUTHORITY


def test_platform_info(client):
    data = client.get("/platform_info").json()
    assert data["fee_bps"] == 50
    assert data["bps_denominator"] == 10_000
    assert data["min_arbiter_stake"] == MIN_ARBITER_STAKE
    assert data["stake_withdrawal_delay"] == STAKE_WITHDRAWAL_DELAY
    assert data["active_arbiters"] == 1


# --- Deal lifecycle ---

def test_create_and_get(client):
    did = _create(client)
    data = client.get(f"/deals/{did}").json()
    assert data["state"] == "created"
    assert data["payer"] == PAYER
    assert data["amount"] == 1000


def test_get_missing_deal(client):
    resp = client.get("/deals/nope")
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"


def test_happy_path(client, payments):
    did = _delivered(client)
    resp = signed_post(client, f"/deals/{did}/confirm", {}, PAYER)
    assert resp.json()["state"] == "completed"
    assert client.get(f"/deals/{did}/pending/{PAYEE}").json()["amount"] == 995
    resp = signed_post(client, f"/deals/{did}/withdraw", {}, PAYEE)
    assert resp.status_code == 200
    assert resp.json()["amount"] == 995
    assert payments.sends[-1]["to"] == PAYEE
    # second pull finds nothing
    resp = signed_post(client, f"/deals/{did}/withdraw", {}, PAYEE)
    assert resp.status_code == 409
    assert resp.json()["error"] == "no_funds"


def test_dispute_and_resolve(client):
    did = _delivered(client)
    resp = signed_post(client, f"/deals/{did}/dispute", {"reason": "blurry"}, PAYER)
    assert resp.json()["state"] == "disputed"
    resp = signed_post(client, f"/deals/{did}/resolve", {
        "buyer_amount": 600, "seller_amount": 400, "resolution": "even"}, ARBITER)
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_split"
    resp = signed_post(client, f"/deals/{did}/resolve", {
        "buyer_amount": 600, "seller_amount": 395, "resolution": "partial"}, ARBITER)
    assert resp.status_code == 200
    assert resp.json()["pending_withdrawals"] == {PAYER: 600, PAYEE: 395, AUTHORITY: 5}


def test_wrong_role_is_forbidden(client):
    did = _create(client)
    resp = signed_post(client, f"/deals/{did}/fund", {"value": 1000}, STRANGER)
    assert resp.status_code == 403
    assert resp.json()["error"] == "unauthorized"


def test_wrong_state_is_conflict(client):
    did = _create(client)
    resp = signed_post(client, f"/deals/{did}/deliver", {}, PAYEE)
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_state"


def test_refund_timing(client, clock):
    did = _create(client)
    signed_post(client, f"/deals/{did}/fund", {"value": 1000}, PAYER)
    resp = signed_post(client, f"/deals/{did}/cancel", {}, PAYER)
    assert resp.status_code == 409
    assert resp.json()["error"] == "deadline_pending"
    clock.advance(DAY + 1)
    resp = signed_post(client, f"/deals/{did}/cancel", {}, PAYER)
    assert resp.json()["state"] == "refunded"


def test_create_with_inactive_arbiter(client):
    resp = signed_post(client, "/deals", {
        "payee": PAYEE, "arbiter": STRANGER, "amount": 1000,
        "deadline": T0 + DAY, "description": "x",
    }, PAYER)
    assert resp.status_code == 400
    assert resp.json()["error"] == "arbiter_inactive"


def test_list_deals(client):
    a = _create(client)
    b = _create(client)
    ids = [d["deal_id"] for d in client.get("/deals", params={"account": PAYER}).json()["deals"]]
    assert ids == [a, b]
    resp = client.get("/deals", params={"account": PAYEE, "role": "payer"})
    assert resp.json()["deals"] == []
    assert len(client.get("/deals").json()["deals"]) == 2


def test_events_and_verify(client):
    did = _delivered(client)
    events = client.get(f"/deals/{did}/events").json()["events"]
    assert [e["event"] for e in events] == ["Created", "Funded", "Delivered"]
    assert client.get(f"/deals/{did}/verify_events").json() == {"valid": True, "error": ""}


def test_custody(client):
    did = _delivered(client)
    assert client.get(f"/deals/{did}/custody").json() == {
        "deal_id": did, "balance": 1000, "held": 1000, "ok": True,
    }
    assert client.get("/deals/nope/custody").status_code == 404


def test_payment_failure_is_bad_gateway(client, payments):
    did = _delivered(client)
    signed_post(client, f"/deals/{did}/confirm", {}, PAYER)
    payments.fail_sends = True
    resp = signed_post(client, f"/deals/{did}/withdraw", {}, PAYEE)
    assert resp.status_code == 502
    assert client.get(f"/deals/{did}/pending/{PAYEE}").json()["amount"] == 995


# --- Authentication ---

def test_unsigned_request_rejected(client):
    resp = client.post("/deals", json={
        "pubkey": PAYER, "payee": PAYEE, "arbiter": ARBITER, "amount": 1000,
        "deadline": T0 + DAY, "description": "x",
    })
    assert resp.status_code == 401


def test_body_pubkey_must_match_signer(client):
    did = _create(client)
    # stranger signs a request claiming to be the payer
    body = json.dumps({"pubkey": PAYER, "value": 1000})
    path = f"/deals/{did}/fund"
    resp = client.post(path, content=body, headers={
        "Content-Type": "application/json",
        **signed_headers(STRANGER_PRIV, "POST", path, body),
    })
    assert resp.status_code == 401


def test_tampered_body_rejected(client):
    did = _create(client)
    path = f"/deals/{did}/fund"
    signed = json.dumps({"pubkey": PAYER, "value": 1000})
    headers = signed_headers(PAYER_PRIV, "POST", path, signed)
    resp = client.post(path, content=json.dumps({"pubkey": PAYER, "value": 1}), headers={
        "Content-Type": "application/json", **headers,
    })
    assert resp.status_code == 401


def test_replay_rejected(client):
    did = _create(client)
    path = f"/deals/{did}/fund"
    body = json.dumps({"pubkey": PAYER, "value": 1000})
    headers = {"Content-Type": "application/json",
               **signed_headers(PAYER_PRIV, "POST", path, body)}
    assert client.post(path, content=body, headers=headers).status_code == 200
    resp = client.post(path, content=body, headers=headers)
    assert resp.status_code == 401
    assert "Replay" in resp.json()["detail"]


# --- Arbiters ---

def test_get_arbiter(client):
    data = client.get(f"/arbiters/{ARBITER}").json()
    assert data["active"] is True
    assert data["stake"] == MIN_ARBITER_STAKE
    assert client.get(f"/arbiters/{STRANGER}").status_code == 404


def test_register_below_minimum(client):
    resp = signed_post(client, "/arbiters/register", {"value": 1}, STRANGER)
    assert resp.status_code == 400
    assert resp.json()["error"] == "insufficient_stake"


def test_stake_withdrawal_flow(client, clock):
    assert signed_post(client, "/arbiters/request_withdrawal", {}, ARBITER).status_code == 200
    resp = signed_post(client, "/arbiters/withdraw_stake", {}, ARBITER)
    assert resp.status_code == 409
    assert resp.json()["error"] == "cooling_off"
    clock.advance(STAKE_WITHDRAWAL_DELAY)
    resp = signed_post(client, "/arbiters/withdraw_stake", {}, ARBITER)
    assert resp.json()["amount"] == MIN_ARBITER_STAKE


# --- Authority ---

def test_pause_blocks_and_unpause_restores(client):
    did = _create(client)
    assert signed_post(client, f"/deals/{did}/pause", {}, AUTHORITY).json()["paused"] is True
    resp = signed_post(client, f"/deals/{did}/fund", {"value": 1000}, PAYER)
    assert resp.status_code == 409
    assert resp.json()["error"] == "paused"
    signed_post(client, f"/deals/{did}/unpause", {}, AUTHORITY)
    assert signed_post(client, f"/deals/{did}/fund", {"value": 1000}, PAYER).status_code == 200


def test_pause_by_participant_forbidden(client):
    did = _create(client)
    assert signed_post(client, f"/deals/{did}/pause", {}, PAYER).status_code == 403


def test_reputation_recording(client):
    did = _delivered(client)
    signed_post(client, f"/deals/{did}/dispute", {"reason": "blurry"}, PAYER)
    signed_post(client, f"/deals/{did}/resolve", {
        "buyer_amount": 995, "seller_amount": 0, "resolution": "refund"}, ARBITER)
    resp = signed_post(client, f"/deals/{did}/reputation", {"successful": True}, AUTHORITY)
    assert resp.json()["reputation_score"] == 100
    resp = signed_post(client, f"/deals/{did}/reputation", {"successful": True}, AUTHORITY)
    assert resp.status_code == 409


def test_collect_fees(client):
    did = _delivered(client)
    signed_post(client, f"/deals/{did}/confirm", {}, PAYER)
    resp = signed_post(client, "/fees/collect", {}, AUTHORITY)
    assert resp.json()["total"] == 5
    assert resp.json()["failed"] == []
    assert signed_post(client, "/fees/collect", {}, PAYER).status_code == 403
