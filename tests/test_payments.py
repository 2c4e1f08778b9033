import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(__file__))

import pytest
from unittest.mock import MagicMock, patch

from server.payments import PaymentBackend, RPCBackend, SimBackend, StubBackend
from server.escrow import DealManager
from server.registry import ArbiterRegistry
from protocol import MIN_ARBITER_STAKE, STAKE_WITHDRAWAL_DELAY, PaymentError
from conftest import T0, DAY, FakeClock, PAYER, PAYEE, ARBITER, AUTHORITY


@pytest.fixture
def sim():
    return SimBackend()


# --- StubBackend ---

def test_stub_records_calls():
    stub = StubBackend()
    assert stub.collect("deal:x", PAYER, 10) == "stub_collect_1"
    assert stub.send("deal:x", PAYEE, 4) == "stub_hash_1"
    assert stub.get_balance("deal:x") == 6
    assert stub.sends == [{"reference": "deal:x", "to": PAYEE, "amount": 4}]


def test_stub_failure_modes():
    stub = StubBackend(fail_sends=True, fail_collects=True)
    with pytest.raises(RuntimeError):
        stub.collect("deal:x", PAYER, 10)
    with pytest.raises(RuntimeError):
        stub.send("deal:x", PAYEE, 10)


# --- SimBackend ---

def test_sim_is_payment_backend(sim):
    assert isinstance(sim, PaymentBackend)


def test_sim_collect_and_send(sim):
    sim.fund(PAYER, 5000)
    sim.collect("deal:abc", PAYER, 1000)
    assert sim.get_balance(PAYER) == 4000
    assert sim.get_balance("deal:abc") == 1000
    tx = sim.send("deal:abc", PAYEE, 995)
    assert len(tx) == 64
    assert sim.get_balance(PAYEE) == 995
    assert sim.get_balance("deal:abc") == 5


def test_sim_insufficient_balance(sim):
    sim.fund(PAYER, 10)
    with pytest.raises(ValueError, match="Insufficient"):
        sim.collect("deal:abc", PAYER, 11)
    assert sim.get_balance(PAYER) == 10


def test_sim_rejects_zero_transfer(sim):
    sim.fund(PAYER, 10)
    with pytest.raises(ValueError):
        sim.collect("deal:abc", PAYER, 0)


def test_sim_transaction_log(sim):
    sim.fund(PAYER, 100)
    sim.collect("deal:abc", PAYER, 100)
    sim.send("deal:abc", PAYEE, 100)
    txs = sim.get_transactions("deal:abc")
    assert [t["tx_type"] for t in txs] == ["collect", "send"]
    assert len(sim.get_transactions()) == 3


def test_sim_custody_end_to_end(sim):
    """Deal funds flow through real balances and the sink keeps the fee."""
    clock = FakeClock()
    sim.fund(PAYER, 1000)
    mgr = DealManager(payment_backend=sim, clock=clock)
    did = mgr.create(PAYER, PAYEE, ARBITER, 1000, T0 + DAY, "logo", AUTHORITY, AUTHORITY)
    mgr.fund(did, PAYER, 1000)
    mgr.mark_delivered(did, PAYEE)
    mgr.confirm_delivery(did, PAYER)
    mgr.withdraw(did, PAYEE)
    mgr.withdraw(did, AUTHORITY)
    assert sim.get_balance(PAYEE) == 995
    assert sim.get_balance(AUTHORITY) == 5
    assert sim.get_balance(f"deal:{did}") == 0


def test_sim_unfunded_payer_cannot_fund(sim):
    mgr = DealManager(payment_backend=sim, clock=FakeClock())
    did = mgr.create(PAYER, PAYEE, ARBITER, 1000, T0 + DAY, "logo", AUTHORITY, AUTHORITY)
    with pytest.raises(PaymentError):
        mgr.fund(did, PAYER, 1000)
    assert mgr.get(did)["state"] == "created"


def test_sim_stake_roundtrip(sim):
    clock = FakeClock()
    sim.fund(ARBITER, MIN_ARBITER_STAKE)
    reg = ArbiterRegistry(payment_backend=sim, authority=AUTHORITY, clock=clock)
    reg.register_arbiter(ARBITER, MIN_ARBITER_STAKE)
    assert sim.get_balance("registry") == MIN_ARBITER_STAKE
    reg.request_withdrawal(ARBITER)
    clock.advance(STAKE_WITHDRAWAL_DELAY)
    reg.withdraw_stake(ARBITER)
    assert sim.get_balance(ARBITER) == MIN_ARBITER_STAKE
    assert sim.get_balance("registry") == 0


# --- RPCBackend ---

def _response(payload):
    resp = MagicMock()
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


def test_rpc_requires_wallet(monkeypatch):
    monkeypatch.delenv("ESCROW_WALLET", raising=False)
    with pytest.raises(ValueError):
        RPCBackend(node_url="http://node")


def test_rpc_wallet_from_env(monkeypatch):
    monkeypatch.setenv("ESCROW_WALLET", "W1")
    monkeypatch.setenv("ESCROW_WALLET_RPC", "http://node:9")
    backend = RPCBackend()
    assert backend.wallet == "W1"
    assert backend.node_url == "http://node:9"


def test_rpc_send():
    backend = RPCBackend(node_url="http://node", wallet="W1")
    with patch("server.payments.requests.post", return_value=_response({"hash": "ABC"})) as post:
        assert backend.send("deal:x", PAYEE, 995) == "ABC"
    post.assert_called_once_with(
        "http://node",
        json={"action": "send", "wallet": "W1", "reference": "deal:x",
              "destination": PAYEE, "amount": "995"},
        timeout=30,
    )


def test_rpc_collect_and_balance():
    backend = RPCBackend(node_url="http://node", wallet="W1")
    with patch("server.payments.requests.post",
               side_effect=[_response({"hash": "H1"}), _response({"balance": "1000"})]) as post:
        assert backend.collect("deal:x", PAYER, 1000) == "H1"
        assert backend.get_balance("deal:x") == 1000
    assert post.call_args_list[0].kwargs["json"]["source"] == PAYER
    assert post.call_args_list[1].kwargs["json"]["action"] == "balance"


def test_rpc_error_raises():
    backend = RPCBackend(node_url="http://node", wallet="W1")
    with patch("server.payments.requests.post", return_value=_response({"error": "Insufficient balance"})):
        with pytest.raises(RuntimeError, match="Insufficient balance"):
            backend.send("deal:x", PAYEE, 1)


def test_rpc_failure_rolls_back_withdraw():
    backend = RPCBackend(node_url="http://node", wallet="W1")
    mgr = DealManager(payment_backend=StubBackend(), clock=FakeClock())
    did = mgr.create(PAYER, PAYEE, ARBITER, 1000, T0 + DAY, "logo", AUTHORITY, AUTHORITY)
    mgr.fund(did, PAYER, 1000)
    mgr.mark_delivered(did, PAYEE)
    mgr.confirm_delivery(did, PAYER)
    mgr.payment = backend
    with patch("server.payments.requests.post", return_value=_response({"error": "node down"})):
        with pytest.raises(PaymentError):
            mgr.withdraw(did, PAYEE)
    assert mgr.pending(did, PAYEE) == 995
