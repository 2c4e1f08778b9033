"""Tests for run_server.py -- settings and wiring."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import pytest
from starlette.testclient import TestClient

from run_server import build_app, load_settings, make_payment_backend
from server.payments import RPCBackend, SimBackend
from crypto import generate_ed25519_keypair, privkey_to_account, save_ed25519_key
from conftest import STRANGER


def test_defaults():
    s = load_settings({})
    assert s["host"] == "127.0.0.1"
    assert s["port"] == 8000
    assert s["payments"] == "sim"
    assert s["log_level"] == "INFO"
    assert s["db_path"].endswith(os.path.join(".escrowd", "escrowd.db"))


def test_env_overrides():
    s = load_settings({"ESCROW_PORT": "9001", "ESCROW_PAYMENTS": "rpc",
                       "ESCROW_LOG_LEVEL": "debug", "ESCROW_FEE_SINK": STRANGER})
    assert s["port"] == 9001
    assert s["payments"] == "rpc"
    assert s["log_level"] == "DEBUG"
    assert s["fee_sink"] == STRANGER


def test_payment_backend_choice(tmp_path):
    s = load_settings({"ESCROW_DB": str(tmp_path / "e.db")})
    assert isinstance(make_payment_backend(s), SimBackend)
    s = load_settings({"ESCROW_PAYMENTS": "rpc", "ESCROW_WALLET": "W1"})
    assert isinstance(make_payment_backend(s), RPCBackend)
    with pytest.raises(ValueError):
        make_payment_backend(load_settings({"ESCROW_PAYMENTS": "paper"}))


def test_build_app_uses_key_file(tmp_path):
    priv, _ = generate_ed25519_keypair()
    key_path = str(tmp_path / "authority.key")
    save_ed25519_key(key_path, priv)
    settings = load_settings({
        "ESCROW_DB": str(tmp_path / "data" / "escrowd.db"),
        "ESCROW_AUTHORITY_KEY": key_path,
        "ESCROW_FEE_SINK": STRANGER,
    })
    client = TestClient(build_app(settings))
    data = client.get("/authority").json()
    assert data["account"] == privkey_to_account(priv)
    assert data["fee_sink"] == STRANGER
    assert os.path.exists(tmp_path / "data" / "escrowd.db")
