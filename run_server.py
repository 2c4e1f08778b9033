#!/usr/bin/env python3
"""escrowd platform server.

Configuration comes from ESCROW_* env vars (never in code). The authority
key is loaded from ESCROW_AUTHORITY_KEY, or generated and persisted on
first start.
"""

import logging
import os
import sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn

from crypto import privkey_to_account
from server.app import create_app, load_authority_key
from server.directory import DealDirectory
from server.escrow import DealManager
from server.payments import RPCBackend, SimBackend
from server.registry import ArbiterRegistry

log = logging.getLogger("escrowd")


def load_settings(env=None) -> dict:
    """Read server settings from the environment."""
    env = os.environ if env is None else env
    return {
        "db_path": env.get("ESCROW_DB", os.path.expanduser("~/.escrowd/escrowd.db")),
        "host": env.get("ESCROW_HOST", "127.0.0.1"),
        "port": int(env.get("ESCROW_PORT", "8000")),
        "authority_key": env.get("ESCROW_AUTHORITY_KEY", ""),
        "fee_sink": env.get("ESCROW_FEE_SINK", ""),
        "payments": env.get("ESCROW_PAYMENTS", "sim"),
        "wallet_rpc": env.get("ESCROW_WALLET_RPC", ""),
        "wallet": env.get("ESCROW_WALLET", ""),
        "log_level": env.get("ESCROW_LOG_LEVEL", "INFO").upper(),
    }


def make_payment_backend(settings: dict):
    if settings["payments"] == "sim":
        return SimBackend(settings["db_path"].replace(".db", "_sim.db"))
    if settings["payments"] == "rpc":
        return RPCBackend(settings["wallet_rpc"] or None, settings["wallet"] or None)
    raise ValueError(f"unknown ESCROW_PAYMENTS backend: {settings['payments']}")


def build_app(settings: dict):
    """Wire managers onto one database file and return the FastAPI app."""
    db_dir = os.path.dirname(settings["db_path"])
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    authority_privkey = load_authority_key(key_path=settings["authority_key"])
    authority = privkey_to_account(authority_privkey)

    payments = make_payment_backend(settings)
    deals = DealManager(settings["db_path"], payment_backend=payments)
    registry = ArbiterRegistry(settings["db_path"], payment_backend=payments, authority=authority)
    directory = DealDirectory(deals, registry, authority, fee_sink=settings["fee_sink"],
                              db_path=settings["db_path"])

    log.info("authority %s, fee sink %s", authority, directory.fee_sink)
    log.info("payments: %s, database: %s", settings["payments"], settings["db_path"])
    return create_app(deals=deals, registry=registry, directory=directory,
                      authority_privkey=authority_privkey, fee_sink=settings["fee_sink"])


def main():
    settings = load_settings()
    logging.basicConfig(
        level=settings["log_level"],
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    app = build_app(settings)
    log.info("listening on %s:%d", settings["host"], settings["port"])
    uvicorn.run(app, host=settings["host"], port=settings["port"])


if __name__ == "__main__":
    main()
