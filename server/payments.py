"""Payment backends for the escrowd platform.

Custody never holds funds in memory: the managers ask a PaymentBackend to
collect attached value into a custody reference (``deal:<id>`` or
``registry``) and to send payouts out of it. Amounts are integers in the
smallest currency unit.
"""

import hashlib
import logging
import os
import sqlite3
import threading
import time
from abc import ABC, abstractmethod

import requests

log = logging.getLogger(__name__)


class PaymentBackend(ABC):
    """Abstract payment backend. Platform injects one of these into the managers."""

    @abstractmethod
    def collect(self, reference: str, from_account: str, amount: int) -> str:
        """Move attached value from an account into custody.
        Returns a transaction id. Raises on failure.
        """
        ...

    @abstractmethod
    def send(self, reference: str, to_account: str, amount: int) -> str:
        """Pay out of custody to an account.
        Returns a transaction id. Raises on failure.
        """
        ...

    @abstractmethod
    def get_balance(self, reference: str) -> int:
        """Funds currently held under a custody reference."""
        ...


class StubBackend(PaymentBackend):
    """No-op backend for testing. All operations succeed unless told to fail."""

    def __init__(self, fail_sends: bool = False, fail_collects: bool = False):
        self.fail_sends = fail_sends
        self.fail_collects = fail_collects
        self.balances: dict[str, int] = {}
        self.collects: list[dict] = []  # log of collects for test assertions
        self.sends: list[dict] = []  # log of sends for test assertions

    def collect(self, reference: str, from_account: str, amount: int) -> str:
        if self.fail_collects:
            raise RuntimeError("stub collect failure")
        self.collects.append({"reference": reference, "from": from_account, "amount": amount})
        self.balances[reference] = self.balances.get(reference, 0) + amount
        return f"stub_collect_{len(self.collects)}"

    def send(self, reference: str, to_account: str, amount: int) -> str:
        if self.fail_sends:
            raise RuntimeError("stub send failure")
        self.sends.append({"reference": reference, "to": to_account, "amount": amount})
        self.balances[reference] = self.balances.get(reference, 0) - amount
        return f"stub_hash_{len(self.sends)}"

    def get_balance(self, reference: str) -> int:
        return self.balances.get(reference, 0)


class SimBackend(PaymentBackend):
    """Simulated payment backend for development/integration testing.

    Tracks real balances in SQLite. Enforces:
    - No zero-amount transfers
    - Insufficient balance errors (on external accounts and custody)
    - Full transaction log with deterministic hashes

    Usage:
        sim = SimBackend()
        sim.fund("esc_...", 5000)                  # faucet an external account
        sim.collect("deal:abc", "esc_...", 1000)   # payer funds a deal
        sim.send("deal:abc", "esc_...", 995)       # payee withdraws
    """

    def __init__(self, db_path: str = ":memory:"):
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._tx_counter = 0
        self._init_db()

    def _init_db(self):
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_accounts (
                address TEXT PRIMARY KEY,
                balance TEXT NOT NULL DEFAULT '0'
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                hash TEXT NOT NULL UNIQUE,
                from_account TEXT NOT NULL,
                to_account TEXT NOT NULL,
                amount TEXT NOT NULL,
                reference TEXT,
                tx_type TEXT NOT NULL,
                timestamp REAL NOT NULL
            )
        """)
        self._db.commit()

    def _get_balance(self, address: str) -> int:
        row = self._db.execute(
            "SELECT balance FROM sim_accounts WHERE address = ?",
            (address,),
        ).fetchone()
        return int(row["balance"]) if row else 0

    def _set_balance(self, address: str, amount: int):
        self._db.execute(
            "INSERT INTO sim_accounts (address, balance) VALUES (?, ?) "
            "ON CONFLICT(address) DO UPDATE SET balance = ?",
            (address, str(amount), str(amount)),
        )

    def _record_tx(self, from_acc: str, to_acc: str, amount: int,
                   reference: str, tx_type: str) -> str:
        self._tx_counter += 1
        tx_hash = hashlib.blake2b(
            f"{self._tx_counter}:{from_acc}:{to_acc}:{amount}".encode(),
            digest_size=32,
        ).hexdigest().upper()
        self._db.execute(
            "INSERT INTO sim_transactions (hash, from_account, to_account, amount, "
            "reference, tx_type, timestamp) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (tx_hash, from_acc, to_acc, str(amount), reference, tx_type, time.time()),
        )
        return tx_hash

    def _transfer(self, from_acc: str, to_acc: str, amount: int,
                  reference: str, tx_type: str) -> str:
        if amount <= 0:
            raise ValueError("transfer amount must be positive")
        with self._lock:
            balance = self._get_balance(from_acc)
            if balance < amount:
                raise ValueError(
                    f"Insufficient balance: {from_acc} has {balance}, need {amount}"
                )
            self._set_balance(from_acc, balance - amount)
            self._set_balance(to_acc, self._get_balance(to_acc) + amount)
            tx_hash = self._record_tx(from_acc, to_acc, amount, reference, tx_type)
            self._db.commit()
            return tx_hash

    # --- PaymentBackend interface ---

    def collect(self, reference: str, from_account: str, amount: int) -> str:
        return self._transfer(from_account, reference, amount, reference, "collect")

    def send(self, reference: str, to_account: str, amount: int) -> str:
        return self._transfer(reference, to_account, amount, reference, "send")

    def get_balance(self, reference: str) -> int:
        with self._lock:
            return self._get_balance(reference)

    # --- SimBackend-only methods (for test setup) ---

    def fund(self, address: str, amount: int):
        """Credit an account with funds (simulates an external deposit)."""
        with self._lock:
            self._set_balance(address, self._get_balance(address) + amount)
            self._record_tx("faucet", address, amount, "", "fund")
            self._db.commit()

    def get_transactions(self, reference: str = "") -> list[dict]:
        """Get transaction log, optionally filtered by custody reference."""
        with self._lock:
            if reference:
                rows = self._db.execute(
                    "SELECT * FROM sim_transactions WHERE reference = ? ORDER BY id",
                    (reference,),
                ).fetchall()
            else:
                rows = self._db.execute(
                    "SELECT * FROM sim_transactions ORDER BY id"
                ).fetchall()
            return [dict(r) for r in rows]


class RPCBackend(PaymentBackend):
    """Wallet node backend speaking a JSON-RPC ``{"action": ...}`` protocol.

    The node keeps one wallet account per custody reference; this class only
    forwards instructions and surfaces node errors as exceptions.
    """

    DEFAULT_NODE = "http://localhost:7076"

    def __init__(self, node_url: str | None = None, wallet: str | None = None,
                 timeout: float = 30):
        self.node_url = node_url or os.environ.get("ESCROW_WALLET_RPC", self.DEFAULT_NODE)
        self.wallet = wallet or os.environ.get("ESCROW_WALLET", "")
        if not self.wallet:
            raise ValueError("wallet id required: set ESCROW_WALLET env var or pass wallet=")
        self.timeout = timeout

    def _rpc(self, action: str, **kwargs) -> dict:
        """Make a wallet RPC call."""
        resp = requests.post(
            self.node_url,
            json={"action": action, "wallet": self.wallet, **kwargs},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        result = resp.json()
        if "error" in result:
            raise RuntimeError(f"wallet RPC error: {result['error']}")
        return result

    def collect(self, reference: str, from_account: str, amount: int) -> str:
        result = self._rpc("collect", reference=reference, source=from_account,
                           amount=str(amount))
        return result["hash"]

    def send(self, reference: str, to_account: str, amount: int) -> str:
        result = self._rpc("send", reference=reference, destination=to_account,
                           amount=str(amount))
        log.info("rpc send %s -> %s: %d (%s)", reference, to_account, amount, result["hash"])
        return result["hash"]

    def get_balance(self, reference: str) -> int:
        result = self._rpc("balance", reference=reference)
        return int(result["balance"])
