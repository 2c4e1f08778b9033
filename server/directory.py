"""Deal directory for the escrowd platform.

Creates deals, indexes them by participant, gates arbiter assignment on
the registry, and acts as the administrative authority and fee sink.
"""

import logging
import sqlite3
import threading

from protocol import (
    AuthorizationError, DealState, PaymentError, StateError,
    ValidationError, is_valid_account,
)

log = logging.getLogger(__name__)

ROLES = ("payer", "payee", "arbiter")


class DealDirectory:
    """SQLite-backed participant index over a DealManager."""

    def __init__(self, deals, registry, authority: str, fee_sink: str = "",
                 db_path: str = ":memory:"):
        if not is_valid_account(authority):
            raise ValueError("directory authority must be a valid account")
        self.deals = deals
        self.registry = registry
        self.authority = authority
        self.fee_sink = fee_sink or authority
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS deal_index (
                deal_id TEXT NOT NULL,
                account TEXT NOT NULL,
                role TEXT NOT NULL,
                PRIMARY KEY (deal_id, role)
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_account ON deal_index(account)")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS reputation_recorded (
                deal_id TEXT PRIMARY KEY,
                successful INTEGER NOT NULL
            )
        """)
        self.db.commit()

    def _require_authority(self, caller: str):
        if caller != self.authority:
            raise AuthorizationError("caller is not the administrative authority")

    def create_deal(self, caller: str, payee: str, arbiter: str, amount: int,
                    deadline: int, description: str) -> str:
        """Open a deal with caller as payer. Returns deal ID."""
        with self.registry.active_arbiter(arbiter):
            deal_id = self.deals.create(caller, payee, arbiter, amount, deadline, description,
                                        authority=self.authority, fee_sink=self.fee_sink)
        with self._lock, self.db:
            self.db.executemany(
                "INSERT INTO deal_index (deal_id, account, role) VALUES (?, ?, ?)",
                [(deal_id, caller, "payer"), (deal_id, payee, "payee"),
                 (deal_id, arbiter, "arbiter")],
            )
        return deal_id

    def deals_for(self, account: str, role: str | None = None) -> list[str]:
        """Deal IDs in which account takes part, optionally in one role."""
        if role is None:
            rows = self.db.execute(
                "SELECT DISTINCT deal_id FROM deal_index WHERE account = ? ORDER BY rowid",
                (account,),
            ).fetchall()
        else:
            if role not in ROLES:
                raise ValidationError(f"role must be one of {', '.join(ROLES)}")
            rows = self.db.execute(
                "SELECT deal_id FROM deal_index WHERE account = ? AND role = ? ORDER BY rowid",
                (account, role),
            ).fetchall()
        return [r["deal_id"] for r in rows]

    def all_deals(self) -> list[str]:
        return self.deals.list_ids()

    def pause_deal(self, caller: str, deal_id: str) -> dict:
        return self.deals.pause(deal_id, caller)

    def unpause_deal(self, caller: str, deal_id: str) -> dict:
        return self.deals.unpause(deal_id, caller)

    def record_resolution(self, caller: str, deal_id: str, successful: bool) -> dict:
        """Write the outcome of a resolved dispute to the arbiter's record, once."""
        self._require_authority(caller)
        deal = self.deals.load(deal_id)
        if deal.state is not DealState.RESOLVED:
            raise StateError(f"deal is {deal.state.value}, expected resolved")
        with self._lock:
            row = self.db.execute(
                "SELECT 1 FROM reputation_recorded WHERE deal_id = ?", (deal_id,)
            ).fetchone()
            if row:
                raise StateError("outcome already recorded for this deal",
                                 code="already_recorded")
            record = self.registry.update_reputation(caller, deal.arbiter, successful)
            with self.db:
                self.db.execute(
                    "INSERT INTO reputation_recorded (deal_id, successful) VALUES (?, ?)",
                    (deal_id, int(successful)),
                )
            return record

    def collect_fees(self, caller: str) -> dict:
        """Withdraw the fee sink's pending balance from every deal.

        A failed transfer leaves that deal's fee pending and is listed under
        "failed"; the sweep carries on with the other deals.
        """
        self._require_authority(caller)
        collected, failed = [], []
        for deal_id in self.deals.list_ids():
            if self.deals.pending(deal_id, self.fee_sink) > 0:
                try:
                    collected.append(self.deals.withdraw(deal_id, self.fee_sink))
                except StateError as e:
                    # paused deals keep their fee until unpaused
                    log.info("skipping fees of deal %s: %s", deal_id, e)
                except PaymentError as e:
                    log.warning("fee payout from deal %s failed: %s", deal_id, e)
                    failed.append({"deal_id": deal_id, "error": str(e)})
        total = sum(c["amount"] for c in collected)
        log.info("collected %d in fees from %d deals (%d failed)",
                 total, len(collected), len(failed))
        return {"total": total, "payouts": collected, "failed": failed}

    def get(self, deal_id: str) -> dict:
        return self.deals.get_details(deal_id)

    def close(self):
        self.db.close()
