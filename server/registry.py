"""Arbiter staking and reputation registry.

Arbiters post a bond to become assignable. Requesting a withdrawal makes
them ineligible immediately; the bond itself only comes back after the
cooling-off delay. Reputation counters are written by the administrative
authority, never by the arbiter.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass

from protocol import (
    MIN_ARBITER_STAKE, REGISTRY_REFERENCE, STAKE_WITHDRAWAL_DELAY,
    AuthorizationError, NotFoundError, PaymentError, ResourceError, StateError,
    TimingError, ValidationError, is_amount, is_valid_account, system_clock,
)

log = logging.getLogger(__name__)


@dataclass
class ArbiterRecord:
    """Registry entry for one arbiter identity."""
    active: bool = False
    stake: int = 0
    disputes_resolved: int = 0
    successful_resolutions: int = 0
    registered_at: int = 0
    withdrawal_request_time: int = 0

    def is_registered(self) -> bool:
        return self.registered_at != 0

    def withdrawal_requested(self) -> bool:
        return self.withdrawal_request_time != 0

    def reputation_score(self) -> int:
        """Percentage of uncontested resolutions, 0 with no track record."""
        if self.disputes_resolved == 0:
            return 0
        return self.successful_resolutions * 100 // self.disputes_resolved

    def to_dict(self) -> dict:
        return {**asdict(self), "reputation_score": self.reputation_score()}

    @classmethod
    def from_dict(cls, d: dict) -> "ArbiterRecord":
        return cls(
            active=bool(d.get("active", False)),
            stake=int(d.get("stake", 0)),
            disputes_resolved=int(d.get("disputes_resolved", 0)),
            successful_resolutions=int(d.get("successful_resolutions", 0)),
            registered_at=int(d.get("registered_at", 0)),
            withdrawal_request_time=int(d.get("withdrawal_request_time", 0)),
        )


class ArbiterRegistry:
    """SQLite-backed arbiter registry."""

    def __init__(self, db_path: str = ":memory:", payment_backend=None, authority: str = "",
                 clock=None, min_stake: int = MIN_ARBITER_STAKE,
                 withdrawal_delay: int = STAKE_WITHDRAWAL_DELAY):
        from server.payments import StubBackend
        self.payment = payment_backend or StubBackend()
        self.authority = authority
        self.clock = clock or system_clock
        self.min_stake = min_stake
        self.withdrawal_delay = withdrawal_delay
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS arbiters (
                account TEXT PRIMARY KEY,
                active INTEGER NOT NULL DEFAULT 0,
                stake TEXT NOT NULL DEFAULT '0',
                disputes_resolved INTEGER NOT NULL DEFAULT 0,
                successful_resolutions INTEGER NOT NULL DEFAULT 0,
                registered_at INTEGER NOT NULL DEFAULT 0,
                withdrawal_request_time INTEGER NOT NULL DEFAULT 0
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS registry_meta (
                key TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            )
        """)
        self.db.execute(
            "INSERT OR IGNORE INTO registry_meta (key, value) VALUES ('active_count', 0)"
        )
        self.db.commit()

    def _query(self, account: str) -> ArbiterRecord:
        row = self.db.execute("SELECT * FROM arbiters WHERE account = ?", (account,)).fetchone()
        if not row:
            return ArbiterRecord()
        return ArbiterRecord.from_dict(dict(row))

    def _count(self) -> int:
        row = self.db.execute("SELECT value FROM registry_meta WHERE key = 'active_count'").fetchone()
        return row["value"]

    def _save(self, account: str, record: ArbiterRecord, count: int):
        with self.db:
            self.db.execute(
                "INSERT INTO arbiters (account, active, stake, disputes_resolved, "
                "successful_resolutions, registered_at, withdrawal_request_time) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) ON CONFLICT(account) DO UPDATE SET "
                "active = excluded.active, stake = excluded.stake, "
                "disputes_resolved = excluded.disputes_resolved, "
                "successful_resolutions = excluded.successful_resolutions, "
                "registered_at = excluded.registered_at, "
                "withdrawal_request_time = excluded.withdrawal_request_time",
                (account, int(record.active), str(record.stake), record.disputes_resolved,
                 record.successful_resolutions, record.registered_at,
                 record.withdrawal_request_time),
            )
            self.db.execute(
                "UPDATE registry_meta SET value = ? WHERE key = 'active_count'", (count,)
            )

    # --- Arbiter operations ---

    def register_arbiter(self, caller: str, value: int) -> dict:
        """Bond value and become an active arbiter."""
        if not is_valid_account(caller):
            raise ValidationError("invalid arbiter identity", code="invalid_account")
        if not is_amount(value) or value < self.min_stake:
            raise ValidationError(
                f"stake must be at least {self.min_stake}", code="insufficient_stake")
        with self._lock:
            record = self._query(caller)
            if record.active:
                raise StateError("arbiter is already active", code="already_active")
            if record.stake > 0:
                raise StateError("previous stake must be withdrawn before re-registering",
                                 code="stake_locked")
            try:
                self.payment.collect(REGISTRY_REFERENCE, caller, value)
            except Exception as e:
                log.warning("collecting stake from %s failed: %s", caller, e)
                raise PaymentError(f"collecting stake failed: {e}") from e
            record = ArbiterRecord(active=True, stake=value, registered_at=self.clock())
            self._save(caller, record, self._count() + 1)
            log.info("arbiter %s registered with stake %d", caller, value)
            return record.to_dict()

    def request_withdrawal(self, caller: str) -> dict:
        """Leave the assignable pool now; stake unlocks after the delay."""
        with self._lock:
            record = self._query(caller)
            if not record.active:
                raise StateError("arbiter is not active", code="not_active")
            if record.withdrawal_requested():
                raise StateError("withdrawal already requested", code="already_requested")
            record.active = False
            record.withdrawal_request_time = self.clock()
            self._save(caller, record, self._count())
            log.info("arbiter %s requested stake withdrawal", caller)
            return record.to_dict()

    def withdraw_stake(self, caller: str) -> dict:
        """Pay out the whole stake once the cooling-off delay has elapsed."""
        with self._lock:
            record = self._query(caller)
            if not record.withdrawal_requested():
                raise StateError("no withdrawal requested", code="not_requested")
            if self.clock() < record.withdrawal_request_time + self.withdrawal_delay:
                raise TimingError("cooling-off delay has not elapsed", code="cooling_off")
            if record.stake <= 0:
                raise ResourceError("nothing to withdraw")
            amount = record.stake
            record.stake = 0
            self._save(caller, record, self._count() - 1)
            try:
                tx = self.payment.send(REGISTRY_REFERENCE, caller, amount)
            except Exception as e:
                # credit the stake back onto the current record; a record that
                # already holds stake is counted as bonded
                current = self._query(caller)
                bonded = self._count() + (0 if current.stake > 0 else 1)
                current.stake += amount
                self._save(caller, current, bonded)
                log.warning("stake payout of %d to %s failed, rolled back: %s", amount, caller, e)
                raise PaymentError(f"transfer failed: {e}") from e
            log.info("arbiter %s withdrew stake %d (%s)", caller, amount, tx)
            return {"account": caller, "amount": amount, "tx": tx}

    # --- Administrative ---

    def update_reputation(self, caller: str, arbiter: str, successful: bool) -> dict:
        """Record one resolved dispute for an arbiter."""
        if not self.authority or caller != self.authority:
            raise AuthorizationError("caller is not the administrative authority")
        with self._lock:
            record = self._query(arbiter)
            if not record.is_registered():
                raise NotFoundError(f"arbiter {arbiter} is not registered")
            record.disputes_resolved += 1
            if successful:
                record.successful_resolutions += 1
            self._save(arbiter, record, self._count())
            log.info("arbiter %s reputation: %d/%d", arbiter,
                     record.successful_resolutions, record.disputes_resolved)
            return record.to_dict()

    # --- Reads ---

    def get_arbiter(self, account: str) -> ArbiterRecord:
        return self._query(account)

    def is_arbiter_active(self, account: str) -> bool:
        return self._query(account).active

    @contextmanager
    def active_arbiter(self, account: str):
        """Keep account active for the duration of the block.

        Raises ValidationError if it is not active now. Registry writes wait
        until the block exits.
        """
        with self._lock:
            if not self._query(account).active:
                raise ValidationError("arbiter is not an active registered arbiter",
                                      code="arbiter_inactive")
            yield

    def get_reputation_score(self, account: str) -> int:
        return self._query(account).reputation_score()

    def active_arbiter_count(self) -> int:
        return self._count()

    def close(self):
        self.db.close()
