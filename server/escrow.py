"""Deal custody for the escrowd platform.

A Deal holds one deposit between a payer and a payee, with an arbiter who
settles disputes. Settlement never pushes funds: every payout (including the
platform fee) is credited to a pending balance and pulled later through
withdraw(). DealManager persists deals in SQLite and moves funds through a
PaymentBackend.
"""

import json
import logging
import sqlite3
import threading
import uuid

from protocol import (
    BPS_DENOMINATOR, ESCROWED_STATES, FEE_BPS, STATE_TRANSITIONS, TERMINAL_STATES,
    AuthorizationError, DealState, EventType, NotFoundError, PaymentError,
    ResourceError, StateError, TimingError, ValidationError,
    deal_reference, is_amount, is_valid_account, system_clock,
)
from crypto import event_hash, hash_chain_init, verify_event_chain

log = logging.getLogger(__name__)


def compute_fee(amount: int) -> int:
    """Platform fee in basis points of amount, truncated."""
    return amount * FEE_BPS // BPS_DENOMINATOR


class Deal:
    """State machine for a single deal.

    Operations validate every guard before touching any field, so a raised
    error leaves the deal exactly as it was. Each operation returns the list
    of notification records it produced.
    """

    def __init__(self, deal_id: str, payer: str, payee: str, arbiter: str,
                 amount: int, deadline: int, description: str, created_at: int,
                 authority: str, fee_sink: str):
        self.deal_id = deal_id
        self.payer = payer
        self.payee = payee
        self.arbiter = arbiter
        self.amount = amount
        self.deadline = deadline
        self.description = description
        self.created_at = created_at
        self.authority = authority
        self.fee_sink = fee_sink
        self.state = DealState.CREATED
        self.paused = False
        self.disputed = False
        self.dispute_timestamp = 0
        self.dispute_reason = ""
        self.resolution = ""
        self.balance = 0
        self.pending_withdrawals: dict[str, int] = {}

    @classmethod
    def open(cls, deal_id: str, payer: str, payee: str, arbiter: str, amount: int,
             deadline: int, description: str, now: int, authority: str,
             fee_sink: str) -> "Deal":
        """Validate creation parameters and build a deal in CREATED."""
        for role, account in (("payer", payer), ("payee", payee), ("arbiter", arbiter),
                              ("authority", authority), ("fee_sink", fee_sink)):
            if not is_valid_account(account):
                raise ValidationError(f"invalid {role} identity", code="invalid_account")
        if payer == payee:
            raise ValidationError("payer and payee must differ", code="same_party")
        if arbiter in (payer, payee):
            raise ValidationError("arbiter must differ from payer and payee", code="same_party")
        if not is_amount(amount) or amount == 0:
            raise ValidationError("amount must be a positive integer", code="invalid_amount")
        if not isinstance(deadline, int) or isinstance(deadline, bool) or deadline <= now:
            raise ValidationError("deadline must be in the future", code="invalid_deadline")
        if not isinstance(description, str) or not description.strip():
            raise ValidationError("description is required", code="empty_text")
        return cls(deal_id, payer, payee, arbiter, amount, deadline, description,
                   now, authority, fee_sink)

    # --- Role predicates ---

    def is_payer(self, caller: str) -> bool:
        return caller == self.payer

    def is_payee(self, caller: str) -> bool:
        return caller == self.payee

    def is_arbiter(self, caller: str) -> bool:
        return caller == self.arbiter

    def is_participant(self, caller: str) -> bool:
        return self.is_payer(caller) or self.is_payee(caller)

    def is_authority(self, caller: str) -> bool:
        return caller == self.authority

    # --- State predicates ---

    def in_state(self, *states: DealState) -> bool:
        return self.state in states

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def escrowed(self) -> int:
        """Deposit still held for the deal itself (not yet owed to anyone)."""
        return self.amount if self.state in ESCROWED_STATES else 0

    # --- Guards ---

    def _require_role(self, allowed: bool, role: str):
        if not allowed:
            raise AuthorizationError(f"caller is not the {role} of this deal")

    def _require_state(self, *states: DealState):
        if not self.in_state(*states):
            wanted = " or ".join(s.value for s in states)
            raise StateError(f"deal is {self.state.value}, expected {wanted}")

    def _require_not_paused(self):
        if self.paused:
            raise StateError("deal is paused", code="paused")

    def _transition(self, new_state: DealState):
        if new_state not in STATE_TRANSITIONS[self.state]:
            raise StateError(f"invalid transition: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def _credit(self, account: str, amount: int, now: int) -> dict:
        self.pending_withdrawals[account] = self.pending_withdrawals.get(account, 0) + amount
        return _event(EventType.WITHDRAWAL_READY, now, account=account, amount=amount)

    # --- Operations ---

    def fund(self, caller: str, value: int, now: int) -> list[dict]:
        self._require_not_paused()
        self._require_role(self.is_payer(caller), "payer")
        self._require_state(DealState.CREATED)
        if not is_amount(value) or value != self.amount:
            raise ValidationError(
                f"attached value must equal the deal amount ({self.amount})", code="wrong_value")
        if now > self.deadline:
            raise TimingError("deadline has passed", code="deadline_passed")
        self._transition(DealState.FUNDED)
        self.balance += value
        return [_event(EventType.FUNDED, now, amount=value)]

    def mark_delivered(self, caller: str, now: int) -> list[dict]:
        self._require_not_paused()
        self._require_role(self.is_payee(caller), "payee")
        self._require_state(DealState.FUNDED)
        if now > self.deadline:
            raise TimingError("deadline has passed", code="deadline_passed")
        self._transition(DealState.DELIVERED)
        return [_event(EventType.DELIVERED, now)]

    def confirm_delivery(self, caller: str, now: int) -> list[dict]:
        self._require_not_paused()
        self._require_role(self.is_payer(caller), "payer")
        self._require_state(DealState.DELIVERED)
        fee = compute_fee(self.amount)
        payee_amount = self.amount - fee
        self._transition(DealState.COMPLETED)
        events = [_event(EventType.COMPLETED, now, payee_amount=payee_amount, fee=fee)]
        events.append(self._credit(self.payee, payee_amount, now))
        if fee:
            events.append(self._credit(self.fee_sink, fee, now))
        return events

    def raise_dispute(self, caller: str, reason: str, now: int) -> list[dict]:
        self._require_not_paused()
        self._require_role(self.is_payer(caller), "payer")
        self._require_state(DealState.DELIVERED)
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("dispute reason is required", code="empty_text")
        self._transition(DealState.DISPUTED)
        self.disputed = True
        self.dispute_timestamp = now
        self.dispute_reason = reason
        return [_event(EventType.DISPUTED, now, reason=reason)]

    def resolve_dispute(self, caller: str, buyer_amount: int, seller_amount: int,
                        resolution: str, now: int) -> list[dict]:
        self._require_not_paused()
        self._require_role(self.is_arbiter(caller), "arbiter")
        self._require_state(DealState.DISPUTED)
        if not isinstance(resolution, str) or not resolution.strip():
            raise ValidationError("resolution is required", code="empty_text")
        if not is_amount(buyer_amount) or not is_amount(seller_amount):
            raise ValidationError("split amounts must be non-negative integers", code="invalid_amount")
        fee = compute_fee(self.amount)
        available = self.amount - fee
        if buyer_amount + seller_amount != available:
            raise ValidationError(
                f"split must total {available}, got {buyer_amount + seller_amount}",
                code="invalid_split")
        self._transition(DealState.RESOLVED)
        self.resolution = resolution
        events = [_event(EventType.DISPUTE_RESOLVED, now, buyer_amount=buyer_amount,
                         seller_amount=seller_amount, fee=fee, resolution=resolution)]
        if buyer_amount:
            events.append(self._credit(self.payer, buyer_amount, now))
        if seller_amount:
            events.append(self._credit(self.payee, seller_amount, now))
        if fee:
            events.append(self._credit(self.fee_sink, fee, now))
        return events

    def cancel(self, caller: str, now: int) -> list[dict]:
        self._require_not_paused()
        self._require_role(self.is_participant(caller), "payer or payee")
        if self.in_state(DealState.CREATED):
            self._transition(DealState.CANCELLED)
            return [_event(EventType.CANCELLED, now)]
        if self.in_state(DealState.FUNDED):
            if now <= self.deadline:
                raise TimingError("deadline has not passed yet", code="deadline_pending")
            self._transition(DealState.REFUNDED)
            return [
                _event(EventType.REFUND_CLAIMED, now, amount=self.amount),
                self._credit(self.payer, self.amount, now),
            ]
        raise StateError(f"deal is {self.state.value}, cannot cancel")

    def withdraw(self, caller: str, now: int) -> tuple[int, list[dict]]:
        """Zero the caller's pending balance. Returns (amount, events).

        The caller must perform the outward transfer only after this
        change has been persisted.
        """
        self._require_not_paused()
        amount = self.pending_withdrawals.get(caller, 0)
        if amount <= 0:
            raise ResourceError("nothing to withdraw")
        if amount > self.balance:
            raise ResourceError("custody balance is short of the pending amount", code="underflow")
        self.pending_withdrawals[caller] = 0
        self.balance -= amount
        return amount, [_event(EventType.WITHDRAWN, now, account=caller, amount=amount)]

    def revert_withdrawal(self, account: str, amount: int, now: int) -> list[dict]:
        """Put back a payout whose transfer failed. Allowed while paused."""
        self.pending_withdrawals[account] = self.pending(account) + amount
        self.balance += amount
        return [_event(EventType.WITHDRAWAL_REVERTED, now, account=account, amount=amount)]

    def pause(self, caller: str, now: int) -> list[dict]:
        self._require_role(self.is_authority(caller), "administrative authority")
        if self.paused:
            raise StateError("deal is already paused", code="paused")
        self.paused = True
        return [_event(EventType.PAUSED, now)]

    def unpause(self, caller: str, now: int) -> list[dict]:
        self._require_role(self.is_authority(caller), "administrative authority")
        if not self.paused:
            raise StateError("deal is not paused", code="not_paused")
        self.paused = False
        return [_event(EventType.UNPAUSED, now)]

    # --- Reads ---

    def pending(self, account: str) -> int:
        return self.pending_withdrawals.get(account, 0)

    def to_dict(self) -> dict:
        return {
            "deal_id": self.deal_id,
            "payer": self.payer,
            "payee": self.payee,
            "arbiter": self.arbiter,
            "amount": self.amount,
            "deadline": self.deadline,
            "description": self.description,
            "created_at": self.created_at,
            "state": self.state.value,
            "paused": self.paused,
            "disputed": self.disputed,
            "dispute_timestamp": self.dispute_timestamp,
            "dispute_reason": self.dispute_reason,
            "resolution": self.resolution,
            "balance": self.balance,
            "pending_withdrawals": {k: v for k, v in self.pending_withdrawals.items() if v},
            "authority": self.authority,
            "fee_sink": self.fee_sink,
        }


def _event(kind: EventType, now: int, **data) -> dict:
    return {"event": kind.value, "timestamp": now, "data": data}


class DealManager:
    """SQLite-backed deal storage with pluggable payment backend."""

    def __init__(self, db_path: str = ":memory:", payment_backend=None, clock=None):
        from server.payments import StubBackend
        self.payment = payment_backend or StubBackend()
        self.clock = clock or system_clock
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        # Reentrant: a backend calling back into withdraw() must hit the
        # zeroed balance, not deadlock.
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS deals (
                deal_id TEXT PRIMARY KEY,
                payer TEXT NOT NULL,
                payee TEXT NOT NULL,
                arbiter TEXT NOT NULL,
                amount TEXT NOT NULL,
                deadline INTEGER NOT NULL,
                description TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                authority TEXT NOT NULL,
                fee_sink TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'created',
                paused INTEGER DEFAULT 0,
                disputed INTEGER DEFAULT 0,
                dispute_timestamp INTEGER DEFAULT 0,
                dispute_reason TEXT DEFAULT '',
                resolution TEXT DEFAULT '',
                balance TEXT NOT NULL DEFAULT '0',
                pending TEXT NOT NULL DEFAULT '{}',
                events TEXT NOT NULL DEFAULT '[]',
                chain_head TEXT NOT NULL DEFAULT ''
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_deal_state ON deals(state)")
        self.db.commit()

    # --- Row mapping ---

    def _row_to_deal(self, row) -> Deal:
        deal = Deal(
            row["deal_id"], row["payer"], row["payee"], row["arbiter"],
            int(row["amount"]), row["deadline"], row["description"], row["created_at"],
            row["authority"], row["fee_sink"],
        )
        deal.state = DealState(row["state"])
        deal.paused = bool(row["paused"])
        deal.disputed = bool(row["disputed"])
        deal.dispute_timestamp = row["dispute_timestamp"]
        deal.dispute_reason = row["dispute_reason"]
        deal.resolution = row["resolution"]
        deal.balance = int(row["balance"])
        deal.pending_withdrawals = {k: int(v) for k, v in json.loads(row["pending"]).items()}
        return deal

    def _load(self, deal_id: str) -> tuple[Deal, list[dict], str]:
        row = self.db.execute("SELECT * FROM deals WHERE deal_id = ?", (deal_id,)).fetchone()
        if not row:
            raise NotFoundError(f"no deal {deal_id}")
        return self._row_to_deal(row), json.loads(row["events"]), row["chain_head"]

    def _append_events(self, events: list[dict], chain_head: str, new: list[dict]) -> str:
        for entry in new:
            entry = {"seq": len(events), "prev_hash": chain_head, **entry}
            events.append(entry)
            chain_head = event_hash(entry)
        return chain_head

    def _save(self, deal: Deal, events: list[dict], chain_head: str):
        pending = {k: str(v) for k, v in deal.pending_withdrawals.items()}
        with self.db:
            self.db.execute(
                "UPDATE deals SET state = ?, paused = ?, disputed = ?, dispute_timestamp = ?, "
                "dispute_reason = ?, resolution = ?, balance = ?, pending = ?, events = ?, "
                "chain_head = ? WHERE deal_id = ?",
                (deal.state.value, int(deal.paused), int(deal.disputed), deal.dispute_timestamp,
                 deal.dispute_reason, deal.resolution, str(deal.balance), json.dumps(pending),
                 json.dumps(events), chain_head, deal.deal_id),
            )

    def _apply(self, deal_id: str, operation) -> dict:
        """Load, run operation(deal, now) -> events, persist in one transaction."""
        with self._lock:
            deal, events, head = self._load(deal_id)
            new = operation(deal, self.clock())
            head = self._append_events(events, head, new)
            self._save(deal, events, head)
            log.info("deal %s: %s -> state=%s", deal_id,
                     ",".join(e["event"] for e in new), deal.state.value)
            return deal.to_dict()

    # --- Creation ---

    def create(self, payer: str, payee: str, arbiter: str, amount: int, deadline: int,
               description: str, authority: str, fee_sink: str) -> str:
        """Validate and store a new deal. Returns deal ID."""
        with self._lock:
            now = self.clock()
            deal_id = uuid.uuid4().hex[:16]
            deal = Deal.open(deal_id, payer, payee, arbiter, amount, deadline, description,
                             now, authority, fee_sink)
            events: list[dict] = []
            head = self._append_events(events, hash_chain_init(), [
                _event(EventType.CREATED, now, payer=payer, payee=payee, arbiter=arbiter,
                       amount=amount, deadline=deadline),
            ])
            with self.db:
                self.db.execute(
                    "INSERT INTO deals (deal_id, payer, payee, arbiter, amount, deadline, "
                    "description, created_at, authority, fee_sink, events, chain_head) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (deal_id, payer, payee, arbiter, str(amount), deadline, description, now,
                     authority, fee_sink, json.dumps(events), head),
                )
            log.info("deal %s created: amount=%d deadline=%d", deal_id, amount, deadline)
            return deal_id

    # --- Operations ---

    def fund(self, deal_id: str, caller: str, value: int) -> dict:
        """Payer attaches value. Collection failure persists nothing."""
        def op(deal, now):
            events = deal.fund(caller, value, now)
            try:
                self.payment.collect(deal_reference(deal_id), caller, value)
            except Exception as e:
                log.warning("deal %s: collecting %d from payer failed: %s", deal_id, value, e)
                raise PaymentError(f"collecting deposit failed: {e}") from e
            return events
        return self._apply(deal_id, op)

    def mark_delivered(self, deal_id: str, caller: str) -> dict:
        return self._apply(deal_id, lambda deal, now: deal.mark_delivered(caller, now))

    def confirm_delivery(self, deal_id: str, caller: str) -> dict:
        return self._apply(deal_id, lambda deal, now: deal.confirm_delivery(caller, now))

    def raise_dispute(self, deal_id: str, caller: str, reason: str) -> dict:
        return self._apply(deal_id, lambda deal, now: deal.raise_dispute(caller, reason, now))

    def resolve_dispute(self, deal_id: str, caller: str, buyer_amount: int,
                        seller_amount: int, resolution: str) -> dict:
        return self._apply(deal_id, lambda deal, now: deal.resolve_dispute(
            caller, buyer_amount, seller_amount, resolution, now))

    def cancel(self, deal_id: str, caller: str) -> dict:
        return self._apply(deal_id, lambda deal, now: deal.cancel(caller, now))

    def pause(self, deal_id: str, caller: str) -> dict:
        return self._apply(deal_id, lambda deal, now: deal.pause(caller, now))

    def unpause(self, deal_id: str, caller: str) -> dict:
        return self._apply(deal_id, lambda deal, now: deal.unpause(caller, now))

    def withdraw(self, deal_id: str, caller: str) -> dict:
        """Pay out the caller's whole pending balance.

        The zeroed balance is committed before the transfer. If the transfer
        fails only this payout is credited back, on top of whatever the row
        holds by then (a nested withdrawal may already have been paid).
        """
        with self._lock:
            deal, events, head = self._load(deal_id)
            amount, new = deal.withdraw(caller, self.clock())
            head = self._append_events(events, head, new)
            self._save(deal, events, head)
            try:
                tx = self.payment.send(deal_reference(deal_id), caller, amount)
            except Exception as e:
                deal, events, head = self._load(deal_id)
                head = self._append_events(
                    events, head, deal.revert_withdrawal(caller, amount, self.clock()))
                self._save(deal, events, head)
                log.warning("deal %s: payout of %d to %s failed, rolled back: %s",
                            deal_id, amount, caller, e)
                raise PaymentError(f"transfer failed: {e}") from e
            log.info("deal %s: paid %d to %s (%s)", deal_id, amount, caller, tx)
            return {"deal_id": deal_id, "account": caller, "amount": amount, "tx": tx}

    # --- Reads ---

    def load(self, deal_id: str) -> Deal:
        return self._load(deal_id)[0]

    def get_details(self, deal_id: str) -> dict:
        return self.load(deal_id).to_dict()

    def get(self, deal_id: str) -> dict | None:
        """Get deal details, or None for an unknown deal."""
        try:
            return self.get_details(deal_id)
        except NotFoundError:
            return None

    def get_state(self, deal_id: str) -> DealState:
        return self.load(deal_id).state

    def pending(self, deal_id: str, account: str) -> int:
        return self.load(deal_id).pending(account)

    def events(self, deal_id: str) -> list[dict]:
        return self._load(deal_id)[1]

    def verify_events(self, deal_id: str) -> tuple[bool, str]:
        _, events, head = self._load(deal_id)
        ok, err = verify_event_chain(events)
        if ok and events and event_hash(events[-1]) != head:
            return False, "chain head does not match last event"
        return ok, err

    def custody(self, deal_id: str) -> dict:
        """Compare what the deal owes with what the backend holds for it."""
        balance = self.load(deal_id).balance
        held = self.payment.get_balance(deal_reference(deal_id))
        if held < balance:
            log.warning("deal %s: backend holds %d, deal owes %d", deal_id, held, balance)
        return {"deal_id": deal_id, "balance": balance, "held": held, "ok": held >= balance}

    def list_ids(self, state: DealState | None = None) -> list[str]:
        if state is None:
            rows = self.db.execute("SELECT deal_id FROM deals ORDER BY created_at, rowid").fetchall()
        else:
            rows = self.db.execute(
                "SELECT deal_id FROM deals WHERE state = ? ORDER BY created_at, rowid",
                (state.value,),
            ).fetchall()
        return [r["deal_id"] for r in rows]

    def close(self):
        self.db.close()
