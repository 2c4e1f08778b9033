"""Shared constants and interfaces for the escrowd protocol.

All modules import from here to avoid circular dependencies.
"""

import time
from enum import Enum

# --- Protocol Constants ---

PROTOCOL_VERSION = 1

# Platform fee: basis points of the deal amount, integer floor division
FEE_BPS = 50
BPS_DENOMINATOR = 10_000

# Arbiter bonding
MIN_ARBITER_STAKE = 1_000_000  # smallest currency units
STAKE_WITHDRAWAL_DELAY = 7 * 86_400  # seconds

# Identities: "esc_" + 64 hex chars (Ed25519 public key)
ACCOUNT_PREFIX = "esc_"
ZERO_ACCOUNT = ACCOUNT_PREFIX + "0" * 64

# Payment backend references
REGISTRY_REFERENCE = "registry"


def deal_reference(deal_id: str) -> str:
    return f"deal:{deal_id}"


def system_clock() -> int:
    """Default logical clock: whole seconds since the epoch."""
    return int(time.time())


def is_valid_account(account) -> bool:
    """True for a well-formed, non-zero account identity."""
    if not isinstance(account, str) or not account.startswith(ACCOUNT_PREFIX):
        return False
    hex_part = account[len(ACCOUNT_PREFIX):]
    if len(hex_part) != 64:
        return False
    try:
        bytes.fromhex(hex_part)
    except ValueError:
        return False
    return account != ZERO_ACCOUNT


def is_amount(value) -> bool:
    """Unsigned integer amount. bool is rejected even though it subclasses int."""
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


# --- State Machine ---

class DealState(Enum):
    CREATED = "created"
    FUNDED = "funded"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Valid state transitions: current_state -> set of valid next states
STATE_TRANSITIONS = {
    DealState.CREATED: {DealState.FUNDED, DealState.CANCELLED},
    DealState.FUNDED: {DealState.DELIVERED, DealState.REFUNDED},
    DealState.DELIVERED: {DealState.COMPLETED, DealState.DISPUTED},
    DealState.DISPUTED: {DealState.RESOLVED},
    DealState.COMPLETED: set(),
    DealState.RESOLVED: set(),
    DealState.CANCELLED: set(),
    DealState.REFUNDED: set(),
}

TERMINAL_STATES = {s for s, nxt in STATE_TRANSITIONS.items() if not nxt}

# States in which the deposit is still held for the deal itself
ESCROWED_STATES = {DealState.FUNDED, DealState.DELIVERED, DealState.DISPUTED}


# --- Notification types ---

class EventType(Enum):
    CREATED = "Created"
    FUNDED = "Funded"
    DELIVERED = "Delivered"
    COMPLETED = "Completed"
    DISPUTED = "Disputed"
    DISPUTE_RESOLVED = "DisputeResolved"
    CANCELLED = "Cancelled"
    REFUND_CLAIMED = "RefundClaimed"
    WITHDRAWAL_READY = "WithdrawalReady"
    WITHDRAWN = "Withdrawn"
    WITHDRAWAL_REVERTED = "WithdrawalReverted"
    PAUSED = "Paused"
    UNPAUSED = "Unpaused"


# --- Errors ---

class EscrowError(ValueError):
    """Base class. Every failure leaves persisted state unchanged."""

    code = "escrow_error"
    http_status = 400

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class AuthorizationError(EscrowError):
    code = "unauthorized"
    http_status = 403


class StateError(EscrowError):
    code = "invalid_state"
    http_status = 409


class ValidationError(EscrowError):
    code = "invalid_input"
    http_status = 400


class TimingError(EscrowError):
    code = "bad_timing"
    http_status = 409


class ResourceError(EscrowError):
    code = "no_funds"
    http_status = 409


class PaymentError(ResourceError):
    code = "payment_failed"
    http_status = 502


class NotFoundError(EscrowError):
    code = "not_found"
    http_status = 404
