"""Shared crypto utilities for the escrowd protocol.

Provides:
- Hash-chained deal event log (tamper-evident notifications)
- Ed25519 keys and esc_ account identities derived from them
- Signed HTTP requests and a replay guard for the API

Dependencies: hashlib, json, os, cryptography
"""

import hashlib
import json
import os
import time as _time
from collections.abc import Mapping

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives import serialization

from protocol import ACCOUNT_PREFIX


# ---------------------------------------------------------------------------
# SHA-256 hash chain -- for the deal event log
# ---------------------------------------------------------------------------

def sha256_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def hash_chain_init() -> str:
    """Return the genesis link: SHA-256 of the empty string."""
    return sha256_hash(b"")


def canonical_json(obj: dict) -> bytes:
    """Canonical JSON: sorted keys, no extra whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def event_hash(entry: dict) -> str:
    """SHA-256 of the canonical JSON of a full event entry."""
    return sha256_hash(canonical_json(entry))


def verify_event_chain(entries: list[dict]) -> tuple[bool, str]:
    """Verify prev_hash linkage and seq ordering of a deal's events.

    Returns (ok, error_message).
    """
    expected_prev = hash_chain_init()
    for i, entry in enumerate(entries):
        if entry.get("seq") != i:
            return False, f"Entry {i}: expected seq={i}, got seq={entry.get('seq')}"
        if entry.get("prev_hash") != expected_prev:
            return False, f"Entry {i}: prev_hash mismatch"
        expected_prev = event_hash(entry)
    return True, ""


# ---------------------------------------------------------------------------
# Ed25519 keys (raw 32-byte encodings throughout)
# ---------------------------------------------------------------------------

KEY_SIZE = 32


def _public_bytes(key: Ed25519PrivateKey) -> bytes:
    return key.public_key().public_bytes(
        serialization.Encoding.Raw, serialization.PublicFormat.Raw
    )


def generate_ed25519_keypair() -> tuple[bytes, bytes]:
    """New random identity. Returns (privkey_bytes, pubkey_bytes)."""
    key = Ed25519PrivateKey.generate()
    raw = key.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    return raw, _public_bytes(key)


def ed25519_privkey_to_pubkey(privkey_bytes: bytes) -> bytes:
    return _public_bytes(Ed25519PrivateKey.from_private_bytes(privkey_bytes))


def ed25519_sign(privkey_bytes: bytes, data: bytes) -> str:
    """Hex signature (128 chars) of data."""
    return Ed25519PrivateKey.from_private_bytes(privkey_bytes).sign(data).hex()


def ed25519_verify(pubkey_bytes: bytes, data: bytes, sig_hex: str) -> bool:
    """True iff sig_hex is a valid signature of data. Malformed input is False."""
    try:
        Ed25519PublicKey.from_public_bytes(pubkey_bytes).verify(bytes.fromhex(sig_hex), data)
    except (InvalidSignature, ValueError):
        return False
    return True


def load_ed25519_key(path: str) -> bytes:
    with open(path, "rb") as f:
        key = f.read()
    if len(key) != KEY_SIZE:
        raise ValueError(f"{path}: expected a {KEY_SIZE}-byte Ed25519 key, found {len(key)} bytes")
    return key


def save_ed25519_key(path: str, key: bytes) -> None:
    """Write a raw private key readable by the owner only.

    Missing parent directories are created with mode 0700.
    """
    if len(key) != KEY_SIZE:
        raise ValueError(f"refusing to save a {len(key)}-byte key")
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, mode=0o700, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(key)


# ---------------------------------------------------------------------------
# Accounts: esc_ + hex pubkey
# ---------------------------------------------------------------------------

def pubkey_to_account(pubkey_bytes: bytes) -> str:
    return ACCOUNT_PREFIX + pubkey_bytes.hex()


def account_to_pubkey(account: str) -> bytes:
    """Inverse of pubkey_to_account. Raises ValueError on a malformed account."""
    prefix, hex_part = account[:len(ACCOUNT_PREFIX)], account[len(ACCOUNT_PREFIX):]
    if prefix != ACCOUNT_PREFIX:
        raise ValueError(f"Invalid account identity: {account}")
    if len(hex_part) != 2 * KEY_SIZE:
        raise ValueError(f"Invalid account identity length: {account}")
    return bytes.fromhex(hex_part)


def privkey_to_account(privkey_bytes: bytes) -> str:
    return pubkey_to_account(ed25519_privkey_to_pubkey(privkey_bytes))


# ---------------------------------------------------------------------------
# Signed API requests
# ---------------------------------------------------------------------------

TIMESTAMP_HEADER = "X-Escrow-Timestamp"
SIGNATURE_HEADER = "X-Escrow-Signature"
PUBKEY_HEADER = "X-Escrow-Pubkey"

REQUEST_MAX_AGE = 300  # seconds
CLOCK_SKEW = 30  # tolerated client clock lead, seconds


def request_payload(method: str, path: str, timestamp: str, body: str) -> bytes:
    """The exact bytes a request signature covers."""
    return "\n".join((method.upper(), path, timestamp, body)).encode("utf-8")


def sign_request_ed25519(
    privkey_bytes: bytes,
    method: str,
    path: str,
    body: str = "",
    timestamp: float | None = None,
) -> dict:
    """Headers authenticating one request as the holder of privkey_bytes."""
    ts = str(int(_time.time() if timestamp is None else timestamp))
    return {
        TIMESTAMP_HEADER: ts,
        SIGNATURE_HEADER: ed25519_sign(privkey_bytes, request_payload(method, path, ts, body)),
        PUBKEY_HEADER: ed25519_privkey_to_pubkey(privkey_bytes).hex(),
    }


def verify_request_ed25519(
    method: str,
    path: str,
    body: str,
    headers: Mapping,
    now: float | None = None,
) -> tuple[bool, str]:
    """Check the signature headers of a request against its content.

    Returns (ok, error_message).
    """
    ts, sig, pubkey_hex = (headers.get(h, "") for h in
                           (TIMESTAMP_HEADER, SIGNATURE_HEADER, PUBKEY_HEADER))
    if not (ts and sig and pubkey_hex):
        return False, f"signed request required ({TIMESTAMP_HEADER}, {SIGNATURE_HEADER}, {PUBKEY_HEADER})"
    if not ts.isdigit():
        return False, "invalid timestamp"

    age = (_time.time() if now is None else now) - int(ts)
    if age > REQUEST_MAX_AGE:
        return False, f"request expired (age={int(age)}s, max={REQUEST_MAX_AGE}s)"
    if age < -CLOCK_SKEW:
        return False, f"request timestamp is in the future (skew={int(-age)}s)"

    try:
        pubkey = bytes.fromhex(pubkey_hex)
    except ValueError:
        return False, "invalid pubkey hex"
    if len(pubkey) != KEY_SIZE:
        return False, "invalid pubkey length"

    if not ed25519_verify(pubkey, request_payload(method, path, ts, body), sig):
        return False, "invalid signature"
    return True, ""


class ReplayGuard:
    """Remembers accepted signatures for as long as they could still verify."""

    PRUNE_AT = 10_000

    def __init__(self, ttl: int = REQUEST_MAX_AGE + CLOCK_SKEW, clock=_time.time):
        self.ttl = ttl
        self.clock = clock
        self._expiry: dict[str, float] = {}

    def check_and_record(self, sig_hex: str) -> bool:
        """False for a signature seen within ttl; otherwise record it and return True."""
        now = self.clock()
        if len(self._expiry) >= self.PRUNE_AT:
            self._expiry = {s: t for s, t in self._expiry.items() if t > now}
        if self._expiry.get(sig_hex, 0) > now:
            return False
        self._expiry[sig_hex] = now + self.ttl
        return True
