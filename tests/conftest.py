import sys
import os
import json

# Ensure the repo root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from crypto import generate_ed25519_keypair, pubkey_to_account, sign_request_ed25519


# Logical start time for deterministic clocks. Must be nonzero: 0 marks
# "never happened" for registration and withdrawal timestamps.
T0 = 1_700_000_000
DAY = 86_400


class FakeClock:
    """Injectable clock. Call to read, advance() to move forward."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int):
        self.now += seconds


# Monotonic counter to ensure unique bodies across rapid test calls, so
# Ed25519 signatures differ within the same second.
_nonce_counter = 0

# Pre-generated test keypairs
PAYER_PRIV, _PAYER_PUB = generate_ed25519_keypair()
PAYEE_PRIV, _PAYEE_PUB = generate_ed25519_keypair()
ARBITER_PRIV, _ARBITER_PUB = generate_ed25519_keypair()
AUTHORITY_PRIV, _AUTHORITY_PUB = generate_ed25519_keypair()
STRANGER_PRIV, _STRANGER_PUB = generate_ed25519_keypair()

PAYER = pubkey_to_account(_PAYER_PUB)
PAYEE = pubkey_to_account(_PAYEE_PUB)
ARBITER = pubkey_to_account(_ARBITER_PUB)
AUTHORITY = pubkey_to_account(_AUTHORITY_PUB)
STRANGER = pubkey_to_account(_STRANGER_PUB)

PRIVKEYS = {
    PAYER: PAYER_PRIV,
    PAYEE: PAYEE_PRIV,
    ARBITER: ARBITER_PRIV,
    AUTHORITY: AUTHORITY_PRIV,
    STRANGER: STRANGER_PRIV,
}


def signed_post(client, path, data, account, privkey_bytes=None):
    """Make an Ed25519-signed POST request as account.

    Uses a nonce embedded in the body to ensure unique signatures even when
    the same endpoint+body is called multiple times in the same second
    (prevents replay guard false positives in tests).
    """
    global _nonce_counter
    _nonce_counter += 1
    privkey_bytes = privkey_bytes or PRIVKEYS[account]
    body = json.dumps({"pubkey": account, **data, "_nonce": _nonce_counter})
    auth_headers = sign_request_ed25519(privkey_bytes, "POST", path, body)
    return client.post(path, content=body, headers={
        "Content-Type": "application/json",
        **auth_headers,
    })


def signed_headers(privkey_bytes, method, path, body=""):
    """Generate Ed25519 auth headers for a request."""
    return sign_request_ed25519(privkey_bytes, method, path, body)
