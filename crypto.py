"""Party identity and request signing for the escrow service.

Provides:
- Ed25519 identity (keypair generation, signing, verification)
- Party ids: 'esc_<64hex>' <-> 32-byte public key
- Signed API requests with replay protection

Dependencies: os, re, time, cryptography
"""

import os
import re
import time as _time

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives import serialization

from protocol import PARTY_ID_PREFIX, REQUEST_MAX_AGE, REQUEST_MAX_SKEW

_HEX64 = re.compile(r"^[0-9a-f]{64}$")

# Request signing headers
HEADER_TIMESTAMP = "X-Escrow-Timestamp"
HEADER_SIGNATURE = "X-Escrow-Signature"
HEADER_PUBKEY = "X-Escrow-Pubkey"


# ---------------------------------------------------------------------------
# Ed25519 identity
# ---------------------------------------------------------------------------

def generate_ed25519_keypair() -> tuple[bytes, bytes]:
    """Generate a new Ed25519 keypair. Returns (privkey_bytes, pubkey_bytes).
    Both are 32 bytes raw."""
    privkey = Ed25519PrivateKey.generate()
    priv_bytes = privkey.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    pub_bytes = privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )
    return priv_bytes, pub_bytes


def load_ed25519_key(path: str) -> bytes:
    """Load a 32-byte raw Ed25519 private key from file."""
    with open(path, "rb") as f:
        data = f.read()
    if len(data) != 32:
        raise ValueError(f"Expected 32-byte Ed25519 key, got {len(data)} bytes")
    return data


def save_ed25519_key(path: str, key: bytes) -> None:
    """Save a 32-byte raw Ed25519 private key to file (mode 0600)."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, key)
    finally:
        os.close(fd)


def ed25519_privkey_to_pubkey(privkey_bytes: bytes) -> bytes:
    """Derive the 32-byte public key from a 32-byte private key."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    return privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )


def ed25519_sign(privkey_bytes: bytes, data: bytes) -> str:
    """Sign data with Ed25519 private key. Returns 128-char hex signature."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    return privkey.sign(data).hex()


def ed25519_verify(pubkey_bytes: bytes, data: bytes, sig_hex: str) -> bool:
    """Verify Ed25519 signature. Returns True if valid."""
    try:
        pubkey = Ed25519PublicKey.from_public_bytes(pubkey_bytes)
        pubkey.verify(bytes.fromhex(sig_hex), data)
        return True
    except (InvalidSignature, ValueError):
        return False


# ---------------------------------------------------------------------------
# Party identity: pubkey <-> party id
# ---------------------------------------------------------------------------

def pubkey_to_party_id(pubkey_bytes: bytes) -> str:
    """Convert 32-byte Ed25519 pubkey to a party id: 'esc_<64hex>'."""
    return PARTY_ID_PREFIX + pubkey_bytes.hex()


def party_id_to_pubkey(party_id: str) -> bytes:
    """Convert 'esc_<64hex>' party id to 32-byte pubkey."""
    if not party_id.startswith(PARTY_ID_PREFIX):
        raise ValueError(f"Invalid party id: {party_id}")
    hex_part = party_id[len(PARTY_ID_PREFIX):]
    if not _HEX64.match(hex_part):
        raise ValueError(f"Invalid party id length or encoding: {party_id}")
    return bytes.fromhex(hex_part)


def is_party_id(value: str) -> bool:
    return (
        isinstance(value, str)
        and value.startswith(PARTY_ID_PREFIX)
        and bool(_HEX64.match(value[len(PARTY_ID_PREFIX):]))
    )


def party_id_to_hex(party_id: str) -> str:
    """Raw hex pubkey for a party id (or raw hex passthrough)."""
    if party_id.startswith(PARTY_ID_PREFIX):
        return party_id[len(PARTY_ID_PREFIX):]
    return party_id


# ---------------------------------------------------------------------------
# Ed25519 request signing
# ---------------------------------------------------------------------------

class ReplayGuard:
    """Track seen signatures to prevent replay attacks. TTL matches REQUEST_MAX_AGE."""

    def __init__(self, ttl: int = REQUEST_MAX_AGE):
        self._seen: dict[str, float] = {}  # sig_hex -> expiry_timestamp
        self._ttl = ttl
        self._check_count = 0

    def check_and_record(self, sig_hex: str) -> bool:
        """Return False if sig was already seen, True if new (and record it)."""
        self._check_count += 1
        if self._check_count % 100 == 0:
            self._prune()

        now = _time.time()
        if sig_hex in self._seen and now < self._seen[sig_hex]:
            return False
        self._seen[sig_hex] = now + self._ttl
        return True

    def _prune(self):
        now = _time.time()
        self._seen = {k: v for k, v in self._seen.items() if v > now}


def _request_payload(method: str, path: str, timestamp: str, body: str) -> bytes:
    return f"{method}\n{path}\n{timestamp}\n{body}".encode("utf-8")


def sign_request_ed25519(
    privkey_bytes: bytes,
    pubkey_hex: str,
    method: str,
    path: str,
    body: str = "",
    timestamp: float | None = None,
) -> dict:
    """Sign an API request with Ed25519. Returns headers to include.

    Signs: METHOD\\nPATH\\nTIMESTAMP\\nBODY
    """
    ts = str(int(_time.time() if timestamp is None else timestamp))
    sig = ed25519_sign(privkey_bytes, _request_payload(method, path, ts, body))
    return {
        HEADER_TIMESTAMP: ts,
        HEADER_SIGNATURE: sig,
        HEADER_PUBKEY: pubkey_hex,
    }


def verify_request_ed25519(
    method: str,
    path: str,
    body: str,
    timestamp: str,
    signature: str,
    pubkey_hex: str,
) -> tuple[bool, str]:
    """Verify an Ed25519-signed API request.

    Returns (ok, error_message).
    """
    try:
        ts = int(timestamp)
    except (ValueError, TypeError):
        return False, "invalid timestamp"

    age = _time.time() - ts
    if age < -REQUEST_MAX_SKEW:
        return False, f"request timestamp is in the future (skew={int(-age)}s)"
    if age > REQUEST_MAX_AGE:
        return False, f"request expired (age={int(age)}s, max={REQUEST_MAX_AGE}s)"

    try:
        pubkey_bytes = bytes.fromhex(pubkey_hex)
    except ValueError:
        return False, "invalid pubkey hex"
    if len(pubkey_bytes) != 32:
        return False, "invalid pubkey length"

    if not ed25519_verify(pubkey_bytes, _request_payload(method, path, timestamp, body), signature):
        return False, "invalid signature"

    return True, ""
