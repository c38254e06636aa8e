import sys
import os
import json

# Ensure repo root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from crypto import generate_ed25519_keypair, pubkey_to_party_id, sign_request_ed25519


class FakeClock:
    """Manually advanced clock for deadline tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


# Pre-generated test keypairs
_BUYER_PRIV, _BUYER_PUB = generate_ed25519_keypair()
_SELLER_PRIV, _SELLER_PUB = generate_ed25519_keypair()
_OTHER_PRIV, _OTHER_PUB = generate_ed25519_keypair()

BUYER = pubkey_to_party_id(_BUYER_PUB)
SELLER = pubkey_to_party_id(_SELLER_PUB)
OTHER = pubkey_to_party_id(_OTHER_PUB)

BUYER_PRIV = _BUYER_PRIV
SELLER_PRIV = _SELLER_PRIV
OTHER_PRIV = _OTHER_PRIV

KEYS = {BUYER: BUYER_PRIV, SELLER: SELLER_PRIV, OTHER: OTHER_PRIV}

# Monotonic counter so identical requests still get distinct signatures
_nonce_counter = 0


def signed_post(client, path, data, party, privkey_bytes=None):
    """Make an Ed25519-signed POST request for tests.

    Embeds a nonce in the body so repeated identical calls in the same second
    do not trip the replay guard.
    """
    global _nonce_counter
    _nonce_counter += 1
    body = json.dumps({**data, "_nonce": _nonce_counter})
    privkey = privkey_bytes or KEYS[party]
    pub_hex = party[4:] if party.startswith("esc_") else party
    auth_headers = sign_request_ed25519(privkey, pub_hex, "POST", path, body)
    return client.post(path, content=body, headers={
        "Content-Type": "application/json",
        **auth_headers,
    })
