"""Shared constants and the deal state machine for the escrow ledger.

All modules import from here to avoid circular dependencies.
"""

import os
from dataclasses import dataclass
from enum import Enum

from errors import InvalidState, Unauthorized

# --- Protocol Constants ---

PROTOCOL_VERSION = 1

DEFAULT_TIMEOUT_SECONDS = 3600
MAX_TIMEOUT_SECONDS = 365 * 24 * 3600

# Party identity: "esc_" + 64 hex chars of an Ed25519 public key
PARTY_ID_PREFIX = "esc_"

# Signed request freshness (seconds)
REQUEST_MAX_AGE = int(os.environ.get("ESCROW_REPLAY_TTL", "300"))
REQUEST_MAX_SKEW = 30

MAX_LIST_LIMIT = 200
DEFAULT_LIST_LIMIT = 50


# --- State Machine ---

class DealStatus(Enum):
    CREATED = "created"  # implicit, never stored
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"
    EXPIRED = "expired"


TERMINAL_STATUSES = {DealStatus.RELEASED, DealStatus.REFUNDED}


class Operation(Enum):
    RELEASE = "release"
    REFUND = "refund"
    EXPIRE = "expire"


class Role(Enum):
    BUYER = "buyer"
    SELLER = "seller"
    OTHER = "other"


class Window(Enum):
    BEFORE_DEADLINE = "before_deadline"  # now < deadline
    PAST_DEADLINE = "past_deadline"      # now >= deadline


class Payee(Enum):
    SELLER = "seller"
    BUYER = "buyer"


@dataclass(frozen=True)
class Rule:
    next_status: DealStatus
    payee: Payee | None = None


# Who may invoke an operation at all, regardless of deal state
OPERATION_PARTIES = {
    Operation.RELEASE: {Role.BUYER},
    Operation.REFUND: {Role.BUYER, Role.SELLER},
    Operation.EXPIRE: {Role.BUYER, Role.SELLER},
}

# Rejection messages per operation when the caller is not a permitted party
_PARTY_ERRORS = {
    Operation.RELEASE: "Only buyer",
    Operation.REFUND: "Only party",
    Operation.EXPIRE: "Only party",
}

_BOTH_WINDOWS = (Window.BEFORE_DEADLINE, Window.PAST_DEADLINE)

# (status, operation, role, window) -> Rule
TRANSITIONS: dict[tuple[DealStatus, Operation, Role, Window], Rule] = {}

for _w in _BOTH_WINDOWS:
    TRANSITIONS[(DealStatus.FUNDED, Operation.RELEASE, Role.BUYER, _w)] = Rule(DealStatus.RELEASED, Payee.SELLER)
    # Expired implies the deadline passed; both windows listed so a clock skew cannot strand funds
    TRANSITIONS[(DealStatus.EXPIRED, Operation.REFUND, Role.BUYER, _w)] = Rule(DealStatus.REFUNDED, Payee.BUYER)

# Mutual cancellation before the deadline
TRANSITIONS[(DealStatus.FUNDED, Operation.REFUND, Role.BUYER, Window.BEFORE_DEADLINE)] = Rule(DealStatus.REFUNDED, Payee.BUYER)
TRANSITIONS[(DealStatus.FUNDED, Operation.REFUND, Role.SELLER, Window.BEFORE_DEADLINE)] = Rule(DealStatus.REFUNDED, Payee.BUYER)
# Deadline passed but expiry not recorded: buyer-only, same as after expire
TRANSITIONS[(DealStatus.FUNDED, Operation.REFUND, Role.BUYER, Window.PAST_DEADLINE)] = Rule(DealStatus.REFUNDED, Payee.BUYER)

TRANSITIONS[(DealStatus.FUNDED, Operation.EXPIRE, Role.BUYER, Window.PAST_DEADLINE)] = Rule(DealStatus.EXPIRED)
TRANSITIONS[(DealStatus.FUNDED, Operation.EXPIRE, Role.SELLER, Window.PAST_DEADLINE)] = Rule(DealStatus.EXPIRED)

del _w


def role_of(buyer: str, seller: str, caller: str) -> Role:
    """Map a caller identity onto its role in a deal."""
    if caller and caller == buyer:
        return Role.BUYER
    if caller and caller == seller:
        return Role.SELLER
    return Role.OTHER


def window_at(deadline: float, now: float) -> Window:
    if now < deadline:
        return Window.BEFORE_DEADLINE
    return Window.PAST_DEADLINE


def resolve_transition(status: DealStatus, operation: Operation, role: Role, window: Window) -> Rule:
    """Look up the rule for a transition attempt.

    Raises Unauthorized when the caller may not invoke the operation, or when
    another party could perform it from this state and window. Raises
    InvalidState when no party could.
    """
    if role not in OPERATION_PARTIES.get(operation, set()):
        raise Unauthorized(_PARTY_ERRORS.get(operation, "Not a party"))

    rule = TRANSITIONS.get((status, operation, role, window))
    if rule is not None:
        return rule

    allowed = [r for r in Role if (status, operation, r, window) in TRANSITIONS]
    if allowed:
        if allowed == [Role.BUYER] and status == DealStatus.EXPIRED:
            raise Unauthorized("Only buyer after expire")
        if allowed == [Role.BUYER]:
            raise Unauthorized("Only buyer after deadline")
        raise Unauthorized(f"Only {' or '.join(r.value for r in allowed)}")

    if operation == Operation.EXPIRE and status == DealStatus.FUNDED:
        raise InvalidState("Not expired yet")
    raise InvalidState(f"Cannot {operation.value} a {status.value} deal")
