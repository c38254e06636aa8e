"""Tests for protocol.py -- the deal transition table."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from errors import InvalidState, Unauthorized
from protocol import (
    DealStatus, Operation, Payee, Role, Window, TRANSITIONS, TERMINAL_STATUSES,
    resolve_transition, role_of, window_at,
)

BEFORE = Window.BEFORE_DEADLINE
PAST = Window.PAST_DEADLINE


# --- helpers ---

def test_role_of():
    assert role_of("b", "s", "b") == Role.BUYER
    assert role_of("b", "s", "s") == Role.SELLER
    assert role_of("b", "s", "x") == Role.OTHER
    assert role_of("b", "s", "") == Role.OTHER


def test_window_boundary_is_past():
    assert window_at(100.0, 99.9) == BEFORE
    assert window_at(100.0, 100.0) == PAST
    assert window_at(100.0, 250.0) == PAST


# --- table shape ---

def test_no_rules_leave_terminal_states():
    for (status, _op, _role, _w) in TRANSITIONS:
        assert status not in TERMINAL_STATUSES


def test_no_rule_targets_created_or_funded():
    for rule in TRANSITIONS.values():
        assert rule.next_status not in (DealStatus.CREATED, DealStatus.FUNDED)


def test_only_release_and_refund_pay():
    for (_s, op, _r, _w), rule in TRANSITIONS.items():
        if op == Operation.EXPIRE:
            assert rule.payee is None
        else:
            assert rule.payee is not None


# --- release ---

@pytest.mark.parametrize("window", [BEFORE, PAST])
def test_release_by_buyer(window):
    rule = resolve_transition(DealStatus.FUNDED, Operation.RELEASE, Role.BUYER, window)
    assert rule.next_status == DealStatus.RELEASED
    assert rule.payee == Payee.SELLER


@pytest.mark.parametrize("status", list(DealStatus))
@pytest.mark.parametrize("role", [Role.SELLER, Role.OTHER])
def test_release_non_buyer_always_unauthorized(status, role):
    with pytest.raises(Unauthorized):
        resolve_transition(status, Operation.RELEASE, role, BEFORE)


@pytest.mark.parametrize("status", [DealStatus.RELEASED, DealStatus.REFUNDED, DealStatus.EXPIRED])
def test_release_from_non_funded_is_invalid_state(status):
    with pytest.raises(InvalidState):
        resolve_transition(status, Operation.RELEASE, Role.BUYER, PAST)


# --- refund ---

@pytest.mark.parametrize("role", [Role.BUYER, Role.SELLER])
def test_refund_before_deadline_either_party(role):
    rule = resolve_transition(DealStatus.FUNDED, Operation.REFUND, role, BEFORE)
    assert rule.next_status == DealStatus.REFUNDED
    assert rule.payee == Payee.BUYER


def test_refund_after_expire_buyer_only():
    rule = resolve_transition(DealStatus.EXPIRED, Operation.REFUND, Role.BUYER, PAST)
    assert rule.next_status == DealStatus.REFUNDED
    with pytest.raises(Unauthorized, match="Only buyer after expire"):
        resolve_transition(DealStatus.EXPIRED, Operation.REFUND, Role.SELLER, PAST)


def test_refund_past_deadline_unexpired_buyer_only():
    rule = resolve_transition(DealStatus.FUNDED, Operation.REFUND, Role.BUYER, PAST)
    assert rule.next_status == DealStatus.REFUNDED
    with pytest.raises(Unauthorized):
        resolve_transition(DealStatus.FUNDED, Operation.REFUND, Role.SELLER, PAST)


def test_refund_stranger_unauthorized():
    with pytest.raises(Unauthorized, match="Only party"):
        resolve_transition(DealStatus.FUNDED, Operation.REFUND, Role.OTHER, BEFORE)


@pytest.mark.parametrize("status", [DealStatus.RELEASED, DealStatus.REFUNDED])
@pytest.mark.parametrize("role", [Role.BUYER, Role.SELLER])
def test_refund_terminal_invalid_state(status, role):
    with pytest.raises(InvalidState):
        resolve_transition(status, Operation.REFUND, role, BEFORE)


# --- expire ---

@pytest.mark.parametrize("role", [Role.BUYER, Role.SELLER])
def test_expire_past_deadline(role):
    rule = resolve_transition(DealStatus.FUNDED, Operation.EXPIRE, role, PAST)
    assert rule.next_status == DealStatus.EXPIRED
    assert rule.payee is None


@pytest.mark.parametrize("role", [Role.BUYER, Role.SELLER])
def test_expire_before_deadline_invalid_state(role):
    with pytest.raises(InvalidState, match="Not expired yet"):
        resolve_transition(DealStatus.FUNDED, Operation.EXPIRE, role, BEFORE)


def test_expire_stranger_unauthorized_even_past_deadline():
    with pytest.raises(Unauthorized, match="Only party"):
        resolve_transition(DealStatus.FUNDED, Operation.EXPIRE, Role.OTHER, PAST)


@pytest.mark.parametrize("status", [DealStatus.EXPIRED, DealStatus.RELEASED, DealStatus.REFUNDED])
def test_expire_twice_or_terminal_invalid_state(status):
    with pytest.raises(InvalidState):
        resolve_transition(status, Operation.EXPIRE, Role.SELLER, PAST)
