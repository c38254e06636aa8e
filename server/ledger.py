"""Escrow deal ledger.

A collection of independent two-party deals. The buyer locks an amount at
creation; the locked amount later goes to the seller (release) or back to
the buyer (refund). Expiry only narrows who may refund.

State lives in SQLite, one row per deal keyed by a dense sequential id.
Rows are never deleted. Every operation runs under one lock so the status
and deadline read for a decision are the ones the write is gated on.

Value movement goes through a PaymentBackend (stub or simulated wallets).
If a payout fails the deal is left untouched and the error propagates.
"""

import logging
import math
import sqlite3
import threading
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable

from errors import ErrorCode, InvalidArgument, NotFound, PaymentFailed
from protocol import (
    MAX_TIMEOUT_SECONDS, DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT,
    DealStatus, Operation, Payee, resolve_transition, role_of, window_at,
)
from server.payments import (
    MAX_AMOUNT, RAW_DECIMALS, PaymentBackend, StubBackend, format_amount, from_raw, to_raw,
)

logger = logging.getLogger(__name__)

# Event names, keyed by the status a transition lands in
EVENT_NAMES = {
    DealStatus.FUNDED: "funded",
    DealStatus.RELEASED: "released",
    DealStatus.REFUNDED: "refunded",
    DealStatus.EXPIRED: "expired",
}


@dataclass
class Deal:
    id: int
    buyer: str
    seller: str
    amount: Decimal
    deadline: float
    status: DealStatus
    created_at: float = 0.0
    updated_at: float = 0.0
    locked: Decimal = Decimal("0")
    paid_to: str | None = None
    payment_ref: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "buyer": self.buyer,
            "seller": self.seller,
            "amount": format_amount(self.amount),
            "deadline": self.deadline,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "locked": format_amount(self.locked),
            "paid_to": self.paid_to,
            "payment_ref": self.payment_ref,
        }


@dataclass
class DealEvent:
    seq: int
    event: str
    deal_id: int
    status: DealStatus
    buyer: str
    seller: str
    amount: Decimal
    paid_to: str | None
    timestamp: float

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "event": self.event,
            "deal_id": self.deal_id,
            "status": self.status.value,
            "buyer": self.buyer,
            "seller": self.seller,
            "amount": format_amount(self.amount),
            "paid_to": self.paid_to,
            "timestamp": self.timestamp,
        }


def _parse_amount(amount) -> Decimal:
    if isinstance(amount, bool):
        raise InvalidArgument(f"Invalid amount: {amount!r}", ErrorCode.INVALID_AMOUNT)
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise InvalidArgument(f"Invalid amount: {amount!r}", ErrorCode.INVALID_AMOUNT)
    if not value.is_finite() or value <= 0:
        raise InvalidArgument("Amount must be > 0", ErrorCode.INVALID_AMOUNT)
    if value > MAX_AMOUNT:
        raise InvalidArgument(f"Amount exceeds maximum ({format_amount(MAX_AMOUNT)})",
                              ErrorCode.INVALID_AMOUNT)
    if from_raw(to_raw(value)) != value:
        raise InvalidArgument(f"Amount has more than {RAW_DECIMALS} decimal places",
                              ErrorCode.INVALID_AMOUNT)
    return value


def _parse_timeout(timeout_seconds) -> float:
    if isinstance(timeout_seconds, bool) or not isinstance(timeout_seconds, (int, float)):
        raise InvalidArgument(f"Invalid timeout: {timeout_seconds!r}", ErrorCode.INVALID_TIMEOUT)
    # Bound first: huge ints cannot be converted to float
    if timeout_seconds > MAX_TIMEOUT_SECONDS:
        raise InvalidArgument(f"Timeout exceeds maximum ({MAX_TIMEOUT_SECONDS}s)",
                              ErrorCode.INVALID_TIMEOUT)
    if not math.isfinite(timeout_seconds) or timeout_seconds < 0:
        raise InvalidArgument("Timeout must be a non-negative number of seconds",
                              ErrorCode.INVALID_TIMEOUT)
    return float(timeout_seconds)


def _check_identity(value, role: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"Invalid {role}", ErrorCode.INVALID_ADDRESS)
    return value


def _storable_id(deal_id) -> bool:
    # SQLite INTEGER is a signed 64-bit value
    return (not isinstance(deal_id, bool) and isinstance(deal_id, int)
            and 0 <= deal_id < 2**63)


class DealLedger:
    """SQLite-backed deal ledger with pluggable payment backend."""

    def __init__(self, db_path: str = ":memory:", payment_backend: PaymentBackend | None = None,
                 clock: Callable[[], float] | None = None):
        self.payment = payment_backend or StubBackend()
        self.clock = clock or time.time
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._listeners: list[Callable[[DealEvent], None]] = []
        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS deals (
                id INTEGER PRIMARY KEY,
                buyer TEXT NOT NULL,
                seller TEXT NOT NULL,
                amount TEXT NOT NULL,
                deadline REAL NOT NULL,
                status TEXT NOT NULL,
                locked TEXT NOT NULL,
                custody_account TEXT NOT NULL DEFAULT '',
                paid_to TEXT,
                payment_ref TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS deal_events (
                seq INTEGER PRIMARY KEY,
                event TEXT NOT NULL,
                deal_id INTEGER NOT NULL,
                status TEXT NOT NULL,
                paid_to TEXT,
                timestamp REAL NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_deals_status ON deals(status)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_events_deal ON deal_events(deal_id)")
        self.db.commit()

    # --- Notifications ---

    def subscribe(self, callback: Callable[[DealEvent], None]):
        """Register a listener called with every committed DealEvent."""
        self._listeners.append(callback)

    def unsubscribe(self, callback: Callable[[DealEvent], None]):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _record_event(self, deal: Deal, now: float) -> DealEvent:
        """Append an event row. Caller commits."""
        seq = self.db.execute("SELECT COUNT(*) FROM deal_events").fetchone()[0]
        event = DealEvent(
            seq=seq,
            event=EVENT_NAMES[deal.status],
            deal_id=deal.id,
            status=deal.status,
            buyer=deal.buyer,
            seller=deal.seller,
            amount=deal.amount,
            paid_to=deal.paid_to,
            timestamp=now,
        )
        self.db.execute(
            "INSERT INTO deal_events (seq, event, deal_id, status, paid_to, timestamp) VALUES (?, ?, ?, ?, ?, ?)",
            (seq, event.event, deal.id, deal.status.value, deal.paid_to, now),
        )
        return event

    def _notify(self, event: DealEvent):
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logger.exception("Deal listener failed on %s for deal %d", event.event, event.deal_id)

    # --- Operations ---

    def create(self, buyer: str, seller: str, timeout_seconds: float, amount) -> int:
        """Record a new Funded deal and lock `amount` in custody. Returns the deal id."""
        buyer = _check_identity(buyer, "buyer")
        seller = _check_identity(seller, "seller")
        if seller == buyer:
            raise InvalidArgument("Seller must differ from buyer", ErrorCode.INVALID_ADDRESS)
        value = _parse_amount(amount)
        timeout = _parse_timeout(timeout_seconds)

        with self._lock:
            now = self.clock()
            deal_id = self._count()
            custody = self.payment.create_custody_account(deal_id)
            try:
                ref = self.payment.collect(deal_id, buyer, format_amount(value))
            except Exception as e:
                logger.warning("Collect failed for deal %d from %s: %s", deal_id, buyer, e)
                raise InvalidArgument(f"Could not lock funds: {e}")

            deal = Deal(
                id=deal_id, buyer=buyer, seller=seller, amount=value,
                deadline=now + timeout, status=DealStatus.FUNDED,
                created_at=now, updated_at=now, locked=value, payment_ref=ref,
            )
            self.db.execute(
                "INSERT INTO deals (id, buyer, seller, amount, deadline, status, locked, custody_account, payment_ref, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (deal_id, buyer, seller, str(value), deal.deadline, deal.status.value,
                 str(value), custody, ref, now, now),
            )
            event = self._record_event(deal, now)
            self.db.commit()

        logger.info("Deal %d funded: %s -> %s, %s, deadline %.0f",
                    deal_id, buyer, seller, format_amount(value), deal.deadline)
        self._notify(event)
        return deal_id

    def release_to_seller(self, deal_id: int, caller: str) -> Deal:
        """Buyer releases the locked amount to the seller."""
        return self._transition(deal_id, caller, Operation.RELEASE)

    def refund_to_buyer(self, deal_id: int, caller: str) -> Deal:
        """Return the locked amount to the buyer.

        Before the deadline either party may cancel. Once the deadline has
        passed (expired or not), only the buyer may claim the refund.
        """
        return self._transition(deal_id, caller, Operation.REFUND)

    def expire(self, deal_id: int, caller: str) -> Deal:
        """Record that a Funded deal's deadline has passed. Moves no funds."""
        return self._transition(deal_id, caller, Operation.EXPIRE)

    def _transition(self, deal_id: int, caller: str, operation: Operation) -> Deal:
        with self._lock:
            now = self.clock()
            deal = self._get(deal_id)
            if deal is None:
                raise NotFound(f"No deal {deal_id}")

            rule = resolve_transition(
                deal.status, operation,
                role_of(deal.buyer, deal.seller, caller),
                window_at(deal.deadline, now),
            )

            paid_to = None
            ref = deal.payment_ref
            locked = deal.locked
            if rule.payee is not None:
                paid_to = deal.seller if rule.payee == Payee.SELLER else deal.buyer
                try:
                    ref = self.payment.send(deal.id, paid_to, format_amount(deal.locked))
                except Exception as e:
                    logger.warning("Payout failed for deal %d (%s to %s): %s",
                                   deal.id, operation.value, paid_to, e)
                    raise PaymentFailed(f"Payout to {paid_to} failed: {e}")
                locked = Decimal("0")

            cursor = self.db.execute(
                "UPDATE deals SET status = ?, locked = ?, paid_to = ?, payment_ref = ?, updated_at = ? "
                "WHERE id = ? AND status = ?",
                (rule.next_status.value, str(locked), paid_to, ref, now, deal.id, deal.status.value),
            )
            if cursor.rowcount != 1:
                # Unreachable while every writer holds self._lock
                self.db.rollback()
                raise RuntimeError(f"Concurrent modification of deal {deal.id}")

            deal.status = rule.next_status
            deal.locked = locked
            deal.paid_to = paid_to
            deal.payment_ref = ref
            deal.updated_at = now
            event = self._record_event(deal, now)
            self.db.commit()

        logger.info("Deal %d %s by %s%s", deal.id, event.event, caller,
                    f", paid {format_amount(deal.amount)} to {paid_to}" if paid_to else "")
        self._notify(event)
        return deal

    # --- Reads ---

    def get_deal(self, deal_id: int) -> Deal:
        with self._lock:
            deal = self._get(deal_id)
        if deal is None:
            raise NotFound(f"No deal {deal_id}")
        return deal

    def deal_count(self) -> int:
        with self._lock:
            return self._count()

    def list_deals(self, party: str | None = None, status: str | None = None,
                   limit: int = DEFAULT_LIST_LIMIT) -> list[Deal]:
        """Newest first, optionally filtered by party (either side) and status."""
        clauses, params = [], []
        if party:
            clauses.append("(buyer = ? OR seller = ?)")
            params += [party, party]
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, min(limit, MAX_LIST_LIMIT)))
        with self._lock:
            rows = self.db.execute(
                f"SELECT * FROM deals {where} ORDER BY id DESC LIMIT ?", params,
            ).fetchall()
        return [self._row_to_deal(r) for r in rows]

    def events(self, deal_id: int | None = None) -> list[DealEvent]:
        """The notification log, oldest first."""
        sql = ("SELECT e.*, d.buyer, d.seller, d.amount FROM deal_events e "
               "JOIN deals d ON d.id = e.deal_id")
        params: tuple = ()
        if deal_id is not None:
            if not _storable_id(deal_id):
                return []
            sql += " WHERE e.deal_id = ?"
            params = (deal_id,)
        with self._lock:
            rows = self.db.execute(sql + " ORDER BY e.seq", params).fetchall()
        return [
            DealEvent(
                seq=r["seq"], event=r["event"], deal_id=r["deal_id"],
                status=DealStatus(r["status"]), buyer=r["buyer"], seller=r["seller"],
                amount=Decimal(r["amount"]), paid_to=r["paid_to"], timestamp=r["timestamp"],
            )
            for r in rows
        ]

    # Callers hold self._lock

    def _count(self) -> int:
        return self.db.execute("SELECT COUNT(*) FROM deals").fetchone()[0]

    def _get(self, deal_id) -> Deal | None:
        if not _storable_id(deal_id):
            return None
        row = self.db.execute("SELECT * FROM deals WHERE id = ?", (deal_id,)).fetchone()
        if not row:
            return None
        return self._row_to_deal(row)

    def _row_to_deal(self, row) -> Deal:
        return Deal(
            id=row["id"],
            buyer=row["buyer"],
            seller=row["seller"],
            amount=Decimal(row["amount"]),
            deadline=row["deadline"],
            status=DealStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            locked=Decimal(row["locked"]),
            paid_to=row["paid_to"],
            payment_ref=row["payment_ref"],
        )

    def close(self):
        self.db.close()
