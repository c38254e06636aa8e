"""Payment backends for the escrow ledger.

The ledger never moves value itself: it asks a PaymentBackend to pull the
buyer's funds into a per-deal custody account at creation, and to pay the
custody balance out on release or refund.

StubBackend: no-op, records calls for assertions.
SimBackend:  SQLite-backed simulated wallets with real balances. Enforces
             insufficient-balance errors and rejects zero-amount sends.
"""

import hashlib
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from decimal import Context, Decimal, localcontext

# 1 unit = 10^30 raw (XNO precision)
RAW_DECIMALS = 30
RAW_PER_UNIT = 10**RAW_DECIMALS
# Largest balance a Nano-style account can hold
MAX_RAW = 2**128 - 1

# Wide enough that no amount up to MAX_RAW is ever rounded
_AMOUNT_CONTEXT = Context(prec=80)


def to_raw(amount: str | Decimal) -> int:
    """Convert a decimal amount to raw (integer)."""
    with localcontext(_AMOUNT_CONTEXT):
        result = Decimal(amount) * RAW_PER_UNIT
        return int(result.to_integral_value())


def from_raw(raw: int | str) -> Decimal:
    """Convert raw to a decimal amount."""
    with localcontext(_AMOUNT_CONTEXT):
        return Decimal(str(raw)) / RAW_PER_UNIT


MAX_AMOUNT = from_raw(MAX_RAW)


def format_amount(amount: str | Decimal) -> str:
    """Canonical string form: no exponent, no trailing zeros ('1.0' -> '1')."""
    with localcontext(_AMOUNT_CONTEXT):
        d = Decimal(amount).normalize()
        if d == d.to_integral_value():
            return str(d.quantize(Decimal(1)))
        return format(d, "f")


class PaymentBackend(ABC):
    """Abstract payment backend. Injected into DealLedger."""

    @abstractmethod
    def create_custody_account(self, deal_id: int) -> str:
        """Create/derive the custody account for a deal. Returns its address."""
        ...

    @abstractmethod
    def collect(self, deal_id: int, from_account: str, amount: str) -> str:
        """Move `amount` from the payer into the deal's custody account.
        Returns a transaction reference.
        """
        ...

    @abstractmethod
    def send(self, deal_id: int, to_account: str, amount: str) -> str:
        """Send `amount` from the deal's custody account to `to_account`.
        Returns a transaction reference.
        """
        ...

    @abstractmethod
    def get_balance(self, deal_id: int) -> str:
        """Custody balance of a deal."""
        ...


class StubBackend(PaymentBackend):
    """No-op backend for testing. All operations succeed immediately."""

    def __init__(self):
        self.accounts: dict[int, str] = {}
        self.collects: list[dict] = []
        self.sends: list[dict] = []  # log of sends for test assertions

    def create_custody_account(self, deal_id: int) -> str:
        account = f"stub_custody_{deal_id}"
        self.accounts[deal_id] = account
        return account

    def collect(self, deal_id: int, from_account: str, amount: str) -> str:
        self.collects.append({"deal_id": deal_id, "from": from_account, "amount": amount})
        return f"stub_collect_{len(self.collects)}"

    def send(self, deal_id: int, to_account: str, amount: str) -> str:
        self.sends.append({"deal_id": deal_id, "to": to_account, "amount": amount})
        return f"stub_hash_{len(self.sends)}"

    def get_balance(self, deal_id: int) -> str:
        collected = sum(Decimal(c["amount"]) for c in self.collects if c["deal_id"] == deal_id)
        sent = sum(Decimal(s["amount"]) for s in self.sends if s["deal_id"] == deal_id)
        return format_amount(collected - sent)


class SimBackend(PaymentBackend):
    """Simulated payment backend for development/integration testing.

    Tracks real balances in SQLite. Enforces:
    - No zero-amount sends
    - Insufficient balance errors (payer on collect, custody on send)
    - Full transaction log with deterministic hashes

    Usage:
        sim = SimBackend()
        sim.fund("esc_...buyer", "10.0")        # credit an external account
        ledger = DealLedger(payment_backend=sim)
        ledger.create(buyer, seller, 60, "1.0")  # buyer -> custody
        sim.get_account_balance(seller)
    """

    def __init__(self, seed: str | None = None, db_path: str = ":memory:"):
        self._seed_bytes = bytes.fromhex(seed or "aa" * 32)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_accounts (
                address TEXT PRIMARY KEY,
                balance_raw TEXT NOT NULL DEFAULT '0'
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                hash TEXT NOT NULL UNIQUE,
                from_account TEXT NOT NULL,
                to_account TEXT NOT NULL,
                amount_raw TEXT NOT NULL,
                amount TEXT NOT NULL,
                deal_id INTEGER,
                tx_type TEXT NOT NULL,
                timestamp REAL NOT NULL
            )
        """)
        # Deal -> custody account mapping
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_custody (
                deal_id INTEGER PRIMARY KEY,
                account TEXT NOT NULL
            )
        """)
        self._db.commit()

    def _get_balance_raw(self, address: str) -> int:
        row = self._db.execute(
            "SELECT balance_raw FROM sim_accounts WHERE address = ?",
            (address,),
        ).fetchone()
        return int(row["balance_raw"]) if row else 0

    def _set_balance_raw(self, address: str, raw: int):
        """Set balance in raw, creating account if needed."""
        self._db.execute(
            "INSERT INTO sim_accounts (address, balance_raw) VALUES (?, ?) "
            "ON CONFLICT(address) DO UPDATE SET balance_raw = ?",
            (address, str(raw), str(raw)),
        )

    def _record_tx(self, from_acc: str, to_acc: str, raw: int,
                   amount: str, deal_id: int | None, tx_type: str) -> str:
        """Record a transaction and return its hash."""
        count = self._db.execute("SELECT COUNT(*) FROM sim_transactions").fetchone()[0]
        tx_hash = hashlib.blake2b(
            f"{count + 1}:{from_acc}:{to_acc}:{raw}".encode(),
            digest_size=32,
        ).hexdigest().upper()
        self._db.execute(
            "INSERT INTO sim_transactions (hash, from_account, to_account, "
            "amount_raw, amount, deal_id, tx_type, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (tx_hash, from_acc, to_acc, str(raw), amount, deal_id, tx_type, time.time()),
        )
        return tx_hash

    def _derive_account(self, deal_id: int) -> str:
        digest = hashlib.blake2b(
            self._seed_bytes + deal_id.to_bytes(8, "big"), digest_size=20,
        ).hexdigest()
        return f"sim_custody_{digest}"

    def _custody_account(self, deal_id: int) -> str:
        row = self._db.execute(
            "SELECT account FROM sim_custody WHERE deal_id = ?",
            (deal_id,),
        ).fetchone()
        if not row:
            raise ValueError(f"No custody account for deal {deal_id}")
        return row["account"]

    def _transfer(self, from_acc: str, to_acc: str, amount: str,
                  deal_id: int, tx_type: str) -> str:
        raw = to_raw(amount)
        if raw <= 0:
            raise ValueError(f"Refusing {tx_type} of non-positive amount {amount}")
        balance = self._get_balance_raw(from_acc)
        if balance < raw:
            raise ValueError(
                f"Insufficient balance: have {format_amount(from_raw(balance))}, "
                f"need {amount} (deal {deal_id})"
            )
        self._set_balance_raw(from_acc, balance - raw)
        self._set_balance_raw(to_acc, self._get_balance_raw(to_acc) + raw)
        return self._record_tx(from_acc, to_acc, raw, amount, deal_id, tx_type)

    # --- PaymentBackend interface ---

    def create_custody_account(self, deal_id: int) -> str:
        with self._lock:
            address = self._derive_account(deal_id)
            self._db.execute(
                "INSERT OR IGNORE INTO sim_custody (deal_id, account) VALUES (?, ?)",
                (deal_id, address),
            )
            self._db.commit()
            return address

    def collect(self, deal_id: int, from_account: str, amount: str) -> str:
        with self._lock:
            try:
                tx_hash = self._transfer(from_account, self._custody_account(deal_id),
                                         amount, deal_id, "collect")
            except ValueError:
                self._db.rollback()
                raise
            self._db.commit()
            return tx_hash

    def send(self, deal_id: int, to_account: str, amount: str) -> str:
        with self._lock:
            try:
                tx_hash = self._transfer(self._custody_account(deal_id), to_account,
                                         amount, deal_id, "send")
            except ValueError:
                self._db.rollback()
                raise
            self._db.commit()
            return tx_hash

    def get_balance(self, deal_id: int) -> str:
        with self._lock:
            row = self._db.execute(
                "SELECT account FROM sim_custody WHERE deal_id = ?",
                (deal_id,),
            ).fetchone()
            if not row:
                return "0"
            return format_amount(from_raw(self._get_balance_raw(row["account"])))

    # --- SimBackend-only methods (for test setup) ---

    def fund(self, address: str, amount: str):
        """Credit an account with funds (simulates an external deposit)."""
        raw = to_raw(amount)
        with self._lock:
            balance = self._get_balance_raw(address)
            self._set_balance_raw(address, balance + raw)
            self._record_tx("faucet", address, raw, amount, None, "fund")
            self._db.commit()

    def get_account_balance(self, address: str) -> str:
        """Get balance of any address (not just custody)."""
        with self._lock:
            return format_amount(from_raw(self._get_balance_raw(address)))

    def get_transactions(self, deal_id: int | None = None) -> list[dict]:
        """Get transaction log, optionally filtered by deal."""
        with self._lock:
            if deal_id is not None:
                rows = self._db.execute(
                    "SELECT * FROM sim_transactions WHERE deal_id = ? ORDER BY id",
                    (deal_id,),
                ).fetchall()
            else:
                rows = self._db.execute(
                    "SELECT * FROM sim_transactions ORDER BY id"
                ).fetchall()
            return [dict(r) for r in rows]

    def close(self):
        self._db.close()
