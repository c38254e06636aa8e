#!/usr/bin/env python3
"""Escrow deal server.

Configuration from environment variables:
  ESCROW_DB       SQLite path for the ledger (default escrow.db)
  ESCROW_HOST     bind address (default 127.0.0.1)
  ESCROW_PORT     HTTP port (default 8000)
  ESCROW_BACKEND  'sim' (simulated wallets) or 'stub' (default sim)
  ESCROW_SIM_DB   SQLite path for simulated wallets (default escrow_sim.db)
  ESCROW_LOG_LEVEL  logging level (default INFO)
"""

import os, sys, logging
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn
from server.app import create_app
from server.ledger import DealLedger
from server.payments import SimBackend, StubBackend

DB_PATH = os.environ.get("ESCROW_DB", "escrow.db")
HOST = os.environ.get("ESCROW_HOST", "127.0.0.1")
PORT = int(os.environ.get("ESCROW_PORT", "8000"))
BACKEND = os.environ.get("ESCROW_BACKEND", "sim")
SIM_DB = os.environ.get("ESCROW_SIM_DB", "escrow_sim.db")


def build_backend(name: str):
    if name == "sim":
        return SimBackend(db_path=SIM_DB)
    if name == "stub":
        return StubBackend()
    raise ValueError(f"Unknown ESCROW_BACKEND: {name!r} (expected 'sim' or 'stub')")


def main():
    logging.basicConfig(
        level=os.environ.get("ESCROW_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        backend = build_backend(BACKEND)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    ledger = DealLedger(DB_PATH, payment_backend=backend)
    app = create_app(ledger=ledger)

    print(f"[server] ledger={DB_PATH} backend={BACKEND} deals={ledger.deal_count()}")
    print(f"[server] listening on http://{HOST}:{PORT}")
    uvicorn.run(app, host=HOST, port=PORT, log_level="info")


if __name__ == "__main__":
    main()
