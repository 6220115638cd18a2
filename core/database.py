"""
NexusPay Database Layer
========================
SQLite persistence for escrow records, their audit trail, and the user
directory used by reconciliation.

- Prepared statements throughout
- WAL journal mode so webhook writes and retry-cycle reads don't block
- escrow_events is append-only (no UPDATE/DELETE by convention)
- Fiat amounts stored as INTEGER minor units; crypto amounts as exact
  decimal TEXT so they round-trip unchanged
"""

import sqlite3
import logging
from contextlib import contextmanager
from typing import Optional

from config import CONFIG

logger = logging.getLogger("nexuspay.database")

SCHEMA = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS users (
    user_id          TEXT PRIMARY KEY,
    phone            TEXT,
    name             TEXT DEFAULT '',
    wallet_address   TEXT,
    private_key_ref  TEXT,                    -- AES-GCM ciphertext, never plaintext
    role             TEXT NOT NULL DEFAULT 'user',
    created_at       REAL NOT NULL
);

-- Escrow state machine
-- States: pending -> completed | failed | reserved | error ; failed -> exhausted
CREATE TABLE IF NOT EXISTS escrow_transactions (
    transaction_id     TEXT PRIMARY KEY,
    user_id            TEXT NOT NULL,
    direction          TEXT NOT NULL,
    fiat_amount_minor  INTEGER NOT NULL,
    crypto_amount      TEXT NOT NULL,
    status             TEXT NOT NULL DEFAULT 'pending',
    gateway_reference  TEXT,
    transfer_hash      TEXT,
    retry_count        INTEGER NOT NULL DEFAULT 0,
    last_retry_at      REAL,
    created_at         REAL NOT NULL,
    completed_at       REAL,
    metadata           TEXT DEFAULT '{}',
    version            INTEGER NOT NULL DEFAULT 0,
    lease_expires_at   REAL
);

CREATE TABLE IF NOT EXISTS escrow_events (
    event_id        TEXT PRIMARY KEY,
    transaction_id  TEXT NOT NULL,
    from_status     TEXT,
    to_status       TEXT NOT NULL,
    detail          TEXT DEFAULT '{}',
    created_at      REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_escrow_scan      ON escrow_transactions(direction, status, created_at);
CREATE INDEX IF NOT EXISTS idx_escrow_status    ON escrow_transactions(status, created_at);
CREATE INDEX IF NOT EXISTS idx_escrow_user      ON escrow_transactions(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_escrow_gateway   ON escrow_transactions(gateway_reference);
CREATE INDEX IF NOT EXISTS idx_events_tx        ON escrow_events(transaction_id, created_at);
"""

# SQLite has no ADD COLUMN IF NOT EXISTS, so these run try/ignore against
# databases created before the columns existed.
_MIGRATIONS = [
    "ALTER TABLE escrow_transactions ADD COLUMN version INTEGER NOT NULL DEFAULT 0",
    "ALTER TABLE escrow_transactions ADD COLUMN lease_expires_at REAL",
]


def _resolve(db_path: Optional[str]) -> str:
    return db_path or CONFIG["db_path"]


@contextmanager
def get_db(db_path: Optional[str] = None):
    conn = sqlite3.connect(_resolve(db_path), timeout=15, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA synchronous=NORMAL")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: Optional[str] = None):
    """Create tables and indexes. Safe to call on every startup."""
    with get_db(db_path) as conn:
        conn.executescript(SCHEMA)
    _run_migrations(db_path)
    logger.info(f"Database ready: {_resolve(db_path)}")


def _run_migrations(db_path: Optional[str] = None):
    conn = sqlite3.connect(_resolve(db_path), timeout=15)
    try:
        for stmt in _MIGRATIONS:
            try:
                conn.execute(stmt)
                conn.commit()
            except sqlite3.OperationalError:
                # Column already exists
                pass
    finally:
        conn.close()
