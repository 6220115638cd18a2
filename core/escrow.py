"""
NexusPay Escrow Records
========================
One EscrowRecord per fiat<->crypto conversion, its state machine, and the
SQLite-backed EscrowStore.

STATE MACHINE:
    pending   -> pending | completed | failed | reserved | error
    reserved  -> pending | completed | failed | error
    failed    -> pending | failed | exhausted | error
    exhausted -> failed (admin re-queue) | error
    error     -> completed (manual reconciliation)
    completed -> error

CONCURRENCY:
    Every row carries a `version`. save() only writes when the stored
    version still matches the one the caller loaded, so a webhook update
    and a retry-cycle update cannot silently clobber each other.
    claim_for_retry() additionally takes a time-bounded lease so two
    overlapping retry cycles never attempt the same record.
"""

import json
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Optional, List, Dict, Any

from core.database import get_db


# ── Enumerations ──────────────────────────────────────────────────────────────

FIAT_TO_CRYPTO    = "fiat_to_crypto"
CRYPTO_TO_FIAT    = "crypto_to_fiat"
CRYPTO_TO_PAYBILL = "crypto_to_paybill"
CRYPTO_TO_TILL    = "crypto_to_till"

DIRECTIONS = (FIAT_TO_CRYPTO, CRYPTO_TO_FIAT, CRYPTO_TO_PAYBILL, CRYPTO_TO_TILL)

PENDING   = "pending"
COMPLETED = "completed"
FAILED    = "failed"
RESERVED  = "reserved"
ERROR     = "error"
EXHAUSTED = "exhausted"

STATUSES = (PENDING, COMPLETED, FAILED, RESERVED, ERROR, EXHAUSTED)

ALLOWED_TRANSITIONS = {
    PENDING:   {PENDING, COMPLETED, FAILED, RESERVED, ERROR},
    RESERVED:  {PENDING, COMPLETED, FAILED, ERROR},
    FAILED:    {PENDING, FAILED, EXHAUSTED, ERROR},
    EXHAUSTED: {FAILED, ERROR},
    ERROR:     {COMPLETED},
    COMPLETED: {ERROR},
}


# ── Errors ────────────────────────────────────────────────────────────────────

class DuplicateKeyError(Exception):
    pass


class RecordNotFoundError(Exception):
    pass


class StaleRecordError(Exception):
    """The row changed since it was loaded; re-read before writing again."""


class InvalidTransitionError(Exception):
    pass


# ── Decimal helpers ───────────────────────────────────────────────────────────

def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Not a decimal amount: {value!r}")


def _to_minor(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _from_minor(minor: int) -> Decimal:
    return Decimal(minor) / Decimal("100")


# ── Record ────────────────────────────────────────────────────────────────────

@dataclass
class EscrowRecord:
    user_id: str
    direction: str
    fiat_amount: Decimal
    crypto_amount: Decimal
    transaction_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = PENDING
    gateway_reference: Optional[str] = None
    transfer_hash: Optional[str] = None
    retry_count: int = 0
    last_retry_at: Optional[float] = None
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    version: int = 0
    lease_expires_at: Optional[float] = None
    # status as last read from / written to the store; drives escrow_events
    stored_status: Optional[str] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if not self.user_id:
            raise ValueError("user_id is required")
        if self.direction not in DIRECTIONS:
            raise ValueError(f"Unknown direction: {self.direction}")
        if self.status not in STATUSES:
            raise ValueError(f"Unknown status: {self.status}")
        self.fiat_amount   = to_decimal(self.fiat_amount)
        self.crypto_amount = to_decimal(self.crypto_amount)

    @property
    def transfer_done(self) -> bool:
        return self.transfer_hash is not None

    def transition(self, new_status: str):
        if new_status not in ALLOWED_TRANSITIONS.get(self.status, set()):
            raise InvalidTransitionError(
                f"Illegal escrow transition for {self.transaction_id}: "
                f"{self.status} -> {new_status}"
            )
        self.status = new_status
        if new_status == COMPLETED and self.completed_at is None:
            self.completed_at = time.time()

    def set_transfer_hash(self, transfer_hash: str):
        """The value-transfer leg is recorded exactly once."""
        if not transfer_hash:
            raise ValueError("transfer_hash must be non-empty")
        if self.transfer_hash and self.transfer_hash != transfer_hash:
            raise ValueError(
                f"transfer_hash already set for {self.transaction_id}: {self.transfer_hash}"
            )
        self.transfer_hash = transfer_hash

    def to_dict(self) -> dict:
        return {
            "transaction_id":    self.transaction_id,
            "user_id":           self.user_id,
            "direction":         self.direction,
            "fiat_amount":       str(self.fiat_amount),
            "crypto_amount":     str(self.crypto_amount),
            "status":            self.status,
            "gateway_reference": self.gateway_reference,
            "transfer_hash":     self.transfer_hash,
            "retry_count":       self.retry_count,
            "last_retry_at":     self.last_retry_at,
            "created_at":        self.created_at,
            "completed_at":      self.completed_at,
            "metadata":          dict(self.metadata),
        }


def _from_row(row: sqlite3.Row) -> EscrowRecord:
    record = EscrowRecord(
        transaction_id=row["transaction_id"],
        user_id=row["user_id"],
        direction=row["direction"],
        fiat_amount=_from_minor(row["fiat_amount_minor"]),
        crypto_amount=Decimal(row["crypto_amount"]),
        status=row["status"],
        gateway_reference=row["gateway_reference"],
        transfer_hash=row["transfer_hash"],
        retry_count=row["retry_count"],
        last_retry_at=row["last_retry_at"],
        created_at=row["created_at"],
        completed_at=row["completed_at"],
        metadata=json.loads(row["metadata"] or "{}"),
        version=row["version"],
        lease_expires_at=row["lease_expires_at"],
    )
    record.stored_status = record.status
    return record


# ── Store ─────────────────────────────────────────────────────────────────────

class EscrowStore:
    """CRUD + candidate queries over escrow_transactions."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def create(self, record: EscrowRecord) -> EscrowRecord:
        try:
            with get_db(self.db_path) as conn:
                conn.execute(
                    """INSERT INTO escrow_transactions
                       (transaction_id, user_id, direction, fiat_amount_minor, crypto_amount,
                        status, gateway_reference, transfer_hash, retry_count, last_retry_at,
                        created_at, completed_at, metadata, version, lease_expires_at)
                       VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,0,NULL)""",
                    (record.transaction_id, record.user_id, record.direction,
                     _to_minor(record.fiat_amount), str(record.crypto_amount),
                     record.status, record.gateway_reference, record.transfer_hash,
                     record.retry_count, record.last_retry_at, record.created_at,
                     record.completed_at, json.dumps(record.metadata))
                )
                self._log_event(conn, record.transaction_id, None, record.status,
                                {"action": "created"})
        except sqlite3.IntegrityError:
            raise DuplicateKeyError(f"transaction_id already exists: {record.transaction_id}")
        record.version = 0
        record.stored_status = record.status
        return record

    def find_by_transaction_id(self, transaction_id: str) -> EscrowRecord:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM escrow_transactions WHERE transaction_id=?",
                (transaction_id,)
            ).fetchone()
        if not row:
            raise RecordNotFoundError(f"No escrow record: {transaction_id}")
        return _from_row(row)

    def find_by_gateway_reference(self, reference: str) -> Optional[EscrowRecord]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM escrow_transactions WHERE gateway_reference=?",
                (reference,)
            ).fetchone()
        return _from_row(row) if row else None

    def find_retry_candidates(self, direction: str, status: str,
                              age_window_minutes: float, max_retry_count: int,
                              now: Optional[float] = None) -> List[EscrowRecord]:
        """Records of `direction`/`status` younger than the window with budget left."""
        now    = time.time() if now is None else now
        cutoff = now - age_window_minutes * 60
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                """SELECT * FROM escrow_transactions
                   WHERE direction=? AND status=? AND created_at > ? AND retry_count < ?""",
                (direction, status, cutoff, max_retry_count)
            ).fetchall()
        return [_from_row(r) for r in rows]

    def list_by_status(self, status: str, limit: int = 200) -> List[EscrowRecord]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                """SELECT * FROM escrow_transactions WHERE status=?
                   ORDER BY created_at DESC LIMIT ?""",
                (status, limit)
            ).fetchall()
        return [_from_row(r) for r in rows]

    def list_for_user(self, user_id: str, limit: int = 50) -> List[EscrowRecord]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                """SELECT * FROM escrow_transactions WHERE user_id=?
                   ORDER BY created_at DESC LIMIT ?""",
                (user_id, limit)
            ).fetchall()
        return [_from_row(r) for r in rows]

    def claim_for_retry(self, record: EscrowRecord, max_retry_count: int,
                        lease_seconds: float, now: Optional[float] = None) -> bool:
        """
        Atomically count a retry attempt and lease the record to this cycle.

        Succeeds only if nobody wrote the row since it was read, the budget
        is not spent, and no live lease is held. On success the in-memory
        record reflects the new retry_count/version/lease.
        """
        now = time.time() if now is None else now
        lease_until = now + lease_seconds
        with get_db(self.db_path) as conn:
            cur = conn.execute(
                """UPDATE escrow_transactions
                   SET retry_count = retry_count + 1,
                       version = version + 1,
                       lease_expires_at = ?
                   WHERE transaction_id = ? AND version = ? AND retry_count < ?
                     AND (lease_expires_at IS NULL OR lease_expires_at <= ?)""",
                (lease_until, record.transaction_id, record.version, max_retry_count, now)
            )
            claimed = cur.rowcount == 1
        if claimed:
            record.retry_count += 1
            record.version += 1
            record.lease_expires_at = lease_until
        return claimed

    def save(self, record: EscrowRecord, detail: Optional[dict] = None) -> EscrowRecord:
        """
        Persist mutable fields, conditional on the version the caller holds.
        transfer_hash is written only if the stored value is still NULL.
        A status change, or an explicit `detail`, appends to escrow_events.
        Raises StaleRecordError when another writer got there first.
        """
        with get_db(self.db_path) as conn:
            cur = conn.execute(
                """UPDATE escrow_transactions SET
                   status=?, gateway_reference=?,
                   transfer_hash=COALESCE(transfer_hash, ?),
                   retry_count=?, last_retry_at=?, completed_at=?, metadata=?,
                   lease_expires_at=?, version=version + 1
                   WHERE transaction_id=? AND version=?""",
                (record.status, record.gateway_reference, record.transfer_hash,
                 record.retry_count, record.last_retry_at, record.completed_at,
                 json.dumps(record.metadata), record.lease_expires_at,
                 record.transaction_id, record.version)
            )
            if cur.rowcount != 1:
                raise StaleRecordError(
                    f"Escrow {record.transaction_id} changed since version {record.version}"
                )
            if record.status != record.stored_status or detail:
                self._log_event(conn, record.transaction_id, record.stored_status,
                                record.status, detail or {})
        record.version += 1
        record.stored_status = record.status
        return record

    def events_for(self, transaction_id: str) -> List[dict]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                """SELECT * FROM escrow_events WHERE transaction_id=?
                   ORDER BY created_at ASC, rowid ASC""",
                (transaction_id,)
            ).fetchall()
        events = []
        for r in rows:
            event = dict(r)
            event["detail"] = json.loads(event["detail"] or "{}")
            events.append(event)
        return events

    @staticmethod
    def _log_event(conn, transaction_id: str, from_status: Optional[str],
                   to_status: str, detail: dict):
        conn.execute(
            """INSERT INTO escrow_events
               (event_id, transaction_id, from_status, to_status, detail, created_at)
               VALUES (?,?,?,?,?,?)""",
            (str(uuid.uuid4()), transaction_id, from_status, to_status,
             json.dumps(detail), time.time())
        )
