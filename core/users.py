"""
NexusPay User Directory
========================
Read-side view of the users table: just what reconciliation needs to
re-attempt a transaction (phone for M-Pesa, wallet + key reference for
the crypto leg).
"""

import time
import uuid
from dataclasses import dataclass
from typing import Optional

from core.database import get_db


class UserNotFoundError(Exception):
    pass


@dataclass
class User:
    user_id: str
    phone: Optional[str] = None
    wallet_address: Optional[str] = None
    private_key_ref: Optional[str] = None
    name: str = ""
    role: str = "user"


class UserDirectory:

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def find_by_id(self, user_id: str) -> User:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                """SELECT user_id, phone, name, wallet_address, private_key_ref, role
                   FROM users WHERE user_id=?""",
                (user_id,)
            ).fetchone()
        if not row:
            raise UserNotFoundError(f"User not found: {user_id}")
        return User(
            user_id=row["user_id"],
            phone=row["phone"],
            wallet_address=row["wallet_address"],
            private_key_ref=row["private_key_ref"],
            name=row["name"] or "",
            role=row["role"],
        )

    def create(self, phone: Optional[str], wallet_address: Optional[str] = None,
               private_key_ref: Optional[str] = None, name: str = "",
               role: str = "user", user_id: Optional[str] = None) -> User:
        """Used by seeding scripts and tests; account signup lives elsewhere."""
        user = User(
            user_id=user_id or str(uuid.uuid4()),
            phone=phone,
            wallet_address=wallet_address,
            private_key_ref=private_key_ref,
            name=name,
            role=role,
        )
        with get_db(self.db_path) as conn:
            conn.execute(
                """INSERT INTO users
                   (user_id, phone, name, wallet_address, private_key_ref, role, created_at)
                   VALUES (?,?,?,?,?,?,?)""",
                (user.user_id, user.phone, user.name, user.wallet_address,
                 user.private_key_ref, user.role, time.time())
            )
        return user
