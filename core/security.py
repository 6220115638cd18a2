"""
NexusPay Security Module
=========================
  - KeyVault: AES-256-GCM sealing of user signing keys. The users table
    only ever holds the sealed reference; the plaintext exists only for
    the duration of a transfer call.
  - TokenVerifier: HS256 JWT bearer tokens for the status/admin API.
"""

import base64
import binascii
import secrets
import time
from typing import Optional

import jwt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


AES_KEY_SIZE       = 32
GCM_NONCE_SIZE     = 12
JWT_ALGORITHM      = "HS256"
JWT_EXPIRY_SECONDS = 3600


class KeyReferenceError(Exception):
    pass


# ─── AES-256-GCM ─────────────────────────────────────────────────────────────

class KeyVault:
    """
    Seals/unseals private-key references.
    Each seal uses a fresh 96-bit nonce; the GCM tag rejects tampered refs.
    """

    def __init__(self, key: bytes):
        if len(key) != AES_KEY_SIZE:
            raise ValueError(f"Key must be {AES_KEY_SIZE} bytes")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_key_b64(cls, key_b64: str) -> "KeyVault":
        try:
            key = base64.b64decode(key_b64.encode(), validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("key_encryption_key is not valid base64")
        return cls(key)

    @staticmethod
    def generate_key_b64() -> str:
        return base64.b64encode(secrets.token_bytes(AES_KEY_SIZE)).decode()

    def seal(self, private_key: str) -> str:
        nonce      = secrets.token_bytes(GCM_NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, private_key.encode(), None)
        return base64.b64encode(nonce + ciphertext).decode()

    def unseal(self, key_ref: str) -> str:
        try:
            combined = base64.b64decode(key_ref.encode(), validate=True)
            nonce, ciphertext = combined[:GCM_NONCE_SIZE], combined[GCM_NONCE_SIZE:]
            return self._aesgcm.decrypt(nonce, ciphertext, None).decode()
        except (binascii.Error, ValueError, InvalidTag):
            raise KeyReferenceError("Private key reference could not be unsealed")


# ─── JWT ──────────────────────────────────────────────────────────────────────

class TokenVerifier:
    """Issues and checks HS256 bearer tokens carrying `sub` and `role`."""

    def __init__(self, secret_key: Optional[str] = None):
        self._secret = secret_key or secrets.token_hex(32)

    def create_token(self, user_id: str, role: str = "user",
                     expires_in: int = JWT_EXPIRY_SECONDS) -> str:
        now = time.time()
        payload = {
            "sub":  user_id,
            "role": role,
            "iat":  int(now),
            "exp":  int(now + expires_in),
            "jti":  secrets.token_hex(16),
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def verify_token(self, token: str) -> Optional[dict]:
        try:
            return jwt.decode(token, self._secret, algorithms=[JWT_ALGORITHM])
        except jwt.InvalidTokenError:
            return None
