"""
auth/tokens.py -- Password hashing, auth token and service key utilities.

Passwords: bcrypt, used directly (no passlib wrapper). The cost factor makes
     brute-force expensive for low-entropy secrets.

Auth tokens and service keys: secrets.token_urlsafe(32) / token_hex(32) give
     256 bits of entropy. Stores keep HMAC-SHA256(secret_key, raw) so lookups
     are O(1) and a leaked database does not yield usable credentials.

Layer rule: no imports from api/, manager/, middleware/ or store/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

import bcrypt

SERVICE_KEY_PREFIX = "crm_"


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt rejects input over 72 bytes with ValueError. The API models
    check the UTF-8 byte length before a password gets here.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def generate_auth_token() -> str:
    return secrets.token_urlsafe(32)


def generate_service_key() -> str:
    """Generate a new service key in the format crm_<64 hex chars>."""
    return f"{SERVICE_KEY_PREFIX}{secrets.token_hex(32)}"


def digest(secret_key: str, raw: str) -> str:
    """Return HMAC-SHA256(secret_key, raw) as a hex string."""
    return hmac.new(secret_key.encode(), raw.encode(), hashlib.sha256).hexdigest()
