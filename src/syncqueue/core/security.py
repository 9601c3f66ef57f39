"""API key helpers for node authentication."""
from __future__ import annotations

import hashlib
import hmac
import secrets

API_KEY_BYTES = 32


def generate_api_key() -> str:
    """Return a fresh random API key (64 hex characters)."""
    return secrets.token_hex(API_KEY_BYTES)


def hash_key(api_key: str) -> str:
    """Return a SHA-256 hash of the provided API key."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def verify_key(api_key: str, expected_hash: str) -> bool:
    """Compare a presented key against a stored hash in constant time."""
    if not api_key or not expected_hash:
        return False
    return hmac.compare_digest(expected_hash, hash_key(api_key))
