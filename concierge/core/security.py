"""Operator API key hashing."""

import hashlib
import secrets

from concierge.core.config import settings


def hash_api_key(raw_key: str) -> str:
    """SHA-256 hash of raw API key for storage."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key() -> tuple[str, str]:
    """Generate a new tenant API key. Returns (raw_key, hashed_key)."""
    raw = f"{settings.api_key_prefix}{secrets.token_urlsafe(32)}"
    return raw, hash_api_key(raw)


def verify_api_key(raw_key: str, stored_hash: str) -> bool:
    """Constant-time check of a raw API key against its stored hash."""
    return secrets.compare_digest(hash_api_key(raw_key), stored_hash)
