"""API key generation and SHA-256 digests. Plaintext keys are never stored."""

import hashlib
import secrets

KEY_PREFIX = "brk_"


def generate_api_key() -> str:
    return KEY_PREFIX + secrets.token_urlsafe(32)


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def display_prefix(raw_key: str) -> str:
    """First 8 characters, safe to show in dashboards and logs."""
    return raw_key[:8]
