"""
Utility functions for visitproof.

Provides constant-time comparison, hashing and secure token helpers.
"""

import hashlib
import hmac
import secrets
from typing import Optional, Union


def constant_time_compare(
    a: Optional[Union[str, bytes]],
    b: Optional[Union[str, bytes]]
) -> bool:
    """
    Compare two strings/bytes in constant time to prevent timing attacks.

    Inputs of different length are zero-padded to the longer width and still
    compared in full, so the amount of work never depends on where (or
    whether) the inputs first differ. A missing value never matches.
    """
    if a is None or b is None:
        return False
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')

    if len(a) != len(b):
        width = max(len(a), len(b))
        hmac.compare_digest(a.ljust(width, b'\0'), b.ljust(width, b'\0'))
        return False

    return hmac.compare_digest(a, b)


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def generate_secure_token(length: int = 32) -> str:
    """Generate a cryptographically secure random hex token of `length` bytes."""
    return secrets.token_hex(length)


def generate_store_secret() -> str:
    """Generate a 256-bit TOTP secret for a venue."""
    return generate_secure_token(32)


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only the last N characters.
    Useful for logging.
    """
    if len(value) <= visible_chars:
        return '*' * len(value)
    return '*' * (len(value) - visible_chars) + value[-visible_chars:]
