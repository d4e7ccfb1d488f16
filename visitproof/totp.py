"""
On-site Time-Based One-Time Codes

Implements RFC 6238 TOTP over HMAC-SHA256 with RFC 4226 dynamic truncation.

Each venue displays a 6-digit code that rotates every 30 seconds. A visitor
types or scans the code; the server recomputes it from the venue secret and
accepts the current window or the one immediately before it, so a code read
just before a rotation still verifies after the network round trip.

Algorithm (RFC 6238 Section 4):
    T = floor(unix_time / 30)
    TOTP = Truncate(HMAC-SHA256(secret, T as 8-byte big-endian)) mod 10^6

Dynamic truncation (RFC 4226 Section 5.3):
    offset = last byte of the HMAC & 0x0f
    binary = 4 bytes at offset, most significant bit masked
"""

import hashlib
import hmac
import math
import struct
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .util import constant_time_compare

TOTP_WINDOW_SECONDS = 30
TOTP_DIGITS = 6


@dataclass(frozen=True)
class TotpVerification:
    """Outcome of verifying a submitted code."""
    valid: bool
    window_offset: int = 0


@dataclass(frozen=True)
class QrCodeData:
    """Code shown on the venue display, with its rotation timing."""
    code: str
    valid_until: float
    refresh_in: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "valid_until": self.valid_until,
            "refresh_in": self.refresh_in,
        }


def _secret_bytes(secret: Union[str, bytes]) -> bytes:
    if isinstance(secret, str):
        return secret.encode('utf-8')
    return secret


def time_counter(timestamp: float) -> int:
    """Index of the 30-second window containing `timestamp` (Unix seconds)."""
    return int(timestamp // TOTP_WINDOW_SECONDS)


def window_start(timestamp: float) -> float:
    """Unix time at which the window containing `timestamp` began."""
    return float(time_counter(timestamp) * TOTP_WINDOW_SECONDS)


def remaining_seconds(timestamp: float) -> int:
    """Whole seconds until the current code rotates (1..30)."""
    elapsed = timestamp % TOTP_WINDOW_SECONDS
    return math.ceil(TOTP_WINDOW_SECONDS - elapsed)


def hotp(secret: Union[str, bytes], counter: int, digits: int = TOTP_DIGITS) -> str:
    """
    HMAC-based one-time code for an explicit counter (RFC 4226).

    Args:
        secret: Shared secret; strings are UTF-8 encoded
        counter: Moving factor, encoded as an unsigned 8-byte big-endian integer
        digits: Number of decimal digits in the result

    Returns:
        Zero-padded decimal code
    """
    mac = hmac.new(_secret_bytes(secret), struct.pack(">Q", counter), hashlib.sha256).digest()
    offset = mac[-1] & 0x0F
    binary = struct.unpack(">I", mac[offset:offset + 4])[0] & 0x7FFFFFFF
    return str(binary % (10 ** digits)).zfill(digits)


def generate_totp(secret: Union[str, bytes], timestamp: Optional[float] = None) -> str:
    """
    Generate the 6-digit code for the window containing `timestamp`.

    Args:
        secret: Venue secret (should be a high-entropy random string)
        timestamp: Unix timestamp in seconds (defaults to now)

    Returns:
        6-digit code as a zero-padded string (e.g. "012345")
    """
    if timestamp is None:
        timestamp = time.time()
    return hotp(secret, time_counter(timestamp))


def verify_totp(
    code: Any,
    secret: Union[str, bytes],
    timestamp: Optional[float] = None
) -> TotpVerification:
    """
    Verify a submitted code against the current and the previous window.

    Malformed input never raises; it simply never matches. Both candidate
    windows are always computed and compared so a miss costs the same as a
    hit in the previous window.

    Returns:
        TotpVerification with window_offset 0 (current) or -1 (previous)
    """
    if timestamp is None:
        timestamp = time.time()

    if not isinstance(code, str):
        code = None

    current = generate_totp(secret, timestamp)
    previous = None
    if timestamp >= TOTP_WINDOW_SECONDS:
        previous = generate_totp(secret, timestamp - TOTP_WINDOW_SECONDS)

    current_match = constant_time_compare(code, current)
    previous_match = constant_time_compare(code, previous)

    if current_match:
        return TotpVerification(valid=True, window_offset=0)
    if previous_match:
        return TotpVerification(valid=True, window_offset=-1)
    return TotpVerification(valid=False, window_offset=0)


def generate_qr_code_data(secret: Union[str, bytes], timestamp: Optional[float] = None) -> QrCodeData:
    """Code for on-site display together with when it rotates."""
    if timestamp is None:
        timestamp = time.time()
    refresh_in = remaining_seconds(timestamp)
    return QrCodeData(
        code=generate_totp(secret, timestamp),
        valid_until=window_start(timestamp) + TOTP_WINDOW_SECONDS,
        refresh_in=refresh_in,
    )


def derive_popup_secret(master_key: Union[str, bytes], popup_id: str) -> str:
    """
    Derive an independent per-venue secret from one master key.

    Leaking one venue's secret reveals nothing about the others.
    """
    return hmac.new(_secret_bytes(master_key), popup_id.encode('utf-8'), hashlib.sha256).hexdigest()
