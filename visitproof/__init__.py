"""
visitproof: Presence Verification

Version: 1.0.0

Proves that a visitor was physically at a venue at a given time without
trusting the client. Up to three independent signals are scored and summed:

    GPS location      up to 40 points
    On-site code      40 points (6-digit TOTP, 30-second windows)
    Receipt photo     up to 20 points (remote receipt service)

A visit passes at 60 points.

Usage:
    from visitproof import (
        Coordinates,
        GpsData,
        OnSiteCodeGate,
        ReplayGuard,
        VerificationOrchestrator,
        VerificationRequest,
    )

    gate = OnSiteCodeGate(ReplayGuard())
    orchestrator = VerificationOrchestrator()

    qr_data = await gate.check(code, venue_secret, popup_id, user_id)
    result = await orchestrator.verify(VerificationRequest(
        popup_id=popup_id,
        user_id=user_id,
        popup_location=Coordinates(37.5665, 126.978),
        brand_name="Acme",
        gps_data=GpsData(Coordinates(37.5666, 126.978)),
        qr_data=qr_data,
    ))

    if result.passed:
        ...
"""

__version__ = "1.0.0"

# Primitives
from .util import constant_time_compare
from .totp import (
    TOTP_WINDOW_SECONDS,
    TotpVerification,
    QrCodeData,
    generate_totp,
    verify_totp,
    generate_qr_code_data,
    derive_popup_secret,
)
from .replay import (
    ReplayGuard,
    UsedTokenStore,
    InMemoryUsedTokenStore,
    KeyValueUsedTokenStore,
)

# Resilience
from .retry import BackoffPolicy, with_backoff
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitOpenError,
    CircuitState,
    CircuitTimeoutError,
)
from .rate_limit import (
    RATE_LIMITS,
    RateLimitResult,
    InMemoryRateLimiter,
    DistributedRateLimiter,
    ConcurrencyGate,
    AdmissionLimiter,
    get_client_ip,
)

# Scoring
from .geo import Coordinates, GpsVerificationResult, calculate_distance, verify_gps_location
from .receipt import ReceiptOutcome, ReceiptScorer, ReceiptVerificationResult
from .verification import (
    PASS_THRESHOLD,
    MAX_SCORES,
    GpsData,
    QrData,
    ReceiptData,
    VerificationRequest,
    VerificationResult,
    OnSiteCodeGate,
    VerificationOrchestrator,
    verification_summary,
    method_status,
)

__all__ = [
    "__version__",
    "constant_time_compare",
    "TOTP_WINDOW_SECONDS",
    "TotpVerification",
    "QrCodeData",
    "generate_totp",
    "verify_totp",
    "generate_qr_code_data",
    "derive_popup_secret",
    "ReplayGuard",
    "UsedTokenStore",
    "InMemoryUsedTokenStore",
    "KeyValueUsedTokenStore",
    "BackoffPolicy",
    "with_backoff",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    "CircuitTimeoutError",
    "RATE_LIMITS",
    "RateLimitResult",
    "InMemoryRateLimiter",
    "DistributedRateLimiter",
    "ConcurrencyGate",
    "AdmissionLimiter",
    "get_client_ip",
    "Coordinates",
    "GpsVerificationResult",
    "calculate_distance",
    "verify_gps_location",
    "ReceiptOutcome",
    "ReceiptScorer",
    "ReceiptVerificationResult",
    "PASS_THRESHOLD",
    "MAX_SCORES",
    "GpsData",
    "QrData",
    "ReceiptData",
    "VerificationRequest",
    "VerificationResult",
    "OnSiteCodeGate",
    "VerificationOrchestrator",
    "verification_summary",
    "method_status",
]
