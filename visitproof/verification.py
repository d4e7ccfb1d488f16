"""
Presence Verification Orchestrator

Fuses up to three independent signals into one trust score:

    signal    max   scorer
    gps        40   geofence distance bands (visitproof.geo)
    qr         40   on-site code, TOTP-verified and replay-checked upstream
    receipt    20   remote receipt service (visitproof.receipt)

total_score is the sum of the capped scores of the signals present, so it
never exceeds 100; a visit passes at 60. No single signal passes alone:
GPS + QR (80) and QR + receipt (60) do, GPS alone (40) does not.

Verification is best effort across the signals supplied. A missing signal
contributes nothing and is left out of `methods`; a failed receipt service
scores zero but GPS and QR still count. A request with no signals at all is a
valid, failing result, not an error.

The on-site code is checked in two stages. OnSiteCodeGate verifies the
submitted code against the venue secret and claims it in the replay guard,
producing the QrData the orchestrator scores. A replayed code leaves QrData
without a valid code, so it scores exactly like a wrong one.
"""

import logging
import math
import time
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Union

from .geo import Coordinates, GpsVerificationResult, verify_gps_location
from .kvstore import KeyValueStoreError
from .logging_config import audit_log
from .receipt import ReceiptFailure, ReceiptScorer, ReceiptVerificationResult
from .replay import ReplayGuard
from .totp import TOTP_WINDOW_SECONDS, generate_totp, verify_totp, window_start
from .util import constant_time_compare

logger = logging.getLogger(__name__)


# ============================================================
# Constants
# ============================================================

PASS_THRESHOLD = 60
FULL_SUCCESS_THRESHOLD = 70

MAX_SCORES: Dict[str, int] = {
    "gps": 40,
    "qr": 40,
    "receipt": 20,
}

METHOD_ORDER = ("gps", "qr", "receipt")

QR_VALIDITY_SECONDS = TOTP_WINDOW_SECONDS
# A code stays scoreable for its own window plus the next one.
QR_MAX_AGE_SECONDS = QR_VALIDITY_SECONDS * 2


# ============================================================
# Request types
# ============================================================

@dataclass(frozen=True)
class GpsData:
    user_location: Coordinates
    max_range: Optional[float] = None


@dataclass(frozen=True)
class QrData:
    """
    On-site code evidence.

    valid_code is the server-issued code the input must equal; None means the
    server has no acceptable code for this submission (wrong, expired or
    replayed), so nothing can match. generated_at is Unix seconds.
    """
    input_code: str
    valid_code: Optional[str]
    generated_at: float


@dataclass(frozen=True)
class ReceiptData:
    image_base64: str
    purchase_date: Union[date, datetime, str]


@dataclass(frozen=True)
class VerificationRequest:
    popup_id: str
    user_id: str
    popup_location: Coordinates
    brand_name: str
    gps_data: Optional[GpsData] = None
    qr_data: Optional[QrData] = None
    receipt_data: Optional[ReceiptData] = None


# ============================================================
# Result types
# ============================================================

@dataclass(frozen=True)
class QrVerificationResult:
    matched: bool
    score: int
    expired: bool
    remaining_seconds: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matched": self.matched,
            "score": self.score,
            "expired": self.expired,
            "remaining_seconds": self.remaining_seconds,
        }


@dataclass(frozen=True)
class VerificationResult:
    """Complete outcome of one verification. Never mutated after creation."""
    popup_id: str
    user_id: str
    verified_at: datetime
    gps: Optional[GpsVerificationResult]
    qr: Optional[QrVerificationResult]
    receipt: Optional[ReceiptVerificationResult]
    total_score: int
    passed: bool
    methods: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "popup_id": self.popup_id,
            "user_id": self.user_id,
            "verified_at": self.verified_at.isoformat().replace("+00:00", "Z"),
            "gps": self.gps.to_dict() if self.gps else None,
            "qr": self.qr.to_dict() if self.qr else None,
            "receipt": self.receipt.to_dict() if self.receipt else None,
            "total_score": self.total_score,
            "passed": self.passed,
            "methods": list(self.methods),
        }


@dataclass(frozen=True)
class VerificationSummary:
    title: str
    message: str
    badge: str  # success | partial | fail

    def to_dict(self) -> Dict[str, str]:
        return {"title": self.title, "message": self.message, "badge": self.badge}


@dataclass(frozen=True)
class MethodStatus:
    label: str
    score: int
    max_score: int
    status: str  # success | fail | pending

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "score": self.score,
            "max_score": self.max_score,
            "status": self.status,
        }


def cap_score(method: str, score: float) -> int:
    """Clamp a scorer's output into 0..MAX_SCORES[method]."""
    return int(max(0, min(score, MAX_SCORES[method])))


# ============================================================
# Scorers
# ============================================================

def score_qr(qr_data: QrData, now: float) -> QrVerificationResult:
    """
    Compare the submitted code with the server-issued one.

    Binary: full credit or none. The comparison is constant time, and a code
    older than two windows is expired even if it matches.
    """
    age = now - qr_data.generated_at
    expired = age > QR_MAX_AGE_SECONDS
    matched = constant_time_compare(qr_data.input_code, qr_data.valid_code) and not expired

    return QrVerificationResult(
        matched=matched,
        score=MAX_SCORES["qr"] if matched else 0,
        expired=expired,
        remaining_seconds=max(0, math.ceil(QR_MAX_AGE_SECONDS - age)) if matched else None,
    )


class OnSiteCodeGate:
    """
    Turns a submitted on-site code into scoreable QrData.

    Usage:
        gate = OnSiteCodeGate(ReplayGuard())
        qr_data = await gate.check(code, secret, popup_id, user_id)
    """

    def __init__(self, replay_guard: ReplayGuard, clock: Callable[[], float] = time.time):
        self.replay_guard = replay_guard
        self._clock = clock

    async def check(self, code: str, secret: str, popup_id: str, user_id: str) -> QrData:
        """
        Verify `code` for this venue and claim it for this user.

        A wrong code, a replayed code and a replay-store outage all yield
        QrData with valid_code None. Replays are audit-logged.
        """
        now = self._clock()
        verification = verify_totp(code, secret, now)
        issued_at = window_start(now) + verification.window_offset * TOTP_WINDOW_SECONDS

        if not verification.valid:
            return QrData(input_code=code, valid_code=None, generated_at=issued_at)

        try:
            first_use = await self.replay_guard.claim(code, popup_id, user_id)
        except KeyValueStoreError as e:
            audit_log.dependency_failure("replay-store", str(e))
            return QrData(input_code=code, valid_code=None, generated_at=issued_at)

        if not first_use:
            audit_log.replay_detected(popup_id, user_id)
            return QrData(input_code=code, valid_code=None, generated_at=issued_at)

        return QrData(
            input_code=code,
            valid_code=generate_totp(secret, issued_at),
            generated_at=issued_at,
        )


class VerificationOrchestrator:
    """
    Runs the scorers for the signals present and aggregates their scores.

    Args:
        receipt_scorer: Scorer for receipt photos; None scores every receipt
            as not verified
        clock: Unix time source used for code expiry
    """

    def __init__(
        self,
        receipt_scorer: Optional[ReceiptScorer] = None,
        clock: Callable[[], float] = time.time
    ):
        self.receipt_scorer = receipt_scorer
        self._clock = clock

    async def _score_receipt(self, request: VerificationRequest) -> ReceiptVerificationResult:
        receipt_data = request.receipt_data
        if self.receipt_scorer is None:
            audit_log.dependency_failure("receipt-ocr", "no receipt scorer configured")
            return ReceiptVerificationResult.not_verified()

        outcome = await self.receipt_scorer.score(
            receipt_data.image_base64,
            request.brand_name,
            receipt_data.purchase_date,
            request.popup_id,
        )
        if outcome.failure == ReceiptFailure.CIRCUIT_OPEN:
            logger.info("Receipt scored as not verified: receipt service circuit is open")
        return outcome.result

    async def verify(self, request: VerificationRequest) -> VerificationResult:
        """
        Score every signal present in `request`.

        Returns:
            VerificationResult; always complete, even if the receipt service
            is down
        """
        methods = []
        total = 0

        gps_result = None
        if request.gps_data is not None:
            gps_result = verify_gps_location(
                request.gps_data.user_location,
                request.popup_location,
                request.gps_data.max_range,
            )
            total += cap_score("gps", gps_result.score)
            methods.append("gps")

        qr_result = None
        if request.qr_data is not None:
            qr_result = score_qr(request.qr_data, self._clock())
            total += cap_score("qr", qr_result.score)
            methods.append("qr")

        receipt_result = None
        if request.receipt_data is not None:
            receipt_result = await self._score_receipt(request)
            receipt_result = replace(receipt_result, score=cap_score("receipt", receipt_result.score))
            total += receipt_result.score
            methods.append("receipt")

        passed = total >= PASS_THRESHOLD
        audit_log.verification_decision(request.popup_id, request.user_id, total, passed, methods)

        return VerificationResult(
            popup_id=request.popup_id,
            user_id=request.user_id,
            verified_at=datetime.now(timezone.utc),
            gps=gps_result,
            qr=qr_result,
            receipt=receipt_result,
            total_score=total,
            passed=passed,
            methods=tuple(methods),
        )


# ============================================================
# Presentation helpers
# ============================================================

def verification_summary(result: VerificationResult) -> VerificationSummary:
    if result.passed and result.total_score >= FULL_SUCCESS_THRESHOLD:
        return VerificationSummary(
            title="Check-in complete!",
            message=f"Verified with {result.total_score} points. Visit badge earned.",
            badge="success",
        )
    if result.passed:
        return VerificationSummary(
            title="Check-in successful!",
            message=f"Verified with {result.total_score} points. Add another proof for a bonus.",
            badge="partial",
        )
    return VerificationSummary(
        title="Verification failed",
        message=f"{result.total_score} points - {PASS_THRESHOLD} or more are needed. Please try again on site.",
        badge="fail",
    )


_METHOD_LABELS = {
    "gps": "GPS location",
    "qr": "QR code",
    "receipt": "Receipt",
}


def method_status(method: str, result: VerificationResult) -> MethodStatus:
    """
    Display status of one signal.

    Raises:
        ValueError: unknown method
    """
    if method not in MAX_SCORES:
        raise ValueError(f"Unknown verification method: {method}")

    component = getattr(result, method)
    if component is None:
        score, status = 0, "pending"
    else:
        score = component.score
        status = "success" if score > 0 else "fail"

    return MethodStatus(
        label=_METHOD_LABELS[method],
        score=score,
        max_score=MAX_SCORES[method],
        status=status,
    )
