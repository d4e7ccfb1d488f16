"""
Receipt scoring via the remote receipt verification service.

The OCR and brand/date matching run in a separate service; this module only
calls it:

    POST {base_url}/receipt/verify
    {"imageBase64": ..., "brandName": ..., "checkInDate": <ISO-8601>, "popupId": ...}

    200 {"verified": bool, "score": int, "brandMatched": bool,
         "dateValid": bool, "extractedText": str?}

Each attempt is admitted by an optional AdmissionLimiter (provider quota),
guarded by the circuit breaker and optionally retried with backoff. Whatever
goes wrong, `ReceiptScorer.score` returns a ReceiptOutcome: a not-verified,
zero-score result tagged with the failure reason. It never raises, so a
receipt outage cannot fail a verification that GPS and QR already carry.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import requests

from .circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitTimeoutError
from .logging_config import audit_log
from .rate_limit import AdmissionLimiter
from .retry import BackoffPolicy, retry_with_policy

logger = logging.getLogger(__name__)

RECEIPT_DEPENDENCY = "receipt-ocr"
VERIFY_PATH = "/receipt/verify"


class ReceiptFailure(str, Enum):
    """Why a receipt could not be scored."""
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    HTTP_ERROR = "HTTP_ERROR"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class ReceiptServiceError(Exception):
    """Raised by the client when the service call does not yield a result."""

    def __init__(self, failure: ReceiptFailure, message: str, status_code: Optional[int] = None):
        self.failure = failure
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        if self.failure == ReceiptFailure.NETWORK_ERROR:
            return True
        return self.failure == ReceiptFailure.HTTP_ERROR and (
            self.status_code is None or self.status_code >= 500 or self.status_code == 429
        )


@dataclass(frozen=True)
class ReceiptVerificationResult:
    verified: bool
    score: int
    brand_matched: bool
    date_valid: bool
    extracted_text: Optional[str] = None

    @classmethod
    def not_verified(cls) -> "ReceiptVerificationResult":
        return cls(verified=False, score=0, brand_matched=False, date_valid=False)

    @classmethod
    def from_response(cls, data: Any) -> "ReceiptVerificationResult":
        """
        Parse the service's response body.

        Raises:
            ReceiptServiceError: the body does not have the expected shape
        """
        if not isinstance(data, dict):
            raise ReceiptServiceError(ReceiptFailure.MALFORMED_RESPONSE, "response body is not an object")

        for field_name in ("verified", "brandMatched", "dateValid"):
            if not isinstance(data.get(field_name), bool):
                raise ReceiptServiceError(
                    ReceiptFailure.MALFORMED_RESPONSE, f"'{field_name}' must be a boolean"
                )

        score = data.get("score")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise ReceiptServiceError(ReceiptFailure.MALFORMED_RESPONSE, "'score' must be a number")

        extracted = data.get("extractedText")
        if extracted is not None and not isinstance(extracted, str):
            extracted = str(extracted)

        return cls(
            verified=data["verified"],
            score=int(score),
            brand_matched=data["brandMatched"],
            date_valid=data["dateValid"],
            extracted_text=extracted,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verified": self.verified,
            "score": self.score,
            "brand_matched": self.brand_matched,
            "date_valid": self.date_valid,
            "extracted_text": self.extracted_text,
        }


@dataclass(frozen=True)
class ReceiptOutcome:
    """
    Receipt scoring result as a value.

    `failure` is None when the service answered; otherwise `result` is the
    zero-score not-verified result and `failure` says why.
    """
    result: ReceiptVerificationResult
    failure: Optional[ReceiptFailure] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def failed(cls, failure: ReceiptFailure, detail: str) -> "ReceiptOutcome":
        return cls(result=ReceiptVerificationResult.not_verified(), failure=failure, detail=detail)


def to_iso8601(value: Union[date, datetime, str]) -> str:
    """ISO-8601 text for a purchase date; UTC datetimes use the Z suffix."""
    if isinstance(value, str):
        return value
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    return value.isoformat()


class ReceiptServiceClient:
    """Blocking HTTP client for the receipt service, exposed as a coroutine."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def verify_url(self) -> str:
        return f"{self.base_url}{VERIFY_PATH}"

    def _post(self, payload: Dict[str, Any]) -> ReceiptVerificationResult:
        try:
            response = self._session.post(self.verify_url, json=payload, timeout=self._timeout)
        except requests.RequestException as e:
            raise ReceiptServiceError(ReceiptFailure.NETWORK_ERROR, f"request failed: {e}") from e

        if not response.ok:
            raise ReceiptServiceError(
                ReceiptFailure.HTTP_ERROR,
                f"Receipt verification API failed: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ReceiptServiceError(ReceiptFailure.MALFORMED_RESPONSE, "response is not JSON") from e

        return ReceiptVerificationResult.from_response(data)

    async def verify(
        self,
        image_base64: str,
        brand_name: str,
        purchase_date: Union[date, datetime, str],
        popup_id: str
    ) -> ReceiptVerificationResult:
        payload = {
            "imageBase64": image_base64,
            "brandName": brand_name,
            "checkInDate": to_iso8601(purchase_date),
            "popupId": popup_id,
        }
        return await asyncio.to_thread(self._post, payload)


def _should_retry(error: Exception) -> bool:
    if isinstance(error, CircuitOpenError):
        return False
    if isinstance(error, ReceiptServiceError):
        return error.retryable
    return isinstance(error, CircuitTimeoutError)


class ReceiptScorer:
    """
    Scores a receipt photo through the remote service.

    Args:
        client: Receipt service client
        breaker: Circuit breaker for the receipt dependency
        retry_policy: Backoff policy; None disables retries
        limiter: Optional admission limiter guarding the provider quota
    """

    def __init__(
        self,
        client: ReceiptServiceClient,
        breaker: CircuitBreaker,
        retry_policy: Optional[BackoffPolicy] = None,
        limiter: Optional[AdmissionLimiter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.client = client
        self.breaker = breaker
        self.retry_policy = retry_policy
        self.limiter = limiter
        self._sleep = sleep

    async def _attempt(self, call: Callable[[], Awaitable[ReceiptVerificationResult]]) -> ReceiptVerificationResult:
        if self.limiter is None:
            return await self.breaker.call(call)
        limiter = self.limiter
        return await self.breaker.call(lambda: limiter.execute(call))

    async def score(
        self,
        image_base64: str,
        brand_name: str,
        purchase_date: Union[date, datetime, str],
        popup_id: str
    ) -> ReceiptOutcome:
        """Score a receipt; never raises."""
        def call() -> Awaitable[ReceiptVerificationResult]:
            return self.client.verify(image_base64, brand_name, purchase_date, popup_id)

        def attempt() -> Awaitable[ReceiptVerificationResult]:
            return self._attempt(call)

        try:
            if self.retry_policy is not None and self.retry_policy.retries > 0:
                result = await retry_with_policy(attempt, self.retry_policy, _should_retry, self._sleep)
            else:
                result = await attempt()
        except CircuitOpenError as e:
            return self._failed(ReceiptFailure.CIRCUIT_OPEN, str(e))
        except CircuitTimeoutError as e:
            return self._failed(ReceiptFailure.TIMEOUT, str(e))
        except ReceiptServiceError as e:
            return self._failed(e.failure, str(e))
        except Exception as e:
            logger.exception("Unexpected receipt verification error")
            return self._failed(ReceiptFailure.UNEXPECTED_ERROR, str(e))

        return ReceiptOutcome(result=result)

    def _failed(self, failure: ReceiptFailure, detail: str) -> ReceiptOutcome:
        audit_log.dependency_failure(RECEIPT_DEPENDENCY, f"{failure.value}: {detail}")
        return ReceiptOutcome.failed(failure, detail)
