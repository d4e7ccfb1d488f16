"""
Input validation for check-in requests.

Malformed input is rejected before any scoring happens. Validators never
raise: they collect every problem as a FieldError. The check-in request
model (visitproof.models.CheckInRequest) runs them per field and the HTTP
layer maps its errors back to FieldErrors with `field_errors`.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional


# ============================================================
# Patterns and limits
# ============================================================

UUID_PATTERN = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE)
DEMO_STORE_PATTERN = re.compile(r'^store-\d{3}$')
USER_ID_PATTERN = re.compile(r'^[A-Za-z0-9_.:@-]{1,128}$')
BASE64_PATTERN = re.compile(r'^[A-Za-z0-9+/]*={0,2}$')
QR_FORBIDDEN_PATTERN = re.compile(r'[<>"\';]')

QR_MIN_LENGTH = 6
QR_MAX_LENGTH = 100
RECEIPT_MIN_LENGTH = 100
RECEIPT_MAX_LENGTH = 5_000_000
MAX_GPS_ACCURACY_M = 10_000


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message}


@dataclass
class ValidationResult:
    valid: bool
    errors: List[FieldError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": [e.to_dict() for e in self.errors]}


def _result(errors: List[FieldError]) -> ValidationResult:
    return ValidationResult(valid=not errors, errors=errors)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value)


def parse_iso8601(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 date or datetime; None if malformed."""
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


# ============================================================
# Field validators
# ============================================================

def validate_latitude(lat: Any) -> ValidationResult:
    if not _is_number(lat):
        return _result([FieldError("user_lat", "Latitude must be a valid number")])
    if lat < -90 or lat > 90:
        return _result([FieldError("user_lat", "Latitude must be between -90 and 90")])
    return _result([])


def validate_longitude(lng: Any) -> ValidationResult:
    if not _is_number(lng):
        return _result([FieldError("user_lng", "Longitude must be a valid number")])
    if lng < -180 or lng > 180:
        return _result([FieldError("user_lng", "Longitude must be between -180 and 180")])
    return _result([])


def validate_gps_accuracy(accuracy: Any) -> ValidationResult:
    if not _is_number(accuracy):
        return _result([FieldError("user_gps_accuracy", "GPS accuracy must be a valid number")])
    if accuracy < 0 or accuracy > MAX_GPS_ACCURACY_M:
        return _result([FieldError(
            "user_gps_accuracy", f"GPS accuracy must be between 0 and {MAX_GPS_ACCURACY_M} meters"
        )])
    return _result([])


def validate_gps_coordinates(lat: Any, lng: Any, accuracy: Any = None) -> ValidationResult:
    errors = validate_latitude(lat).errors + validate_longitude(lng).errors
    if accuracy is not None:
        errors += validate_gps_accuracy(accuracy).errors
    return _result(errors)


def validate_qr_code(code: Any) -> ValidationResult:
    """Length 6..100 (6-digit code or a longer venue QR payload), no markup characters."""
    if not isinstance(code, str):
        return _result([FieldError("scanned_qr_code", "QR code must be a string")])

    errors: List[FieldError] = []
    if len(code) < QR_MIN_LENGTH or len(code) > QR_MAX_LENGTH:
        errors.append(FieldError(
            "scanned_qr_code", f"QR code length must be between {QR_MIN_LENGTH} and {QR_MAX_LENGTH} characters"
        ))
    if QR_FORBIDDEN_PATTERN.search(code):
        errors.append(FieldError("scanned_qr_code", "QR code contains invalid characters"))
    return _result(errors)


def validate_store_id(store_id: Any) -> ValidationResult:
    if not isinstance(store_id, str):
        return _result([FieldError("store_id", "Store ID must be a string")])
    if not UUID_PATTERN.match(store_id) and not DEMO_STORE_PATTERN.match(store_id):
        return _result([FieldError("store_id", "Store ID must be a valid UUID or demo format (store-XXX)")])
    return _result([])


def validate_user_id(user_id: Any) -> ValidationResult:
    if not isinstance(user_id, str):
        return _result([FieldError("user_id", "User ID must be a string")])
    if not USER_ID_PATTERN.match(user_id):
        return _result([FieldError(
            "user_id", "User ID must be 1-128 characters of letters, digits or _.:@-"
        )])
    return _result([])


def validate_receipt_image(image_base64: Any) -> ValidationResult:
    if not isinstance(image_base64, str):
        return _result([FieldError("receipt_image_base64", "Receipt image must be a base64 string")])
    if len(image_base64) < RECEIPT_MIN_LENGTH or len(image_base64) > RECEIPT_MAX_LENGTH:
        return _result([FieldError(
            "receipt_image_base64",
            f"Receipt image must be between {RECEIPT_MIN_LENGTH} and {RECEIPT_MAX_LENGTH} characters"
        )])
    if not BASE64_PATTERN.match(image_base64):
        return _result([FieldError("receipt_image_base64", "Receipt image must be valid base64")])
    return _result([])


def validate_purchase_date(purchase_date: Any) -> ValidationResult:
    if not isinstance(purchase_date, str) or parse_iso8601(purchase_date) is None:
        return _result([FieldError("purchase_date", "Purchase date must be an ISO-8601 date")])
    return _result([])


def validate_receipt_data(image_base64: Any, purchase_date: Any) -> ValidationResult:
    return _result(validate_receipt_image(image_base64).errors + validate_purchase_date(purchase_date).errors)


# ============================================================
# Request model errors
# ============================================================

VALUE_ERROR_PREFIX = "Value error, "


def field_errors(errors: Iterable[Dict[str, Any]]) -> List[FieldError]:
    """
    Convert pydantic error dicts (``ValidationError.errors()``) to FieldErrors.

    The field is the first named location after the ``body`` prefix FastAPI
    adds; errors about the body as a whole (not an object, not JSON) are
    reported against ``body``.
    """
    result = []
    for error in errors:
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        if not loc or error.get("type") == "json_invalid":
            name = "body"
        else:
            name = loc[0]
        message = str(error.get("msg", ""))
        if message.startswith(VALUE_ERROR_PREFIX):
            message = message[len(VALUE_ERROR_PREFIX):]
        result.append(FieldError(name, message))
    return result
