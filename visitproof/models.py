from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from typing import Any, Dict, List, Optional

from .geo import Coordinates
from .validation import (
    ValidationResult,
    parse_iso8601,
    validate_gps_accuracy,
    validate_latitude,
    validate_longitude,
    validate_purchase_date,
    validate_qr_code,
    validate_receipt_image,
    validate_store_id,
    validate_user_id,
)


def _raise_for(result: ValidationResult) -> None:
    if not result.valid:
        raise ValueError("; ".join(e.message for e in result.errors))


class CheckInRequest(BaseModel):
    """
    POST /checkin body.

    store_id and user_id are required. The signal blocks are optional but
    come in pairs: user_lat with user_lng, receipt_image_base64 with
    purchase_date.
    """
    model_config = ConfigDict(strict=True)

    store_id: str
    user_id: str
    user_lat: Optional[float] = None
    user_lng: Optional[float] = Field(default=None, validate_default=True)
    user_gps_accuracy: Optional[float] = None
    scanned_qr_code: Optional[str] = None
    receipt_image_base64: Optional[str] = None
    purchase_date: Optional[str] = Field(default=None, validate_default=True)

    @field_validator("store_id")
    @classmethod
    def check_store_id(cls, v: str) -> str:
        _raise_for(validate_store_id(v))
        return v

    @field_validator("user_id")
    @classmethod
    def check_user_id(cls, v: str) -> str:
        _raise_for(validate_user_id(v))
        return v

    @field_validator("user_lat")
    @classmethod
    def check_user_lat(cls, v: Optional[float]) -> Optional[float]:
        if v is not None:
            _raise_for(validate_latitude(v))
        return v

    @field_validator("user_lng")
    @classmethod
    def check_user_lng(cls, v: Optional[float], info: ValidationInfo) -> Optional[float]:
        if v is not None:
            _raise_for(validate_longitude(v))
        if "user_lat" in info.data and (info.data["user_lat"] is None) != (v is None):
            raise ValueError("Latitude and longitude must be sent together")
        return v

    @field_validator("user_gps_accuracy")
    @classmethod
    def check_user_gps_accuracy(cls, v: Optional[float]) -> Optional[float]:
        if v is not None:
            _raise_for(validate_gps_accuracy(v))
        return v

    @field_validator("scanned_qr_code")
    @classmethod
    def check_scanned_qr_code(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            _raise_for(validate_qr_code(v))
        return v

    @field_validator("receipt_image_base64")
    @classmethod
    def check_receipt_image(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            _raise_for(validate_receipt_image(v))
        return v

    @field_validator("purchase_date")
    @classmethod
    def check_purchase_date(cls, v: Optional[str], info: ValidationInfo) -> Optional[str]:
        if v is not None:
            _raise_for(validate_purchase_date(v))
        elif info.data.get("receipt_image_base64") is not None:
            raise ValueError("Purchase date must be an ISO-8601 date")
        if v is not None and "receipt_image_base64" in info.data and info.data["receipt_image_base64"] is None:
            raise ValueError("A purchase date needs a receipt image")
        return v

    @property
    def user_location(self) -> Optional[Coordinates]:
        if self.user_lat is None or self.user_lng is None:
            return None
        return Coordinates(self.user_lat, self.user_lng)

    @property
    def purchased_at(self) -> Optional[datetime]:
        if self.purchase_date is None:
            return None
        return parse_iso8601(self.purchase_date)


class HealthResponse(BaseModel):
    status: str = "ok"
    environment: str
    rate_limiter: str


class KioskCodeResponse(BaseModel):
    popup_id: str
    brand_name: str
    code: str
    refresh_in: int
    valid_until: float


class FieldErrorModel(BaseModel):
    field: str
    message: str


class ValidationErrorBody(BaseModel):
    error: str = "VALIDATION_FAILED"
    errors: List[FieldErrorModel] = Field(default_factory=list)


class RateLimitErrorBody(BaseModel):
    success: bool = False
    remaining: int = 0
    reset_in: float


class MethodStatusModel(BaseModel):
    method: str
    label: str
    score: int
    max_score: int
    status: str


class VerificationSummaryModel(BaseModel):
    title: str
    message: str
    badge: str


class CheckInResponse(BaseModel):
    result: Dict[str, Any]
    summary: VerificationSummaryModel
    method_statuses: List[MethodStatusModel]
    spoofing_risk: Optional[int] = None


class RateLimitStatusResponse(BaseModel):
    limiter: Dict[str, Any]
    production_check: Dict[str, Any]
    circuits: Dict[str, Dict[str, Any]]
