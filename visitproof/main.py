"""
HTTP service for visitproof.

Composition root: builds the process-lifetime singletons (rate limiter,
replay guard, circuit breakers, receipt scorer, orchestrator) once and hands
them to the endpoints through `app.state.services`.

Endpoints:
    GET  /health
    GET  /popups/{popup_id}/code   kiosk display code (X-Kiosk-Api-Key)
    POST /checkin                  presence verification
    GET  /rate-limit/status        limiter backend and circuit states
"""

import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import config
from .circuit_breaker import CircuitBreakerRegistry, default_registry
from .geo import analyze_gps_spoofing
from .kvstore import UpstashRestClient, client_from_env
from .logging_config import audit_log, configure_logging, set_request_id
from .models import (
    CheckInRequest,
    CheckInResponse,
    FieldErrorModel,
    HealthResponse,
    KioskCodeResponse,
    RateLimitErrorBody,
    RateLimitStatusResponse,
    ValidationErrorBody,
)
from .popups import InMemoryPopupDirectory, Popup, PopupDirectory
from .rate_limit import (
    RATE_LIMITS,
    AdmissionLimiter,
    RateLimitResult,
    RateLimiterBackend,
    build_rate_limiter,
    get_client_ip,
    rate_limiter_status,
    validate_production_rate_limiting,
)
from .receipt import RECEIPT_DEPENDENCY, ReceiptScorer, ReceiptServiceClient
from .replay import InMemoryUsedTokenStore, KeyValueUsedTokenStore, ReplayGuard, run_periodic_sweep
from .retry import BackoffPolicy
from .totp import derive_popup_secret, generate_qr_code_data, window_start
from .util import constant_time_compare
from .validation import field_errors
from .verification import (
    METHOD_ORDER,
    GpsData,
    OnSiteCodeGate,
    QrData,
    ReceiptData,
    VerificationOrchestrator,
    VerificationRequest,
    method_status,
    verification_summary,
)

logger = logging.getLogger(__name__)

SPOOFING_ALERT_RISK = 50


# ============================================================
# Composition
# ============================================================

@dataclass
class Services:
    """Process-lifetime singletons shared by all requests."""
    limiter: RateLimiterBackend
    replay_guard: ReplayGuard
    code_gate: OnSiteCodeGate
    orchestrator: VerificationOrchestrator
    popups: PopupDirectory
    breakers: CircuitBreakerRegistry
    popup_secret_key: str = ""
    kiosk_api_key: str = ""


def build_services(
    kv_client: Optional[UpstashRestClient] = None,
    popups: Optional[PopupDirectory] = None,
    breakers: CircuitBreakerRegistry = default_registry
) -> Services:
    """Wire the service from configuration."""
    limiter = build_rate_limiter(kv_client, max_entries=config.RATE_LIMIT_MAX_ENTRIES)

    if kv_client is not None:
        replay_guard = ReplayGuard(KeyValueUsedTokenStore(kv_client))
    else:
        replay_guard = ReplayGuard(InMemoryUsedTokenStore())

    breaker = breakers.get(
        RECEIPT_DEPENDENCY,
        failure_threshold=config.RECEIPT_FAILURE_THRESHOLD,
        recovery_timeout=config.RECEIPT_RECOVERY_TIMEOUT,
        request_timeout=config.RECEIPT_REQUEST_TIMEOUT,
    )
    receipt_scorer = ReceiptScorer(
        ReceiptServiceClient(config.RECEIPT_SERVICE_URL, timeout=config.RECEIPT_REQUEST_TIMEOUT),
        breaker,
        retry_policy=BackoffPolicy(retries=config.RECEIPT_RETRIES, min_timeout=0.5, max_timeout=5.0),
        limiter=AdmissionLimiter(config.OCR_MAX_RPM, window=60.0, max_concurrent=config.OCR_MAX_CONCURRENT),
    )

    if popups is None:
        popups = (
            InMemoryPopupDirectory.from_file(config.POPUPS_FILE)
            if config.POPUPS_FILE else InMemoryPopupDirectory()
        )

    return Services(
        limiter=limiter,
        replay_guard=replay_guard,
        code_gate=OnSiteCodeGate(replay_guard),
        orchestrator=VerificationOrchestrator(receipt_scorer),
        popups=popups,
        breakers=breakers,
        popup_secret_key=config.POPUP_SECRET_KEY,
        kiosk_api_key=config.KIOSK_API_KEY,
    )


class RateLimitExceeded(Exception):
    def __init__(self, result: RateLimitResult):
        self.result = result
        super().__init__("rate limit exceeded")


# ============================================================
# Request helpers
# ============================================================

async def enforce_rate_limit(request: Request, preset: str, endpoint: str) -> RateLimitResult:
    """
    Apply a rate limit preset to the calling client.

    Raises:
        RateLimitExceeded: the client is over the limit
    """
    services: Services = request.app.state.services
    limits = RATE_LIMITS[preset]
    client_ip = get_client_ip(request.headers)

    result = await services.limiter.check_limit(f"{endpoint}:{client_ip}", limits.limit, limits.window)
    if not result.success:
        audit_log.rate_limit_exceeded(client_ip, endpoint)
        raise RateLimitExceeded(result)
    return result


def rate_limited(preset: str, endpoint: str):
    """Endpoint dependency; runs before the request body is validated."""

    async def dependency(request: Request) -> RateLimitResult:
        return await enforce_rate_limit(request, preset, endpoint)

    return dependency


def lookup_popup(services: Services, popup_id: str) -> Popup:
    popup = services.popups.get(popup_id)
    if popup is None:
        raise HTTPException(404, "POPUP_NOT_FOUND")
    if not popup.is_active:
        raise HTTPException(409, "POPUP_NOT_ACTIVE")
    return popup


def popup_secret(services: Services, popup_id: str) -> Optional[str]:
    if not services.popup_secret_key:
        return None
    return derive_popup_secret(services.popup_secret_key, popup_id)


# ============================================================
# Application
# ============================================================

def create_app(services: Optional[Services] = None, configure_logs: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Pre-built singletons (tests); built from configuration
            at startup when None
        configure_logs: Install the JSON log handler at startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if configure_logs:
            configure_logging(config.LOG_LEVEL, config.LOG_JSON, config.LOG_FILE or None)

        if services is None:
            app.state.services = build_services(kv_client=client_from_env())
        else:
            app.state.services = services

        check = validate_production_rate_limiting(app.state.services.limiter, config.is_production())
        for warning in check["warnings"]:
            logger.warning(warning)

        sweeper = asyncio.create_task(run_periodic_sweep(app.state.services.replay_guard))
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper

    app = FastAPI(title="visitproof", debug=config.is_debug(), lifespan=lifespan)

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = set_request_id(request.headers.get("x-request-id"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        reset_in = max(0.0, exc.result.reset_in)
        body = RateLimitErrorBody(reset_in=round(reset_in, 3))
        return JSONResponse(
            status_code=429,
            content=body.model_dump(),
            headers={"Retry-After": str(max(1, int(reset_in + 0.999)))},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        body = ValidationErrorBody(
            errors=[FieldErrorModel(**e.to_dict()) for e in field_errors(exc.errors())]
        )
        return JSONResponse(status_code=400, content=body.model_dump())

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request):
        services: Services = request.app.state.services
        return HealthResponse(environment=config.ENV, rate_limiter=services.limiter.kind)

    @app.get("/popups/{popup_id}/code", response_model=KioskCodeResponse)
    async def kiosk_code(popup_id: str, request: Request, _=Depends(rate_limited("relaxed", "popup_code"))):
        services: Services = request.app.state.services

        provided = request.headers.get("x-kiosk-api-key")
        if not services.kiosk_api_key or not constant_time_compare(provided, services.kiosk_api_key):
            audit_log.security_event("kiosk_auth_failed", severity="medium", popup_id=popup_id)
            raise HTTPException(401, "KIOSK_AUTH_REQUIRED")

        popup = lookup_popup(services, popup_id)
        secret = popup_secret(services, popup_id)
        if secret is None:
            raise HTTPException(503, "ONSITE_CODES_NOT_CONFIGURED")

        qr = generate_qr_code_data(secret)
        return KioskCodeResponse(
            popup_id=popup.popup_id,
            brand_name=popup.brand_name,
            code=qr.code,
            refresh_in=qr.refresh_in,
            valid_until=qr.valid_until,
        )

    @app.post("/checkin", response_model=CheckInResponse)
    async def checkin(req: CheckInRequest, request: Request, _=Depends(rate_limited("strict", "checkin"))):
        services: Services = request.app.state.services
        popup = lookup_popup(services, req.store_id)

        gps_data = None
        spoofing_risk = None
        location = req.user_location
        if location is not None:
            gps_data = GpsData(user_location=location)
            hints = analyze_gps_spoofing(location, reported_accuracy=req.user_gps_accuracy)
            spoofing_risk = hints.risk_score
            if hints.risk_score >= SPOOFING_ALERT_RISK:
                audit_log.security_event(
                    "gps_spoofing_suspected",
                    severity="high",
                    popup_id=popup.popup_id,
                    risk_score=hints.risk_score,
                    inconsistent_accuracy=hints.inconsistent_accuracy,
                )

        qr_data = None
        if req.scanned_qr_code is not None:
            secret = popup_secret(services, popup.popup_id)
            if secret is None:
                logger.error("POPUP_SECRET_KEY is not configured; on-site code cannot match")
                qr_data = QrData(
                    input_code=req.scanned_qr_code,
                    valid_code=None,
                    generated_at=window_start(time.time()),
                )
            else:
                qr_data = await services.code_gate.check(
                    req.scanned_qr_code, secret, popup.popup_id, req.user_id
                )

        receipt_data = None
        if req.receipt_image_base64 is not None:
            receipt_data = ReceiptData(
                image_base64=req.receipt_image_base64,
                purchase_date=req.purchased_at,
            )

        result = await services.orchestrator.verify(VerificationRequest(
            popup_id=popup.popup_id,
            user_id=req.user_id,
            popup_location=popup.location,
            brand_name=popup.brand_name,
            gps_data=gps_data,
            qr_data=qr_data,
            receipt_data=receipt_data,
        ))

        statuses = []
        for method in METHOD_ORDER:
            status = method_status(method, result).to_dict()
            status["method"] = method
            statuses.append(status)

        return CheckInResponse(
            result=result.to_dict(),
            summary=verification_summary(result).to_dict(),
            method_statuses=statuses,
            spoofing_risk=spoofing_risk,
        )

    @app.get("/rate-limit/status", response_model=RateLimitStatusResponse)
    async def rate_limit_status(request: Request, _=Depends(rate_limited("normal", "rate_limit_status"))):
        services: Services = request.app.state.services
        return RateLimitStatusResponse(
            limiter=rate_limiter_status(services.limiter),
            production_check=validate_production_rate_limiting(services.limiter, config.is_production()),
            circuits=services.breakers.snapshot(),
        )

    return app


app = create_app()
