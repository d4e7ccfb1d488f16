"""
Logging configuration for visitproof.

Provides structured JSON logging for audit trails and debugging.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')

SENSITIVE_FIELDS = ["secret", "password", "token", "code", "key", "auth", "cookie", "session", "image_base64"]


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


def redact_user_id(user_id: Optional[str]) -> Optional[str]:
    """Keep only a short prefix of a user id."""
    if not user_id:
        return user_id
    return user_id[:8] + "..." if len(user_id) > 8 else user_id


def sanitize_for_logging(data: Dict[str, Any], sensitive_fields: List[str] = None) -> Dict[str, Any]:
    """
    Sanitize data for logging by masking sensitive fields.

    A field is sensitive when its lowercased name contains any of the
    sensitive markers (``qr_code``, ``api_key`` and ``secret`` all match).

    Args:
        data: The data to sanitize
        sensitive_fields: Substrings marking a field as sensitive

    Returns:
        Sanitized copy of the data
    """
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    result = {}
    for key, value in data.items():
        lowered = key.lower()
        if any(marker in lowered for marker in sensitive_fields):
            result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = sanitize_for_logging(value, sensitive_fields)
        elif isinstance(value, list):
            result[key] = [
                sanitize_for_logging(item, sensitive_fields) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value

    return result


class AuditLogger:
    """
    Specialized logger for audit events.

    Provides methods for logging verification decisions, replay
    attempts, throttling and dependency health changes.
    """

    def __init__(self, name: str = "visitproof.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        """Internal logging method with extra fields."""
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def verification_decision(
        self,
        popup_id: str,
        user_id: str,
        total_score: int,
        passed: bool,
        methods: List[str]
    ) -> None:
        """Log the outcome of a presence verification."""
        self._log(
            logging.INFO,
            "VERIFICATION_DECISION",
            popup_id=popup_id,
            user_id=redact_user_id(user_id),
            total_score=total_score,
            passed=passed,
            methods=methods,
            message=f"Verification {'passed' if passed else 'failed'} with {total_score} points"
        )

    def replay_detected(
        self,
        popup_id: str,
        user_id: str
    ) -> None:
        """Log a reused on-site code."""
        self._log(
            logging.WARNING,
            "REPLAY_DETECTED",
            popup_id=popup_id,
            user_id=redact_user_id(user_id),
            message=f"On-site code reused for popup {popup_id}"
        )

    def rate_limit_exceeded(
        self,
        client_id: str,
        endpoint: str
    ) -> None:
        """Log rate limit exceeded."""
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=client_id,
            endpoint=endpoint,
            message=f"Rate limit exceeded for {client_id} on {endpoint}"
        )

    def circuit_state_change(
        self,
        name: str,
        previous: str,
        current: str,
        failure_count: int
    ) -> None:
        """Log a circuit breaker transition."""
        level = logging.WARNING if current == "OPEN" else logging.INFO
        self._log(
            level,
            "CIRCUIT_STATE_CHANGE",
            circuit=name,
            previous_state=previous,
            state=current,
            failure_count=failure_count,
            message=f"Circuit {name}: {previous} -> {current}"
        )

    def dependency_failure(
        self,
        dependency: str,
        reason: str
    ) -> None:
        """Log a recovered dependency failure."""
        self._log(
            logging.WARNING,
            "DEPENDENCY_FAILURE",
            dependency=dependency,
            reason=reason,
            message=f"Dependency {dependency} failed: {reason}"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
    ) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **sanitize_for_logging(details),
            message=f"Security event: {event}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


# Global audit logger instance
audit_log = AuditLogger()
