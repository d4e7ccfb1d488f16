"""
Configuration module for visitproof.

Centralizes all configuration with environment variable support.
"""

import os

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("VISITPROOF_ENV", "dev")  # dev|stage|prod

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")
LOG_FILE = os.getenv("LOG_FILE", "")

# Receipt verification service
RECEIPT_SERVICE_URL = os.getenv("RECEIPT_SERVICE_URL", "http://localhost:8081")
RECEIPT_REQUEST_TIMEOUT = float(os.getenv("RECEIPT_REQUEST_TIMEOUT", "10"))
RECEIPT_FAILURE_THRESHOLD = int(os.getenv("RECEIPT_FAILURE_THRESHOLD", "5"))
RECEIPT_RECOVERY_TIMEOUT = float(os.getenv("RECEIPT_RECOVERY_TIMEOUT", "30"))
RECEIPT_RETRIES = int(os.getenv("RECEIPT_RETRIES", "2"))

# OCR provider quota (requests per minute, simultaneous calls)
OCR_MAX_RPM = int(os.getenv("OCR_MAX_RPM", "60"))
OCR_MAX_CONCURRENT = int(os.getenv("OCR_MAX_CONCURRENT", "5"))

# Distributed key-value store (REST)
UPSTASH_REDIS_REST_URL = os.getenv("UPSTASH_REDIS_REST_URL", "")
UPSTASH_REDIS_REST_TOKEN = os.getenv("UPSTASH_REDIS_REST_TOKEN", "")
KV_REQUEST_TIMEOUT = float(os.getenv("KV_REQUEST_TIMEOUT", "2"))

# Rate limiting
RATE_LIMIT_MAX_ENTRIES = int(os.getenv("RATE_LIMIT_MAX_ENTRIES", "100000"))

# Venue directory (JSON list of popups)
POPUPS_FILE = os.getenv("POPUPS_FILE", "")

# Secrets
POPUP_SECRET_KEY = os.getenv("POPUP_SECRET_KEY", "")
KIOSK_API_KEY = os.getenv("KIOSK_API_KEY", "")


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("VISITPROOF_DEBUG", "").lower() in ("1", "true", "yes")


def kv_store_configured() -> bool:
    """Check if the distributed key-value store is configured."""
    return bool(UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN)
