"""
Shared - settings read once at start-up

Timeouts scale with what the call is worth: liveness checks get a short
leash, payment charges the longest one.
"""

import os


def _seconds(name: str, default_ms: int) -> float:
    return int(os.environ.get(name, default_ms)) / 1000


def _flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


USER_SERVICE_URL = os.environ.get("USER_SERVICE_URL", "http://user-service:3001")
ORDER_SERVICE_URL = os.environ.get("ORDER_SERVICE_URL", "http://order-service:3002")
PAYMENT_SERVICE_URL = os.environ.get("PAYMENT_SERVICE_URL", "http://payment-service:3003")

DATABASE_URL = os.environ.get("DATABASE_URL")
REDIS_URL = os.environ.get("REDIS_URL")

HEALTH_CHECK_TIMEOUT = _seconds("HEALTH_CHECK_TIMEOUT_MS", 3000)
USER_SERVICE_TIMEOUT = _seconds("USER_SERVICE_TIMEOUT_MS", 5000)
ORDER_SERVICE_TIMEOUT = _seconds("ORDER_SERVICE_TIMEOUT_MS", 5000)
PAYMENT_SERVICE_TIMEOUT = _seconds("PAYMENT_SERVICE_TIMEOUT_MS", 10000)
REFUND_TIMEOUT = _seconds("REFUND_TIMEOUT_MS", 5000)
ENRICHMENT_TIMEOUT = _seconds("ENRICHMENT_TIMEOUT_MS", 3000)
WEBHOOK_TIMEOUT = _seconds("WEBHOOK_TIMEOUT_MS", 3000)

PAYMENT_BREAKER_ENABLED = _flag("PAYMENT_BREAKER_ENABLED", True)
PAYMENT_BREAKER_RESET_TIMEOUT = _seconds("PAYMENT_BREAKER_RESET_MS", 10000)
PAYMENT_BREAKER_FAIL_MAX = int(os.environ.get("PAYMENT_BREAKER_FAIL_MAX", "5"))
PAYMENT_DECLINE_RATE = float(os.environ.get("PAYMENT_DECLINE_RATE", "0"))
PAYMENT_MAX_AMOUNT = os.environ.get("PAYMENT_MAX_AMOUNT", "100000")


def port(default: int) -> int:
    return int(os.environ.get("PORT", default))
