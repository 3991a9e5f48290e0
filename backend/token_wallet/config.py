"""
Token Wallet Configuration and Constants

Plan limits, generation costs, purchase bounds and error codes are defined here.
Amounts are in tokens; money is in minor units (paise).
"""

import logging
import os

logger = logging.getLogger(__name__)

# ==================== PLANS ====================
# Sentinel daily limit for plans exempt from metering
UNLIMITED_TOKENS = 999_999_999

PLAN_CONFIGS = {
    "free": {
        "daily_limit": 8,
        "is_unlimited": False,
        "can_purchase_tokens": True,
        "description": "Free plan users with 8 daily tokens"
    },
    "standard": {
        "daily_limit": 20,
        "is_unlimited": False,
        "can_purchase_tokens": True,
        "description": "Authenticated users with 20 daily tokens + purchase option"
    },
    "plus": {
        "daily_limit": 50,
        "is_unlimited": False,
        "can_purchase_tokens": True,
        "description": "Plus plan users with 50 daily tokens + purchase option"
    },
    "premium": {
        "daily_limit": UNLIMITED_TOKENS,
        "is_unlimited": True,
        "can_purchase_tokens": False,
        "description": "Unlimited access for admin and subscription users"
    }
}

# Plan used when a user has no resolvable subscription
DEFAULT_PLAN = "standard"

# ==================== GENERATION COSTS ====================
# Base cost per study guide by language
LANGUAGE_TOKEN_COSTS = {
    "en": 10,
    "hi": 15,
    "ml": 15,
    "default": 10
}

# Multipliers applied on top of the language cost
MODE_MULTIPLIERS = {
    "quick": 0.5,
    "standard": 1.0,
    "deep": 1.5,
    "lectio": 1.2,
    "sermon": 2.0
}

MAX_TOKEN_COST = 1000

# ==================== PURCHASES ====================
PURCHASE_CONFIG = {
    "min_purchase": 1,
    "max_purchase": 10000,
    "currency": "INR",
    "provider": "razorpay"
}

RECEIPT_PREFIX = "DISC"

# Bounded wait (seconds) used when another handler owns a purchase claim.
# One read after each delay; keep the total in low single-digit seconds.
DEFAULT_PURCHASE_POLL_DELAYS = (1.0, 1.5)


def purchase_poll_delays():
    """
    Poll delays from PURCHASE_POLL_DELAYS (comma separated seconds).

    A malformed value falls back to the defaults.
    """
    raw = os.environ.get("PURCHASE_POLL_DELAYS", "")
    if not raw:
        return DEFAULT_PURCHASE_POLL_DELAYS
    try:
        delays = tuple(float(part) for part in raw.split(",") if part.strip())
    except ValueError:
        logger.warning(f"Invalid PURCHASE_POLL_DELAYS={raw!r}, using defaults")
        return DEFAULT_PURCHASE_POLL_DELAYS
    if any(delay < 0 for delay in delays):
        logger.warning(f"Negative PURCHASE_POLL_DELAYS={raw!r}, using defaults")
        return DEFAULT_PURCHASE_POLL_DELAYS
    return delays


# A processing claim older than this is treated as abandoned and may be
# reclaimed. Must exceed the worst-case runtime of one owner sequence.
PURCHASE_CLAIM_LEASE_SECONDS = 120

# Optimistic compare-and-set attempts for a single consumption
CAS_MAX_ATTEMPTS = 5

# Webhook events handled by the gateway path
WEBHOOK_PAYMENT_CAPTURED = "payment.captured"
WEBHOOK_PAYMENT_FAILED = "payment.failed"

# ==================== ERROR CODES ====================
# code -> (http status, default message)
ERROR_CODES = {
    "AUTHENTICATION_REQUIRED": (401, "You must be logged in to perform this action"),
    "ADMIN_REQUIRED": (403, "Admin access required"),
    "INVALID_REQUEST": (400, "Missing required fields: order_id, payment_id, signature"),
    "VALIDATION_ERROR": (400, "Invalid input"),
    "INVALID_SIGNATURE": (401, "Payment signature verification failed"),
    "MISSING_SIGNATURE": (400, "Webhook signature is required"),
    "INVALID_PAYLOAD": (400, "Webhook payload is invalid"),
    "PURCHASE_NOT_FOUND": (404, "Pending purchase not found or unauthorized"),
    "PURCHASE_ALREADY_PROCESSING": (409, "Purchase is already being processed"),
    "PURCHASE_FAILED": (400, "This purchase has failed and cannot be completed"),
    "INSUFFICIENT_TOKENS": (429, "Not enough tokens. Please purchase more or wait for the daily reset."),
    "PURCHASE_CONFIRMATION_FAILED": (500, "Failed to confirm token purchase"),
    "TOKEN_SERVICE_ERROR": (500, "Token service is temporarily unavailable"),
    "WEBHOOK_PROCESSING_ERROR": (500, "Failed to process webhook")
}
