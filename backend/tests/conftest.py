"""
Shared fixtures for token wallet tests.

Environment is set before any backend import: database.py validates
MONGO_URL/DB_NAME on import and the verifier reads secrets from the env.
"""

import os
import sys
from datetime import datetime, timezone
from pathlib import Path

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "token_wallet_test")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test_key_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test_webhook_secret")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

# Add backend to path for direct imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
from mongomock_motor import AsyncMongoMockClient

from token_wallet.payment_verifier import PaymentVerifier, compute_signature

KEY_SECRET = os.environ["RAZORPAY_KEY_SECRET"]
WEBHOOK_SECRET = os.environ["RAZORPAY_WEBHOOK_SECRET"]


@pytest.fixture
def db():
    """Fresh in-memory motor database per test."""
    return AsyncMongoMockClient()["token_wallet_test"]


@pytest.fixture
def verifier():
    return PaymentVerifier(key_secret=KEY_SECRET, webhook_secret=WEBHOOK_SECRET)


def sign(order_id: str, payment_id: str) -> str:
    """Checkout signature as Razorpay would produce it."""
    return compute_signature(KEY_SECRET, f"{order_id}|{payment_id}")


class FixedClock:
    """Settable clock for reset-boundary tests."""

    def __init__(self, now: datetime = None):
        self.now = now or datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now
