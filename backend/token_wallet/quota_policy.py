"""
Quota Policy - pure plan and cost rules

Consulted before any ledger mutation. No I/O, no failure modes:
unknown languages and modes fall back to defaults.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from .config import (
    PLAN_CONFIGS,
    LANGUAGE_TOKEN_COSTS,
    MODE_MULTIPLIERS,
    UNLIMITED_TOKENS
)


def is_valid_plan(plan: str) -> bool:
    return plan in PLAN_CONFIGS


def get_daily_limit(plan: str) -> int:
    """Daily free allotment for a plan; UNLIMITED_TOKENS for unlimited plans."""
    config = PLAN_CONFIGS.get(plan)
    if not config:
        raise ValueError(f"Unknown plan: {plan}")
    return config["daily_limit"]


def is_unlimited_plan(plan: str) -> bool:
    config = PLAN_CONFIGS.get(plan)
    return bool(config and config["is_unlimited"])


def can_purchase_tokens(plan: str) -> bool:
    config = PLAN_CONFIGS.get(plan)
    return bool(config and config["can_purchase_tokens"])


def calculate_token_cost(language: Optional[str], mode: Optional[str] = "standard") -> int:
    """
    Token cost of one generation.

    Non-English languages and deeper study modes cost more, in proportion
    to the LLM usage they cause. Result is rounded up and never below 1.
    """
    base_cost = LANGUAGE_TOKEN_COSTS.get(language or "", LANGUAGE_TOKEN_COSTS["default"])
    multiplier = MODE_MULTIPLIERS.get(mode or "", 1.0)
    return max(1, math.ceil(base_cost * multiplier))


def next_daily_reset(now: datetime) -> datetime:
    """Next UTC midnight strictly after now."""
    now_utc = now.astimezone(timezone.utc)
    tomorrow = (now_utc + timedelta(days=1)).date()
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=timezone.utc)


def is_reset_due(reset_at: Optional[str], now: datetime) -> bool:
    """True when the stored reset boundary has been reached (or is unreadable)."""
    if not reset_at:
        return True
    try:
        boundary = datetime.fromisoformat(reset_at.replace('Z', '+00:00'))
    except (ValueError, AttributeError):
        return True
    if boundary.tzinfo is None:
        boundary = boundary.replace(tzinfo=timezone.utc)
    return now >= boundary


__all__ = [
    "UNLIMITED_TOKENS",
    "is_valid_plan",
    "get_daily_limit",
    "is_unlimited_plan",
    "can_purchase_tokens",
    "calculate_token_cost",
    "next_daily_reset",
    "is_reset_due",
]
