"""
Plan Resolver - Resolves a user's token plan from the user document

Rules:
- Admins are always on the unlimited plan
- Active/trialing subscriptions map to their plan
- Lapsed or missing subscriptions fall back to DEFAULT_PLAN
"""

import logging
from typing import Optional

from .config import DEFAULT_PLAN, PLAN_CONFIGS

logger = logging.getLogger(__name__)

# Normalize plan names (handle variations)
PLAN_MAPPING = {
    "free": "free",
    "standard": "standard",
    "basic": "standard",
    "plus": "plus",
    "premium": "premium",
    "monthly": "premium",  # Legacy mapping
    "yearly": "premium"    # Legacy mapping
}

ACTIVE_STATUSES = {"active", "trialing", "trial"}


def plan_for_user(user: Optional[dict]) -> str:
    """Token plan for an already-loaded user document."""
    if not user:
        return DEFAULT_PLAN

    if user.get("is_admin"):
        return "premium"

    subscription = user.get("subscription") or {}
    if not subscription:
        return DEFAULT_PLAN

    status = (subscription.get("status") or "").lower()
    if status not in ACTIVE_STATUSES:
        return DEFAULT_PLAN

    plan = PLAN_MAPPING.get((subscription.get("plan") or "").lower(), DEFAULT_PLAN)
    return plan if plan in PLAN_CONFIGS else DEFAULT_PLAN


async def resolve_user_plan(db, user_id: str) -> str:
    """
    Resolve a user's plan by id.

    Note:
        - Does NOT modify any data
        - Returns DEFAULT_PLAN if the user cannot be found
    """
    user = await db.users.find_one(
        {"id": user_id},
        {"_id": 0, "is_admin": 1, "subscription": 1}
    )

    if not user:
        logger.warning(f"User not found for plan resolution: {user_id}")

    return plan_for_user(user)
