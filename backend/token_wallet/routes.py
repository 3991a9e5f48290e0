"""
Token Wallet API Routes

Endpoints:
- GET /api/tokens - Balance snapshot
- POST /api/tokens/estimate - Estimate token cost
- POST /api/tokens/consume - Deduct tokens for an operation
- GET /api/tokens/transactions - Token transaction log
- POST /api/tokens/purchase/confirm - Confirm a gateway payment
- GET /api/tokens/purchase/{order_id} - Purchase status
- GET /api/tokens/purchase-history - Completed purchases
- GET /api/tokens/purchase-stats - Purchase statistics
- POST /api/tokens/webhook - Razorpay webhook handler
- GET /api/tokens/admin/stats - Admin statistics
- POST /api/tokens/admin/credit - Admin token grant
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Query, Header
from pydantic import BaseModel, Field

from database import db
from utils.auth import get_current_user, get_admin_user
from token_wallet.consumption_service import ConsumptionService
from token_wallet.errors import WalletError
from token_wallet.ledger_store import TokenLedgerStore
from token_wallet.models import (
    ConfirmPurchaseRequest,
    ConfirmPurchaseResponse,
    TokenBalance,
    TokenConsumeRequest,
    TokenEstimateRequest,
    TokenEstimateResponse,
    TokenOperationContext
)
from token_wallet.plan_resolver import plan_for_user, resolve_user_plan
from token_wallet.purchase_history import PurchaseHistoryStore
from token_wallet.purchase_service import PurchaseService
from token_wallet.purchase_store import PurchaseStore
from token_wallet.quota_policy import calculate_token_cost

logger = logging.getLogger(__name__)

tokens_router = APIRouter(prefix="/tokens", tags=["Tokens"])

# Fields of a pending purchase that are safe to show the buyer
_PURCHASE_STATUS_FIELDS = (
    "order_id", "status", "token_amount", "amount_minor", "currency",
    "failure_kind", "error_message", "payment_id", "created_at", "completed_at"
)


# ==================== BALANCE ENDPOINTS ====================

@tokens_router.get("", response_model=TokenBalance)
async def get_tokens(user: dict = Depends(get_current_user)):
    """
    Get current user's token balance.

    Applies a due daily reset before answering.
    """
    return await ConsumptionService(db).get_user_tokens(user["id"], plan_for_user(user))


@tokens_router.post("/estimate", response_model=TokenEstimateResponse)
async def estimate_tokens(
    request: TokenEstimateRequest,
    user: dict = Depends(get_current_user)
):
    """
    Estimate token cost for an operation.

    Does NOT deduct any tokens.
    """
    cost = calculate_token_cost(request.language, request.mode)
    balance = await ConsumptionService(db).get_user_tokens(user["id"], plan_for_user(user))

    return TokenEstimateResponse(
        language=request.language,
        mode=request.mode,
        estimated_tokens=cost,
        current_balance=balance.total_tokens,
        sufficient_tokens=balance.total_tokens >= cost
    )


@tokens_router.post("/consume")
async def consume_tokens(
    request: TokenConsumeRequest,
    user: dict = Depends(get_current_user)
):
    """
    Deduct the cost of an operation.

    Returns 429 INSUFFICIENT_TOKENS when the balance cannot cover it.
    """
    plan = plan_for_user(user)
    cost = calculate_token_cost(request.language, request.mode)
    context = TokenOperationContext(
        operation="consume",
        language=request.language,
        study_mode=request.mode,
        feature_name=request.feature_name,
        operation_type=request.operation_type,
        content_title=request.content_title,
        content_reference=request.content_reference,
        input_type=request.input_type
    )

    result = await ConsumptionService(db).consume_tokens(user["id"], plan, cost, context)
    if not result.success:
        raise WalletError(result.error_code or "INSUFFICIENT_TOKENS", result.error_message)

    return {
        "tokens_consumed": cost,
        **result.model_dump(exclude={"error_code", "error_message"})
    }


@tokens_router.get("/transactions")
async def get_transactions(
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user)
):
    """Token usage, purchase and grant entries, newest first."""
    entries = await ConsumptionService(db).get_transactions(user["id"], limit)

    return {
        "entries": entries,
        "count": len(entries)
    }


# ==================== PURCHASE ENDPOINTS ====================

@tokens_router.post("/purchase/confirm", response_model=ConfirmPurchaseResponse)
async def confirm_purchase(
    body: ConfirmPurchaseRequest,
    user: dict = Depends(get_current_user)
):
    """
    Confirm a payment after the Razorpay checkout returns.

    Safe to repeat: a completed order answers with already_completed=true.
    """
    if not body.order_id or not body.payment_id or not body.signature:
        raise WalletError(
            "INVALID_REQUEST",
            "Missing required fields: order_id, payment_id, signature"
        )

    return await PurchaseService(db).confirm_purchase(
        user["id"],
        plan_for_user(user),
        body.order_id,
        body.payment_id,
        body.signature
    )


@tokens_router.get("/purchase/{order_id}")
async def get_purchase_status(order_id: str, user: dict = Depends(get_current_user)):
    """Status of one of the caller's purchases."""
    purchase = await PurchaseStore(db).get(order_id, user["id"])
    if not purchase:
        raise WalletError("PURCHASE_NOT_FOUND")

    return {field: purchase.get(field) for field in _PURCHASE_STATUS_FIELDS}


@tokens_router.get("/purchase-history")
async def get_purchase_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: dict = Depends(get_current_user)
):
    """Completed purchases with receipt numbers, newest first."""
    purchases = await PurchaseHistoryStore(db).get_user_history(user["id"], limit, offset)

    return {
        "purchases": purchases,
        "count": len(purchases),
        "limit": limit,
        "offset": offset
    }


@tokens_router.get("/purchase-stats")
async def get_purchase_stats(user: dict = Depends(get_current_user)):
    return await PurchaseHistoryStore(db).get_user_stats(user["id"])


# ==================== WEBHOOK ====================

@tokens_router.post("/webhook")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None)
):
    """
    Razorpay webhook handler.

    The signature covers the raw body, so the body is read before parsing.
    """
    body = await request.body()
    return await PurchaseService(db).process_webhook(body, x_razorpay_signature)


# ==================== ADMIN ENDPOINTS ====================

class AdminCreditBody(BaseModel):
    user_id: str
    amount: int = Field(..., description="Tokens to add to the purchased balance")
    reason: Optional[str] = None


@tokens_router.get("/admin/stats")
async def get_admin_stats(admin: dict = Depends(get_admin_user)):
    """Aggregate token and purchase statistics."""
    token_totals = await TokenLedgerStore(db).get_totals()
    purchases_by_status = await PurchaseStore(db).count_by_status()

    return {
        "tokens": token_totals,
        "purchases": purchases_by_status
    }


@tokens_router.post("/admin/credit")
async def admin_credit_tokens(body: AdminCreditBody, admin: dict = Depends(get_admin_user)):
    """
    Grant tokens to a user.

    Not idempotent: every call adds tokens.
    """
    plan = await resolve_user_plan(db, body.user_id)
    result = await ConsumptionService(db).add_purchased_tokens(
        body.user_id,
        plan,
        body.amount,
        context=TokenOperationContext(operation="grant", operation_type=body.reason),
        source="grant"
    )

    logger.info(f"Admin {admin.get('id')} granted {body.amount} tokens to {body.user_id}")

    return {
        "success": result.success,
        "user_id": body.user_id,
        "tokens_added": body.amount,
        "new_purchased_balance": result.new_purchased_balance
    }
