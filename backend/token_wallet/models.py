"""
Token Wallet Data Models

Pydantic models for ledger, purchase and history documents,
plus the request/response bodies of the token API.
"""

from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, List, Literal


# ==================== STATUS TAGS ====================

class PurchaseStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureKind(str, Enum):
    """Sub-tag on failed purchases. Only retryable failures may be reclaimed."""
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


# ==================== LEDGER MODELS ====================

class TokenLedger(BaseModel):
    """Per-user token ledger row (user_tokens collection)"""
    user_id: str
    plan: str
    daily_tokens_used: int = 0
    daily_reset_at: str  # ISO datetime string (UTC)
    purchased_balance: int = 0
    version: int = 0
    credited_refs: List[str] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class TokenBalance(BaseModel):
    """Read-only snapshot of a user's tokens"""
    available_tokens: int  # Remaining daily allotment
    purchased_tokens: int
    daily_limit: int
    daily_tokens_used: int
    daily_reset_at: Optional[str] = None
    total_tokens: int
    plan: str
    is_unlimited: bool = False
    can_purchase_tokens: bool = True


class TokenConsumptionResult(BaseModel):
    """Outcome of a single consumption attempt"""
    success: bool
    available_tokens: int
    purchased_tokens: int
    daily_limit: int
    total_tokens: int
    daily_tokens_used: int = 0  # Deducted from the daily allotment by this call
    purchased_tokens_used: int = 0  # Deducted from the purchased balance by this call
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class TokenCreditResult(BaseModel):
    success: bool
    new_purchased_balance: int
    already_applied: bool = False


class TokenOperationContext(BaseModel):
    """Caller-supplied context recorded with a token movement"""
    operation: Literal["consume", "purchase", "check", "grant"] = "consume"
    language: Optional[str] = None
    feature_name: Optional[str] = None
    operation_type: Optional[str] = None
    study_mode: Optional[str] = None
    content_title: Optional[str] = None
    content_reference: Optional[str] = None
    input_type: Optional[Literal["scripture", "topic", "question"]] = None
    session_id: Optional[str] = None


class TokenTransaction(BaseModel):
    """Immutable log entry (token_transactions collection)"""
    user_id: str
    source: Literal["usage", "purchase", "grant"]
    tokens_total: int
    daily_tokens: int = 0
    purchased_tokens: int = 0
    request_id: str
    timestamp: str
    details: Optional[dict] = None


# ==================== PURCHASE MODELS ====================

class PendingPurchase(BaseModel):
    """Purchase lifecycle record (pending_token_purchases collection)"""
    order_id: str
    user_id: str
    token_amount: int
    amount_minor: int
    currency: str = "INR"
    status: PurchaseStatus = PurchaseStatus.PENDING
    failure_kind: Optional[FailureKind] = None
    error_message: Optional[str] = None
    payment_id: Optional[str] = None
    claim_id: Optional[str] = None
    claimed_by: Optional[Literal["client", "webhook"]] = None
    claimed_at: Optional[str] = None
    credited: bool = False
    credited_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None


class PurchaseHistoryRecord(BaseModel):
    """Append-only record of a completed purchase"""
    order_id: str
    user_id: str
    token_amount: int
    amount_minor: int
    amount_major: float
    currency: str
    payment_id: str
    payment_method: Optional[str] = None
    payment_provider: str = "razorpay"
    status: Literal["completed"] = "completed"
    receipt_number: str
    purchased_at: str


class PurchaseStats(BaseModel):
    total_purchases: int = 0
    total_tokens: int = 0
    total_spent: float = 0.0
    average_purchase: float = 0.0
    last_purchase_date: Optional[str] = None
    most_used_payment_method: str = "unknown"


# ==================== REQUEST / RESPONSE MODELS ====================

class ConfirmPurchaseRequest(BaseModel):
    """Fields are optional so missing values map to INVALID_REQUEST, not 422"""
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    signature: Optional[str] = None


class ConfirmPurchaseResponse(BaseModel):
    success: bool = True
    message: str
    tokens_added: Optional[int] = None
    already_completed: bool = False
    token_balance: TokenBalance


class TokenEstimateRequest(BaseModel):
    language: str = Field("en", description="Target language code: en, hi, ml")
    mode: str = Field("standard", description="Study mode: quick, standard, deep, lectio, sermon")


class TokenEstimateResponse(BaseModel):
    language: str
    mode: str
    estimated_tokens: int
    current_balance: int
    sufficient_tokens: bool


class TokenConsumeRequest(TokenEstimateRequest):
    feature_name: Optional[str] = None
    operation_type: Optional[str] = None
    content_title: Optional[str] = None
    content_reference: Optional[str] = None
    input_type: Optional[Literal["scripture", "topic", "question"]] = None
