"""
Purchase Confirmation Service

Owns the lifecycle of a token purchase from pending row to ledger credit:

    pending --claim(wins)--> processing --verify+credit+record--> completed
    pending --claim(loses)--> bounded poll --sees completed--> completed (no-op)
    pending|processing --error--> failed (retryable | terminal)
    failed(retryable) --reclaim--> processing
    processing(claim older than lease) --reclaim--> processing
    completed --any re-entry--> completed (no-op)

Two independent paths complete a purchase: the client confirmation call
made after the checkout SDK returns, and the gateway webhook. Both run the
same claim-guarded routine, so whichever arrives first credits the ledger
and the other observes the terminal state.

Exactly-once crediting does not depend on the completed transition: the
ledger increment carries the order id as a credit reference, and the
purchase row records a credited flag, so a retry after a failure between
crediting and completion only finishes the marking.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, Sequence, Callable

from pymongo.errors import PyMongoError

from .config import (
    PURCHASE_CLAIM_LEASE_SECONDS,
    WEBHOOK_PAYMENT_CAPTURED,
    WEBHOOK_PAYMENT_FAILED,
    purchase_poll_delays
)
from .consumption_service import ConsumptionService
from .errors import WalletError, PaymentMismatchError
from .models import (
    ConfirmPurchaseResponse,
    FailureKind,
    PurchaseStatus,
    TokenOperationContext
)
from .payment_verifier import PaymentVerifier
from .plan_resolver import resolve_user_plan
from .purchase_history import PurchaseHistoryStore
from .purchase_store import PurchaseStore

logger = logging.getLogger(__name__)


class PurchaseService:
    """Claim-guarded purchase completion shared by client and webhook paths."""

    def __init__(
        self,
        db,
        verifier: Optional[PaymentVerifier] = None,
        tokens: Optional[ConsumptionService] = None,
        poll_delays: Optional[Sequence[float]] = None,
        claim_lease: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db
        self.purchases = PurchaseStore(db)
        self.history = PurchaseHistoryStore(db)
        self.tokens = tokens or ConsumptionService(db)
        self.verifier = verifier or PaymentVerifier()
        self.poll_delays = tuple(poll_delays) if poll_delays is not None else purchase_poll_delays()
        self.claim_lease = claim_lease if claim_lease is not None else PURCHASE_CLAIM_LEASE_SECONDS
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ==================== CLIENT PATH ====================

    async def confirm_purchase(
        self,
        user_id: str,
        plan: str,
        order_id: str,
        payment_id: str,
        signature: str
    ) -> ConfirmPurchaseResponse:
        """
        Confirm a purchase after the checkout SDK returns.

        Repeatable: confirming an already completed order returns the
        current balance and changes nothing.
        """
        if not self.verifier.verify_signature(order_id, payment_id, signature):
            logger.error(f"[Security] Invalid signature for payment confirmation: {payment_id}")
            await self.purchases.mark_failed(
                order_id,
                "Payment signature verification failed",
                FailureKind.TERMINAL,
                user_id=user_id,
                from_statuses=[PurchaseStatus.PENDING, PurchaseStatus.FAILED]
            )
            raise WalletError("INVALID_SIGNATURE")

        logger.info(f"[Security] Payment signature verified: {payment_id}")

        try:
            purchase = await self.purchases.get(order_id, user_id)
            if not purchase:
                raise WalletError("PURCHASE_NOT_FOUND")

            return await self._complete(purchase, payment_id, "client", plan, user_id=user_id)

        except WalletError as e:
            if e.status_code < 500:
                raise
            logger.error(f"[Purchase] Failed to confirm purchase {order_id}: {e}")
            raise WalletError("PURCHASE_CONFIRMATION_FAILED") from e
        except Exception as e:
            logger.error(f"[Purchase] Failed to confirm purchase {order_id}: {e}")
            raise WalletError("PURCHASE_CONFIRMATION_FAILED") from e

    # ==================== WEBHOOK PATH ====================

    async def process_webhook(self, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Handle a gateway webhook.

        Only payment.captured and payment.failed change state; other events
        are acknowledged and ignored.
        """
        if not signature:
            raise WalletError("MISSING_SIGNATURE")

        if not self.verifier.verify_webhook_signature(body, signature):
            logger.error("[Webhook] Invalid signature received")
            raise WalletError("INVALID_SIGNATURE", "Webhook signature verification failed")

        try:
            payload = json.loads(body.decode())
        except (ValueError, UnicodeDecodeError):
            raise WalletError("INVALID_PAYLOAD", "Webhook payload must be valid JSON")

        if not isinstance(payload, dict) or not payload.get("event"):
            raise WalletError("INVALID_PAYLOAD", "Webhook payload missing required event field")
        if not isinstance(payload.get("payload"), dict):
            raise WalletError("INVALID_PAYLOAD", "Webhook payload missing required payload field")

        event = payload["event"]
        payment = (payload["payload"].get("payment") or {}).get("entity") or {}
        order = (payload["payload"].get("order") or {}).get("entity") or {}

        logger.info(f"[Webhook] Processing event: {event}")

        if event == WEBHOOK_PAYMENT_CAPTURED:
            return await self._handle_payment_captured(payment, order)
        if event == WEBHOOK_PAYMENT_FAILED:
            return await self._handle_payment_failed(payment, order)

        logger.info(f"[Webhook] Ignoring event: {event}")
        return {"success": True, "message": f"Event {event} ignored"}

    async def _handle_payment_captured(self, payment: Dict[str, Any], order: Dict[str, Any]) -> Dict[str, Any]:
        order_id = order.get("id") or payment.get("order_id")
        payment_id = payment.get("id")
        if not order_id or not payment_id:
            raise WalletError("INVALID_PAYLOAD", "Captured payment is missing order or payment id")

        logger.info(f"[Webhook] Payment captured: {payment_id} for order: {order_id}")

        try:
            purchase = await self.purchases.get(order_id)
            if not purchase:
                raise WalletError("WEBHOOK_PROCESSING_ERROR", f"Pending purchase not found: {order_id}")

            plan = await resolve_user_plan(self.db, purchase["user_id"])
            result = await self._complete(
                purchase,
                payment_id,
                "webhook",
                plan,
                payment_method=payment.get("method") or "unknown",
                captured={"amount": payment.get("amount"), "currency": payment.get("currency")}
            )

        except WalletError as e:
            if e.code == "PURCHASE_FAILED":
                # Retrying will not change a terminal failure; acknowledge it
                logger.warning(f"[Webhook] Purchase {order_id} failed, not crediting: {e.message}")
                return {"success": True, "message": f"Purchase failed: {e.message}"}
            if e.status_code < 500:
                raise
            logger.error(f"[Webhook] Failed to complete purchase for order {order_id}: {e}")
            raise WalletError("WEBHOOK_PROCESSING_ERROR") from e
        except Exception as e:
            logger.error(f"[Webhook] Failed to complete purchase for order {order_id}: {e}")
            raise WalletError("WEBHOOK_PROCESSING_ERROR") from e

        return {"success": True, "message": result.message}

    async def _handle_payment_failed(self, payment: Dict[str, Any], order: Dict[str, Any]) -> Dict[str, Any]:
        order_id = order.get("id") or payment.get("order_id")
        payment_id = payment.get("id")
        if not order_id:
            raise WalletError("INVALID_PAYLOAD", "Failed payment is missing order id")

        error_description = payment.get("error_description") or "Payment failed"
        logger.info(f"[Webhook] Payment failed: {payment_id} for order: {order_id} ({error_description})")

        # Only a still-pending purchase can be declined; never clobber an owner
        await self.purchases.mark_failed(
            order_id,
            error_description,
            FailureKind.TERMINAL,
            from_statuses=[PurchaseStatus.PENDING],
            payment_id=payment_id
        )
        return {"success": True, "message": "Payment failure recorded"}

    # ==================== STATE MACHINE ====================

    async def _complete(
        self,
        purchase: Dict[str, Any],
        payment_id: str,
        source: str,
        plan: str,
        user_id: Optional[str] = None,
        payment_method: Optional[str] = None,
        captured: Optional[Dict[str, Any]] = None
    ) -> ConfirmPurchaseResponse:
        """
        Drive a purchase to a terminal state from whatever state it is in.

        Claims the row if it is claimable; otherwise waits a bounded time for
        the current owner to finish.
        """
        order_id = purchase["order_id"]
        polls = 0

        while True:
            status = purchase.get("status")
            claimed = None

            if status == PurchaseStatus.COMPLETED.value:
                return await self._already_completed(purchase, plan)

            if status == PurchaseStatus.FAILED.value:
                if purchase.get("failure_kind") != FailureKind.RETRYABLE.value:
                    raise WalletError("PURCHASE_FAILED")
                claimed = await self.purchases.reclaim_retryable(order_id, source, user_id)
            elif status == PurchaseStatus.PENDING.value:
                claimed = await self.purchases.claim(order_id, source, user_id)
            elif status == PurchaseStatus.PROCESSING.value:
                claimed = await self._reclaim_abandoned(order_id, source, user_id)

            if claimed:
                return await self._run_owner(claimed, payment_id, plan, payment_method, captured)

            if status == PurchaseStatus.PROCESSING.value:
                if polls >= len(self.poll_delays):
                    logger.warning(f"[Purchase] {order_id} still processing after {polls} polls ({source})")
                    raise WalletError("PURCHASE_ALREADY_PROCESSING")
                await asyncio.sleep(self.poll_delays[polls])
                polls += 1
            else:
                logger.info(f"[Purchase] Lost claim race for {order_id} ({source}), re-reading")

            purchase = await self.purchases.get(order_id, user_id)
            if not purchase:
                raise WalletError("PURCHASE_NOT_FOUND")

    async def _run_owner(
        self,
        claimed: Dict[str, Any],
        payment_id: str,
        plan: str,
        payment_method: Optional[str],
        captured: Optional[Dict[str, Any]]
    ) -> ConfirmPurchaseResponse:
        """Single-owner sequence: check capture, credit, record history, complete."""
        order_id = claimed["order_id"]
        claim_id = claimed["claim_id"]
        user_id = claimed["user_id"]

        logger.info(f"[Purchase] Claimed {order_id} for processing ({claimed.get('claimed_by')})")

        try:
            if captured is not None:
                self._check_capture(claimed, captured)

            if not claimed.get("credited"):
                credit = await self.tokens.add_purchased_tokens(
                    user_id,
                    plan,
                    claimed["token_amount"],
                    context=TokenOperationContext(operation="purchase"),
                    credit_ref=order_id
                )
                if not credit.success:
                    raise RuntimeError("Failed to add purchased tokens")
                await self.purchases.mark_credited(order_id, claim_id)
            else:
                logger.info(f"[Purchase] {order_id} already credited, finishing completion only")

            await self.history.record_purchase(claimed, payment_id, payment_method)

            if not await self.purchases.mark_completed(order_id, claim_id, payment_id):
                raise RuntimeError(f"Lost ownership of purchase {order_id} before completion")

        except PaymentMismatchError as e:
            await self._record_failure(order_id, claim_id, str(e), FailureKind.TERMINAL)
            raise WalletError("PURCHASE_FAILED", str(e)) from e
        except WalletError as e:
            if e.status_code < 500:
                # Rejected input will be rejected again on retry
                await self._record_failure(order_id, claim_id, e.message, FailureKind.TERMINAL)
                raise WalletError("PURCHASE_FAILED", e.message) from e
            await self._record_failure(order_id, claim_id, e.message, FailureKind.RETRYABLE)
            raise
        except Exception as e:
            await self._record_failure(order_id, claim_id, str(e) or e.__class__.__name__, FailureKind.RETRYABLE)
            raise

        logger.info(f"[Purchase] Completed {order_id}: {claimed['token_amount']} tokens for user {user_id}")

        balance = await self.tokens.get_user_tokens(user_id, plan)
        return ConfirmPurchaseResponse(
            message="Purchase confirmed successfully",
            tokens_added=claimed["token_amount"],
            token_balance=balance
        )

    async def _reclaim_abandoned(
        self,
        order_id: str,
        source: str,
        user_id: Optional[str]
    ) -> Optional[Dict[str, Any]]:
        """Take over a processing row whose owner has held it past the lease."""
        stale_before = (self.clock() - timedelta(seconds=self.claim_lease)).isoformat()
        claimed = await self.purchases.reclaim_stale(order_id, source, stale_before, user_id)
        if claimed:
            logger.warning(f"[Purchase] Reclaimed {order_id} from an abandoned claim ({source})")
        return claimed

    async def _already_completed(self, purchase: Dict[str, Any], plan: str) -> ConfirmPurchaseResponse:
        balance = await self.tokens.get_user_tokens(purchase["user_id"], plan)
        return ConfirmPurchaseResponse(
            message="Purchase already completed",
            already_completed=True,
            token_balance=balance
        )

    def _check_capture(self, purchase: Dict[str, Any], captured: Dict[str, Any]):
        expected_currency = purchase.get("currency")
        if captured.get("currency") != expected_currency:
            raise PaymentMismatchError(
                f"Currency mismatch for order {purchase['order_id']}: "
                f"expected {expected_currency}, got {captured.get('currency')}"
            )
        if captured.get("amount") != purchase["amount_minor"]:
            raise PaymentMismatchError(
                f"Amount mismatch for order {purchase['order_id']}: "
                f"expected {purchase['amount_minor']}, got {captured.get('amount')}"
            )

    async def _record_failure(self, order_id: str, claim_id: str, message: str, kind: FailureKind):
        try:
            await self.purchases.mark_failed(order_id, message, kind, claim_id=claim_id)
        except PyMongoError as e:
            logger.error(f"[Purchase] Could not record failure for {order_id}: {e}")
