"""
Reconciliation engine: the two finalization paths and everything around them.

The buyer's browser (verify) and the gateway (webhook) race to finalize the
same reference, in any order and any number of times. Both are reduced to a
GatewayTruth and handed to PaymentLedger.finalize, which decides the outcome
exactly once. Only the caller that actually flipped the order to paid fires
the paid hooks.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from app.core.documents import run_in_thread, utcnow
from app.core.errors import (
    AmountMismatch,
    Forbidden,
    GatewayRejected,
    GatewayUnavailable,
    InvalidTransition,
    OrderNotFound,
    PaymentNotFound,
    RateLimited,
    ValidationError,
)
from app.core.rate_limit import TokenBucketLimiter
from app.models.order_model import Order
from app.models.payment_model import (
    ClientVerify,
    Dispute,
    FinalizationInput,
    GatewayTruth,
    HostedPayment,
    InitializePaymentRequest,
    Payment,
    Refund,
    WebhookCallback,
)
from app.models.user_model import User
from app.services.order_ledger import OrderLedger
from app.services.payment_ledger import AMOUNT_MISMATCH_REASON, FinalizeResult, PaymentLedger
from app.services.paystack import PaystackClient
from app.services.webhook_verifier import verify_signature

logger = logging.getLogger("mlfor.payments")
webhook_logger = logging.getLogger("mlfor.webhooks")

PaidHook = Callable[[Payment, Order], None]

CHARGE_EVENTS = ("charge.success", "charge.failed")

# What a buyer is allowed to see about a payment
_BUYER_STATUS = {
    "success": "paid",
    "pending": "pending",
    "refunded": "refunded",
}


def payment_snapshot(payment: Payment, order: Optional[Order] = None) -> dict:
    """Buyer-facing view of a payment. No raw gateway payload, no internal reasons."""
    snapshot = {
        "reference": payment.id,
        "order_id": payment.order_id,
        "status": _BUYER_STATUS.get(payment.status, "failed"),
        "amount": payment.amount,
        "currency": payment.currency,
        "channel": payment.channel,
        "paid_at": payment.paid_at,
        "created_at": payment.created_at,
    }
    if order is not None:
        snapshot["order"] = {
            "id": order.id,
            "status": order.status,
            "is_paid": order.is_paid,
            "paid_at": order.paid_at,
            "total_price": order.total_price,
        }
    return snapshot


class ReconciliationEngine:
    def __init__(
        self,
        orders: OrderLedger,
        payments: PaymentLedger,
        gateway: PaystackClient,
        webhook_secret: str,
        limiter: Optional[TokenBucketLimiter] = None,
        on_paid: Iterable[PaidHook] = (),
        abandon_after: timedelta = timedelta(minutes=60),
    ):
        self.orders = orders
        self.payments = payments
        self.gateway = gateway
        self.webhook_secret = webhook_secret
        self.limiter = limiter
        self.on_paid = list(on_paid)
        self.abandon_after = abandon_after

    # ── Buyer-initiated ───────────────────────────

    async def initialize_payment(self, user: User, req: InitializePaymentRequest) -> HostedPayment:
        order = await self._owned_order(user, req.order_id)
        if req.amount is not None and req.amount != order.total_price:
            raise ValidationError("Payment amount does not match order total")
        self._throttle(user)
        return await self.payments.initialize(order, str(req.email), req.callback_url)

    async def retry_payment(self, user: User, order_id: str, callback_url: Optional[str] = None) -> HostedPayment:
        order = await self._owned_order(user, order_id)
        if order.is_paid:
            raise ValidationError("Order is already paid")
        if order.status == "Cancelled":
            raise ValidationError("Cannot retry payment for cancelled order")
        previous = await run_in_thread(self.payments.for_order, order_id)
        email = next((p.customer_email for p in previous if p.customer_email), None)
        if email is None:
            if user.id != order.user_id:
                raise ValidationError("No buyer email on record for this order")
            email = user.email
        self._throttle(user)
        logger.info(f"Retrying payment for order {order_id}")
        return await self.payments.initialize(order, email, callback_url)

    async def cancel_payment(self, user: User, order_id: str) -> list[Payment]:
        await self._owned_order(user, order_id)
        return await run_in_thread(self.payments.cancel_pending, order_id, user.id)

    async def payments_for_order(self, user: User, order_id: str) -> list[dict]:
        await self._owned_order(user, order_id)
        payments = await run_in_thread(self.payments.for_order, order_id)
        return [payment_snapshot(p) for p in payments]

    async def payment_history(self, user: User) -> list[dict]:
        payments = await run_in_thread(self.payments.for_user, user.id)
        return [payment_snapshot(p) for p in payments]

    async def verify_payment(self, reference: str, user: Optional[User] = None) -> FinalizeResult:
        """
        Client path. Ask the gateway what happened, then finalize.

        Safe to call any number of times; after the first success every call
        is an idempotent confirmation.
        """
        local = await run_in_thread(self.payments.find, reference)
        if local is not None and user is not None:
            self._check_owner(user, local.user_id)

        truth = await self._truth_for(ClientVerify(reference=reference))

        if local is None and user is not None:
            # Never initialized here; ownership comes from the order the gateway echoes
            order_id = truth.metadata.get("order_id")
            order = await run_in_thread(self.orders.find, str(order_id)) if order_id else None
            if order is not None:
                self._check_owner(user, order.user_id)

        result = await self._apply(truth)
        if result.outcome == "amount_mismatch":
            raise AmountMismatch(reference, result.payment.amount, truth.amount, truth.currency)
        return result

    # ── Shared choke point ────────────────────────

    async def finalize(self, finalization: FinalizationInput) -> FinalizeResult:
        truth = await self._truth_for(finalization)
        return await self._apply(truth)

    async def _truth_for(self, finalization: FinalizationInput) -> GatewayTruth:
        if isinstance(finalization, ClientVerify):
            return await self.gateway.verify_transaction(finalization.reference)
        return GatewayTruth.from_paystack(finalization.data, source="webhook")

    async def _apply(self, truth: GatewayTruth) -> FinalizeResult:
        # No lock is held across the gateway call; the CAS below is short
        result = await run_in_thread(self.payments.finalize, truth)
        logger.info(f"Finalize {truth.reference} via {truth.source} → {result.outcome}")
        if result.performed_side_effects:
            await self._fire_paid(result)
        return result

    async def _fire_paid(self, result: FinalizeResult) -> None:
        for hook in self.on_paid:
            try:
                await run_in_thread(hook, result.payment, result.order)
            except Exception as e:
                logger.error(f"Paid hook {getattr(hook, '__name__', hook)} failed for {result.payment.id}: {e}", exc_info=True)

    # ── Webhook path ──────────────────────────────

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> dict:
        # Nothing below runs on an unverified body
        verify_signature(raw_body, signature, self.webhook_secret)

        try:
            payload = json.loads(raw_body)
        except ValueError:
            webhook_logger.error("Invalid JSON in Paystack webhook")
            raise ValidationError("Invalid JSON")
        if not isinstance(payload, dict):
            raise ValidationError("Invalid webhook payload")

        event = payload.get("event") or ""
        data = payload.get("data") or {}
        webhook_logger.info(f"Paystack webhook received: {event}")

        if event in CHARGE_EVENTS:
            return await self._on_charge(event, data)
        if event.startswith("refund."):
            return await self._on_refund(event, data)
        if event.startswith("charge.dispute."):
            return await self._on_dispute(event, data)

        webhook_logger.info(f"Ignoring unhandled webhook event {event!r}")
        return {"status": "ignored", "event": event}

    async def _on_charge(self, event: str, data: dict) -> dict:
        reference = data.get("reference")
        if not reference:
            webhook_logger.warning(f"{event} without a reference; ignoring")
            return {"status": "ignored", "event": event}

        try:
            result = await self.finalize(WebhookCallback(event=event, data=data))
        except (ValidationError, OrderNotFound) as e:
            # Permanent; acknowledging stops the gateway from retrying forever
            webhook_logger.error(f"Cannot reconcile {event} for {reference}: {e.message}")
            return {"status": "ignored", "event": event}

        await run_in_thread(self.payments.record_webhook_event, reference, event)
        if result.outcome == "amount_mismatch":
            webhook_logger.error(f"Webhook {reference} rejected: {AMOUNT_MISMATCH_REASON}")
        return {"status": result.outcome, "event": event}

    async def _on_refund(self, event: str, data: dict) -> dict:
        transaction = data.get("transaction") or {}
        reference = data.get("transaction_reference") or transaction.get("reference")
        refund_id = data.get("id") or data.get("refund_reference")
        if not reference or refund_id is None:
            webhook_logger.warning(f"{event} without a transaction reference; ignoring")
            return {"status": "ignored", "event": event}

        refund = Refund(
            id=str(refund_id),
            amount=int(data.get("amount") or 0),
            currency=(data.get("currency") or "NGN").upper(),
            status=data.get("status") or event.split(".", 1)[1],
            merchant_note=data.get("merchant_note"),
            customer_note=data.get("customer_note"),
            refunded_at=data.get("refunded_at") or None,
        )
        try:
            await run_in_thread(self.payments.add_refund, reference, refund)
        except (PaymentNotFound, InvalidTransition) as e:
            webhook_logger.warning(f"Refund {refund.id} for {reference} not applied: {e.message}")
            return {"status": "ignored", "event": event}

        await run_in_thread(self.payments.record_webhook_event, reference, event)
        return {"status": "recorded", "event": event}

    async def _on_dispute(self, event: str, data: dict) -> dict:
        transaction = data.get("transaction") or {}
        reference = transaction.get("reference")
        if not reference or data.get("id") is None:
            webhook_logger.warning(f"{event} without a transaction reference; ignoring")
            return {"status": "ignored", "event": event}

        dispute = Dispute(
            id=str(data["id"]),
            status=data.get("status") or event.rsplit(".", 1)[1],
            refund_amount=data.get("refund_amount"),
            currency=data.get("currency"),
            category=data.get("category"),
            resolution=data.get("resolution"),
            due_at=data.get("dueAt") or data.get("due_at") or None,
            resolved_at=data.get("resolvedAt") or data.get("resolved_at") or None,
        )
        try:
            await run_in_thread(self.payments.add_dispute, reference, dispute)
        except PaymentNotFound:
            webhook_logger.warning(f"Dispute {dispute.id} for unknown payment {reference}")
            return {"status": "ignored", "event": event}

        await run_in_thread(self.payments.record_webhook_event, reference, event)
        return {"status": "recorded", "event": event}

    # ── Out-of-band jobs ──────────────────────────

    async def sweep_abandoned(self, older_than: Optional[datetime] = None) -> dict:
        """
        Settle payments left `pending` past the abandon window.

        Each one is checked with the gateway first, so a buyer who paid but
        never came back is still credited. The order itself is never cancelled.
        """
        cutoff = older_than or utcnow() - self.abandon_after
        stale = await run_in_thread(self.payments.stale_pending, cutoff)
        counts = {"checked": len(stale), "finalized": 0, "abandoned": 0, "skipped": 0}

        for payment in stale:
            try:
                truth = await self.gateway.verify_transaction(payment.id)
            except GatewayUnavailable:
                logger.warning(f"Sweep: gateway unavailable for {payment.id}; will retry next run")
                counts["skipped"] += 1
                continue
            except GatewayRejected as e:
                # The gateway has no such transaction; nobody can pay it now
                logger.info(f"Sweep: gateway does not know {payment.id} ({e.upstream_message})")
                truth = None

            if truth is not None and truth.status not in ("pending", "abandoned"):
                await self._apply(truth)
                counts["finalized"] += 1
                continue

            if await run_in_thread(self.payments.mark_abandoned, payment.id) is not None:
                counts["abandoned"] += 1

        logger.info(f"Abandoned sweep done: {counts}")
        return counts

    async def repair_paid_orders(self) -> int:
        """Catch up orders left behind a recorded success. Idempotent."""
        repaired = 0
        for payment in await run_in_thread(self.payments.with_status, "success"):
            result = await run_in_thread(self.payments.confirm, payment)
            if result.performed_side_effects:
                repaired += 1
                await self._fire_paid(result)
        if repaired:
            logger.warning(f"Repaired {repaired} order(s) that lagged behind their payment")
        return repaired

    # ── Helpers ───────────────────────────────────

    async def _owned_order(self, user: User, order_id: str) -> Order:
        order = await run_in_thread(self.orders.get, order_id)
        self._check_owner(user, order.user_id)
        return order

    @staticmethod
    def _check_owner(user: User, owner_id: str) -> None:
        if user.id != owner_id and not user.is_admin:
            raise Forbidden()

    def _throttle(self, user: User) -> None:
        if self.limiter is not None and not self.limiter.allow(f"initialize:{user.id}"):
            logger.warning(f"Payment initialize throttled for {user.id}")
            raise RateLimited()
