"""
Payment attempts and their state machine.

This is the only place a successful charge is ever recorded. Every status
change is a compare-and-set on the payment document, so when the client
verify call and the webhook finalize the same reference at the same time,
exactly one of them moves it out of `pending` and owns the side effects.
"""
import logging
import secrets
import time
import string
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional

from app.core.documents import DocumentStore, run_in_thread, utcnow
from app.core.errors import (
    InvalidTransition,
    PaymentNotFound,
    ValidationError,
)
from app.models.order_model import Order, PaymentResult
from app.models.payment_model import (
    Dispute,
    GatewayTruth,
    HostedPayment,
    Payment,
    Refund,
    WebhookEventRecord,
)
from app.services.order_ledger import OrderLedger
from app.services.paystack import PaystackClient

logger = logging.getLogger("mlfor.payments")
security_logger = logging.getLogger("mlfor.security")

PAYMENT_TRANSITIONS: dict[str, frozenset] = {
    "pending": frozenset({"success", "failed", "abandoned", "cancelled"}),
    "success": frozenset({"refunded"}),
    "failed": frozenset(),
    "abandoned": frozenset(),
    "cancelled": frozenset(),
    "refunded": frozenset(),
}

AMOUNT_MISMATCH_REASON = "amount mismatch"

Outcome = Literal["paid", "already_final", "failed", "amount_mismatch", "pending", "ignored"]


@dataclass
class FinalizeResult:
    payment: Payment
    order: Optional[Order]
    outcome: Outcome

    @property
    def performed_side_effects(self) -> bool:
        return self.outcome == "paid"


def _base36(number: int) -> str:
    digits = string.digits + string.ascii_uppercase
    out = ""
    while number:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
    return out or "0"


def generate_reference(prefix: str = "MLF") -> str:
    """`MLF_<time base36>_<9 random chars>`, unique per attempt."""
    random_part = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(9))
    return f"{prefix}_{_base36(int(time.time() * 1000))}_{random_part}"


class PaymentLedger:
    def __init__(
        self,
        payments: DocumentStore,
        orders: OrderLedger,
        gateway: PaystackClient,
        currency: str = "NGN",
        reference_prefix: str = "MLF",
        max_retries: int = 3,
    ):
        self.payments = payments
        self.orders = orders
        self.gateway = gateway
        self.currency = currency
        self.reference_prefix = reference_prefix
        self.max_retries = max_retries

    # ── Reads ─────────────────────────────────────

    def find(self, reference: str) -> Optional[Payment]:
        doc = self.payments.get(reference)
        return Payment(**doc) if doc is not None else None

    def get(self, reference: str) -> Payment:
        payment = self.find(reference)
        if payment is None:
            raise PaymentNotFound(reference)
        return payment

    def for_order(self, order_id: str) -> list[Payment]:
        payments = [Payment(**doc) for doc in self.payments.where("order_id", "==", order_id)]
        return sorted(payments, key=lambda p: p.created_at, reverse=True)

    def for_user(self, user_id: str) -> list[Payment]:
        """Every attempt a buyer has made, newest first."""
        payments = [Payment(**doc) for doc in self.payments.where("user_id", "==", user_id)]
        return sorted(payments, key=lambda p: p.created_at, reverse=True)

    def successful_for_order(self, order_id: str) -> Optional[Payment]:
        for payment in self.for_order(order_id):
            if payment.status in ("success", "refunded"):
                return payment
        return None

    def with_status(self, status: str) -> list[Payment]:
        return [Payment(**doc) for doc in self.payments.where("status", "==", status)]

    # ── Initialize ────────────────────────────────

    async def initialize(
        self,
        order: Order,
        buyer_email: str,
        callback_url: Optional[str] = None,
    ) -> HostedPayment:
        """
        Start a new payment attempt for an unpaid order.

        Writes exactly one `pending` payment keyed by a fresh reference. The
        gateway call happens before the write and outside any transaction.
        """
        if order.is_paid:
            raise ValidationError("Order is already paid")
        if order.status == "Cancelled":
            raise ValidationError("Cannot pay for a cancelled order")

        previous = await run_in_thread(self.for_order, order.id)
        if any(p.status in ("success", "refunded") for p in previous):
            raise ValidationError("Order is already paid")
        if len(previous) > self.max_retries:
            raise ValidationError("Maximum payment retries reached for this order")

        reference = generate_reference(self.reference_prefix)
        hosted = await self.gateway.initialize_transaction(
            amount=order.total_price,
            currency=self.currency,
            reference=reference,
            callback_url=callback_url,
            email=buyer_email,
            metadata={
                "order_id": order.id,
                "user_id": order.user_id,
                "custom_fields": [
                    {"display_name": "Order ID", "variable_name": "order_id", "value": order.id}
                ],
            },
        )

        now = utcnow()
        payment = Payment(
            id=hosted.reference,
            order_id=order.id,
            user_id=order.user_id,
            amount=order.total_price,
            currency=self.currency,
            customer_email=buyer_email,
            authorization_url=hosted.authorization_url,
            access_code=hosted.access_code,
            retry_count=len(previous),
            initiated_at=now,
            created_at=now,
            updated_at=now,
        )
        created = await run_in_thread(self.payments.create, payment.id, payment.model_dump())
        if not created:
            # The webhook beat us to it and already manufactured the record
            logger.info(f"Payment {payment.id} already recorded before initialize returned")
        else:
            logger.info(f"Payment {payment.id} initialized for order {order.id} | {order.total_price} kobo")
        return hosted

    # ── Finalize ──────────────────────────────────

    def finalize(self, truth: GatewayTruth) -> FinalizeResult:
        """
        Decide the outcome of `truth.reference`, once.

        Both the client verify path and the webhook path end here. Only the
        caller that flips the order to paid gets outcome `paid`; everyone else
        gets a read of what is already there.
        """
        payment = self._find_or_create(truth)
        reference = payment.id

        if payment.status in ("success", "refunded"):
            logger.info(f"Payment {reference} already finalized, confirming")
            return self.confirm(payment)

        order = self.orders.get(payment.order_id)

        echoed_order = truth.metadata.get("order_id")
        if echoed_order and str(echoed_order) != payment.order_id:
            security_logger.error(
                f"Reference {reference} belongs to order {payment.order_id} but gateway echoed {echoed_order}"
            )
            return FinalizeResult(payment, order, "ignored")

        if truth.status in ("pending", "abandoned"):
            # Paystack says abandoned until the buyer completes checkout; only the sweep gives up on it
            return FinalizeResult(payment, order, "pending")

        if truth.succeeded and (truth.amount != order.total_price or truth.currency != payment.currency):
            return self._reject_amount(payment, order, truth)

        if payment.status != "pending":
            if truth.succeeded:
                security_logger.error(
                    f"Payment {reference} succeeded at the gateway after being marked {payment.status} "
                    f"locally; order {order.id} needs manual reconciliation"
                )
            return FinalizeResult(payment, order, "ignored")

        if not truth.succeeded:
            return self._finalize_unsuccessful(payment, order, truth)

        won = self._transition(
            reference,
            "success",
            {
                "paid_at": truth.paid_at or utcnow(),
                "channel": truth.channel,
                "customer_email": payment.customer_email or truth.customer_email,
                "gateway_response": truth.raw,
                "failure_reason": None,
                "webhook_verified": payment.webhook_verified or truth.source == "webhook",
            },
        )
        if won is None:
            return self._lost_race(reference, order)

        logger.info(f"Payment SUCCESS → {reference} | {truth.amount} kobo | order {order.id} | via {truth.source}")
        order, flipped = self.project_onto_order(won)
        return FinalizeResult(won, order, "paid" if flipped else "ignored")

    def project_onto_order(self, payment: Payment) -> tuple[Order, bool]:
        """Replay a successful payment onto its order. Idempotent."""
        raw = payment.gateway_response or {}
        gateway_id = raw.get("id")
        return self.orders.mark_paid(
            payment.order_id,
            payment.id,
            payment.paid_at or utcnow(),
            PaymentResult(
                id=str(gateway_id) if gateway_id is not None else None,
                status="success",
                reference=payment.id,
                email_address=payment.customer_email or (raw.get("customer") or {}).get("email"),
                update_time=utcnow(),
            ),
        )

    def confirm(self, payment: Payment) -> FinalizeResult:
        """
        Idempotent confirmation of a payment that is already final.

        If an earlier finalize recorded the success but died before updating
        the order, the order is behind; catch it up here.
        """
        order = self.orders.find(payment.order_id)
        if (
            order is not None
            and payment.status == "success"
            and not order.is_paid
            and order.status in ("Pending", "Processing")
        ):
            order, flipped = self.project_onto_order(payment)
            if flipped:
                logger.warning(f"Order {order.id} was behind payment {payment.id}; projection replayed")
                return FinalizeResult(payment, order, "paid")
        return FinalizeResult(payment, order, "already_final")

    def _finalize_unsuccessful(self, payment: Payment, order: Order, truth: GatewayTruth) -> FinalizeResult:
        updated = self._transition(
            payment.id,
            "failed",
            {
                "failure_reason": truth.message or f"gateway reported {truth.status}",
                "gateway_response": truth.raw,
            },
        )
        if updated is None:
            return self._lost_race(payment.id, order)
        logger.warning(f"Payment FAILED → {payment.id} | order {order.id}")
        return FinalizeResult(updated, order, "failed")

    def _reject_amount(self, payment: Payment, order: Order, truth: GatewayTruth) -> FinalizeResult:
        security_logger.error(
            f"AMOUNT MISMATCH on {payment.id}: order {order.id} expects {order.total_price} "
            f"{payment.currency}, gateway reported {truth.amount} {truth.currency}"
        )
        updated = self._transition(
            payment.id,
            "failed",
            {"failure_reason": AMOUNT_MISMATCH_REASON, "gateway_response": truth.raw},
        )
        if updated is None:
            current = self.get(payment.id)
            if current.status in ("success", "refunded"):
                return self.confirm(current)
            updated = current
        return FinalizeResult(updated, order, "amount_mismatch")

    def _lost_race(self, reference: str, order: Order) -> FinalizeResult:
        current = self.get(reference)
        if current.status in ("success", "refunded"):
            return self.confirm(current)
        return FinalizeResult(current, order, "ignored")

    def _find_or_create(self, truth: GatewayTruth) -> Payment:
        payment = self.find(truth.reference)
        if payment is not None:
            return payment

        order_id = truth.metadata.get("order_id")
        if not order_id:
            raise ValidationError("Order ID not found in transaction metadata")
        order = self.orders.get(str(order_id))

        now = utcnow()
        payment = Payment(
            id=truth.reference,
            order_id=order.id,
            user_id=order.user_id,
            amount=order.total_price,
            currency=self.currency,
            customer_email=truth.customer_email,
            initiated_at=now,
            created_at=now,
            updated_at=now,
        )
        if self.payments.create(payment.id, payment.model_dump()):
            logger.info(f"Payment {payment.id} recorded from gateway metadata (no local initialize)")
            return payment
        # A concurrent finalize created it first; use theirs, it may already be final
        return self.get(truth.reference)

    # ── Transitions ───────────────────────────────

    def _transition(self, reference: str, target: str, changes: dict) -> Optional[Payment]:
        """Compare-and-set `pending`-style move. None when the payment was no longer eligible."""
        allowed_from = {status for status, targets in PAYMENT_TRANSITIONS.items() if target in targets}
        updated = self.payments.update_if(
            reference,
            lambda doc: doc is not None and doc["status"] in allowed_from,
            lambda doc: {**changes, "status": target, "updated_at": utcnow()},
        )
        return Payment(**updated) if updated is not None else None

    def mark_abandoned(self, reference: str) -> Optional[Payment]:
        payment = self._transition(reference, "abandoned", {"abandoned_at": utcnow()})
        if payment is not None:
            logger.info(f"Payment {reference} abandoned")
        return payment

    def cancel_pending(self, order_id: str, user_id: str) -> list[Payment]:
        cancelled = []
        for payment in self.for_order(order_id):
            if payment.status != "pending" or payment.user_id != user_id:
                continue
            updated = self._transition(payment.id, "cancelled", {"abandoned_at": utcnow()})
            if updated is not None:
                cancelled.append(updated)
        if not cancelled:
            raise PaymentNotFound(order_id, "No pending payment found for this order")
        logger.info(f"Cancelled {len(cancelled)} pending payment(s) for order {order_id}")
        return cancelled

    def stale_pending(self, older_than: datetime) -> list[Payment]:
        return [p for p in self.with_status("pending") if p.initiated_at < older_than]

    # ── Append-only history ───────────────────────

    def record_webhook_event(self, reference: str, event: str) -> Optional[Payment]:
        record = WebhookEventRecord(event=event, received_at=utcnow()).model_dump()
        updated = self.payments.update_if(
            reference,
            lambda doc: doc is not None,
            lambda doc: {
                "webhook_events": [*doc.get("webhook_events", []), record],
                "webhook_verified": True,
                "updated_at": utcnow(),
            },
        )
        return Payment(**updated) if updated is not None else None

    def add_refund(self, reference: str, refund: Refund) -> Payment:
        """Record or update a refund; a fully refunded success becomes `refunded`."""
        def apply(doc: dict) -> dict:
            refunds = [r for r in doc.get("refunds", []) if r["id"] != refund.id]
            refunds.append(refund.model_dump())
            processed = sum(r["amount"] for r in refunds if r["status"] == "processed")
            changes = {"refunds": refunds, "updated_at": utcnow()}
            if processed >= doc["amount"]:
                changes["status"] = "refunded"
            return changes

        updated = self.payments.update_if(
            reference,
            lambda doc: doc is not None and doc["status"] in ("success", "refunded"),
            apply,
        )
        if updated is None:
            payment = self.get(reference)
            raise InvalidTransition("Payment", payment.status, "refunded")

        payment = Payment(**updated)
        logger.info(f"Refund {refund.id} ({refund.status}) on {reference} | refunded so far {payment.refunded_amount}")
        return payment

    def add_dispute(self, reference: str, dispute: Dispute) -> Payment:
        def apply(doc: dict) -> dict:
            disputes = [d for d in doc.get("disputes", []) if d["id"] != dispute.id]
            disputes.append(dispute.model_dump())
            return {"disputes": disputes, "updated_at": utcnow()}

        updated = self.payments.update_if(reference, lambda doc: doc is not None, apply)
        if updated is None:
            raise PaymentNotFound(reference)
        security_logger.warning(f"Dispute {dispute.id} on {reference} is {dispute.status}")
        return Payment(**updated)
