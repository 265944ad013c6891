import logging
import secrets
import string
from datetime import datetime
from typing import Optional

from app.core.documents import DocumentStore, utcnow
from app.core.errors import InvalidTransition, OrderNotFound, ValidationError
from app.models.order_model import Order, OrderDraft, OrderStatus, PaymentResult, compute_total
from app.models.user_model import User
from app.services.stock import StockAdjuster

logger = logging.getLogger("mlfor.orders")
security_logger = logging.getLogger("mlfor.security")

# The only legal moves. Delivered and Cancelled are terminal.
ORDER_TRANSITIONS: dict[str, frozenset] = {
    "Pending": frozenset({"Processing", "Cancelled"}),
    "Processing": frozenset({"Shipped", "Cancelled"}),
    "Shipped": frozenset({"Delivered"}),
    "Delivered": frozenset(),
    "Cancelled": frozenset(),
}

DEFAULT_CANCELLATION_REASON = "Customer requested cancellation"
_ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number(prefix: str = "MLF") -> str:
    suffix = "".join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"{prefix}-{utcnow():%Y%m%d}-{suffix}"


class OrderLedger:
    """Buyer-facing order lifecycle. Payment state is projected onto it, never stored here first."""

    def __init__(self, orders: DocumentStore, stock: StockAdjuster, currency: str = "NGN"):
        self.orders = orders
        self.stock = stock
        self.currency = currency

    # ── Reads ─────────────────────────────────────

    def find(self, order_id: str) -> Optional[Order]:
        doc = self.orders.get(order_id)
        return Order(**doc) if doc is not None else None

    def get(self, order_id: str) -> Order:
        doc = self.orders.get(order_id)
        if doc is None:
            raise OrderNotFound(order_id)
        return Order(**doc)

    def list_for_user(self, user_id: str) -> list[Order]:
        orders = [Order(**doc) for doc in self.orders.where("user_id", "==", user_id)]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    # ── Checkout ──────────────────────────────────

    def checkout(self, user: User, draft: OrderDraft) -> Order:
        items_price = sum(item.price * item.qty for item in draft.order_items)
        if items_price != draft.items_price:
            raise ValidationError("Items price does not match order items")
        total = compute_total(draft.items_price, draft.tax_price, draft.shipping_price, draft.discount)
        if total < 0:
            raise ValidationError("Discount exceeds order value")
        if draft.total_price is not None and draft.total_price != total:
            raise ValidationError("Total price does not match order breakdown")

        self.stock.reserve(draft.order_items)
        try:
            order = self._persist_new(user, draft, total)
        except Exception:
            logger.error(f"Checkout for {user.id} failed after reserving stock; releasing")
            self.stock.release(draft.order_items)
            raise

        logger.info(f"Order {order.id} created for {user.id} | total {order.total_price}")
        return order

    def _persist_new(self, user: User, draft: OrderDraft, total: int) -> Order:
        now = utcnow()
        for _ in range(5):
            order = Order(
                id=generate_order_number(),
                user_id=user.id,
                order_items=draft.order_items,
                shipping_address=draft.shipping_address,
                payment_method=draft.payment_method,
                items_price=draft.items_price,
                tax_price=draft.tax_price,
                shipping_price=draft.shipping_price,
                discount=draft.discount,
                total_price=total,
                currency=self.currency,
                promo_code=draft.promo_code,
                notes=draft.notes,
                created_at=now,
                updated_at=now,
            )
            if self.orders.create(order.id, order.model_dump()):
                return order
        raise RuntimeError("Could not allocate a unique order number")

    # ── State machine ─────────────────────────────

    def transition(
        self,
        order_id: str,
        target: OrderStatus,
        tracking_number: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Order:
        order = self.get(order_id)

        if target == order.status and tracking_number and target in ("Processing", "Shipped"):
            return self._update_tracking(order, tracking_number)

        if target not in ORDER_TRANSITIONS[order.status]:
            raise InvalidTransition("Order", order.status, target)

        now = utcnow()
        changes: dict = {"status": target, "updated_at": now}
        if tracking_number:
            changes["tracking_number"] = tracking_number
        if target == "Delivered":
            changes["is_delivered"] = True
            changes["delivered_at"] = now
        if target == "Cancelled":
            changes["cancellation_reason"] = reason or DEFAULT_CANCELLATION_REASON
            changes["cancelled_at"] = now

        expected_status = order.status
        updated = self.orders.update_if(
            order_id,
            lambda doc: doc is not None and doc["status"] == expected_status,
            lambda doc: changes,
        )
        if updated is None:
            # Someone moved the order between our read and our write
            current = self.get(order_id)
            raise InvalidTransition("Order", current.status, target)

        order = Order(**updated)
        logger.info(f"Order {order_id}: {expected_status} → {target}")

        if target == "Cancelled":
            try:
                order = self._release_stock(order)
            except Exception:
                # The order stays cancelled; release_unreleased_stock picks it up later
                logger.exception(f"Order {order_id} cancelled but stock release failed")
            if order.is_paid:
                # Refunds are manual
                security_logger.warning(
                    f"Paid order {order_id} cancelled; payment {order.payment_reference} needs a manual refund"
                )
        if target == "Delivered" and not order.is_paid:
            logger.error(f"OPERATIONAL ALERT: order {order_id} delivered but not paid")

        return order

    def cancel(self, order_id: str, reason: Optional[str] = None) -> Order:
        return self.transition(order_id, "Cancelled", reason=reason)

    def _release_stock(self, order: Order) -> Order:
        self.stock.release(order.order_items)
        updated = self.orders.update_if(
            order.id,
            lambda doc: doc is not None and doc.get("stock_released") is False,
            lambda doc: {"stock_released": True, "updated_at": utcnow()},
        )
        return Order(**updated) if updated is not None else order

    def release_unreleased_stock(self) -> int:
        """
        Put back stock for cancelled orders whose release never completed.

        Orders written before the flag existed have no `stock_released` field
        and are left alone.
        """
        released = 0
        for doc in self.orders.where("status", "==", "Cancelled"):
            if doc.get("stock_released") is not False:
                continue
            order = Order(**doc)
            self._release_stock(order)
            logger.warning(f"Stock for cancelled order {order.id} released on replay")
            released += 1
        return released

    def _update_tracking(self, order: Order, tracking_number: str) -> Order:
        status = order.status
        updated = self.orders.update_if(
            order.id,
            lambda doc: doc is not None and doc["status"] == status,
            lambda doc: {"tracking_number": tracking_number, "updated_at": utcnow()},
        )
        if updated is None:
            current = self.get(order.id)
            raise InvalidTransition("Order", current.status, status)
        return Order(**updated)

    # ── Payment projection ────────────────────────

    def mark_paid(
        self,
        order_id: str,
        reference: str,
        paid_at: datetime,
        payment_result: PaymentResult,
    ) -> tuple[Order, bool]:
        """
        Project a successful payment onto the order.

        Returns the order and whether this call flipped `is_paid`. Safe to
        replay: a second call for the same reference changes nothing.
        """
        def unpaid_and_open(doc: Optional[dict]) -> bool:
            return (
                doc is not None
                and not doc.get("is_paid")
                and doc["status"] in ("Pending", "Processing")
            )

        def apply(doc: dict) -> dict:
            changes = {
                "is_paid": True,
                "paid_at": paid_at,
                "payment_reference": reference,
                "payment_result": payment_result.model_dump(),
                "updated_at": utcnow(),
            }
            if doc["status"] == "Pending":
                changes["status"] = "Processing"
            return changes

        updated = self.orders.update_if(order_id, unpaid_and_open, apply)
        if updated is not None:
            logger.info(f"Order {order_id} marked paid via {reference}")
            return Order(**updated), True

        order = self.get(order_id)
        if order.is_paid and order.payment_reference == reference:
            return order, False
        if order.is_paid:
            security_logger.error(
                f"DOUBLE PAYMENT: order {order_id} already paid via {order.payment_reference}, "
                f"{reference} also succeeded and needs a refund"
            )
        elif order.status == "Cancelled":
            security_logger.error(
                f"Payment {reference} succeeded for cancelled order {order_id}; needs a manual refund"
            )
        return order, False
