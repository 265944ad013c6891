import logging

from app.core.celery_app import celery_app
from app.core.config import settings
from app.core.email import ORDER_PAID_HTML, format_naira, send_email
from app.core.notifications import create_notification
from app.models.order_model import Order
from app.models.payment_model import Payment

logger = logging.getLogger("mlfor.tasks")


class EmailNotSent(Exception):
    pass


@celery_app.task(
    bind=True,
    name="app.tasks.notifications.notify_order_paid",
    max_retries=5,
    # Exponential backoff: 60s, 120s, 240s...
    autoretry_for=(EmailNotSent,),
    retry_backoff=60,
    retry_jitter=True,
)
def notify_order_paid(
    self, order_id: str, user_id: str, reference: str, amount: int, email: str, paid_at: str = ""
) -> None:
    """In-app notification plus confirmation email. Queued once per paid order."""
    if self.request.retries == 0:
        create_notification(
            user_id,
            title="Payment received",
            message=f"Your payment of {format_naira(amount)} for order {order_id} was successful.",
            type="success",
            link=f"/order/{order_id}",
        )

    if not email:
        logger.warning(f"No email for order {order_id}; skipping confirmation email")
        return

    html = ORDER_PAID_HTML.format(
        amount=format_naira(amount),
        name=email.split("@")[0],
        order_id=order_id,
        reference=reference,
        date=paid_at[:10],
        order_link=f"{str(settings.FRONTEND_URL).rstrip('/')}/order/{order_id}",
    )
    if not send_email(email, f"Payment confirmed for order {order_id}", html):
        raise EmailNotSent(f"Confirmation email for {order_id} not sent")


def queue_paid_notification(payment: Payment, order: Order) -> None:
    """Paid hook: hand the notification to the worker, never block finalization on it."""
    notify_order_paid.delay(
        order.id,
        order.user_id,
        payment.id,
        payment.amount,
        payment.customer_email or "",
        payment.paid_at.isoformat() if payment.paid_at else "",
    )
    logger.info(f"Queued paid notification for order {order.id}")
