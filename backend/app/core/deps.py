# core/deps.py
"""Wires the ledgers, the gateway client and the engine. FastAPI and Celery share one engine per process."""
import logging
from datetime import timedelta
from functools import lru_cache
from typing import Iterable, Optional

from app.core.config import settings
from app.core.documents import DocumentStore, FirestoreDocumentStore
from app.core.firebase import get_db
from app.core.rate_limit import TokenBucketLimiter
from app.services.order_ledger import OrderLedger
from app.services.payment_ledger import PaymentLedger
from app.services.paystack import PaystackClient
from app.services.reconciliation import PaidHook, ReconciliationEngine
from app.services.stock import StockAdjuster

logger = logging.getLogger("mlfor")


def build_engine(
    orders: DocumentStore,
    payments: DocumentStore,
    products: DocumentStore,
    gateway: PaystackClient,
    webhook_secret: str,
    limiter: Optional[TokenBucketLimiter] = None,
    on_paid: Iterable[PaidHook] = (),
) -> ReconciliationEngine:
    order_ledger = OrderLedger(orders, StockAdjuster(products), currency=settings.PAYMENT_CURRENCY)
    payment_ledger = PaymentLedger(
        payments,
        order_ledger,
        gateway,
        currency=settings.PAYMENT_CURRENCY,
        reference_prefix=settings.PAYMENT_REFERENCE_PREFIX,
        max_retries=settings.PAYMENT_MAX_RETRIES,
    )
    return ReconciliationEngine(
        order_ledger,
        payment_ledger,
        gateway,
        webhook_secret=webhook_secret,
        limiter=limiter,
        on_paid=on_paid,
        abandon_after=timedelta(minutes=settings.PAYMENT_ABANDON_AFTER_MINUTES),
    )


@lru_cache
def get_engine() -> ReconciliationEngine:
    # Imported here: the task module pulls in the Celery app, which API tests never need
    from app.tasks.notifications import queue_paid_notification

    db = get_db()
    engine = build_engine(
        orders=FirestoreDocumentStore(db, "orders"),
        payments=FirestoreDocumentStore(db, "payments"),
        products=FirestoreDocumentStore(db, "products"),
        gateway=PaystackClient(
            settings.PAYSTACK_SECRET_KEY,
            base_url=str(settings.PAYSTACK_BASE_URL),
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        ),
        webhook_secret=settings.PAYSTACK_WEBHOOK_SECRET,
        limiter=TokenBucketLimiter(
            settings.INITIALIZE_RATE_LIMIT,
            settings.INITIALIZE_RATE_WINDOW_SECONDS,
        ),
        on_paid=[queue_paid_notification],
    )
    logger.info("Reconciliation engine ready")
    return engine
