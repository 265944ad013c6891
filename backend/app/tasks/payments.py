import asyncio
import logging

from app.core.celery_app import celery_app
from app.core.deps import get_engine

logger = logging.getLogger("mlfor.tasks")


@celery_app.task(name="app.tasks.payments.sweep_abandoned_payments")
def sweep_abandoned_payments() -> dict:
    """
    Settle payments stuck in `pending` past the abandon window.
    Orders are left alone; only an explicit cancellation voids an order.
    """
    counts = asyncio.run(get_engine().sweep_abandoned())
    logger.info(f"sweep_abandoned_payments → {counts}")
    return counts


@celery_app.task(name="app.tasks.payments.repair_paid_orders")
def repair_paid_orders() -> int:
    repaired = asyncio.run(get_engine().repair_paid_orders())
    logger.info(f"repair_paid_orders → {repaired} repaired")
    return repaired


@celery_app.task(name="app.tasks.payments.release_cancelled_stock")
def release_cancelled_stock() -> int:
    released = get_engine().orders.release_unreleased_stock()
    if released:
        logger.info(f"release_cancelled_stock → {released} order(s)")
    return released
