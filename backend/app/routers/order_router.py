# routers/order_router.py
from fastapi import APIRouter, Depends, status
import logging

from app.core.auth import get_current_user, require_admin
from app.core.deps import get_engine
from app.core.documents import run_in_thread
from app.core.errors import Forbidden
from app.models.order_model import Order, OrderCancelRequest, OrderDraft, OrderStatusUpdate
from app.models.user_model import User
from app.services.reconciliation import ReconciliationEngine

router = APIRouter(prefix="/orders", tags=["Orders"])
logger = logging.getLogger("mlfor.orders")


async def _visible_order(engine: ReconciliationEngine, user: User, order_id: str) -> Order:
    order = await run_in_thread(engine.orders.get, order_id)
    if order.user_id != user.id and not user.is_admin:
        raise Forbidden()
    return order


@router.post("", status_code=status.HTTP_201_CREATED, response_model=Order)
async def create_order(
    draft: OrderDraft,
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Checkout: reserves stock and creates a Pending, unpaid order."""
    return await run_in_thread(engine.orders.checkout, user, draft)


@router.get("/mine", response_model=list[Order])
async def my_orders(
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    return await run_in_thread(engine.orders.list_for_user, user.id)


@router.get("/{order_id}", response_model=Order)
async def get_order(
    order_id: str,
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    return await _visible_order(engine, user, order_id)


@router.put("/{order_id}/status", response_model=Order)
async def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    admin: User = Depends(require_admin),
    engine: ReconciliationEngine = Depends(get_engine),
):
    logger.info(f"Admin {admin.id} moving order {order_id} to {payload.status}")
    return await run_in_thread(
        engine.orders.transition, order_id, payload.status, tracking_number=payload.tracking_number
    )


@router.put("/{order_id}/cancel", response_model=Order)
async def cancel_order(
    order_id: str,
    payload: OrderCancelRequest,
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    await _visible_order(engine, user, order_id)
    return await run_in_thread(engine.orders.cancel, order_id, payload.reason)
