# routers/payment_router.py
from fastapi import APIRouter, Depends, Header, Request, status
from typing import Optional
import logging

from app.core.auth import get_current_user
from app.core.config import settings
from app.core.deps import get_engine
from app.models.payment_model import InitializePaymentRequest, RetryPaymentRequest
from app.models.user_model import User
from app.services.reconciliation import ReconciliationEngine, payment_snapshot

router = APIRouter(prefix="/payments", tags=["Payments"])
logger = logging.getLogger("mlfor.payments")


def default_callback_url(order_id: str) -> str:
    return f"{str(settings.FRONTEND_URL).rstrip('/')}/order/{order_id}"


@router.post("/paystack/initialize")
async def initialize_paystack(
    payload: InitializePaymentRequest,
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    if not payload.callback_url:
        payload.callback_url = default_callback_url(payload.order_id)
    hosted = await engine.initialize_payment(user, payload)
    return {"success": True, "data": hosted.model_dump(by_alias=True)}


@router.get("/paystack/verify/{reference}")
async def verify_paystack(
    reference: str,
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    result = await engine.verify_payment(reference, user)
    return {
        "success": True,
        "outcome": result.outcome,
        "data": payment_snapshot(result.payment, result.order),
    }


@router.post("/paystack/webhook", status_code=status.HTTP_200_OK)
async def paystack_webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(None),
    engine: ReconciliationEngine = Depends(get_engine),
):
    # Signature is checked against the raw bytes, never a re-serialized body
    body = await request.body()
    return await engine.handle_webhook(body, x_paystack_signature)


@router.post("/retry/{order_id}")
async def retry_payment(
    order_id: str,
    payload: Optional[RetryPaymentRequest] = None,
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    callback_url = (payload.callback_url if payload else None) or default_callback_url(order_id)
    hosted = await engine.retry_payment(user, order_id, callback_url)
    return {"success": True, "data": hosted.model_dump(by_alias=True)}


@router.post("/cancel/{order_id}")
async def cancel_payment(
    order_id: str,
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    cancelled = await engine.cancel_payment(user, order_id)
    return {
        "success": True,
        "message": "Payment cancelled successfully",
        "data": [payment_snapshot(p) for p in cancelled],
    }


@router.get("/order/{order_id}")
async def payments_for_order(
    order_id: str,
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    return {"success": True, "data": await engine.payments_for_order(user, order_id)}


@router.get("/history")
async def payment_history(
    user: User = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
):
    return {"success": True, "data": await engine.payment_history(user)}
