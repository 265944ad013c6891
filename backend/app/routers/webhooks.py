# routers/webhooks.py
from fastapi import APIRouter, Depends, Header, Request
from typing import Optional

from app.core.deps import get_engine
from app.services.reconciliation import ReconciliationEngine

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/paystack")
async def paystack_webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(None),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Same handler as /payments/paystack/webhook, for dashboards configured with this URL."""
    payload = await request.body()
    return await engine.handle_webhook(payload, x_paystack_signature)
