# models/payment_model.py
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field

PaymentStatus = Literal["pending", "success", "failed", "cancelled", "abandoned", "refunded"]
TruthStatus = Literal["success", "failed", "abandoned", "pending"]

# Paystack transaction statuses folded into the four outcomes we act on
_PAYSTACK_STATUS_MAP = {
    "success": "success",
    "failed": "failed",
    "reversed": "failed",
    "abandoned": "abandoned",
}


class Refund(BaseModel):
    id: str
    amount: int
    currency: str = "NGN"
    status: str = "pending"
    merchant_note: Optional[str] = None
    customer_note: Optional[str] = None
    refunded_at: Optional[datetime] = None


class Dispute(BaseModel):
    id: str
    status: str
    refund_amount: Optional[int] = None
    currency: Optional[str] = None
    category: Optional[str] = None
    resolution: Optional[str] = None
    due_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class WebhookEventRecord(BaseModel):
    event: str
    received_at: datetime


class Payment(BaseModel):
    """One payment attempt. Document id == transaction reference."""
    id: str
    order_id: str
    user_id: str

    amount: int                         # kobo
    currency: str = "NGN"
    status: PaymentStatus = "pending"
    channel: Optional[str] = None       # card, bank, ussd, qr, mobile_money, bank_transfer
    customer_email: Optional[str] = None

    authorization_url: Optional[str] = None
    access_code: Optional[str] = None

    # Raw Paystack transaction payload (never sent to clients)
    gateway_response: Optional[dict] = None
    failure_reason: Optional[str] = None

    webhook_verified: bool = False
    webhook_events: list[WebhookEventRecord] = Field(default_factory=list)
    retry_count: int = 0
    refunds: list[Refund] = Field(default_factory=list)
    disputes: list[Dispute] = Field(default_factory=list)

    initiated_at: datetime
    paid_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def refunded_amount(self) -> int:
        return sum(r.amount for r in self.refunds if r.status == "processed")


class HostedPayment(BaseModel):
    """Where to send the buyer to pay."""
    model_config = ConfigDict(populate_by_name=True)

    authorization_url: str = Field(..., serialization_alias="authorizationUrl")
    access_code: Optional[str] = Field(default=None, serialization_alias="accessCode")
    reference: str


class GatewayTruth(BaseModel):
    """
    What the payment provider says happened to a reference.

    Both finalization paths (client verify and webhook) are reduced to this
    shape before the ledger sees them.
    """
    reference: str
    status: TruthStatus
    amount: int
    currency: str
    channel: Optional[str] = None
    paid_at: Optional[datetime] = None
    customer_email: Optional[str] = None
    gateway_id: Optional[str] = None
    message: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    raw: dict = Field(default_factory=dict)
    source: Literal["client_verify", "webhook"]

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @classmethod
    def from_paystack(cls, data: dict, source: str) -> "GatewayTruth":
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            # Paystack echoes an empty string when no metadata was sent
            metadata = {}
        customer = data.get("customer") or {}
        gateway_id = data.get("id")
        return cls(
            reference=data["reference"],
            status=_PAYSTACK_STATUS_MAP.get(data.get("status", ""), "pending"),
            amount=int(data.get("amount") or 0),
            currency=(data.get("currency") or "").upper(),
            channel=data.get("channel"),
            paid_at=data.get("paid_at") or data.get("paidAt"),
            customer_email=customer.get("email"),
            gateway_id=str(gateway_id) if gateway_id is not None else None,
            message=data.get("gateway_response") or data.get("message"),
            metadata=metadata,
            raw=data,
            source=source,
        )


class ClientVerify(BaseModel):
    """Buyer came back from the hosted page and asked us to check."""
    kind: Literal["client_verify"] = "client_verify"
    reference: str


class WebhookCallback(BaseModel):
    """Signed `charge.*` event pushed by the gateway."""
    kind: Literal["webhook"] = "webhook"
    event: str
    data: dict


FinalizationInput = Annotated[Union[ClientVerify, WebhookCallback], Field(discriminator="kind")]


class InitializePaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    order_id: str = Field(..., alias="orderId")
    amount: Optional[int] = Field(default=None, gt=0)   # kobo; must match the order total
    callback_url: Optional[str] = Field(default=None, alias="callbackUrl")


class RetryPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    callback_url: Optional[str] = Field(default=None, alias="callbackUrl")
