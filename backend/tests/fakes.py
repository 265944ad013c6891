"""In-memory stand-ins for Firestore and Paystack used across the test suite."""

import json
import threading
from copy import deepcopy
from typing import Any, Optional

from app.core.documents import DocumentStore
from app.core.errors import GatewayRejected
from app.models.order_model import OrderDraft
from app.models.payment_model import GatewayTruth, HostedPayment
from app.services.webhook_verifier import compute_signature

WEBHOOK_SECRET = "whsec_test_secret"


class MemoryDocumentStore(DocumentStore):
    """Dict-backed DocumentStore. `update_if` holds one lock, like a transaction."""

    def __init__(self, collection: str = "memory"):
        self.collection = collection
        self.docs: dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, doc_id: str) -> Optional[dict]:
        with self._lock:
            doc = self.docs.get(doc_id)
            return deepcopy(doc) if doc is not None else None

    def create(self, doc_id: str, data: dict) -> bool:
        with self._lock:
            if doc_id in self.docs:
                return False
            self.docs[doc_id] = deepcopy(data)
            return True

    def update_if(self, doc_id, check, mutate):
        with self._lock:
            current = deepcopy(self.docs.get(doc_id))
            if not check(current):
                return None
            changes = mutate(deepcopy(current))
            self.docs[doc_id] = {**current, **deepcopy(changes)}
            return deepcopy(self.docs[doc_id])

    def where(self, field: str, op: str, value: Any) -> list[dict]:
        assert op == "==", "only equality queries are used"
        with self._lock:
            return [deepcopy(doc) for doc in self.docs.values() if doc.get(field) == value]


def paystack_transaction(
    reference: str,
    amount: int,
    metadata: Optional[dict] = None,
    status: str = "success",
    currency: str = "NGN",
    email: str = "buyer@example.com",
) -> dict:
    """The `data` object Paystack returns from verify and sends in charge.* webhooks."""
    succeeded = status == "success"
    return {
        "id": 4099260516,
        "reference": reference,
        "status": status,
        "amount": amount,
        "currency": currency,
        "channel": "card",
        "paid_at": "2026-10-17T10:15:00.000Z" if succeeded else None,
        "gateway_response": "Successful" if succeeded else "Declined",
        "customer": {"email": email},
        "metadata": metadata if metadata is not None else {},
    }


class FakeGateway:
    """Records calls and answers from a dict of transactions keyed by reference."""

    def __init__(self):
        self.transactions: dict[str, dict] = {}
        self.initialized: list[dict] = []
        self.verify_calls: list[str] = []
        self.fail_with: Optional[Exception] = None

    async def initialize_transaction(self, *, amount, currency, reference, callback_url, metadata, email):
        if self.fail_with is not None:
            raise self.fail_with
        self.initialized.append(
            {
                "amount": amount,
                "currency": currency,
                "reference": reference,
                "callback_url": callback_url,
                "metadata": metadata,
                "email": email,
            }
        )
        self.transactions[reference] = paystack_transaction(
            reference, amount, metadata, status="abandoned", currency=currency, email=email
        )
        return HostedPayment(
            authorization_url=f"https://checkout.paystack.test/{reference}",
            access_code=f"access_{reference}",
            reference=reference,
        )

    async def verify_transaction(self, reference: str) -> GatewayTruth:
        self.verify_calls.append(reference)
        if self.fail_with is not None:
            raise self.fail_with
        data = self.transactions.get(reference)
        if data is None:
            raise GatewayRejected("Transaction reference not found", status=400)
        return GatewayTruth.from_paystack(deepcopy(data), source="client_verify")

    def settle(self, reference: str, status: str = "success", amount: Optional[int] = None, currency: str = "NGN") -> dict:
        """Pretend the buyer finished on the hosted page."""
        current = self.transactions[reference]
        self.transactions[reference] = paystack_transaction(
            reference,
            current["amount"] if amount is None else amount,
            current["metadata"],
            status=status,
            currency=currency,
            email=current["customer"]["email"],
        )
        return deepcopy(self.transactions[reference])


def signed(payload: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, str]:
    body = json.dumps(payload).encode("utf-8")
    return body, compute_signature(body, secret)


def make_draft(qty: int = 2, shipping_price: int = 2000, product_id: str = "tee-black", price: int = 5000, **overrides) -> OrderDraft:
    """Two black tees at 5,000 plus 2,000 shipping: a 12,000 order."""
    data = {
        "order_items": [
            {
                "product_id": product_id,
                "name": "Black Tee",
                "qty": qty,
                "price": price,
                "size": "L",
                "color": "black",
            }
        ],
        "shipping_address": {
            "address": "12 Admiralty Way",
            "city": "Lekki",
            "state": "Lagos",
            "postal_code": "106104",
        },
        "items_price": qty * price,
        "shipping_price": shipping_price,
    }
    data.update(overrides)
    return OrderDraft(**data)
