import logging
from typing import Optional
from urllib.parse import quote

import httpx

from app.core.errors import GatewayRejected, GatewayUnavailable
from app.models.payment_model import GatewayTruth, HostedPayment

logger = logging.getLogger("mlfor.payments")

PAYSTACK_BASE_URL = "https://api.paystack.co"


class PaystackClient:
    """
    Thin adapter over the two Paystack calls we need.

    Owns no state and never retries: a failed call surfaces as
    GatewayUnavailable (network, 5xx) or GatewayRejected (4xx, status false)
    and the caller decides what to do.
    """

    def __init__(
        self,
        secret_key: str,
        base_url: str = PAYSTACK_BASE_URL,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = str(base_url).rstrip("/")
        self.timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {secret_key}",
            "Content-Type": "application/json",
        }
        self._transport = transport

    async def initialize_transaction(
        self,
        *,
        amount: int,
        currency: str,
        reference: str,
        callback_url: Optional[str],
        metadata: dict,
        email: str,
    ) -> HostedPayment:
        payload = {
            "email": email,
            "amount": amount,  # kobo
            "currency": currency,
            "reference": reference,
            "metadata": metadata,
        }
        if callback_url:
            payload["callback_url"] = callback_url

        data = await self._request("POST", "/transaction/initialize", json=payload)
        logger.info(f"Paystack transaction initialized → {reference}")
        return HostedPayment(
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code"),
            reference=data.get("reference") or reference,
        )

    async def verify_transaction(self, reference: str) -> GatewayTruth:
        data = await self._request("GET", f"/transaction/verify/{quote(reference, safe='')}")
        return GatewayTruth.from_paystack(data, source="client_verify")

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(method, path, json=json, headers=self._headers)
        except httpx.HTTPError as e:
            logger.error(f"Paystack {method} {path} failed: {e}")
            raise GatewayUnavailable() from e

        if response.status_code >= 500:
            logger.error(f"Paystack {method} {path} → {response.status_code}")
            raise GatewayUnavailable()

        try:
            body = response.json()
        except ValueError as e:
            logger.error(f"Paystack {method} {path} returned non-JSON body")
            raise GatewayUnavailable() from e

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or "Payment provider rejected the request"
            logger.warning(f"Paystack {method} {path} rejected ({response.status_code}): {message}")
            raise GatewayRejected(message, status=response.status_code)

        return body.get("data") or {}
