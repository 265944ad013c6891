# core/errors.py
"""Exception taxonomy for order fulfillment and payment reconciliation.

Every error carries the HTTP status it maps to; `register_exception_handlers`
turns them into JSON responses. Messages are safe to show to buyers, internal
detail (gateway payloads, signatures) never goes into them.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("mlfor")


class FulfillmentError(Exception):
    """Base exception for all order/payment errors."""

    status_code = 500

    def __init__(self, message: str = "Internal server error"):
        self.message = message
        super().__init__(message)


class ValidationError(FulfillmentError):
    """Malformed or inconsistent input. Never retried."""

    status_code = 400


class Forbidden(FulfillmentError):
    """Caller does not own the resource."""

    status_code = 403

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message)


class OrderNotFound(FulfillmentError):
    status_code = 404

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class PaymentNotFound(FulfillmentError):
    status_code = 404

    def __init__(self, reference: str, message: str | None = None):
        self.reference = reference
        super().__init__(message or f"Payment not found: {reference}")


class ProductNotFound(FulfillmentError):
    status_code = 404

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class InvalidTransition(FulfillmentError):
    """State machine violation. Nothing was mutated."""

    status_code = 409

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"{entity} cannot move from {current} to {target}")


class InsufficientStock(FulfillmentError):
    status_code = 400

    def __init__(self, product_id: str, product_name: str, requested: int, available: int):
        self.product_id = product_id
        self.product_name = product_name
        self.requested = requested
        self.available = available
        super().__init__(f"Not enough stock for {product_name}")


class AmountMismatch(FulfillmentError):
    """Gateway-reported amount or currency differs from the order total."""

    status_code = 400

    def __init__(self, reference: str, expected: int, received: int, currency: str = ""):
        self.reference = reference
        self.expected = expected
        self.received = received
        self.currency = currency
        super().__init__("Payment verification failed")


class RateLimited(FulfillmentError):
    status_code = 429

    def __init__(self, message: str = "Too many attempts. Please wait a minute."):
        super().__init__(message)


class SignatureInvalid(FulfillmentError):
    status_code = 401

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message)


class GatewayError(FulfillmentError):
    """Base for failures talking to the payment provider."""

    status_code = 502


class GatewayRejected(GatewayError):
    """Provider answered with a 4xx or `status: false`."""

    status_code = 502

    def __init__(self, upstream_message: str | None = None, status: int | None = None):
        self.upstream_message = upstream_message
        self.upstream_status = status
        super().__init__("Payment provider rejected the request")


class GatewayUnavailable(GatewayError):
    """Network failure or provider 5xx. Eligible for caller-driven retry."""

    status_code = 503

    def __init__(self, message: str = "Payment provider unavailable"):
        super().__init__(message)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(FulfillmentError)
    async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
        if exc.status_code >= 500:
            logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": type(exc).__name__, "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "InternalError", "message": "Internal server error"},
        )
