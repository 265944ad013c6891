import hmac
import hashlib
import logging
from typing import Optional

from app.core.errors import SignatureInvalid

security_logger = logging.getLogger("mlfor.security")

SIGNATURE_HEADER = "x-paystack-signature"


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> None:
    """
    Raise SignatureInvalid unless `signature` is the HMAC-SHA512 of the exact
    raw body under `secret`. Must run before the body is parsed.
    """
    if not signature:
        security_logger.warning("Webhook rejected: missing signature")
        raise SignatureInvalid("No signature provided")

    if not hmac.compare_digest(compute_signature(raw_body, secret), signature.strip().lower()):
        security_logger.warning(f"Webhook rejected: signature mismatch ({len(raw_body)} byte body)")
        raise SignatureInvalid()
