"""
HMAC-SHA256 helpers for payment gateway callbacks and webhooks.

Comparisons always go through hmac.compare_digest.
"""
import hashlib
import hmac
from typing import Optional, Union

from .errors import PaymentVerificationFailed

__all__ = [
    "compute_hmac",
    "checkout_signature",
    "verify_checkout_signature",
    "verify_webhook_signature",
]


def _secret_bytes(secret: Optional[str]) -> bytes:
    if not secret:
        raise PaymentVerificationFailed("Gateway secret is not configured")
    return secret.encode("utf-8")


def compute_hmac(secret: str, payload: Union[str, bytes]) -> str:
    """Hex HMAC-SHA256 digest of payload."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(_secret_bytes(secret), payload, hashlib.sha256).hexdigest()


def checkout_signature(secret: str, order_ref: str, payment_ref: str) -> str:
    """Signature the gateway returns to the checkout client: HMAC(order|payment)."""
    return compute_hmac(secret, f"{order_ref}|{payment_ref}")


def verify_checkout_signature(secret: str, order_ref: str, payment_ref: str, signature: Optional[str]) -> bool:
    if not signature:
        return False
    expected = checkout_signature(secret, order_ref, payment_ref)
    return hmac.compare_digest(expected, signature)


def verify_webhook_signature(secret: str, raw_body: bytes, signature: Optional[str]) -> bool:
    """Webhooks are signed over the raw request body."""
    if not signature:
        return False
    expected = compute_hmac(secret, raw_body)
    return hmac.compare_digest(expected, signature)
