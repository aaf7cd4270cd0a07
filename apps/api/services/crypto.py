"""
Payment signature signing/verification using HMAC-SHA256.
"""

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from config import settings


def _payment_secret(secret: str = None) -> bytes:
    key = (secret if secret is not None else settings.PAYMENT_KEY_SECRET) or ""
    if not key.strip():
        raise ValueError("PAYMENT_KEY_SECRET is not configured")
    return key.encode()


def sign_payment(order_id: str, payment_id: str, secret: str = None) -> str:
    """
    Compute the hex signature the payment gateway attaches to a capture.

    Args:
        order_id: Gateway order id
        payment_id: Gateway payment id

    Returns:
        Hex-encoded HMAC-SHA256 of ``order_id|payment_id``
    """
    mac = hmac.HMAC(_payment_secret(secret), hashes.SHA256())
    mac.update(f"{order_id}|{payment_id}".encode())
    return mac.finalize().hex()


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: str = None) -> bool:
    """Constant-time check of a gateway signature."""
    try:
        expected = bytes.fromhex(signature or "")
    except ValueError:
        return False
    mac = hmac.HMAC(_payment_secret(secret), hashes.SHA256())
    mac.update(f"{order_id}|{payment_id}".encode())
    try:
        mac.verify(expected)
    except InvalidSignature:
        return False
    return True
