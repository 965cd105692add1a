from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

import requests

from app.config import razorpay_key_id, razorpay_key_secret

logger = logging.getLogger(__name__)

RAZORPAY_ORDERS_URL = "https://api.razorpay.com/v1/orders"


class PaymentsNotConfigured(RuntimeError):
    pass


class PaymentError(RuntimeError):
    pass


def _credentials() -> tuple[str, str]:
    key_id = razorpay_key_id()
    secret = razorpay_key_secret()
    if not key_id or not secret:
        raise PaymentsNotConfigured("RAZORPAY_KEY_ID/RAZORPAY_KEY_SECRET not configured")
    return key_id, secret


def create_order(*, amount: int, currency: str, receipt: str, notes: dict[str, str] | None = None) -> dict[str, Any]:
    """
    Creates a Razorpay order:
    https://razorpay.com/docs/api/orders/create/

    `amount` is in the smallest currency unit (paise).
    """
    key_id, secret = _credentials()
    try:
        resp = requests.post(
            RAZORPAY_ORDERS_URL,
            auth=(key_id, secret),
            json={"amount": int(amount), "currency": currency, "receipt": receipt[:40], "notes": notes or {}},
            timeout=15,
        )
    except requests.RequestException as e:
        raise PaymentError(f"Razorpay request failed: {e}") from e
    if not (200 <= int(resp.status_code) < 300):
        raise PaymentError(f"Razorpay order failed: HTTP {resp.status_code}: {resp.text[:300]}")
    return dict(resp.json() or {})


def expected_signature(*, order_id: str, payment_id: str, secret: str) -> str:
    body = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_payment_signature(*, order_id: str, payment_id: str, signature: str) -> bool:
    """
    Checks the checkout signature: HMAC-SHA256(key_secret, "<order_id>|<payment_id>").
    """
    _, secret = _credentials()
    expected = expected_signature(order_id=order_id, payment_id=payment_id, secret=secret)
    return hmac.compare_digest(expected, (signature or "").strip())
