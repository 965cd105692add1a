from __future__ import annotations

import logging

import requests

from app.config import sms_backend, twilio_account_sid, twilio_auth_token, twilio_from_number

logger = logging.getLogger(__name__)


class SmsSendError(RuntimeError):
    pass


def _send_via_twilio(*, to_phone: str, text: str) -> str:
    """
    Uses Twilio Programmable Messaging:
    https://www.twilio.com/docs/messaging/api/message-resource#create-a-message-resource
    """
    sid = twilio_account_sid()
    token = twilio_auth_token()
    from_number = twilio_from_number()
    if not sid or not token:
        raise SmsSendError("TWILIO_ACCOUNT_SID/TWILIO_AUTH_TOKEN not configured")
    if not from_number:
        raise SmsSendError("TWILIO_PHONE_NUMBER not configured")

    try:
        resp = requests.post(
            f"https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json",
            auth=(sid, token),
            data={"To": to_phone, "From": from_number, "Body": text},
            timeout=15,
        )
    except requests.RequestException as e:
        raise SmsSendError(f"Twilio request failed: {e}") from e

    data: dict = {}
    try:
        data = resp.json() or {}
    except ValueError:
        data = {}
    if not (200 <= int(resp.status_code) < 300):
        # 21211: invalid 'To' phone number.
        if data.get("code") == 21211:
            raise SmsSendError("Invalid phone number")
        raise SmsSendError(f"Twilio send failed: HTTP {resp.status_code}: {str(data.get('message') or resp.text)[:300]}")
    return str(data.get("sid") or "")


def send_sms(*, to_phone: str, text: str) -> str:
    """
    Sends an SMS message and returns the provider message id.

    The "console" backend only logs the payload and returns "console";
    "disabled" drops the message and returns "disabled".
    """
    to_phone = (to_phone or "").strip()
    text = (text or "").strip()
    if not to_phone or not text:
        raise SmsSendError("Recipient and message body are required")

    backend = sms_backend()
    if backend in {"disabled", "off", "none"}:
        return "disabled"
    if backend == "twilio":
        message_id = _send_via_twilio(to_phone=to_phone, text=text)
        logger.info("SMS sent to %s: %s", to_phone, message_id)
        return message_id

    # Default safe fallback.
    logger.warning("SMS_BACKEND=%s: to=%s\n%s", backend, to_phone, text)
    return "console"
