from __future__ import annotations

import hmac
import logging
import math
import re
import secrets
from dataclasses import dataclass, replace
from threading import Lock
from typing import Callable

from app.clock import Clock, system_clock
from app.config import (
    otp_exp_minutes,
    otp_length,
    otp_max_attempts,
    otp_rate_limit_max,
    otp_rate_limit_window_seconds,
    otp_resend_cooldown_seconds,
    phone_country_code,
    phone_national_digits,
)
from app.rate_limit import SlidingWindowLimiter
from app.sms import send_sms

logger = logging.getLogger(__name__)

SmsSender = Callable[..., str]


# -----------------------
# Errors
# -----------------------
class OtpError(Exception):
    """Base class for expected, caller-recoverable OTP failures."""

    status_code = 400
    message = "OTP request failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)

    def extra(self) -> dict:
        return {}


class InvalidFormat(OtpError):
    message = "Invalid phone number format"


class RateLimited(OtpError):
    status_code = 429

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = int(retry_after_seconds)
        minutes = max(1, math.ceil(self.retry_after_seconds / 60))
        super().__init__(f"Too many OTP requests. Please try again in {minutes} minutes")

    def extra(self) -> dict:
        return {"retry_after": self.retry_after_seconds}


class CooldownActive(OtpError):
    status_code = 429

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = int(retry_after_seconds)
        super().__init__(f"Please wait {self.retry_after_seconds} seconds before requesting a new OTP")

    def extra(self) -> dict:
        return {"retry_after": self.retry_after_seconds}


class DispatchFailed(OtpError):
    status_code = 502
    message = "Failed to send OTP. Please try again later."


class CodeNotFound(OtpError):
    message = "No OTP found. Please request a new one."


class CodeExpired(OtpError):
    message = "OTP has expired. Please request a new one."


class AttemptsExceeded(OtpError):
    status_code = 429
    message = "Maximum verification attempts exceeded. Please request a new OTP."


class Mismatch(OtpError):
    def __init__(self, attempts_remaining: int) -> None:
        self.attempts_remaining = int(attempts_remaining)
        plural = "" if self.attempts_remaining == 1 else "s"
        super().__init__(f"Invalid OTP code. {self.attempts_remaining} attempt{plural} remaining.")

    def extra(self) -> dict:
        return {"attempts_remaining": self.attempts_remaining}


# -----------------------
# Phone numbers
# -----------------------
def _clean_phone(raw: str) -> str:
    return re.sub(r"[\s\-()]", "", (raw or "").strip())


def normalize_phone(raw: str) -> str:
    """
    Returns the phone in `<country code><national digits>` form, e.g. +919876543210.

    Spaces, dashes and parentheses are ignored; anything else must match exactly.
    """
    phone = _clean_phone(raw)
    prefix = phone_country_code()
    pattern = rf"^{re.escape(prefix)}[0-9]{{{phone_national_digits()}}}$"
    if not re.match(pattern, phone):
        raise InvalidFormat(
            f"Invalid phone number format. Must be {prefix} followed by {phone_national_digits()} digits"
        )
    return phone


# -----------------------
# Gatekeeper
# -----------------------
@dataclass(frozen=True)
class OtpRecord:
    code: str
    created_at: float
    expires_at: float
    attempts: int = 0


class OtpGatekeeper:
    """
    Issues, verifies and expires phone one-time codes.

    State lives in process memory: one live code per phone plus a sliding
    window of send timestamps. Every read-modify-write runs under a single
    lock; the SMS dispatch happens after the new code is committed.
    """

    def __init__(
        self,
        *,
        sender: SmsSender | None = None,
        clock: Clock | None = None,
        code_length: int = 4,
        ttl_seconds: int = 10 * 60,
        max_attempts: int = 3,
        rate_limit_max: int = 5,
        rate_window_seconds: int = 60 * 60,
        cooldown_seconds: int = 60,
        app_name: str = "UrbanStay",
    ) -> None:
        self._sender = sender or send_sms
        self._clock = clock or system_clock
        self.code_length = int(code_length)
        self.ttl_seconds = int(ttl_seconds)
        self.max_attempts = int(max_attempts)
        self.rate_limit_max = int(rate_limit_max)
        self.rate_window_seconds = int(rate_window_seconds)
        self.cooldown_seconds = int(cooldown_seconds)
        self.app_name = app_name

        self._lock = Lock()
        self._codes: dict[str, OtpRecord] = {}
        self._window = SlidingWindowLimiter(clock=self._clock)

    @classmethod
    def from_config(cls, **overrides) -> "OtpGatekeeper":
        params = dict(
            code_length=otp_length(),
            ttl_seconds=otp_exp_minutes() * 60,
            max_attempts=otp_max_attempts(),
            rate_limit_max=otp_rate_limit_max(),
            rate_window_seconds=otp_rate_limit_window_seconds(),
            cooldown_seconds=otp_resend_cooldown_seconds(),
        )
        params.update(overrides)
        return cls(**params)

    def _generate_code(self) -> str:
        # No leading zero, so the code always has exactly `code_length` digits.
        low = 10 ** (self.code_length - 1)
        return str(low + secrets.randbelow(9 * low))

    def _message(self, code: str) -> str:
        minutes = max(1, self.ttl_seconds // 60)
        return (
            f"Your {self.app_name} verification code is: {code}. "
            f"Valid for {minutes} minutes. Do not share this code with anyone."
        )

    def request_code(self, phone: str) -> int:
        """
        Issues a new code for `phone` and sends it by SMS.

        Returns the code lifetime in seconds.
        """
        phone = normalize_phone(phone)
        with self._lock:
            now = self._clock.now()
            wait = self._window.retry_after(key=phone, limit=self.rate_limit_max, window_seconds=self.rate_window_seconds)
            if wait:
                raise RateLimited(wait)

            current = self._codes.get(phone)
            if current is not None:
                since = now - current.created_at
                if since < self.cooldown_seconds:
                    raise CooldownActive(math.ceil(self.cooldown_seconds - since))

            code = self._generate_code()
            self._codes[phone] = OtpRecord(code=code, created_at=now, expires_at=now + self.ttl_seconds)
            self._window.record(key=phone)

        try:
            message_id = self._sender(to_phone=phone, text=self._message(code))
        except Exception as e:
            logger.exception("OTP dispatch failed phone=%s", phone)
            raise DispatchFailed() from e
        logger.info("OTP sent to %s: %s", phone, message_id)
        return self.ttl_seconds

    def verify_code(self, phone: str, candidate: str) -> None:
        """
        Consumes the live code for `phone` when `candidate` matches.

        Raises an `OtpError` subclass otherwise; expired and exhausted codes are deleted.
        """
        key = _clean_phone(phone)
        candidate = (candidate or "").strip()
        with self._lock:
            rec = self._codes.get(key)
            if rec is None:
                raise CodeNotFound()
            if self._clock.now() > rec.expires_at:
                del self._codes[key]
                raise CodeExpired()
            if rec.attempts >= self.max_attempts:
                del self._codes[key]
                raise AttemptsExceeded()
            if hmac.compare_digest(rec.code.encode("utf-8"), candidate.encode("utf-8")):
                del self._codes[key]
                return
            rec = replace(rec, attempts=rec.attempts + 1)
            self._codes[key] = rec
            raise Mismatch(self.max_attempts - rec.attempts)

    def sweep_expired(self) -> int:
        """
        Deletes expired codes and prunes send windows. Returns the number of codes removed.
        """
        with self._lock:
            now = self._clock.now()
            expired = [phone for phone, rec in self._codes.items() if now > rec.expires_at]
            for phone in expired:
                del self._codes[phone]
            self._window.prune(window_seconds=self.rate_window_seconds)
        return len(expired)

    def get_record(self, phone: str) -> OtpRecord | None:
        with self._lock:
            return self._codes.get(_clean_phone(phone))

    def pending_count(self) -> int:
        with self._lock:
            return len(self._codes)

    def tracked_windows(self) -> list[str]:
        return self._window.keys()
