from __future__ import annotations

import os

from dotenv import load_dotenv


def _load_dotenv_if_present() -> None:
    """
    Load environment variables from a local `.env` file (dev convenience).

    Production deployments should set real environment variables instead.
    Existing environment variables always win.
    """
    load_dotenv(override=False)


# Load .env as early as possible (dev only).
_load_dotenv_if_present()


def _env_int(name: str, default: int, *, lo: int | None = None, hi: int | None = None) -> int:
    raw = (os.environ.get(name) or "").strip()
    try:
        v = int(raw or default)
    except Exception:
        v = int(default)
    if lo is not None and v < lo:
        v = lo
    if hi is not None and v > hi:
        v = hi
    return v


def database_url() -> str:
    url = os.environ.get("DATABASE_URL") or "sqlite:///./local.db"
    # Some managed providers still supply `postgres://...` which SQLAlchemy treats as invalid.
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def jwt_secret() -> str:
    return os.environ.get("JWT_SECRET") or "dev-secret-change-me"


def jwt_expire_days() -> int:
    return _env_int("JWT_EXPIRE_DAYS", 7, lo=1, hi=90)


def is_local_dev() -> bool:
    """
    We treat the app as "local dev" when DATABASE_URL is not set, because
    `database_url()` falls back to sqlite in that case.
    """
    return not (os.environ.get("DATABASE_URL") or "").strip()


def app_env() -> str:
    """
    Application environment marker:
    - local (default when running with sqlite fallback)
    - staging
    - prod
    """
    raw = (os.environ.get("APP_ENV") or "").strip().lower()
    if raw:
        return raw
    return "local" if is_local_dev() else "prod"


def is_production() -> bool:
    return app_env() in {"prod", "production"}


def allowed_hosts() -> list[str]:
    """
    Comma-separated list for TrustedHost middleware.
    Example: ALLOWED_HOSTS=api.example.com,example.com
    """
    raw = (os.environ.get("ALLOWED_HOSTS") or "").strip()
    if not raw:
        return ["*"]
    hosts = [h.strip() for h in raw.split(",") if h.strip()]
    return hosts or ["*"]


def cors_origins() -> list[str]:
    raw = (os.environ.get("CORS_ORIGINS") or os.environ.get("CLIENT_URL") or "").strip()
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    # Vite dev server.
    return ["http://localhost:5173", "http://127.0.0.1:5173"]


def enforce_secure_secrets() -> None:
    """
    Fail-fast in production if dangerous defaults are still in use.
    """
    if is_production():
        if jwt_secret() == "dev-secret-change-me":
            raise RuntimeError("JWT_SECRET must be set in production (default dev secret detected)")


# -----------------------
# Phone OTP
# -----------------------
def phone_country_code() -> str:
    raw = (os.environ.get("PHONE_COUNTRY_CODE") or "+91").strip()
    return raw if raw.startswith("+") else f"+{raw}"


def phone_national_digits() -> int:
    return _env_int("PHONE_NATIONAL_DIGITS", 10, lo=4, hi=14)


def otp_length() -> int:
    return _env_int("OTP_LENGTH", 4, lo=4, hi=8)


def otp_exp_minutes() -> int:
    """
    OTP expiry duration in minutes.
    Set via env `OTP_EXP_MINUTES`.
    """
    return _env_int("OTP_EXP_MINUTES", 10, lo=1, hi=60)


def otp_max_attempts() -> int:
    return _env_int("OTP_MAX_ATTEMPTS", 3, lo=1, hi=10)


def otp_rate_limit_max() -> int:
    return _env_int("OTP_RATE_LIMIT_MAX", 5, lo=1)


def otp_rate_limit_window_seconds() -> int:
    return _env_int("OTP_RATE_LIMIT_WINDOW_SECONDS", 60 * 60, lo=1)


def otp_resend_cooldown_seconds() -> int:
    return _env_int("OTP_RESEND_COOLDOWN_SECONDS", 60, lo=0)


def otp_sweep_interval_seconds() -> int:
    return _env_int("OTP_SWEEP_INTERVAL_SECONDS", 5 * 60, lo=1)


# -----------------------
# SMS (Twilio)
# -----------------------
def sms_backend() -> str:
    """
    SMS delivery backend.
    - "console" (default): log the SMS payload (safe fallback)
    - "disabled": do nothing
    - "twilio": Twilio Programmable Messaging
    """
    return (os.environ.get("SMS_BACKEND") or "console").strip().lower()


def twilio_account_sid() -> str:
    return (os.environ.get("TWILIO_ACCOUNT_SID") or "").strip()


def twilio_auth_token() -> str:
    return (os.environ.get("TWILIO_AUTH_TOKEN") or "").strip()


def twilio_from_number() -> str:
    return (os.environ.get("TWILIO_PHONE_NUMBER") or "").strip()


# -----------------------
# Cloudinary
# -----------------------
def cloudinary_folder() -> str:
    return (os.environ.get("CLOUDINARY_FOLDER") or "urbanstay").strip().strip("/") or "urbanstay"


def max_upload_image_bytes() -> int:
    # 5 MB per file.
    return _env_int("MAX_UPLOAD_IMAGE_BYTES", 5 * 1024 * 1024, lo=1)


def max_property_images() -> int:
    return _env_int("MAX_PROPERTY_IMAGES", 10, lo=1)


# -----------------------
# Google Sign-In (OAuth)
# -----------------------
def google_oauth_client_ids() -> list[str]:
    """
    Allowed Google OAuth client IDs for verifying Google ID tokens.

    Set one of:
    - GOOGLE_OAUTH_CLIENT_IDS=comma,separated,client,ids
    - GOOGLE_OAUTH_CLIENT_ID=single-client-id
    """
    raw = (os.environ.get("GOOGLE_OAUTH_CLIENT_IDS") or os.environ.get("GOOGLE_OAUTH_CLIENT_ID") or "").strip()
    if not raw:
        return []
    return [x.strip() for x in raw.split(",") if x.strip()]


# -----------------------
# Razorpay
# -----------------------
def razorpay_key_id() -> str:
    return (os.environ.get("RAZORPAY_KEY_ID") or "").strip()


def razorpay_key_secret() -> str:
    return (os.environ.get("RAZORPAY_KEY_SECRET") or "").strip()


def premium_price_paise() -> int:
    # ₹1 while the gateway is in test mode.
    return _env_int("PREMIUM_PRICE_PAISE", 100, lo=100)
