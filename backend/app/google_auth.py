from __future__ import annotations

from dataclasses import dataclass

from google.auth.transport import requests as google_auth_requests
from google.oauth2 import id_token as google_id_token

from app.config import google_oauth_client_ids, is_production


class GoogleAuthError(RuntimeError):
    pass


class GoogleAuthNotConfigured(GoogleAuthError):
    pass


@dataclass(frozen=True)
class GoogleIdentity:
    google_id: str
    email: str
    name: str
    picture: str
    email_verified: bool


def verify_google_token(token: str) -> GoogleIdentity:
    """
    Verifies a Google ID token (signature, issuer, expiry) and returns the identity it carries.

    The audience is enforced when GOOGLE_OAUTH_CLIENT_ID(S) is configured; production requires it.
    """
    token = (token or "").strip()
    if not token:
        raise GoogleAuthError("Missing id_token")

    allowed_aud = google_oauth_client_ids()
    if is_production() and not allowed_aud:
        raise GoogleAuthNotConfigured("Google Sign-In is not configured (missing GOOGLE_OAUTH_CLIENT_ID)")

    try:
        info = google_id_token.verify_oauth2_token(token, google_auth_requests.Request())
    except ValueError as e:
        raise GoogleAuthError("Invalid Google token") from e

    aud = str(info.get("aud") or "")
    if allowed_aud and aud not in set(allowed_aud):
        raise GoogleAuthError("Google token audience mismatch")

    email = str(info.get("email") or "").strip().lower()
    if not email or "@" not in email:
        raise GoogleAuthError("Google token missing email")
    if info.get("email_verified") is False:
        raise GoogleAuthError("Google email is not verified")

    return GoogleIdentity(
        google_id=str(info.get("sub") or ""),
        email=email,
        name=str(info.get("name") or info.get("given_name") or "").strip(),
        picture=str(info.get("picture") or "").strip(),
        email_verified=bool(info.get("email_verified", True)),
    )
