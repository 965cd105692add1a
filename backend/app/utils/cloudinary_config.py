from __future__ import annotations

import os

import cloudinary


def _credentials() -> tuple[str, str, str]:
    return (
        (os.getenv("CLOUDINARY_CLOUD_NAME") or "").strip(),
        (os.getenv("CLOUDINARY_API_KEY") or "").strip(),
        (os.getenv("CLOUDINARY_API_SECRET") or "").strip(),
    )


def cloudinary_is_configured() -> bool:
    """
    Returns True when required Cloudinary env vars exist.
    """
    return all(_credentials())


def configure_cloudinary() -> None:
    """
    Pushes the current credentials into the SDK's global config.

    Called before each upload/destroy so rotated env vars apply without a restart.
    """
    cloud_name, api_key, api_secret = _credentials()
    cloudinary.config(cloud_name=cloud_name, api_key=api_key, api_secret=api_secret, secure=True)
