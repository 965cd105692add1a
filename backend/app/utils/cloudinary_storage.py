from __future__ import annotations

import logging
import os
import tempfile
from io import BytesIO
from typing import Literal

import cloudinary.uploader
from PIL import Image, ImageOps, UnidentifiedImageError

from app.config import cloudinary_folder
from app.utils.cloudinary_config import cloudinary_is_configured, configure_cloudinary

logger = logging.getLogger(__name__)

MediaKind = Literal["properties", "profiles"]

# Max width/height in px; aspect ratio is kept.
PROPERTY_MAX_DIM = (1200, 800)
PROFILE_MAX_DIM = (400, 400)
JPEG_QUALITY = 82       # balance between size & quality

ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
ALLOWED_EXTENSIONS = {".jpeg", ".jpg", ".png", ".webp"}


class MediaUploadError(RuntimeError):
    pass


def cloudinary_enabled() -> bool:
    return cloudinary_is_configured()


def is_allowed_image(*, filename: str, content_type: str) -> bool:
    ext = os.path.splitext((filename or "").strip())[1].lower()
    return ext in ALLOWED_EXTENSIONS and (content_type or "").lower().strip() in ALLOWED_CONTENT_TYPES


def _looks_like_image(raw: bytes) -> bool:
    if not raw or len(raw) < 16:
        return False

    sig = raw[:16]

    return (
        sig.startswith(b"\xFF\xD8\xFF") or          # JPEG
        sig.startswith(b"\x89PNG\r\n\x1a\n") or     # PNG
        (sig.startswith(b"RIFF") and sig[8:12] == b"WEBP")
    )


def _optimize_image(raw: bytes, *, kind: MediaKind) -> str:
    """
    Validate + downscale an image into a temp JPEG. Returns the temp file path.
    """
    if not _looks_like_image(raw):
        raise MediaUploadError("Unsupported or corrupt image")

    box = PROFILE_MAX_DIM if kind == "profiles" else PROPERTY_MAX_DIM
    try:
        img = Image.open(BytesIO(raw))
        img = ImageOps.exif_transpose(img)
        img = img.convert("RGB")
        if kind == "profiles":
            # Square crop, centred.
            img = ImageOps.fit(img, box, Image.LANCZOS)
        else:
            img.thumbnail(box, Image.LANCZOS)
    except (UnidentifiedImageError, OSError) as e:
        raise MediaUploadError("Unsupported or corrupt image") from e

    tmp = tempfile.NamedTemporaryFile(delete=False, suffix=".jpg")
    try:
        img.save(
            tmp,
            format="JPEG",
            quality=JPEG_QUALITY,
            optimize=True,
            progressive=True,
        )
        tmp.flush()
    finally:
        tmp.close()
    return tmp.name


def upload_image(*, raw: bytes, kind: MediaKind, public_id: str | None = None) -> tuple[str, str]:
    """
    Uploads an image into `<folder>/<kind>` and returns (secure_url, public_id).
    """
    if not cloudinary_enabled():
        raise MediaUploadError("Cloudinary is not configured")

    configure_cloudinary()
    tmp_path = _optimize_image(raw, kind=kind)
    try:
        options = {
            "resource_type": "image",
            "folder": f"{cloudinary_folder()}/{kind}",
            "overwrite": False,
            "type": "upload",
            "invalidate": False,
        }
        if public_id:
            options["public_id"] = public_id
        res = cloudinary.uploader.upload(tmp_path, **options)
    finally:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass

    url = str(res.get("secure_url") or "").strip()
    pid = str(res.get("public_id") or "").strip()
    if not url or not pid:
        raise MediaUploadError("Cloudinary returned an incomplete upload result")
    return url, pid


def destroy(*, public_id: str) -> bool:
    """
    Deletes an image by public id. Returns True when Cloudinary reports "ok".
    """
    pid = (public_id or "").strip()
    if not pid:
        return False
    configure_cloudinary()
    res = cloudinary.uploader.destroy(pid, resource_type="image", invalidate=False)
    return str((res or {}).get("result") or "") == "ok"


def public_id_from_url(url: str) -> str:
    """
    Extracts the public id from a delivery URL.

    https://res.cloudinary.com/<cloud>/image/upload/v1234/urbanstay/properties/xyz.jpg
    -> urbanstay/properties/xyz
    """
    parts = (url or "").strip().split("/")
    if "upload" not in parts:
        return ""
    tail = parts[parts.index("upload") + 1:]
    # Optional version segment.
    if tail and tail[0].startswith("v") and tail[0][1:].isdigit():
        tail = tail[1:]
    if not tail:
        return ""
    tail[-1] = tail[-1].rsplit(".", 1)[0]
    return "/".join(p for p in tail if p)
