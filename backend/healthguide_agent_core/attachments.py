from __future__ import annotations

import base64
import binascii
import mimetypes
import os
from pathlib import Path

from .models import Attachment

_MEDIA_TYPE_ALIASES = {"image/jpg": "image/jpeg", "image/x-png": "image/png"}
ALLOWED_MEDIA_TYPES = {
    "application/pdf",
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/gif",
    "text/plain",
    "text/csv",
}
ALLOWED_EXTENSIONS = {".pdf", ".png", ".jpg", ".jpeg", ".webp", ".gif", ".txt", ".csv"}


class AttachmentError(ValueError):
    pass


class UnsupportedAttachmentError(AttachmentError):
    pass


class AttachmentTooLargeError(AttachmentError):
    pass


def max_attachment_bytes() -> int:
    return int(os.getenv("HEALTHGUIDE_MAX_ATTACHMENT_BYTES", str(20 * 1024 * 1024)))


def normalize_media_type(media_type: str | None, display_name: str = "") -> str:
    candidate = (media_type or "").split(";", 1)[0].strip().lower()
    if not candidate or candidate == "application/octet-stream":
        guessed, _ = mimetypes.guess_type(display_name)
        candidate = (guessed or "").lower()
    return _MEDIA_TYPE_ALIASES.get(candidate, candidate)


def is_image(media_type: str) -> bool:
    return media_type.startswith("image/")


def encode_attachment(raw: bytes, *, media_type: str | None, display_name: str) -> Attachment:
    name = (display_name or "").strip() or "attachment"
    if not raw:
        raise AttachmentError("Attachment is empty.")
    limit = max_attachment_bytes()
    if len(raw) > limit:
        raise AttachmentTooLargeError(f"Attachment exceeds {limit} bytes.")
    resolved = normalize_media_type(media_type, name)
    extension = Path(name).suffix.lower()
    if resolved not in ALLOWED_MEDIA_TYPES:
        raise UnsupportedAttachmentError(f"Unsupported attachment type: {resolved or 'unknown'}.")
    if extension and extension not in ALLOWED_EXTENSIONS:
        raise UnsupportedAttachmentError(f"Unsupported attachment extension: {extension}.")
    return Attachment(
        encoded_data=base64.b64encode(raw).decode("ascii"),
        media_type=resolved,
        display_name=name,
    )


def encode_file(path: str | Path, media_type: str | None = None) -> Attachment:
    file_path = Path(path)
    return encode_attachment(file_path.read_bytes(), media_type=media_type, display_name=file_path.name)


def decode_attachment(attachment: Attachment) -> bytes:
    try:
        return base64.b64decode(attachment.encoded_data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AttachmentError(f"Attachment payload is not valid base64: {exc}") from exc


def data_url(attachment: Attachment) -> str:
    return f"data:{attachment.media_type};base64,{attachment.encoded_data}"
