from __future__ import annotations

import base64

import pytest

from healthguide_agent_core.attachments import (
    AttachmentError,
    AttachmentTooLargeError,
    UnsupportedAttachmentError,
    data_url,
    decode_attachment,
    encode_attachment,
    encode_file,
)
from healthguide_agent_core.models import Attachment


def test_encode_keeps_bytes_and_normalizes_media_type():
    raw = b"\xff\xd8\xff\xe0fake-jpeg"
    attachment = encode_attachment(raw, media_type="image/jpg", display_name="rash.jpg")

    assert attachment.media_type == "image/jpeg"
    assert attachment.display_name == "rash.jpg"
    assert decode_attachment(attachment) == raw
    assert data_url(attachment).startswith("data:image/jpeg;base64,")


def test_media_type_is_guessed_from_the_file_name():
    attachment = encode_attachment(b"%PDF-1.4", media_type="application/octet-stream", display_name="report.pdf")
    assert attachment.media_type == "application/pdf"


def test_encode_file_reads_from_disk(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("BP 120/80", encoding="utf-8")

    attachment = encode_file(path)

    assert attachment.media_type == "text/plain"
    assert attachment.display_name == "notes.txt"
    assert base64.b64decode(attachment.encoded_data) == b"BP 120/80"


def test_empty_attachment_is_rejected():
    with pytest.raises(AttachmentError):
        encode_attachment(b"", media_type="text/plain", display_name="empty.txt")


def test_unsupported_type_is_rejected():
    with pytest.raises(UnsupportedAttachmentError):
        encode_attachment(b"MZ...", media_type="application/x-msdownload", display_name="setup.exe")


def test_oversize_attachment_is_rejected(monkeypatch):
    monkeypatch.setenv("HEALTHGUIDE_MAX_ATTACHMENT_BYTES", "8")
    with pytest.raises(AttachmentTooLargeError):
        encode_attachment(b"0123456789", media_type="text/plain", display_name="big.txt")


def test_corrupt_payload_fails_to_decode():
    attachment = Attachment(encoded_data="not base64!!", media_type="image/png", display_name="x.png")
    with pytest.raises(AttachmentError):
        decode_attachment(attachment)
