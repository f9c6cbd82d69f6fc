"""Media helpers: data URLs, MIME guessing, inline-vs-upload decisions."""

from __future__ import annotations

import base64
import binascii
import mimetypes
from dataclasses import dataclass

from council_gateway.core.config import settings
from council_gateway.gateway.errors import ConfigurationError


@dataclass
class DataUrl:
    mime_type: str
    data: str  # base64 payload

    def decode(self) -> bytes:
        try:
            return base64.b64decode(self.data, validate=True)
        except binascii.Error as e:
            raise ConfigurationError(f"invalid base64 in data url: {e}") from e


def parse_data_url(url: str) -> DataUrl | None:
    """Parse ``data:<mime>;base64,<payload>``. Returns None for other URLs."""
    if not url.startswith("data:"):
        return None
    header, sep, payload = url[len("data:") :].partition(",")
    if not sep or not header.endswith(";base64"):
        raise ConfigurationError("only base64 data urls are supported")
    mime = header[: -len(";base64")] or "application/octet-stream"
    return DataUrl(mime_type=mime, data=payload)


def guess_mime(url_or_name: str, default: str = "application/octet-stream") -> str:
    mime, _ = mimetypes.guess_type(url_or_name.split("?", 1)[0])
    return mime or default


def is_remote_uri(url: str) -> bool:
    return url.startswith(("http://", "https://", "gs://"))


def needs_upload(size_bytes: int | None, limit: int | None = None) -> bool:
    """Media at or above the inline limit must go through resumable upload."""
    threshold = settings.inline_media_limit_bytes if limit is None else limit
    return size_bytes is not None and size_bytes >= threshold


def encode_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")
