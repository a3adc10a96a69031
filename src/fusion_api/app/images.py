"""Resolve `imageRef` strings into raw image bytes.

Two forms are accepted:
- `data:<mime>;base64,<payload>` is decoded in place, without I/O.
- `http://` / `https://` URLs are downloaded; the response content-type
  (without parameters) becomes the MIME type, defaulting to `image/png`.
Anything else fails with `InputResolutionError`.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass

import httpx

from .errors import InputResolutionError

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "image/png"
_DATA_URL = re.compile(r"^data:([^;,]+);base64,(.+)$", re.DOTALL)
_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)


@dataclass(frozen=True)
class InlineImage:
    """Normalized image payload used for both inputs and provider output."""

    mime_type: str
    data: bytes

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


def decode_data_url(image_ref: str) -> InlineImage:
    match = _DATA_URL.match(image_ref)
    if match is None:
        raise InputResolutionError(
            "Invalid data URL imageRef. Expected data:<mime>;base64,<data>.",
            details={"reason": "invalid_data_url"},
        )
    mime_type, payload = match.group(1).strip(), match.group(2)
    try:
        data = base64.b64decode("".join(payload.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InputResolutionError(
            "Invalid data URL imageRef. Payload is not valid base64.",
            details={"reason": "invalid_data_url", "mimeType": mime_type},
        ) from exc
    return InlineImage(mime_type=mime_type, data=data)


async def resolve_image_ref(image_ref: str, *, client: httpx.AsyncClient) -> InlineImage:
    if image_ref.startswith("data:"):
        return decode_data_url(image_ref)

    if _HTTP_URL.match(image_ref):
        return await _download(image_ref, client=client)

    raise InputResolutionError(
        "Unsupported imageRef format. Use data URL or http(s) URL.",
        details={"reason": "unsupported_scheme", "imageRef": image_ref[:80]},
    )


async def _download(url: str, *, client: httpx.AsyncClient) -> InlineImage:
    try:
        response = await client.get(url, follow_redirects=True)
    except httpx.HTTPError as exc:
        logger.warning("image_download event=error url=%s reason=%s", url, exc)
        raise InputResolutionError(
            f"Failed to download imageRef: {url} ({exc})",
            details={"reason": "download_failed", "imageRef": url},
        ) from exc

    if not response.is_success:
        logger.warning("image_download event=error url=%s status=%s", url, response.status_code)
        raise InputResolutionError(
            f"Failed to download imageRef: {url} ({response.status_code})",
            details={"reason": "download_failed", "imageRef": url, "status": response.status_code},
        )

    content_type = response.headers.get("content-type") or DEFAULT_MIME_TYPE
    mime_type = content_type.split(";", 1)[0].strip() or DEFAULT_MIME_TYPE
    return InlineImage(mime_type=mime_type, data=response.content)
