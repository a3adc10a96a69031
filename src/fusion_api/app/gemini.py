from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

import httpx

from .errors import ProviderError
from .images import DEFAULT_MIME_TYPE, InlineImage

logger = logging.getLogger(__name__)

PROVIDER_NAME = "gemini"
BODY_SUMMARY_MAX_CHARS = 420
TEXT_EXCERPT_MAX_CHARS = 220
REQUEST_ID_HEADERS = ("x-request-id", "x-goog-request-id")


class GeminiClient:
    """Minimal `generateContent` client over the Gemini REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout_s: float | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    def endpoint(self, model: str) -> str:
        return f"{self.base_url}/models/{quote(model, safe='')}:generateContent"

    async def generate_content(
        self,
        *,
        model: str,
        body: dict[str, Any],
        client: httpx.AsyncClient,
    ) -> dict[str, Any]:
        """POST the request body and return the decoded JSON response.

        Raises `ProviderError` for non-2xx responses and for 2xx responses
        whose body is not a JSON object.
        """
        response = await client.post(
            self.endpoint(model),
            headers={"content-type": "application/json", "x-goog-api-key": self.api_key},
            json=body,
            timeout=self.timeout_s,
        )
        response_text = response.text
        result_json = _parse_json(response_text)

        if not response.is_success:
            error_payload = result_json.get("error") if isinstance(result_json, dict) else None
            message = None
            if isinstance(error_payload, dict) and isinstance(error_payload.get("message"), str):
                message = error_payload["message"]
            summary_source = (
                json.dumps(error_payload)
                if error_payload
                else response_text or "empty response body"
            )
            details = _error_details(
                response, model=model, reason="http_error", summary_source=summary_source
            )
            logger.warning(
                "gemini_request event=error model=%s status=%s request_id=%s",
                model,
                response.status_code,
                details["requestId"],
            )
            raise ProviderError(
                message or f"Gemini API request failed with status {response.status_code}.",
                details=details,
            )

        if not isinstance(result_json, dict):
            details = _error_details(
                response,
                model=model,
                reason="non_json",
                summary_source=response_text or "empty response body",
            )
            logger.warning(
                "gemini_request event=non_json model=%s status=%s", model, response.status_code
            )
            raise ProviderError("Gemini returned non-JSON success response.", details=details)

        return result_json


def summarize_text(text: str, max_length: int = BODY_SUMMARY_MAX_CHARS) -> str:
    """Collapse whitespace and truncate to `max_length` characters."""
    if not isinstance(text, str):
        return ""
    normalized = re.sub(r"\s+", " ", text).strip()
    if len(normalized) <= max_length:
        return normalized
    return f"{normalized[: max_length - 3]}..."


def normalize_inline_data(part: Mapping[str, Any]) -> InlineImage | None:
    """Adapt either inline-data wire convention into one `InlineImage`.

    Accepts `inlineData: {mimeType, data}` and `inline_data: {mime_type, data}`.
    Returns None when the part carries no inline data at all.
    """
    inline = part.get("inlineData") or part.get("inline_data")
    if not isinstance(inline, Mapping) or not inline.get("data"):
        return None
    mime_type = inline.get("mimeType") or inline.get("mime_type") or DEFAULT_MIME_TYPE
    raw_data = inline["data"]
    try:
        data = base64.b64decode(raw_data, validate=False)
    except (binascii.Error, TypeError, ValueError) as exc:
        raise ProviderError(
            "Gemini image part carried invalid base64 data.",
            details={"provider": PROVIDER_NAME, "reason": "missing_image_data"},
        ) from exc
    if not data:
        raise ProviderError(
            "Gemini image part missing base64 data.",
            details={"provider": PROVIDER_NAME, "reason": "missing_image_data"},
        )
    return InlineImage(mime_type=str(mime_type), data=data)


def extract_output_image(result_json: Mapping[str, Any]) -> InlineImage:
    """Pick the first inline image from the first candidate's content parts."""
    parts = _first_candidate_parts(result_json)
    if not parts:
        raise ProviderError(
            "Gemini returned no candidates/content parts.",
            details={"provider": PROVIDER_NAME, "reason": "no_candidates"},
        )

    for part in parts:
        if not isinstance(part, Mapping):
            continue
        image = normalize_inline_data(part)
        if image is not None:
            return image

    text = next(
        (
            part["text"]
            for part in parts
            if isinstance(part, Mapping) and isinstance(part.get("text"), str) and part["text"]
        ),
        None,
    )
    if text is not None:
        excerpt = text[:TEXT_EXCERPT_MAX_CHARS]
        raise ProviderError(
            f"Gemini returned text only: {excerpt}",
            details={"provider": PROVIDER_NAME, "reason": "text_only", "text": excerpt},
        )
    raise ProviderError(
        "Gemini returned no image part.",
        details={"provider": PROVIDER_NAME, "reason": "no_image_part"},
    )


def output_extension(mime_type: str) -> str:
    lowered = mime_type.lower()
    if "jpeg" in lowered or "jpg" in lowered:
        return "jpg"
    if "webp" in lowered:
        return "webp"
    return "png"


def _first_candidate_parts(result_json: Mapping[str, Any]) -> list[Any]:
    candidates = result_json.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return []
    first = candidates[0]
    if not isinstance(first, Mapping):
        return []
    content = first.get("content")
    if not isinstance(content, Mapping):
        return []
    parts = content.get("parts")
    return parts if isinstance(parts, list) else []


def _parse_json(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def _request_id(response: httpx.Response) -> str | None:
    for header in REQUEST_ID_HEADERS:
        value = response.headers.get(header)
        if value:
            return value
    return None


def _error_details(
    response: httpx.Response,
    *,
    model: str,
    reason: str,
    summary_source: str,
) -> dict[str, Any]:
    return {
        "provider": PROVIDER_NAME,
        "model": model,
        "reason": reason,
        "status": response.status_code,
        "statusText": response.reason_phrase or None,
        "requestId": _request_id(response),
        "bodySummary": summarize_text(summary_source),
    }
