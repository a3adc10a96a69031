"""Validation for the generation contract and the status response shape.

All functions here are pure: they never mutate their input and never do I/O.
Validation stops at the first violation, checking fields in a fixed order
(taskId, prompt, negativePrompt, reference, sources, model) so the reported
error is deterministic for a given payload.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from .errors import ContractValidationError
from .models import (
    FEATURE_TYPES,
    TASK_STATUSES,
    GenerationContract,
    PromptIndexing,
    ReferenceImage,
    SourceImage,
    StatusResponse,
)

_SOURCE_MARKER = re.compile(r"\[Source\s+(\d+)\]", re.IGNORECASE)
_REFERENCE_MARKER = re.compile(r"\[Reference\]", re.IGNORECASE)
_WEIGHT_QUANTUM = Decimal("0.0001")


def validate_generation_contract(payload: Any) -> GenerationContract:
    """Normalize and validate a raw generation request."""
    if isinstance(payload, GenerationContract):
        payload = payload.to_wire()
    if not isinstance(payload, Mapping):
        raise ContractValidationError(
            "INVALID_CONTRACT",
            "Generation Contract must be an object",
            {"receivedType": _type_name(payload)},
        )

    task_id = _ensure_string(payload.get("taskId"), "taskId")
    prompt = _ensure_string(payload.get("prompt"), "prompt")
    raw_negative = payload.get("negativePrompt")
    negative_prompt = (
        "" if raw_negative is None else _ensure_string(raw_negative, "negativePrompt", allow_empty=True)
    )
    reference = _validate_reference(payload.get("reference"))

    raw_sources = payload.get("sources")
    if not isinstance(raw_sources, (list, tuple)) or len(raw_sources) == 0:
        raise ContractValidationError(
            "INVALID_SOURCES",
            "sources must be a non-empty array",
            {"field": "sources", "receivedType": _type_name(raw_sources)},
        )
    sources = tuple(_validate_source(item, index) for index, item in enumerate(raw_sources))

    raw_model = payload.get("model")
    model = None
    if raw_model is not None:
        model = _ensure_string(raw_model, "model", allow_empty=True) or None

    return GenerationContract(
        task_id=task_id,
        prompt=prompt,
        negative_prompt=negative_prompt,
        model=model,
        reference=reference,
        sources=sources,
    )


def validate_status_response(payload: Any) -> StatusResponse:
    """Normalize a task-like mapping into the public status response shape."""
    if not isinstance(payload, Mapping):
        raise ContractValidationError(
            "INVALID_STATUS",
            "Status Response must be an object",
            {"receivedType": _type_name(payload)},
        )

    task_id = _ensure_string(payload.get("taskId"), "taskId")
    status = _ensure_string(payload.get("status"), "status").upper()
    if status not in TASK_STATUSES:
        raise ContractValidationError(
            "INVALID_STATUS_VALUE",
            f"status must be one of {', '.join(TASK_STATUSES)}",
            {"field": "status", "received": status},
        )

    raw_warnings = payload.get("warnings")
    warnings = (
        [item.strip() for item in raw_warnings if isinstance(item, str) and item.strip()]
        if isinstance(raw_warnings, (list, tuple))
        else []
    )
    updated_at = payload.get("updatedAt")
    if not isinstance(updated_at, str) or not updated_at:
        updated_at = datetime.now(tz=UTC).isoformat()

    return StatusResponse(
        task_id=task_id,
        status=status,
        output_url=_optional_text(payload.get("outputUrl")),
        error_code=_optional_text(payload.get("errorCode")),
        message=_optional_text(payload.get("message")),
        warnings=warnings,
        updated_at=updated_at,
    )


def extract_prompt_indexing(prompt: str, source_count: int) -> PromptIndexing:
    """Find `[Reference]` and `[Source k]` markers in a prompt.

    Never raises; indexes at or beyond `source_count` are reported in
    `out_of_range` so the caller can turn them into warnings.
    """
    text = prompt if isinstance(prompt, str) else ""
    source_indexes = _dedupe(int(match.group(1)) for match in _SOURCE_MARKER.finditer(text))
    out_of_range = [index for index in source_indexes if index >= source_count]
    return PromptIndexing(
        uses_reference=_REFERENCE_MARKER.search(text) is not None,
        source_indexes=source_indexes,
        out_of_range=out_of_range,
    )


def normalize_weight(value: Any, field: str) -> float:
    """Coerce a weight to a float in [0, 1], rounded half-up to 4 decimals."""
    parsed = _parse_number(value)
    if parsed is None or not math.isfinite(parsed):
        raise ContractValidationError(
            "INVALID_WEIGHT",
            f"{field} must be a valid number",
            {"field": field, "received": _json_safe(value)},
        )
    if parsed < 0 or parsed > 1:
        raise ContractValidationError(
            "WEIGHT_OUT_OF_RANGE",
            f"{field} must be in range [0, 1]",
            {"field": field, "received": parsed},
        )
    # Decimal(float) is exact, so HALF_UP rounds the true binary value.
    return float(Decimal(parsed).quantize(_WEIGHT_QUANTUM, rounding=ROUND_HALF_UP))


def _validate_reference(value: Any) -> ReferenceImage:
    if not isinstance(value, Mapping):
        raise ContractValidationError(
            "INVALID_REFERENCE",
            "reference must be an object",
            {"field": "reference", "receivedType": _type_name(value)},
        )
    return ReferenceImage(
        image_ref=_ensure_string(value.get("imageRef"), "reference.imageRef"),
        weight=normalize_weight(value.get("weight"), "reference.weight"),
    )


def _validate_source(value: Any, index: int) -> SourceImage:
    if not isinstance(value, Mapping):
        raise ContractValidationError(
            "INVALID_SOURCE",
            f"sources[{index}] must be an object",
            {"field": f"sources[{index}]", "index": index, "receivedType": _type_name(value)},
        )

    field = f"sources[{index}].featureType"
    feature_type = _ensure_string(value.get("featureType"), field).upper()
    if feature_type not in FEATURE_TYPES:
        raise ContractValidationError(
            "INVALID_FEATURE_TYPE",
            f"{field} must be one of {', '.join(FEATURE_TYPES)}",
            {"field": field, "index": index, "received": feature_type},
        )

    return SourceImage(
        image_ref=_ensure_string(value.get("imageRef"), f"sources[{index}].imageRef"),
        feature_type=feature_type,
        weight=normalize_weight(value.get("weight"), f"sources[{index}].weight"),
    )


def _ensure_string(value: Any, field: str, *, allow_empty: bool = False) -> str:
    if not isinstance(value, str):
        raise ContractValidationError(
            "INVALID_STRING",
            f"{field} must be a string",
            {"field": field, "receivedType": _type_name(value)},
        )
    trimmed = value.strip()
    if not allow_empty and not trimmed:
        raise ContractValidationError(
            "EMPTY_STRING",
            f"{field} must not be empty",
            {"field": field},
        )
    return trimmed


def _parse_number(value: Any) -> float | None:
    # bool is an int subclass; a JSON true/false is never a weight.
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        return value
    if isinstance(value, int):
        try:
            return float(value)
        except OverflowError:
            return math.inf
    if isinstance(value, str) and value.strip():
        # float() accepts digit separators like "0_5"; a weight string does not.
        if "_" in value:
            return None
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _optional_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _dedupe(values: Any) -> list[int]:
    seen: set[int] = set()
    ordered: list[int] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    return type(value).__name__


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    return repr(value)
