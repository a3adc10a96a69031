"""Error taxonomy shared by the validator, task store, executor, and HTTP layer.

Every failure that can reach a client is one of the `FusionError` variants
below. Each variant carries a stable machine-readable `code`, a
human-readable `message`, and optional structured `details`. The HTTP layer
maps a variant to a status code through `ERROR_STATUS_CODES`, and the task
runner records the same serialized shape on FAILED tasks.
"""

from __future__ import annotations

from typing import Any


class FusionError(Exception):
    """Base class for all errors with a wire representation."""

    default_code = "UNEXPECTED_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = dict(details) if details else {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ContractValidationError(FusionError):
    """Client payload violates the generation or status contract."""

    default_code = "INVALID_CONTRACT"

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code=code, details=details)


class RequestBodyError(FusionError):
    """Request body could not be read as a JSON document."""

    default_code = "INVALID_JSON"

    def __init__(self, code: str, message: str, *, status_code: int = 400) -> None:
        super().__init__(message, code=code)
        self.status_code = status_code


class TaskConflictError(FusionError):
    default_code = "TASK_EXISTS"


class TaskNotFoundError(FusionError):
    default_code = "TASK_NOT_FOUND"


class RouteNotFoundError(FusionError):
    default_code = "NOT_FOUND"


class TaskTransitionError(FusionError):
    """A lifecycle mutation was requested from a state that does not allow it."""

    default_code = "INVALID_TASK_TRANSITION"


class ProviderError(FusionError):
    """The image-generation provider rejected the call or returned no image."""

    default_code = "GEMINI_API_ERROR"


class ProviderConfigurationError(FusionError):
    default_code = "PROVIDER_NOT_CONFIGURED"


class InputResolutionError(FusionError):
    """An `imageRef` could not be turned into raw image bytes."""

    default_code = "IMAGE_REF_ERROR"


class OutputStorageError(FusionError):
    default_code = "OUTPUT_WRITE_FAILED"


ERROR_STATUS_CODES: dict[type[FusionError], int] = {
    ContractValidationError: 400,
    RequestBodyError: 400,
    TaskConflictError: 409,
    TaskNotFoundError: 404,
    RouteNotFoundError: 404,
    TaskTransitionError: 409,
    ProviderError: 502,
    ProviderConfigurationError: 500,
    InputResolutionError: 422,
    OutputStorageError: 500,
}


def http_status_for(error: BaseException) -> int:
    """Return the HTTP status code used when `error` reaches the HTTP layer."""
    if isinstance(error, RequestBodyError):
        return error.status_code
    for error_type in type(error).__mro__:
        status = ERROR_STATUS_CODES.get(error_type)  # type: ignore[arg-type]
        if status is not None:
            return status
    return 500


def serialize_error(error: object) -> dict[str, Any]:
    """Convert any raised value into the `{code, message, details?}` wire shape."""
    if isinstance(error, FusionError):
        return error.to_dict()
    if isinstance(error, BaseException):
        return {"code": "UNEXPECTED_ERROR", "message": str(error) or type(error).__name__}
    return {"code": "UNKNOWN_ERROR", "message": str(error)}


def error_body(error: object) -> dict[str, Any]:
    return {"error": serialize_error(error)}
