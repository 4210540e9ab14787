"""Error taxonomy for the generation pipeline.

Every error carries a ``kind`` tag so it can be surfaced to users and logged
in the request/result envelope without inspecting the exception class.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

PREVIEW_CHARS = 500


class ErrorKind(str, Enum):
    """Tag carried by errors and by ``Err`` results."""

    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    EXHAUSTED = "exhausted"
    PROVIDER_ERROR = "provider_error"
    MALFORMED_RESPONSE = "malformed_response"
    UNRECOVERABLE_PARSE = "unrecoverable_parse"
    DIMENSION = "dimension"
    SCHEMA_VALIDATION = "schema_validation"


class GenPipeError(Exception):
    """Base class for all pipeline errors."""

    kind: ErrorKind = ErrorKind.PROVIDER_ERROR
    user_message = "Something went wrong while generating content."


class TransientProviderError(GenPipeError):
    """Provider returned a retryable status (5xx, 429, overload)."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class GenerationTimeoutError(GenPipeError, TimeoutError):
    """Logical deadline exceeded; retried like a transient error."""

    kind = ErrorKind.TIMEOUT
    user_message = "The provider took too long to respond. Please retry."


class ExhaustedRetriesError(GenPipeError):
    """Every attempt failed."""

    kind = ErrorKind.EXHAUSTED
    user_message = "Generation failed, please retry."

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class MalformedResponseError(GenPipeError):
    """Response carried nothing usable."""

    kind = ErrorKind.MALFORMED_RESPONSE
    user_message = "The provider returned an unusable response."


class UnrecoverableParseError(GenPipeError):
    """Model text could not be parsed even after the repair pass."""

    kind = ErrorKind.UNRECOVERABLE_PARSE
    user_message = "Could not parse model output."

    def __init__(self, message: str, text: str):
        self.preview = preview(text)
        super().__init__(f"{message} (preview: {self.preview!r})")


class DimensionError(GenPipeError):
    """Grid image has missing or zero dimensions."""

    kind = ErrorKind.DIMENSION
    user_message = "The generated image could not be split into panels."


class SchemaValidationError(GenPipeError):
    """No valid items survived schema validation."""

    kind = ErrorKind.SCHEMA_VALIDATION
    user_message = "Model output did not contain any usable items."


def preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    """First ``limit`` characters of ``text`` with an ellipsis marker."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


# ---------------------------------------------------------------------------
# Error categorization for user display
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ErrorCategory:
    code: str
    message: str


def _status_of(exc: BaseException) -> Optional[int]:
    for attr in ("status", "code", "status_code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def categorize_error(exc: BaseException, provider: str) -> ErrorCategory:
    """Map an exception to a stable error code and a user-facing message.

    Args:
        exc: The exception raised by a provider call.
        provider: Short provider label used as the code prefix (e.g. "gemini").

    Returns:
        ErrorCategory with codes like ``GEMINI_TIMEOUT`` or ``SEEDREAM_RATE_LIMIT``.
    """
    prefix = provider.upper().replace("-", "_")
    label = provider.capitalize()
    text = str(exc).lower()

    if isinstance(exc, TimeoutError) or "timeout" in text:
        return ErrorCategory(
            f"{prefix}_TIMEOUT",
            f"{label} request timed out. Please try again shortly.",
        )

    status = _status_of(exc)
    if status == 503:
        if "overload" in text:
            return ErrorCategory(
                f"{prefix}_OVERLOAD",
                f"{label} is currently overloaded. Please try again shortly.",
            )
        return ErrorCategory(
            f"{prefix}_SERVICE_UNAVAILABLE",
            f"{label} is unavailable. Please try again shortly.",
        )
    if status == 429:
        return ErrorCategory(
            f"{prefix}_RATE_LIMIT",
            "Too many requests. Please try again shortly.",
        )

    return ErrorCategory(
        f"{prefix}_ERROR",
        "An error occurred while generating. Please try again shortly.",
    )


def error_details(exc: BaseException) -> dict[str, Any]:
    """Flatten an exception into a JSON-serializable dict for logging.

    Messages that look like JSON are parsed; the ``__cause__`` chain is
    followed recursively.
    """
    message: Any = str(exc)
    trimmed = message.strip()
    if (trimmed.startswith("{") and trimmed.endswith("}")) or (
        trimmed.startswith("[") and trimmed.endswith("]")
    ):
        try:
            message = json.loads(trimmed)
        except json.JSONDecodeError:
            pass

    details: dict[str, Any] = {"name": type(exc).__name__, "message": message}
    if isinstance(exc, GenPipeError):
        details["kind"] = exc.kind.value
    status = _status_of(exc)
    if status is not None:
        details["status"] = status
    if exc.__cause__ is not None:
        details["cause"] = error_details(exc.__cause__)
    return details
