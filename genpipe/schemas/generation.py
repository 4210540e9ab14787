"""Request/result envelope for a single provider invocation."""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from genpipe.errors import (
    ErrorKind,
    ExhaustedRetriesError,
    GenerationTimeoutError,
    GenPipeError,
    MalformedResponseError,
    TransientProviderError,
)


class Provider(str, Enum):
    TEXT_MODEL = "text-model"
    IMAGE_MODEL_A = "image-model-a"
    IMAGE_MODEL_B = "image-model-b"
    VIDEO_MODEL = "video-model"

    @property
    def field_name(self) -> str:
        """Attribute name used by the settings sections."""
        return self.value.replace("-", "_")


class Modality(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"


class TextPart(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class InlinePart(BaseModel):
    """Inline binary content (reference image, start frame) with its MIME type."""

    kind: Literal["inline"] = "inline"
    data: bytes
    mime_type: str = "image/png"
    role: Optional[str] = Field(
        default=None,
        description="Optional hint for adapters, e.g. 'start_frame' or 'end_frame'",
    )


ContentPart = Annotated[Union[TextPart, InlinePart], Field(discriminator="kind")]


class Payload(BaseModel):
    prompt: str = ""
    parts: list[ContentPart] = Field(default_factory=list)

    def inline_parts(self, role: Optional[str] = None) -> list[InlinePart]:
        return [
            p for p in self.parts
            if isinstance(p, InlinePart) and (role is None or p.role == role)
        ]


class GenerationRequest(BaseModel):
    """One provider call: what to send, where, and how patiently."""

    provider: Provider
    modality: Modality
    payload: Payload = Field(default_factory=Payload)
    config: dict[str, Any] = Field(
        default_factory=dict,
        description="Sampling/size options passed through to the adapter untouched",
    )
    timeout_ms: int = Field(gt=0)
    max_retries: int = Field(ge=0)
    model: Optional[str] = None


class Ok(BaseModel):
    status: Literal["ok"] = "ok"
    data: Optional[bytes] = None
    text: Optional[str] = None
    mime_type: str
    attempt: int = 0

    @model_validator(mode="after")
    def exactly_one_payload(self):
        if (self.data is None) == (self.text is None):
            raise ValueError("Ok result must carry exactly one of data/text")
        return self

    @property
    def is_ok(self) -> bool:
        return True

    def unwrap(self) -> "Ok":
        return self


_ERROR_CLASSES: dict[ErrorKind, type[GenPipeError]] = {
    ErrorKind.TRANSIENT: TransientProviderError,
    ErrorKind.TIMEOUT: GenerationTimeoutError,
    ErrorKind.MALFORMED_RESPONSE: MalformedResponseError,
}


class Err(BaseModel):
    status: Literal["error"] = "error"
    kind: ErrorKind
    message: str
    attempt: int = 0

    @property
    def is_ok(self) -> bool:
        return False

    def unwrap(self) -> Ok:
        """Raise the tagged error this result stands for."""
        if self.kind == ErrorKind.EXHAUSTED:
            raise ExhaustedRetriesError(self.message, attempts=self.attempt + 1)
        exc_cls = _ERROR_CLASSES.get(self.kind)
        if exc_cls is not None:
            raise exc_cls(self.message)
        error = GenPipeError(self.message)
        error.kind = self.kind
        raise error


GenerationResult = Annotated[Union[Ok, Err], Field(discriminator="status")]


def envelope(request: GenerationRequest, result: Union[Ok, Err]) -> dict[str, Any]:
    """JSON-serializable trace record for one invocation."""
    record: dict[str, Any] = {
        "provider": request.provider.value,
        "modality": request.modality.value,
        "timeoutMs": request.timeout_ms,
        "maxRetries": request.max_retries,
        "attempt": result.attempt,
        "status": result.status,
    }
    if isinstance(result, Ok):
        record["mimeType"] = result.mime_type
        if result.text is not None:
            record["textLength"] = len(result.text)
        if result.data is not None:
            record["byteLength"] = len(result.data)
    else:
        record["errorKind"] = result.kind.value
        record["errorMessage"] = result.message
    return record
