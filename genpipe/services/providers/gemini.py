"""Gemini adapters (google-genai SDK, API-key mode).

Both adapters stream ``generate_content_stream`` chunks back to the
accumulator: the text adapter for storyboard/analysis prompts, the image
adapter for composite grids and reference images.
"""

import logging
from typing import Any, Optional

from google import genai
from google.genai import types as genai_types

from genpipe.errors import GenPipeError
from genpipe.schemas.generation import GenerationRequest, InlinePart, Modality, TextPart
from genpipe.services.providers.base import ProviderAdapter, StreamedResponse

logger = logging.getLogger(__name__)

# Applied under ``request.config`` for image generation.
DEFAULT_IMAGE_CONFIG: dict[str, Any] = {
    "response_modalities": ["IMAGE", "TEXT"],
    "image_config": {"image_size": "1K"},
    "temperature": 1.0,
    "top_p": 0.95,
    "top_k": 40,
    "max_output_tokens": 32768,
}


def build_contents(request: GenerationRequest) -> list:
    """Ordered content list: payload parts first, then the prompt."""
    contents: list = []
    for part in request.payload.parts:
        if isinstance(part, InlinePart):
            contents.append(
                genai_types.Part.from_bytes(data=part.data, mime_type=part.mime_type)
            )
        elif isinstance(part, TextPart):
            contents.append(part.text)
    if request.payload.prompt:
        contents.append(request.payload.prompt)
    return contents


def merge_image_config(overrides: dict[str, Any]) -> dict[str, Any]:
    merged = {**DEFAULT_IMAGE_CONFIG, **overrides}
    merged["image_config"] = {
        **DEFAULT_IMAGE_CONFIG["image_config"],
        **(overrides.get("image_config") or {}),
    }
    return merged


class _GeminiAdapter(ProviderAdapter):
    label = "gemini"
    modality = Modality.TEXT

    def __init__(
        self,
        api_key: Optional[str],
        default_model: str,
        client: Optional[genai.Client] = None,
    ) -> None:
        self._api_key = api_key
        self._default_model = default_model
        self._client = client

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            if not self._api_key:
                raise GenPipeError("Gemini API key is not configured (providers.gemini_api_key)")
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    def build_config(self, request: GenerationRequest) -> Optional[genai_types.GenerateContentConfig]:
        if not request.config:
            return None
        return genai_types.GenerateContentConfig(**request.config)

    async def call(self, request: GenerationRequest) -> StreamedResponse:
        model = request.model or self._default_model
        contents = build_contents(request)
        logger.debug(
            "[%s] generate_content_stream model=%s parts=%d",
            self.label, model, len(contents),
        )
        stream = await self.client.aio.models.generate_content_stream(
            model=model,
            contents=contents,
            config=self.build_config(request),
        )
        return StreamedResponse(chunks=stream, modality=self.modality)


class GeminiTextAdapter(_GeminiAdapter):
    """Streams text; ``request.config`` maps onto ``GenerateContentConfig``."""


class GeminiImageAdapter(_GeminiAdapter):
    """Streams image output; the first inline image chunk wins."""

    modality = Modality.IMAGE

    def build_config(self, request: GenerationRequest) -> genai_types.GenerateContentConfig:
        return genai_types.GenerateContentConfig(**merge_image_config(request.config))
