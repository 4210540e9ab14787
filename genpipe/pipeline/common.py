"""Helpers shared by the pipeline stages."""

from typing import Any, Optional

from genpipe.config import Settings
from genpipe.schemas.generation import (
    ContentPart,
    GenerationRequest,
    Modality,
    Payload,
    Provider,
)

SCENES_TABLE = "scenes"
PROJECTS_TABLE = "projects"
CUTS_TABLE = "cuts"
CHARACTERS_TABLE = "characters"
BACKGROUNDS_TABLE = "backgrounds"


def build_request(
    settings: Settings,
    provider: Provider,
    modality: Modality,
    prompt: str,
    parts: Optional[list[ContentPart]] = None,
    config: Optional[dict[str, Any]] = None,
) -> GenerationRequest:
    """Request with the provider's configured model, deadline and retry cap."""
    return GenerationRequest(
        provider=provider,
        modality=modality,
        payload=Payload(prompt=prompt, parts=parts or []),
        config=config or {},
        timeout_ms=settings.timeout_for(provider),
        max_retries=settings.retries_for(provider),
        model=settings.model_for(provider),
    )
