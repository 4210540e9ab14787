"""Storyboard and character analysis via the text model.

The model is asked for JSON but routinely wraps it in fences, adds prose, or
runs out of output tokens mid-description; everything after the invocation
goes through ``StructuredExtractor``.
"""

import logging
from typing import Any, Optional

from genpipe.config import Settings
from genpipe.pipeline.common import build_request
from genpipe.schemas.generation import Modality, Provider
from genpipe.schemas.storyboard import StructuredSchema
from genpipe.services.extractor import StructuredExtractor
from genpipe.services.resilience import ResilientInvoker

logger = logging.getLogger(__name__)


async def analyze(
    invoker: ResilientInvoker,
    prompt: str,
    schema: type[StructuredSchema],
    settings: Settings,
    *,
    config: Optional[dict[str, Any]] = None,
    extractor: Optional[StructuredExtractor] = None,
) -> StructuredSchema:
    """Run ``prompt`` through the text model and return a validated document.

    Args:
        invoker: Shared invoker.
        prompt: Full prompt text.
        schema: Document schema, e.g. ``StoryboardDocument``.
        settings: Process settings.
        config: Generation config passed to the provider untouched.
        extractor: Extractor override; built from settings by default.

    Returns:
        Validated document instance.

    Raises:
        ExhaustedRetriesError: The text model failed on every attempt.
        UnrecoverableParseError: The output could not be parsed or repaired.
        SchemaValidationError: No item in the output was valid.
    """
    extractor = extractor or StructuredExtractor(settings.pipeline.truncatable_fields)
    request = build_request(
        settings, Provider.TEXT_MODEL, Modality.TEXT, prompt, config=config,
    )

    result = (await invoker.invoke(request)).unwrap()
    doc = extractor.extract(result.text or "", schema)
    logger.info(
        "%s analysis: status=%s dropped=%d",
        schema.__name__, doc.parse_status.value, doc.dropped_items,
    )
    return doc.require()
