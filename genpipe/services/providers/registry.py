"""Provider registry for generation adapters.

Routes a ``Provider`` to the adapter implementation that serves it:
- text-model    → GeminiTextAdapter
- image-model-a → GeminiImageAdapter
- image-model-b → SeedreamImageAdapter
- video-model   → VeoVideoAdapter
"""

import logging

from genpipe.config import Settings
from genpipe.schemas.generation import Provider
from genpipe.services.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)


def get_adapter(provider: Provider, settings: Settings) -> ProviderAdapter:
    """Return a configured adapter for ``provider``.

    Args:
        provider: Which provider slot to serve.
        settings: Process settings carrying keys, base URLs and model ids.

    Returns:
        Configured ProviderAdapter instance ready for use.
    """
    cfg = settings.providers
    model = settings.model_for(provider)

    if provider == Provider.TEXT_MODEL:
        from genpipe.services.providers.gemini import GeminiTextAdapter

        adapter: ProviderAdapter = GeminiTextAdapter(cfg.gemini_api_key, model)
    elif provider == Provider.IMAGE_MODEL_A:
        from genpipe.services.providers.gemini import GeminiImageAdapter

        adapter = GeminiImageAdapter(cfg.gemini_api_key, model)
    elif provider == Provider.IMAGE_MODEL_B:
        from genpipe.services.providers.seedream import SeedreamImageAdapter

        adapter = SeedreamImageAdapter(
            cfg.seedream_api_key,
            cfg.seedream_base_url,
            model,
            download_timeout_ms=settings.timeouts.download_timeout_ms,
        )
    elif provider == Provider.VIDEO_MODEL:
        from genpipe.services.providers.veo import VeoVideoAdapter

        adapter = VeoVideoAdapter(
            cfg.gemini_api_key,
            model,
            poll_interval_ms=settings.pipeline.video_poll_interval_ms,
            download_timeout_ms=settings.timeouts.download_timeout_ms,
        )
    else:
        raise ValueError(f"Unknown provider: {provider}")

    logger.debug("Routing %s to %s (model=%s)", provider.value, type(adapter).__name__, model)
    return adapter


def build_adapters(settings: Settings) -> dict[Provider, ProviderAdapter]:
    """One adapter per provider slot."""
    return {provider: get_adapter(provider, settings) for provider in Provider}
