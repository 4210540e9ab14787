"""Provider adapter layer.

Gives the invoker one async interface across the text, image and video
providers.

Usage:
    from genpipe.services.providers import get_adapter

    adapter = get_adapter(Provider.IMAGE_MODEL_A, settings)
    response = await adapter.call(request)
"""

from genpipe.services.providers.base import (
    BufferedResponse,
    ProviderAdapter,
    ProviderResponse,
    StreamedResponse,
)
from genpipe.services.providers.registry import build_adapters, get_adapter

__all__ = [
    "BufferedResponse",
    "ProviderAdapter",
    "ProviderResponse",
    "StreamedResponse",
    "build_adapters",
    "get_adapter",
]
