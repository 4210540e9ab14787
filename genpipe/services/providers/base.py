"""Abstract base class for generation provider adapters.

An adapter turns a ``GenerationRequest`` into a raw ``ProviderResponse``.
It does not retry, time out, or drain streams; those belong to the
invoker and the accumulator so every provider gets identical behaviour.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterable, Optional, Union

from genpipe.schemas.generation import GenerationRequest, Modality


@dataclass
class BufferedResponse:
    """Whole payload already in hand (Seedream, Veo)."""

    data: Optional[bytes] = None
    text: Optional[str] = None
    mime_type: str = "application/octet-stream"


@dataclass
class StreamedResponse:
    """Chunk stream shaped like google-genai ``GenerateContentResponse`` items.

    Each chunk exposes ``candidates[0].content.parts``; each part may carry
    ``text`` or ``inline_data`` (``data`` + ``mime_type``).
    """

    chunks: AsyncIterable[Any]
    modality: Modality


ProviderResponse = Union[BufferedResponse, StreamedResponse]


class ProviderAdapter(ABC):
    """Base class for provider adapters.

    Subclasses implement ``call()``; ``label`` names the provider in logs and
    error codes (e.g. "gemini", "seedream", "veo").
    """

    label: str = "provider"

    @abstractmethod
    async def call(self, request: GenerationRequest) -> ProviderResponse:
        """Issue the provider request and return its raw response.

        Args:
            request: The request to execute. ``request.config`` is passed
                through to the provider untouched.

        Returns:
            A buffered or streamed response for the accumulator to drain.

        Raises:
            TransientProviderError: For retryable provider failures.
            Exception: Provider SDK errors; the invoker classifies them.
        """
        ...
