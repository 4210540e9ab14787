"""Drain a buffered or streamed provider response into one payload.

Streaming text is concatenated fragment by fragment in arrival order.
Streaming binary stops at the first chunk that carries non-empty inline data
(first match wins); a provider that streams a low-resolution preview ahead of
the final asset would have the preview kept.
"""

import base64
import logging
from typing import Any, Iterator, Union

from genpipe.errors import ErrorKind
from genpipe.schemas.generation import Err, Modality, Ok
from genpipe.services.providers.base import (
    BufferedResponse,
    ProviderResponse,
    StreamedResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MIME = "image/png"


def _chunk_parts(chunk: Any) -> Iterator[Any]:
    """Yield the content parts of the first candidate, tolerating gaps."""
    candidates = getattr(chunk, "candidates", None)
    if not candidates:
        return
    content = getattr(candidates[0], "content", None)
    parts = getattr(content, "parts", None) if content is not None else None
    if not parts:
        return
    yield from parts


def _inline_bytes(part: Any) -> tuple[bytes, str] | None:
    inline = getattr(part, "inline_data", None)
    if inline is None:
        return None
    data = getattr(inline, "data", None)
    if not data:
        return None
    if isinstance(data, str):
        data = base64.b64decode(data)
    return data, getattr(inline, "mime_type", None) or DEFAULT_IMAGE_MIME


async def _close(chunks: Any) -> None:
    aclose = getattr(chunks, "aclose", None)
    if aclose is not None:
        await aclose()


class ResponseAccumulator:
    """Turns provider responses into ``Ok``/``Err`` results."""

    async def accumulate(self, response: ProviderResponse) -> Union[Ok, Err]:
        if isinstance(response, BufferedResponse):
            return self._from_buffer(response)
        if isinstance(response, StreamedResponse):
            if response.modality == Modality.TEXT:
                return await self._drain_text(response)
            return await self._drain_binary(response)
        raise TypeError(f"Unsupported provider response: {type(response).__name__}")

    def _from_buffer(self, response: BufferedResponse) -> Union[Ok, Err]:
        if response.text is not None:
            return Ok(text=response.text, mime_type=response.mime_type or "text/plain")
        if response.data:
            return Ok(data=response.data, mime_type=response.mime_type)
        return Err(
            kind=ErrorKind.MALFORMED_RESPONSE,
            message="Provider response carried no payload",
        )

    async def _drain_text(self, response: StreamedResponse) -> Ok:
        fragments: list[str] = []
        chunk_count = 0
        async for chunk in response.chunks:
            chunk_count += 1
            for part in _chunk_parts(chunk):
                text = getattr(part, "text", None)
                if text:
                    fragments.append(text)

        text = "".join(fragments)
        logger.debug(
            "Drained text stream: %d chunks, %d fragments, %d chars",
            chunk_count, len(fragments), len(text),
        )
        return Ok(text=text, mime_type="text/plain")

    async def _drain_binary(self, response: StreamedResponse) -> Union[Ok, Err]:
        found: tuple[bytes, str] | None = None
        chunk_count = 0
        try:
            async for chunk in response.chunks:
                chunk_count += 1
                for part in _chunk_parts(chunk):
                    found = _inline_bytes(part)
                    if found:
                        break
                if found:
                    break
        finally:
            if found:
                await _close(response.chunks)

        if not found:
            return Err(
                kind=ErrorKind.MALFORMED_RESPONSE,
                message=f"No inline {response.modality.value} data in {chunk_count} stream chunks",
            )

        data, mime_type = found
        logger.debug("Binary stream resolved at chunk %d (%d bytes)", chunk_count, len(data))
        return Ok(data=data, mime_type=mime_type)
