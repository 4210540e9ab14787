"""Veo image-to-video adapter.

Submits ``generate_videos`` with a start frame (and optional last frame for
frame interpolation), then polls the long-running operation until it is
done. The invoker's deadline bounds the whole submit + poll + download.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx
from google import genai
from google.genai import types as genai_types

from genpipe.errors import GenPipeError, MalformedResponseError, TransientProviderError
from genpipe.schemas.generation import GenerationRequest, InlinePart
from genpipe.services.providers.base import BufferedResponse, ProviderAdapter

logger = logging.getLogger(__name__)

START_FRAME = "start_frame"
END_FRAME = "end_frame"

DEFAULT_VIDEO_CONFIG: dict[str, Any] = {
    "number_of_videos": 1,
    "resolution": "720p",
    "aspect_ratio": "9:16",
}

_TRANSIENT_GRPC_CODES = {4, 8, 13, 14}  # DEADLINE_EXCEEDED, RESOURCE_EXHAUSTED, INTERNAL, UNAVAILABLE


def _frame(request: GenerationRequest, role: str) -> Optional[InlinePart]:
    parts = request.payload.inline_parts(role)
    return parts[0] if parts else None


def _with_key(uri: str, api_key: str) -> str:
    separator = "&" if "?" in uri else "?"
    return f"{uri}{separator}key={api_key}"


class VeoVideoAdapter(ProviderAdapter):
    """Start frame + optional end frame to an mp4 clip."""

    label = "veo"

    def __init__(
        self,
        api_key: Optional[str],
        default_model: str,
        poll_interval_ms: int = 10_000,
        download_timeout_ms: int = 30_000,
        client: Optional[genai.Client] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._api_key = api_key
        self._default_model = default_model
        self._poll_interval = poll_interval_ms / 1000
        self._download_timeout = download_timeout_ms / 1000
        self._client = client
        self._sleep = sleep

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            if not self._api_key:
                raise GenPipeError("Gemini API key is not configured (providers.gemini_api_key)")
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    def build_config(self, request: GenerationRequest) -> genai_types.GenerateVideosConfig:
        video_config = genai_types.GenerateVideosConfig(**{**DEFAULT_VIDEO_CONFIG, **request.config})
        end = _frame(request, END_FRAME)
        if end is not None:
            video_config.last_frame = genai_types.Image(
                image_bytes=end.data, mime_type=end.mime_type
            )
        return video_config

    async def call(self, request: GenerationRequest) -> BufferedResponse:
        model = request.model or self._default_model
        start = _frame(request, START_FRAME)
        if start is None:
            untagged = request.payload.inline_parts()
            start = untagged[0] if untagged else None

        video_config = self.build_config(request)
        logger.info(
            "[veo] submit model=%s has_start=%s has_end=%s duration=%s",
            model, start is not None, video_config.last_frame is not None,
            video_config.duration_seconds,
        )
        operation = await self.client.aio.models.generate_videos(
            model=model,
            prompt=request.payload.prompt,
            image=(
                genai_types.Image(image_bytes=start.data, mime_type=start.mime_type)
                if start is not None else None
            ),
            config=video_config,
        )

        polls = 0
        while not operation.done:
            await self._sleep(self._poll_interval)
            polls += 1
            logger.debug("[veo] polling %s (poll %d)", operation.name, polls)
            operation = await self.client.aio.operations.get(operation=operation)

        return await self._extract(operation)

    async def _extract(self, operation) -> BufferedResponse:
        error = getattr(operation, "error", None)
        if error:
            code = error.get("code") if isinstance(error, dict) else getattr(error, "code", None)
            message = (
                error.get("message") if isinstance(error, dict) else getattr(error, "message", None)
            ) or "Veo video generation failed"
            if code in _TRANSIENT_GRPC_CODES:
                raise TransientProviderError(f"Veo operation error {code}: {message}")
            raise GenPipeError(f"Veo operation error: {message}")

        response = getattr(operation, "response", None)
        videos = getattr(response, "generated_videos", None) if response else None
        video = videos[0].video if videos else None
        if video is None:
            raise MalformedResponseError("No video in Veo response")

        if video.video_bytes:
            return BufferedResponse(data=video.video_bytes, mime_type="video/mp4")
        if video.uri:
            return BufferedResponse(data=await self._download(video.uri), mime_type="video/mp4")
        raise MalformedResponseError("Veo response carried neither video_bytes nor uri")

    async def _download(self, uri: str) -> bytes:
        async with httpx.AsyncClient(follow_redirects=True, timeout=self._download_timeout) as http:
            response = await http.get(_with_key(uri, self._api_key or ""))
        if not response.is_success:
            raise TransientProviderError(
                f"Video download failed: {response.status_code} {response.reason_phrase}",
                status=response.status_code,
            )
        logger.info("[veo] downloaded %d bytes", len(response.content))
        return response.content
