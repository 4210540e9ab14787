"""Seedream image generation over its OpenAI-style HTTP API."""

import asyncio
import base64
import logging
from typing import Any, Optional

import httpx

from genpipe.errors import GenPipeError, MalformedResponseError, TransientProviderError
from genpipe.schemas.generation import GenerationRequest
from genpipe.services.images import ResizeCache
from genpipe.services.providers.base import BufferedResponse, ProviderAdapter

logger = logging.getLogger(__name__)

DEFAULT_BODY: dict[str, Any] = {
    "response_format": "url",
    "size": "2K",
    "stream": False,
    "watermark": True,
}


def to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


class SeedreamImageAdapter(ProviderAdapter):
    """POST ``{base_url}/images/generations`` with bearer auth.

    Reference images are shrunk to the API limits first; results are cached
    per adapter so a reference shared by many cuts is resized once.
    ``url`` results are downloaded; ``b64_json`` results are decoded. Any
    non-2xx status is treated as retryable.
    """

    label = "seedream"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        default_model: str,
        download_timeout_ms: int = 30_000,
        http_client: Optional[httpx.AsyncClient] = None,
        resize_cache: Optional[ResizeCache] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._default_model = default_model
        self._download_timeout = download_timeout_ms / 1000
        self._client = http_client
        self._resize_cache = resize_cache if resize_cache is not None else ResizeCache()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                follow_redirects=True,
                timeout=httpx.Timeout(120.0, connect=30.0),
            )
        return self._client

    def build_body(self, request: GenerationRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": request.model or self._default_model,
            "prompt": request.payload.prompt,
            **DEFAULT_BODY,
            **request.config,
        }
        images = []
        for part in request.payload.inline_parts():
            fitted = self._resize_cache.get(part.data, part.mime_type)
            images.append(to_data_url(fitted.data, fitted.mime_type))
        if images:
            body["image"] = images
        return body

    async def call(self, request: GenerationRequest) -> BufferedResponse:
        if not self._api_key:
            raise GenPipeError("Seedream API key is not configured (providers.seedream_api_key)")

        body = await asyncio.to_thread(self.build_body, request)
        logger.info(
            "POST %s/images/generations model=%s images=%d size=%s",
            self.base_url, body["model"], len(body.get("image", [])), body.get("size"),
        )
        response = await self.client.post(
            f"{self.base_url}/images/generations",
            json=body,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        if not response.is_success:
            raise TransientProviderError(
                f"Seedream API error: {response.status_code} {response.reason_phrase}. "
                f"{response.text}",
                status=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None
        items = (payload or {}).get("data") or []
        if not items:
            raise MalformedResponseError("Seedream response carried no image data")

        item = items[0]
        if item.get("url"):
            return await self._download(item["url"])
        if item.get("b64_json"):
            return BufferedResponse(data=base64.b64decode(item["b64_json"]), mime_type="image/png")
        raise MalformedResponseError("Seedream response carried no image data")

    async def _download(self, url: str) -> BufferedResponse:
        response = await self.client.get(url, timeout=self._download_timeout)
        logger.info(
            "  download response: HTTP %d, %d bytes",
            response.status_code, len(response.content),
        )
        if not response.is_success:
            raise TransientProviderError(
                f"Seedream image download failed: {response.status_code} {response.reason_phrase}",
                status=response.status_code,
            )
        mime_type = response.headers.get("content-type", "image/png").split(";")[0]
        return BufferedResponse(data=response.content, mime_type=mime_type)

    async def close(self):
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
