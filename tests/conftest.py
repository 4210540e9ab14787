"""Shared fixtures: scripted provider adapters, fake sleep, generated images."""

import asyncio
import io
import os
from types import SimpleNamespace
from typing import Any, Callable

import pytest
from PIL import Image

from genpipe.config import Settings
from genpipe.schemas.generation import Modality, Provider
from genpipe.services.providers.base import (
    BufferedResponse,
    ProviderAdapter,
    StreamedResponse,
)
from genpipe.services.resilience import ResilientInvoker
from genpipe.services.storage import InMemoryBlobStore, InMemoryRecordStore

HANG = object()


class ScriptedAdapter(ProviderAdapter):
    """Replays one scripted outcome per call.

    Each step is a response to return, an exception to raise, ``HANG`` to
    block past any deadline, or a callable taking the request. The last step
    repeats once the script runs out.
    """

    label = "fake"

    def __init__(self, *steps: Any):
        self.steps = list(steps)
        self.requests = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def call(self, request):
        self.requests.append(request)
        step = self.steps[min(len(self.requests), len(self.steps)) - 1]
        if step is HANG:
            await asyncio.sleep(3600)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return step(request)
        return step


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def text_chunk(*texts: str) -> SimpleNamespace:
    parts = [SimpleNamespace(text=t, inline_data=None) for t in texts]
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))])


def inline_chunk(data: Any, mime_type: str = "image/png", text: str = None) -> SimpleNamespace:
    parts = []
    if text is not None:
        parts.append(SimpleNamespace(text=text, inline_data=None))
    parts.append(
        SimpleNamespace(text=None, inline_data=SimpleNamespace(data=data, mime_type=mime_type))
    )
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))])


def empty_chunk() -> SimpleNamespace:
    return SimpleNamespace(candidates=[])


class ChunkStream:
    """Async iterator over chunks that records how far it was consumed."""

    def __init__(self, chunks: list):
        self._chunks = list(chunks)
        self.consumed = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed or self.consumed >= len(self._chunks):
            raise StopAsyncIteration
        chunk = self._chunks[self.consumed]
        self.consumed += 1
        return chunk

    async def aclose(self):
        self.closed = True


def text_stream(*texts: str) -> StreamedResponse:
    return StreamedResponse(chunks=ChunkStream([text_chunk(t) for t in texts]), modality=Modality.TEXT)


def image_stream(*chunks) -> StreamedResponse:
    return StreamedResponse(chunks=ChunkStream(list(chunks)), modality=Modality.IMAGE)


PANEL_COLORS = [
    (255, 0, 0), (0, 255, 0), (0, 0, 255),
    (255, 255, 0), (255, 0, 255), (0, 255, 255),
    (128, 0, 0), (0, 128, 0), (0, 0, 128),
]


def make_grid_png(width: int, height: int, rows: int, cols: int) -> bytes:
    """PNG whose panel ``i`` (row-major) is filled with ``PANEL_COLORS[i]``."""
    image = Image.new("RGB", (width, height), (255, 255, 255))
    panel_w, panel_h = width // cols, height // rows
    for row in range(rows):
        for col in range(cols):
            color = PANEL_COLORS[row * cols + col]
            box = (col * panel_w, row * panel_h, (col + 1) * panel_w, (row + 1) * panel_h)
            image.paste(color, box)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def png_color(data: bytes) -> tuple:
    """Color at the center of a PNG."""
    image = Image.open(io.BytesIO(data)).convert("RGB")
    return image.getpixel((image.width // 2, image.height // 2))


@pytest.fixture
def settings(monkeypatch, tmp_path) -> Settings:
    """Settings isolated from the developer's environment and config files."""
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("GENPIPE_"):
            monkeypatch.delenv(name)
    return Settings()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_invoker(sleep) -> Callable[..., ResilientInvoker]:
    def _make(**adapters: ProviderAdapter) -> ResilientInvoker:
        mapping = {Provider(name.replace("_", "-")): adapter for name, adapter in adapters.items()}
        return ResilientInvoker(mapping, sleep=sleep)

    return _make


@pytest.fixture
def blobs() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def records() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def grid_3x3() -> bytes:
    return make_grid_png(900, 900, 3, 3)


@pytest.fixture
def grid_2x2() -> bytes:
    return make_grid_png(1024, 1024, 2, 2)


def png_response(data: bytes) -> BufferedResponse:
    return BufferedResponse(data=data, mime_type="image/png")
