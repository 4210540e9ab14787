"""Image helpers shared by the image providers.

Seedream rejects reference images over 10 MB or 36 MP, so references are
shrunk (and re-encoded as JPEG) before they are sent. Both image models
accept only a fixed list of aspect ratios; ``closest_aspect_ratio`` maps an
arbitrary width/height onto that list.
"""

import hashlib
import io
import logging
import math
from collections import OrderedDict
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from genpipe.schemas.generation import Provider

logger = logging.getLogger(__name__)

GEMINI_ASPECT_RATIOS = (
    "21:9", "16:9", "4:3", "3:2",
    "1:1",
    "9:16", "3:4", "2:3",
    "5:4", "4:5",
)
SEEDREAM_ASPECT_RATIOS = (
    "21:9", "16:9", "4:3", "3:2",
    "1:1",
    "9:16", "3:4", "2:3",
)

SEEDREAM_MAX_IMAGE_BYTES = 10 * 1024 * 1024
SEEDREAM_MAX_PIXELS = 36_000_000
MAX_CACHE_SIZE = 100

_PIXEL_HEADROOM = 0.95
_FALLBACK_BOX = (2048, 2048)


def parse_ratio(ratio: str) -> tuple[int, int]:
    """``"16:9"`` -> ``(16, 9)``."""
    try:
        width, height = (int(part) for part in ratio.split(":"))
    except ValueError as e:
        raise ValueError(f"Invalid aspect ratio: {ratio!r}") from e
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid aspect ratio: {ratio!r}")
    return width, height


def closest_aspect_ratio(width: float, height: float, provider: Provider) -> str:
    """Supported ratio nearest to ``width / height`` for ``provider``."""
    supported = GEMINI_ASPECT_RATIOS if provider == Provider.IMAGE_MODEL_A else SEEDREAM_ASPECT_RATIOS
    target = width / height
    best, best_diff = "1:1", math.inf
    for ratio in supported:
        w, h = parse_ratio(ratio)
        diff = abs(target - w / h)
        if diff < best_diff:
            best, best_diff = ratio, diff
    return best


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def seedream_size(width: float, height: float) -> str:
    """Seedream ``size`` (``"WxH"``) for an output of the given proportions.

    The long side starts at 2048, each side is clamped to 1280x720..4096, both
    are rounded to multiples of 8 and the area is raised to at least 3.6 MP.
    """
    ratio = width / height
    if ratio >= 1:
        w, h = 2048, _round_half_up(2048 / ratio)
    else:
        w, h = _round_half_up(2048 * ratio), 2048

    if w < 1280:
        w, h = 1280, _round_half_up(1280 / ratio)
    if h < 720:
        w, h = _round_half_up(720 * ratio), 720
    if w > 4096:
        w, h = 4096, _round_half_up(4096 / ratio)
    if h > 4096:
        w, h = _round_half_up(4096 * ratio), 4096

    w, h = _round_half_up(w / 8) * 8, _round_half_up(h / 8) * 8

    min_pixels = 3_686_400
    if w * h < min_pixels:
        scale = math.sqrt(min_pixels / (w * h))
        w = min(math.ceil(w * scale / 8) * 8, 4096)
        h = min(math.ceil(h * scale / 8) * 8, 4096)
    return f"{w}x{h}"


@dataclass(frozen=True)
class ResizeResult:
    data: bytes
    mime_type: str
    resized: bool


def _jpeg(image: Image.Image, size: tuple[int, int], quality: int) -> bytes:
    buffer = io.BytesIO()
    image.resize(size, Image.Resampling.LANCZOS).save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def resize_if_needed(
    data: bytes,
    mime_type: str = "image/png",
    max_bytes: int = SEEDREAM_MAX_IMAGE_BYTES,
    max_pixels: int = SEEDREAM_MAX_PIXELS,
) -> ResizeResult:
    """Shrink ``data`` until it fits both limits (sync, for ``to_thread``).

    Images already within limits, and bytes Pillow cannot read, come back
    untouched. Otherwise the image is scaled to ``max_pixels`` (with 5%
    headroom) and re-encoded as JPEG, lowering quality and then size until
    it fits ``max_bytes``.
    """
    try:
        image = Image.open(io.BytesIO(data))
        width, height = image.size
    except (UnidentifiedImageError, OSError):
        if len(data) > max_bytes:
            logger.warning("Reference image of %d bytes is not decodable; sending as-is", len(data))
        return ResizeResult(data, mime_type, False)

    pixels = width * height
    if len(data) <= max_bytes and pixels <= max_pixels:
        return ResizeResult(data, mime_type, False)

    try:
        image = image.convert("RGB")
    except OSError as e:
        logger.warning("Could not decode reference image for resizing: %s", e)
        return ResizeResult(data, mime_type, False)

    target = (width, height)
    if pixels > max_pixels:
        scale = math.sqrt(max_pixels / pixels) * _PIXEL_HEADROOM
        target = (max(1, round(width * scale)), max(1, round(height * scale)))

    for quality in (85, 80, 70, 60, 50):
        encoded = _jpeg(image, target, quality)
        if len(encoded) <= max_bytes:
            return _resized(encoded, (width, height), target)

    for step in range(8, 3, -1):
        size = (max(1, round(target[0] * step / 10)), max(1, round(target[1] * step / 10)))
        encoded = _jpeg(image, size, 70)
        if len(encoded) <= max_bytes:
            return _resized(encoded, (width, height), size)

    image.thumbnail(_FALLBACK_BOX)
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=60)
    return _resized(buffer.getvalue(), (width, height), image.size)


def _resized(encoded: bytes, original: tuple[int, int], size: tuple[int, int]) -> ResizeResult:
    logger.info(
        "Resized reference image %dx%d -> %dx%d (%d bytes)",
        original[0], original[1], size[0], size[1], len(encoded),
    )
    return ResizeResult(encoded, "image/jpeg", True)


class ResizeCache:
    """Remembers ``resize_if_needed`` results by content hash.

    Oldest entries are evicted first once ``max_size`` is reached.
    """

    def __init__(
        self,
        max_size: int = MAX_CACHE_SIZE,
        max_bytes: int = SEEDREAM_MAX_IMAGE_BYTES,
        max_pixels: int = SEEDREAM_MAX_PIXELS,
    ):
        self.max_size = max_size
        self.max_bytes = max_bytes
        self.max_pixels = max_pixels
        self._entries: OrderedDict[str, ResizeResult] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, data: bytes, mime_type: str) -> ResizeResult:
        key = hashlib.sha256(data).hexdigest()
        cached = self._entries.get(key)
        if cached is not None:
            return cached

        result = resize_if_needed(data, mime_type, self.max_bytes, self.max_pixels)
        if len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)
        self._entries[key] = result
        return result
