"""Split a composite grid image into equally sized panels.

Panel order is row-major (left to right, top to bottom)::

    | 0 | 1 | 2 |
    | 3 | 4 | 5 |
    | 6 | 7 | 8 |

Panels are ``floor(W/cols) x floor(H/rows)``; remainder pixels on the right
and bottom edges are discarded.
"""

import base64
import binascii
import io
import logging
import re
from typing import Union

from PIL import Image, UnidentifiedImageError

from genpipe.errors import DimensionError
from genpipe.schemas.scenes import GridImage, GridLayout, Panel

logger = logging.getLogger(__name__)

_DATA_URL_PREFIX = re.compile(r"^data:image/[\w.+-]+;base64,")
_ALPHA_MODES = ("RGBA", "LA", "PA")


def decode_image_input(image: Union[bytes, str]) -> bytes:
    """Accept raw bytes, a base64 string or a ``data:image/...;base64,`` URL."""
    if isinstance(image, bytes):
        return image
    try:
        return base64.b64decode(_DATA_URL_PREFIX.sub("", image.strip()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise DimensionError(f"Grid image is not valid base64: {e}") from e


def _as_png_mode(image: Image.Image) -> Image.Image:
    """Convert to RGB, or RGBA when the source carries transparency."""
    if image.mode in _ALPHA_MODES or "transparency" in image.info:
        return image.convert("RGBA")
    return image.convert("RGB")


class GridDecomposer:
    """Deterministic composite-to-panels splitter (Pillow)."""

    def split(
        self, image: Union[bytes, str], layout: Union[GridLayout, str]
    ) -> tuple[GridImage, list[Panel]]:
        """Decompose ``image`` and also report the source grid geometry.

        Raises:
            DimensionError: If the image cannot be read, has a zero dimension,
                or is smaller than one pixel per panel.
        """
        layout = GridLayout(layout)
        data = decode_image_input(image)

        try:
            source = Image.open(io.BytesIO(data))
            source.load()
        except (UnidentifiedImageError, OSError) as e:
            raise DimensionError(f"Could not read grid image: {e}") from e
        source = _as_png_mode(source)

        width, height = source.size
        if not width or not height:
            raise DimensionError(f"Grid image has zero dimension ({width}x{height})")

        grid = GridImage(width=width, height=height, rows=layout.rows, cols=layout.cols)
        panel_w, panel_h = grid.panel_width, grid.panel_height
        if not panel_w or not panel_h:
            raise DimensionError(
                f"Grid image {width}x{height} is too small for layout {layout.value}"
            )

        panels = []
        for row in range(grid.rows):
            for col in range(grid.cols):
                left, top = col * panel_w, row * panel_h
                crop = source.crop((left, top, left + panel_w, top + panel_h))
                buffer = io.BytesIO()
                crop.save(buffer, format="PNG")
                panels.append(
                    Panel(
                        index=row * grid.cols + col,
                        row=row,
                        col=col,
                        data=buffer.getvalue(),
                        mime_type="image/png",
                        width=panel_w,
                        height=panel_h,
                    )
                )

        logger.info(
            "Split %dx%d grid (%s) into %d panels of %dx%d",
            width, height, layout.value, len(panels), panel_w, panel_h,
        )
        return grid, panels

    def decompose(self, image: Union[bytes, str], layout: Union[GridLayout, str]) -> list[Panel]:
        """Return the ``rows x cols`` panels of ``image`` in row-major order."""
        return self.split(image, layout)[1]
