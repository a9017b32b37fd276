"""Blit rendered pixel buffers to PIL images and PNG files."""

import io
import logging
from pathlib import Path
from typing import Union

import numpy as np
from PIL import Image, ImageDraw

from noteatlas.heatmap.density import BACKGROUND, as_canvas
from noteatlas.models.schema import CanvasSize

logger = logging.getLogger(__name__)

PLACEHOLDER_TEXT = "No notes with positions yet. Computing positions..."
PLACEHOLDER_INK = (138, 138, 138, 255)


def to_image(buffer: np.ndarray) -> Image.Image:
    """Wrap a (height, width, 4) uint8 buffer as an RGBA image."""
    if buffer.ndim != 3 or buffer.shape[2] != 4:
        raise ValueError(f"Expected an RGBA buffer, got shape {buffer.shape}")
    return Image.fromarray(np.ascontiguousarray(buffer, dtype=np.uint8)).convert("RGBA")


def save_png(buffer: np.ndarray, path: Union[str, Path]) -> Path:
    """Write the buffer as a PNG, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    to_image(buffer).save(path, format="PNG")
    logger.info("Wrote heat map %dx%d to %s", buffer.shape[1], buffer.shape[0], path)
    return path


def to_png_bytes(buffer: np.ndarray) -> bytes:
    out = io.BytesIO()
    to_image(buffer).save(out, format="PNG")
    return out.getvalue()


def placeholder(canvas: Union[CanvasSize, tuple], text: str = PLACEHOLDER_TEXT) -> np.ndarray:
    """Background frame with a centred message, shown before positions exist."""
    canvas = as_canvas(canvas)
    image = Image.new("RGBA", (canvas.width, canvas.height), BACKGROUND + (255,))
    draw = ImageDraw.Draw(image)
    left, top, right, bottom = draw.textbbox((0, 0), text)
    x = (canvas.width - (right - left)) / 2
    y = (canvas.height - (bottom - top)) / 2
    draw.text((x, y), text, fill=PLACEHOLDER_INK)
    return np.array(image, dtype=np.uint8)
