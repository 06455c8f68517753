"""Fallback tiles for areas outside the served coverage.

Every generated tile embeds ``PLACEHOLDER_MARKER`` in a PNG text chunk so
that a placeholder that ends up in the cache is recognised by
``PlaceholderSignatureRule`` and never served as real data.
"""

from __future__ import annotations

import hashlib
from functools import lru_cache
from io import BytesIO

from PIL import Image, ImageDraw, ImageFont
from PIL.PngImagePlugin import PngInfo

from shared.constants import (
    PLACEHOLDER_BG_COLOR,
    PLACEHOLDER_MARKER,
    PLACEHOLDER_TEXT,
    PLACEHOLDER_TEXT_COLOR,
    PLACEHOLDER_TILE_SIZE,
)


@lru_cache(maxsize=8)
def render_placeholder_tile(
    text: str = PLACEHOLDER_TEXT,
    size: int = PLACEHOLDER_TILE_SIZE,
) -> bytes:
    """Render a flat PNG tile with a centred label."""
    img = Image.new('RGB', (size, size), PLACEHOLDER_BG_COLOR)
    draw = ImageDraw.Draw(img)
    font = ImageFont.load_default()
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    tx = (size - (right - left)) // 2
    ty = (size - (bottom - top)) // 2
    draw.text((tx, ty), text, fill=PLACEHOLDER_TEXT_COLOR, font=font)

    info = PngInfo()
    info.add_text('Comment', PLACEHOLDER_MARKER)
    buf = BytesIO()
    img.save(buf, format='PNG', pnginfo=info, optimize=True)
    return buf.getvalue()


def placeholder_digest(data: bytes | None = None) -> str:
    """SHA-256 of a placeholder tile (the default one when ``data`` is None)."""
    return hashlib.sha256(data if data is not None else render_placeholder_tile()).hexdigest()
