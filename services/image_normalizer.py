"""Image normalizer service.

Provides a small OOP wrapper around Pillow that prepares chat image
attachments for upload: the input (base64 or a ``data:`` URL) is decoded,
downscaled to fit within `max_size`, flattened to RGB, and returned as a
base64-encoded JPEG string.

Example:
    normalizer = ImageNormalizer(max_size=(1024, 1024))
    jpeg_b64 = normalizer.normalize(b64_input)
"""
from __future__ import annotations

import base64
import binascii
import io
from typing import Tuple

from PIL import Image, UnidentifiedImageError


def data_url(jpeg_b64: str) -> str:
    """Wrap base64 JPEG data as a data URL accepted by the Responses API."""
    return f"data:image/jpeg;base64,{jpeg_b64}"


class ImageNormalizer:
    """Downscale and re-encode images attached to chat messages.

    Args:
        max_size: Maximum width and height. Smaller images are not enlarged.
        background: Background color used when flattening images with alpha.
        quality: JPEG quality (1-95).
    """

    def __init__(
        self,
        max_size: Tuple[int, int] = (1024, 1024),
        background: Tuple[int, int, int] | None = None,
        quality: int = 85,
    ):
        self.max_size = max_size
        self.background = background or (255, 255, 255)
        self.quality = quality

    def normalize(self, data: str | bytes) -> str:
        """Return `data` as a downscaled base64 JPEG string.

        Raises:
            ValueError: If the data cannot be decoded or opened as an image.
        """
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="ignore")
        if data.startswith("data:"):
            _, _, data = data.partition(",")

        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("Invalid base64 image data") from exc

        try:
            src = Image.open(io.BytesIO(raw))
            src.load()
        except (UnidentifiedImageError, OSError) as exc:
            raise ValueError("Decoded bytes are not a supported image format") from exc

        src = src.convert("RGBA")
        src.thumbnail(self.max_size, Image.LANCZOS)

        # Flatten alpha against the background color
        flattened = Image.new("RGB", src.size, self.background)
        flattened.paste(src, mask=src.split()[3])

        out_io = io.BytesIO()
        flattened.save(out_io, format="JPEG", quality=self.quality, optimize=True)
        return base64.b64encode(out_io.getvalue()).decode("utf-8")
