"""Decoded RGBA pixels, independent of any drawing surface."""

import base64
import binascii
import io
import re
from dataclasses import dataclass

from PIL import Image

DATA_URL_PATTERN = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^,;]+)*?);base64,(?P<data>.*)$", re.DOTALL)

Pixel = tuple[int, int, int, int]


class RasterDecodeError(ValueError):
    """The bytes or data URL could not be decoded as an image."""


@dataclass(frozen=True)
class RasterBuffer:
    width: int
    height: int
    pixels: bytes  # row-major RGBA

    def pixel(self, x: int, y: int) -> Pixel:
        """RGBA at (x, y); coordinates are clamped to the image."""
        x = min(max(x, 0), self.width - 1)
        y = min(max(y, 0), self.height - 1)
        offset = (y * self.width + x) * 4
        r, g, b, a = self.pixels[offset : offset + 4]
        return r, g, b, a

    @classmethod
    def from_image(cls, image: Image.Image) -> "RasterBuffer":
        rgba = image.convert("RGBA")
        return cls(width=rgba.width, height=rgba.height, pixels=rgba.tobytes())

    @classmethod
    def from_bytes(cls, data: bytes) -> "RasterBuffer":
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.load()
                return cls.from_image(image)
        except (OSError, Image.DecompressionBombError) as e:
            raise RasterDecodeError(f"Could not decode image: {e}") from e

    @classmethod
    def from_data_url(cls, data_url: str) -> "RasterBuffer":
        match = DATA_URL_PATTERN.match(data_url.strip())
        if not match:
            raise RasterDecodeError("Not a base64 data URL")
        try:
            data = base64.b64decode(match.group("data"), validate=False)
        except (binascii.Error, ValueError) as e:
            raise RasterDecodeError(f"Invalid base64 payload: {e}") from e
        return cls.from_bytes(data)
