"""
capture.py: turning captured bytes into an upright RGBA image.

The camera side hands us the encoded still plus its orientation; this module
decodes it (`ImageLoader`) and rotates it upright (`normalize_orientation`).
"""
from __future__ import annotations

import enum
import io
import logging
from typing import Optional

from PIL import Image

try:
    from pillow_heif import register_heif_opener
    register_heif_opener()
except ImportError:
    pass

log = logging.getLogger("retrocam")

EXIF_ORIENTATION = 0x0112


class DecodeError(ValueError):
    """Source bytes could not be parsed as an image."""


class OrientationTag(enum.Enum):
    NORMAL = 0
    ROTATE_90 = 90
    ROTATE_180 = 180
    ROTATE_270 = 270

    @property
    def degrees(self) -> int:
        """Clockwise rotation needed to make the content upright."""
        return self.value

    @classmethod
    def from_exif(cls, value: Optional[int]) -> "OrientationTag":
        # Mirrored orientations (2, 4, 5, 7) are treated as upright.
        return {6: cls.ROTATE_90, 3: cls.ROTATE_180, 8: cls.ROTATE_270}.get(value or 1, cls.NORMAL)

    @classmethod
    def parse(cls, text: str) -> "OrientationTag":
        key = text.strip().lower()
        for tag in cls:
            if key in (tag.name.lower(), str(tag.value)):
                return tag
        raise ValueError(f"Unknown orientation '{text}'. Use one of: normal, 90, 180, 270")


# clockwise angle -> Pillow transpose (Pillow's ROTATE_* are counter-clockwise)
_TRANSPOSE = {
    OrientationTag.ROTATE_90: Image.Transpose.ROTATE_270,
    OrientationTag.ROTATE_180: Image.Transpose.ROTATE_180,
    OrientationTag.ROTATE_270: Image.Transpose.ROTATE_90,
}


def read_orientation(image: Image.Image) -> OrientationTag:
    try:
        value = image.getexif().get(EXIF_ORIENTATION)
    except (OSError, ValueError, SyntaxError) as e:
        log.debug("No readable EXIF orientation (%s); assuming normal", e)
        return OrientationTag.NORMAL
    return OrientationTag.from_exif(value)


def normalize_orientation(image: Image.Image, tag: OrientationTag) -> Image.Image:
    """
    Rotate `image` clockwise by `tag.degrees`. NORMAL returns the very same
    object; any other tag returns a new image (width/height swapped for 90/270).
    """
    if tag is OrientationTag.NORMAL:
        return image
    return image.transpose(_TRANSPOSE[tag])


class ImageLoader:
    """Decode bytes → RGBA Pillow image (plus the orientation found in EXIF)."""

    def load(self, raw: bytes) -> Image.Image:
        img = self.open(raw)
        try:
            return self.to_rgba(img)
        finally:
            img.close()

    def open(self, raw: bytes) -> Image.Image:
        if not raw:
            raise DecodeError("Failed to decode image: no data")
        try:
            img = Image.open(io.BytesIO(raw))
            img.load()
        except Exception as e:
            raise DecodeError(f"Failed to decode image: {e}") from e
        return img

    @staticmethod
    def to_rgba(img: Image.Image) -> Image.Image:
        if img.mode == "RGBA":
            # captures carry no transparency; flatten whatever is there
            rgba = img.copy()
            rgba.putalpha(255)
            return rgba
        return img.convert("RGB").convert("RGBA")
