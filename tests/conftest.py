from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image


def solid(w: int, h: int, color=(128, 128, 128, 255)) -> Image.Image:
    return Image.new("RGBA", (w, h), color)


def gradient(w: int, h: int) -> Image.Image:
    """Deterministic RGBA test card with edges and smooth ramps."""
    yy, xx = np.mgrid[0:h, 0:w]
    r = (xx * 255 // max(1, w - 1)).astype(np.uint8)
    g = (yy * 255 // max(1, h - 1)).astype(np.uint8)
    b = np.where(((xx // 8) + (yy // 8)) % 2 == 0, 40, 220).astype(np.uint8)
    a = np.full((h, w), 255, np.uint8)
    return Image.fromarray(np.dstack([r, g, b, a]), "RGBA")


def encode(img: Image.Image, fmt: str = "PNG", orientation: int | None = None, **kw) -> bytes:
    buf = io.BytesIO()
    rgb = img.convert("RGB")
    if orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = orientation
        kw["exif"] = exif
    rgb.save(buf, format=fmt, **kw)
    return buf.getvalue()


@pytest.fixture
def gray_png() -> bytes:
    return encode(solid(100, 100))


@pytest.fixture
def card() -> Image.Image:
    return gradient(64, 48)


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)
