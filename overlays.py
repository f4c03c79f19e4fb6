# overlays.py — artifact overlays composited on top of the graded image
# -----------------------------------------------------------------------------
# Everything here paints *onto* the current image instead of re-deriving it:
# sensor speckle, coarse vignette, readout scanlines, the flat white veil that
# fakes clipped highlights, and the digicam date stamp.
#
# The overlay stages mutate the image they are given and return that same
# object, so the pipeline does not allocate a new full-size buffer per stage.
# Randomized stages draw only from `self.rng`; seed it to get exact output.
#
# Examples:
#   python main.py run --url in.jpg --look ccd_retro --out out.jpg \
#     --extra vignette_mode=radial scanline_spacing=6
# -----------------------------------------------------------------------------

from __future__ import annotations

import datetime as _dt
import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFilter, ImageFont

from looks import LookProfile
from stages import REGISTRY, BaseStage, _clamp_u8, _round_half_up

__all__ = [
    "SensorNoiseStage",
    "VignetteStage",
    "ScanlineStage",
    "HighlightStage",
    "DateStampRenderer",
    "noise_count",
]

log = logging.getLogger("retrocam")

MONO_FONTS = (
    "DejaVuSansMono.ttf",
    "LiberationMono-Regular.ttf",
    "Menlo.ttc",
    "consola.ttf",
    "cour.ttf",
)

# ============================ low-level helpers ============================

def _occurrence_rank(idx: np.ndarray) -> np.ndarray:
    """For each entry, how many earlier entries hit the same index."""
    order = np.argsort(idx, kind="stable")
    s = idx[order]
    first = np.searchsorted(s, s, side="left")
    rank = np.empty_like(idx)
    rank[order] = np.arange(idx.size) - first
    return rank


def noise_count(width: int, height: int, look: LookProfile) -> int:
    return max(0, min(look.noise_cap_max, (width * height) // look.noise_divisor))


# ============================ Stages ============================

@dataclass
class SensorNoiseStage(BaseStage):
    """
    Scatter single-pixel speckles.

    noise_mode   'color'  -> uniformly random RGB per speckle
                 'binary' -> pure black or pure white
    Alpha per speckle is uniform in the inclusive `noise_alpha_range`. Draws
    that hit the same pixel are composited in draw order.
    """
    def generate(self, image: Image.Image, look: LookProfile) -> Image.Image:
        w, h = image.size
        n = noise_count(w, h, look)
        if n == 0:
            return image

        rng = self.rng
        idx = rng.integers(0, w * h, size=n)
        lo, hi = look.noise_alpha_range
        alpha = rng.integers(lo, hi + 1, size=n).astype(np.float32) / 255.0
        if look.noise_mode == "color":
            colors = rng.integers(0, 256, size=(n, 3)).astype(np.float32)
        else:
            v = rng.integers(0, 2, size=n).astype(np.float32) * 255.0
            colors = np.repeat(v[:, None], 3, axis=1)

        # one uint8 copy of the frame; only the hit pixels go through float maths
        flat = np.array(image, dtype=np.uint8).reshape(-1, 4)
        rank = _occurrence_rank(idx)
        for r in range(int(rank.max()) + 1):
            sel = rank == r
            p = idx[sel]
            a = alpha[sel][:, None]
            under = flat[p, :3].astype(np.float32)
            flat[p, :3] = _clamp_u8(_round_half_up(colors[sel] * a + under * (1.0 - a)))

        log.debug("sensor_noise: %d speckles (%s) on %dx%d", n, look.noise_mode, w, h)
        image.frombytes(flat.tobytes())
        return image


@dataclass
class VignetteStage(BaseStage):
    """
    Radial darkening toward the corners.

    vignette_mode 'grid'   -> only every `vignette_grid_step`-th pixel in x and y
                  'radial' -> every pixel (smooth falloff, slower)
    """
    def generate(self, image: Image.Image, look: LookProfile) -> Image.Image:
        w, h = image.size
        step = 1 if look.vignette_mode == "radial" else look.vignette_grid_step
        cx, cy = w / 2.0, h / 2.0
        max_dist = math.sqrt(cx * cx + cy * cy)

        ys = np.arange(0, h, step, dtype=np.float64)
        xs = np.arange(0, w, step, dtype=np.float64)
        dist = np.sqrt((xs[None, :] - cx) ** 2 + (ys[:, None] - cy) ** 2)
        factor = np.clip(dist / max(max_dist, 1e-8), 0.0, 1.0)

        alpha = np.zeros((h, w), np.uint8)
        alpha[::step, ::step] = (factor * look.vignette_max_alpha).astype(np.uint8)

        layer = Image.fromarray(np.dstack([np.zeros((h, w, 3), np.uint8), alpha]), "RGBA")
        image.alpha_composite(layer)
        layer.close()
        return image


@dataclass
class ScanlineStage(BaseStage):
    """Faint white line every `scanline_spacing` rows, alpha jittered per line."""
    def generate(self, image: Image.Image, look: LookProfile) -> Image.Image:
        w, h = image.size
        lo, hi = look.scanline_alpha_range
        layer = Image.new("RGBA", image.size, (255, 255, 255, 0))
        draw = ImageDraw.Draw(layer)
        for y in range(0, h, look.scanline_spacing):
            a = int(self.rng.integers(lo, hi + 1))
            draw.line([(0, y), (w - 1, y)], fill=(255, 255, 255, a), width=1)
        image.alpha_composite(layer)
        layer.close()
        return image


@dataclass
class HighlightStage(BaseStage):
    """Uniform low-alpha white veil: squashed dynamic range, 'blown' whites."""
    def generate(self, image: Image.Image, look: LookProfile) -> Image.Image:
        veil = Image.new("RGBA", image.size, (255, 255, 255, int(look.highlight_alpha)))
        image.alpha_composite(veil)
        veil.close()
        return image


# ============================ Date stamp ============================

def _load_mono_font(size: int) -> ImageFont.FreeTypeFont:
    for name in MONO_FONTS:
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue
    log.debug("date_stamp: no monospace TrueType font found, using Pillow's default")
    return ImageFont.load_default(size=size)


class DateStampRenderer:
    """
    Amber `yyyy/MM/dd` stamp in the lower-right corner with a soft drop shadow.

    Text height scales with image width (`date_text_ratio`); the right edge
    sits `date_pad_x * width` from the border and the baseline
    `date_pad_y * height` above the bottom. All drawing is confined to
    `stamp_box()`.
    """

    def __init__(self, look: LookProfile, date: Optional[_dt.date] = None) -> None:
        self.look = look
        self.date = date or _dt.date.today()

    def text(self) -> str:
        return self.date.strftime(self.look.date_format)

    def _font(self, width: int) -> ImageFont.FreeTypeFont:
        return _load_mono_font(max(1, int(round(width * self.look.date_text_ratio))))

    def _sigma(self) -> float:
        # Android-style shadow radius -> Gaussian sigma
        r = self.look.date_shadow_radius
        return r * 0.57735 + 0.5 if r > 0 else 0.0

    def _anchor(self, size: Tuple[int, int]) -> Tuple[float, float]:
        w, h = size
        return w - self.look.date_pad_x * w, h - self.look.date_pad_y * h

    def stamp_box(self, size: Tuple[int, int]) -> Tuple[int, int, int, int]:
        """(left, top, right, bottom) of every pixel the stamp may touch."""
        w, h = size
        font = self._font(w)
        ax, ay = self._anchor(size)
        x0, y0, x1, y1 = font.getbbox(self.text(), anchor="rs")
        ox, oy = self.look.date_shadow_offset
        margin = int(math.ceil(3.0 * self._sigma())) + 1
        left = int(math.floor(ax + x0 + min(0, ox))) - margin
        top = int(math.floor(ay + y0 + min(0, oy))) - margin
        right = int(math.ceil(ax + x1 + max(0, ox))) + margin
        bottom = int(math.ceil(ay + y1 + max(0, oy))) + margin
        return max(0, left), max(0, top), min(w, right), min(h, bottom)

    def render(self, image: Image.Image) -> Image.Image:
        left, top, right, bottom = box = self.stamp_box(image.size)
        if right <= left or bottom <= top:
            log.warning("date_stamp: image %s too small for a stamp", image.size)
            return image

        text = self.text()
        font = self._font(image.width)
        ax, ay = self._anchor(image.size)
        lx, ly = ax - left, ay - top
        ox, oy = self.look.date_shadow_offset
        layer_size = (right - left, bottom - top)

        shadow = Image.new("RGBA", layer_size, (0, 0, 0, 0))
        ImageDraw.Draw(shadow).text((lx + ox, ly + oy), text, font=font, fill=(0, 0, 0, 255), anchor="rs")
        sigma = self._sigma()
        if sigma > 0:
            blurred = shadow.filter(ImageFilter.GaussianBlur(sigma))
            shadow.close()
            shadow = blurred

        ink = Image.new("RGBA", layer_size, (0, 0, 0, 0))
        ImageDraw.Draw(ink).text((lx, ly), text, font=font, fill=tuple(self.look.date_color), anchor="rs")
        shadow.alpha_composite(ink)
        ink.close()

        image.alpha_composite(shadow, dest=(left, top))
        shadow.close()
        log.debug("date_stamp: %r in box %s", text, box)
        return image


# Register with the shared registry so looks can name these stages
REGISTRY.register("sensor_noise", SensorNoiseStage)
REGISTRY.register("vignette", VignetteStage)
REGISTRY.register("scanlines", ScanlineStage)
REGISTRY.register("highlight_compress", HighlightStage)
