from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np
from PIL import Image

from looks import LookProfile

log = logging.getLogger("retrocam")


# =============== Registry ===============
class StageRegistry:
    def __init__(self) -> None:
        self._by_name: Dict[str, type[BaseStage]] = {}

    def register(self, name: str, cls: type["BaseStage"]) -> None:
        key = name.strip().lower()
        self._by_name[key] = cls

    def names(self) -> list[str]:
        return sorted(self._by_name.keys())

    def create(self, name: str, **kwargs) -> "BaseStage":
        key = name.strip().lower()
        if key not in self._by_name:
            raise KeyError(f"Unknown stage '{name}'. Available: {', '.join(self.names()) or '(none)'}")
        return self._by_name[key](**kwargs)


REGISTRY = StageRegistry()


# =============== Base & common utils ===============
def _rng(seed: Optional[int]) -> np.random.Generator:
    return np.random.default_rng(seed if seed is not None else np.random.SeedSequence().entropy)


@dataclass
class BaseStage:
    """
    One pipeline step. `generate` receives an RGBA image it owns and returns
    either that same image (mutated) or a new RGBA image of the same size.
    """
    rng: np.random.Generator = field(default_factory=lambda: _rng(None))

    def generate(self, image: Image.Image, look: LookProfile) -> Image.Image:  # pragma: no cover
        raise NotImplementedError


def _round_half_up(x: np.ndarray) -> np.ndarray:
    return np.floor(x + 0.5)


def _clamp_u8(x: np.ndarray) -> np.ndarray:
    return np.clip(x, 0, 255).astype(np.uint8)


def _to_array(image: Image.Image, dtype=np.int32) -> np.ndarray:
    """(H, W, 4) copy of an RGBA image in `dtype`, converted in one pass."""
    if image.mode != "RGBA":
        image = image.convert("RGBA")
    return np.asarray(image, dtype=dtype)


def _from_rgb(rgb: np.ndarray, alpha: np.ndarray) -> Image.Image:
    out = np.dstack([_clamp_u8(rgb), alpha.astype(np.uint8)])
    return Image.fromarray(out, "RGBA")


def _rescale_blur(image: Image.Image, factor: float, dtype=np.int32) -> np.ndarray:
    """Bilinear down/up round trip; returns the blurred (H, W, 4) array."""
    w, h = image.size
    small = image.resize((max(1, int(w * factor)), max(1, int(h * factor))), Image.Resampling.BILINEAR)
    try:
        up = small.resize((w, h), Image.Resampling.BILINEAR)
    finally:
        small.close()
    try:
        return np.asarray(up, dtype=dtype)
    finally:
        up.close()


def blend(orig: np.ndarray, blur: np.ndarray, mix: float) -> np.ndarray:
    """round(orig*(1-mix) + blur*mix), per channel, as uint8."""
    mixed = orig.astype(np.float32, copy=False) * (1.0 - mix) + blur.astype(np.float32, copy=False) * mix
    return _clamp_u8(_round_half_up(mixed))


# =============== Stages ===============
@dataclass
class ColorGradeStage(BaseStage):
    """Affine colour matrix; rows are (r, g, b, a, offset), alpha untouched."""
    def generate(self, image: Image.Image, look: LookProfile) -> Image.Image:
        arr = _to_array(image, np.float32)
        m = np.asarray(look.color_matrix, dtype=np.float32)
        rgb = arr @ m[:, :4].T + m[:, 4]
        return _from_rgb(_round_half_up(rgb), arr[..., 3])


@dataclass
class NoiseReductionStage(BaseStage):
    """Downscale/upscale smear blended back over the original."""
    def generate(self, image: Image.Image, look: LookProfile) -> Image.Image:
        orig = _to_array(image, np.float32)
        blur = _rescale_blur(image, look.nr_downscale, np.float32)
        out = blend(orig[..., :3], blur[..., :3], look.nr_mix)
        log.debug("noise_reduction: factor=%.3f mix=%.3f", look.nr_downscale, look.nr_mix)
        return _from_rgb(out, orig[..., 3])


@dataclass
class SharpenStage(BaseStage):
    """
    Edge-adaptive unsharp mask with deliberate overshoot.

    The high-pass is `orig - blur` where blur comes from a mild down/up
    resample. Pixels whose strongest channel difference is below the
    threshold get `amount * damping` so flat areas don't turn to grit; edges
    get the full amount and ring.
    """
    def generate(self, image: Image.Image, look: LookProfile) -> Image.Image:
        orig = _to_array(image)
        blur = _rescale_blur(image, look.sharpen_downscale)
        d = orig[..., :3] - blur[..., :3]
        edge = np.abs(d).max(axis=2)
        amount = np.where(
            edge >= look.sharpen_threshold,
            look.sharpen_amount,
            look.sharpen_amount * look.sharpen_damping,
        )[..., None]
        out = orig[..., :3] + np.trunc(d * amount).astype(np.int32)
        log.debug("sharpen: %.1f%% of pixels above threshold", 100.0 * float((edge >= look.sharpen_threshold).mean()))
        return _from_rgb(out, orig[..., 3])


@dataclass
class ToneCurveStage(BaseStage):
    """Contrast/brightness, then saturation around luma, then channel gains."""
    def generate(self, image: Image.Image, look: LookProfile) -> Image.Image:
        arr = _to_array(image, np.float32)
        rgb = arr[..., :3]

        # 1) contrast + brightness
        c1 = np.clip(_round_half_up((rgb - 128.0) * look.contrast + 128.0 + look.brightness), 0, 255)

        # 2) saturation around the luma of the step-1 values
        y = (0.299 * c1[..., 0] + 0.587 * c1[..., 1] + 0.114 * c1[..., 2])[..., None]
        c2 = np.clip(_round_half_up(y + (c1 - y) * look.saturation), 0, 255)

        # 3) fixed colour cast
        gains = np.asarray(look.channel_gains, dtype=np.float32)
        c3 = _round_half_up(c2 * gains)
        return _from_rgb(c3, arr[..., 3])


def _encode_lossy(image: Image.Image, fmt: str, quality: int) -> bytes:
    buf = io.BytesIO()
    image.convert("RGB").save(buf, format=fmt, quality=quality)
    return buf.getvalue()


def _decode(raw: bytes) -> Image.Image:
    with Image.open(io.BytesIO(raw)) as im:
        im.load()
        return im.convert("RGBA")


@dataclass
class LossyRoundTripStage(BaseStage):
    """Encode/decode through a lossy codec; fails soft to the input image."""
    def generate(self, image: Image.Image, look: LookProfile) -> Image.Image:
        quality = max(1, min(100, int(look.jpeg_quality)))
        try:
            raw = _encode_lossy(image, look.lossy_format, quality)
            decoded = _decode(raw)
        except (OSError, ValueError, KeyError) as e:
            log.warning("lossy_roundtrip: codec failed (%s); keeping the image as is", e)
            return image
        if decoded.size != image.size:
            log.warning("lossy_roundtrip: decoded size %s != %s; keeping the image as is", decoded.size, image.size)
            decoded.close()
            return image
        log.debug("lossy_roundtrip: %s q=%d, %d bytes", look.lossy_format, quality, len(raw))
        return decoded


@dataclass
class WarmOverlayStage(BaseStage):
    """Overlay-blend a warm tint, mixed in at the tint's alpha."""
    def generate(self, image: Image.Image, look: LookProfile) -> Image.Image:
        arr = _to_array(image, np.float32)
        base = arr[..., :3]
        r, g, b, a = look.warm_tint
        tint = np.array([r, g, b], dtype=np.float32)
        low = 2.0 * tint * base / 255.0
        high = 255.0 - 2.0 * (255.0 - tint) * (255.0 - base) / 255.0
        overlay = np.where(base < 128.0, low, high)
        out = base + (overlay - base) * (a / 255.0)
        return _from_rgb(_round_half_up(out), arr[..., 3])


def _shift_x(rgb: np.ndarray, shift: float) -> np.ndarray:
    """Horizontal sub-pixel shift with linear interpolation, edges replicated."""
    whole = int(np.floor(shift))
    frac = shift - whole
    w = rgb.shape[1]
    src = np.arange(w) - whole
    a = rgb[:, np.clip(src, 0, w - 1)]
    b = rgb[:, np.clip(src - 1, 0, w - 1)]
    return a * (1.0 - frac) + b * frac


@dataclass
class GhostingStage(BaseStage):
    """Faint copies shifted left and right: cheap-sensor channel misalignment."""
    def generate(self, image: Image.Image, look: LookProfile) -> Image.Image:
        arr = _to_array(image, np.float32)
        out = arr[..., :3]
        a = look.ghost_alpha / 255.0
        for shift in (look.ghost_shift, -look.ghost_shift):
            ghost = _shift_x(out, shift)
            out = _round_half_up(ghost * a + out * (1.0 - a))
        return _from_rgb(out, arr[..., 3])


# ---- Register defaults at import time ----
REGISTRY.register("color_grade", ColorGradeStage)
REGISTRY.register("noise_reduction", NoiseReductionStage)
REGISTRY.register("sharpen", SharpenStage)
REGISTRY.register("tone_curve", ToneCurveStage)
REGISTRY.register("lossy_roundtrip", LossyRoundTripStage)
REGISTRY.register("warm_overlay", WarmOverlayStage)
REGISTRY.register("ghosting", GhostingStage)
