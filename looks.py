"""
looks.py: named look profiles (pure data, no code paths)

What this does
--------------
• `LookProfile` bundles every numeric knob the stages read, plus the ordered
  stage list. It is frozen: overrides always build a new profile.
• `LOOKS` holds the built-in recipes (CCD compact, CCD retro, 2014 phone).
• `with_overrides` applies CLI-style `key=value` extras on top of a look and
  re-validates the result.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

Matrix = Tuple[Tuple[float, float, float, float, float], ...]
RGBA = Tuple[int, int, int, int]

NOISE_MODES = {"color", "binary"}
VIGNETTE_MODES = {"grid", "radial"}

# Identity colour matrix; rows are (r, g, b, a, offset).
IDENTITY_MATRIX: Matrix = (
    (1.0, 0.0, 0.0, 0.0, 0.0),
    (0.0, 1.0, 0.0, 0.0, 0.0),
    (0.0, 0.0, 1.0, 0.0, 0.0),
)


def _coerce(v: str) -> Any:
    if v.lstrip("-").isdigit():
        return int(v)
    try:
        return float(v)
    except ValueError:
        low = v.lower()
        if low in ("true", "false"):
            return low == "true"
    return v


def _parse_pipeline(spec: Optional[str]) -> List[str]:
    if not spec:
        return []
    stages = [s.strip().lower() for s in spec.split("|") if s.strip()]
    if not stages:
        raise ValueError("Empty pipeline. Example: color_grade|vignette|sensor_noise")
    return stages


def _check_range(name: str, value: float, lo: float, hi: float) -> None:
    if not (lo <= value <= hi):
        raise ValueError(f"{name}={value!r} out of range [{lo}, {hi}]")


def _check_alpha_range(name: str, pair: Tuple[int, int]) -> None:
    if not isinstance(pair, (tuple, list)) or len(pair) != 2:
        raise ValueError(f"{name} needs exactly two values (min, max), got {pair!r}")
    lo, hi = pair
    _check_range(f"{name}[0]", lo, 0, 255)
    _check_range(f"{name}[1]", hi, 0, 255)
    if lo > hi:
        raise ValueError(f"{name}: min {lo} is greater than max {hi}")


@dataclass(frozen=True)
class LookProfile:
    """One stylization recipe. Alphas are 0..255, ratios are fractions."""
    name: str
    stages: Tuple[str, ...]
    description: str = ""

    # colour grading
    color_matrix: Matrix = IDENTITY_MATRIX

    # noise-reduction smear (also used as cheap-lens softness)
    nr_mix: float = 0.62
    nr_downscale: float = 0.45

    # halo sharpening
    sharpen_amount: float = 1.75
    sharpen_threshold: int = 10
    sharpen_damping: float = 0.55
    sharpen_downscale: float = 0.70

    # tone curve
    contrast: float = 1.0
    brightness: float = 0.0
    saturation: float = 1.0
    channel_gains: Tuple[float, float, float] = (1.0, 1.0, 1.0)

    # lossy round-trip
    jpeg_quality: int = 74
    lossy_format: str = "JPEG"

    # procedural sensor noise
    noise_cap_max: int = 16000
    noise_divisor: int = 32
    noise_alpha_range: Tuple[int, int] = (11, 11)
    noise_mode: str = "binary"

    # vignette
    vignette_grid_step: int = 6
    vignette_max_alpha: int = 70
    vignette_mode: str = "grid"

    # scanlines
    scanline_spacing: int = 9
    scanline_alpha_range: Tuple[int, int] = (3, 6)

    # highlight compression
    highlight_alpha: int = 10

    # warm overlay tint and channel ghosting
    warm_tint: RGBA = (255, 240, 200, 30)
    ghost_shift: float = 0.6
    ghost_alpha: int = 35

    # date stamp
    draw_date: bool = False
    date_format: str = "%Y/%m/%d"
    date_color: RGBA = (255, 200, 0, 230)
    date_text_ratio: float = 0.048
    date_pad_x: float = 0.04
    date_pad_y: float = 0.065
    date_shadow_offset: Tuple[int, int] = (2, 2)
    date_shadow_radius: float = 3.0

    def __post_init__(self) -> None:
        if not self.stages:
            raise ValueError(f"look '{self.name}' has no stages")
        if len(self.color_matrix) != 3 or any(len(row) != 5 for row in self.color_matrix):
            raise ValueError("color_matrix must be 3 rows of (r, g, b, a, offset)")
        _check_range("nr_mix", self.nr_mix, 0.0, 1.0)
        _check_range("nr_downscale", self.nr_downscale, 1e-3, 1.0)
        _check_range("sharpen_downscale", self.sharpen_downscale, 1e-3, 1.0)
        _check_range("sharpen_damping", self.sharpen_damping, 0.0, 1.0)
        if len(self.channel_gains) != 3:
            raise ValueError("channel_gains needs three multipliers (r, g, b)")
        if self.noise_cap_max < 0 or self.noise_divisor < 1:
            raise ValueError("noise_cap_max must be >= 0 and noise_divisor >= 1")
        _check_alpha_range("noise_alpha_range", self.noise_alpha_range)
        if self.noise_mode not in NOISE_MODES:
            raise ValueError(f"noise_mode must be one of {sorted(NOISE_MODES)}, got {self.noise_mode!r}")
        if self.vignette_grid_step < 1:
            raise ValueError("vignette_grid_step must be >= 1")
        _check_range("vignette_max_alpha", self.vignette_max_alpha, 0, 255)
        if self.vignette_mode not in VIGNETTE_MODES:
            raise ValueError(f"vignette_mode must be one of {sorted(VIGNETTE_MODES)}, got {self.vignette_mode!r}")
        if self.scanline_spacing < 1:
            raise ValueError("scanline_spacing must be >= 1")
        _check_alpha_range("scanline_alpha_range", self.scanline_alpha_range)
        _check_range("highlight_alpha", self.highlight_alpha, 0, 255)
        _check_range("ghost_alpha", self.ghost_alpha, 0, 255)
        if len(self.warm_tint) != 4 or len(self.date_color) != 4:
            raise ValueError("warm_tint and date_color are (r, g, b, a)")
        if self.date_text_ratio <= 0:
            raise ValueError("date_text_ratio must be positive")

    def describe(self) -> str:
        return f"{self.name}: {self.description or '(no description)'} — stages={'|'.join(self.stages)}"


LOOKS: Dict[str, LookProfile] = {
    "ccd_basic": LookProfile(
        name="ccd_basic",
        description="Warm CCD compact: channel imbalance, clipped highlights, colour speckle.",
        stages=("color_grade", "highlight_compress", "warm_overlay", "sensor_noise"),
        color_matrix=(
            (1.15, 0.0, 0.0, 0.0, 12.0),
            (0.0, 1.08, 0.0, 0.0, 6.0),
            (0.0, 0.0, 0.95, 0.0, -2.0),
        ),
        highlight_alpha=12,
        warm_tint=(255, 240, 200, 30),
        noise_mode="color",
        noise_cap_max=15000,
        noise_divisor=1000,
        noise_alpha_range=(8, 17),
    ),
    "ccd_retro": LookProfile(
        name="ccd_retro",
        description="Full digicam look: pastel grade, soft lens, ghosting, vignette, readout lines.",
        stages=(
            "color_grade", "noise_reduction", "ghosting", "vignette",
            "sensor_noise", "scanlines", "highlight_compress",
        ),
        color_matrix=(
            (1.07, 0.02, 0.0, 0.0, 12.0),
            (0.0, 1.03, 0.0, 0.0, 7.0),
            (0.0, 0.02, 0.90, 0.0, -4.0),
        ),
        nr_downscale=0.965,
        nr_mix=115 / 255,
        ghost_shift=0.6,
        ghost_alpha=35,
        vignette_grid_step=6,
        vignette_max_alpha=70,
        noise_mode="binary",
        noise_cap_max=16000,
        noise_divisor=32,
        noise_alpha_range=(11, 11),
        scanline_spacing=9,
        scanline_alpha_range=(3, 6),
        highlight_alpha=10,
        draw_date=True,
        date_color=(255, 200, 0, 230),
        date_pad_x=0.04,
        date_pad_y=0.065,
    ),
    "phone2014": LookProfile(
        name="phone2014",
        description="2014 phone processing: NR smear, halo sharpening, punchy tone, JPEG blocks.",
        stages=("noise_reduction", "sharpen", "tone_curve", "lossy_roundtrip"),
        nr_mix=0.62,
        nr_downscale=0.45,
        sharpen_amount=1.75,
        sharpen_threshold=10,
        sharpen_damping=0.55,
        sharpen_downscale=0.70,
        contrast=1.18,
        brightness=-6.0,
        saturation=1.18,
        channel_gains=(1.0, 1.02, 1.03),
        jpeg_quality=74,
        date_color=(255, 210, 0, 235),
        date_pad_x=0.04,
        date_pad_y=0.04,
    ),
}


def list_looks() -> List[str]:
    return sorted(LOOKS.keys())


def get_look(name: str) -> LookProfile:
    key = (name or "").strip().lower()
    if key not in LOOKS:
        raise KeyError(f"Unknown look '{name}'. Available: {', '.join(list_looks())}")
    return LOOKS[key]


_TUPLE_FIELDS = {f.name for f in dataclasses.fields(LookProfile) if "Tuple" in str(f.type) or f.type in ("Matrix", "RGBA")}
_RANGE_FIELDS = {"noise_alpha_range", "scanline_alpha_range"}


def _norm_override(key: str, value: Any) -> Any:
    if key == "stages":
        if isinstance(value, str):
            return tuple(_parse_pipeline(value))
        if not isinstance(value, (tuple, list)):
            raise ValueError(f"stages must be 'a|b|c' or a sequence, got {value!r}")
        return tuple(value)
    if key == "color_matrix" and isinstance(value, str):
        # rows separated by ';', values by ','
        rows = [r for r in value.split(";") if r.strip()]
        return tuple(tuple(float(x) for x in r.split(",")) for r in rows)
    if key in _TUPLE_FIELDS and isinstance(value, str):
        value = tuple(_coerce(x.strip()) for x in value.split(",") if x.strip())
    if key in _RANGE_FIELDS:
        # a single alpha means a fixed one
        if isinstance(value, (int, float)):
            return (value, value)
        if isinstance(value, tuple) and len(value) == 1:
            return value * 2
    if key in _TUPLE_FIELDS and not isinstance(value, (tuple, list)):
        raise ValueError(f"{key} needs comma-separated values, got {value!r}")
    return value


def with_overrides(look: LookProfile, extras: Dict[str, Any]) -> LookProfile:
    """
    Return a copy of `look` with `extras` applied. Keys may be given bare
    (`nr_mix=0.3`) or look-prefixed (`phone2014.nr_mix=0.3`); prefixed keys for
    a different look are ignored.
    """
    known = {f.name for f in dataclasses.fields(LookProfile)}
    changes: Dict[str, Any] = {}
    for k, v in extras.items():
        key = k
        if "." in k:
            prefix, key = k.split(".", 1)
            if prefix.strip().lower() not in ("all", look.name):
                continue
        key = key.strip()
        if key not in known:
            raise KeyError(f"Unknown look field '{key}'")
        changes[key] = _norm_override(key, v)
    if not changes:
        return look
    return dataclasses.replace(look, **changes)
