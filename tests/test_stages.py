import dataclasses

import numpy as np
import pytest
from PIL import Image

import stages
from conftest import gradient, solid
from looks import IDENTITY_MATRIX, LOOKS, LookProfile
from stages import REGISTRY, blend


def _look(**kw) -> LookProfile:
    return LookProfile(name="test", stages=("color_grade",), **kw)


def _px(img: Image.Image, xy=(0, 0)):
    return img.getpixel(xy)


# ---------------- registry ----------------

def test_registry_creates_known_stages(rng):
    for name in ("color_grade", "noise_reduction", "sharpen", "tone_curve", "lossy_roundtrip",
                 "warm_overlay", "ghosting"):
        assert isinstance(REGISTRY.create(name, rng=rng), stages.BaseStage)


def test_to_array_converts_once_to_the_requested_dtype(card):
    arr = stages._to_array(card, np.float32)
    assert arr.dtype == np.float32 and arr.shape == (48, 64, 4)
    rgb = stages._to_array(card.convert("RGB"))
    assert rgb.dtype == np.int32 and (rgb[..., 3] == 255).all()


def test_registry_unknown_stage():
    with pytest.raises(KeyError, match="Unknown stage"):
        REGISTRY.create("bokeh")


# ---------------- color grade ----------------

def test_color_grade_matrix_row_on_gray():
    look = _look(color_matrix=((1.12, 0, 0, 0, 10), (0, 1, 0, 0, 0), (0, 0, 1, 0, 0)))
    out = stages.ColorGradeStage().generate(solid(4, 4), look)
    # 128 * 1.12 + 10 = 153.36
    assert _px(out) == (153, 128, 128, 255)


def test_color_grade_ccd_basic_warm_cast():
    out = stages.ColorGradeStage().generate(solid(4, 4), LOOKS["ccd_basic"])
    # 159.2, 144.24, 119.6
    assert _px(out) == (159, 144, 120, 255)


def test_color_grade_clamps_and_keeps_alpha():
    look = _look(color_matrix=((2, 0, 0, 0, 50), (0, 0, 0, 0, -40), (0, 0, 1, 0, 0)))
    out = stages.ColorGradeStage().generate(solid(2, 2, (200, 100, 7, 255)), look)
    assert _px(out) == (255, 0, 7, 255)


def test_color_grade_identity_is_noop(card):
    out = stages.ColorGradeStage().generate(card, _look(color_matrix=IDENTITY_MATRIX))
    assert out.tobytes() == card.tobytes()


# ---------------- noise reduction ----------------

def test_blend_endpoints_are_exact():
    rng = np.random.default_rng(7)
    orig = rng.integers(0, 256, size=(9, 11, 3))
    blur = rng.integers(0, 256, size=(9, 11, 3))
    assert np.array_equal(blend(orig, blur, 0.0), orig.astype(np.uint8))
    assert np.array_equal(blend(orig, blur, 1.0), blur.astype(np.uint8))


def test_blend_midpoint_rounds_half_up():
    orig = np.array([[[10, 11, 0]]])
    blur = np.array([[[11, 12, 255]]])
    assert blend(orig, blur, 0.5).tolist() == [[[11, 12, 128]]]


def test_noise_reduction_keeps_size_and_flat_color():
    look = LOOKS["phone2014"]
    img = solid(37, 23, (90, 140, 200, 255))
    out = stages.NoiseReductionStage().generate(img, look)
    assert out.size == img.size
    assert out.mode == "RGBA"
    assert out.tobytes() == img.tobytes()


def test_noise_reduction_mix_zero_returns_original(card):
    look = dataclasses.replace(LOOKS["phone2014"], nr_mix=0.0)
    out = stages.NoiseReductionStage().generate(card, look)
    assert out.tobytes() == card.tobytes()


def test_noise_reduction_smooths_texture(card):
    out = stages.NoiseReductionStage().generate(card, LOOKS["phone2014"])
    before = np.asarray(card, np.float64)[..., 2]
    after = np.asarray(out, np.float64)[..., 2]
    assert after.std() < before.std()


# ---------------- sharpen ----------------

def test_sharpen_flat_image_unchanged():
    img = solid(30, 30, (60, 120, 180, 255))
    out = stages.SharpenStage().generate(img, LOOKS["phone2014"])
    assert out.tobytes() == img.tobytes()


def test_sharpen_overshoots_at_edges():
    arr = np.zeros((40, 40, 4), np.uint8)
    arr[..., 3] = 255
    arr[:, 20:, :3] = 200
    arr[:, :20, :3] = 50
    img = Image.fromarray(arr, "RGBA")
    out = np.asarray(stages.SharpenStage().generate(img, LOOKS["phone2014"]), np.int32)
    row = out[20, :, 0]
    # ringing: darker than the dark side just before the edge, brighter than the bright side after it
    assert row[:20].min() < 50
    assert row[20:].max() > 200
    assert (out[..., 3] == 255).all()


def test_sharpen_damping_applies_below_threshold():
    arr = np.full((40, 40, 4), 100, np.uint8)
    arr[..., 3] = 255
    arr[:, 20:, :3] = 104   # weak step, below threshold 10
    img = Image.fromarray(arr, "RGBA")
    full = dataclasses.replace(LOOKS["phone2014"], sharpen_damping=1.0)
    damped = dataclasses.replace(LOOKS["phone2014"], sharpen_damping=0.0)
    out_full = np.asarray(stages.SharpenStage().generate(img, full), np.int32)
    out_damped = np.asarray(stages.SharpenStage().generate(img, damped), np.int32)
    assert np.array_equal(out_damped, np.asarray(img, np.int32))
    assert not np.array_equal(out_full, out_damped)


# ---------------- tone curve ----------------

def test_tone_curve_phone2014_on_gray():
    out = stages.ToneCurveStage().generate(solid(3, 3), LOOKS["phone2014"])
    # (128-128)*1.18+128-6 = 122 ; gray stays gray ; 122*1.02=124.44, 122*1.03=125.66
    assert _px(out) == (122, 124, 126, 255)


def test_tone_curve_saturation_uses_contrast_adjusted_luma():
    look = _look(contrast=2.0, brightness=0.0, saturation=0.0)
    out = stages.ToneCurveStage().generate(solid(1, 1, (160, 128, 128, 255)), look)
    # contrast first: (192, 128, 128) -> Y = 0.299*192 + 0.587*128 + 0.114*128 = 147.136
    assert _px(out) == (147, 147, 147, 255)


def test_tone_curve_order_matters():
    look = _look(contrast=1.5, brightness=0.0, saturation=1.6)
    src = solid(1, 1, (200, 90, 40, 255))
    ours = np.array(_px(stages.ToneCurveStage().generate(src, look))[:3], np.float64)

    # saturation before contrast, for comparison
    c = np.array([200.0, 90.0, 40.0])
    y = 0.299 * c[0] + 0.587 * c[1] + 0.114 * c[2]
    s = np.clip(np.floor(y + (c - y) * 1.6 + 0.5), 0, 255)
    swapped = np.clip(np.floor((s - 128) * 1.5 + 128 + 0.5), 0, 255)
    assert not np.array_equal(ours, swapped)


# ---------------- lossy round trip ----------------

@pytest.mark.parametrize("quality", [-20, 0, 1, 50, 74, 100, 250])
def test_lossy_roundtrip_keeps_size_for_any_quality(card, quality):
    look = dataclasses.replace(LOOKS["phone2014"], jpeg_quality=quality)
    out = stages.LossyRoundTripStage().generate(card, look)
    assert out.size == card.size
    assert out.mode == "RGBA"
    assert out is not card


@pytest.mark.parametrize("quality, used", [(-20, 1), (0, 1), (250, 100), (74, 74)])
def test_lossy_roundtrip_clamps_quality(monkeypatch, card, quality, used):
    seen = []
    real = stages._encode_lossy

    def spy(image, fmt, q):
        seen.append(q)
        return real(image, fmt, q)

    monkeypatch.setattr(stages, "_encode_lossy", spy)
    stages.LossyRoundTripStage().generate(card, dataclasses.replace(LOOKS["phone2014"], jpeg_quality=quality))
    assert seen == [used]


def test_lossy_roundtrip_injects_artifacts(card):
    look = dataclasses.replace(LOOKS["phone2014"], jpeg_quality=10)
    out = stages.LossyRoundTripStage().generate(card, look)
    assert out.tobytes() != card.tobytes()


def test_lossy_roundtrip_fails_soft(monkeypatch, card):
    def boom(image, fmt, q):
        raise OSError("encoder exploded")

    monkeypatch.setattr(stages, "_encode_lossy", boom)
    out = stages.LossyRoundTripStage().generate(card, LOOKS["phone2014"])
    assert out is card


def test_lossy_roundtrip_unknown_codec_fails_soft(card):
    look = dataclasses.replace(LOOKS["phone2014"], lossy_format="NOPE")
    assert stages.LossyRoundTripStage().generate(card, look) is card


# ---------------- warm overlay / ghosting ----------------

def test_warm_overlay_zero_alpha_is_noop(card):
    look = _look(warm_tint=(255, 240, 200, 0))
    assert stages.WarmOverlayStage().generate(card, look).tobytes() == card.tobytes()


def test_warm_overlay_warms_midtones():
    out = stages.WarmOverlayStage().generate(solid(2, 2, (100, 100, 100, 255)), LOOKS["ccd_basic"])
    r, g, b, a = _px(out)
    assert r > b
    assert a == 255


def test_ghosting_flat_image_unchanged():
    img = solid(12, 12, (40, 80, 120, 255))
    assert stages.GhostingStage().generate(img, LOOKS["ccd_retro"]).tobytes() == img.tobytes()


def test_ghosting_bleeds_both_ways():
    arr = np.zeros((4, 9, 4), np.uint8)
    arr[..., 3] = 255
    arr[:, 4, :3] = 255
    out = np.asarray(stages.GhostingStage().generate(Image.fromarray(arr, "RGBA"), LOOKS["ccd_retro"]))
    assert out[0, 3, 0] > 0
    assert out[0, 5, 0] > 0
    assert out[0, 0, 0] == 0
