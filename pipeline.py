"""
pipeline.py: the single, data-driven orchestrator.

Every look runs through the same code: decode → orientation → the look's
stages in order → optional date stamp. Looks differ only in data
(`looks.LookProfile`).

Buffer ownership: the orchestrator owns exactly one live image at a time.
Each stage takes it and returns either the same object or a replacement; a
replaced image is closed right away and never handed to anyone again. If a
stage raises, the live image is closed and `ProcessingError` is raised, so a
caller never sees a half-processed picture.
"""
from __future__ import annotations

import datetime as _dt
import logging
import time
from typing import Optional, Union

import numpy as np
from PIL import Image

import overlays  # noqa: F401  (registers overlay stages)
from capture import DecodeError, ImageLoader, OrientationTag, normalize_orientation, read_orientation
from looks import LookProfile, get_look
from overlays import DateStampRenderer
from stages import REGISTRY

log = logging.getLogger("retrocam")

__all__ = ["PipelineOrchestrator", "ProcessingError", "DecodeError", "process"]


class ProcessingError(RuntimeError):
    """A stage failed; no output image was produced."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"stage '{stage}' failed: {cause}")
        self.stage = stage


class PipelineOrchestrator:
    """Holds no per-call state; safe to share between worker threads."""

    def __init__(self, loader: Optional[ImageLoader] = None) -> None:
        self.loader = loader or ImageLoader()

    @staticmethod
    def resolve_look(look: Union[str, LookProfile]) -> LookProfile:
        return get_look(look) if isinstance(look, str) else look

    @staticmethod
    def validate(look: LookProfile) -> None:
        unknown = [s for s in look.stages if s not in REGISTRY.names()]
        if unknown:
            raise ProcessingError(
                unknown[0], KeyError(f"Unknown stage(s) in look '{look.name}': {', '.join(unknown)}")
            )

    def decode(self, source: bytes, orientation: Optional[OrientationTag]) -> Image.Image:
        """Decode and rotate upright. Raises DecodeError before any stage runs."""
        src = self.loader.open(source)
        try:
            tag = orientation if orientation is not None else read_orientation(src)
            raw = self.loader.to_rgba(src)
        finally:
            src.close()

        try:
            upright = normalize_orientation(raw, tag)
        except Exception as e:
            raw.close()
            raise ProcessingError("orientation", e) from e
        if upright is not raw:
            raw.close()
        log.info("Decoded %dx%d, orientation=%s", upright.width, upright.height, tag.name)
        return upright

    def process(
        self,
        source: bytes,
        orientation: Optional[OrientationTag],
        look: Union[str, LookProfile],
        draw_date: Optional[bool] = None,
        *,
        seed: Optional[int] = None,
        rng: Optional[np.random.Generator] = None,
        date: Optional[_dt.date] = None,
    ) -> Image.Image:
        """
        Run one capture through `look`.

        orientation=None reads the tag from the source's EXIF, draw_date=None
        defers to `look.draw_date`. Randomized stages share one generator,
        built from `seed` unless `rng` is given.
        """
        look = self.resolve_look(look)
        self.validate(look)
        if rng is None:
            rng = np.random.default_rng(seed)
        if draw_date is None:
            draw_date = look.draw_date

        current = self.decode(source, orientation)

        t0 = time.perf_counter()
        for i, name in enumerate(look.stages):
            log.info("Stage %d/%d: %s", i + 1, len(look.stages), name)
            current = self._run(name, lambda img: REGISTRY.create(name, rng=rng).generate(img, look), current)
        if draw_date:
            stamp = DateStampRenderer(look, date)
            current = self._run("date_stamp", stamp.render, current)
        log.info("Look '%s' done in %.1f ms", look.name, (time.perf_counter() - t0) * 1000.0)
        return current

    @staticmethod
    def _run(name: str, fn, current: Image.Image) -> Image.Image:
        size = current.size
        try:
            out = fn(current)
        except Exception as e:
            log.error("Stage %s failed: %s", name, e)
            current.close()
            raise ProcessingError(name, e) from e
        if out is not current:
            current.close()
        if out.size != size:
            log.error("Stage %s changed the size %s -> %s", name, size, out.size)
            out.close()
            raise ProcessingError(name, ValueError(f"output size {out.size} != {size}"))
        return out


def process(
    source: bytes,
    orientation: Optional[OrientationTag],
    look: Union[str, LookProfile],
    draw_date: Optional[bool] = None,
    **kwargs,
) -> Image.Image:
    return PipelineOrchestrator().process(source, orientation, look, draw_date, **kwargs)
