from __future__ import annotations

import argparse
import datetime as _dt
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
from urllib.request import url2pathname

import requests
from PIL import Image

from capture import DecodeError, OrientationTag
from looks import _coerce, get_look, list_looks, with_overrides
from pipeline import PipelineOrchestrator, ProcessingError
from stages import REGISTRY

# =============== Logging ===============
log = logging.getLogger("retrocam")

GALLERY_QUALITY = 92


def setup_logging(verbosity: int = 0) -> None:
    level = [logging.WARNING, logging.INFO, logging.DEBUG][min(verbosity, 2)]
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


# =============== Core: capture source ===============
class CaptureSource:
    """
    Read the captured still from a local path, a file:// URL, '-' (stdin) or
    an http(s) URL. Anything bigger than `max_bytes` is refused before it is
    decoded.
    """

    MAX_BYTES = 64 * 1024 * 1024

    def __init__(
        self,
        timeout: float = 20.0,
        max_bytes: int = MAX_BYTES,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout = timeout
        self.max_bytes = max_bytes
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": "retrocam/1.0"})

    def read(self, src: str) -> bytes:
        if src == "-":
            return self._check_size(sys.stdin.buffer.read(self.max_bytes + 1), "stdin")
        parsed = urlparse(src)
        scheme = (parsed.scheme or "").lower()
        if scheme in ("http", "https"):
            return self._download(src)
        if scheme == "file":
            return self._read_path(Path(url2pathname(parsed.path)))
        if scheme == "" or len(scheme) == 1:  # bare path or a Windows drive letter
            return self._read_path(Path(src))
        raise ValueError(f"Unsupported source scheme: {scheme}")

    def _check_size(self, raw: bytes, what: str) -> bytes:
        if len(raw) > self.max_bytes:
            raise ValueError(f"{what} is larger than {self.max_bytes} bytes")
        return raw

    def _read_path(self, p: Path) -> bytes:
        if not p.is_file():
            raise FileNotFoundError(f"Input file not found: {p}")
        if p.stat().st_size > self.max_bytes:
            raise ValueError(f"{p} is larger than {self.max_bytes} bytes")
        log.info("Reading %s", p)
        return p.read_bytes()

    def _download(self, url: str) -> bytes:
        log.info("Downloading %s", url)
        with self._session.get(url, timeout=self.timeout, stream=True) as r:
            r.raise_for_status()
            ctype = r.headers.get("Content-Type", "")
            if ctype and not ctype.startswith(("image/", "application/octet-stream")):
                raise ValueError(f"{url} is not an image (Content-Type: {ctype})")
            buf = bytearray()
            for chunk in r.iter_content(chunk_size=64 * 1024):
                buf += chunk
                self._check_size(buf, url)
        return bytes(buf)


# =============== Small CLI helpers ===============
def _parse_kv_pairs(pairs: Optional[List[str]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if not pairs:
        return out
    for p in pairs:
        if "=" in p:
            k, v = p.split("=", 1)
            out[k.strip()] = _coerce(v.strip())
    return out


def _infer_format_from_path(p: Path) -> str:
    ext = p.suffix.lower()
    if ext in (".jpg", ".jpeg"):
        return "JPEG"
    if ext == ".png":
        return "PNG"
    if ext == ".webp":
        return "WEBP"
    return "JPEG"


def gallery_name(now: Optional[float] = None) -> str:
    """CCD_<epoch millis>.jpg, the camera roll naming convention."""
    ms = int((time.time() if now is None else now) * 1000)
    return f"CCD_{ms}.jpg"


def save_image(img: Image.Image, out: Path, quality: int = GALLERY_QUALITY) -> Path:
    out.parent.mkdir(parents=True, exist_ok=True)
    fmt = _infer_format_from_path(out)
    if fmt == "JPEG":
        img.convert("RGB").save(out, format=fmt, quality=quality)
    else:
        img.save(out, format=fmt)
    return out


def _resolve_output(args: argparse.Namespace) -> Path:
    if args.out is not None:
        return args.out
    return args.out_dir / gallery_name()


def _parse_date(s: Optional[str]) -> Optional[_dt.date]:
    if not s:
        return None
    try:
        return _dt.date.fromisoformat(s)
    except ValueError:
        raise SystemExit(f"Invalid --stamp-date '{s}', expected YYYY-MM-DD")


# =============== CLI ===============
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Retro digicam / 2014-phone look for still photos")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v, -vv).")

    sub = p.add_subparsers(dest="cmd", required=True)

    lp = sub.add_parser("list", help="List looks and stages.")
    lp.set_defaults(func=cmd_list)

    rp = sub.add_parser("run", help="Process one photo through a look.")
    rp.add_argument("--url", required=True, help="Local path, file:// URL, http(s) URL, or - for stdin.")
    rp.add_argument("--look", default="ccd_retro", choices=list_looks(), help="Look profile.")
    out = rp.add_mutually_exclusive_group()
    out.add_argument("--out", type=Path, default=None, help="Output image file (jpg/png/webp).")
    out.add_argument("--out-dir", type=Path, default=Path("."), help="Folder for CCD_<millis>.jpg (default: .).")
    rp.add_argument("--quality", type=int, default=GALLERY_QUALITY, help="JPEG quality of the saved copy.")
    date = rp.add_mutually_exclusive_group()
    date.add_argument("--date", dest="draw_date", action="store_true", default=None, help="Draw the date stamp.")
    date.add_argument("--no-date", dest="draw_date", action="store_false", help="Never draw the date stamp.")
    rp.set_defaults(draw_date=None)
    rp.add_argument("--stamp-date", default=None, help="Date to stamp as YYYY-MM-DD (default: today).")
    rp.add_argument("--orientation", default=None,
                    help="Override orientation: normal|90|180|270 (default: read EXIF).")
    rp.add_argument("--seed", type=int, default=None, help="RNG seed (optional).")
    rp.add_argument(
        "--extra",
        nargs="*",
        help=(
            "Look overrides as k=v pairs, e.g. jpeg_quality=60 vignette_mode=radial "
            "noise_alpha_range=5,20 stages='noise_reduction|sharpen'. "
            "Prefix with a look name (phone2014.nr_mix=0.4) to scope it."
        ),
    )
    rp.set_defaults(func=cmd_run)

    bp = sub.add_parser("bench", help="Micro-benchmark a look.")
    bp.add_argument("--url", required=True)
    bp.add_argument("--look", default="ccd_retro", choices=list_looks())
    bp.add_argument("--runs", type=int, default=3)
    bp.add_argument("--extra", nargs="*")
    bp.set_defaults(func=cmd_bench)

    return p


# =============== Commands ===============
def cmd_list(_args: argparse.Namespace) -> int:
    print("Available looks:")
    for name in list_looks():
        print("  " + get_look(name).describe())
    print("Available stages:", ", ".join(REGISTRY.names()) or "(none)")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    try:
        look = with_overrides(get_look(args.look), _parse_kv_pairs(args.extra))
        orientation = OrientationTag.parse(args.orientation) if args.orientation else None
        stamp_date = _parse_date(args.stamp_date)

        raw = CaptureSource().read(args.url)
        log.info("Loaded %d bytes", len(raw))

        out_img = PipelineOrchestrator().process(
            raw, orientation, look, args.draw_date, seed=args.seed, date=stamp_date,
        )
        try:
            path = save_image(out_img, _resolve_output(args), quality=args.quality)
            log.info("Saved %s (%dx%d)", path, *out_img.size)
            print(path)
        finally:
            out_img.close()
        return 0

    except DecodeError as e:
        log.error("Could not decode %s: %s", args.url, e)
        return 1
    except ProcessingError as e:
        log.error("Processing failed at stage '%s': %s", e.stage, e)
        return 1
    except Exception as e:
        log.exception("Failed: %s", e)
        return 1


def cmd_bench(args: argparse.Namespace) -> int:
    try:
        raw = CaptureSource().read(args.url)
        look = with_overrides(get_look(args.look), _parse_kv_pairs(args.extra))
        orchestrator = PipelineOrchestrator()

        times = []
        for _ in range(max(1, args.runs)):
            t0 = time.perf_counter()
            orchestrator.process(raw, None, look, False).close()
            times.append(time.perf_counter() - t0)
        avg = sum(times) / len(times)
        print(
            f"{look.name} ({'|'.join(look.stages)}): {len(times)} run(s) — avg {avg*1000:.2f} ms, "
            f"min {min(times)*1000:.2f} ms, max {max(times)*1000:.2f} ms"
        )
        return 0
    except Exception as e:
        log.exception("Bench failed: %s", e)
        return 1


# =============== Entry ===============
def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
