"""Overlay rendering for oracle requests and debug output."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from pathlib import Path

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from .image import img_to_png_bytes
from .types import AlignmentVerdict, BBox, DetectedElement

LOG = logging.getLogger(__name__)

OverlayKey = tuple[str, int, int]

RGB = tuple[int, int, int]

_PALETTE: tuple[RGB, ...] = (
    (255, 0, 0),
    (0, 200, 0),
    (0, 90, 255),
    (255, 0, 255),
    (0, 200, 200),
    (255, 165, 0),
    (128, 0, 128),
    (0, 128, 128),
)

_QUALITY_COLORS: dict[str, RGB] = {
    "excellent": (0, 255, 0),
    "good": (0, 170, 0),
    "poor": (255, 136, 0),
    "terrible": (255, 0, 0),
}

_STATUS_COLORS: dict[str, RGB] = {
    "detected": (66, 135, 245),
    "refinement_successful": (60, 179, 113),
    "refinement_failed": (255, 165, 0),
    "slicing_error": (220, 20, 60),
    "aligned": (0, 200, 0),
    "max_attempts_reached": (255, 136, 0),
}

_ARROW_LEN = 50
_DIAGONAL = 0.7

_ARROW_VECTORS: dict[str, tuple[float, float]] = {
    "up": (0.0, -1.0),
    "down": (0.0, 1.0),
    "left": (-1.0, 0.0),
    "right": (1.0, 0.0),
    "up-left": (-_DIAGONAL, -_DIAGONAL),
    "up-right": (_DIAGONAL, -_DIAGONAL),
    "down-left": (-_DIAGONAL, _DIAGONAL),
    "down-right": (_DIAGONAL, _DIAGONAL),
}


def _font(
    img: Image.Image, divisor: int = 50
) -> tuple[ImageFont.FreeTypeFont | ImageFont.ImageFont, int]:
    """Return a font scaled to the image and its pixel size."""
    size = max(12, round(min(img.size) / divisor))
    try:
        return ImageFont.truetype("DejaVuSans.ttf", size), size
    except OSError:  # pragma: no cover
        return ImageFont.load_default(), 11


def _rect(b: BBox) -> tuple[int, int, int, int]:
    return round(b.x), round(b.y), round(b.x + b.width), round(b.y + b.height)


def _dim(img: Image.Image, factor: float = 0.4) -> Image.Image:
    arr = np.asarray(img.convert("RGB"), dtype=np.float32) * factor
    return Image.fromarray(arr.clip(0, 255).astype(np.uint8))


def _dashed_line(
    dr: ImageDraw.ImageDraw,
    start: tuple[float, float],
    end: tuple[float, float],
    *,
    fill: tuple[int, ...],
    width: int,
    dash: int = 8,
) -> None:
    x0, y0 = start
    x1, y1 = end
    length = float(np.hypot(x1 - x0, y1 - y0))
    if length == 0:
        return
    steps = int(length // dash)
    for i in range(0, steps, 2):
        t0 = i * dash / length
        t1 = min(1.0, (i + 1) * dash / length)
        dr.line(
            [(x0 + (x1 - x0) * t0, y0 + (y1 - y0) * t0), (x0 + (x1 - x0) * t1, y0 + (y1 - y0) * t1)],
            fill=fill,
            width=width,
        )


def _label(
    dr: ImageDraw.ImageDraw,
    xy: tuple[float, float],
    text: str,
    font: ImageFont.FreeTypeFont | ImageFont.ImageFont,
    *,
    fg: RGB = (255, 255, 255),
    bg: RGB = (0, 0, 0),
) -> None:
    bbox = dr.textbbox(xy, text, font=font)
    dr.rectangle((bbox[0] - 2, bbox[1] - 2, bbox[2] + 2, bbox[3] + 2), fill=bg)
    dr.text(xy, text, fill=fg, font=font)


def _center_dot(dr: ImageDraw.ImageDraw, cx: float, cy: float, r: int = 4) -> None:
    dr.ellipse((cx - r - 2, cy - r - 2, cx + r + 2, cy + r + 2), fill=(0, 0, 0))
    dr.ellipse((cx - r, cy - r, cx + r, cy + r), fill=(255, 255, 255))


def render_focus_overlay(
    img: Image.Image,
    bbox: BBox,
    label: str,
    *,
    attempt: int = 1,
    element_index: int = 1,
) -> bytes:
    """Highlight a single element for an alignment question.

    The background is dimmed and the box region keeps its original pixels under
    a light white tint. A red border, dashed quadrant cross through the box
    center, quadrant numbers, a center dot and a `FOCUS:` banner are drawn on top.

    Returns:
        PNG-encoded overlay.
    """
    base = img.convert("RGB")
    w, h = base.size
    x1, y1, x2, y2 = _rect(bbox)
    x1, y1 = max(0, min(x1, w)), max(0, min(y1, h))
    x2, y2 = max(x1, min(x2, w)), max(y1, min(y2, h))

    vis = _dim(base)
    if x2 > x1 and y2 > y1:
        vis.paste(base.crop((x1, y1, x2, y2)), (x1, y1))
    vis = vis.convert("RGBA")
    tint = Image.new("RGBA", vis.size, (0, 0, 0, 0))
    ImageDraw.Draw(tint).rectangle((x1, y1, x2, y2), fill=(255, 255, 255, 40))
    vis = Image.alpha_composite(vis, tint).convert("RGB")

    dr = ImageDraw.Draw(vis)
    font, font_px = _font(vis)
    thickness = max(2, round(min(w, h) / 250))
    cx, cy = bbox.center.x, bbox.center.y

    _dashed_line(dr, (0, cy), (w, cy), fill=(255, 255, 0), width=1)
    _dashed_line(dr, (cx, 0), (cx, h), fill=(255, 255, 0), width=1)
    dr.rectangle((x1, y1, x2, y2), outline=(255, 0, 0), width=thickness)

    # Quadrants numbered like the trigonometric circle: 1 top-right, then counter-clockwise.
    small, small_px = _font(vis, divisor=70)
    pad = thickness + 2
    right, bottom = x2 - pad - small_px, y2 - pad - small_px
    for n, (qx, qy) in enumerate(
        [(right, y1 + pad), (x1 + pad, y1 + pad), (x1 + pad, bottom), (right, bottom)],
        start=1,
    ):
        dr.text((qx, qy), str(n), fill=(255, 255, 0), font=small)

    _center_dot(dr, cx, cy)
    _label(dr, (x1, max(0, y1 - font_px - 8)), f"FOCUS: {label}", font, bg=(200, 0, 0))
    _label(dr, (8, 8), f"Attempt {attempt} | Element #{element_index}", font)
    return img_to_png_bytes(vis)


def render_combined_overlay(
    img: Image.Image,
    elements: Sequence[DetectedElement],
    *,
    cycle: int = 1,
) -> bytes:
    """Draw every element in its own color with numbered labels.

    Returns:
        PNG-encoded overlay.
    """
    vis = img.convert("RGB")
    dr = ImageDraw.Draw(vis)
    w, h = vis.size
    font, font_px = _font(vis)
    thickness = max(2, round(min(w, h) / 300))

    _dashed_line(dr, (w / 2, 0), (w / 2, h), fill=(128, 128, 128), width=1)
    _dashed_line(dr, (0, h / 2), (w, h / 2), fill=(128, 128, 128), width=1)

    for i, el in enumerate(elements, start=1):
        color = _PALETTE[(i - 1) % len(_PALETTE)]
        x1, y1, x2, y2 = _rect(el.bounding_box)
        dr.rectangle((x1, y1, x2, y2), outline=color, width=thickness)
        _label(dr, (x1 + thickness, y1 + thickness), f"#{i}: {el.reference_name}", font, bg=color)
        _center_dot(dr, el.center.x, el.center.y, r=3)

    _label(dr, (8, max(0, h - font_px - 12)), f"Cycle {cycle}", font)
    return img_to_png_bytes(vis)


def render_alignment_overlay(img: Image.Image, bbox: BBox, verdict: AlignmentVerdict) -> bytes:
    """Draw a box colored by the verdict's quality, with a direction arrow when misaligned."""
    vis = img.convert("RGB")
    dr = ImageDraw.Draw(vis)
    w, h = vis.size
    font, _ = _font(vis)
    color = _QUALITY_COLORS.get(verdict.quality, (255, 0, 0))
    thickness = max(3, round(min(w, h) / 200))
    x1, y1, x2, y2 = _rect(bbox)
    dr.rectangle((x1, y1, x2, y2), outline=color, width=thickness)

    if verdict.aligned:
        status = f"ALIGNED ({verdict.quality}, {verdict.confidence}%)"
    else:
        status = f"MISALIGNED: move {verdict.direction} ({verdict.quality}, {verdict.confidence}%)"
    _label(dr, (x1, y2 + 4), status, font, bg=color)

    vec = _ARROW_VECTORS.get(verdict.direction)
    if vec is not None and not verdict.aligned:
        cx, cy = bbox.center.x, bbox.center.y
        ex, ey = cx + vec[0] * _ARROW_LEN, cy + vec[1] * _ARROW_LEN
        dr.line([(cx, cy), (ex, ey)], fill=(255, 255, 0), width=thickness)
        # Arrow head: two short strokes rotated back from the tip.
        angle = float(np.arctan2(ey - cy, ex - cx))
        for side in (-1, 1):
            a = angle + np.pi - side * np.pi / 6
            dr.line(
                [(ex, ey), (ex + 12 * float(np.cos(a)), ey + 12 * float(np.sin(a)))],
                fill=(255, 255, 0),
                width=thickness,
            )
    return img_to_png_bytes(vis)


def draw_elements(img: Image.Image, elements: Sequence[DetectedElement], out_path: Path) -> None:
    """Draw elements colored by status and save to disk."""
    vis = img.convert("RGB")
    dr = ImageDraw.Draw(vis)
    w, h = vis.size
    thickness = max(2, round(min(w, h) / 300))
    font, _ = _font(vis, divisor=80)
    for el in elements:
        color = _STATUS_COLORS.get(el.status, (255, 165, 0))
        x1, y1, x2, y2 = _rect(el.bounding_box)
        dr.rectangle((x1, y1, x2, y2), outline=color, width=thickness)
        txt = f"{el.reference_name} {el.confidence}% L{el.refinement_level}"
        _label(dr, (x1 + thickness, y1 + thickness), txt, font)
    vis.save(out_path)


class OverlayCache:
    """Rendered overlays keyed by `(element_id, depth, attempt)`."""

    def __init__(self) -> None:
        self._items: dict[OverlayKey, bytes] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def get(self, key: OverlayKey) -> bytes | None:
        return self._items.get(key)

    def put(self, key: OverlayKey, data: bytes) -> None:
        self._items[key] = data

    def get_or_render(self, key: OverlayKey, render: Callable[[], bytes]) -> bytes:
        """Return the cached overlay for `key`, rendering and storing it on a miss."""
        cached = self._items.get(key)
        if cached is not None:
            self.hits += 1
            return cached
        self.misses += 1
        data = render()
        self._items[key] = data
        return data

    def clear(self) -> None:
        n = len(self._items)
        self._items.clear()
        LOG.debug("Overlay cache cleared: %s entries", n)

    def stats(self) -> dict[str, int]:
        return {
            "entries": len(self._items),
            "bytes": sum(len(v) for v in self._items.values()),
            "hits": self.hits,
            "misses": self.misses,
        }
