"""Geometry helpers: focused crops, frame mapping, coverage and nudges.

All functions are pure. Inputs are validated and malformed values raise
`ValueError` rather than being clamped, so detection bugs upstream surface here.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from .types import BBox, CropRegion, Point, Size

DEFAULT_CROP_MULTIPLIERS: tuple[float, ...] = (0.4, 0.6, 0.8)

_NUDGE_VECTORS: dict[str, tuple[int, int]] = {
    "up": (0, -1),
    "down": (0, 1),
    "left": (-1, 0),
    "right": (1, 0),
    "up-left": (-1, -1),
    "up-right": (1, -1),
    "down-left": (-1, 1),
    "down-right": (1, 1),
}


def _check(name: str, value: object, *, allow_negative: bool = False) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {value!r}")
    v = float(value)
    if math.isnan(v) or math.isinf(v):
        raise ValueError(f"{name} must be finite, got {value!r}")
    if v < 0 and not allow_negative:
        raise ValueError(f"{name} must be >= 0, got {value!r}")
    return v


def _check_point(name: str, p: Point) -> None:
    _check(f"{name}.x", p.x)
    _check(f"{name}.y", p.y)


def _check_size(name: str, s: Size) -> None:
    _check(f"{name}.width", s.width)
    _check(f"{name}.height", s.height)


def _check_bbox(name: str, b: BBox) -> None:
    _check(f"{name}.x", b.x)
    _check(f"{name}.y", b.y)
    _check(f"{name}.width", b.width)
    _check(f"{name}.height", b.height)


def _round_half_up(v: float) -> int:
    return math.floor(v + 0.5)


def crop_multiplier(depth: int, multipliers: Sequence[float] = DEFAULT_CROP_MULTIPLIERS) -> float:
    """Return the crop size multiplier for a recursion depth.

    The last multiplier applies to every depth beyond the table.
    """
    if depth < 0:
        raise ValueError(f"depth must be >= 0, got {depth}")
    if not multipliers:
        raise ValueError("multipliers must not be empty")
    return float(multipliers[min(depth, len(multipliers) - 1)])


def focused_crop(
    element_center: Point,
    frame_size: Size,
    depth: int,
    multipliers: Sequence[float] = DEFAULT_CROP_MULTIPLIERS,
) -> CropRegion:
    """Compute the crop used to re-locate an element at a given depth.

    The crop is `frame_size * multiplier(depth)`, centered on the element, then
    shifted so it never extends past the frame.

    Args:
        element_center: Element center in the frame's coordinates.
        frame_size: Size of the image being cropped.
        depth: Current recursion depth.
        multipliers: Per-depth size multipliers.

    Returns:
        Integer crop region in the frame's coordinates.
    """
    _check_point("element_center", element_center)
    _check_size("frame_size", frame_size)
    fw = math.floor(frame_size.width)
    fh = math.floor(frame_size.height)
    if fw <= 0 or fh <= 0:
        raise ValueError(f"frame_size must be non-empty, got {frame_size}")

    m = crop_multiplier(depth, multipliers)
    cw = max(1, min(_round_half_up(fw * m), fw))
    ch = max(1, min(_round_half_up(fh * m), fh))

    x = _round_half_up(element_center.x - cw / 2)
    y = _round_half_up(element_center.y - ch / 2)
    x = max(0, min(x, fw - cw))
    y = max(0, min(y, fh - ch))
    return CropRegion(x=x, y=y, width=cw, height=ch)


def coverage_ratio(element_size: Size, crop: CropRegion) -> float:
    """Return the fraction of the crop area covered by the element's size."""
    _check_size("element_size", element_size)
    _check("crop.width", crop.width)
    _check("crop.height", crop.height)
    crop_area = crop.width * crop.height
    if crop_area <= 0:
        raise ValueError(f"crop must have a positive area, got {crop}")
    return (element_size.width * element_size.height) / crop_area


def map_to_origin_frame(
    local_point: Point,
    crop: CropRegion,
    transform_history: Sequence[Point],
) -> Point:
    """Map a crop-local point back to the original image frame.

    The crop origin is added first, then every history offset oldest first.
    """
    _check_point("local_point", local_point)
    _check("crop.x", crop.x)
    _check("crop.y", crop.y)
    p = local_point + crop.origin
    for i, offset in enumerate(transform_history):
        _check_point(f"transform_history[{i}]", offset)
        p = p + offset
    return p


def apply_nudge(bbox: BBox, direction: str, distance: float) -> BBox:
    """Translate a box by `distance` along `direction`.

    Diagonals move both axes. Width and height are kept and the top-left corner
    is clamped at 0. `none` or an unknown direction returns the box unchanged.
    """
    _check_bbox("bbox", bbox)
    _check("distance", distance)
    vec = _NUDGE_VECTORS.get(direction)
    if vec is None:
        return bbox
    dx, dy = vec
    return BBox(
        x=max(0.0, bbox.x + dx * distance),
        y=max(0.0, bbox.y + dy * distance),
        width=bbox.width,
        height=bbox.height,
    )
