from __future__ import annotations

import io
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from boundscout.vision.image import bytes_to_data_url, crop_region, img_to_jpeg_bytes
from boundscout.vision.types import AlignmentVerdict, BBox, CropRegion, DetectedElement, Point, Size
from boundscout.vision.vis import (
    OverlayCache,
    draw_elements,
    render_alignment_overlay,
    render_combined_overlay,
    render_focus_overlay,
)


def _decode(data: bytes) -> np.ndarray:
    return np.asarray(Image.open(io.BytesIO(data)).convert("RGB"))


def test_focus_overlay_dims_background_and_keeps_box_bright() -> None:
    img = Image.new("RGB", (400, 200), color=(200, 200, 200))
    data = render_focus_overlay(img, BBox(x=200, y=50, width=160, height=100), "save", attempt=2)
    arr = _decode(data)

    assert arr.shape == (200, 400, 3)
    # Outside the box: dimmed to 40%.
    assert (arr[180, 50] < 100).all()
    # Inside the box: original pixels under a light tint.
    assert (arr[75, 240] > 180).all()
    # Red border on the left edge.
    assert tuple(arr[100, 200]) == (255, 0, 0)


def test_combined_overlay_draws_each_element_in_its_color() -> None:
    img = Image.new("RGB", (300, 200), color=(255, 255, 255))
    elements = [
        DetectedElement(reference_name="save", center=Point(60, 50), size=Size(40, 20)),
        DetectedElement(reference_name="quit", center=Point(220, 150), size=Size(40, 20)),
    ]
    arr = _decode(render_combined_overlay(img, elements, cycle=3))

    assert tuple(arr[55, 40]) == (255, 0, 0)
    assert tuple(arr[155, 200]) == (0, 200, 0)


def test_alignment_overlay_colors_by_quality_and_draws_arrow() -> None:
    img = Image.new("RGB", (200, 200), color=(0, 0, 0))
    bbox = BBox(x=50, y=50, width=100, height=40)

    good = AlignmentVerdict(aligned=True, overlapping=True, quality="good", confidence=90)
    arr = _decode(render_alignment_overlay(img, bbox, good))
    assert tuple(arr[70, 50]) == (0, 170, 0)

    off = AlignmentVerdict(aligned=False, overlapping=False, direction="right", quality="poor")
    arr = _decode(render_alignment_overlay(img, bbox, off))
    assert tuple(arr[70, 50]) == (255, 136, 0)
    assert tuple(arr[70, 120]) == (255, 255, 0)


def test_draw_elements_writes_file(tmp_path: Path) -> None:
    img = Image.new("RGB", (120, 80))
    el = DetectedElement(reference_name="ok", center=Point(60, 40), size=Size(60, 60))
    el.refinement_successful = True
    out = tmp_path / "vis.png"

    draw_elements(img, [el], out)

    with Image.open(out) as saved:
        assert saved.size == (120, 80)
        assert saved.getpixel((60, 70)) == (60, 179, 113)


def test_overlay_cache_counts_hits_and_clears() -> None:
    cache = OverlayCache()
    renders: list[int] = []

    def render() -> bytes:
        renders.append(1)
        return b"png"

    key = ("save", 1, 1)
    assert cache.get_or_render(key, render) == b"png"
    assert cache.get_or_render(key, render) == b"png"
    assert len(renders) == 1
    assert key in cache
    assert cache.stats() == {"entries": 1, "bytes": 3, "hits": 1, "misses": 1}

    cache.put(("save", 1, 2), b"other")
    assert len(cache) == 2
    cache.clear()
    assert len(cache) == 0
    assert cache.get(key) is None


def test_crop_region_and_data_urls() -> None:
    img = Image.new("RGB", (50, 40))
    assert crop_region(img, CropRegion(10, 5, 20, 30)).size == (20, 30)
    assert bytes_to_data_url(img_to_jpeg_bytes(img)).startswith("data:image/jpeg;base64,")


@pytest.mark.parametrize(
    "region",
    [CropRegion(0, 0, 0, 10), CropRegion(40, 0, 20, 10), CropRegion(-1, 0, 5, 5)],
)
def test_crop_region_rejects_out_of_bounds(region: CropRegion) -> None:
    with pytest.raises(ValueError):
        crop_region(Image.new("RGB", (50, 40)), region)
