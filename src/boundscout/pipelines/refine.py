"""Recursive crop-and-refine localization.

Each candidate is re-located by the oracle inside a focused crop around its
current position. A match that covers enough of the crop is accepted; a loose
match at the shallowest depth triggers another, tighter round inside that crop.
All coordinates returned to the caller are in the frame of the image passed in
at depth 0.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, fields, replace
from pathlib import Path

from PIL import Image

from boundscout.detectors.prompts import contextual_detection_prompt
from boundscout.detectors.vlm_litellm import SupportsOracle
from boundscout.parsing.detections import parse_detections
from boundscout.pipelines.audit import AuditLog, SliceRecord
from boundscout.vision.geometry import (
    DEFAULT_CROP_MULTIPLIERS,
    coverage_ratio,
    focused_crop,
    map_to_origin_frame,
)
from boundscout.vision.image import crop_region, ensure_dir, image_size, img_to_png_bytes
from boundscout.vision.types import Budget, DetectedElement, Point, Size

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True, kw_only=True)
class RefineParams:
    """Acceptance rules for recursive refinement.

    Attributes:
        coverage_threshold: Minimum element/crop area ratio to accept a match
            below `accept_depth`.
        accept_depth: Depth from which any match is accepted regardless of coverage.
        crop_multipliers: Crop size as a fraction of the frame, per depth.
    """

    coverage_threshold: float = 0.30
    accept_depth: int = 1
    crop_multipliers: tuple[float, ...] = DEFAULT_CROP_MULTIPLIERS


def _stamp(
    elements: Sequence[DetectedElement],
    depth: int,
    history: tuple[Point, ...],
) -> list[DetectedElement]:
    for el in elements:
        el.refinement_level = depth
        el.transform_history = history
    return list(elements)


def _adopt(target: DetectedElement, source: DetectedElement) -> None:
    """Copy every field of `source` onto `target`, keeping `target`'s identity."""
    for f in fields(DetectedElement):
        setattr(target, f.name, getattr(source, f.name))


def refine_elements(
    img: Image.Image,
    candidates: Sequence[DetectedElement],
    frame_size: Size | None = None,
    *,
    oracle: SupportsOracle,
    budget: Budget,
    params: RefineParams = RefineParams(),
    transform_history: Sequence[Point] = (),
    depth: int = 0,
    audit: AuditLog | None = None,
    debug_dir: Path | None = None,
) -> list[DetectedElement]:
    """Refine candidate positions with depth- and budget-bounded recursion.

    Elements are processed sequentially and updated in place. A failure while
    refining one element flags it (`slicing_error`) and leaves its siblings
    unaffected.

    Args:
        img: Image whose frame the candidates are expressed in.
        candidates: Elements to refine.
        frame_size: Size of `img`'s frame; defaults to the image size.
        oracle: Vision oracle used for re-detection.
        budget: Shared call and depth budget; incremented before each oracle call.
        params: Acceptance rules.
        transform_history: Offsets of the ancestor crops, oldest first.
        depth: Current recursion depth.
        audit: Optional run audit log.
        debug_dir: If set, every crop is saved there.

    Returns:
        The candidates, annotated with their refinement outcome.
    """
    if not candidates:
        return []
    history = tuple(transform_history)
    if budget.depth_reached(depth) or budget.exhausted:
        LOG.info(
            "Refine stop at depth=%s: calls=%s/%s cancelled=%s",
            depth,
            budget.api_call_count,
            budget.max_api_calls,
            budget.cancelled,
        )
        return _stamp(candidates, depth, history)

    frame = frame_size if frame_size is not None else image_size(img)
    refined: list[DetectedElement] = []
    for el in candidates:
        try:
            _refine_one(
                img,
                el,
                frame,
                oracle=oracle,
                budget=budget,
                params=params,
                history=history,
                depth=depth,
                audit=audit,
                debug_dir=debug_dir,
            )
        except Exception as e:
            LOG.exception("Refinement failed: element=%s depth=%s", el.reference_name, depth)
            el.slicing_error = True
            _stamp([el], depth, history)
            if audit is not None:
                audit.add(
                    "error",
                    f"Slicing error for {el.reference_name}",
                    depth=depth,
                    error=f"{type(e).__name__}: {e}",
                )
        refined.append(el)
    return refined


def _refine_one(
    img: Image.Image,
    el: DetectedElement,
    frame: Size,
    *,
    oracle: SupportsOracle,
    budget: Budget,
    params: RefineParams,
    history: tuple[Point, ...],
    depth: int,
    audit: AuditLog | None,
    debug_dir: Path | None,
) -> None:
    crop = focused_crop(el.center, frame, depth, params.crop_multipliers)
    crop_img = crop_region(img, crop)

    slice_path: Path | None = None
    if debug_dir is not None:
        ensure_dir(debug_dir)
        slice_path = debug_dir / f"slice_d{depth}_{el.reference_name}_{crop.x}_{crop.y}.png"
        crop_img.save(slice_path)
    if audit is not None:
        audit.add_slice(
            SliceRecord(
                reference_name=el.reference_name,
                depth=depth,
                x=crop.x,
                y=crop.y,
                width=crop.width,
                height=crop.height,
                path=str(slice_path) if slice_path is not None else None,
            )
        )

    # Checkpoint before every oracle call: the cap may have been hit by a sibling.
    if budget.exhausted:
        LOG.info("Budget exhausted before refining %s at depth=%s", el.reference_name, depth)
        _stamp([el], depth, history)
        return

    calls = budget.record_call()
    if audit is not None:
        audit.add("api-call", f"Re-detect {el.reference_name}", depth=depth, call=calls)
    answer = oracle.ask(img_to_png_bytes(crop_img), contextual_detection_prompt(el))
    parsed = parse_detections(answer)
    if audit is not None:
        audit.add(
            "api-response",
            f"Re-detection for {el.reference_name}",
            depth=depth,
            parse_method=parsed.parse_method,
            found=len(parsed.elements),
        )

    if not parsed.elements:
        LOG.info("Refine depth=%s %s: not found in crop %s", depth, el.reference_name, crop)
        el.refinement_failed = True
        _stamp([el], depth, history)
        return

    found = parsed.elements[0]
    mapped = map_to_origin_frame(found.center, crop, history)
    ratio = coverage_ratio(found.size, crop)

    if ratio >= params.coverage_threshold or depth >= params.accept_depth:
        el.center = mapped
        el.size = found.size
        el.confidence = found.confidence
        el.refinement_level = depth + 1
        el.coverage_ratio = ratio
        el.refinement_successful = True
        el.refinement_failed = False
        el.transform_history = history
        LOG.info(
            "Refine depth=%s %s: accepted at (%.1f, %.1f) coverage=%.3f",
            depth,
            el.reference_name,
            mapped.x,
            mapped.y,
            ratio,
        )
        if audit is not None:
            audit.add("refine", f"Accepted {el.reference_name}", depth=depth, coverage=ratio)
        return

    LOG.info(
        "Refine depth=%s %s: coverage=%.3f < %.2f, recursing into crop %s",
        depth,
        el.reference_name,
        ratio,
        params.coverage_threshold,
        crop,
    )
    if audit is not None:
        audit.add("refine", f"Recursing on {el.reference_name}", depth=depth, coverage=ratio)

    # The child works on a crop-local copy; the history is extended by value.
    child = replace(
        el,
        center=found.center,
        size=found.size,
        confidence=found.confidence,
        coverage_ratio=ratio,
    )
    child_history = history + (crop.origin,)
    (result,) = refine_elements(
        crop_img,
        [child],
        crop.size,
        oracle=oracle,
        budget=budget,
        params=params,
        transform_history=child_history,
        depth=depth + 1,
        audit=audit,
        debug_dir=debug_dir,
    )
    if not result.refinement_successful:
        # Accepted matches come back in the origin frame; anything else is
        # still local to this crop and is lifted one frame up.
        result.center = map_to_origin_frame(result.center, crop, ())
    _adopt(el, result)
