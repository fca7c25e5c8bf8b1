"""Alignment verification loop with fixed-step nudges."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from PIL import Image

from boundscout.detectors.prompts import alignment_prompt
from boundscout.detectors.vlm_litellm import SupportsOracle
from boundscout.parsing.alignment import parse_alignment_response
from boundscout.pipelines.audit import AuditLog
from boundscout.vision.geometry import apply_nudge
from boundscout.vision.types import (
    AlignmentAttempt,
    BBox,
    Budget,
    DetectedElement,
    Point,
    RefinementSession,
)
from boundscout.vision.vis import OverlayCache, render_focus_overlay

LOG = logging.getLogger(__name__)

OverlayRenderer = Callable[..., bytes]


@dataclass(frozen=True, slots=True, kw_only=True)
class AlignParams:
    """Retry loop bounds.

    Attributes:
        max_attempts: Verification rounds per element, hence oracle calls per element.
        step: Nudge distance in pixels.
    """

    max_attempts: int = 3
    step: float = 20.0


def verify_and_correct(
    img: Image.Image,
    element: DetectedElement,
    *,
    oracle: SupportsOracle,
    budget: Budget | None = None,
    params: AlignParams = AlignParams(),
    renderer: OverlayRenderer = render_focus_overlay,
    cache: OverlayCache | None = None,
    element_index: int = 1,
    audit: AuditLog | None = None,
) -> tuple[DetectedElement, RefinementSession]:
    """Ask the oracle whether the element's box lines up, nudging it until it does.

    Each round renders an overlay of the current box, asks the oracle and parses
    its verdict. The loop stops on an aligned verdict or after
    `params.max_attempts` rounds; the element keeps the last nudged box. An
    unparseable verdict is treated as aligned (`alignment_assumed`) so bad
    answers never cause endless corrections. A round that raises leaves the box
    in place and still counts as an attempt.

    Args:
        img: Image in the element's coordinate frame.
        element: Element to verify; updated in place.
        oracle: Vision oracle.
        budget: Run budget; each round counts one call and cancellation is
            checked before each round.
        params: Attempt and step bounds.
        renderer: `renderer(img, bbox, label, *, attempt, element_index) -> bytes`.
        cache: Overlay cache keyed by `(reference_name, refinement_level, attempt)`.
        element_index: 1-based index shown on the overlay.
        audit: Optional run audit log.

    Returns:
        The element and its attempt history.
    """
    name = element.reference_name
    session = RefinementSession(reference_name=name, max_attempts=params.max_attempts)

    for attempt in range(1, params.max_attempts + 1):
        if budget is not None and budget.cancelled:
            LOG.info("Alignment cancelled: element=%s attempt=%s", name, attempt)
            return element, session

        bbox = element.bounding_box
        key = (name, element.refinement_level, attempt)

        def _render(b: BBox = bbox, a: int = attempt) -> bytes:
            return renderer(img, b, name, attempt=a, element_index=element_index)

        try:
            overlay = cache.get_or_render(key, _render) if cache is not None else _render()
            if budget is not None:
                budget.record_call()
            if audit is not None:
                audit.add("api-call", f"Alignment check {name}", attempt=attempt)
            answer = oracle.ask(overlay, alignment_prompt(element, attempt))
            verdict = parse_alignment_response(answer)
        except Exception as e:
            LOG.exception("Alignment round failed: element=%s attempt=%s", name, attempt)
            error = f"{type(e).__name__}: {e}"
            session.attempts.append(
                AlignmentAttempt(
                    attempt=attempt,
                    bbox_before=bbox,
                    bbox_after=bbox,
                    overlay_key=key,
                    error=error,
                )
            )
            if audit is not None:
                audit.add("error", f"Alignment round failed for {name}", attempt=attempt, error=error)
            continue

        if audit is not None:
            audit.add(
                "api-response",
                f"Alignment verdict for {name}",
                attempt=attempt,
                aligned=verdict.aligned,
                direction=verdict.direction,
                parse_method=verdict.parse_method,
            )

        if verdict.aligned or not verdict.parsing_successful:
            session.attempts.append(
                AlignmentAttempt(
                    attempt=attempt,
                    bbox_before=bbox,
                    bbox_after=bbox,
                    verdict=verdict,
                    overlay_key=key,
                )
            )
            session.status = "aligned"
            element.alignment_status = "aligned"
            element.alignment_assumed = not verdict.parsing_successful
            LOG.info(
                "Alignment %s: aligned after %s attempt(s) method=%s assumed=%s",
                name,
                attempt,
                verdict.parse_method,
                element.alignment_assumed,
            )
            return element, session

        if verdict.wants_nudge:
            nudged = apply_nudge(bbox, verdict.direction, params.step)
            # `bbox` is clipped at the frame edge: move the center by the applied offset only.
            element.center = element.center + Point(x=nudged.x - bbox.x, y=nudged.y - bbox.y)
        new_bbox = element.bounding_box
        session.attempts.append(
            AlignmentAttempt(
                attempt=attempt,
                bbox_before=bbox,
                bbox_after=new_bbox,
                verdict=verdict,
                overlay_key=key,
            )
        )
        LOG.info(
            "Alignment %s attempt %s: misaligned direction=%s -> box (%.0f, %.0f)",
            name,
            attempt,
            verdict.direction,
            new_bbox.x,
            new_bbox.y,
        )

    session.status = "max_attempts_reached"
    element.alignment_status = "max_attempts_reached"
    LOG.info("Alignment %s: max attempts (%s) reached", name, params.max_attempts)
    return element, session


def align_elements(
    img: Image.Image,
    elements: Sequence[DetectedElement],
    *,
    oracle: SupportsOracle,
    budget: Budget | None = None,
    params: AlignParams = AlignParams(),
    renderer: OverlayRenderer = render_focus_overlay,
    cache: OverlayCache | None = None,
    audit: AuditLog | None = None,
) -> list[RefinementSession]:
    """Run `verify_and_correct` over elements, one after the other."""
    sessions: list[RefinementSession] = []
    for i, el in enumerate(elements, start=1):
        _, session = verify_and_correct(
            img,
            el,
            oracle=oracle,
            budget=budget,
            params=params,
            renderer=renderer,
            cache=cache,
            element_index=i,
            audit=audit,
        )
        sessions.append(session)
    return sessions
