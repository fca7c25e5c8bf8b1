"""Orchestrator for a full localization run: detect → refine → align."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from time import perf_counter
from typing import Any

from PIL import Image
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from boundscout.detectors.prompts import detection_prompt
from boundscout.detectors.vlm_litellm import LiteLLMOracle, SupportsOracle
from boundscout.parsing.detections import (
    JsonDetections,
    dedupe_names,
    element_to_json,
    parse_detections,
)
from boundscout.pipelines.align import AlignParams, align_elements
from boundscout.pipelines.audit import AuditLog
from boundscout.pipelines.refine import RefineParams, refine_elements
from boundscout.vision.image import ensure_dir, image_size, img_to_png_bytes, read_image
from boundscout.vision.types import Budget, DetectedElement, RefinementSession
from boundscout.vision.vis import (
    OverlayCache,
    draw_elements,
    render_alignment_overlay,
    render_combined_overlay,
)

LOG = logging.getLogger(__name__)


@dataclass
class AnalysisConfig:
    """Configuration for one localization run."""

    image_path: Path
    outdir: Path | None = None

    vlm_model: str = "openai/gpt-4o"
    vlm_api: str = "chat"
    vlm_temperature: float = 0.1
    vlm_timeout_s: float = 60.0
    vlm_max_tokens: int = 2000

    max_depth: int = 2
    max_api_calls: int = 10
    coverage_threshold: float = 0.30
    accept_depth: int = 1

    refine: bool = True
    align: bool = False
    max_attempts: int = 3
    nudge_step: float = 20.0

    detections_json: Path | None = None
    save_debug: Path | None = None
    verbose: bool = False


@dataclass
class AnalysisResult:
    """Final state of a run.

    Attributes:
        elements: Elements in their final state, coordinates in the image frame.
        total_api_calls: Oracle calls made, including the initial detection.
        sessions: Alignment history per reference name (alignment runs only).
        audit: Event log of the run.
        error: Set when the run degraded before producing elements.
        method: How the initial elements were obtained.
    """

    image: Path
    image_w: int
    image_h: int
    elements: list[DetectedElement]
    total_api_calls: int
    sessions: dict[str, RefinementSession] = field(default_factory=dict)
    audit: AuditLog = field(default_factory=AuditLog)
    error: str | None = None
    method: str = "none"

    @property
    def aligned_count(self) -> int:
        return sum(1 for e in self.elements if e.alignment_status == "aligned")

    @property
    def max_attempts_reached_count(self) -> int:
        return sum(1 for e in self.elements if e.alignment_status == "max_attempts_reached")

    def summary(self) -> dict[str, Any]:
        return {
            "elements": len(self.elements),
            "total_api_calls": self.total_api_calls,
            "refined": sum(1 for e in self.elements if e.refinement_successful),
            "refinement_failed": sum(1 for e in self.elements if e.refinement_failed),
            "slicing_errors": sum(1 for e in self.elements if e.slicing_error),
            "aligned": self.aligned_count,
            "max_attempts_reached": self.max_attempts_reached_count,
            "error": self.error,
        }


class _PointJson(BaseModel):
    x: float
    y: float


class _AttemptJson(BaseModel):
    attempt: int
    bbox_before: dict[str, float]
    bbox_after: dict[str, float]
    aligned: bool | None = None
    direction: str | None = None
    quality: str | None = None
    confidence: int | None = None
    parse_method: str | None = None
    error: str | None = None


class _FinalElementJson(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reference_name: str
    description: str
    element_type: str
    confidence: int
    center: _PointJson
    bounding_box: dict[str, float]
    refinement_level: int
    transform_history: list[_PointJson] = Field(default_factory=list)
    coverage_ratio: float | None = None
    status: str
    refinement_successful: bool = False
    refinement_failed: bool = False
    slicing_error: bool = False
    alignment_status: str | None = None
    alignment_assumed: bool = False
    attempts: list[_AttemptJson] = Field(default_factory=list)


class _FinalJson(BaseModel):
    model_config = ConfigDict(extra="ignore")

    image: str
    image_w: int
    image_h: int
    method: str
    summary: dict[str, Any]
    elements: list[_FinalElementJson]


def _bbox_dict(b: Any) -> dict[str, float]:
    return {"x": float(b.x), "y": float(b.y), "width": float(b.width), "height": float(b.height)}


def _element_json(el: DetectedElement, session: RefinementSession | None) -> _FinalElementJson:
    attempts: list[_AttemptJson] = []
    for a in session.attempts if session is not None else []:
        v = a.verdict
        attempts.append(
            _AttemptJson(
                attempt=a.attempt,
                bbox_before=_bbox_dict(a.bbox_before),
                bbox_after=_bbox_dict(a.bbox_after),
                aligned=v.aligned if v else None,
                direction=v.direction if v else None,
                quality=v.quality if v else None,
                confidence=v.confidence if v else None,
                parse_method=v.parse_method if v else None,
                error=a.error,
            )
        )
    return _FinalElementJson(
        reference_name=el.reference_name,
        description=el.description,
        element_type=el.element_type,
        confidence=el.confidence,
        center=_PointJson(x=el.center.x, y=el.center.y),
        bounding_box=_bbox_dict(el.bounding_box),
        refinement_level=el.refinement_level,
        transform_history=[_PointJson(x=p.x, y=p.y) for p in el.transform_history],
        coverage_ratio=el.coverage_ratio,
        status=el.status,
        refinement_successful=el.refinement_successful,
        refinement_failed=el.refinement_failed,
        slicing_error=el.slicing_error,
        alignment_status=el.alignment_status,
        alignment_assumed=el.alignment_assumed,
        attempts=attempts,
    )


def _load_detections(path: Path) -> list[DetectedElement]:
    try:
        parsed = JsonDetections.model_validate_json(Path(path).read_text(encoding="utf-8"))
    except ValidationError as e:
        raise RuntimeError(f"Invalid detections JSON: {path}") from e
    elements = [el for el in (b.to_element() for b in parsed.detected_buttons) if el is not None]
    dedupe_names(elements)
    return elements


def _default_oracle(cfg: AnalysisConfig) -> SupportsOracle:
    return LiteLLMOracle(
        model=cfg.vlm_model,
        temperature=float(cfg.vlm_temperature),
        max_tokens=int(cfg.vlm_max_tokens),
        timeout_s=float(cfg.vlm_timeout_s),
        api="responses" if cfg.vlm_api == "responses" else "chat",
        verbose=bool(cfg.verbose),
    )


def run_analysis(
    cfg: AnalysisConfig,
    *,
    oracle: SupportsOracle | None = None,
    oracle_factory: Callable[[AnalysisConfig], SupportsOracle] = _default_oracle,
    budget: Budget | None = None,
) -> AnalysisResult:
    """Run detection, recursive refinement and optional alignment on one image.

    Oracle and parsing failures never escape: a failed initial detection gives
    a result with no elements and `error` set, later failures are recorded on
    the elements themselves. Configuration problems (unreadable image, invalid
    detections JSON) raise as usual.

    Args:
        cfg: Run configuration.
        oracle: Oracle to use; built with `oracle_factory` when omitted.
        oracle_factory: Builds the oracle from the configuration.
        budget: Budget to use, e.g. to cancel the run from elsewhere. It is
            reset and reconfigured from `cfg` before use.
    """
    if cfg.verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")

    img = read_image(cfg.image_path)
    w, h = img.size
    outdir = cfg.outdir
    if outdir is not None:
        ensure_dir(outdir)
    LOG.info("Analysis start: image=%s size=%sx%s outdir=%s", cfg.image_path, w, h, outdir)

    if budget is None:
        budget = Budget()
    budget.max_depth = int(cfg.max_depth)
    budget.max_api_calls = int(cfg.max_api_calls)
    budget.reset()
    audit = AuditLog()
    cache = OverlayCache()
    if oracle is None:
        oracle = oracle_factory(cfg)

    result = AnalysisResult(
        image=cfg.image_path,
        image_w=w,
        image_h=h,
        elements=[],
        total_api_calls=0,
        audit=audit,
    )

    # 1) Whole-image detection or load from JSON
    t0 = perf_counter()
    if cfg.detections_json:
        result.elements = _load_detections(cfg.detections_json)
        result.method = "json_file"
        LOG.info(
            "Step 1/3 detection: loaded from %s (%s elements)",
            cfg.detections_json,
            len(result.elements),
        )
    elif budget.exhausted:
        result.error = "API call budget exhausted before detection"
    else:
        try:
            budget.record_call()
            audit.add("api-call", "Whole-image detection")
            parsed = parse_detections(oracle.ask(img_to_png_bytes(img), detection_prompt()))
        except Exception as e:
            LOG.exception("Initial detection failed: image=%s", cfg.image_path)
            result.error = f"Detection failed: {type(e).__name__}: {e}"
            audit.add("error", "Initial detection failed", error=result.error)
        else:
            result.elements = parsed.elements
            result.method = parsed.parse_method
            audit.add(
                "api-response",
                "Whole-image detection",
                parse_method=parsed.parse_method,
                found=len(parsed.elements),
            )
            if not parsed.elements:
                result.error = f"No elements detected (parse_method={parsed.parse_method})"
        LOG.info(
            "Step 1/3 detection: model=%s elements=%s took=%.2fs",
            cfg.vlm_model,
            len(result.elements),
            perf_counter() - t0,
        )

    if outdir is not None:
        detections_out = JsonDetections(
            detected_buttons=[element_to_json(el) for el in result.elements],
            total_buttons_found=len(result.elements),
        )
        (outdir / "detections.json").write_text(
            detections_out.model_dump_json(indent=2), encoding="utf-8"
        )
        draw_elements(img, result.elements, outdir / "01_detections.png")

    # 2) Recursive refinement
    if cfg.refine and result.elements:
        t1 = perf_counter()
        refine_elements(
            img,
            result.elements,
            image_size(img),
            oracle=oracle,
            budget=budget,
            params=RefineParams(
                coverage_threshold=float(cfg.coverage_threshold),
                accept_depth=int(cfg.accept_depth),
            ),
            audit=audit,
            debug_dir=cfg.save_debug,
        )
        LOG.info(
            "Step 2/3 refine: refined=%s failed=%s errors=%s calls=%s took=%.2fs",
            sum(1 for e in result.elements if e.refinement_successful),
            sum(1 for e in result.elements if e.refinement_failed),
            sum(1 for e in result.elements if e.slicing_error),
            budget.api_call_count,
            perf_counter() - t1,
        )
        if outdir is not None:
            draw_elements(img, result.elements, outdir / "02_refined.png")
    else:
        LOG.info("Step 2/3 refine: skipped")

    # 3) Alignment verification
    if cfg.align and result.elements:
        t2 = perf_counter()
        sessions = align_elements(
            img,
            result.elements,
            oracle=oracle,
            budget=budget,
            params=AlignParams(max_attempts=int(cfg.max_attempts), step=float(cfg.nudge_step)),
            cache=cache,
            audit=audit,
        )
        result.sessions = {s.reference_name: s for s in sessions}
        LOG.info(
            "Step 3/3 align: aligned=%s max_attempts=%s calls=%s took=%.2fs",
            result.aligned_count,
            result.max_attempts_reached_count,
            budget.api_call_count,
            perf_counter() - t2,
        )
        if outdir is not None:
            draw_elements(img, result.elements, outdir / "03_aligned.png")
    else:
        LOG.info("Step 3/3 align: skipped")

    result.total_api_calls = budget.api_call_count

    if cfg.save_debug is not None:
        _save_debug_overlays(img, result, cache, cfg.save_debug)

    if outdir is not None:
        final_out = _FinalJson(
            image=str(cfg.image_path),
            image_w=int(w),
            image_h=int(h),
            method=result.method,
            summary=result.summary(),
            elements=[
                _element_json(el, result.sessions.get(el.reference_name)) for el in result.elements
            ],
        )
        (outdir / "final.json").write_text(final_out.model_dump_json(indent=2), encoding="utf-8")
        audit.save(outdir / "audit.json")

    LOG.info("Analysis done: %s", result.summary())
    return result


def _save_debug_overlays(
    img: Image.Image,
    result: AnalysisResult,
    cache: OverlayCache,
    debug_dir: Path,
) -> None:
    """Write the combined view, every cached focus overlay and final verdict overlays."""
    ensure_dir(debug_dir)
    (debug_dir / "combined.png").write_bytes(render_combined_overlay(img, result.elements))
    for el in result.elements:
        session = result.sessions.get(el.reference_name)
        if session is None:
            continue
        for a in session.attempts:
            if a.overlay_key is None:
                continue
            data = cache.get(a.overlay_key)
            if data is not None:
                (debug_dir / f"focus_{el.reference_name}_a{a.attempt}.png").write_bytes(data)
        last = next((a for a in reversed(session.attempts) if a.verdict is not None), None)
        if last is not None and last.verdict is not None:
            (debug_dir / f"verdict_{el.reference_name}.png").write_bytes(
                render_alignment_overlay(img, last.bbox_after, last.verdict)
            )
    LOG.info("Debug overlays saved to %s (cache=%s)", debug_dir, cache.stats())
