from __future__ import annotations

import io
from pathlib import Path

import pytest
from PIL import Image

from boundscout.pipelines.audit import AuditLog
from boundscout.pipelines.refine import RefineParams, refine_elements
from boundscout.vision.types import Budget, DetectedElement, Point, Size


def _answer(name: str, x: float, y: float, w: float, h: float) -> str:
    return (
        "<detected_buttons><button>"
        f"<reference_name>{name}</reference_name><confidence>88</confidence>"
        f"<bbox_x>{x}</bbox_x><bbox_y>{y}</bbox_y>"
        f"<bbox_width>{w}</bbox_width><bbox_height>{h}</bbox_height>"
        "</button></detected_buttons>"
    )


class _ScriptedOracle:
    """Returns scripted answers in order, then `default` once exhausted."""

    def __init__(self, answers: list[str | Exception], default: str = "") -> None:
        self._answers = list(answers)
        self._default = default
        self.calls: list[tuple[tuple[int, int], str]] = []

    def ask(self, image_bytes: bytes, prompt: str) -> str:
        size = Image.open(io.BytesIO(image_bytes)).size
        self.calls.append((size, prompt))
        answer = self._answers.pop(0) if self._answers else self._default
        if isinstance(answer, Exception):
            raise answer
        return answer


def _element(name: str, x: float, y: float, w: float = 60, h: float = 40) -> DetectedElement:
    return DetectedElement(reference_name=name, center=Point(x, y), size=Size(w, h), confidence=70)


def test_two_level_refinement_maps_back_to_origin_frame(tmp_path: Path) -> None:
    img = Image.new("RGB", (800, 600), color=(255, 255, 255))
    el = _element("save", 400, 300)
    oracle = _ScriptedOracle(
        [
            # Depth 0, crop (240, 180, 320, 240): center (50, 40), coverage 0.031.
            _answer("save", 20, 20, 60, 40),
            # Depth 1, crop (0, 0, 192, 144) of the previous crop: center (100, 70).
            _answer("save", 70, 50, 60, 40),
        ]
    )
    budget = Budget()
    audit = AuditLog()

    out = refine_elements(
        img, [el], oracle=oracle, budget=budget, audit=audit, debug_dir=tmp_path
    )

    assert out == [el]
    assert el.center == Point(340, 250)
    assert el.size == Size(60, 40)
    assert el.refinement_level == 2
    assert el.refinement_successful
    assert not el.refinement_failed
    assert el.transform_history == (Point(240, 180),)
    assert el.coverage_ratio == pytest.approx(2400 / (192 * 144))
    assert el.confidence == 88

    assert [size for size, _ in oracle.calls] == [(320, 240), (192, 144)]
    assert 'looking for the element called "save"' in oracle.calls[0][1]
    assert budget.api_call_count == 2

    assert (tmp_path / "slice_d0_save_240_180.png").exists()
    assert (tmp_path / "slice_d1_save_0_0.png").exists()
    assert [(s.depth, s.x, s.y) for s in audit.slices] == [(0, 240, 180), (1, 0, 0)]
    assert len(audit.by_kind("api-call")) == 2


def test_low_coverage_at_depth_zero_recurses_into_tighter_crop() -> None:
    img = Image.new("RGB", (250, 250), color=(255, 255, 255))
    el = _element("tab", 125, 125, 50, 50)
    # 20x15 inside the 100x100 depth-0 crop is 3% coverage; depth 1 finds nothing.
    oracle = _ScriptedOracle([_answer("tab", 40, 42, 20, 15), "<detected_buttons></detected_buttons>"])

    refine_elements(img, [el], oracle=oracle, budget=Budget())

    assert [size for size, _ in oracle.calls] == [(100, 100), (60, 60)]
    assert el.refinement_failed
    assert not el.refinement_successful
    assert el.refinement_level == 1
    # The depth-0 match is kept, expressed in the original frame.
    assert el.center == Point(125, 124.5)
    assert el.size == Size(20, 15)


def test_sufficient_coverage_accepts_at_depth_zero() -> None:
    img = Image.new("RGB", (500, 500))
    el = _element("ok", 300, 300)
    # Crop (200, 200, 200, 200); 120x100 covers exactly the 0.30 threshold.
    oracle = _ScriptedOracle([_answer("ok", 40, 50, 120, 100)])
    budget = Budget()

    refine_elements(img, [el], oracle=oracle, budget=budget)

    assert len(oracle.calls) == 1
    assert el.refinement_successful
    assert el.refinement_level == 1
    assert el.center == Point(300, 300)
    assert el.coverage_ratio == pytest.approx(0.30)
    assert el.transform_history == ()


def test_coverage_threshold_is_configurable() -> None:
    img = Image.new("RGB", (500, 500))
    el = _element("ok", 300, 300)
    oracle = _ScriptedOracle([_answer("ok", 90, 90, 20, 20)])

    refine_elements(
        img, [el], oracle=oracle, budget=Budget(), params=RefineParams(coverage_threshold=0.0)
    )

    assert len(oracle.calls) == 1
    assert el.refinement_level == 1
    assert el.center == Point(300, 300)


def test_refinement_respects_call_budget_and_depth_bound() -> None:
    img = Image.new("RGB", (500, 500))
    elements = [_element(f"b{i}", 50 + i * 80, 250) for i in range(5)]
    # Always a tiny match so every element wants to recurse.
    oracle = _ScriptedOracle([], default=_answer("x", 0, 0, 10, 10))
    budget = Budget(max_depth=2, max_api_calls=3)

    out = refine_elements(img, elements, oracle=oracle, budget=budget)

    assert len(out) == 5
    assert budget.api_call_count == 3
    assert len(oracle.calls) == 3
    assert all(el.refinement_level <= budget.max_depth for el in out)
    assert out[0].refinement_successful
    assert out[0].refinement_level == 2
    # Out of budget before the second element's depth-1 call.
    assert out[1].refinement_level == 1
    assert not out[1].refinement_successful
    assert [el.refinement_level for el in out[2:]] == [0, 0, 0]


def test_empty_candidates_use_no_budget() -> None:
    oracle = _ScriptedOracle([])
    budget = Budget()
    assert refine_elements(Image.new("RGB", (10, 10)), [], oracle=oracle, budget=budget) == []
    assert budget.api_call_count == 0
    assert oracle.calls == []


def test_depth_limit_zero_and_cancel_skip_all_calls() -> None:
    img = Image.new("RGB", (200, 200))
    oracle = _ScriptedOracle([], default=_answer("x", 0, 0, 10, 10))

    el = _element("a", 100, 100)
    refine_elements(img, [el], oracle=oracle, budget=Budget(max_depth=0))
    assert el.refinement_level == 0
    assert not el.refinement_successful

    cancelled = Budget()
    cancelled.cancel()
    el2 = _element("b", 100, 100)
    refine_elements(img, [el2], oracle=oracle, budget=cancelled)
    assert el2.center == Point(100, 100)
    assert oracle.calls == []


def test_failure_on_one_element_does_not_affect_siblings() -> None:
    img = Image.new("RGB", (500, 500))
    first = _element("first", 100, 100)
    second = _element("second", 300, 300)
    oracle = _ScriptedOracle([RuntimeError("boom"), _answer("second", 40, 50, 120, 100)])
    budget = Budget()
    audit = AuditLog()

    refine_elements(img, [first, second], oracle=oracle, budget=budget, audit=audit)

    assert first.slicing_error
    assert first.status == "slicing_error"
    assert first.center == Point(100, 100)
    assert second.refinement_successful
    assert not second.slicing_error
    assert budget.api_call_count == 2
    assert len(audit.by_kind("error")) == 1


def test_not_found_marks_refinement_failed() -> None:
    img = Image.new("RGB", (300, 300))
    el = _element("ghost", 150, 150)
    oracle = _ScriptedOracle(["I looked carefully and there is nothing here."])

    refine_elements(img, [el], oracle=oracle, budget=Budget())

    assert el.refinement_failed
    assert el.status == "refinement_failed"
    assert el.center == Point(150, 150)
    assert el.refinement_level == 0
