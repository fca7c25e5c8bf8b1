from __future__ import annotations

import json

import pytest

from boundscout.parsing.alignment import STRATEGIES, parse_alignment_response, parse_strict_xml
from boundscout.parsing.detections import parse_detections
from boundscout.parsing.vocab import normalize_direction, normalize_quality, parse_yes_no
from boundscout.vision.types import Point, Size

STRICT = """
Here is my assessment.
<alignment_check>
<button_name>save_button</button_name>
<box_aligns_with_button>no</box_aligns_with_button>
<alignment_quality>poor</alignment_quality>
<needs_adjustment>yes</needs_adjustment>
<adjustment_direction>down-left</adjustment_direction>
<suggested_shift>shift down and to the left</suggested_shift>
<confidence>85</confidence>
<notes>The box sits above the button.</notes>
</alignment_check>
"""

LOOSE = """Box aligns with button: no
Alignment quality: poor
Adjustment direction: right
Confidence: 70
"""


def test_strict_block_uses_strict_strategy() -> None:
    v = parse_alignment_response(STRICT)
    assert v.parse_method == "strict_xml"
    assert v.parsing_successful
    assert v.aligned is False
    assert v.direction == "down-left"
    assert v.quality == "poor"
    assert v.confidence == 85
    assert v.needs_adjustment
    assert v.wants_nudge
    assert v.notes == "The box sits above the button."


def test_strict_strategy_reads_needs_adjustment_when_alignment_missing() -> None:
    v = parse_alignment_response(
        "<alignment_check><needs_adjustment>yes</needs_adjustment>"
        "<adjustment_direction>left</adjustment_direction></alignment_check>"
    )
    assert v.parse_method == "strict_xml"
    assert v.aligned is False
    assert v.direction == "left"


def test_flexible_tags_and_case() -> None:
    v = parse_alignment_response(
        "<Alignment_Check>\n  <aligns> YES </aligns>\n  <quality>Excellent</quality>\n"
        "  <confidence_level>92</confidence_level>\n</Alignment_Check>"
    )
    assert v.parse_method == "flexible_xml"
    assert v.aligned is True
    assert v.overlapping is True
    assert v.quality == "excellent"
    assert v.confidence == 92
    assert v.direction == "none"

    v2 = parse_alignment_response(
        "<ALIGNMENT_CHECK><box_aligns_with_button>no</box_aligns_with_button>"
        "<move_direction>north west</move_direction></ALIGNMENT_CHECK>"
    )
    assert v2.parse_method == "flexible_xml"
    assert v2.direction == "up-left"


def test_loose_prose_falls_through_to_loose_fields() -> None:
    assert parse_strict_xml(LOOSE) is None
    v = parse_alignment_response(LOOSE)
    assert v.parse_method == "loose_fields"
    assert v.aligned is False
    assert v.direction == "right"
    assert v.quality == "poor"
    assert v.confidence == 70


def test_free_prose_uses_patterns_and_combines_diagonal() -> None:
    text = (
        "The red box is misaligned. It should move a little up and to the left "
        "to cover the button. I'm 80% confident."
    )
    v = parse_alignment_response(text)
    assert v.parse_method == "pattern_based"
    assert v.aligned is False
    assert v.direction == "up-left"
    assert v.confidence == 80
    assert v.wants_nudge


def test_positive_prose_recovers_alignment() -> None:
    v = parse_alignment_response("Looks great, the box lines up with the Save button.")
    assert v.parse_method in {"loose_fields", "pattern_based"}
    assert v.aligned is True
    assert not v.wants_nudge


@pytest.mark.parametrize(
    ("text", "direction"),
    [
        ("The box is not aligned with the button. Move it to the left.", "left"),
        ("The box does not cover the button; shift it right.", "right"),
        ("The box doesn't match the button, move the box down a bit.", "down"),
    ],
)
def test_loose_prose_reads_direction_after_object(text: str, direction: str) -> None:
    v = parse_alignment_response(text)
    assert v.parse_method == "loose_fields"
    assert v.aligned is False
    assert v.direction == direction
    assert v.wants_nudge


def test_element_name_words_do_not_become_directions() -> None:
    v = parse_alignment_response(
        "The highlight on the Sign Up button is misaligned; it should shift right."
    )
    assert v.parse_method == "pattern_based"
    assert v.aligned is False
    assert v.direction == "right"


def test_no_adjustment_needed_reads_as_aligned() -> None:
    v = parse_alignment_response("The bounding box matches the button well, no adjustment needed.")
    assert v.parse_method == "loose_fields"
    assert v.aligned is True
    assert v.direction == "none"
    assert not v.wants_nudge


def test_refusal_short_circuits_even_with_tags() -> None:
    text = (
        "I'm unable to view the image in detail, but here is a template:\n"
        "<alignment_check><box_aligns_with_button>yes</box_aligns_with_button></alignment_check>"
    )
    v = parse_alignment_response(text)
    assert v.parse_method == "generic_advice"
    assert v.parsing_successful is False
    assert v.confidence == 30
    assert STRATEGIES[0](text) is not None


@pytest.mark.parametrize("text", ["", "   ", None, "Hello there, nice weather today."])
def test_unparseable_is_a_reported_outcome(text: str | None) -> None:
    v = parse_alignment_response(text)
    assert v.parse_method == "none"
    assert v.parsing_successful is False
    assert v.confidence == 20
    assert not v.wants_nudge


def test_vocab_normalization() -> None:
    assert normalize_direction("down and to the left") == "down-left"
    assert normalize_direction("South-East") == "down-right"
    assert normalize_direction("Up") == "up"
    assert normalize_direction("N/A") == "none"
    assert normalize_direction("somewhere") is None
    assert normalize_quality("Fairly good") == "good"
    assert normalize_quality("bad") == "terrible"
    assert normalize_quality("???") == "unknown"
    assert parse_yes_no("No, it does not") is False
    assert parse_yes_no("yes") is True
    assert parse_yes_no("maybe") is None


def _button(name: str, x: float, y: float, w: float | None = None, h: float | None = None) -> str:
    size = ""
    if w is not None:
        size += f"<bbox_width>{w}</bbox_width>"
    if h is not None:
        size += f"<bbox_height>{h}</bbox_height>"
    return (
        f"<button><reference_name>{name}</reference_name><description>{name} button</description>"
        f"<element_type>button</element_type><confidence>80</confidence>"
        f"<bbox_x>{x}</bbox_x><bbox_y>{y}</bbox_y>{size}</button>"
    )


def test_parse_detections_xml_with_defaults_and_unique_names() -> None:
    text = (
        "<analysis><image_description>Settings dialog</image_description>"
        "<total_buttons_found>3</total_buttons_found></analysis>"
        "<detected_buttons>"
        + _button("save", 20, 20, 60, 40)
        + _button("save", 100, 10)
        + _button("cancel", 5, 5, 10, 10)
        + "</detected_buttons>"
    )
    parsed = parse_detections(text)
    assert parsed.parse_method == "xml"
    assert parsed.total_elements_found == 3
    assert parsed.image_description == "Settings dialog"
    assert [e.reference_name for e in parsed.elements] == ["save", "save_2", "cancel"]

    first, second, _ = parsed.elements
    assert first.center == Point(50, 40)
    assert first.size == Size(60, 40)
    assert first.confidence == 80
    # Missing size falls back to 50x30.
    assert second.size == Size(50, 30)
    assert second.center == Point(125, 25)


def test_parse_detections_json_fallback() -> None:
    payload = {
        "detected_buttons": [
            {
                "reference_name": "ok",
                "center_coordinates": {"x": 10, "y": 20},
                "estimated_size": {"width": 30, "height": 10},
                "confidence": 0.9,
            },
            {"reference_name": "no_position"},
        ]
    }
    parsed = parse_detections(f"Sure!\n```json\n{json.dumps(payload)}\n```")
    assert parsed.parse_method == "json"
    assert len(parsed.elements) == 1
    el = parsed.elements[0]
    assert el.center == Point(10, 20)
    assert el.size == Size(30, 10)
    assert el.confidence == 90


def test_parse_detections_refusal_and_garbage_are_empty() -> None:
    refusal = parse_detections("Without being able to see the screen I can only guess.")
    assert refusal.parse_method == "generic_advice"
    assert refusal.elements == []

    garbage = parse_detections("no idea")
    assert garbage.parse_method == "none"
    assert not garbage.found

    empty = parse_detections("<detected_buttons></detected_buttons>")
    assert empty.parse_method == "xml"
    assert empty.elements == []
