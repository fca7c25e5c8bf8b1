"""Cascading extraction of alignment verdicts from free-form oracle answers.

The oracle is asked for an `<alignment_check>` XML block but regularly drifts
from it: tags get renamed, the container disappears, or the answer is plain
prose. Each strategy below is a pure `text -> AlignmentVerdict | None` function;
`parse_alignment_response` tries them in `STRATEGIES` order and the first one
that recovers the core aligned/not-aligned answer wins.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable

from boundscout.parsing.vocab import (
    combine_directions,
    normalize_direction,
    normalize_quality,
    parse_int,
    parse_yes_no,
)
from boundscout.vision.types import AlignmentVerdict, ParseMethod

LOG = logging.getLogger(__name__)

Strategy = Callable[[str], AlignmentVerdict | None]

DEFAULT_CONFIDENCE = 50
REFUSAL_CONFIDENCE = 30
UNPARSED_CONFIDENCE = 20

REFUSAL_PHRASES: tuple[str, ...] = (
    "I cannot analyze",
    "I'm unable to",
    "provide specific details",
    "based on your description",
    "I can't see the specific",
    "without being able to see",
    "I don't have the ability",
)

FIELDS: tuple[str, ...] = (
    "button_name",
    "box_aligns_with_button",
    "box_overlaps_button",
    "alignment_quality",
    "needs_adjustment",
    "adjustment_direction",
    "suggested_shift",
    "confidence",
    "notes",
)

# Alternate tag names accepted per field by the flexible strategy, most specific first.
_FLEXIBLE_TAGS: dict[str, tuple[str, ...]] = {
    "button_name": (r"button[_\s]*name", r"name"),
    "box_aligns_with_button": (
        r"box[_\s]*aligns[_\s]*with[_\s]*button",
        r"aligns",
        r"aligned",
        r"alignment",
    ),
    "box_overlaps_button": (r"box[_\s]*overlaps[_\s]*button", r"overlaps", r"overlapping"),
    "alignment_quality": (r"alignment[_\s]*quality", r"quality"),
    "needs_adjustment": (
        r"needs[_\s]*adjustment",
        r"adjustment[_\s]*needed",
        r"needs[_\s]*correction",
    ),
    "adjustment_direction": (
        r"adjustment[_\s]*direction",
        r"move[_\s]*direction",
        r"compass[_\s]*direction",
        r"direction",
    ),
    "suggested_shift": (r"suggested[_\s]*shift", r"shift"),
    "confidence": (r"confidence[_\s]*level", r"confidence"),
    "notes": (r"notes", r"comment", r"description"),
}

_FLEXIBLE_CONTAINERS: tuple[re.Pattern[str], ...] = (
    re.compile(r"<\s*alignment_check\s*>(.*?)<\s*/\s*alignment_check\s*>", re.I | re.S),
    re.compile(r"<\s*alignment[^>]*>(.*?)<\s*/\s*alignment[^>]*>", re.I | re.S),
    re.compile(r"<\s*systematic_analysis[^>]*>(.*?)<\s*/\s*systematic_analysis\s*>", re.I | re.S),
    re.compile(r"<\s*analysis[^>]*>(.*?)<\s*/\s*analysis\s*>", re.I | re.S),
)

_STRICT_CONTAINER = re.compile(r"<alignment_check>(.*?)</alignment_check>", re.S)

_YN = r"(yes|no|true|false)\b"
_DIRECTION_WORDS = r"(?:up|down|left|right|north|south|east|west)"

# (pattern, constant): when `constant` is None the first group is the value.
_LOOSE_PATTERNS: dict[str, tuple[tuple[re.Pattern[str], str | None], ...]] = {
    "button_name": (
        (re.compile(r"button[_\s]*name\s*[:=]\s*[\"']?([^\"'\n\r<>]+)", re.I), None),
        (re.compile(r"analy[sz]ing\s*[:=]\s*[\"']?([^\"'\n\r<>]+)", re.I), None),
    ),
    "box_aligns_with_button": (
        (re.compile(r"box[_\s]*aligns[^:\n]*[:=]\s*" + _YN, re.I), None),
        (re.compile(r"\baligns?\b[^:\n]*[:=]\s*" + _YN, re.I), None),
        (re.compile(r"\baligned\s*[:=]\s*" + _YN, re.I), None),
        (
            re.compile(
                r"bounding box[^.\n]*?(?:aligns?|lines? up|matches)[^.\n]*?\b"
                + _YN
                + r"(?!\s+(?:adjustment|change|correction|move|shift))",
                re.I,
            ),
            None,
        ),
        (
            re.compile(
                r"\bbox\b[^.\n]*?\b(?:does not|doesn't|do not|don't|is not|isn't)\s+"
                r"(?:properly\s+|correctly\s+)?(?:align|line up|match|cover)",
                re.I,
            ),
            "no",
        ),
        (
            re.compile(r"\bbox\b[^.\n]*?\b(?:aligns|lines up|matches|covers)\b", re.I),
            "yes",
        ),
    ),
    "box_overlaps_button": (
        (re.compile(r"overlap\w*[^:\n]*[:=]\s*" + _YN, re.I), None),
    ),
    "alignment_quality": (
        (re.compile(r"alignment[_\s]*quality\s*[:=]\s*([a-z]+)", re.I), None),
        (re.compile(r"\bquality\s*[:=]\s*([a-z]+)", re.I), None),
        (re.compile(r"\b(excellent|good|poor|terrible)\b", re.I), None),
    ),
    "needs_adjustment": (
        (re.compile(r"needs[_\s]*adjustment\s*[:=]\s*" + _YN, re.I), None),
        (re.compile(r"adjustment[_\s]*needed\s*[:=]\s*" + _YN, re.I), None),
    ),
    "adjustment_direction": (
        (re.compile(r"adjustment[_\s]*direction\s*[:=]\s*([a-z][a-z\- ]*)", re.I), None),
        (re.compile(r"\bdirection\s*[:=]\s*([a-z][a-z\- ]*)", re.I), None),
        (
            re.compile(
                r"\b(?:move|shift)\w*\s+(?:\w+\s+){0,3}?(?:to\s+the\s+)?("
                + _DIRECTION_WORDS
                + r"(?:[\s\-]+(?:and\s+)?(?:to\s+the\s+)?"
                + _DIRECTION_WORDS
                + r")?)",
                re.I,
            ),
            None,
        ),
    ),
    "suggested_shift": (
        (re.compile(r"suggested[_\s]*shift\s*[:=]\s*([^<>\n\r]+)", re.I), None),
    ),
    "confidence": (
        (re.compile(r"confidence[^:\d\n]*[:=]?\s*(\d{1,3})", re.I), None),
        (re.compile(r"(\d{1,3})\s*%?\s*confiden", re.I), None),
    ),
}

_NEGATIVE_RE = re.compile(
    r"does not align|doesn't align|do not align|not aligned|not properly aligned|misalign"
    r"|\boff\b|needs to (?:be )?move|should be moved|should move|needs adjustment",
    re.I,
)
_POSITIVE_RE = re.compile(
    r"\baligns\b|\baligned\b|\blines up\b|\blined up\b|\bmatches\b|correctly positioned"
    r"|well positioned|properly positioned",
    re.I,
)
_NO_OVERLAP_RE = re.compile(r"does not overlap|doesn't overlap|no overlap|completely off", re.I)
_OVERLAP_RE = re.compile(r"\boverlap|partially covers|partially aligned", re.I)
_LINE_UP_RE = re.compile(r"\blines? up\b|\blined up\b", re.I)
# Text following a movement verb, up to the end of the clause.
_MOVE_CLAUSE_RE = re.compile(
    r"\b(?:move[ds]?|moving|shift(?:ed|ing|s)?|nudge[ds]?|slide|push|should go|go)\b([^.;\n]*)",
    re.I,
)
_VERTICAL_RE = re.compile(r"\b(up|upwards?|north|down|downwards?|south)\b", re.I)
_HORIZONTAL_RE = re.compile(r"\b(left|leftwards?|west|right|rightwards?|east)\b", re.I)
_PATTERN_CONFIDENCE_RE = re.compile(r"(\d{1,3})\s*%?\s*(?:confident|confidence|sure|certain)", re.I)


def is_generic_response(text: str) -> bool:
    """Return True if the answer is a refusal or generic advice instead of an analysis."""
    lowered = text.lower()
    return any(p.lower() in lowered for p in REFUSAL_PHRASES)


def _clamp_confidence(value: int | None, default: int = DEFAULT_CONFIDENCE) -> int:
    if value is None:
        return default
    return max(0, min(100, value))


def _verdict_from_fields(
    fields: dict[str, str],
    method: ParseMethod,
    raw: str,
) -> AlignmentVerdict | None:
    """Build a verdict from extracted string fields, or None without the core answer."""
    aligned = parse_yes_no(fields.get("box_aligns_with_button"))
    needs = parse_yes_no(fields.get("needs_adjustment"))
    if aligned is None:
        if needs is None:
            return None
        aligned = not needs
    if needs is None:
        needs = not aligned

    direction = normalize_direction(fields.get("adjustment_direction"))
    if direction is None or direction == "none":
        direction = normalize_direction(fields.get("suggested_shift")) or "none"
    if aligned:
        direction = "none"

    overlapping = parse_yes_no(fields.get("box_overlaps_button"))
    return AlignmentVerdict(
        aligned=aligned,
        overlapping=aligned if overlapping is None else overlapping,
        direction=direction,
        quality=normalize_quality(fields.get("alignment_quality")),
        confidence=_clamp_confidence(parse_int(fields.get("confidence"))),
        parse_method=method,
        parsing_successful=True,
        needs_adjustment=needs,
        suggested_shift=fields.get("suggested_shift", "").strip(),
        notes=fields.get("notes", "").strip(),
        raw_response=raw,
    )


def _failed_verdict(raw: str, method: ParseMethod, confidence: int) -> AlignmentVerdict:
    return AlignmentVerdict(
        aligned=False,
        overlapping=False,
        direction="none",
        quality="unknown",
        confidence=confidence,
        parse_method=method,
        parsing_successful=False,
        raw_response=raw,
    )


def parse_refusal(text: str) -> AlignmentVerdict | None:
    """Short-circuit refusals and generic advice."""
    if is_generic_response(text):
        return _failed_verdict(text, "generic_advice", REFUSAL_CONFIDENCE)
    return None


def parse_strict_xml(text: str) -> AlignmentVerdict | None:
    """Exact `<alignment_check>` container with exact inner tag names."""
    m = _STRICT_CONTAINER.search(text)
    if not m:
        return None
    block = m.group(1)
    fields: dict[str, str] = {}
    for name in FIELDS:
        fm = re.search(rf"<{name}>(.*?)</{name}>", block, re.S)
        if fm and fm.group(1).strip():
            fields[name] = fm.group(1).strip()
    return _verdict_from_fields(fields, "strict_xml", text)


def _flexible_fields(block: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for name, tags in _FLEXIBLE_TAGS.items():
        for tag in tags:
            fm = re.search(rf"<\s*{tag}\s*>(.*?)<\s*/\s*{tag}\s*>", block, re.I | re.S)
            if fm and fm.group(1).strip():
                fields[name] = fm.group(1).strip()
                break
    return fields


def parse_flexible_xml(text: str) -> AlignmentVerdict | None:
    """Tagged answer with case/whitespace drift and alternate tag names.

    Known containers are tried first; a bare list of tags with no container is
    read from the whole text.
    """
    blocks = [m.group(1) for c in _FLEXIBLE_CONTAINERS for m in [c.search(text)] if m]
    blocks.append(text)
    for block in blocks:
        verdict = _verdict_from_fields(_flexible_fields(block), "flexible_xml", text)
        if verdict is not None:
            return verdict
    return None


def parse_loose_fields(text: str) -> AlignmentVerdict | None:
    """`key: value`-ish phrases anywhere in the text, no tags required."""
    fields: dict[str, str] = {}
    for name, patterns in _LOOSE_PATTERNS.items():
        for pattern, constant in patterns:
            m = pattern.search(text)
            if not m:
                continue
            value = constant if constant is not None else m.group(1)
            if value and value.strip():
                fields[name] = value.strip()
                break
    if "box_aligns_with_button" not in fields:
        return None
    if "adjustment_direction" not in fields:
        direction = _pattern_direction(text)
        if direction != "none":
            fields["adjustment_direction"] = direction
    return _verdict_from_fields(fields, "loose_fields", text)


def _compass(text: str) -> str:
    v = _VERTICAL_RE.search(text)
    h = _HORIZONTAL_RE.search(text)
    vertical = normalize_direction(v.group(1)) if v else None
    horizontal = normalize_direction(h.group(1)) if h else None
    return combine_directions(vertical, horizontal)


def _pattern_direction(text: str) -> str:
    """Direction words after a movement verb, else any compass words in the text.

    Element names such as "Sign Up" or "drop-down" only count when no
    movement clause names a direction.
    """
    scrubbed = _LINE_UP_RE.sub(" ", text)
    for m in _MOVE_CLAUSE_RE.finditer(scrubbed):
        direction = _compass(m.group(1))
        if direction != "none":
            return direction
    return _compass(scrubbed)


def parse_patterns(text: str) -> AlignmentVerdict | None:
    """Keyword heuristics over prose answers."""
    if _NEGATIVE_RE.search(text):
        aligned = False
    elif _POSITIVE_RE.search(text):
        aligned = True
    else:
        return None

    if _NO_OVERLAP_RE.search(text):
        overlapping = False
    elif _OVERLAP_RE.search(text):
        overlapping = True
    else:
        overlapping = aligned

    lowered = text.lower()
    quality = "unknown"
    for word in ("excellent", "good", "poor", "terrible", "bad"):
        if re.search(rf"\b{word}\b", lowered):
            quality = normalize_quality(word)
            break

    direction = "none" if aligned else _pattern_direction(text)
    cm = _PATTERN_CONFIDENCE_RE.search(text)
    return AlignmentVerdict(
        aligned=aligned,
        overlapping=overlapping,
        direction=direction,  # type: ignore[arg-type]
        quality=quality,  # type: ignore[arg-type]
        confidence=_clamp_confidence(int(cm.group(1)) if cm else None),
        parse_method="pattern_based",
        parsing_successful=True,
        needs_adjustment=not aligned,
        suggested_shift="" if direction == "none" else f"shift {direction}",
        raw_response=text,
    )


STRATEGIES: tuple[Strategy, ...] = (
    parse_refusal,
    parse_strict_xml,
    parse_flexible_xml,
    parse_loose_fields,
    parse_patterns,
)


def parse_alignment_response(text: str | None) -> AlignmentVerdict:
    """Extract an alignment verdict, never raising on malformed input.

    Returns:
        The first strategy's verdict, or an unparsed verdict with
        `parse_method == "none"` and `parsing_successful == False`.
    """
    raw = text or ""
    if raw.strip():
        for strategy in STRATEGIES:
            verdict = strategy(raw)
            if verdict is not None:
                LOG.debug(
                    "Alignment parsed: method=%s aligned=%s direction=%s confidence=%s",
                    verdict.parse_method,
                    verdict.aligned,
                    verdict.direction,
                    verdict.confidence,
                )
                return verdict
    LOG.warning("Alignment response could not be parsed (%s chars)", len(raw))
    return _failed_verdict(raw, "none", UNPARSED_CONFIDENCE)
