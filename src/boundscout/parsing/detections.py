"""Parsing of element detection answers (whole image and re-detection in crops)."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from boundscout.parsing.alignment import is_generic_response
from boundscout.parsing.vocab import parse_int
from boundscout.vision.types import BBox, DetectedElement, Point, Size

LOG = logging.getLogger(__name__)

DetectionMethod = Literal["xml", "json", "generic_advice", "none"]

DEFAULT_WIDTH = 50.0
DEFAULT_HEIGHT = 30.0
DEFAULT_CONFIDENCE = 50

_CONTAINER_RE = re.compile(r"<\s*detected_buttons\s*>(.*?)<\s*/\s*detected_buttons\s*>", re.I | re.S)
_BUTTON_RE = re.compile(r"<\s*button\s*>(.*?)<\s*/\s*button\s*>", re.I | re.S)
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


@dataclass(frozen=True)
class DetectionParse:
    """Elements recovered from one detection answer."""

    elements: list[DetectedElement] = field(default_factory=list)
    parse_method: DetectionMethod = "none"
    total_elements_found: int | None = None
    image_description: str = ""

    @property
    def found(self) -> bool:
        return bool(self.elements)


class JsonPoint(BaseModel):
    model_config = ConfigDict(extra="ignore")

    x: float
    y: float


class JsonSize(BaseModel):
    model_config = ConfigDict(extra="ignore")

    width: float = DEFAULT_WIDTH
    height: float = DEFAULT_HEIGHT


class JsonBBox(BaseModel):
    model_config = ConfigDict(extra="ignore")

    x: float
    y: float
    width: float = DEFAULT_WIDTH
    height: float = DEFAULT_HEIGHT


class JsonElement(BaseModel):
    """One element as exchanged in JSON, either from the oracle or on disk."""

    model_config = ConfigDict(extra="ignore")

    reference_name: str = "unknown_button"
    description: str = "No description"
    element_type: str = "button"
    confidence: int = DEFAULT_CONFIDENCE
    center_coordinates: JsonPoint | None = None
    estimated_size: JsonSize | None = None
    bounding_box: JsonBBox | None = None

    @field_validator("reference_name", "description", "element_type", mode="before")
    @classmethod
    def _coerce_text(cls, v: Any) -> Any:
        if v is None:
            return ""
        return str(v).strip()

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, v: Any) -> int:
        if isinstance(v, str):
            parsed = parse_int(v)
            v = DEFAULT_CONFIDENCE if parsed is None else parsed
        if isinstance(v, float) and 0.0 < v <= 1.0:
            v = v * 100
        try:
            return max(0, min(100, round(float(v))))
        except (TypeError, ValueError):
            return DEFAULT_CONFIDENCE

    def to_element(self) -> DetectedElement | None:
        """Return a `DetectedElement`, or None when no position was given."""
        if self.center_coordinates is not None:
            size = self.estimated_size or JsonSize()
            center = Point(x=self.center_coordinates.x, y=self.center_coordinates.y)
            sz = Size(width=size.width, height=size.height)
        elif self.bounding_box is not None:
            b = self.bounding_box
            bbox = BBox(x=b.x, y=b.y, width=b.width, height=b.height)
            center, sz = bbox.center, bbox.size
        else:
            return None
        # Sanitized here so geometry never sees oracle garbage.
        center = Point(x=max(0.0, center.x), y=max(0.0, center.y))
        if sz.width <= 0 or sz.height <= 0:
            sz = Size(width=DEFAULT_WIDTH, height=DEFAULT_HEIGHT)
        return DetectedElement(
            reference_name=self.reference_name or "unknown_button",
            center=center,
            size=sz,
            description=self.description or "No description",
            element_type=self.element_type or "button",
            confidence=self.confidence,
        )


class JsonDetections(BaseModel):
    model_config = ConfigDict(extra="ignore")

    detected_buttons: list[JsonElement] = Field(default_factory=list)
    total_buttons_found: int | None = None
    image_description: str = ""

    @field_validator("detected_buttons", mode="before")
    @classmethod
    def _coerce_buttons(cls, v: Any) -> list[Any]:
        if v is None:
            return []
        if isinstance(v, list):
            return v
        # Some models return a single object.
        if isinstance(v, dict):
            return [v]
        return []


def element_to_json(el: DetectedElement) -> JsonElement:
    return JsonElement(
        reference_name=el.reference_name,
        description=el.description,
        element_type=el.element_type,
        confidence=el.confidence,
        center_coordinates=JsonPoint(x=el.center.x, y=el.center.y),
        estimated_size=JsonSize(width=el.size.width, height=el.size.height),
    )


def _extract_json(text: str) -> str:
    """Extract a JSON object from a possibly noisy model response."""
    if not text:
        return text
    # Fenced block first: ```json ... ```
    fenced = re.search(r"```(?:json|application/json)?\s*(\{.*?\})\s*```", text, re.S | re.I)
    if fenced:
        return fenced.group(1)
    try:
        json.loads(text)
    except json.JSONDecodeError:
        pass
    else:
        return text
    i = text.find("{")
    j = text.rfind("}")
    if i != -1 and j > i:
        cand = text[i : j + 1]
        try:
            json.loads(cand)
        except json.JSONDecodeError:
            return text
        return cand
    return text


def _tag(block: str, name: str) -> str | None:
    m = re.search(rf"<\s*{name}\s*>(.*?)<\s*/\s*{name}\s*>", block, re.I | re.S)
    if not m:
        return None
    value = m.group(1).strip()
    return value or None


def _num(block: str, name: str, default: float) -> float:
    raw = _tag(block, name)
    if raw is None:
        return default
    m = _NUMBER_RE.search(raw)
    return float(m.group(0)) if m else default


def _element_from_xml(block: str) -> DetectedElement:
    width = _num(block, "bbox_width", DEFAULT_WIDTH)
    height = _num(block, "bbox_height", DEFAULT_HEIGHT)
    if width <= 0:
        width = DEFAULT_WIDTH
    if height <= 0:
        height = DEFAULT_HEIGHT
    bbox = BBox(
        x=max(0.0, _num(block, "bbox_x", 0.0)),
        y=max(0.0, _num(block, "bbox_y", 0.0)),
        width=width,
        height=height,
    )
    confidence = round(_num(block, "confidence", DEFAULT_CONFIDENCE))
    return DetectedElement(
        reference_name=_tag(block, "reference_name") or "unknown_button",
        center=bbox.center,
        size=bbox.size,
        description=_tag(block, "description") or "No description",
        element_type=_tag(block, "element_type") or "button",
        confidence=max(0, min(100, confidence)),
    )


def _parse_xml(text: str) -> DetectionParse | None:
    container = _CONTAINER_RE.search(text)
    scope = container.group(1) if container else text
    blocks = _BUTTON_RE.findall(scope)
    if not blocks and container is None:
        return None
    total = parse_int(_tag(text, "total_buttons_found"))
    return DetectionParse(
        elements=[_element_from_xml(b) for b in blocks],
        parse_method="xml",
        total_elements_found=total if total is not None else len(blocks),
        image_description=_tag(text, "image_description") or "",
    )


def _parse_json(text: str) -> DetectionParse | None:
    try:
        parsed = JsonDetections.model_validate_json(_extract_json(text))
    except ValidationError:
        return None
    elements = [e for e in (b.to_element() for b in parsed.detected_buttons) if e is not None]
    return DetectionParse(
        elements=elements,
        parse_method="json",
        total_elements_found=parsed.total_buttons_found
        if parsed.total_buttons_found is not None
        else len(elements),
        image_description=parsed.image_description,
    )


def dedupe_names(elements: list[DetectedElement]) -> None:
    seen: dict[str, int] = {}
    for el in elements:
        n = seen.get(el.reference_name, 0) + 1
        seen[el.reference_name] = n
        if n > 1:
            el.reference_name = f"{el.reference_name}_{n}"


def parse_detections(text: str | None) -> DetectionParse:
    """Parse a detection answer into elements.

    The `<detected_buttons>` XML format is tried first, then a JSON object with
    a `detected_buttons` list. Refusals and unreadable answers give an empty
    parse rather than an error. Duplicate reference names get a numeric suffix.
    """
    raw = text or ""
    if not raw.strip():
        return DetectionParse()
    if is_generic_response(raw):
        LOG.warning("Detection answer is a refusal or generic advice")
        return DetectionParse(parse_method="generic_advice")

    result = _parse_xml(raw) or _parse_json(raw)
    if result is None:
        LOG.warning("Detection answer could not be parsed (%s chars)", len(raw))
        return DetectionParse()
    dedupe_names(result.elements)
    LOG.debug("Detection parsed: method=%s elements=%s", result.parse_method, len(result.elements))
    return result
