"""Core data types for UI element localization."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Literal

Direction = Literal[
    "up",
    "down",
    "left",
    "right",
    "up-left",
    "up-right",
    "down-left",
    "down-right",
    "none",
]
Quality = Literal["excellent", "good", "poor", "terrible", "unknown"]
ParseMethod = Literal[
    "strict_xml",
    "flexible_xml",
    "loose_fields",
    "pattern_based",
    "generic_advice",
    "none",
]
AlignmentStatus = Literal["aligned", "max_attempts_reached"]

DIRECTIONS: tuple[Direction, ...] = (
    "up",
    "down",
    "left",
    "right",
    "up-left",
    "up-right",
    "down-left",
    "down-right",
    "none",
)
QUALITIES: tuple[Quality, ...] = ("excellent", "good", "poor", "terrible", "unknown")


@dataclass(frozen=True)
class Point:
    """A 2D point in pixels."""

    x: float
    y: float

    def __add__(self, other: Point) -> Point:
        return Point(x=self.x + other.x, y=self.y + other.y)


@dataclass(frozen=True)
class Size:
    """A width/height pair in pixels."""

    width: float
    height: float

    def area(self) -> float:
        """Return the area in pixels squared."""
        return self.width * self.height


@dataclass(frozen=True)
class BBox:
    """Axis-aligned box given by its top-left corner and size.

    Attributes:
        x, y: Top-left corner in the frame the box was observed in.
        width, height: Extent in pixels.
    """

    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> Point:
        return Point(x=self.x + self.width / 2, y=self.y + self.height / 2)

    @property
    def size(self) -> Size:
        return Size(width=self.width, height=self.height)

    def area(self) -> float:
        """Return the box area in pixels squared."""
        return max(0.0, self.width) * max(0.0, self.height)

    @classmethod
    def from_center(cls, center: Point, size: Size) -> BBox:
        """Build a box centered on `center`."""
        return cls(
            x=center.x - size.width / 2,
            y=center.y - size.height / 2,
            width=size.width,
            height=size.height,
        )


@dataclass(frozen=True)
class CropRegion:
    """Integer crop rectangle, expressed in the frame of the image it was cut from."""

    x: int
    y: int
    width: int
    height: int

    @property
    def origin(self) -> Point:
        return Point(x=self.x, y=self.y)

    @property
    def size(self) -> Size:
        return Size(width=self.width, height=self.height)

    def as_pil_box(self) -> tuple[int, int, int, int]:
        """Return `(left, upper, right, lower)` as expected by `Image.crop`."""
        return self.x, self.y, self.x + self.width, self.y + self.height


@dataclass
class DetectedElement:
    """A candidate UI element, annotated in place as it moves through the run.

    Attributes:
        reference_name: Label unique within one analysis run.
        center: Element center in the frame it was last observed in.
        size: Estimated element size.
        description: Free-text description from the oracle.
        element_type: Kind of control (button, link, tab, ...).
        confidence: Oracle confidence in [0, 100].
        refinement_level: Recursion depth at which the element was last updated.
        transform_history: Crop offsets accumulated so far, oldest first.
        coverage_ratio: Fraction of the last crop covered by the element, if refined.
    """

    reference_name: str
    center: Point
    size: Size
    description: str = ""
    element_type: str = "button"
    confidence: int = 50

    refinement_level: int = 0
    transform_history: tuple[Point, ...] = ()
    coverage_ratio: float | None = None

    refinement_successful: bool = False
    refinement_failed: bool = False
    slicing_error: bool = False
    alignment_status: AlignmentStatus | None = None
    alignment_assumed: bool = False

    @property
    def bounding_box(self) -> BBox:
        """Box around `center`, with the top-left corner clamped to the frame."""
        return BBox(
            x=max(0.0, self.center.x - self.size.width / 2),
            y=max(0.0, self.center.y - self.size.height / 2),
            width=self.size.width,
            height=self.size.height,
        )

    def move_to(self, bbox: BBox) -> None:
        """Update center and size from a bounding box."""
        self.center = bbox.center
        self.size = bbox.size

    def copy(self) -> DetectedElement:
        return replace(self)

    @property
    def status(self) -> str:
        """Short status string, most terminal flag first."""
        if self.alignment_status is not None:
            return self.alignment_status
        if self.slicing_error:
            return "slicing_error"
        if self.refinement_failed:
            return "refinement_failed"
        if self.refinement_successful:
            return "refinement_successful"
        return "detected"


@dataclass(frozen=True)
class AlignmentVerdict:
    """Oracle judgment for one element/overlay pair."""

    aligned: bool
    overlapping: bool
    direction: Direction = "none"
    quality: Quality = "unknown"
    confidence: int = 50
    parse_method: ParseMethod = "none"
    parsing_successful: bool = True
    needs_adjustment: bool = False
    suggested_shift: str = ""
    notes: str = ""
    raw_response: str = ""

    @property
    def wants_nudge(self) -> bool:
        """True when the verdict supports a correction move."""
        return self.parsing_successful and not self.aligned and self.direction != "none"


@dataclass(frozen=True)
class AlignmentAttempt:
    """One verification round of the alignment loop."""

    attempt: int
    bbox_before: BBox
    bbox_after: BBox
    verdict: AlignmentVerdict | None = None
    overlay_key: tuple[str, int, int] | None = None
    error: str | None = None


@dataclass
class RefinementSession:
    """Alignment history for one element."""

    reference_name: str
    max_attempts: int
    attempts: list[AlignmentAttempt] = field(default_factory=list)
    status: AlignmentStatus | None = None

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


@dataclass
class Budget:
    """Oracle call accounting shared by every component of one analysis run.

    Attributes:
        max_depth: Recursion depth at which refinement stops.
        max_api_calls: Hard cap on oracle calls across the whole run.
        api_call_count: Calls made so far; only ever increases until `reset`.
        cancelled: Set by `cancel` to stop the run at the next checkpoint.
    """

    max_depth: int = 2
    max_api_calls: int = 10
    api_call_count: int = 0
    cancelled: bool = False

    def depth_reached(self, depth: int) -> bool:
        return depth >= self.max_depth

    @property
    def exhausted(self) -> bool:
        """True when no further oracle call is allowed."""
        return self.cancelled or self.api_call_count >= self.max_api_calls

    def record_call(self) -> int:
        """Count one oracle call and return the new total."""
        self.api_call_count += 1
        return self.api_call_count

    def reset(self) -> None:
        self.api_call_count = 0
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True
