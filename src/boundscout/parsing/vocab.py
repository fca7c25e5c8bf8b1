"""Vocabulary normalization for oracle answers (directions, quality, yes/no)."""

from __future__ import annotations

import re

from boundscout.vision.types import Direction, Quality

_WORD_RE = re.compile(r"[a-z]+")

_VERTICAL: dict[str, str] = {
    "up": "up",
    "upward": "up",
    "upwards": "up",
    "north": "up",
    "higher": "up",
    "down": "down",
    "downward": "down",
    "downwards": "down",
    "south": "down",
    "lower": "down",
}
_HORIZONTAL: dict[str, str] = {
    "left": "left",
    "leftward": "left",
    "leftwards": "left",
    "west": "left",
    "right": "right",
    "rightward": "right",
    "rightwards": "right",
    "east": "right",
}
_DIRECTION_ALIASES: dict[str, Direction] = {
    "northwest": "up-left",
    "northeast": "up-right",
    "southwest": "down-left",
    "southeast": "down-right",
    "upleft": "up-left",
    "upright": "up-right",
    "downleft": "down-left",
    "downright": "down-right",
    "none": "none",
    "no": "none",
    "nowhere": "none",
    "centered": "none",
    "n a": "none",
    "na": "none",
}

_QUALITY_ALIASES: dict[str, Quality] = {
    "excellent": "excellent",
    "perfect": "excellent",
    "great": "excellent",
    "good": "good",
    "fair": "good",
    "decent": "good",
    "acceptable": "good",
    "ok": "good",
    "okay": "good",
    "poor": "poor",
    "mediocre": "poor",
    "weak": "poor",
    "terrible": "terrible",
    "bad": "terrible",
    "awful": "terrible",
    "wrong": "terrible",
}

_YES = {"yes", "y", "true", "aligned", "aligns", "correct", "affirmative"}
_NO = {"no", "n", "false", "not", "misaligned", "incorrect", "negative"}


def _norm(s: str) -> str:
    cleaned = s.strip().lower().replace("_", " ").replace("/", " ").replace(",", " ")
    return " ".join(cleaned.split())


def _words(s: str) -> list[str]:
    return _WORD_RE.findall(_norm(s))


def combine_directions(vertical: str | None, horizontal: str | None) -> Direction:
    """Combine an optional vertical and horizontal move into one direction."""
    if vertical and horizontal:
        return f"{vertical}-{horizontal}"  # type: ignore[return-value]
    if vertical:
        return vertical  # type: ignore[return-value]
    if horizontal:
        return horizontal  # type: ignore[return-value]
    return "none"


def normalize_direction(raw: str | None) -> Direction | None:
    """Map a free-form direction phrase to a `Direction`.

    Policy (deterministic):
      0) Exact alias match on the whole phrase (e.g. "northwest", "n/a").
      1) First vertical and first horizontal word, combined into a diagonal
         when both are present ("down and to the left" -> "down-left").
      2) Alias match on single words ("none", "centered").
      3) Otherwise None (no direction information).
    """
    if raw is None:
        return None
    phrase = _norm(raw)
    if not phrase:
        return None
    compact = phrase.replace("-", "").replace(" ", "")
    if compact in _DIRECTION_ALIASES:
        return _DIRECTION_ALIASES[compact]
    if phrase in _DIRECTION_ALIASES:
        return _DIRECTION_ALIASES[phrase]

    words = _words(phrase)
    vertical = next((_VERTICAL[w] for w in words if w in _VERTICAL), None)
    horizontal = next((_HORIZONTAL[w] for w in words if w in _HORIZONTAL), None)
    if vertical or horizontal:
        return combine_directions(vertical, horizontal)

    for w in words:
        if w in _DIRECTION_ALIASES:
            return _DIRECTION_ALIASES[w]
    return None


def normalize_quality(raw: str | None) -> Quality:
    """Map a quality word to a `Quality`, defaulting to "unknown"."""
    if raw is None:
        return "unknown"
    for w in _words(raw):
        if w in _QUALITY_ALIASES:
            return _QUALITY_ALIASES[w]
    return "unknown"


def parse_yes_no(raw: str | None) -> bool | None:
    """Read a yes/no style answer; the first decisive word wins."""
    if raw is None:
        return None
    for w in _words(raw):
        if w in _YES:
            return True
        if w in _NO:
            return False
    return None


def parse_int(raw: str | None) -> int | None:
    """Return the first integer found in `raw`, if any."""
    if raw is None:
        return None
    m = re.search(r"-?\d+", raw)
    return int(m.group(0)) if m else None
