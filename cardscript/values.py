"""Value coercion shared by the evaluator, the executor and the scene model.

Every script value is a string. These helpers decide how a string reads as a
number, a boolean or a colour, and how results are written back as text.
"""

from __future__ import annotations

import math
import re
from typing import Any

_NUMBER_PREFIX_RE = re.compile(r"^\s*([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)")
_INT_PREFIX_RE = re.compile(r"^\s*([-+]?\d+)")
_RGB_SHORTHAND_RE = re.compile(r"^\d+,\s*\d+,\s*\d+$")
_FULL_NUMBER_RE = re.compile(r"^\s*[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?\s*$")

FALSY_WORDS = frozenset({"false", "0", "", "empty"})
LOGICAL_WORDS = frozenset({"true", "false", ""})


def parse_number(text: Any) -> float | None:
    """Read the leading number of `text`, or None when there is none.

    Trailing junk is ignored, so "12px" reads as 12.
    """
    if isinstance(text, bool):
        return None
    if isinstance(text, (int, float)):
        return float(text)
    m = _NUMBER_PREFIX_RE.match(str(text))
    if not m:
        return None
    return float(m.group(1))


def parse_int(text: Any) -> int | None:
    m = _INT_PREFIX_RE.match(str(text))
    return int(m.group(1)) if m else None


def is_number(text: str) -> bool:
    """True when the whole of `text` is a number ("12px" is not)."""
    return bool(_FULL_NUMBER_RE.match(text))


def reads_as_logical(text: str) -> bool:
    return text.strip().lower() in LOGICAL_WORDS or is_number(text)


def opens_quote(text: str, i: int) -> bool:
    """True if the quote character at text[i] starts a string literal.

    An apostrophe inside a word ("Bob's", "it's") is plain text.
    """
    ch = text[i]
    if ch == '"':
        return True
    if ch != "'":
        return False
    return i == 0 or not (text[i - 1].isalnum() or text[i - 1] == "_")


def format_number(value: float) -> str:
    """Render a number the way scripts see it: integral values without '.0'."""
    if math.isnan(value):
        return "0"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value == int(value) and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return format_number(float(value))
    return str(value)


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return to_text(value).strip().lower() not in FALSY_WORDS


def normalize_color(text: str) -> str:
    """Canonical form for colour comparison: rgb() without spaces, #rgb → #rrggbb."""
    if text.startswith("rgb("):
        return re.sub(r"\s+", "", text)
    if text.startswith("#") and len(text) == 4:
        return "#" + "".join(c * 2 for c in text[1:])
    return text


def expand_rgb_shorthand(text: str) -> str:
    """'255,0,0' → 'rgb(255,0,0)'; anything else is returned unchanged."""
    if _RGB_SHORTHAND_RE.match(text.strip()):
        return f"rgb({text.strip()})"
    return text
