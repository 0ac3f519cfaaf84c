"""Console colour markup — {tag} → ANSI escape sequences.

Tags are named colours ({red}, {bold}, {reset}) or the CSS colour strings
stack objects carry, written as {fg:#336699} / {bg:rgb(10,20,30)}.
"""

from __future__ import annotations

import re

from cardscript.values import normalize_color

_ESC = "\033["
_RESET = f"{_ESC}0m"

_NAMED = {
    "black": "30", "red": "31", "green": "32", "yellow": "33",
    "blue": "34", "magenta": "35", "cyan": "36", "white": "37",
    "gray": "90", "bright_red": "91", "bright_green": "92", "bright_yellow": "93",
    "bold": "1", "dim": "2", "italic": "3", "underline": "4", "reverse": "7",
}

_CODE_MAP: dict[str, str] = {"reset": _RESET}
for name, code in _NAMED.items():
    _CODE_MAP[name] = f"{_ESC}{code}m"

_HEX_RE = re.compile(r"#([0-9a-fA-F]{6})")
_RGB_RE = re.compile(r"rgb\((\d{1,3}),(\d{1,3}),(\d{1,3})\)")
_TAG_RE = re.compile(r"\{((?:fg|bg):[^{}]+|\w+)\}")


def css_rgb(color: str) -> tuple[int, int, int] | None:
    """Parse '#abc', '#aabbcc' or 'rgb(r, g, b)' into a channel triple."""
    color = normalize_color(color.strip().lower())
    m = _HEX_RE.fullmatch(color)
    if m:
        h = m.group(1)
        return int(h[0:2], 16), int(h[2:4], 16), int(h[4:6], 16)
    m = _RGB_RE.fullmatch(color)
    if m:
        r, g, b = (int(c) for c in m.groups())
        if all(0 <= c <= 255 for c in (r, g, b)):
            return r, g, b
    return None


def _resolve_code(tag: str) -> str | None:
    code = _CODE_MAP.get(tag)
    if code is not None:
        return code
    if tag[:3] in ("fg:", "bg:"):
        rgb = css_rgb(tag[3:])
        if rgb is None:
            # Named CSS colours fall back to the closest basic colour, if any
            named = _CODE_MAP.get(tag[3:].strip().lower())
            if named and tag[:3] == "fg:":
                return named
            return ""
        layer = "38" if tag[:3] == "fg:" else "48"
        return f"{_ESC}{layer};2;{rgb[0]};{rgb[1]};{rgb[2]}m"
    return None


def colorize(text: str) -> str:
    """Convert {tag} markup to ANSI escape sequences; unknown tags are left as-is."""
    def _replace(m: re.Match) -> str:
        code = _resolve_code(m.group(1))
        return m.group(0) if code is None else code
    return _TAG_RE.sub(_replace, text)


def strip_colors(text: str) -> str:
    return _TAG_RE.sub(lambda m: "" if _resolve_code(m.group(1)) is not None else m.group(0), text)


def strip_ansi(text: str) -> str:
    return re.sub(r"\033\[[0-9;]*m", "", text)
