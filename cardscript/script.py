"""Script text → statements → handler body → nested block nodes.

A script is split into trimmed, comment-free statement lines on every
dispatch (scripts change between dispatches, so nothing is cached). The
handler locator isolates one `on <name>` … `end <name>` span, and the block
parser turns that span into CommandNode / IfNode / RepeatNode trees so the
executor never re-scans lines.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Union

from cardscript.values import opens_quote

log = logging.getLogger(__name__)

COMMENT_MARKER = "--"

_IF_RE = re.compile(r"^if\s+(.+?)\s+then(?:\s+(.*))?$", re.IGNORECASE)
_IF_START_RE = re.compile(r"^if\s+", re.IGNORECASE)
_ELSE_RE = re.compile(r"^else\b\s*(.*)$", re.IGNORECASE)
_END_IF_RE = re.compile(r"^end\s+if\b", re.IGNORECASE)
_REPEAT_START_RE = re.compile(r"^repeat\b", re.IGNORECASE)
_END_REPEAT_RE = re.compile(r"^end\s+repeat\b", re.IGNORECASE)

_REPEAT_TIMES_RE = re.compile(r"^repeat\s+(?:for\s+)?(.+?)\s+times?$", re.IGNORECASE)
_REPEAT_WITH_RE = re.compile(
    r"^repeat\s+with\s+(\w+)\s*=\s*(.+?)\s+(down\s+)?to\s+(.+)$", re.IGNORECASE)
_REPEAT_COND_RE = re.compile(r"^repeat\s+(while|until)\s+(.+)$", re.IGNORECASE)
_REPEAT_FOREVER_RE = re.compile(r"^repeat(?:\s+forever)?$", re.IGNORECASE)
_REPEAT_COUNT_RE = re.compile(r"^repeat\s+(?:for\s+)?(\S+)$", re.IGNORECASE)


# ── Preprocessing ────────────────────────────────────────────────

def strip_comment(line: str) -> str:
    """Drop a trailing `--` comment, ignoring markers inside quoted strings."""
    quote = ""
    i = 0
    while i < len(line):
        ch = line[i]
        if quote:
            if ch == quote:
                quote = ""
        elif opens_quote(line, i):
            quote = ch
        elif line.startswith(COMMENT_MARKER, i):
            return line[:i]
        i += 1
    return line


def split_statements(script: str) -> list[str]:
    """Non-empty, comment-free, trimmed statement lines of `script`."""
    statements = []
    for raw in script.splitlines():
        line = strip_comment(raw).strip()
        if line:
            statements.append(line)
    return statements


def first_line(script: str) -> str:
    for raw in script.splitlines():
        if raw.strip():
            return raw.strip()
    return ""


def is_host_script(script: str, marker: str) -> bool:
    """True iff the first non-blank line is exactly the host-mode marker."""
    return first_line(script) == marker


# ── Handler locator ──────────────────────────────────────────────

def _framing_re(keyword: str, name: str) -> re.Pattern[str]:
    # Whole word: "on mouseUp" must not match "on mouseUpDown"
    return re.compile(rf"^{keyword}\s+{re.escape(name)}(?!\w)", re.IGNORECASE)


def find_handler(statements: list[str], name: str) -> tuple[int, int] | None:
    """Locate the `[start, end)` body span of the first `on <name>` handler."""
    on_re = _framing_re("on", name)
    start = next((i for i, line in enumerate(statements) if on_re.match(line)), None)
    if start is None:
        return None
    end_re = _framing_re("end", name)
    end = start + 1
    while end < len(statements) and not end_re.match(statements[end]):
        end += 1
    return start + 1, end


def handler_names(statements: list[str]) -> list[str]:
    names = []
    for line in statements:
        m = re.match(r"^on\s+(\w+)", line, re.IGNORECASE)
        if m:
            names.append(m.group(1))
    return names


# ── Block nodes ──────────────────────────────────────────────────

@dataclass(slots=True)
class CommandNode:
    text: str


@dataclass(slots=True)
class IfNode:
    condition: str
    then_body: list[Node] = field(default_factory=list)
    else_body: list[Node] = field(default_factory=list)


@dataclass(slots=True)
class RepeatNode:
    kind: str  # "times" | "with" | "while" | "until" | "forever" | "invalid"
    header: str
    body: list[Node] = field(default_factory=list)
    count: str = ""
    var: str = ""
    start: str = ""
    end: str = ""
    descending: bool = False
    condition: str = ""


Node = Union[CommandNode, IfNode, RepeatNode]


def parse_repeat_header(header: str) -> RepeatNode:
    m = _REPEAT_TIMES_RE.match(header)
    if m:
        return RepeatNode("times", header, count=m.group(1))
    m = _REPEAT_WITH_RE.match(header)
    if m:
        return RepeatNode("with", header, var=m.group(1), start=m.group(2),
                          descending=bool(m.group(3)), end=m.group(4))
    m = _REPEAT_COND_RE.match(header)
    if m:
        return RepeatNode(m.group(1).lower(), header, condition=m.group(2))
    if _REPEAT_FOREVER_RE.match(header):
        return RepeatNode("forever", header)
    m = _REPEAT_COUNT_RE.match(header)
    if m:
        return RepeatNode("times", header, count=m.group(1))
    log.warning("Malformed repeat: %s", header)
    return RepeatNode("invalid", header)


# ── Block parser ─────────────────────────────────────────────────

class BlockParser:
    """Structured parse of statement lines into nested nodes."""

    def __init__(self, lines: list[str]) -> None:
        self.lines = lines
        self.pos = 0

    def parse(self) -> list[Node]:
        nodes, _ = self._parse_body(())
        while self.pos < len(self.lines):
            # Stray closers at top level
            log.debug("Skipping stray line: %s", self.lines[self.pos])
            self.pos += 1
            more, _ = self._parse_body(())
            nodes.extend(more)
        return nodes

    def _peek(self) -> str | None:
        return self.lines[self.pos] if self.pos < len(self.lines) else None

    def _parse_body(self, stops: tuple[re.Pattern[str], ...]) -> tuple[list[Node], str | None]:
        """Parse until a line matching one of `stops`; that line is left unconsumed."""
        nodes: list[Node] = []
        while self.pos < len(self.lines):
            line = self.lines[self.pos]
            if any(p.match(line) for p in stops):
                return nodes, line
            if _IF_START_RE.match(line):
                self.pos += 1
                node, _ = self._parse_if(line)
                if node is not None:
                    nodes.append(node)
            elif _REPEAT_START_RE.match(line) and not _END_REPEAT_RE.match(line):
                self.pos += 1
                nodes.append(self._parse_repeat(line))
            elif _END_IF_RE.match(line) or _END_REPEAT_RE.match(line) or _ELSE_RE.match(line):
                if not stops:
                    return nodes, line
                log.debug("Skipping stray line: %s", line)
                self.pos += 1
            else:
                nodes.append(CommandNode(line))
                self.pos += 1
        return nodes, None

    def _parse_if(self, line: str) -> tuple[IfNode | None, bool]:
        """Parse an if construct; the flag tells whether an `end if` was consumed."""
        m = _IF_RE.match(line)
        if not m:
            log.warning("Malformed if (missing 'then'): %s", line)
            return None, False
        node = IfNode(m.group(1))
        inline = (m.group(2) or "").strip()

        if inline:
            node.then_body = [self._parse_single(inline)]
            nxt = self._peek()
            em = _ELSE_RE.match(nxt) if nxt is not None else None
            if not em:
                return node, False
            self.pos += 1
            return node, self._parse_else(node, em.group(1).strip(), block_form=False)

        node.then_body, stop = self._parse_body((_ELSE_RE, _END_IF_RE))
        if stop is None:
            return node, False
        self.pos += 1
        em = _ELSE_RE.match(stop)
        if em:
            self._parse_else(node, em.group(1).strip(), block_form=True)
        return node, True

    def _parse_else(self, node: IfNode, inline: str, *, block_form: bool) -> bool:
        if not inline:
            node.else_body, stop = self._parse_body((_END_IF_RE,))
            if stop is None:
                return False
            self.pos += 1
            return True
        if _IF_RE.match(inline):
            # "else if": the nested if may own the shared "end if"
            nested, closed = self._parse_if(inline)
            node.else_body = [nested] if nested else []
            if closed:
                return True
        else:
            node.else_body = [self._parse_single(inline)]
        if not block_form:
            return False
        rest, stop = self._parse_body((_END_IF_RE,))
        node.else_body.extend(rest)
        if stop is None:
            return False
        self.pos += 1
        return True

    def _parse_single(self, text: str) -> Node:
        m = _IF_RE.match(text)
        if m and (m.group(2) or "").strip():
            return IfNode(m.group(1), [self._parse_single(m.group(2).strip())])
        return CommandNode(text)

    def _parse_repeat(self, line: str) -> RepeatNode:
        node = parse_repeat_header(line)
        node.body, stop = self._parse_body((_END_REPEAT_RE,))
        if stop is not None:
            self.pos += 1
        return node


def parse_block(lines: list[str]) -> list[Node]:
    return BlockParser(lines).parse()
