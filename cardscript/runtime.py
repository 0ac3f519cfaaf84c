"""Execution context, shared registers and the statement executor."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable

from cardscript.expr import evaluate
from cardscript.script import CommandNode, IfNode, Node, RepeatNode
from cardscript.values import is_truthy, parse_int, parse_number, to_text

if TYPE_CHECKING:
    from cardscript.engine import Engine
    from cardscript.scene import Entity, Scene

log = logging.getLogger(__name__)


# ── Registers ────────────────────────────────────────────────────

@dataclass(slots=True)
class Registers:
    """Process-wide script state: the `it` register and global variables."""
    it: str = ""
    globals: dict[str, str] = field(default_factory=dict)


# ── Target resolution ────────────────────────────────────────────

_KIND_ALIASES = {
    "button": "button", "btn": "button",
    "field": "field", "fld": "field",
    "image": "image", "audio": "audio", "embed": "embed", "emoji": "emoji",
    "obj": None, "object": None,
}

_OBJECT_TARGET_RE = re.compile(
    r"^(?:(card|cd|bg|background)\s+)?(button|btn|field|fld|image|audio|embed|emoji|obj|object)"
    r"\s+(?:\"(.*?)\"|'(.*?)'|(\S+))$",
    re.IGNORECASE,
)
_CONTAINER_TARGET_RE = re.compile(
    r"^(?:this\s+)?(card|cd|bg|background|stack)(?:\s+(?:\"(.*?)\"|'(.*?)'|(\S+)))?$",
    re.IGNORECASE,
)
_THIS_OBJECT_RE = re.compile(
    r"^this\s+(button|btn|field|fld|image|audio|embed|emoji|obj|object)$", re.IGNORECASE)


def _unquote(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        return text[1:-1]
    return text


# ── Execution context ────────────────────────────────────────────

class ExecContext:
    """State for one dispatch: locals, origin id and the engine's shared registers.

    Locals are fresh per dispatch; `it` and globals live on the engine and
    outlive it. Variable names are case-insensitive.
    """

    def __init__(self, engine: Engine, origin_id: str | None = None, event: str = "") -> None:
        self.engine = engine
        self.origin_id = origin_id
        self.event = event
        self.locals: dict[str, str] = {}
        self.declared_globals: set[str] = set()

    @property
    def scene(self) -> Scene:
        return self.engine.scene

    @property
    def registers(self) -> Registers:
        return self.engine.registers

    @property
    def it(self) -> str:
        return self.registers.it

    @it.setter
    def it(self, value: object) -> None:
        self.registers.it = to_text(value)

    # ── Variables ────────────────────────────────────────────────

    def declare_global(self, name: str) -> None:
        key = name.lower()
        self.declared_globals.add(key)
        self.registers.globals.setdefault(key, "")

    def lookup_variable(self, name: str) -> str | None:
        key = name.lower()
        if key in self.declared_globals:
            return self.registers.globals.get(key, "")
        if key in self.locals:
            return self.locals[key]
        return self.registers.globals.get(key)

    def assign(self, name: str, value: object) -> None:
        key = name.lower()
        text = to_text(value)
        if key in self.declared_globals or (
                key in self.registers.globals and key not in self.locals):
            self.registers.globals[key] = text
        else:
            self.locals[key] = text

    def evaluate(self, text: str) -> str:
        return evaluate(text, self)

    # ── Targets ──────────────────────────────────────────────────

    def resolve_target(self, text: str) -> Entity | None:
        """Resolve an object reference such as `me`, `card field "Notes"` or `this stack`."""
        spec = text.strip()
        scene = self.scene
        lowered = spec.lower()
        if lowered == "me" or _THIS_OBJECT_RE.match(spec):
            return scene.find_entity_by_id(self.origin_id)

        m = _CONTAINER_TARGET_RE.match(spec)
        if m:
            kind = m.group(1).lower()
            name = next((g for g in m.groups()[1:] if g is not None), None)
            if kind == "stack":
                return scene.current_stack()
            if kind in ("card", "cd"):
                if name is None:
                    return scene.current_card()
                return self._card_by_spec(name)
            if name is None:
                return scene.current_background()
            return scene.find_background(name)

        m = _OBJECT_TARGET_RE.match(spec)
        if m:
            layer = (m.group(1) or "").lower()
            kind = _KIND_ALIASES[m.group(2).lower()]
            name = next((g for g in m.groups()[2:] if g is not None), "")
            bare = m.group(5) is not None
            return self._object_by_name(name, kind, layer, bare)

        return scene.find_entity_by_name_or_id(_unquote(spec))

    def _card_by_spec(self, name: str) -> Entity:
        scene = self.scene
        number = parse_int(name) if name.isdigit() else None
        if number is not None and 1 <= number <= len(scene.cards):
            return scene.cards[number - 1]
        return scene.find_card(name) or scene.current_card()

    def _object_by_name(self, name: str, kind: str | None, layer: str, bare: bool) -> Entity | None:
        obj = self.find_object(name, kind, layer)
        if obj is None and bare:
            # `field x` where x is a variable holding the name
            value = self.lookup_variable(name)
            if value:
                obj = self.find_object(value, kind, layer)
        return obj

    def find_object(self, name: str, kind: str | None, layer: str) -> Entity | None:
        scene = self.scene
        if not layer:
            return scene.find_entity_by_name_or_id(name, kind)
        if layer in ("card", "cd"):
            objects = scene.current_card().objects
        else:
            bg = scene.current_background()
            objects = bg.objects if bg else []
        wanted = name.lower()
        for obj in objects:
            if kind is not None and obj.kind.value != kind:
                continue
            if obj.name.lower() == wanted or obj.id == name:
                return obj
        return None


# ── Statement executor ───────────────────────────────────────────

CommandRunner = Callable[[str, ExecContext], Awaitable[None]]


class StatementExecutor:
    """Walks parsed block nodes, handing leaf statements to the command runner."""

    def __init__(self, run_command: CommandRunner, repeat_limit: int = 9999) -> None:
        self._run_command = run_command
        self.repeat_limit = repeat_limit

    async def run(self, nodes: list[Node], ctx: ExecContext) -> None:
        for node in nodes:
            if isinstance(node, CommandNode):
                await self._run_command(node.text, ctx)
            elif isinstance(node, IfNode):
                await self._run_if(node, ctx)
            elif isinstance(node, RepeatNode):
                await self._run_repeat(node, ctx)

    async def _run_if(self, node: IfNode, ctx: ExecContext) -> None:
        if is_truthy(ctx.evaluate(node.condition)):
            await self.run(node.then_body, ctx)
        else:
            await self.run(node.else_body, ctx)

    async def _run_repeat(self, node: RepeatNode, ctx: ExecContext) -> None:
        if node.kind == "times":
            count = parse_number(ctx.evaluate(node.count)) or 0
            for _ in range(max(0, int(count))):
                await self.run(node.body, ctx)
        elif node.kind == "with":
            start = int(parse_number(ctx.evaluate(node.start)) or 0)
            end = int(parse_number(ctx.evaluate(node.end)) or 0)
            step = -1 if node.descending else 1
            for i in range(start, end + step, step):
                ctx.assign(node.var, str(i))
                await self.run(node.body, ctx)
        elif node.kind in ("while", "until", "forever"):
            await self._run_conditional(node, ctx)
        else:
            log.warning("Skipping unrecognized repeat form: %s", node.header)

    async def _run_conditional(self, node: RepeatNode, ctx: ExecContext) -> None:
        iterations = 0
        while True:
            if node.kind == "while" and not is_truthy(ctx.evaluate(node.condition)):
                return
            if node.kind == "until" and is_truthy(ctx.evaluate(node.condition)):
                return
            if iterations >= self.repeat_limit:
                log.warning("Repeat loop abandoned after %d iterations: %s",
                            self.repeat_limit, node.header)
                return
            iterations += 1
            await self.run(node.body, ctx)
