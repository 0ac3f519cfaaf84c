"""Command executor — ordered verb table for leaf statements.

Each verb is a regex plus an async handler `(ctx, match)`. The table is tried
in registration order and the first matching pattern wins; a statement no
pattern accepts is logged and skipped.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Awaitable, Callable

from cardscript.scene import HasText, HasVisibility, StackObject, normalize_property, set_property
from cardscript.values import expand_rgb_shorthand, opens_quote, parse_number

if TYPE_CHECKING:
    from cardscript.runtime import ExecContext

log = logging.getLogger(__name__)
script_log = logging.getLogger("cardscript.script")

Handler = Callable[["ExecContext", "re.Match[str]"], Awaitable[None]]


# ── Helpers ──────────────────────────────────────────────────────

def split_outside_quotes(text: str, keyword: str) -> tuple[str, str] | None:
    """Split at the first whole-word `keyword` not inside quotes or parentheses."""
    pattern = re.compile(rf"\s+{re.escape(keyword)}\s+", re.IGNORECASE)
    quote = ""
    depth = 0
    i = 0
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == quote:
                quote = ""
        elif opens_quote(text, i):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(0, depth - 1)
        elif depth == 0 and ch.isspace():
            m = pattern.match(text, i)
            if m:
                return text[:i], text[m.end():]
        i += 1
    return None


def unquote(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        return text[1:-1]
    return text


def effect_name(text: str) -> str:
    return re.sub(r"\s+", "-", unquote(text).strip().lower())


# ── Registry ─────────────────────────────────────────────────────

class CommandTable:
    """Ordered verb registry; the first pattern that matches a statement wins."""

    def __init__(self) -> None:
        self._commands: list[tuple[str, re.Pattern[str], Handler]] = []

    def register_command(self, name: str, pattern: str, handler: Handler) -> None:
        self._commands.append((name, re.compile(pattern, re.IGNORECASE), handler))

    def names(self) -> list[str]:
        return [name for name, _, _ in self._commands]

    def recognizes(self, line: str) -> bool:
        return any(pattern.match(line) for _, pattern, _ in self._commands)

    async def execute(self, line: str, ctx: ExecContext) -> bool:
        """Run one statement. Returns False when no verb recognized it."""
        for name, pattern, handler in self._commands:
            m = pattern.match(line)
            if m:
                log.debug("%s: %s", name, line)
                await handler(ctx, m)
                return True
        log.warning("Unrecognized statement: %s", line)
        return False


# ── Navigation ───────────────────────────────────────────────────

async def do_go(ctx: ExecContext, m: re.Match[str]) -> None:
    spec = m.group(1).strip()
    spec = re.sub(r"^(?:card|cd)\s+", "", spec, flags=re.IGNORECASE)
    spec = re.sub(r"\s+(?:card|cd)$", "", spec, flags=re.IGNORECASE)
    spec = unquote(spec)
    target: int | str = int(spec) if spec.isdigit() else spec
    await ctx.engine.go_to_card(target)


# ── Containers ───────────────────────────────────────────────────

_FIELD_CONTAINER_RE = re.compile(
    r"^(?:(card|cd|bg|background)\s+)?(?:field|fld)\s+(.+)$", re.IGNORECASE)
_VARIABLE_RE = re.compile(r"^\w+$")


def _combine(old: str, value: str, mode: str) -> str:
    if mode == "before":
        return value + old
    if mode == "after":
        return old + value
    return value


async def do_put(ctx: ExecContext, m: re.Match[str]) -> None:
    rest = m.group(1)
    splits = []
    for mode in ("into", "before", "after"):
        parts = split_outside_quotes(rest, mode)
        if parts:
            splits.append((len(parts[0]), parts, mode))
    if not splits:
        ctx.it = ctx.evaluate(rest)
        return
    # The earliest keyword separates the value from the container
    _, (expr, container), mode = min(splits, key=lambda s: s[0])
    put_into(ctx, container.strip(), ctx.evaluate(expr), mode)


def put_into(ctx: ExecContext, container: str, value: str, mode: str) -> None:
    """Write `value` into a field, the `it` register or a variable."""
    if container.lower() == "it":
        ctx.it = _combine(ctx.it, value, mode)
        return
    fm = _FIELD_CONTAINER_RE.match(container)
    if fm:
        layer = (fm.group(1) or "").lower()
        name = unquote(fm.group(2))
        obj = ctx.find_object(name, "field", layer)
        if obj is None and fm.group(2).strip()[:1] not in ("\"", "'"):
            value_name = ctx.lookup_variable(name)
            if value_name:
                obj = ctx.find_object(value_name, "field", layer)
        if obj is None or not isinstance(obj, HasText):
            log.warning("put: could not find field %s", fm.group(2))
            return
        obj.content = _combine(obj.content or "", value, mode)
        ctx.engine.notify_changed()
        return
    if _VARIABLE_RE.match(container):
        old = ctx.lookup_variable(container) or ""
        ctx.assign(container, _combine(old, value, mode))
        return
    log.warning("put: unrecognized container %s", container)


async def do_get_url(ctx: ExecContext, m: re.Match[str]) -> None:
    url = ctx.evaluate(m.group(1))
    try:
        ctx.it = await ctx.engine.fetch_text(url)
    except Exception as e:
        log.warning("get url %s failed: %s", url, e)
        ctx.it = f"Error: {e}"


async def do_get(ctx: ExecContext, m: re.Match[str]) -> None:
    ctx.it = ctx.evaluate(m.group(1))


# ── Properties ───────────────────────────────────────────────────

# Properties that fall back to the card or stack when no target is given
_CARD_PROPERTIES = {"backgroundcolor": "background_color", "cardname": "name"}
_STACK_PROPERTIES = {"backdropcolor": "backdrop_color", "patterncolor": "pattern_color"}


async def do_set(ctx: ExecContext, m: re.Match[str]) -> None:
    parts = split_outside_quotes(m.group(1), "to")
    if parts is None:
        log.warning("set: missing 'to' in %s", m.group(0))
        return
    lhs, expr = parts
    target_parts = split_outside_quotes(lhs, "of")
    prop, target = (target_parts if target_parts else (lhs, None))
    value = expand_rgb_shorthand(ctx.evaluate(expr))

    if target is None:
        _set_scene_property(ctx, prop, value)
        return
    entity = ctx.resolve_target(target)
    if entity is None:
        log.warning("set: could not find target %s", target.strip())
        return
    if set_property(entity, prop, value):
        ctx.engine.notify_changed()
    else:
        log.warning("set: %s has no writable property %s", target.strip(), prop.strip())


def _set_scene_property(ctx: ExecContext, prop: str, value: str) -> None:
    key = normalize_property(prop)
    scene = ctx.scene
    if key in _CARD_PROPERTIES:
        setattr(scene.current_card(), _CARD_PROPERTIES[key], value)
    elif key in _STACK_PROPERTIES:
        setattr(scene.stack, _STACK_PROPERTIES[key], value)
    else:
        log.warning("set: no target for property %s", prop.strip())
        return
    ctx.engine.notify_changed()


async def do_show_hide(ctx: ExecContext, m: re.Match[str]) -> None:
    visible = m.group(1).lower() == "show"
    entity = ctx.resolve_target(m.group(2))
    if entity is None or not isinstance(entity, HasVisibility):
        log.warning("%s: could not find %s", m.group(1).lower(), m.group(2).strip())
        return
    entity.visible = visible
    ctx.engine.notify_changed()


# ── Dialogs ──────────────────────────────────────────────────────

async def do_answer(ctx: ExecContext, m: re.Match[str]) -> None:
    await ctx.engine.presenter.alert(ctx.evaluate(m.group(1)))


async def do_ask(ctx: ExecContext, m: re.Match[str]) -> None:
    reply = await ctx.engine.presenter.prompt(ctx.evaluate(m.group(1)))
    ctx.it = reply or ""


async def do_log(ctx: ExecContext, m: re.Match[str]) -> None:
    script_log.info("%s", ctx.evaluate(m.group(1)))


async def do_beep(ctx: ExecContext, m: re.Match[str]) -> None:
    ctx.engine.beep()


async def do_wait(ctx: ExecContext, m: re.Match[str]) -> None:
    amount = parse_number(ctx.evaluate(m.group(1))) or 0
    unit = (m.group(2) or "ticks").lower()
    if unit.startswith("s"):
        seconds = amount
    else:
        seconds = amount / ctx.engine.config["scripting"]["ticks_per_second"]
    await asyncio.sleep(max(0.0, seconds))


async def do_open_url(ctx: ExecContext, m: re.Match[str]) -> None:
    ctx.engine.presenter.open_url(ctx.evaluate(m.group(1)))


# ── Visual effects ───────────────────────────────────────────────

async def do_visual(ctx: ExecContext, m: re.Match[str]) -> None:
    ctx.scene.pending_transition = effect_name(m.group(1))


async def do_animate(ctx: ExecContext, m: re.Match[str]) -> None:
    parts = split_outside_quotes(m.group(1), "with")
    if parts is None:
        log.warning("animate: missing 'with' in %s", m.group(0))
        return
    target, effect = parts
    entity = ctx.resolve_target(target)
    if entity is None:
        log.warning("animate: could not find %s", target.strip())
        return
    ctx.scene.pending_animations[entity.id] = effect_name(effect)
    ctx.engine.notify_changed(save=False)


# ── Find, globals, assignment ────────────────────────────────────

async def do_find(ctx: ExecContext, m: re.Match[str]) -> None:
    parts = split_outside_quotes(m.group(1), "in field")
    term, field_spec = parts if parts else (m.group(1), None)
    await ctx.engine.find(ctx.evaluate(term), unquote(field_spec) if field_spec else None)


async def do_global(ctx: ExecContext, m: re.Match[str]) -> None:
    for name in re.split(r"[\s,]+", m.group(1).strip()):
        if name:
            ctx.declare_global(name)


async def do_assign(ctx: ExecContext, m: re.Match[str]) -> None:
    ctx.assign(m.group(1), ctx.evaluate(m.group(2)))


async def do_send(ctx: ExecContext, m: re.Match[str]) -> None:
    event = unquote(m.group(1))
    target = m.group(2)
    engine = ctx.engine
    if target is None:
        await engine.handle_object_event(event)
        return
    entity = ctx.resolve_target(target)
    if entity is None:
        log.warning("send: could not find %s", target.strip())
    elif isinstance(entity, StackObject):
        await engine.handle_object_event(event, entity.id)
    else:
        await engine.dispatch(event, entity.script, entity.id)


def build_command_table() -> CommandTable:
    table = CommandTable()
    # "<word> =" never starts a verb form; checked first so "log = 1" assigns
    table.register_command("assign", r"^([A-Za-z_]\w*)\s*=(?!=)\s*(.+)$", do_assign)
    table.register_command("go", r"^go(?:\s+to)?\s+(.+)$", do_go)
    table.register_command("put", r"^put\s+(.+)$", do_put)
    table.register_command("get url", r"^get\s+url\s+(.+)$", do_get_url)
    table.register_command("get", r"^get\s+(.+)$", do_get)
    table.register_command("set", r"^set\s+(.+)$", do_set)
    table.register_command("show/hide", r"^(show|hide)\s+(.+)$", do_show_hide)
    table.register_command("answer", r"^answer\s+(.+)$", do_answer)
    table.register_command("ask", r"^ask\s+(.+)$", do_ask)
    table.register_command("log", r"^log\s+(.+)$", do_log)
    table.register_command("beep", r"^beep$", do_beep)
    table.register_command(
        "wait", r"^wait\s+(?:for\s+)?(.+?)(?:\s+(seconds?|secs?|ticks?))?$", do_wait)
    table.register_command("open url", r"^open\s+url\s+(.+)$", do_open_url)
    table.register_command("visual", r"^visual(?:\s+effect)?\s+(.+)$", do_visual)
    table.register_command("animate", r"^animate\s+(.+)$", do_animate)
    table.register_command("find", r"^find\s+(.+)$", do_find)
    table.register_command("global", r"^global\s+(.+)$", do_global)
    table.register_command("send", r"^send\s+(\S+|\"[^\"]*\")(?:\s+to\s+(.+))?$", do_send)
    return table
