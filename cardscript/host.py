"""Host evaluator — scripts whose first line is the host marker run as Lua.

The Lua chunk sees three globals: `scene` (a HostContext), `event` and
`source`. All HostContext methods are synchronous (Lua is single-threaded
sync); navigation, dialogs and fetches are buffered and executed in order
after the chunk returns. A prompt reply or fetched body lands in `it`.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from lupa import LuaError, LuaRuntime

from cardscript.errors import HostScriptError
from cardscript.values import to_text

if TYPE_CHECKING:
    from cardscript.engine import Engine
    from cardscript.scene import Card, Stack, StackObject

log = logging.getLogger(__name__)
script_log = logging.getLogger("cardscript.script")


# ── HostContext — the `scene` object available to Lua ────────────

class HostContext:
    """Bindings exposed to host-mode scripts."""

    def __init__(self, engine: Engine, lua_runtime: LuaRuntime | None = None) -> None:
        self._engine = engine
        self._lua = lua_runtime
        self._deferred: list[tuple[str, tuple]] = []

    def _to_lua_table(self, items: list) -> Any:
        if self._lua is None:
            return items
        return self._lua.table_from(items)

    # ── Queries ──────────────────────────────────────────────────

    def current_card(self) -> Card:
        return self._engine.scene.current_card()

    def current_stack(self) -> Stack:
        return self._engine.scene.current_stack()

    def current_index(self) -> int:
        return self._engine.scene.current_index + 1

    def cards(self) -> Any:
        return self._to_lua_table(list(self._engine.scene.cards))

    def find_object(self, name_or_id: str) -> StackObject | None:
        return self._engine.scene.find_entity_by_name_or_id(str(name_or_id))

    def get_it(self) -> str:
        return self._engine.registers.it

    def set_it(self, value: Any) -> None:
        self._engine.registers.it = to_text(value)

    def log(self, *args: Any) -> None:
        script_log.info("%s", " ".join(to_text(a) for a in args))

    # ── Deferred actions ─────────────────────────────────────────

    def go(self, spec: Any) -> None:
        if isinstance(spec, float) and spec == int(spec):
            spec = int(spec)
        self._deferred.append(("go", (spec,)))

    def add_card(self, name: str | None = None) -> None:
        self._deferred.append(("add_card", (name,)))

    def delete_card(self) -> None:
        self._deferred.append(("delete_card", ()))

    def alert(self, message: Any) -> None:
        self._deferred.append(("alert", (to_text(message),)))

    def fetch(self, url: str) -> None:
        self._deferred.append(("fetch", (str(url),)))

    def prompt(self, message: Any) -> None:
        """Ask the user once the chunk returns; the reply lands in `it`."""
        self._deferred.append(("prompt", (to_text(message),)))

    async def execute_deferred(self) -> None:
        """Execute deferred actions after Lua completes."""
        engine = self._engine
        for action, args in self._deferred:
            if action == "go":
                await engine.go_to_card(args[0])
            elif action == "add_card":
                engine.scene.add_card(args[0])
                engine.notify_changed()
            elif action == "delete_card":
                if engine.scene.delete_current_card():
                    engine.notify_changed()
            elif action == "alert":
                await engine.presenter.alert(args[0])
            elif action == "prompt":
                engine.registers.it = await engine.presenter.prompt(args[0]) or ""
            elif action == "fetch":
                try:
                    engine.registers.it = await engine.fetch_text(args[0])
                except Exception as e:
                    log.warning("fetch %s failed: %s", args[0], e)
                    engine.registers.it = f"Error: {e}"
        self._deferred.clear()


# ── HostEvaluator ────────────────────────────────────────────────

class HostEvaluator:
    """Runs host-mode scripts in one shared Lua runtime."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._lua = LuaRuntime(unpack_returned_tuples=True)

    async def run(self, script: str, event: str, origin_id: str | None = None) -> None:
        ctx = HostContext(self.engine, lua_runtime=self._lua)
        g = self._lua.globals()
        g["scene"] = ctx
        g["event"] = event
        g["source"] = origin_id
        try:
            self._lua.execute(script)
        except LuaError as e:
            raise HostScriptError(event, str(e)) from e
        await ctx.execute_deferred()
        self.engine.notify_changed()
