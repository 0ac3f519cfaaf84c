"""cardscript Engine — dispatcher, event hierarchy, idle loop, message box."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx

from cardscript.commands import build_command_table
from cardscript.config import BASE_DIR, load_config, load_stack_data
from cardscript.find import FindController
from cardscript.host import HostEvaluator
from cardscript.presentation import ConsolePresenter, NullPresenter, Presenter
from cardscript.runtime import ExecContext, Registers, StatementExecutor
from cardscript.scene import Scene, StackObject
from cardscript.script import find_handler, is_host_script, parse_block, split_statements

log = logging.getLogger(__name__)

Fetcher = Callable[[str], Awaitable[str]]

# Message box: text that looks like an expression is evaluated, not executed
_EXPRESSION_START_RE = re.compile(r"^(the\s|it$|\d|\"[^\"]*\"|'[^']*')", re.IGNORECASE)
_OPERATOR_RE = re.compile(r"[+\-*/&]")
_CONTROL_START_RE = re.compile(r"^(if|repeat)\b", re.IGNORECASE)


# ── Engine ───────────────────────────────────────────────────────

class Engine:
    """Runs scripts against a live scene and reports through a presenter."""

    def __init__(
        self,
        scene: Scene,
        presenter: Presenter | None = None,
        config: dict[str, Any] | None = None,
        fetch: Fetcher | None = None,
    ) -> None:
        self.config: dict[str, Any] = load_config(overrides=config)
        self.scene = scene
        self.presenter: Presenter = presenter or NullPresenter()
        self.registers = Registers()

        scripting = self.config["scripting"]
        self.host_marker: str = scripting["host_marker"]
        self.commands = build_command_table()
        self.executor = StatementExecutor(self.commands.execute, scripting["repeat_limit"])
        self.host = HostEvaluator(self)
        self.finder = FindController(self)

        self._fetch = fetch
        self._http: httpx.AsyncClient | None = None
        self._locks: dict[str, asyncio.Lock] = {}
        self._running = False
        self._idle_running = False
        self._idle_task: asyncio.Task | None = None
        self._tick_tasks: set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        config_path: str | Path | None = None,
        stack_path: str | Path | None = None,
        presenter: Presenter | None = None,
    ) -> Engine:
        config = load_config(config_path)
        scene = Scene.from_dict(load_stack_data(stack_path)) if stack_path else Scene()
        return cls(scene, presenter, config)

    # ── Dispatcher ───────────────────────────────────────────────

    async def dispatch(self, event: str, script: str, origin_id: str | None = None) -> bool:
        """Run the `event` handler in `script`. Returns True when it was handled.

        Failures never propagate: they beep, raise one "Script Error" alert,
        are logged, and the dispatch reports False.
        """
        if not script or not script.strip():
            return False
        try:
            if is_host_script(script, self.host_marker):
                await self.host.run(script, event, origin_id)
                return True
            return await self.run_macro(split_statements(script), event, origin_id)
        except Exception as e:
            log.exception("Script error in %s handler (source=%s)", event, origin_id)
            self.beep()
            await self.presenter.alert(str(e), "Script Error")
            return False

    async def run_macro(self, statements: list[str], event: str, origin_id: str | None = None) -> bool:
        span = find_handler(statements, event)
        if span is None:
            log.debug("No %s handler (source=%s)", event, origin_id)
            return False
        start, end = span
        ctx = ExecContext(self, origin_id, event)
        await self.executor.run(parse_block(statements[start:end]), ctx)
        return True

    # ── Event hierarchy ──────────────────────────────────────────

    async def handle_object_event(self, event: str, object_id: str | None = None) -> bool:
        """Offer `event` to object → card → background → stack until one handles it."""
        scene = self.scene
        candidates: list[Any] = []
        if object_id:
            obj = scene.find_entity_by_id(object_id)
            if isinstance(obj, StackObject):
                candidates.append(obj)
        candidates.append(scene.current_card())
        bg = scene.current_background()
        if bg is not None:
            candidates.append(bg)
        candidates.append(scene.current_stack())
        for target in candidates:
            if await self.dispatch(event, target.script or "", object_id):
                return True
        return False

    async def post_event(self, event: str, object_id: str | None = None) -> bool:
        """Entry point for UI events: one event at a time per source."""
        if not self.config["engine"]["serialize_events"]:
            return await self.handle_object_event(event, object_id)
        lock = self._locks.setdefault(object_id or "card", asyncio.Lock())
        async with lock:
            return await self.handle_object_event(event, object_id)

    # ── Navigation ───────────────────────────────────────────────

    async def go_to_card(self, spec: int | str) -> None:
        """Navigate, firing closeCard before and openCard after the move."""
        scene = self.scene
        back = isinstance(spec, str) and spec.strip().lower() == "back"
        index = scene.resolve_card_index(spec)
        if index == scene.current_index:
            if back:
                scene.move_to(index, back=True)
            return
        await self.handle_object_event("closeCard")
        scene.move_to(index, back=back)
        self.notify_changed()
        await self.handle_object_event("openCard")

    async def find(self, term: str, field_spec: str | None = None) -> bool:
        return await self.finder.find(term, field_spec)

    # ── Presentation hooks ───────────────────────────────────────

    def notify_changed(self, save: bool = True) -> None:
        self.presenter.render()
        if save:
            self.presenter.request_save()

    def beep(self) -> None:
        try:
            self.presenter.beep()
        except Exception as e:
            log.debug("beep failed: %s", e)

    async def fetch_text(self, url: str) -> str:
        if self._fetch is not None:
            return await self._fetch(url)
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self.config["scripting"]["fetch_timeout"], follow_redirects=True)
        response = await self._http.get(url)
        response.raise_for_status()
        return response.text

    # ── Message box ──────────────────────────────────────────────

    def evaluate(self, text: str) -> str:
        return ExecContext(self).evaluate(text)

    async def execute(self, text: str) -> None:
        statements = split_statements(text)
        await self.executor.run(parse_block(statements), ExecContext(self))

    async def message(self, text: str) -> str:
        """Evaluate `text` if it reads as an expression, else run it as commands."""
        text = text.strip()
        if not text:
            return ""
        is_command = _CONTROL_START_RE.match(text) or self.commands.recognizes(text)
        if not is_command and (_EXPRESSION_START_RE.match(text) or _OPERATOR_RE.search(text)):
            return self.evaluate(text)
        await self.execute(text)
        return self.registers.it or "(done)"

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Fire startUp, openStack and openCard, then start the idle heartbeat."""
        log.info("=== cardscript starting: %s (%d cards) ===",
                 self.scene.stack.name, len(self.scene.cards))
        self._running = True
        stack = self.scene.current_stack()
        await self.dispatch("startUp", stack.script, stack.id)
        await self.dispatch("openStack", stack.script, stack.id)
        await self.handle_object_event("openCard")
        self.presenter.render()
        if self.config["engine"]["idle_interval"] > 0:
            self._idle_task = asyncio.create_task(self.run_idle_loop())

    async def idle_tick(self) -> bool:
        """One heartbeat. Returns False when skipped because a pass is still running."""
        if self._idle_running:
            log.debug("Idle pass still running; skipping tick")
            return False
        self._idle_running = True
        try:
            scene = self.scene
            for obj in list(scene.card_objects(scene.current_index)):
                if obj.script:
                    await self.dispatch("idle", obj.script, obj.id)
            await self.handle_object_event("idle")
        except Exception:
            log.exception("Idle pass failed")
        finally:
            self._idle_running = False
        return True

    async def run_idle_loop(self) -> None:
        interval = self.config["engine"]["idle_interval"]
        while self._running:
            task = asyncio.create_task(self.idle_tick())
            self._tick_tasks.add(task)
            task.add_done_callback(self._tick_tasks.discard)
            await asyncio.sleep(interval)

    async def shutdown(self) -> None:
        log.info("Shutting down...")
        self._running = False
        tasks = [t for t in (self._idle_task, *self._tick_tasks) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._idle_task = None
        if self._http is not None:
            await self._http.aclose()
            self._http = None
        log.info("Shutdown complete")

    # ── Console entry point ──────────────────────────────────────

    async def run_console(self) -> None:
        """Boot, then feed stdin lines to the message box until EOF or `quit`."""
        from cardscript.api import start_api, stop_api

        api = self.config["api"]
        await self.start()
        if api["enabled"]:
            await start_api(self, api["host"], api["port"])
        try:
            while self._running:
                line = await asyncio.to_thread(sys.stdin.readline)
                if not line or line.strip().lower() == "quit":
                    break
                if not line.strip():
                    continue
                try:
                    result = await self.message(line)
                except Exception as e:
                    log.debug("Message box error", exc_info=True)
                    await self.presenter.alert(str(e), "Error")
                    continue
                await self.presenter.alert(result)
        finally:
            if api["enabled"]:
                await stop_api()
            await self.shutdown()


# ── Main ─────────────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    config_path = os.environ.get("CARDSCRIPT_CONFIG")
    if config_path is None and (BASE_DIR / "config" / "cardscript.yaml").exists():
        config_path = str(BASE_DIR / "config" / "cardscript.yaml")
    config = load_config(config_path)

    logging.basicConfig(
        level=getattr(logging, str(config["logging"]["level"]).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    scene = Scene.from_dict(load_stack_data(args[0])) if args else Scene()
    engine = Engine(scene, ConsolePresenter(scene), config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def _signal_handler() -> None:
        engine._running = False

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    try:
        loop.run_until_complete(engine.run_console())
    finally:
        loop.close()


if __name__ == "__main__":
    main()
