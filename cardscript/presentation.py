"""Presentation layer — the narrow surface the engine drives.

The engine never draws or stores anything itself. It asks a presenter to
re-render after a mutation, to show modal dialogs, and to schedule a save.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import TYPE_CHECKING, Protocol, TextIO, runtime_checkable

from cardscript.ansi import colorize
from cardscript.scene import Button, Field, StackObject

if TYPE_CHECKING:
    from cardscript.scene import Scene

log = logging.getLogger(__name__)


@runtime_checkable
class Presenter(Protocol):
    def render(self) -> None: ...

    def request_save(self) -> None: ...

    def beep(self) -> None: ...

    def open_url(self, url: str) -> None: ...

    def highlight(self, object_id: str) -> None: ...

    async def alert(self, message: str, title: str = "") -> None: ...

    async def prompt(self, message: str) -> str | None: ...

    async def confirm(self, message: str) -> bool: ...


# ── Null presenter ───────────────────────────────────────────────

class NullPresenter:
    """Headless presenter: dialogs are logged, prompts are dismissed."""

    def __init__(self) -> None:
        self.renders = 0
        self.save_requests = 0
        self.alerts: list[tuple[str, str]] = []

    def render(self) -> None:
        self.renders += 1

    def request_save(self) -> None:
        self.save_requests += 1

    def beep(self) -> None:
        log.debug("beep")

    def open_url(self, url: str) -> None:
        log.info("open url %s", url)

    def highlight(self, object_id: str) -> None:
        log.debug("highlight %s", object_id)

    async def alert(self, message: str, title: str = "") -> None:
        self.alerts.append((title, message))
        log.info("alert [%s] %s", title, message)

    async def prompt(self, message: str) -> str | None:
        log.info("prompt %s (dismissed)", message)
        return None

    async def confirm(self, message: str) -> bool:
        return False


# ── Console presenter ────────────────────────────────────────────

class ConsolePresenter:
    """Terminal presenter used by the CLI: prints the card, reads dialog replies."""

    def __init__(self, scene: Scene | None = None, out: TextIO | None = None) -> None:
        self.scene = scene
        self.out = out or sys.stdout
        self.dirty = False
        self._highlighted: str | None = None

    def _write(self, text: str) -> None:
        self.out.write(colorize(text) + "\n")
        self.out.flush()

    def render(self) -> None:
        if self.scene is None:
            return
        scene = self.scene
        transition, animations = scene.take_visual_effects()
        card = scene.current_card()
        header = f"{{bold}}── {card.name} ({scene.current_index + 1}/{len(scene.cards)}) ──{{reset}}"
        if transition:
            header += f" {{dim}}[{transition}]{{reset}}"
        self._write(header)
        for obj in scene.card_objects(scene.current_index):
            if not obj.visible:
                continue
            self._write(self._describe(obj.id, obj, animations.get(obj.id)))
        self._highlighted = None

    def _describe(self, object_id: str, obj: StackObject, animation: str | None) -> str:
        mark = "{reverse}" if object_id == self._highlighted else ""
        if isinstance(obj, Button):
            line = f"{mark}{{fg:{obj.text_color}}}[ {obj.title} ]{{reset}}"
        elif isinstance(obj, Field):
            line = f"{mark}{obj.name}: {{fg:{obj.text_color}}}{obj.content}{{reset}}"
        else:
            line = f"{mark}<{obj.kind.value} {obj.name}>{{reset}}"
        if animation:
            line += f" {{dim}}~{animation}{{reset}}"
        return "  " + line

    def request_save(self) -> None:
        self.dirty = True

    def beep(self) -> None:
        self.out.write("\a")
        self.out.flush()

    def open_url(self, url: str) -> None:
        self._write(f"{{underline}}{url}{{reset}}")

    def highlight(self, object_id: str) -> None:
        self._highlighted = object_id

    async def alert(self, message: str, title: str = "") -> None:
        prefix = f"{{bold}}{title}:{{reset}} " if title else ""
        self._write(f"{prefix}{message}")

    async def prompt(self, message: str) -> str | None:
        self._write(f"{{cyan}}{message}{{reset}}")
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            return None
        return line.rstrip("\n")

    async def confirm(self, message: str) -> bool:
        reply = await self.prompt(f"{message} [y/N]")
        return (reply or "").strip().lower() in ("y", "yes")
