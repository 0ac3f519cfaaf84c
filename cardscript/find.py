"""Find controller — multi-card substring search over field contents."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from cardscript.scene import Field

if TYPE_CHECKING:
    from cardscript.engine import Engine

log = logging.getLogger(__name__)


@dataclass(slots=True)
class FindCursor:
    term: str = ""
    card_index: int = -1
    object_index: int = -1


class FindController:
    """Keeps the cursor between `find` calls so a repeated term finds the next hit."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.cursor = FindCursor()

    def reset(self) -> None:
        self.cursor = FindCursor()

    async def find(self, term: str, field_spec: str | None = None) -> bool:
        term = term.lower()
        if not term:
            return False
        scene = self.engine.scene
        if term != self.cursor.term:
            self.cursor = FindCursor(term, scene.current_index, -1)

        start_card = self.cursor.card_index
        start_obj = self.cursor.object_index
        total = len(scene.cards)
        for step in range(total):
            card_index = (start_card + step) % total
            objects = scene.card_objects(card_index)
            # Only the starting card resumes after the previous hit
            first = start_obj + 1 if card_index == start_card else 0
            for obj_index in range(first, len(objects)):
                obj = objects[obj_index]
                if not isinstance(obj, Field):
                    continue
                if field_spec and obj.name.lower() != field_spec.lower() and obj.id != field_spec:
                    continue
                if term in (obj.content or "").lower():
                    await self._found(card_index, obj_index, obj)
                    return True

        self.reset()
        log.info('Find: "%s" not found', term)
        self.engine.beep()
        await self.engine.presenter.alert(f'Could not find "{term}" in any fields.', "Find")
        return False

    async def _found(self, card_index: int, obj_index: int, obj: Field) -> None:
        self.cursor = FindCursor(self.cursor.term, card_index, obj_index)
        engine = self.engine
        if card_index != engine.scene.current_index:
            await engine.go_to_card(card_index + 1)
        engine.registers.it = obj.content
        log.info('Find: "%s" in field "%s" on card %d', self.cursor.term, obj.name, card_index + 1)
        engine.presenter.highlight(obj.id)
