"""Scene model — stack, backgrounds, cards and the objects placed on them."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Protocol, runtime_checkable

from cardscript.errors import NavigationError
from cardscript.values import expand_rgb_shorthand, format_number, parse_int, parse_number, to_text

log = logging.getLogger(__name__)


# ── Ids ──────────────────────────────────────────────────────────

_next_seq = 0


def _base36(n: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while True:
        n, r = divmod(n, 36)
        out = digits[r] + out
        if n == 0:
            return out


def generate_id(prefix: str = "obj") -> str:
    global _next_seq
    _next_seq += 1
    return f"{prefix}-{_base36(_next_seq)}"


# ── Geometry + capability traits ─────────────────────────────────

@dataclass(slots=True)
class Rect:
    x: float = 80
    y: float = 80
    width: float = 200
    height: float = 100

    @property
    def top_left(self) -> str:
        return f"{format_number(self.x)},{format_number(self.y)}"

    @property
    def loc(self) -> str:
        cx = self.x + self.width / 2
        cy = self.y + self.height / 2
        return f"{format_number(cx)},{format_number(cy)}"


@runtime_checkable
class Positionable(Protocol):
    rect: Rect


@runtime_checkable
class HasText(Protocol):
    content: str


@runtime_checkable
class HasVisibility(Protocol):
    visible: bool


# ── Objects (tagged variant) ─────────────────────────────────────

class ObjectKind(str, Enum):
    BUTTON = "button"
    FIELD = "field"
    IMAGE = "image"
    AUDIO = "audio"
    EMBED = "embed"
    EMOJI = "emoji"


_DEFAULT_SIZE = {
    ObjectKind.BUTTON: (130, 36),
    ObjectKind.EMBED: (560, 315),
    ObjectKind.EMOJI: (80, 80),
}


@dataclass(slots=True)
class StackObject:
    kind: ClassVar[ObjectKind]

    id: str = ""
    name: str = ""
    rect: Rect | None = None
    visible: bool = True
    script: str = ""
    layer: str = "card"
    rotation: float = 0

    def __post_init__(self) -> None:
        if not self.id:
            self.id = generate_id(self.kind.value)
        if not self.name:
            self.name = f"New {self.kind.value.capitalize()}"
        if self.rect is None:
            w, h = _DEFAULT_SIZE.get(self.kind, (200, 100))
            self.rect = Rect(80, 80, w, h)


@dataclass(slots=True)
class Button(StackObject):
    kind: ClassVar[ObjectKind] = ObjectKind.BUTTON

    title: str | None = None
    style: str = "roundrect"
    text_color: str = "#000000"
    fill_color: str = "#dddddd"
    font_size: int = 16
    enabled: bool = True

    def __post_init__(self) -> None:
        StackObject.__post_init__(self)
        if self.title is None:
            self.title = self.name


@dataclass(slots=True)
class Field(StackObject):
    kind: ClassVar[ObjectKind] = ObjectKind.FIELD

    content: str = ""
    style: str = "rectangle"
    text_color: str = "#000000"
    fill_color: str = "#ffffff"
    font_size: int = 16
    editable: bool = True
    lock_text: bool = False


@dataclass(slots=True)
class Image(StackObject):
    kind: ClassVar[ObjectKind] = ObjectKind.IMAGE

    src: str = ""
    alt: str = ""


@dataclass(slots=True)
class Audio(StackObject):
    kind: ClassVar[ObjectKind] = ObjectKind.AUDIO

    src: str = ""
    loop: bool = False


@dataclass(slots=True)
class Embed(StackObject):
    kind: ClassVar[ObjectKind] = ObjectKind.EMBED

    html_code: str = ""


@dataclass(slots=True)
class Emoji(StackObject):
    kind: ClassVar[ObjectKind] = ObjectKind.EMOJI

    emoji: str = "🚀"


OBJECT_CLASSES: dict[ObjectKind, type[StackObject]] = {
    cls.kind: cls for cls in (Button, Field, Image, Audio, Embed, Emoji)
}


# ── Containers ───────────────────────────────────────────────────

@dataclass(slots=True)
class Background:
    id: str = field(default_factory=lambda: generate_id("bg"))
    name: str = "Background 1"
    script: str = ""
    background_color: str = "#ffffff"
    objects: list[StackObject] = field(default_factory=list)


@dataclass(slots=True)
class Card:
    id: str = field(default_factory=lambda: generate_id("card"))
    name: str = "Untitled Card"
    background_id: str = ""
    script: str = ""
    background_color: str | None = None
    objects: list[StackObject] = field(default_factory=list)


@dataclass(slots=True)
class CardSize:
    width: int = 1200
    height: int = 800


@dataclass(slots=True)
class Stack:
    id: str = field(default_factory=lambda: generate_id("stack"))
    name: str = "Untitled Stack"
    script: str = ""
    card_size: CardSize = field(default_factory=CardSize)
    backdrop_color: str = "#e0e0e0"
    background_color: str = "#ffffff"
    pattern_color: str = "#d0d0d0"


Entity = StackObject | Card | Background | Stack


# ── Property access ──────────────────────────────────────────────

_ALIASES = {
    "x": "left", "y": "top", "location": "loc", "topleft": "topleft",
    "text": "content", "bgcolor": "backgroundcolor", "type": "kind",
}

_GEOMETRY = frozenset({"left", "top", "width", "height", "right", "bottom", "topleft", "loc"})

_READ_ONLY = frozenset({"id", "kind", "script", "objects", "rect", "cardsize"})


def normalize_property(prop: str) -> str:
    """'the Fill-Color' → 'fillcolor'; aliases folded to their canonical name."""
    name = prop.strip().lower()
    if name.startswith("the "):
        name = name[4:].strip()
    name = name.replace("-", "").replace("_", "").replace(" ", "")
    return _ALIASES.get(name, name)


def _attribute_name(entity: Any, prop: str) -> str | None:
    for f in dataclasses.fields(entity):
        if f.name.replace("_", "") == prop:
            return f.name
    return None


def get_property(entity: Any, prop: str) -> str | None:
    """Read a property as script text; None when the entity has no such property."""
    prop = normalize_property(prop)
    if prop == "kind":
        kind = getattr(entity, "kind", None)
        return kind.value if kind else type(entity).__name__.lower()
    if prop in _GEOMETRY and isinstance(entity, Positionable) and entity.rect is not None:
        r = entity.rect
        if prop == "left":
            return format_number(r.x)
        if prop == "top":
            return format_number(r.y)
        if prop == "width":
            return format_number(r.width)
        if prop == "height":
            return format_number(r.height)
        if prop == "right":
            return format_number(r.x + r.width)
        if prop == "bottom":
            return format_number(r.y + r.height)
        if prop == "topleft":
            return r.top_left
        return r.loc
    attr = _attribute_name(entity, prop)
    if attr is None:
        return None
    return to_text(getattr(entity, attr))


def _set_geometry(rect: Rect, prop: str, value: str) -> bool:
    if prop in ("topleft", "loc"):
        parts = value.split(",")
        if len(parts) != 2:
            return False
        px, py = parse_number(parts[0]), parse_number(parts[1])
        if px is None or py is None:
            return False
        if prop == "topleft":
            rect.x, rect.y = px, py
        else:
            rect.x = px - rect.width / 2
            rect.y = py - rect.height / 2
        return True
    num = parse_number(value)
    if num is None:
        return False
    if prop == "left":
        rect.x = num
    elif prop == "top":
        rect.y = num
    elif prop == "width":
        rect.width = num
    elif prop == "height":
        rect.height = num
    elif prop == "right":
        rect.x = num - rect.width
    elif prop == "bottom":
        rect.y = num - rect.height
    return True


def set_property(entity: Any, prop: str, value: str) -> bool:
    """Write a property from script text. Returns False when nothing changed."""
    prop = normalize_property(prop)
    value = expand_rgb_shorthand(value)
    if prop in _READ_ONLY:
        log.warning("Property '%s' is read-only", prop)
        return False
    if prop in _GEOMETRY:
        if not isinstance(entity, Positionable) or entity.rect is None:
            return False
        return _set_geometry(entity.rect, prop, value)
    if prop == "visible" and isinstance(entity, HasVisibility):
        entity.visible = value.strip().lower() != "false"
        return True
    if prop == "content" and isinstance(entity, HasText):
        entity.content = value
        return True
    attr = _attribute_name(entity, prop)
    if attr is None:
        return False
    current = getattr(entity, attr)
    if isinstance(current, bool):
        setattr(entity, attr, value.strip().lower() != "false")
    elif isinstance(current, (int, float)):
        num = parse_number(value)
        if num is None:
            return False
        setattr(entity, attr, int(num) if isinstance(current, int) and num == int(num) else num)
    else:
        setattr(entity, attr, value)
    return True


# ── Scene ────────────────────────────────────────────────────────

NAV_KEYWORDS = frozenset({"next", "prev", "previous", "first", "last", "back"})


class Scene:
    """The live stack: cards in order, the current card, history and visual state."""

    def __init__(
        self,
        stack: Stack | None = None,
        backgrounds: dict[str, Background] | None = None,
        cards: list[Card] | None = None,
        current_index: int = 0,
    ) -> None:
        self.stack = stack or Stack()
        self.backgrounds: dict[str, Background] = backgrounds or {}
        self.cards: list[Card] = cards or []
        if not self.backgrounds:
            bg = Background()
            self.backgrounds[bg.id] = bg
        if not self.cards:
            self.cards.append(Card(name="Home"))
        default_bg = next(iter(self.backgrounds))
        for card in self.cards:
            if card.background_id not in self.backgrounds:
                card.background_id = default_bg
        self.current_index = max(0, min(current_index, len(self.cards) - 1))
        self.history: list[int] = []
        # One-shot visual state, consumed by the renderer
        self.pending_transition: str | None = None
        self.pending_animations: dict[str, str] = {}

    # ── Current position ─────────────────────────────────────────

    def current_card(self) -> Card:
        return self.cards[self.current_index]

    def current_background(self) -> Background | None:
        return self.backgrounds.get(self.current_card().background_id)

    def current_stack(self) -> Stack:
        return self.stack

    def card_objects(self, index: int) -> list[StackObject]:
        """Background objects then card objects for the card at `index`."""
        card = self.cards[index]
        bg = self.backgrounds.get(card.background_id)
        return [*(bg.objects if bg else []), *card.objects]

    # ── Lookup ───────────────────────────────────────────────────

    def find_entity_by_id(self, entity_id: str | None) -> Entity | None:
        if not entity_id:
            return None
        card = self.current_card()
        bg = self.current_background()
        for obj in card.objects:
            if obj.id == entity_id:
                return obj
        if bg:
            for obj in bg.objects:
                if obj.id == entity_id:
                    return obj
        for entity in (card, bg, self.stack):
            if entity is not None and entity.id == entity_id:
                return entity
        return None

    def find_entity_by_name_or_id(
        self, name: str, kind: ObjectKind | str | None = None,
    ) -> StackObject | None:
        """Object on the current card (then background) by case-insensitive name or id."""
        if kind is not None and not isinstance(kind, ObjectKind):
            kind = ObjectKind(kind)
        bg = self.current_background()
        wanted = name.lower()
        for obj in [*self.current_card().objects, *(bg.objects if bg else [])]:
            if kind is not None and obj.kind is not kind:
                continue
            if (obj.name and obj.name.lower() == wanted) or obj.id == name:
                return obj
        return None

    def find_card(self, name_or_id: str) -> Card | None:
        wanted = name_or_id.lower()
        for card in self.cards:
            if card.name.lower() == wanted or card.id == name_or_id:
                return card
        return None

    def find_background(self, name_or_id: str) -> Background | None:
        wanted = name_or_id.lower()
        for bg in self.backgrounds.values():
            if bg.name.lower() == wanted or bg.id == name_or_id:
                return bg
        return None

    # ── Navigation ───────────────────────────────────────────────

    def resolve_card_index(self, spec: int | str) -> int:
        """Turn a go-spec (1-based number, keyword or name) into a card index."""
        idx = self.current_index
        if isinstance(spec, str):
            number = parse_int(spec) if spec.strip()[:1].isdigit() or spec.strip()[:1] == "-" else None
            if number is not None:
                spec = number
        if isinstance(spec, int):
            if spec < 1 or spec > len(self.cards):
                raise NavigationError(
                    f"Card index {spec} is out of range (1 to {len(self.cards)}).")
            return spec - 1
        key = spec.strip().lower()
        if key == "back":
            if not self.history:
                raise NavigationError("No cards in history to go back to.")
            return self.history[-1]
        if key == "next":
            if idx >= len(self.cards) - 1:
                raise NavigationError("Already at the last card.")
            return idx + 1
        if key in ("prev", "previous"):
            if idx <= 0:
                raise NavigationError("Already at the first card.")
            return idx - 1
        if key == "first":
            return 0
        if key == "last":
            return len(self.cards) - 1
        for i, card in enumerate(self.cards):
            if card.name.lower() == key or card.id == spec.strip():
                return i
        raise NavigationError(f'Could not find card named "{spec}".')

    def move_to(self, index: int, *, back: bool = False) -> None:
        if back and self.history:
            self.history.pop()
        if index == self.current_index:
            return
        if not back:
            self.history.append(self.current_index)
        self.current_index = index
        log.debug("Moved to card %d (%s)", index + 1, self.cards[index].name)

    # ── Editing ──────────────────────────────────────────────────

    def add_card(self, name: str | None = None) -> Card:
        """Insert a new card after the current one and make it current."""
        card = Card(
            name=name or f"Card {len(self.cards) + 1}",
            background_id=self.current_card().background_id,
        )
        at = self.current_index + 1
        self.cards.insert(at, card)
        # History holds indices; cards from `at` on moved up by one
        self.history = [i + 1 if i >= at else i for i in self.history]
        self.move_to(at)
        return card

    def delete_current_card(self) -> bool:
        if len(self.cards) <= 1:
            log.warning("Cannot delete the only card")
            return False
        gone = self.current_index
        del self.cards[gone]
        self.history = [i - 1 if i > gone else i for i in self.history if i != gone]
        self.current_index = min(self.current_index, len(self.cards) - 1)
        return True

    # ── Visual effects ───────────────────────────────────────────

    def take_visual_effects(self) -> tuple[str | None, dict[str, str]]:
        """Return and clear the pending transition and animations."""
        transition, animations = self.pending_transition, self.pending_animations
        self.pending_transition = None
        self.pending_animations = {}
        return transition, animations

    # ── Construction ─────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Scene:
        """Build a scene from a plain mapping (stack definition files, tests)."""
        stack_data = dict(data.get("stack") or {})
        size = stack_data.pop("card_size", None) or stack_data.pop("cardSize", None) or {}
        stack = Stack(**_known_kwargs(Stack, stack_data))
        if size:
            stack.card_size = CardSize(int(size.get("width", 1200)), int(size.get("height", 800)))

        backgrounds: dict[str, Background] = {}
        for bg_data in data.get("backgrounds") or []:
            bg_data = dict(bg_data)
            objects = [_object_from_dict(o, "background") for o in bg_data.pop("objects", [])]
            bg = Background(**_known_kwargs(Background, bg_data), objects=objects)
            backgrounds[bg.id] = bg

        cards: list[Card] = []
        for card_data in data.get("cards") or []:
            card_data = dict(card_data)
            if "background" in card_data:
                ref = str(card_data.pop("background"))
                bg = backgrounds.get(ref) or next(
                    (b for b in backgrounds.values() if b.name == ref), None)
                card_data["background_id"] = bg.id if bg else ""
            objects = [_object_from_dict(o, "card") for o in card_data.pop("objects", [])]
            cards.append(Card(**_known_kwargs(Card, card_data), objects=objects))

        return cls(stack, backgrounds, cards, int(data.get("current_card", 0)))


def _snake(key: str) -> str:
    out = []
    for ch in key:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


def _known_kwargs(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in dataclasses.fields(cls) if f.init}
    kwargs = {}
    for key, value in data.items():
        key = _snake(key)
        if key in names and key != "objects":
            kwargs[key] = value
        else:
            log.debug("Ignoring unknown %s key: %s", cls.__name__, key)
    return kwargs


def _object_from_dict(data: dict[str, Any], layer: str) -> StackObject:
    data = dict(data)
    kind = ObjectKind(data.pop("type", data.pop("kind", "button")))
    rect = data.pop("rect", None)
    kwargs = _known_kwargs(OBJECT_CLASSES[kind], data)
    kwargs.setdefault("layer", layer)
    if isinstance(rect, dict):
        kwargs["rect"] = Rect(rect.get("x", 80), rect.get("y", 80),
                              rect.get("width", 200), rect.get("height", 100))
    elif isinstance(rect, (list, tuple)) and len(rect) == 4:
        kwargs["rect"] = Rect(*rect)
    return OBJECT_CLASSES[kind](**kwargs)
