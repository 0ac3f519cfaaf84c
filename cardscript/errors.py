"""Exception taxonomy for the scripting engine."""

from __future__ import annotations


class ScriptError(Exception):
    """Base for errors a script run surfaces to the user."""


class NavigationError(ScriptError):
    """`go` to an out-of-range index, unknown name or empty history."""


class HostScriptError(ScriptError):
    """A host-mode (Lua) script failed while handling an event."""

    def __init__(self, event: str, message: str) -> None:
        super().__init__(message)
        self.event = event
