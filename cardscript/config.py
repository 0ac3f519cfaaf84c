"""Engine configuration — YAML file overlaid on built-in defaults."""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any

import yaml

log = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent

DEFAULT_CONFIG: dict[str, Any] = {
    "name": "cardscript",
    "engine": {
        "idle_interval": 0.3,
        "serialize_events": True,
    },
    "scripting": {
        "host_marker": "-- @lua",
        "repeat_limit": 9999,
        "ticks_per_second": 60,
        "fetch_timeout": 10.0,
    },
    "api": {
        "enabled": False,
        "host": "127.0.0.1",
        "port": 8080,
    },
    "logging": {
        "level": "INFO",
    },
}


def _merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(
    path: str | Path | None = None, overrides: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Load a YAML config file; missing keys fall back to DEFAULT_CONFIG."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    if overrides:
        _merge(config, copy.deepcopy(overrides))
    if path is None:
        return config
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config {path} must be a mapping, got {type(data).__name__}")
    log.debug("Loaded config from %s", path)
    return _merge(config, data)


def load_stack_data(path: str | Path) -> dict[str, Any]:
    """Read a stack definition file (YAML mapping of stack, backgrounds, cards)."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Stack file {path} must be a mapping, got {type(data).__name__}")
    log.info("Loaded stack definition from %s (%d cards)", path, len(data.get("cards") or []))
    return data
