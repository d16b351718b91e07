"""Engine configuration from ``settings.json`` with environment overrides."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import pytz

from .time_windows import PERIOD_SELECTORS

LOGGER = logging.getLogger(__name__)

ENV_OVERRIDES = {
    "timezone": "ROUTELEDGER_TIMEZONE",
    "default_period": "ROUTELEDGER_DEFAULT_PERIOD",
    "view_mode": "ROUTELEDGER_VIEW_MODE",
    "fetch_timeout_seconds": "ROUTELEDGER_FETCH_TIMEOUT",
}
VIEW_MODES = ("active", "archived", "all")


@dataclass(frozen=True)
class EngineSettings:
    timezone: str = "UTC"
    default_period: str = "today"
    view_mode: str = "active"
    fetch_timeout_seconds: float = 30.0
    legacy_assignment_fallback: bool = True


def read_json_file(file_path: Path) -> Dict[str, Any]:
    if not os.path.exists(file_path) or os.path.getsize(file_path) == 0:
        return {}
    with open(file_path, "r") as f:
        try:
            blob = json.load(f)
        except json.JSONDecodeError:
            LOGGER.error("JSONDecodeError for %s", file_path)
            return {}
    return blob if isinstance(blob, dict) else {}


def write_json_file(file_path: Path, data: Mapping[str, Any]) -> None:
    with open(file_path, "w") as f:
        json.dump(dict(data), f, indent=4)


def _timezone(value: Any) -> str:
    name = str(value or "UTC")
    if name not in pytz.all_timezones_set:
        LOGGER.warning("Unknown timezone %s; falling back to UTC", name)
        return "UTC"
    return name


def _choice(value: Any, allowed: tuple, default: str, label: str) -> str:
    text = str(value or default).strip().lower()
    if text not in allowed:
        LOGGER.warning("Ignoring invalid %s '%s'; using %s", label, value, default)
        return default
    return text


def _timeout(value: Any) -> float:
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        LOGGER.warning("Ignoring invalid fetch timeout %r", value)
        return EngineSettings.fetch_timeout_seconds
    return timeout if timeout > 0 else EngineSettings.fetch_timeout_seconds


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"true", "1", "yes", "y"}


def load_engine_settings(
    settings_file: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None
) -> EngineSettings:
    blob = read_json_file(settings_file) if settings_file is not None else {}
    env = os.environ if environ is None else environ
    merged: Dict[str, Any] = dict(blob)
    for key, variable in ENV_OVERRIDES.items():
        if env.get(variable):
            merged[key] = env[variable]
    return EngineSettings(
        timezone=_timezone(merged.get("timezone")),
        default_period=_choice(merged.get("default_period"), PERIOD_SELECTORS, "today", "period"),
        view_mode=_choice(merged.get("view_mode"), VIEW_MODES, "active", "view mode"),
        fetch_timeout_seconds=_timeout(merged.get("fetch_timeout_seconds", 30)),
        legacy_assignment_fallback=_flag(merged.get("legacy_assignment_fallback", True)),
    )


__all__ = ["EngineSettings", "load_engine_settings", "read_json_file", "write_json_file"]
