# SPDX-License-Identifier: GPL-3.0-or-later
"""
User-tunable defaults for recording and playback.

Storage:
- ~/.automate/config.json   (JSON object, unknown keys ignored)
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Optional

logger = logging.getLogger(__name__)

APP_DIR = os.path.join(os.path.expanduser("~"), ".automate")
CONFIG = os.path.join(APP_DIR, "config.json")


@dataclass
class Settings:
    # recording: mouse move coalescing
    move_min_interval: float = 0.01   # seconds
    move_min_distance: int = 3        # pixels
    # locating
    hint_padding: int = 64            # pixels around the last match
    default_tolerance: float = 0.9
    locate_timeout: float = 0.0       # 0 = one attempt per image step
    locate_retry_interval: float = 0.1
    # playback
    speed: float = 1.0
    repeats: int = 1
    jitter_px: int = 0
    offset_x: int = 0                 # added to every replayed pointer position
    offset_y: int = 0
    # global hotkeys (pynput names)
    record_hotkey: str = "F8"
    stop_hotkey: str = "esc"

    @classmethod
    def from_dict(cls, data: Any) -> "Settings":
        if not isinstance(data, dict):
            return cls()
        known = {f.name: f for f in fields(cls)}
        values = {}
        for name, value in data.items():
            f = known.get(name)
            if f is None:
                continue
            default = getattr(cls, name)
            try:
                values[name] = type(default)(value)
            except (TypeError, ValueError):
                logger.warning("Ignoring bad config value %s=%r", name, value)
        return cls(**values)

    def to_dict(self) -> dict:
        return asdict(self)


def _ensure_app_dir(path: str) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)


def _load_json(path: str, default: Any):
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return default
    except (OSError, ValueError) as e:
        logger.warning("Could not read %s: %s", path, e)
        return default


def _save_json(path: str, data: Any) -> None:
    _ensure_app_dir(path)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def load_settings(path: Optional[str] = None) -> Settings:
    return Settings.from_dict(_load_json(path or CONFIG, {}))


def save_settings(settings: Settings, path: Optional[str] = None) -> None:
    _save_json(path or CONFIG, settings.to_dict())
