"""Settings file loading."""

from __future__ import annotations

from typing import Any

import json
import logging
import pathlib

from device import DeviceStreamingContext, device_from_dict


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
SETTINGS_FILE = APP_DIR / "settings.json"
OFFLINE_IMAGE = APP_DIR / "images" / "offline.jpg"

_DEFAULTS: dict[str, Any] = {
    "ffmpeg_path": "ffmpeg",
    "ffmpeg_debug_output": False,
    "offline_image": str(OFFLINE_IMAGE),
    "cameras": [],
}


def load_settings(path: pathlib.Path | None = None) -> dict[str, Any]:
    """Load settings from disk, merged over defaults.

    A missing file yields the defaults. A file that can't be parsed is logged
    and ignored rather than preventing startup.
    """
    settings_file = path or SETTINGS_FILE
    settings = dict(_DEFAULTS)
    if not settings_file.exists():
        return settings
    try:
        data = json.loads(settings_file.read_text())
    except (OSError, json.JSONDecodeError) as e:
        log.warning("Failed to read settings from %s: %s", settings_file, e)
        return settings
    if isinstance(data, dict):
        settings.update(data)
    return settings


def get_cameras(settings: dict[str, Any]) -> list[DeviceStreamingContext]:
    """Build device contexts for every configured camera."""
    return [device_from_dict(c) for c in settings.get("cameras", []) if isinstance(c, dict)]
