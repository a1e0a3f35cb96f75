"""Persisted user preferences, stored through ``QSettings``."""

import logging
from typing import Optional

from PySide6.QtCore import QSettings

from .backgrounds import DEFAULT_PRESET, find_preset
from .capture_session import WARMUP_MS
from .encoder import RECORDER_TIMESLICE_MS
from .models import OUTPUT_FORMATS, RESOLUTION_PRESETS
from .transcoder import RENDERER_AUTO, RENDERER_CHOICES
from .utils import ENCODER_PROFILES

logger = logging.getLogger(__name__)

ORGANIZATION = "ScreenReel"
APPLICATION = "ScreenReel"


class Settings:
    """Typed access to the stored preferences.

    Missing or unreadable values fall back to the defaults, so a corrupt
    settings file never prevents start-up.  Pass *path* to use an INI
    file instead of the platform store.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        if path:
            self._settings = QSettings(path, QSettings.Format.IniFormat)
        else:
            self._settings = QSettings(ORGANIZATION, APPLICATION)

    def _choice(self, key: str, choices, default: str) -> str:
        value = self._settings.value(key, default)
        if value not in choices:
            if value != default:
                logger.warning("Ignoring invalid setting %s=%r", key, value)
            return default
        return value

    def _int(self, key: str, default: int, lo: int, hi: int) -> int:
        value = self._settings.value(key, default)
        try:
            value = int(value)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid setting %s=%r", key, value)
            return default
        return max(lo, min(value, hi))

    # ── export ──────────────────────────────────────────────────────

    @property
    def export_format(self) -> str:
        return self._choice("exportFormat", OUTPUT_FORMATS, "webm")

    @export_format.setter
    def export_format(self, value: str) -> None:
        if value not in OUTPUT_FORMATS:
            raise ValueError(f"unknown output format: {value!r}")
        self._settings.setValue("exportFormat", value)

    @property
    def export_resolution(self) -> str:
        return self._choice("exportResolution", RESOLUTION_PRESETS, "1080p")

    @export_resolution.setter
    def export_resolution(self, value: str) -> None:
        if value not in RESOLUTION_PRESETS:
            raise ValueError(f"unknown resolution preset: {value!r}")
        self._settings.setValue("exportResolution", value)

    @property
    def encoder_id(self) -> str:
        return self._choice("encoderId", ENCODER_PROFILES, "libx264")

    @encoder_id.setter
    def encoder_id(self, value: str) -> None:
        if value not in ENCODER_PROFILES:
            raise ValueError(f"unknown encoder: {value!r}")
        self._settings.setValue("encoderId", value)

    @property
    def renderer(self) -> str:
        return self._choice("renderer", RENDERER_CHOICES, RENDERER_AUTO)

    @renderer.setter
    def renderer(self, value: str) -> None:
        if value not in RENDERER_CHOICES:
            raise ValueError(f"unknown renderer: {value!r}")
        self._settings.setValue("renderer", value)

    @property
    def last_export_dir(self) -> str:
        value = self._settings.value("lastExportDir", "")
        return value if isinstance(value, str) else ""

    @last_export_dir.setter
    def last_export_dir(self, value: str) -> None:
        self._settings.setValue("lastExportDir", value)

    # ── capture ─────────────────────────────────────────────────────

    @property
    def warmup_ms(self) -> int:
        return self._int("warmupMs", WARMUP_MS, 0, 5000)

    @warmup_ms.setter
    def warmup_ms(self, value: int) -> None:
        self._settings.setValue("warmupMs", int(value))

    @property
    def timeslice_ms(self) -> int:
        return self._int("timesliceMs", RECORDER_TIMESLICE_MS, 50, 10000)

    @timeslice_ms.setter
    def timeslice_ms(self, value: int) -> None:
        self._settings.setValue("timesliceMs", int(value))

    @property
    def background_preset(self) -> str:
        name = self._settings.value("backgroundPreset", DEFAULT_PRESET.name)
        if not isinstance(name, str) or find_preset(name) is None:
            return DEFAULT_PRESET.name
        return name

    @background_preset.setter
    def background_preset(self, name: str) -> None:
        if find_preset(name) is None:
            raise ValueError(f"unknown background preset: {name!r}")
        self._settings.setValue("backgroundPreset", name)

    def sync(self) -> None:
        self._settings.sync()
