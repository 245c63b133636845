from __future__ import annotations

import json
import os
from typing import Any

from .logger import get_logger

_logger = get_logger("settings")

_MIB = 1024 * 1024
_LOOP_POLICIES = ("forever", "once")


def _default_pool_size() -> int:
    return max(2, min(4, (os.cpu_count() or 2)))


class SettingsManager:
    """Read-only pipeline configuration.

    Values come from an optional JSON file layered over `DEFAULTS`, plus any
    keyword overrides given by the caller. Writing settings back to disk is the
    shell's business; `set` only changes the in-memory value.
    """

    DEFAULTS: dict[str, Any] = {
        "cache_capacity_bytes": 512 * _MIB,
        "worker_pool_size": _default_pool_size(),
        "coalesce_window_ms": 500,
        "coalesce_limit": 0,
        "history_limit": 100,
        "kept_history_capacity_bytes": 128 * _MIB,
        "vector_default_size": [2048, 2048],
        "animation_loop_policy": "forever",
    }

    def __init__(self, settings_path: str | None = None, **overrides: Any):
        self.settings_path = settings_path
        self._settings: dict[str, Any] = {}
        self.load()
        self._settings.update(overrides)

    def load(self) -> None:
        self._settings = {}
        if not self.settings_path:
            return
        try:
            if os.path.exists(self.settings_path):
                with open(self.settings_path, encoding="utf-8") as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    self._settings = data
                    _logger.debug("settings loaded: %s", self.settings_path)
                    return
                _logger.warning("settings file is not a JSON object: %s", self.settings_path)
        except (OSError, ValueError) as e:
            _logger.warning("settings load failed: %s", e)

    def get(self, key: str, default: Any = None) -> Any:
        if key in self._settings:
            return self._settings[key]
        if default is not None:
            return default
        return self.DEFAULTS.get(key)

    def has(self, key: str) -> bool:
        return key in self._settings

    def set(self, key: str, value: Any) -> None:
        self._settings[key] = value

    @property
    def data(self) -> dict[str, Any]:
        return self._settings

    def _positive_int(self, key: str, minimum: int = 0) -> int:
        value = self.get(key)
        try:
            number = int(value)
        except (TypeError, ValueError):
            _logger.warning("invalid %s=%r; using default", key, value)
            number = int(self.DEFAULTS[key])
        return max(minimum, number)

    @property
    def cache_capacity_bytes(self) -> int:
        return self._positive_int("cache_capacity_bytes")

    @property
    def worker_pool_size(self) -> int:
        return self._positive_int("worker_pool_size", minimum=1)

    @property
    def coalesce_window(self) -> float:
        """Edit merge window in seconds."""
        return self._positive_int("coalesce_window_ms") / 1000.0

    @property
    def coalesce_limit(self) -> int:
        return self._positive_int("coalesce_limit")

    @property
    def history_limit(self) -> int:
        return self._positive_int("history_limit", minimum=1)

    @property
    def kept_history_capacity_bytes(self) -> int:
        """Raster bytes that preserved edit histories of other images may hold."""
        return self._positive_int("kept_history_capacity_bytes")

    @property
    def vector_default_size(self) -> tuple[int, int]:
        value = self.get("vector_default_size")
        try:
            w, h = (int(v) for v in value)
            if w > 0 and h > 0:
                return w, h
        except (TypeError, ValueError):
            pass
        _logger.warning("invalid vector_default_size=%r; using default", value)
        dw, dh = self.DEFAULTS["vector_default_size"]
        return int(dw), int(dh)

    @property
    def animation_loop_policy(self) -> str:
        value = str(self.get("animation_loop_policy") or "").strip().lower()
        if value not in _LOOP_POLICIES:
            _logger.warning("invalid animation_loop_policy=%r; using 'forever'", value)
            return "forever"
        return value
