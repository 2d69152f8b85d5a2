"""Preferences management for the Zoomer plugin."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from toggle_core import ToggleConfig

PREFERENCES_FILE = "zoomer_settings.json"
LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "TRACE"}

_LOGGER = logging.getLogger("Zoomer.Plugin.Preferences")


def _coerce_int(data: Mapping[str, Any], key: str, fallback: int, *, minimum: int, maximum: int) -> int:
    try:
        value = int(data.get(key, fallback))
    except (TypeError, ValueError):
        value = fallback
    return max(minimum, min(value, maximum))


def _coerce_float(data: Mapping[str, Any], key: str, fallback: float, *, minimum: float, maximum: float) -> float:
    try:
        value = float(data.get(key, fallback))
    except (TypeError, ValueError):
        value = fallback
    return max(minimum, min(value, maximum))


@dataclass
class Preferences:
    """Simple JSON-backed preferences store."""

    plugin_dir: Path
    log_level: str = "INFO"
    log_retention: int = 5
    mute_poll_interval_ms: int = 1000
    mute_verification_delay_ms: int = 1000
    video_poll_interval_ms: int = 1000
    video_verification_delay_ms: int = 1000
    max_attempts: int = 3
    base_delay_ms: int = 200
    backoff_multiplier: float = 1.0
    activation_delay_ms: int = 100
    probe_timeout_ms: int = 3000
    availability_timeout_ms: int = 2000

    def __post_init__(self) -> None:
        self.plugin_dir = Path(self.plugin_dir)
        self._path = self.plugin_dir / PREFERENCES_FILE
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    # Persistence ---------------------------------------------------------

    def _load(self) -> None:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (json.JSONDecodeError, OSError) as exc:
            _LOGGER.warning("Ignoring unreadable preferences at %s: %s", self._path, exc)
            return
        if not isinstance(data, dict):
            return
        level = str(data.get("log_level", "INFO") or "INFO").strip().upper()
        self.log_level = level if level in LOG_LEVELS else "INFO"
        self.log_retention = _coerce_int(data, "log_retention", 5, minimum=1, maximum=50)
        for kind in ("mute", "video"):
            setattr(
                self,
                f"{kind}_poll_interval_ms",
                _coerce_int(data, f"{kind}_poll_interval_ms", 1000, minimum=100, maximum=60000),
            )
            setattr(
                self,
                f"{kind}_verification_delay_ms",
                _coerce_int(data, f"{kind}_verification_delay_ms", 1000, minimum=0, maximum=30000),
            )
        self.max_attempts = _coerce_int(data, "max_attempts", 3, minimum=1, maximum=10)
        self.base_delay_ms = _coerce_int(data, "base_delay_ms", 200, minimum=0, maximum=10000)
        self.backoff_multiplier = _coerce_float(data, "backoff_multiplier", 1.0, minimum=0.1, maximum=10.0)
        self.activation_delay_ms = _coerce_int(data, "activation_delay_ms", 100, minimum=0, maximum=5000)
        self.probe_timeout_ms = _coerce_int(data, "probe_timeout_ms", 3000, minimum=50, maximum=60000)
        self.availability_timeout_ms = _coerce_int(data, "availability_timeout_ms", 2000, minimum=50, maximum=60000)

    def save(self) -> None:
        payload: Dict[str, Any] = {
            "log_level": str(self.log_level or "INFO"),
            "log_retention": int(self.log_retention),
            "mute_poll_interval_ms": int(self.mute_poll_interval_ms),
            "mute_verification_delay_ms": int(self.mute_verification_delay_ms),
            "video_poll_interval_ms": int(self.video_poll_interval_ms),
            "video_verification_delay_ms": int(self.video_verification_delay_ms),
            "max_attempts": int(self.max_attempts),
            "base_delay_ms": int(self.base_delay_ms),
            "backoff_multiplier": float(self.backoff_multiplier),
            "activation_delay_ms": int(self.activation_delay_ms),
            "probe_timeout_ms": int(self.probe_timeout_ms),
            "availability_timeout_ms": int(self.availability_timeout_ms),
        }
        self.plugin_dir.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    # Derived configuration -----------------------------------------------

    def toggle_config(self, kind: str, overrides: Optional[Mapping[str, Any]] = None) -> ToggleConfig:
        """Timing for one kind, with optional per-button overrides layered on top."""
        base = ToggleConfig(
            poll_interval_ms=int(getattr(self, f"{kind}_poll_interval_ms", 1000)),
            verification_delay_ms=int(getattr(self, f"{kind}_verification_delay_ms", 1000)),
            max_attempts=int(self.max_attempts),
            base_delay_ms=int(self.base_delay_ms),
            backoff_multiplier=float(self.backoff_multiplier),
            probe_timeout_ms=int(self.probe_timeout_ms),
            availability_timeout_ms=int(self.availability_timeout_ms),
        )
        return base.merged(overrides)
