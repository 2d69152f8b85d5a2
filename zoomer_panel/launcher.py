from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from PyQt6.QtWidgets import QApplication

from zoomer_panel.panel_runtime import PanelRuntime
from zoomer_panel.panel_window import TogglePanel
from zoomer_plugin.logging_utils import build_rotating_file_handler, resolve_log_level, resolve_logs_dir
from zoomer_plugin.preferences import Preferences

_LOGGER = logging.getLogger("Zoomer.Panel")


def resolve_settings_dir(raw: Optional[str]) -> Path:
    if raw:
        return Path(raw).expanduser().resolve()
    return Path(__file__).resolve().parent.parent


def _configure_logging(preferences: Preferences) -> None:
    logger = logging.getLogger("Zoomer")
    logger.setLevel(resolve_log_level(preferences.log_level))
    if any(getattr(handler, "_zoomer_handler", None) == "panel" for handler in logger.handlers):
        return
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s", "%Y-%m-%d %H:%M:%S")
    try:
        handler = build_rotating_file_handler(
            resolve_logs_dir("Zoomer"),
            "zoomer_panel.log",
            retention=preferences.log_retention,
            formatter=formatter,
        )
    except OSError as exc:
        sys.stderr.write(f"[zoomer-panel] file logging unavailable: {exc}\n")
        return
    handler._zoomer_handler = "panel"  # type: ignore[attr-defined]
    logger.addHandler(handler)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Zoomer desktop toggle panel")
    parser.add_argument("--settings-dir", help="Directory holding zoomer_settings.json")
    args = parser.parse_args(argv)

    preferences = Preferences(resolve_settings_dir(args.settings_dir))
    _configure_logging(preferences)
    _LOGGER.info("Starting desktop panel (settings %s)", preferences.path)

    app = QApplication(sys.argv)
    runtime = PanelRuntime(preferences)
    window = TogglePanel(runtime.kinds, runtime.activate)
    for display in runtime.displays.values():
        display.state_changed.connect(window.set_state)
        display.indicator_changed.connect(window.set_indicator)
    runtime.status_changed.connect(window.set_status_text)

    window.show()
    runtime.start()

    exit_code = app.exec()
    runtime.stop()
    _LOGGER.info("Desktop panel exiting with code %s", exit_code)
    return int(exit_code)
