"""Zoom toggle kinds and the AppleScript commands that flip them."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

from toggle_core import CommandSpec, ToggleKind, ToggleState

_LOGGER = logging.getLogger("Zoomer.Plugin.Commands")

ZOOM_PROCESS = "zoom.us"
CONTROL_KEYBOARD = "keyboard"
CONTROL_MENUBAR = "menubar"
DEFAULT_ACTIVATION_DELAY_MS = 100

_MODIFIER_MAP = {
    "cmd": "command down",
    "command": "command down",
    "shift": "shift down",
    "opt": "option down",
    "option": "option down",
    "alt": "option down",
    "ctrl": "control down",
    "control": "control down",
}


class ShortcutError(ValueError):
    """Keyboard shortcut string could not be turned into a keystroke."""


@dataclass(frozen=True)
class ZoomToggleSpec:
    """Static description of one Zoom toggle action."""

    kind: str
    action_uuid: str
    default_shortcut: str
    menu_items: Tuple[str, str]
    state_indices: Mapping[ToggleState, int]


MUTE = ZoomToggleSpec(
    kind="mute",
    action_uuid="com.thiagoandf.zoomer.mute-toggle",
    default_shortcut="cmd+shift+option+a",
    menu_items=("Mute audio", "Unmute audio"),
    # ON means muted; Stream Deck state 0 is the muted icon.
    state_indices={ToggleState.ON: 0, ToggleState.OFF: 1},
)

VIDEO = ZoomToggleSpec(
    kind="video",
    action_uuid="com.thiagoandf.zoomer.video-toggle",
    default_shortcut="cmd+shift+v",
    menu_items=("Stop Video", "Start Video"),
    state_indices={ToggleState.OFF: 0, ToggleState.ON: 1},
)

TOGGLE_SPECS: Dict[str, ZoomToggleSpec] = {MUTE.kind: MUTE, VIDEO.kind: VIDEO}
SPECS_BY_ACTION: Dict[str, ZoomToggleSpec] = {spec.action_uuid: spec for spec in TOGGLE_SPECS.values()}


def parse_shortcut(shortcut: Optional[str]) -> Tuple[str, List[str]]:
    """Split ``cmd+shift+a`` into the key and the AppleScript modifier clauses."""
    if not shortcut or not isinstance(shortcut, str):
        raise ShortcutError(f"Invalid keyboard shortcut: {shortcut!r}")
    parts = [part.strip() for part in shortcut.lower().split("+")]
    key = parts[-1]
    if not key:
        raise ShortcutError(f"Invalid keyboard shortcut format: {shortcut!r}")
    modifiers: List[str] = []
    for token in parts[:-1]:
        mapped = _MODIFIER_MAP.get(token)
        if mapped is None:
            _LOGGER.warning("Unknown modifier '%s' in shortcut: %s", token, shortcut)
            continue
        if mapped not in modifiers:
            modifiers.append(mapped)
    return key, modifiers


def keystroke_script(shortcut: str) -> str:
    key, modifiers = parse_shortcut(shortcut)
    escaped = key.replace("\\", "\\\\").replace('"', '\\"')
    if modifiers:
        return f'keystroke "{escaped}" using {{{", ".join(modifiers)}}}'
    return f'keystroke "{escaped}"'


def keyboard_script(shortcut: str, *, activation_delay_ms: int = DEFAULT_ACTIVATION_DELAY_MS) -> str:
    keystroke = keystroke_script(shortcut)
    delay = max(0, activation_delay_ms) / 1000.0
    return "\n".join(
        [
            f'tell application "{ZOOM_PROCESS}"',
            "  activate",
            "end tell",
            f"delay {delay:g}",
            'tell application "System Events"',
            f"  {keystroke}",
            "end tell",
        ]
    )


def menubar_script(spec: ZoomToggleSpec, shortcut: str) -> str:
    """Click the Meeting menu item for ``spec``; fall back to the keystroke."""
    first, second = spec.menu_items
    fallback = keystroke_script(shortcut)
    return "\n".join(
        [
            'tell application "System Events"',
            f'  tell process "{ZOOM_PROCESS}"',
            "    try",
            f'      click menu item "{first}" of menu 1 of menu bar item "Meeting" of menu bar 1',
            "    on error",
            "      try",
            f'        click menu item "{second}" of menu 1 of menu bar item "Meeting" of menu bar 1',
            "      on error",
            f"        {fallback}",
            "      end try",
            "    end try",
            "  end tell",
            "end tell",
        ]
    )


def resolve_shortcut(spec: ZoomToggleSpec, shortcut: Optional[str]) -> str:
    candidate = (shortcut or "").strip() or spec.default_shortcut
    try:
        parse_shortcut(candidate)
    except ShortcutError as exc:
        _LOGGER.warning("%s; using default %s for %s", exc, spec.default_shortcut, spec.kind)
        return spec.default_shortcut
    return candidate


def build_command(
    spec: ZoomToggleSpec,
    settings: Optional[Mapping[str, object]] = None,
    *,
    activation_delay_ms: int = DEFAULT_ACTIVATION_DELAY_MS,
) -> CommandSpec:
    """Build the toggle command from per-button settings (``controlMethod``, ``keyboardShortcut``)."""
    settings = settings or {}
    method = str(settings.get("controlMethod") or CONTROL_KEYBOARD).strip().lower()
    shortcut = resolve_shortcut(spec, settings.get("keyboardShortcut"))  # type: ignore[arg-type]
    if method == CONTROL_MENUBAR:
        script = menubar_script(spec, shortcut)
    else:
        if method != CONTROL_KEYBOARD:
            _LOGGER.warning("Unknown control method '%s' for %s; using keyboard", method, spec.kind)
            method = CONTROL_KEYBOARD
        script = keyboard_script(shortcut, activation_delay_ms=activation_delay_ms)
    return CommandSpec(
        name=f"zoom-{spec.kind}-toggle",
        script=script,
        description=f"Zoom {spec.kind} toggle via {method} ({shortcut})",
    )


def build_kind(
    spec: ZoomToggleSpec,
    settings: Optional[Mapping[str, object]] = None,
    *,
    activation_delay_ms: int = DEFAULT_ACTIVATION_DELAY_MS,
) -> ToggleKind:
    return ToggleKind(
        name=spec.kind,
        command=build_command(spec, settings, activation_delay_ms=activation_delay_ms),
        state_indices=dict(spec.state_indices),
        unavailable_text="Zoom\nNot Running",
        no_session_text="Not in\nMeeting",
        error_text="Error",
    )
