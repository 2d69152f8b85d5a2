"""Probe strategies and availability checks for the Zoom desktop client."""
from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Sequence, Tuple

from toggle_core import Confidence, DetectionResult, Detector, ResourceAvailability, ToggleState

from .osascript import OsaScriptError, run_applescript, run_command
from .zoom_commands import MUTE, VIDEO, ZOOM_PROCESS

_LOGGER = logging.getLogger("Zoomer.Plugin.Probes")

ScriptRunner = Callable[[str], Awaitable[str]]
CommandRunner = Callable[[Sequence[str]], Awaitable[str]]

# Checked in order; AppleScript `contains` is case-insensitive, so "Unmute my audio"
# must be tested before "Mute my audio".
BUTTON_MARKERS: Dict[str, Tuple[Tuple[str, ToggleState], ...]] = {
    MUTE.kind: (("Unmute my audio", ToggleState.ON), ("Mute my audio", ToggleState.OFF)),
    VIDEO.kind: (("Start video", ToggleState.OFF), ("Stop video", ToggleState.ON)),
}

MENU_MARKERS: Dict[str, Tuple[Tuple[str, ToggleState], ...]] = {
    MUTE.kind: (("Unmute audio", ToggleState.ON), ("Mute audio", ToggleState.OFF)),
    VIDEO.kind: (("Start Video", ToggleState.OFF), ("Stop Video", ToggleState.ON)),
}

_TOKENS = {"on": ToggleState.ON, "off": ToggleState.OFF}


def _default_script_runner(script: str) -> Awaitable[str]:
    return run_applescript(script)


def _default_command_runner(argv: Sequence[str]) -> Awaitable[str]:
    return run_command(argv)


def button_description_script(markers: Sequence[Tuple[str, ToggleState]]) -> str:
    checks = []
    for marker, state in markers:
        checks.extend(
            [
                f'        set matchingButtons to (every button of zoomWindow whose description contains "{marker}")',
                "        if (count of matchingButtons) > 0 then",
                f'          return "{state.value}"',
                "        end if",
            ]
        )
    return "\n".join(
        [
            'tell application "System Events"',
            f'  tell process "{ZOOM_PROCESS}"',
            "    try",
            '      set zoomWindows to every window whose name contains "Zoom"',
            '      if (count of zoomWindows) is 0 then return "no_meeting"',
            "      repeat with zoomWindow in zoomWindows",
            *checks,
            "      end repeat",
            '      return "unknown"',
            "    on error errMsg",
            '      return "error: " & errMsg as string',
            "    end try",
            "  end tell",
            "end tell",
        ]
    )


def meeting_menu_script(markers: Sequence[Tuple[str, ToggleState]]) -> str:
    checks = []
    for marker, state in markers:
        checks.extend(
            [
                f'      if exists menu item "{marker}" of meetingMenu then',
                f'        return "{state.value}"',
                "      end if",
            ]
        )
    return "\n".join(
        [
            'tell application "System Events"',
            f'  tell process "{ZOOM_PROCESS}"',
            "    try",
            '      if not (exists menu bar item "Meeting" of menu bar 1) then return "no_meeting"',
            '      set meetingMenu to menu 1 of menu bar item "Meeting" of menu bar 1',
            *checks,
            '      return "unknown"',
            "    on error errMsg",
            '      return "error: " & errMsg as string',
            "    end try",
            "  end tell",
            "end tell",
        ]
    )


MEETING_CHECK_SCRIPT = "\n".join(
    [
        'tell application "System Events"',
        f'  tell process "{ZOOM_PROCESS}"',
        "    try",
        '      return exists menu bar item "Meeting" of menu bar 1',
        "    on error",
        "      return false",
        "    end try",
        "  end tell",
        "end tell",
    ]
)


class _ScriptProbe:
    """Runs one AppleScript and maps its `on`/`off` reply to a DetectionResult."""

    name = "script"
    confidence = Confidence.LOW

    def __init__(
        self,
        kind: str,
        script: str,
        *,
        runner: Optional[ScriptRunner] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kind = kind
        self._script = script
        self._runner = runner or _default_script_runner
        self._clock = clock

    async def probe(self) -> DetectionResult:
        try:
            reply = (await self._runner(self._script)).strip()
        except OsaScriptError as exc:
            _LOGGER.debug("%s %s detection failed: %s", self.name, self.kind, exc)
            return DetectionResult.unknown(self._clock(), source=self.name)
        state = _TOKENS.get(reply.lower())
        if state is None:
            if reply.startswith("error:"):
                _LOGGER.warning("Zoom %s detection AppleScript error (%s): %s", self.kind, self.name, reply)
            return DetectionResult.unknown(self._clock(), source=self.name)
        return DetectionResult(
            state=state,
            confidence=self.confidence,
            observed_at=self._clock(),
            source=self.name,
        )


class ButtonDescriptionProbe(_ScriptProbe):
    """Reads the meeting window's control button descriptions."""

    name = "button-description"
    confidence = Confidence.HIGH

    def __init__(self, kind: str, **kwargs) -> None:
        super().__init__(kind, button_description_script(BUTTON_MARKERS[kind]), **kwargs)


class MeetingMenuProbe(_ScriptProbe):
    """Reads which Meeting menu item is offered; coarser than the window buttons."""

    name = "meeting-menu"
    confidence = Confidence.MEDIUM

    def __init__(self, kind: str, **kwargs) -> None:
        super().__init__(kind, meeting_menu_script(MENU_MARKERS[kind]), **kwargs)


class ZoomAvailability:
    """Reports whether zoom.us is running and whether it is in a meeting."""

    def __init__(
        self,
        *,
        script_runner: Optional[ScriptRunner] = None,
        command_runner: Optional[CommandRunner] = None,
    ) -> None:
        self._run_script = script_runner or _default_script_runner
        self._run_command = command_runner or _default_command_runner

    async def is_running(self) -> bool:
        try:
            output = await self._run_command(["pgrep", "-f", ZOOM_PROCESS])
        except OsaScriptError:
            return False
        return bool(output.strip())

    async def in_meeting(self) -> bool:
        try:
            reply = await self._run_script(MEETING_CHECK_SCRIPT)
        except OsaScriptError as exc:
            _LOGGER.debug("Meeting check failed: %s", exc)
            return False
        return reply.strip().lower() == "true"

    async def check(self) -> ResourceAvailability:
        if not await self.is_running():
            return ResourceAvailability.absent()
        return ResourceAvailability(process_present=True, session_active=await self.in_meeting())


def register_zoom_probes(
    detector: Detector,
    *,
    runner: Optional[ScriptRunner] = None,
    clock: Callable[[], float] = time.time,
) -> Detector:
    for kind in (MUTE.kind, VIDEO.kind):
        detector.register(
            kind,
            [
                ButtonDescriptionProbe(kind, runner=runner, clock=clock),
                MeetingMenuProbe(kind, runner=runner, clock=clock),
            ],
        )
    return detector
