"""Per-button controller lifecycle for the Stream Deck host."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set

from toggle_core import (
    Detector,
    Executor,
    ResourceAvailability,
    Scheduler,
    ToggleController,
    ToggleKind,
    ToggleState,
    default_detector,
)

from .osascript import run_command_spec
from .preferences import Preferences
from .streamdeck_connection import StreamDeckConnection
from .zoom_commands import SPECS_BY_ACTION, ZoomToggleSpec, build_command, build_kind
from .zoom_probes import ZoomAvailability, register_zoom_probes

_LOGGER = logging.getLogger("Zoomer.Plugin.Runtime")

AvailabilityCheck = Callable[[], Awaitable[ResourceAvailability]]


class StreamDeckDisplay:
    """Display sink that renders a controller onto one Stream Deck key."""

    def __init__(self, connection: StreamDeckConnection, context: str, kind: ToggleKind) -> None:
        self._connection = connection
        self._context = context
        self._kind = kind

    def set_state(self, state: ToggleState) -> None:
        index = self._kind.state_index(state)
        if index is None:
            return
        self._connection.set_state(self._context, index)

    def set_indicator(self, text: str) -> None:
        self._connection.set_title(self._context, text)
        if text and text == self._kind.error_text:
            self._connection.show_alert(self._context)


class PluginRuntime:
    """Keeps one ToggleController per Stream Deck context and routes events to it."""

    def __init__(
        self,
        connection: StreamDeckConnection,
        preferences: Preferences,
        *,
        detector: Optional[Detector] = None,
        executor: Optional[Executor] = None,
        availability: Optional[AvailabilityCheck] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.connection = connection
        self.preferences = preferences
        if detector is None:
            detector = default_detector()
            if not detector.has_kind("mute"):
                register_zoom_probes(detector)
        self._detector = detector
        self._executor = executor or Executor(run_command_spec)
        self._availability = availability or ZoomAvailability().check
        self._scheduler = scheduler or Scheduler()
        self._controllers: Dict[str, ToggleController] = {}
        self._specs: Dict[str, ZoomToggleSpec] = {}
        self._tasks: Set["asyncio.Task[Any]"] = set()

    @property
    def controllers(self) -> Dict[str, ToggleController]:
        return dict(self._controllers)

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    async def run(self) -> None:
        try:
            await self.connection.run(self.handle_message)
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        for context in list(self._controllers):
            self._teardown(context)
        self._scheduler.cancel_all()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self._scheduler.join()

    async def join(self) -> None:
        """Wait for event tasks spawned so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Event dispatch -------------------------------------------------------

    def handle_message(self, message: Mapping[str, Any]) -> None:
        event = message.get("event")
        context = message.get("context")
        payload = message.get("payload") or {}
        if not isinstance(payload, Mapping):
            payload = {}
        if event == "willAppear":
            self._on_will_appear(str(context), str(message.get("action") or ""), payload)
        elif event == "willDisappear":
            self._teardown(str(context))
        elif event == "keyDown":
            self._on_key_down(str(context))
        elif event == "didReceiveSettings":
            self._on_settings(str(context), payload)
        else:
            _LOGGER.debug("Ignoring Stream Deck event %s", event)

    def _on_will_appear(self, context: str, action: str, payload: Mapping[str, Any]) -> None:
        spec = SPECS_BY_ACTION.get(action)
        if spec is None:
            _LOGGER.debug("willAppear for unknown action %s", action)
            return
        if context in self._controllers:
            self._teardown(context)
        settings = self._settings_from(payload)
        kind = build_kind(spec, settings, activation_delay_ms=self.preferences.activation_delay_ms)
        controller = ToggleController(
            kind,
            display=StreamDeckDisplay(self.connection, context, kind),
            availability=self._availability,
            executor=self._executor,
            scheduler=self._scheduler,
            detector=self._detector,
            config=self.preferences.toggle_config(spec.kind, settings),
            name=f"{spec.kind}[{context[:8]}]",
        )
        self._controllers[context] = controller
        self._specs[context] = spec
        _LOGGER.debug("Controller created for %s (%s)", context, spec.kind)
        self._spawn(controller.on_appear(), f"appear:{context}")

    def _on_key_down(self, context: str) -> None:
        controller = self._controllers.get(context)
        if controller is None:
            _LOGGER.debug("keyDown for unknown context %s", context)
            return
        self._spawn(controller.on_activate(), f"activate:{context}")

    def _on_settings(self, context: str, payload: Mapping[str, Any]) -> None:
        controller = self._controllers.get(context)
        spec = self._specs.get(context)
        if controller is None or spec is None:
            return
        settings = self._settings_from(payload)
        controller.set_command(
            build_command(spec, settings, activation_delay_ms=self.preferences.activation_delay_ms)
        )
        _LOGGER.debug("Settings updated for %s; timing changes apply when the key reappears", context)

    def _teardown(self, context: str) -> None:
        controller = self._controllers.pop(context, None)
        self._specs.pop(context, None)
        if controller is None:
            return
        controller.on_disappear()
        _LOGGER.debug("Controller for %s torn down", context)

    # Helpers --------------------------------------------------------------

    @staticmethod
    def _settings_from(payload: Mapping[str, Any]) -> Dict[str, Any]:
        settings = payload.get("settings")
        return dict(settings) if isinstance(settings, Mapping) else {}

    def _spawn(self, coro: Awaitable[Any], label: str) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(finished: "asyncio.Task[Any]") -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                _LOGGER.error("Event task %s failed: %s", label, exc, exc_info=exc)

        task.add_done_callback(_done)
