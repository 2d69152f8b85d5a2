"""Background asyncio loop hosting the toggle controllers for the desktop panel."""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Dict, Optional, Sequence

from PyQt6.QtCore import QObject, pyqtSignal

from toggle_core import (
    Detector,
    Executor,
    Scheduler,
    ToggleController,
    ToggleState,
    default_detector,
)
from zoomer_plugin.osascript import run_command_spec
from zoomer_plugin.preferences import Preferences
from zoomer_plugin.runtime import AvailabilityCheck
from zoomer_plugin.zoom_commands import TOGGLE_SPECS, ZoomToggleSpec, build_kind
from zoomer_plugin.zoom_probes import ZoomAvailability, register_zoom_probes

_LOGGER = logging.getLogger("Zoomer.Panel.Runtime")


class QtDisplay(QObject):
    """Display sink that re-emits controller output as Qt signals.

    Controllers call it on the loop thread; queued connections deliver the
    signals on the GUI thread.
    """

    state_changed = pyqtSignal(str, str)
    indicator_changed = pyqtSignal(str, str)

    def __init__(self, kind: str, parent: Optional[QObject] = None) -> None:
        super().__init__(parent)
        self.kind = kind

    def set_state(self, state: ToggleState) -> None:
        self.state_changed.emit(self.kind, state.value)

    def set_indicator(self, text: str) -> None:
        self.indicator_changed.emit(self.kind, text)


class PanelRuntime(QObject):
    """Runs one controller per Zoom toggle on a private event loop thread."""

    status_changed = pyqtSignal(str)

    def __init__(
        self,
        preferences: Preferences,
        *,
        specs: Optional[Sequence[ZoomToggleSpec]] = None,
        detector: Optional[Detector] = None,
        executor: Optional[Executor] = None,
        availability: Optional[AvailabilityCheck] = None,
    ) -> None:
        super().__init__()
        self._preferences = preferences
        self._specs: Dict[str, ZoomToggleSpec] = {spec.kind: spec for spec in (specs or TOGGLE_SPECS.values())}
        self._detector = detector
        self._executor = executor or Executor(run_command_spec)
        self._availability = availability or ZoomAvailability().check
        self.displays: Dict[str, QtDisplay] = {kind: QtDisplay(kind, self) for kind in self._specs}
        self._controllers: Dict[str, ToggleController] = {}
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._ready = threading.Event()

    @property
    def kinds(self) -> Sequence[str]:
        return tuple(self._specs)

    def controller(self, kind: str) -> Optional[ToggleController]:
        return self._controllers.get(kind)

    # Lifecycle ------------------------------------------------------------

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._ready.clear()
        self._thread = threading.Thread(target=self._thread_main, name="Zoomer-Panel", daemon=True)
        self._thread.start()

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(timeout)

    def stop(self, timeout: float = 5.0) -> None:
        loop = self._loop
        stop_event = self._stop_event
        if loop is not None and stop_event is not None and loop.is_running():
            loop.call_soon_threadsafe(stop_event.set)
        if self._thread:
            self._thread.join(timeout=timeout)
        self._thread = None

    def activate(self, kind: str) -> bool:
        """Queue an activation for ``kind``; safe to call from the GUI thread."""
        loop = self._loop
        if loop is None or not loop.is_running() or kind not in self._controllers:
            return False
        try:
            loop.call_soon_threadsafe(self._spawn_activate, kind)
        except RuntimeError as exc:
            _LOGGER.debug("Activation for %s not queued: %s", kind, exc)
            return False
        return True

    # Background thread ----------------------------------------------------

    def _thread_main(self) -> None:
        loop = asyncio.new_event_loop()
        self._loop = loop
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self._run())
        except Exception:
            _LOGGER.exception("Panel runtime terminated with an error")
        finally:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            self._loop = None
            self._ready.set()

    async def _run(self) -> None:
        self._stop_event = asyncio.Event()
        detector = self._detector
        if detector is None:
            detector = default_detector()
            if not detector.has_kind("mute"):
                register_zoom_probes(detector)
        scheduler = Scheduler()
        for kind, spec in self._specs.items():
            toggle_kind = build_kind(spec, activation_delay_ms=self._preferences.activation_delay_ms)
            self._controllers[kind] = ToggleController(
                toggle_kind,
                display=self.displays[kind],
                availability=self._availability,
                executor=self._executor,
                scheduler=scheduler,
                detector=detector,
                config=self._preferences.toggle_config(kind),
                name=f"panel-{kind}",
            )
        self.status_changed.emit("Connecting to Zoom…")
        await asyncio.gather(*(controller.on_appear() for controller in self._controllers.values()))
        self.status_changed.emit("Ready")
        self._ready.set()
        try:
            await self._stop_event.wait()
        finally:
            for controller in self._controllers.values():
                controller.on_disappear()
            scheduler.cancel_all()
            await scheduler.join()
            self._controllers.clear()
            self._stop_event = None

    def _spawn_activate(self, kind: str) -> None:
        controller = self._controllers.get(kind)
        if controller is None:
            return
        task = asyncio.ensure_future(controller.on_activate())
        task.add_done_callback(self._activation_done)

    @staticmethod
    def _activation_done(task: "asyncio.Future[None]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.error("Panel activation failed: %s", exc, exc_info=exc)
