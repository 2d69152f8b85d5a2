from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from .detector import Detector, default_detector
from .exclusion_guard import ExclusionGuard
from .executor import ExecutionError, Executor
from .models import (
    CommandSpec,
    DetectionResult,
    ResourceAvailability,
    ToggleConfig,
    ToggleKind,
    ToggleSession,
    ToggleState,
)
from .scheduler import CancelToken, Scheduler

_LOGGER = logging.getLogger("Zoomer.Core.Controller")


class Display(Protocol):
    def set_state(self, state: ToggleState) -> None: ...

    def set_indicator(self, text: str) -> None: ...


AvailabilityCheck = Callable[[], Awaitable[ResourceAvailability]]


class ToggleController:
    """Optimistic toggle-then-verify controller for one binary resource state.

    All reconciliation cycles (appear, activation, verification, periodic drift
    check) go through one ExclusionGuard. A user activation holds the guard from
    the optimistic flip until its verification has run, so periodic ticks that
    land in between are dropped rather than queued.
    """

    def __init__(
        self,
        kind: ToggleKind,
        *,
        display: Display,
        availability: AvailabilityCheck,
        executor: Executor,
        scheduler: Scheduler,
        detector: Optional[Detector] = None,
        config: Optional[ToggleConfig] = None,
        clock: Callable[[], float] = time.time,
        name: str = "",
    ) -> None:
        self._kind = kind
        self._command = kind.command
        self._display = display
        self._availability = availability
        self._executor = executor
        self._scheduler = scheduler
        self._detector = detector or default_detector()
        self._config = config or ToggleConfig()
        self._clock = clock
        self._name = name or kind.name
        self._guard = ExclusionGuard(self._name)

        self._confirmed: ToggleState = ToggleState.UNKNOWN
        self._displayed: ToggleState = ToggleState.UNKNOWN
        self._indicator: str = ""
        self._last_result: Optional[DetectionResult] = None
        self._session: Optional[ToggleSession] = None
        self._unconfirmed = False
        self._poll_token: Optional[CancelToken] = None
        self._verify_token: Optional[CancelToken] = None
        self._appeared = False
        self._torn_down = False

    # Introspection --------------------------------------------------------

    @property
    def kind(self) -> ToggleKind:
        return self._kind

    @property
    def config(self) -> ToggleConfig:
        return self._config

    @property
    def guard(self) -> ExclusionGuard:
        return self._guard

    @property
    def confirmed_state(self) -> ToggleState:
        return self._confirmed

    @property
    def displayed_state(self) -> ToggleState:
        return self._displayed

    @property
    def indicator(self) -> str:
        return self._indicator

    @property
    def session(self) -> Optional[ToggleSession]:
        return self._session

    @property
    def unconfirmed(self) -> bool:
        """True while the display shows an optimistic state no probe has backed yet."""
        return self._unconfirmed

    @property
    def polling(self) -> bool:
        return self._scheduler.is_armed(self._poll_token)

    @property
    def verification_pending(self) -> bool:
        return self._scheduler.is_armed(self._verify_token)

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    # Configuration --------------------------------------------------------

    def configure(self, options: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> ToggleConfig:
        if self._appeared:
            raise RuntimeError(f"{self._name}: configure() must be called before on_appear()")
        merged = dict(options or {})
        merged.update(kwargs)
        self._config = self._config.merged(merged)
        _LOGGER.debug(
            "%s configured: poll=%dms verify=%dms attempts=%d base_delay=%dms",
            self._name,
            self._config.poll_interval_ms,
            self._config.verification_delay_ms,
            self._config.max_attempts,
            self._config.base_delay_ms,
        )
        return self._config

    def set_command(self, command: CommandSpec) -> None:
        self._command = command

    # Host hooks -----------------------------------------------------------

    async def on_appear(self) -> None:
        if self._torn_down:
            return
        self._appeared = True
        if not self._guard.try_enter("appear"):
            return
        present = False
        try:
            present = await self._reconcile_cycle(reason="appear")
        finally:
            self._guard.exit()
        if present and not self._torn_down:
            self._arm_poll()

    async def on_activate(self) -> None:
        if self._torn_down:
            return
        if not self._guard.try_enter("activate"):
            _LOGGER.debug("%s activation ignored; a cycle is already in flight", self._name)
            return
        hold_for_verification = False
        try:
            hold_for_verification = await self._activate()
        finally:
            if not hold_for_verification:
                self._guard.exit()

    def on_disappear(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        self._scheduler.cancel(self._poll_token)
        self._scheduler.cancel(self._verify_token)
        self._poll_token = None
        self._verify_token = None
        if self._session is not None:
            _LOGGER.debug("%s discarding in-flight session on disappear", self._name)
        self._session = None
        self._guard.close()

    # Cycles ---------------------------------------------------------------

    async def _activate(self) -> bool:
        availability = await self._check_availability()
        if self._torn_down:
            return False
        if not availability.process_present:
            self._show_unavailable()
            self._stop_poll()
            return False
        if not availability.session_active:
            self._show_indicator(self._kind.no_session_text)
            return False

        previous = self._confirmed
        target = previous.opposite()
        session = ToggleSession(
            requested_at=self._clock(),
            previous_state=previous,
            optimistic_state=target,
        )
        self._session = session
        self._stop_poll()
        self._show_indicator("")
        if target is not ToggleState.UNKNOWN:
            self._show_state(target)
        _LOGGER.debug("%s optimistic flip %s -> %s", self._name, previous.value, target.value)

        try:
            session.attempts_used = await self._executor.execute(self._command, self._config.retry_policy)
        except ExecutionError as exc:
            _LOGGER.error("Failed to toggle %s: %s", self._name, exc.last_error)
            if self._session is session:
                self._session = None
            if self._torn_down:
                return False
            self._show_indicator(self._kind.error_text)
            if previous is not ToggleState.UNKNOWN:
                self._show_state(previous)
            self._displayed = previous
            self._arm_poll()
            return False

        if self._torn_down or self._session is not session:
            return False
        delay_ms = self._config.verification_delay_ms
        session.verification_deadline = self._clock() + delay_ms / 1000.0
        self._verify_token = self._scheduler.schedule_once(
            delay_ms,
            lambda: self._verify(session),
            label=f"{self._name}-verify",
        )
        return True

    async def _verify(self, session: ToggleSession) -> None:
        if self._torn_down or self._session is not session:
            return
        self._verify_token = None
        try:
            present = await self._reconcile_cycle(reason="verify", session=session)
        finally:
            if self._session is session:
                self._session = None
            if not self._torn_down:
                self._guard.exit()
        if present and not self._torn_down:
            self._arm_poll()

    async def poll_once(self) -> None:
        if self._torn_down:
            return
        if not self._guard.try_enter("poll"):
            return
        try:
            present = await self._reconcile_cycle(reason="poll")
        finally:
            self._guard.exit()
        if present and not self._torn_down:
            # Re-armed from now after every successful reconciliation.
            self._arm_poll()

    async def _reconcile_cycle(self, *, reason: str, session: Optional[ToggleSession] = None) -> bool:
        """Check availability, probe and reconcile. Returns False when the resource is gone."""
        availability = await self._check_availability()
        if self._torn_down:
            return False
        if not availability.process_present:
            _LOGGER.debug("%s resource absent during %s", self._name, reason)
            self._show_unavailable()
            self._stop_poll()
            return False
        if not availability.session_active:
            self._show_indicator(self._kind.no_session_text)
            return True
        result = await self._detector.probe(self._kind.name, timeout=self._config.probe_timeout_ms / 1000.0)
        if self._torn_down:
            return False
        self._reconcile(result, reason=reason, session=session)
        return True

    def _reconcile(self, result: DetectionResult, *, reason: str, session: Optional[ToggleSession]) -> None:
        self._last_result = result
        if not result.is_evidence:
            if session is not None:
                self._unconfirmed = True
                _LOGGER.debug(
                    "%s verification inconclusive; keeping optimistic %s",
                    self._name,
                    session.optimistic_state.value,
                )
            return
        if result.state is not self._displayed and self._displayed is not ToggleState.UNKNOWN:
            _LOGGER.info(
                "%s drift during %s: displayed=%s detected=%s (%s, %s)",
                self._name,
                reason,
                self._displayed.value,
                result.state.value,
                result.source or "probe",
                result.confidence.name,
            )
        if session is not None:
            session.confirmed = True
        self._confirmed = result.state
        self._unconfirmed = False
        self._show_state(result.state)
        self._show_indicator("")

    # Helpers --------------------------------------------------------------

    async def _check_availability(self) -> ResourceAvailability:
        timeout = self._config.availability_timeout_ms / 1000.0
        try:
            availability = await asyncio.wait_for(self._availability(), timeout=timeout)
        except asyncio.TimeoutError:
            _LOGGER.debug("%s availability check timed out after %.2fs", self._name, timeout)
            return ResourceAvailability.absent()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            _LOGGER.warning("%s availability check failed: %s", self._name, exc)
            return ResourceAvailability.absent()
        if not isinstance(availability, ResourceAvailability):
            return ResourceAvailability.absent()
        return availability

    def _arm_poll(self) -> None:
        self._scheduler.cancel(self._poll_token)
        self._poll_token = self._scheduler.schedule_periodic(
            self._config.poll_interval_ms,
            self.poll_once,
            label=f"{self._name}-poll",
        )

    def _stop_poll(self) -> None:
        self._scheduler.cancel(self._poll_token)
        self._poll_token = None

    def _show_unavailable(self) -> None:
        self._show_indicator(self._kind.unavailable_text)

    def _show_state(self, state: ToggleState) -> None:
        self._displayed = state
        try:
            self._display.set_state(state)
        except Exception as exc:
            _LOGGER.debug("%s display.set_state failed: %s", self._name, exc)

    def _show_indicator(self, text: str) -> None:
        if text == self._indicator:
            return
        self._indicator = text
        try:
            self._display.set_indicator(text)
        except Exception as exc:
            _LOGGER.debug("%s display.set_indicator failed: %s", self._name, exc)
