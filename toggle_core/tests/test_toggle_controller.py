from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable, List, Optional

import pytest

from toggle_core.controller import ToggleController
from toggle_core.executor import ExecutionError, Executor
from toggle_core.models import (
    CommandSpec,
    Confidence,
    DetectionResult,
    ResourceAvailability,
    ToggleConfig,
    ToggleKind,
    ToggleState,
)
from toggle_core.scheduler import Scheduler

ON = ToggleState.ON
OFF = ToggleState.OFF
UNKNOWN = ToggleState.UNKNOWN


class AfterHarness:
    def __init__(self) -> None:
        self.scheduled: list[tuple[str, int, object]] = []
        self.cancelled: list[object] = []
        self.fired: set[str] = set()

    def after(self, ms: int, cb) -> str:
        handle = f"h{len(self.scheduled) + 1}"
        self.scheduled.append((handle, ms, cb))
        return handle

    def cancel(self, handle: object) -> None:
        self.cancelled.append(handle)

    def pending(self) -> list[tuple[str, int, object]]:
        return [entry for entry in self.scheduled if entry[0] not in self.cancelled and entry[0] not in self.fired]

    def run(self, handle: str) -> None:
        for h, _ms, cb in list(self.scheduled):
            if h == handle:
                self.fired.add(h)
                cb()
                return
        raise AssertionError(f"Handle {handle} not found")

    def run_pending(self) -> str:
        pending = self.pending()
        assert len(pending) == 1, f"expected one pending timer, got {pending}"
        handle = pending[0][0]
        self.run(handle)
        return handle


class FakeDisplay:
    def __init__(self) -> None:
        self.states: List[ToggleState] = []
        self.indicators: List[str] = []

    def set_state(self, state: ToggleState) -> None:
        self.states.append(state)

    def set_indicator(self, text: str) -> None:
        self.indicators.append(text)


class FakeAvailability:
    def __init__(self, present: bool = True, session: bool = True) -> None:
        self.present = present
        self.session = session
        self.calls = 0

    async def __call__(self) -> ResourceAvailability:
        self.calls += 1
        return ResourceAvailability(process_present=self.present, session_active=self.session)


class FakeDetector:
    def __init__(self, results: Iterable[DetectionResult] = ()) -> None:
        self.results = list(results)
        self.calls = 0

    def push(self, *results: DetectionResult) -> None:
        self.results.extend(results)

    async def probe(self, kind: str, *, timeout: Optional[float] = None) -> DetectionResult:
        self.calls += 1
        if self.results:
            return self.results.pop(0)
        return DetectionResult.unknown(0.0)


class FakeExecutor:
    def __init__(self, *, fail: bool = False, gate: Optional[asyncio.Event] = None) -> None:
        self.fail = fail
        self.gate = gate
        self.calls = 0
        self.started: Optional[asyncio.Event] = None

    async def execute(self, command: CommandSpec, policy=None) -> int:
        self.calls += 1
        if self.started is not None:
            self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise ExecutionError(command, 3, RuntimeError("osascript failed"))
        return 1


def detected(state: ToggleState, confidence: Confidence = Confidence.HIGH, *, stale: bool = False) -> DetectionResult:
    return DetectionResult(state=state, confidence=confidence, observed_at=0.0, source="fake", stale=stale)


@dataclass
class Rig:
    controller: ToggleController
    harness: AfterHarness
    scheduler: Scheduler
    display: FakeDisplay
    detector: FakeDetector
    executor: object
    availability: FakeAvailability


KIND = ToggleKind(
    name="mute",
    command=CommandSpec(name="mute-toggle", script="keystroke"),
    unavailable_text="Gone",
    no_session_text="Idle",
    error_text="Error",
)


def build_rig(
    *,
    results: Iterable[DetectionResult] = (),
    executor=None,
    availability: Optional[FakeAvailability] = None,
    config: Optional[ToggleConfig] = None,
) -> Rig:
    harness = AfterHarness()
    scheduler = Scheduler(after=harness.after, after_cancel=harness.cancel)
    display = FakeDisplay()
    detector = FakeDetector(results)
    executor = executor or FakeExecutor()
    availability = availability or FakeAvailability()
    controller = ToggleController(
        KIND,
        display=display,
        availability=availability,
        executor=executor,
        scheduler=scheduler,
        detector=detector,  # type: ignore[arg-type]
        config=config,
        clock=lambda: 100.0,
    )
    return Rig(controller, harness, scheduler, display, detector, executor, availability)


async def fire(rig: Rig) -> str:
    handle = rig.harness.run_pending()
    await rig.scheduler.join()
    return handle


# Appearance and polling -----------------------------------------------------


def test_appear_shows_detected_state_and_arms_poll() -> None:
    rig = build_rig(results=[detected(OFF)])

    asyncio.run(rig.controller.on_appear())

    assert rig.display.states == [OFF]
    assert rig.controller.confirmed_state is OFF
    assert rig.controller.polling
    assert [ms for _h, ms, _cb in rig.harness.pending()] == [1000]


def test_poll_tick_corrects_drift_and_rearms() -> None:
    rig = build_rig(results=[detected(OFF), detected(ON, Confidence.MEDIUM)])

    async def scenario() -> None:
        await rig.controller.on_appear()
        await fire(rig)

    asyncio.run(scenario())

    assert rig.display.states == [OFF, ON]
    assert rig.controller.confirmed_state is ON
    assert len(rig.harness.pending()) == 1
    assert rig.controller.polling


def test_poll_interval_comes_from_config() -> None:
    rig = build_rig(results=[detected(OFF)], config=ToggleConfig(poll_interval_ms=1500))

    asyncio.run(rig.controller.on_appear())

    assert rig.harness.pending()[0][1] == 1500


# Optimistic activation ------------------------------------------------------


def test_activation_flips_optimistically_then_confirms() -> None:
    rig = build_rig(results=[detected(OFF)])

    async def scenario() -> None:
        await rig.controller.on_appear()
        await rig.controller.on_activate()

        assert rig.display.states[-1] is ON
        assert rig.controller.displayed_state is ON
        assert rig.controller.confirmed_state is OFF
        assert rig.controller.verification_pending
        assert not rig.controller.polling
        assert rig.controller.guard.held
        assert rig.harness.pending()[0][1] == 1000
        session = rig.controller.session
        assert session is not None
        assert session.previous_state is OFF
        assert session.optimistic_state is ON
        assert session.verification_deadline == pytest.approx(101.0)
        assert session.attempts_used == 1

        rig.detector.push(detected(ON))
        await fire(rig)

    asyncio.run(scenario())

    assert rig.executor.calls == 1
    assert rig.controller.confirmed_state is ON
    assert rig.controller.session is None
    assert not rig.controller.guard.held
    assert rig.controller.polling


def test_verification_adopts_detected_state_when_optimism_was_wrong() -> None:
    rig = build_rig(results=[detected(OFF)])

    async def scenario() -> None:
        await rig.controller.on_appear()
        await rig.controller.on_activate()
        rig.detector.push(detected(OFF, Confidence.MEDIUM))
        await fire(rig)

    asyncio.run(scenario())

    assert rig.display.states == [OFF, ON, OFF]
    assert rig.controller.displayed_state is OFF
    assert rig.controller.confirmed_state is OFF


def test_unknown_verification_keeps_optimistic_state() -> None:
    rig = build_rig(results=[detected(ON)])

    async def scenario() -> None:
        await rig.controller.on_appear()
        await rig.controller.on_activate()
        rig.detector.push(detected(UNKNOWN, Confidence.LOW))
        await fire(rig)

    asyncio.run(scenario())

    assert rig.controller.displayed_state is OFF
    assert rig.display.states[-1] is OFF
    assert rig.controller.confirmed_state is ON
    assert rig.controller.unconfirmed is True


def test_second_press_after_unconfirmed_verification_targets_confirmed_opposite() -> None:
    rig = build_rig(results=[detected(OFF)])

    async def scenario() -> None:
        await rig.controller.on_appear()
        await rig.controller.on_activate()
        rig.detector.push(detected(UNKNOWN, Confidence.LOW))
        await fire(rig)
        await rig.controller.on_activate()
        rig.detector.push(detected(UNKNOWN, Confidence.LOW))
        await fire(rig)

    asyncio.run(scenario())

    # Without evidence the confirmed state never moved, so both presses flip OFF to ON.
    assert rig.executor.calls == 2  # type: ignore[attr-defined]
    assert rig.display.states == [OFF, ON, ON]
    assert rig.controller.confirmed_state is OFF
    assert rig.controller.unconfirmed is True


def test_stale_cached_result_does_not_revert_optimism() -> None:
    rig = build_rig(results=[detected(ON)])

    async def scenario() -> None:
        await rig.controller.on_appear()
        await rig.controller.on_activate()
        rig.detector.push(detected(ON, Confidence.LOW, stale=True))
        await fire(rig)

    asyncio.run(scenario())

    assert rig.controller.displayed_state is OFF
    assert rig.controller.unconfirmed is True


def test_activation_with_unknown_state_still_executes() -> None:
    rig = build_rig()

    async def scenario() -> None:
        await rig.controller.on_appear()
        await rig.controller.on_activate()

    asyncio.run(scenario())

    assert rig.executor.calls == 1
    assert rig.display.states == []
    assert rig.controller.verification_pending


# Retry and exhaustion -------------------------------------------------------


class FlakyRunner:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def __call__(self, command: CommandSpec) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"attempt {self.calls}")


def test_retry_then_success_shows_optimistic_state() -> None:
    runner = FlakyRunner(failures=2)
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    rig = build_rig(
        results=[detected(OFF)],
        executor=Executor(runner, sleep=_sleep),
        config=ToggleConfig(max_attempts=3, base_delay_ms=200),
    )

    async def scenario() -> None:
        await rig.controller.on_appear()
        await rig.controller.on_activate()

    asyncio.run(scenario())

    assert runner.calls == 3
    assert delays == pytest.approx([0.2, 0.4])
    assert rig.controller.displayed_state is ON
    assert "Error" not in rig.display.indicators
    assert rig.controller.verification_pending


def test_exhaustion_restores_previous_state_and_skips_verification() -> None:
    runner = FlakyRunner(failures=10)

    async def _sleep(delay: float) -> None:
        return None

    rig = build_rig(results=[detected(OFF)], executor=Executor(runner, sleep=_sleep))

    async def scenario() -> None:
        await rig.controller.on_appear()
        await rig.controller.on_activate()

    asyncio.run(scenario())

    assert runner.calls == 3
    assert rig.display.indicators[-1] == "Error"
    assert rig.display.states == [OFF, ON, OFF]
    assert rig.controller.displayed_state is OFF
    assert not rig.controller.verification_pending
    assert rig.controller.session is None
    assert not rig.controller.guard.held
    assert rig.controller.polling


def test_error_indicator_clears_after_next_confirmed_poll() -> None:
    rig = build_rig(results=[detected(OFF)], executor=FakeExecutor(fail=True))

    async def scenario() -> None:
        await rig.controller.on_appear()
        await rig.controller.on_activate()
        rig.detector.push(detected(OFF))
        await fire(rig)

    asyncio.run(scenario())

    assert rig.display.indicators == ["Error", ""]
    assert rig.controller.indicator == ""


# Availability ---------------------------------------------------------------


def test_absent_resource_skips_detector_and_executor() -> None:
    availability = FakeAvailability(present=False)
    rig = build_rig(results=[detected(ON)], availability=availability)

    async def scenario() -> None:
        await rig.controller.on_appear()
        await rig.controller.on_activate()

    asyncio.run(scenario())

    assert rig.detector.calls == 0
    assert rig.executor.calls == 0
    assert rig.display.indicators == ["Gone"]
    assert rig.display.states == []
    assert not rig.controller.polling


def test_resource_disappearing_mid_poll_stops_polling() -> None:
    availability = FakeAvailability()
    rig = build_rig(results=[detected(OFF)], availability=availability)

    async def scenario() -> None:
        await rig.controller.on_appear()
        availability.present = False
        await fire(rig)

    asyncio.run(scenario())

    assert rig.display.indicators == ["Gone"]
    assert not rig.controller.polling
    assert rig.harness.pending() == []


def test_inactive_session_shows_indicator_and_keeps_polling() -> None:
    availability = FakeAvailability(session=False)
    rig = build_rig(results=[detected(ON)], availability=availability)

    async def scenario() -> None:
        await rig.controller.on_appear()
        await rig.controller.on_activate()

    asyncio.run(scenario())

    assert rig.display.indicators == ["Idle"]
    assert rig.detector.calls == 0
    assert rig.executor.calls == 0
    assert rig.controller.polling


def test_availability_errors_count_as_absent() -> None:
    async def _broken() -> ResourceAvailability:
        raise OSError("pgrep missing")

    rig = build_rig(results=[detected(ON)])
    rig.controller._availability = _broken  # type: ignore[attr-defined]

    asyncio.run(rig.controller.on_appear())

    assert rig.display.indicators == ["Gone"]
    assert rig.detector.calls == 0


# Mutual exclusion -----------------------------------------------------------


def test_poll_tick_during_activation_is_dropped() -> None:
    async def scenario() -> Rig:
        gate = asyncio.Event()
        executor = FakeExecutor(gate=gate)
        executor.started = asyncio.Event()
        rig = build_rig(results=[detected(OFF)], executor=executor)
        await rig.controller.on_appear()
        probes_before = rig.detector.calls

        activation = asyncio.ensure_future(rig.controller.on_activate())
        await executor.started.wait()
        await rig.controller.poll_once()
        await rig.controller.on_activate()

        assert rig.detector.calls == probes_before
        assert executor.calls == 1
        assert rig.controller.guard.dropped == 2

        gate.set()
        await activation
        return rig

    rig = asyncio.run(scenario())
    assert rig.controller.verification_pending


def test_poll_tick_while_verification_pending_is_dropped() -> None:
    rig = build_rig(results=[detected(OFF)])

    async def scenario() -> None:
        await rig.controller.on_appear()
        await rig.controller.on_activate()
        calls = rig.detector.calls
        await rig.controller.poll_once()
        assert rig.detector.calls == calls

    asyncio.run(scenario())

    assert rig.controller.displayed_state is ON


# Configuration and teardown -------------------------------------------------


def test_configure_accepts_host_option_names() -> None:
    rig = build_rig()

    config = rig.controller.configure({"pollIntervalMs": 2000, "verificationDelayMs": 500}, max_attempts=5)

    assert config.poll_interval_ms == 2000
    assert config.verification_delay_ms == 500
    assert config.max_attempts == 5
    assert rig.controller.config is config


def test_configure_after_appear_is_rejected() -> None:
    rig = build_rig(results=[detected(OFF)])
    asyncio.run(rig.controller.on_appear())

    with pytest.raises(RuntimeError):
        rig.controller.configure(poll_interval_ms=500)


def test_disappear_cancels_timers_and_ignores_late_callbacks() -> None:
    rig = build_rig(results=[detected(OFF)])

    async def scenario() -> None:
        await rig.controller.on_appear()
        await rig.controller.on_activate()
        verify_handle = rig.harness.pending()[0][0]
        rig.controller.on_disappear()
        rig.controller.on_disappear()
        rig.harness.run(verify_handle)
        await rig.scheduler.join()
        await rig.controller.poll_once()
        await rig.controller.on_activate()

    asyncio.run(scenario())

    assert rig.controller.torn_down
    assert rig.controller.session is None
    assert rig.scheduler.armed == 0
    assert rig.detector.calls == 1
    assert rig.executor.calls == 1
    assert rig.display.states == [OFF, ON]


def test_disappear_during_execution_leaves_display_alone() -> None:
    async def scenario() -> Rig:
        gate = asyncio.Event()
        executor = FakeExecutor(gate=gate)
        executor.started = asyncio.Event()
        rig = build_rig(results=[detected(OFF)], executor=executor)
        await rig.controller.on_appear()
        activation = asyncio.ensure_future(rig.controller.on_activate())
        await executor.started.wait()
        rig.controller.on_disappear()
        gate.set()
        await activation
        return rig

    rig = asyncio.run(scenario())

    assert rig.scheduler.armed == 0
    assert rig.display.states == [OFF, ON]


def test_display_failures_do_not_break_cycles() -> None:
    class BrokenDisplay(FakeDisplay):
        def set_state(self, state: ToggleState) -> None:
            raise RuntimeError("socket gone")

    rig = build_rig(results=[detected(ON)])
    rig.controller._display = BrokenDisplay()  # type: ignore[attr-defined]

    asyncio.run(rig.controller.on_appear())

    assert rig.controller.displayed_state is ON
    assert rig.controller.polling


def test_set_command_replaces_executed_command() -> None:
    seen: list[str] = []

    class RecordingExecutor(FakeExecutor):
        async def execute(self, command: CommandSpec, policy=None) -> int:
            seen.append(command.name)
            return 1

    rig = build_rig(results=[detected(OFF)], executor=RecordingExecutor())
    rig.controller.set_command(CommandSpec(name="menubar-toggle", script="click"))

    async def scenario() -> None:
        await rig.controller.on_appear()
        await rig.controller.on_activate()

    asyncio.run(scenario())

    assert seen == ["menubar-toggle"]
