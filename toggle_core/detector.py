from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from .models import Confidence, DetectionResult, ToggleState

_LOGGER = logging.getLogger("Zoomer.Core.Detector")


class ProbeStrategy(Protocol):
    name: str

    async def probe(self) -> DetectionResult: ...


class Detector:
    """Runs ordered probe strategies per kind and aggregates them into one estimate.

    Aggregation rules:
    - the first HIGH result in registration order wins and later probes are skipped;
    - otherwise the most confident non-Unknown result wins, earlier probes breaking ties;
    - otherwise the last non-Unknown result for the kind is re-issued as LOW and stale;
    - otherwise UNKNOWN/LOW.

    ``probe`` never raises: timeouts and probe errors count as UNKNOWN/LOW.
    """

    def __init__(self, *, timeout: float = 3.0, clock: Callable[[], float] = time.time) -> None:
        self._timeout = timeout
        self._clock = clock
        self._strategies: Dict[str, List[ProbeStrategy]] = {}
        self._last: Dict[str, DetectionResult] = {}

    def register(self, kind: str, strategies: Sequence[ProbeStrategy]) -> None:
        self._strategies[kind] = list(strategies)
        self._last.pop(kind, None)

    def has_kind(self, kind: str) -> bool:
        return kind in self._strategies

    def strategies(self, kind: str) -> List[ProbeStrategy]:
        return list(self._strategies.get(kind, ()))

    def last_result(self, kind: str) -> Optional[DetectionResult]:
        return self._last.get(kind)

    async def probe(self, kind: str, *, timeout: Optional[float] = None) -> DetectionResult:
        strategies = self._strategies.get(kind)
        if not strategies:
            _LOGGER.debug("No probes registered for %s", kind)
            return DetectionResult.unknown(self._clock(), source=kind)
        limit = self._timeout if timeout is None else timeout
        best: Optional[DetectionResult] = None
        for strategy in strategies:
            result = await self._run_probe(kind, strategy, limit)
            if result.state is ToggleState.UNKNOWN:
                continue
            if result.confidence is Confidence.HIGH:
                best = result
                break
            if best is None or result.confidence > best.confidence:
                best = result
        if best is not None:
            self._last[kind] = best
            return best
        cached = self._last.get(kind)
        if cached is not None:
            _LOGGER.debug("All %s probes unknown; reusing %s from %s", kind, cached.state.value, cached.source)
            return DetectionResult(
                state=cached.state,
                confidence=Confidence.LOW,
                observed_at=self._clock(),
                source=cached.source,
                stale=True,
            )
        return DetectionResult.unknown(self._clock(), source=kind)

    async def _run_probe(self, kind: str, strategy: ProbeStrategy, timeout: float) -> DetectionResult:
        name = getattr(strategy, "name", type(strategy).__name__)
        try:
            result = await asyncio.wait_for(strategy.probe(), timeout=timeout)
        except asyncio.TimeoutError:
            _LOGGER.debug("Probe %s/%s timed out after %.2fs", kind, name, timeout)
            return DetectionResult.unknown(self._clock(), source=name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            _LOGGER.warning("Probe %s/%s failed: %s", kind, name, exc)
            return DetectionResult.unknown(self._clock(), source=name)
        if not isinstance(result, DetectionResult):
            _LOGGER.warning("Probe %s/%s returned %r; treating as unknown", kind, name, result)
            return DetectionResult.unknown(self._clock(), source=name)
        return result


_default_detector: Optional[Detector] = None


def default_detector() -> Detector:
    """Process-wide detector shared by controllers that are not given one."""
    global _default_detector
    if _default_detector is None:
        _default_detector = Detector()
    return _default_detector
