"""Value types shared by the toggle reconciliation core."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Mapping, Optional


class ToggleState(str, Enum):
    UNKNOWN = "unknown"
    OFF = "off"
    ON = "on"

    def opposite(self) -> "ToggleState":
        if self is ToggleState.ON:
            return ToggleState.OFF
        if self is ToggleState.OFF:
            return ToggleState.ON
        return ToggleState.UNKNOWN


class Confidence(IntEnum):
    """Coarse reliability rating; higher values win during aggregation."""

    LOW = 0
    MEDIUM = 1
    HIGH = 2


@dataclass(frozen=True)
class DetectionResult:
    """One probe answer. `stale` marks a cached answer re-issued when every probe was Unknown."""

    state: ToggleState
    confidence: Confidence
    observed_at: float
    source: str = ""
    stale: bool = False

    @property
    def is_evidence(self) -> bool:
        return self.state is not ToggleState.UNKNOWN and not self.stale

    @classmethod
    def unknown(cls, observed_at: Optional[float] = None, source: str = "") -> "DetectionResult":
        return cls(
            state=ToggleState.UNKNOWN,
            confidence=Confidence.LOW,
            observed_at=time.time() if observed_at is None else observed_at,
            source=source,
        )


@dataclass(frozen=True)
class ResourceAvailability:
    process_present: bool
    session_active: bool

    @classmethod
    def absent(cls) -> "ResourceAvailability":
        return cls(process_present=False, session_active=False)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for external commands.

    The delay before attempt ``k`` (``k >= 2``) is
    ``base_delay * (k - 1) * backoff_multiplier ** (k - 2)``. With the default
    multiplier of 1.0 this is a linear schedule: 0.2s, 0.4s, 0.6s ...
    """

    max_attempts: int = 3
    base_delay: float = 0.2
    backoff_multiplier: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1 (got {self.max_attempts})")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0 (got {self.base_delay})")
        if self.backoff_multiplier <= 0:
            raise ValueError(f"backoff_multiplier must be > 0 (got {self.backoff_multiplier})")

    def delay_before(self, attempt: int) -> float:
        if attempt <= 1:
            return 0.0
        return self.base_delay * (attempt - 1) * self.backoff_multiplier ** (attempt - 2)


@dataclass(frozen=True)
class CommandSpec:
    """An external state-changing command, described as a script for the command runner."""

    name: str
    script: str
    description: str = ""


@dataclass(frozen=True)
class ToggleKind:
    """Per-resource behaviour selected at construction time."""

    name: str
    command: CommandSpec
    state_indices: Mapping[ToggleState, int] = field(
        default_factory=lambda: {ToggleState.OFF: 0, ToggleState.ON: 1}
    )
    unavailable_text: str = "Not\nRunning"
    no_session_text: str = "No\nSession"
    error_text: str = "Error"

    def state_index(self, state: ToggleState) -> Optional[int]:
        return self.state_indices.get(state)


@dataclass
class ToggleSession:
    """In-flight record of one user activation."""

    requested_at: float
    previous_state: ToggleState
    optimistic_state: ToggleState
    verification_deadline: Optional[float] = None
    attempts_used: int = 0
    confirmed: bool = False


_CONFIG_ALIASES = {
    "pollIntervalMs": "poll_interval_ms",
    "verificationDelayMs": "verification_delay_ms",
    "maxAttempts": "max_attempts",
    "baseDelayMs": "base_delay_ms",
    "backoffMultiplier": "backoff_multiplier",
    "probeTimeoutMs": "probe_timeout_ms",
    "availabilityTimeoutMs": "availability_timeout_ms",
}


@dataclass(frozen=True)
class ToggleConfig:
    """Static per-controller timing configuration."""

    poll_interval_ms: int = 1000
    verification_delay_ms: int = 1000
    max_attempts: int = 3
    base_delay_ms: int = 200
    backoff_multiplier: float = 1.0
    probe_timeout_ms: int = 3000
    availability_timeout_ms: int = 2000

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay_ms / 1000.0,
            backoff_multiplier=self.backoff_multiplier,
        )

    def merged(self, overrides: Optional[Mapping[str, Any]]) -> "ToggleConfig":
        """Return a copy with camelCase or snake_case overrides applied and clamped."""
        if not overrides:
            return self
        values: Dict[str, Any] = {}
        for key, raw in overrides.items():
            name = _CONFIG_ALIASES.get(key, key)
            if name in _CONFIG_ALIASES.values() and raw is not None:
                values[name] = raw
        return ToggleConfig(
            poll_interval_ms=_coerce_int(values.get("poll_interval_ms"), self.poll_interval_ms, minimum=100),
            verification_delay_ms=_coerce_int(
                values.get("verification_delay_ms"), self.verification_delay_ms, minimum=0
            ),
            max_attempts=_coerce_int(values.get("max_attempts"), self.max_attempts, minimum=1),
            base_delay_ms=_coerce_int(values.get("base_delay_ms"), self.base_delay_ms, minimum=0),
            backoff_multiplier=_coerce_float(
                values.get("backoff_multiplier"), self.backoff_multiplier, minimum=0.1
            ),
            probe_timeout_ms=_coerce_int(values.get("probe_timeout_ms"), self.probe_timeout_ms, minimum=50),
            availability_timeout_ms=_coerce_int(
                values.get("availability_timeout_ms"), self.availability_timeout_ms, minimum=50
            ),
        )


def _coerce_int(raw: object, fallback: int, *, minimum: int) -> int:
    if raw is None:
        return fallback
    try:
        value = int(raw)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        value = fallback
    return max(minimum, value)


def _coerce_float(raw: object, fallback: float, *, minimum: float) -> float:
    if raw is None:
        return fallback
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        value = fallback
    return max(minimum, value)
