from .controller import Display, ToggleController
from .detector import Detector, ProbeStrategy, default_detector
from .exclusion_guard import ExclusionGuard
from .executor import ExecutionError, Executor
from .models import (
    CommandSpec,
    Confidence,
    DetectionResult,
    ResourceAvailability,
    RetryPolicy,
    ToggleConfig,
    ToggleKind,
    ToggleSession,
    ToggleState,
)
from .scheduler import CancelToken, Scheduler

__all__ = [
    "CancelToken",
    "CommandSpec",
    "Confidence",
    "DetectionResult",
    "Detector",
    "Display",
    "ExclusionGuard",
    "ExecutionError",
    "Executor",
    "ProbeStrategy",
    "ResourceAvailability",
    "RetryPolicy",
    "Scheduler",
    "ToggleConfig",
    "ToggleController",
    "ToggleKind",
    "ToggleSession",
    "ToggleState",
    "default_detector",
]
