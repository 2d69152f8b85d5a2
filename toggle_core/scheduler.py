from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, Optional, Set

AfterFn = Callable[[int, Callable[[], None]], object]
AfterCancelFn = Callable[[object], None]

_LOGGER = logging.getLogger("Zoomer.Core.Scheduler")


def _loop_after(delay_ms: int, callback: Callable[[], None]) -> object:
    loop = asyncio.get_running_loop()
    return loop.call_later(max(0, delay_ms) / 1000.0, callback)


def _loop_after_cancel(handle: object) -> None:
    cancel = getattr(handle, "cancel", None)
    if callable(cancel):
        cancel()


@dataclass(eq=False)
class CancelToken:
    """Handle returned for every scheduled callback; cancelling it twice is harmless."""

    label: str
    callback: Callable[[], Any] = field(repr=False)
    interval_ms: Optional[int] = None
    cancelled: bool = False
    fired: bool = False

    @property
    def periodic(self) -> bool:
        return self.interval_ms is not None

    @property
    def active(self) -> bool:
        if self.cancelled:
            return False
        return self.periodic or not self.fired


class Scheduler:
    """Owns one-shot and periodic timers on top of an injectable after/cancel pair.

    Callbacks may return awaitables; they are run as tasks, and a periodic timer
    re-arms only after its task finishes so ticks never overlap themselves.
    """

    def __init__(
        self,
        *,
        after: Optional[AfterFn] = None,
        after_cancel: Optional[AfterCancelFn] = None,
    ) -> None:
        self._after = after or _loop_after
        self._after_cancel = after_cancel or _loop_after_cancel
        self._handles: Dict[CancelToken, object] = {}
        self._tasks: Set["asyncio.Future[Any]"] = set()

    @property
    def armed(self) -> int:
        return len(self._handles)

    def is_armed(self, token: Optional[CancelToken]) -> bool:
        return token is not None and token in self._handles

    def schedule_once(self, delay_ms: int, fn: Callable[[], Any], *, label: str = "once") -> CancelToken:
        token = CancelToken(label=label, callback=fn)
        self._arm(token, delay_ms)
        return token

    def schedule_periodic(self, interval_ms: int, fn: Callable[[], Any], *, label: str = "periodic") -> CancelToken:
        interval = max(1, int(interval_ms))
        token = CancelToken(label=label, callback=fn, interval_ms=interval)
        self._arm(token, interval)
        return token

    def cancel(self, token: Optional[CancelToken]) -> None:
        if token is None:
            return
        token.cancelled = True
        handle = self._handles.pop(token, None)
        if handle is None:
            return
        try:
            self._after_cancel(handle)
        except Exception as exc:
            _LOGGER.debug("Timer cancel for %s failed: %s", token.label, exc)

    def cancel_all(self) -> None:
        for token in list(self._handles):
            self.cancel(token)

    async def join(self) -> None:
        """Wait for callback tasks that are still running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Internal helpers -----------------------------------------------------

    def _arm(self, token: CancelToken, delay_ms: int) -> None:
        self._handles[token] = self._after(max(0, int(delay_ms)), partial(self._fire, token))

    def _fire(self, token: CancelToken) -> None:
        self._handles.pop(token, None)
        if token.cancelled:
            return
        if not token.periodic:
            token.fired = True
        try:
            result = token.callback()
        except Exception:
            _LOGGER.exception("Scheduled callback %s raised", token.label)
            result = None
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(partial(self._task_done, token))
            return
        self._rearm(token)

    def _task_done(self, token: CancelToken, task: "asyncio.Future[Any]") -> None:
        self._tasks.discard(task)
        if not task.cancelled():
            exc = task.exception()
            if exc is not None:
                _LOGGER.error("Scheduled task %s failed: %s", token.label, exc, exc_info=exc)
        self._rearm(token)

    def _rearm(self, token: CancelToken) -> None:
        if not token.periodic or token.cancelled or token in self._handles:
            return
        self._arm(token, token.interval_ms or 0)
