from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .models import CommandSpec, RetryPolicy

CommandRunner = Callable[[CommandSpec], Awaitable[object]]
SleepFn = Callable[[float], Awaitable[object]]

_LOGGER = logging.getLogger("Zoomer.Core.Executor")


class ExecutionError(Exception):
    """Raised once every attempt at an external command has failed."""

    def __init__(self, command: CommandSpec, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{command.name} failed after {attempts} attempt(s): {last_error}")
        self.command = command
        self.attempts = attempts
        self.last_error = last_error


class Executor:
    """Runs external commands with bounded retry; holds no per-controller state."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        policy: Optional[RetryPolicy] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._runner = runner
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def execute(self, command: CommandSpec, policy: Optional[RetryPolicy] = None) -> int:
        """Run ``command`` and return the number of attempts it took."""
        active = policy or self._policy
        attempt = 0
        while True:
            attempt += 1
            if attempt > 1:
                delay = active.delay_before(attempt)
                _LOGGER.debug("Retrying %s in %.3fs (attempt %d/%d)", command.name, delay, attempt, active.max_attempts)
                await self._sleep(delay)
            try:
                await self._runner(command)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                _LOGGER.warning(
                    "Command %s attempt %d/%d failed: %s", command.name, attempt, active.max_attempts, exc
                )
                if attempt >= active.max_attempts:
                    raise ExecutionError(command, active.max_attempts, exc) from exc
                continue
            if attempt > 1:
                _LOGGER.info("Command %s succeeded on attempt %d", command.name, attempt)
            return attempt
