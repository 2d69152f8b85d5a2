from __future__ import annotations

import logging
from typing import Optional

_LOGGER = logging.getLogger("Zoomer.Core.Guard")


class ExclusionGuard:
    """Non-blocking mutual exclusion for reconciliation cycles.

    Callers that fail to enter drop their cycle instead of waiting. Everything
    runs on one event loop, so a plain flag is enough once ownership is explicit.
    """

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._held = False
        self._closed = False
        self._holder: Optional[str] = None
        self.entered = 0
        self.dropped = 0

    @property
    def held(self) -> bool:
        return self._held

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def holder(self) -> Optional[str]:
        return self._holder

    def try_enter(self, holder: str = "") -> bool:
        if self._closed:
            _LOGGER.debug("Guard %s closed; refusing %s", self._name, holder or "cycle")
            self.dropped += 1
            return False
        if self._held:
            _LOGGER.debug("Guard %s busy (held by %s); dropping %s", self._name, self._holder, holder or "cycle")
            self.dropped += 1
            return False
        self._held = True
        self._holder = holder or None
        self.entered += 1
        return True

    def exit(self) -> None:
        self._held = False
        self._holder = None

    def close(self) -> None:
        self._closed = True
        self.exit()
