"""Cancellable debounce timer bound to the running event loop."""
from __future__ import annotations

import asyncio
from typing import Callable, Optional


class DebounceTimer:
    """Run ``callback`` once, ``delay`` seconds after the last ``trigger()``.

    Each trigger restarts the window, so a burst of events collapses into a
    single call. Must be used from inside a running event loop.
    """

    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = max(0.0, float(delay))
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None

    def trigger(self) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._callback()
