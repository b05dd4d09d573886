"""Resettable silence timer on the running event loop."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional


class SilenceTimer:
    """Calls ``on_silence`` once ``threshold_ms`` pass without a reset."""

    def __init__(self, threshold_ms: int, on_silence: Callable[[], None]) -> None:
        if threshold_ms <= 0:
            raise ValueError("threshold_ms must be > 0")
        self.threshold_ms = threshold_ms
        self._on_silence = on_silence
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def reset(self) -> None:
        """(Re)start the countdown. Must be called from the event loop thread."""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.threshold_ms / 1000, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._on_silence()
