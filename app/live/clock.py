"""
Clock abstraction used by the ConnectionManager for all scheduling.

AsyncioClock schedules on the running event loop. Tests substitute a
manual clock so timeouts and backoff can be driven deterministically.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional


class TimerHandle(ABC):
    @abstractmethod
    def cancel(self) -> None:
        pass


class Clock(ABC):
    """Scheduling capability: one-shot timers and a monotonic 'now'."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        pass

    @abstractmethod
    def now(self) -> float:
        pass


class _AsyncioTimer(TimerHandle):
    def __init__(self, handle: asyncio.TimerHandle):
        self._handle = handle

    def cancel(self) -> None:
        self._handle.cancel()


class AsyncioClock(Clock):
    """Clock backed by an asyncio event loop (the running one by default)."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return _AsyncioTimer(self.loop.call_later(max(0.0, delay), callback))

    def now(self) -> float:
        return time.monotonic()
