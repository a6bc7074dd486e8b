"""
Cancellation signal shared by the coordinator and its suspension points.

A CancellationToken may be set from any thread (signal handlers, a
watchdog, a test). Waits observe it without raising: they return
WaitOutcome.CANCELLED instead, so the caller decides how to unwind.
"""

import asyncio
import logging
import threading
from enum import Enum, auto
from typing import List, Optional, Tuple


logger = logging.getLogger(__name__)


class WaitOutcome(Enum):
    ELAPSED = auto()
    CANCELLED = auto()


class CancellationToken:
    """Thread-safe, one-shot cancellation flag with asyncio-aware waits."""

    def __init__(self):
        self._flag = threading.Event()
        self._lock = threading.Lock()
        self._waiters: List[Tuple[asyncio.AbstractEventLoop, asyncio.Event]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._flag.is_set()

    def cancel(self, reason: str = "cancelled"):
        """Set the token. Later calls are ignored."""
        with self._lock:
            if self._flag.is_set():
                return
            self.reason = reason
            self._flag.set()
            waiters = list(self._waiters)

        logger.info(f"Cancellation requested: {reason}")
        for loop, event in waiters:
            if not loop.is_closed():
                loop.call_soon_threadsafe(event.set)

    def _register(self) -> asyncio.Event:
        event = asyncio.Event()
        with self._lock:
            if self._flag.is_set():
                event.set()
            else:
                self._waiters.append((asyncio.get_running_loop(), event))
        return event

    def _unregister(self, event: asyncio.Event):
        with self._lock:
            self._waiters = [(loop, e) for loop, e in self._waiters if e is not event]

    async def wait(self):
        """Suspend until the token is set."""
        event = self._register()
        try:
            await event.wait()
        finally:
            self._unregister(event)

    async def wait_for(self, seconds: float) -> WaitOutcome:
        """
        Suspend for up to `seconds`, returning early if the token is set.

        Returns:
            WaitOutcome.CANCELLED if the token was (or became) set, else WaitOutcome.ELAPSED
        """
        if self.cancelled:
            return WaitOutcome.CANCELLED
        if seconds <= 0:
            return WaitOutcome.ELAPSED

        event = self._register()
        try:
            await asyncio.wait_for(event.wait(), timeout=seconds)
            return WaitOutcome.CANCELLED
        except asyncio.TimeoutError:
            return WaitOutcome.CANCELLED if self.cancelled else WaitOutcome.ELAPSED
        finally:
            self._unregister(event)


async def wait_or_cancel(token: CancellationToken, seconds: float) -> WaitOutcome:
    """Module-level shorthand for token.wait_for(seconds)."""
    return await token.wait_for(seconds)
