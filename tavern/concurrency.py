"""Cooperative cancellation and per-chat serialization.

Everything runs on one asyncio event loop. "Concurrency" here means
interleaved suspension, so the primitives are small:

    AbortToken  -- threaded through assembly, tokenizer calls and transports.
    ChatGate    -- one-at-a-time gate keyed by chat id.
    Stopwatch   -- fixed-rate gate used to throttle streaming UI updates.
"""

import asyncio
import contextlib
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from tavern.errors import GenerationAborted

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AbortToken:
    """Cancellation flag shared between a generation and its transports."""

    def __init__(self):
        self._aborted = False
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[Optional[str]], None]] = []
        self._waiters: List[asyncio.Future] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def abort(self, reason: Optional[str] = None) -> None:
        """Fire the token. Idempotent; callbacks run once."""
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        logger.debug("Abort token fired (%s)", reason or "no reason")
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(reason)
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(reason)
        self._waiters.clear()

    def add_callback(self, callback: Callable[[Optional[str]], None]) -> None:
        if self._aborted:
            callback(self._reason)
            return
        self._callbacks.append(callback)

    def raise_if_aborted(self) -> None:
        if self._aborted:
            raise GenerationAborted(self._reason)

    async def wait(self) -> Optional[str]:
        """Suspend until the token fires."""
        if self._aborted:
            return self._reason
        future = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        try:
            return await future
        finally:
            if future in self._waiters:
                self._waiters.remove(future)


class ChatGate:
    """Serializes conflicting operations (reload, swipe, generate) per chat.

    ``hold(chat_id)`` waits its turn. ``run_if_idle`` skips the call when the
    chat is already busy, for refreshes where a dropped call is harmless.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, chat_id: str) -> asyncio.Lock:
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[chat_id] = lock
        return lock

    def is_busy(self, chat_id: str) -> bool:
        lock = self._locks.get(chat_id)
        return bool(lock and lock.locked())

    @contextlib.asynccontextmanager
    async def hold(self, chat_id: str):
        lock = self._lock_for(chat_id)
        async with lock:
            yield

    async def run_if_idle(self, chat_id: str, fn: Callable[[], Awaitable[T]]) -> Optional[T]:
        if self.is_busy(chat_id):
            logger.debug("Chat %s busy, skipping call", chat_id)
            return None
        async with self.hold(chat_id):
            return await fn()


class Stopwatch:
    """Lets a callback through at most once per ``interval`` seconds."""

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last: Optional[float] = None

    def ready(self) -> bool:
        now = self._clock()
        if self._last is None or now - self._last >= self.interval:
            self._last = now
            return True
        return False

    async def tick(self, fn: Callable[[], Awaitable[None]]) -> bool:
        if not self.ready():
            return False
        await fn()
        return True
