"""
Event bus for generation lifecycle notifications.

Handlers are plain callables, sync or async, taking ``(event_type, context)``.
A handler registered for ``"generation:*"`` receives every
``generation:...`` event.

Events:
  - generation:started     -- a generation began (context: chat_id, type)
  - generation:progress    -- throttled streaming update (message_id, text)
  - generation:ended       -- completed normally; fired exactly once
  - generation:stopped     -- cancelled, partial text kept
  - generation:error       -- failed (suppressed for swipe/continue/impersonate)
  - message:received       -- a generated message was written to the chat
  - message:swiped         -- a swipe generation activated its new variant
  - message:deleted        -- a message was removed
  - chat:saved             -- the persister wrote the chat
  - tools:performed        -- tool calls ran (context: invocations)
  - tools:failed           -- tool calls failed (context: errors)

A failing handler is logged and does not stop the other handlers or the
generation that emitted the event.
"""

import asyncio
import collections
import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

GENERATION_STARTED = "generation:started"
GENERATION_PROGRESS = "generation:progress"
GENERATION_ENDED = "generation:ended"
GENERATION_STOPPED = "generation:stopped"
GENERATION_ERROR = "generation:error"
MESSAGE_RECEIVED = "message:received"
MESSAGE_SWIPED = "message:swiped"
MESSAGE_DELETED = "message:deleted"
CHAT_SAVED = "chat:saved"
TOOLS_PERFORMED = "tools:performed"
TOOLS_FAILED = "tools:failed"

Handler = Callable[[str, Dict[str, Any]], Any]


class EventBus:
    """
    Registers and fires event handlers.

    Usage:
        bus = EventBus()
        bus.on("generation:ended", handler)
        await bus.emit("generation:ended", {"message_id": 3})
    """

    def __init__(self):
        # event_type -> [handler, ...]
        self._handlers: Dict[str, List[Handler]] = {}
        self.history: collections.deque = collections.deque(maxlen=1000)

    def on(self, event_type: str, handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def off(self, event_type: str, handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def count(self, event_type: str) -> int:
        return self.history.count(event_type)

    async def emit(self, event_type: str, context: Optional[Dict[str, Any]] = None) -> None:
        """Fire exact-match handlers, then ``base:*`` wildcard handlers."""
        if context is None:
            context = {}
        self.history.append(event_type)

        handlers = list(self._handlers.get(event_type, []))
        if ":" in event_type:
            base = event_type.split(":")[0]
            handlers.extend(self._handlers.get(f"{base}:*", []))

        for fn in handlers:
            try:
                result = fn(event_type, context)
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Event handler for '%s' failed", event_type)
