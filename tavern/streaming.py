"""Reconciles a backend's chunk stream into the conversation.

One ``StreamingProcessor`` handles one backend call:

    IDLE -> STARTING -> STREAMING -> FINISHED | STOPPED | ERRORED

``start()`` creates (or locates) the message the response lands in.
``advance(source)`` consumes cumulative ``StreamChunk`` snapshots, writing
each one into the message and firing throttled progress events. Buffered
responses go through the same path as a one-chunk stream.

A stop keeps whatever text already arrived. An error aborts the token,
keeps the last applied text and re-raises. Tool-call generations are not
handled here: ``needs_tool_pass`` tells the caller to run the tools and
start a fresh processor one level deeper.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from tavern.backends.base import BackendResponse, StreamChunk
from tavern.concurrency import Stopwatch
from tavern.config import GenerationSettings
from tavern.conversation import ConversationStore
from tavern.errors import GenerationAborted
from tavern.events import (
    GENERATION_ENDED,
    GENERATION_ERROR,
    GENERATION_PROGRESS,
    GENERATION_STOPPED,
    EventBus,
)
from tavern.formatting import cleanup_response
from tavern.models import GenerationRequest, GenerationType, VariantMeta, now_timestamp
from tavern.reasoning import ReasoningTracker, parse_reasoning
from tavern_constants import PLACEHOLDER_TEXT

logger = logging.getLogger(__name__)


class ProcessorState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    FINISHED = "finished"
    STOPPED = "stopped"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessorState.FINISHED, ProcessorState.STOPPED, ProcessorState.ERRORED)


async def single_chunk(response: BackendResponse) -> AsyncIterator[StreamChunk]:
    """Present a buffered response as a stream of one cumulative chunk."""
    yield StreamChunk(
        text=response.text,
        reasoning=response.reasoning,
        tool_calls=list(response.tool_calls),
        swipes=list(response.swipes),
        logprobs=list(response.logprobs),
        finish_reason=response.finish_reason,
        usage=dict(response.usage),
    )


class StreamingProcessor:
    """State machine for one streamed (or buffered) generation.

    Args:
        store: The chat. Ignored for quiet and impersonate generations,
            which never write a message.
        request: Type, abort token and depth of this generation.
        settings: Cleanup, reasoning and throttle settings.
        events: Bus for progress/ended/stopped/error events.
        name: Speaker of the generated text.
        stop_strings: Cut points applied to the generated text.
        clock: Monotonic clock for the UI throttle and reasoning timing.
    """

    def __init__(
        self,
        store: Optional[ConversationStore],
        request: GenerationRequest,
        settings: GenerationSettings,
        *,
        events: Optional[EventBus] = None,
        name: str = "",
        stop_strings: Sequence[str] = (),
        backend_id: str = "",
        model: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.request = request
        self.settings = settings
        self.events = events or EventBus()
        self.name = name
        self.stop_strings = list(stop_strings)
        self.backend_id = backend_id
        self.model = model

        self.state = ProcessorState.IDLE
        self.message_id: Optional[int] = None
        self.prefix = ""
        self.generated = ""
        self.text = ""
        self.reasoning = ""
        self.tool_calls: List[Dict[str, Any]] = []
        self.swipes: List[str] = []
        self.logprobs: List[Dict[str, Any]] = []
        self.finish_reason: Optional[str] = None
        self.usage: Dict[str, Any] = {}
        self.error: Optional[BaseException] = None
        self.chunks_applied = 0

        self._stopwatch = Stopwatch(settings.stream_tick_seconds, clock)
        self._reasoning = ReasoningTracker(clock)
        self._finalized = False

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> Optional[int]:
        """Create or locate the target message. Only valid from IDLE."""
        if self.state != ProcessorState.IDLE:
            return self.message_id
        self.state = ProcessorState.STARTING
        gen_type = self.request.type

        if not gen_type.writes_to_chat or self.store is None:
            return None
        if gen_type in (GenerationType.CONTINUE, GenerationType.SWIPE):
            if not len(self.store):
                raise ValueError(f"Cannot {gen_type.value} in an empty chat")
            self.message_id = len(self.store) - 1
            if gen_type == GenerationType.CONTINUE:
                self.prefix = self.store[self.message_id].text
                self.text = self.prefix
            else:
                self.store.begin_variant(self.message_id)
        else:
            self.message_id = self.store.create_placeholder(self.name)
        logger.debug("Streaming %s into message %s", gen_type.value, self.message_id)
        return self.message_id

    def on_stop_streaming(self) -> None:
        """Stop the generation. The running ``advance`` keeps the partial text."""
        if self.state.is_terminal:
            return
        logger.info("Stopping generation at depth %d", self.request.depth)
        self.request.abort.abort("stopped")

    async def advance(self, source: AsyncIterator[StreamChunk]) -> str:
        """Drain ``source`` into the message and return the final text."""
        if self.state == ProcessorState.IDLE:
            if self.request.abort.aborted:
                self.state = ProcessorState.STARTING
                await self._finalize(stopped=True)
                return self.text
            try:
                await self.start()
            except Exception as e:
                await self._fail(e)
                raise

        iterator = source.__aiter__()
        try:
            while True:
                chunk = await self._next_chunk(iterator)
                if chunk is None:
                    break
                if self.state == ProcessorState.STARTING:
                    self.state = ProcessorState.STREAMING
                await self._apply(chunk)
        except GenerationAborted:
            logger.debug("Transport observed the abort")
        except asyncio.CancelledError:
            self.request.abort.abort("cancelled")
            await self._finalize(stopped=True)
            raise
        except Exception as e:
            await self._fail(e)
            raise
        finally:
            await self._close(iterator)

        await self._finalize(stopped=self.request.abort.aborted)
        return self.text

    @property
    def needs_tool_pass(self) -> bool:
        """Finished with tool calls and no visible text of its own."""
        return (
            self.state == ProcessorState.FINISHED
            and bool(self.tool_calls)
            and self.generated.strip() in ("", PLACEHOLDER_TEXT)
        )

    # -- Internals -------------------------------------------------------------

    async def _next_chunk(self, iterator: AsyncIterator[StreamChunk]) -> Optional[StreamChunk]:
        """Next chunk, or None when the source ends or the token fires first."""
        abort = self.request.abort
        if abort.aborted:
            return None
        next_task = asyncio.ensure_future(iterator.__anext__())
        abort_task = asyncio.ensure_future(abort.wait())
        try:
            done, _ = await asyncio.wait({next_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            next_task.cancel()
            abort_task.cancel()
            # The source must be idle before the caller can aclose() it.
            await asyncio.wait({next_task})
            raise
        if next_task in done:
            abort_task.cancel()
            try:
                return next_task.result()
            except StopAsyncIteration:
                return None
        next_task.cancel()
        try:
            await next_task
        except (asyncio.CancelledError, StopAsyncIteration, GenerationAborted):
            pass
        return None

    async def _close(self, iterator: AsyncIterator[StreamChunk]) -> None:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    async def _apply(self, chunk: StreamChunk) -> None:
        generated = chunk.text
        reasoning = chunk.reasoning
        reasoning_cfg = self.settings.reasoning
        if not reasoning and reasoning_cfg.auto_parse:
            parsed = parse_reasoning(generated, reasoning_cfg.prefix, reasoning_cfg.suffix)
            if parsed is not None:
                reasoning, generated = parsed.reasoning, parsed.content
        self._reasoning.update(reasoning, generated)

        self.generated = generated
        self.reasoning = reasoning
        self.tool_calls = chunk.tool_calls
        self.swipes = chunk.swipes
        self.logprobs = chunk.logprobs
        self.finish_reason = chunk.finish_reason or self.finish_reason
        self.usage = chunk.usage or self.usage
        self.chunks_applied += 1

        shown = cleanup_response(generated, stops=self.stop_strings, context=self.settings.context, final=False)
        self.text = self.prefix + shown
        if self.message_id is not None:
            self.store.set_text(self.message_id, self.text)
            if reasoning:
                self.store[self.message_id].extra["reasoning"] = reasoning
        await self._stopwatch.tick(self._emit_progress)

    async def _emit_progress(self) -> None:
        await self.events.emit(GENERATION_PROGRESS, {
            "message_id": self.message_id,
            "text": self.text,
            "reasoning": self.reasoning,
            "type": self.request.type.value,
        })

    def _clean(self, text: str) -> str:
        speaker = "" if self.request.is_continue else self.name
        return cleanup_response(text, stops=self.stop_strings, context=self.settings.context, speaker=speaker)

    async def _finalize(self, *, stopped: bool) -> None:
        if self._finalized:
            return
        self._finalized = True
        self._reasoning.finish()
        self.text = self.prefix + self._clean(self.generated)
        self.state = ProcessorState.STOPPED if stopped else ProcessorState.FINISHED

        if self.message_id is not None:
            self._write_message()

        context = {
            "message_id": self.message_id,
            "text": self.text,
            "type": self.request.type.value,
            "depth": self.request.depth,
        }
        if stopped:
            logger.info("Generation stopped with %d chars kept", len(self.text))
            await self.events.emit(GENERATION_STOPPED, context)
        else:
            logger.info("Generation finished (%d chars, finish_reason=%s)", len(self.text), self.finish_reason)
            await self.events.emit(GENERATION_ENDED, context)

    def _write_message(self) -> None:
        store, message_id = self.store, self.message_id
        message = store[message_id]
        now = now_timestamp()

        store.set_text(message_id, self.text)
        message.gen_finished = now
        extra = message.extra
        if self.backend_id:
            extra["api"] = self.backend_id
        if self.model:
            extra["model"] = self.model
        if self.reasoning:
            extra["reasoning"] = self.reasoning
            duration = self._reasoning.duration_ms
            if duration is not None:
                extra["reasoning_duration"] = duration
        if self.settings.logprobs and self.logprobs:
            extra["logprobs"] = list(self.logprobs)
        if self.usage:
            extra["usage"] = dict(self.usage)
        store.sync_active_to_variant(message_id)

        for swipe in self.swipes:
            meta = VariantMeta(
                send_date=now,
                gen_started=message.gen_started,
                gen_finished=now,
                extra={k: v for k, v in (("api", self.backend_id), ("model", self.model)) if v},
            )
            store.add_variant(message_id, self._clean(swipe), meta)

    async def _fail(self, error: BaseException) -> None:
        self.error = error
        self.state = ProcessorState.ERRORED
        self._finalized = True
        self.request.abort.abort("error")
        if self.message_id is not None:
            self.store.sync_active_to_variant(self.message_id)
        logger.error("Generation failed: %s", error)
        if not self.request.type.suppresses_error_events:
            await self.events.emit(GENERATION_ERROR, {
                "message_id": self.message_id,
                "error": str(error),
                "type": self.request.type.value,
            })
