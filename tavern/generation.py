"""Generation orchestration -- one user action to one reconciled response.

``Generator.generate(session, request)`` runs the whole pipeline:

    1. cancel whatever generation is still active on the same chat
    2. wait for the per-chat gate
    3. per pass: snapshot the registry into a PromptContext, run the prompt
       hooks (character depth prompt, persona at depth, author's note),
       assemble, dispatch and reconcile through a fresh StreamingProcessor
    4. run requested tools and re-enter one level deeper, up to
       ``tool_recursion_limit``
    5. optional auto-swipe, itemization record, persistence

Generation-scoped prompt keys are flushed from the pass context and from
the shared registry however the generation ends.
"""

import asyncio
import dataclasses
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from tavern.backends.base import StreamChunk
from tavern.character import CharacterCard, LoreBlocks, Persona, PromptFields
from tavern.concurrency import AbortToken, ChatGate
from tavern.config import GenerationSettings
from tavern.conversation import ConversationStore
from tavern.dispatcher import GenerationDispatcher
from tavern.errors import GenerationAborted, ToolCallError
from tavern.events import (
    CHAT_SAVED,
    GENERATION_STARTED,
    MESSAGE_DELETED,
    MESSAGE_RECEIVED,
    MESSAGE_SWIPED,
    TOOLS_FAILED,
    TOOLS_PERFORMED,
    EventBus,
)
from tavern.extension_prompts import ExtensionPromptRegistry, PromptContext, PromptPosition, PromptRole
from tavern.macros import MacroValue, build_macro_engine
from tavern.model_metadata import clamp_max_context
from tavern.models import GenerationRequest, GenerationType, Message
from tavern.persistence import ChatPersister
from tavern.prompt_assembler import AssembledPrompt, PromptAssembler
from tavern.streaming import ProcessorState, StreamingProcessor, single_chunk
from tavern.tokenizer import Tokenizer
from tavern.tool_calls import ToolCallCoordinator, ToolCallOutcome
from tavern_constants import AUTHORS_NOTE_KEY, PERSONA_DEPTH_KEY, depth_prompt_key

logger = logging.getLogger(__name__)


@dataclass
class AuthorsNote:
    text: str = ""
    depth: int = 4
    position: PromptPosition = PromptPosition.IN_CHAT
    role: PromptRole = PromptRole.SYSTEM


@dataclass
class ChatSession:
    """Everything about the chat a generation reads besides settings."""

    store: ConversationStore
    character: CharacterCard
    persona: Persona = field(default_factory=Persona)
    lore: LoreBlocks = field(default_factory=LoreBlocks)
    authors_note: Optional[AuthorsNote] = None
    scenario_override: Optional[str] = None
    group: str = ""
    macros: Dict[str, MacroValue] = field(default_factory=dict)


@dataclass
class GenerationResult:
    type: GenerationType
    state: ProcessorState
    text: str = ""
    message_id: Optional[int] = None
    reasoning: str = ""
    depth: int = 0
    prompt: Optional[AssembledPrompt] = None
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    needs_tool_pass: bool = False
    tool_outcomes: List[ToolCallOutcome] = field(default_factory=list)
    auto_swiped: bool = False

    @property
    def tool_errors(self) -> List[ToolCallError]:
        return [error for outcome in self.tool_outcomes for error in outcome.errors]


class _ActiveGeneration:
    """The abort token Stop targets; replaced on every tool pass."""

    def __init__(self, token: AbortToken):
        self.token = token


class Generator:
    """Runs generations against one dispatcher.

    Args:
        settings: Generation settings.
        dispatcher: Adapters by backend id; ``settings.backend`` picks one.
        tokenizer: Token counter for assembly.
        registry: Shared extension prompt registry. Snapshotted per pass.
        events: Event bus for lifecycle events.
        tools: Tool-call collaborator. Without one, tool calls are ignored.
        persister: Saves the chat after each generation that wrote to it.
        gate: Per-chat gate; pass a shared one so swipes and reloads queue
            behind generations.
    """

    def __init__(
        self,
        settings: GenerationSettings,
        *,
        dispatcher: GenerationDispatcher,
        tokenizer: Optional[Tokenizer],
        registry: Optional[ExtensionPromptRegistry] = None,
        events: Optional[EventBus] = None,
        tools: Optional[ToolCallCoordinator] = None,
        persister: Optional[ChatPersister] = None,
        gate: Optional[ChatGate] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.dispatcher = dispatcher
        self.tokenizer = tokenizer
        self.registry = registry if registry is not None else ExtensionPromptRegistry()
        self.events = events or EventBus()
        self.tools = tools
        self.persister = persister
        self.gate = gate or ChatGate()
        self._clock = clock
        self._active: Dict[str, _ActiveGeneration] = {}
        self._context_limits: Dict[str, int] = {}
        self.last_context: Optional[PromptContext] = None

    # -- Public API ------------------------------------------------------------

    def is_generating(self, chat_id: str) -> bool:
        return chat_id in self._active

    def stop(self, chat_id: Optional[str] = None) -> bool:
        """Abort the active generation on ``chat_id`` (on every chat when None)."""
        targets = [chat_id] if chat_id is not None else list(self._active)
        stopped = False
        for target in targets:
            active = self._active.get(target)
            if active is not None and not active.token.aborted:
                active.token.abort("stopped")
                stopped = True
        return stopped

    async def generate(self, session: ChatSession, request: GenerationRequest) -> GenerationResult:
        chat_id = session.store.chat_id
        previous = self._active.get(chat_id)
        if previous is not None:
            logger.info("Cancelling the active generation on chat %s", chat_id)
            previous.token.abort("superseded")
        active = _ActiveGeneration(request.abort)
        self._active[chat_id] = active
        try:
            async with self.gate.hold(chat_id):
                return await self._generate(session, request, active)
        finally:
            if self._active.get(chat_id) is active:
                del self._active[chat_id]
            flushed = self.registry.flush_generation_keys()
            if flushed:
                logger.debug("Flushed generation prompt keys: %s", flushed)

    # -- Pipeline --------------------------------------------------------------

    async def _generate(
        self,
        session: ChatSession,
        request: GenerationRequest,
        active: _ActiveGeneration,
    ) -> GenerationResult:
        store = session.store
        request = self._normalize_request(store, request)
        await self.events.emit(GENERATION_STARTED, {"chat_id": store.chat_id, "type": request.type.value})
        logger.info("Generation started: %s on chat %s", request.type.value, store.chat_id)

        if request.type == GenerationType.REGENERATE:
            last = store.last_message()
            if last is not None and last.is_assistant and len(store) > 1:
                store.delete_message(len(store) - 1)
                await self.events.emit(MESSAGE_DELETED, {"chat_id": store.chat_id, "message_id": len(store)})

        outcomes: List[ToolCallOutcome] = []
        while True:
            result = await self._run_pass(session, request)
            result.tool_outcomes = outcomes
            if result.state != ProcessorState.FINISHED or not self._wants_tools(result, request):
                break
            outcome = await self._run_tools(session, request, result)
            outcomes.append(outcome)
            if not outcome.has_results:
                break
            if request.abort.aborted:
                break
            request = request.next_depth()
            active.token = request.abort

        if self._should_auto_swipe(store, result, request) and not request.abort.aborted:
            swipe = dataclasses.replace(request, type=GenerationType.SWIPE, abort=AbortToken())
            active.token = swipe.abort
            logger.info("Auto-swiping message %s", result.message_id)
            result = await self._run_pass(session, swipe)
            result.tool_outcomes = outcomes
            result.auto_swiped = True

        if request.type.writes_to_chat:
            await self._save(store)
        return result

    def _normalize_request(self, store: ConversationStore, request: GenerationRequest) -> GenerationRequest:
        last = store.last_message()
        if request.type == GenerationType.CONTINUE and (last is None or last.is_system):
            logger.debug("Nothing to continue, generating normally")
            return dataclasses.replace(request, type=GenerationType.NORMAL)
        if request.type == GenerationType.SWIPE and (last is None or not last.is_assistant):
            raise ValueError("The last message is not a character message; nothing to swipe")
        return request

    async def _run_pass(self, session: ChatSession, request: GenerationRequest) -> GenerationResult:
        settings = await self._pass_settings()
        adapter = self.dispatcher.adapter(settings.backend)
        store = session.store

        macros = build_macro_engine(
            user=session.persona.name,
            char=session.character.name,
            group=session.group,
            extra=session.macros,
        )
        fields = PromptFields(
            session.character,
            session.persona,
            macros,
            lore=session.lore,
            default_system_prompt=settings.prompts.main_prompt,
            default_jailbreak=settings.prompts.jailbreak_prompt,
            scenario_override=session.scenario_override,
        )
        context = self.registry.snapshot()
        self.last_context = context
        try:
            self._apply_prompt_hooks(context, session, fields)
            assembler = PromptAssembler(settings, self.tokenizer, chat_completion=adapter.chat_completion)
            prompt = await assembler.assemble(request, store=store, fields=fields, context=context)
        except GenerationAborted:
            logger.info("Generation aborted during assembly")
            return GenerationResult(type=request.type, state=ProcessorState.STOPPED, depth=request.depth)
        finally:
            context.close()

        params = self._params(settings, request, prompt, adapter.chat_completion)
        payload = self.dispatcher.build_payload(settings.backend, prompt, params)
        name = session.persona.name if request.type == GenerationType.IMPERSONATE else session.character.name
        processor = StreamingProcessor(
            store,
            request,
            settings,
            events=self.events,
            name=name,
            stop_strings=prompt.stop_sequences,
            backend_id=settings.backend,
            model=settings.model,
            clock=self._clock,
        )
        source = self._source(settings.backend, payload, settings.streaming, request.abort)
        try:
            text = await processor.advance(source)
        except Exception:
            self._drop_untouched_placeholder(store, processor)
            raise

        if processor.state == ProcessorState.STOPPED:
            self._drop_untouched_placeholder(store, processor)

        result = GenerationResult(
            type=request.type,
            state=processor.state,
            text=text,
            message_id=processor.message_id,
            reasoning=processor.reasoning,
            depth=request.depth,
            prompt=prompt,
            tool_calls=processor.tool_calls,
            needs_tool_pass=processor.needs_tool_pass,
        )

        if processor.message_id is not None and processor.chunks_applied and processor.message_id < len(store):
            message = store[processor.message_id]
            store.itemized.put(processor.message_id, message.active_variant, prompt.itemization)
            await self.events.emit(MESSAGE_RECEIVED, {
                "chat_id": store.chat_id,
                "message_id": processor.message_id,
                "type": request.type.value,
            })
            if request.type == GenerationType.SWIPE:
                await self.events.emit(MESSAGE_SWIPED, {
                    "chat_id": store.chat_id,
                    "message_id": processor.message_id,
                    "variant_id": message.active_variant,
                })
        return result

    async def _source(
        self,
        backend_id: str,
        payload: Dict[str, Any],
        streaming: bool,
        signal: AbortToken,
    ) -> AsyncIterator[StreamChunk]:
        """Chunks from the dispatcher; a buffered response is one chunk."""
        if not streaming:
            response = await self.dispatcher.dispatch(backend_id, payload, streaming=False, signal=signal)
            async for chunk in single_chunk(response):
                yield chunk
            return
        stream = await self.dispatcher.dispatch(backend_id, payload, streaming=True, signal=signal)
        try:
            async for chunk in stream:
                yield chunk
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _drop_untouched_placeholder(self, store: ConversationStore, processor: StreamingProcessor) -> None:
        """Remove the placeholder of a pass that never received a chunk."""
        message_id = processor.message_id
        if message_id is None or processor.chunks_applied or message_id >= len(store):
            return
        if processor.request.type == GenerationType.SWIPE:
            message = store[message_id]
            if len(message.variants) > 1:
                store.delete_variant(message_id, message.active_variant)
        elif processor.request.type != GenerationType.CONTINUE:
            store.delete_message(message_id)

    async def _pass_settings(self) -> GenerationSettings:
        settings = self.settings
        if not settings.auto_max_context or not settings.model:
            return settings
        limit = self._context_limits.get(settings.model)
        if limit is None:
            limit = await asyncio.to_thread(clamp_max_context, settings.max_context, settings.model)
            self._context_limits[settings.model] = limit
        if limit == settings.max_context:
            return settings
        return settings.model_copy(update={"max_context": limit})

    def _apply_prompt_hooks(self, context: PromptContext, session: ChatSession, fields: PromptFields) -> None:
        """Register the per-generation prompts on the pass context."""
        macros = fields.macros
        depth_prompt = session.character.depth_prompt
        if depth_prompt.text.strip():
            context.set(
                depth_prompt_key(0),
                macros.substitute(depth_prompt.text),
                PromptPosition.IN_CHAT,
                depth_prompt.depth,
                role=depth_prompt.role,
            )
        persona = session.persona
        if persona.position == PromptPosition.IN_CHAT and persona.description.strip():
            context.set(
                PERSONA_DEPTH_KEY,
                macros.substitute(persona.description),
                PromptPosition.IN_CHAT,
                persona.depth,
                role=persona.role,
            )
        note = session.authors_note
        if note is not None and note.text.strip():
            context.set(AUTHORS_NOTE_KEY, macros.substitute(note.text), note.position, note.depth, role=note.role)

    def _params(
        self,
        settings: GenerationSettings,
        request: GenerationRequest,
        prompt: AssembledPrompt,
        chat_completion: bool,
    ) -> Dict[str, Any]:
        response_length = request.response_length
        if response_length is None:
            response_length = settings.response_length
        params: Dict[str, Any] = {
            "model": settings.model,
            "stream": settings.streaming,
            "max_tokens": response_length,
            "temperature": settings.temperature,
            "top_p": settings.top_p,
            "logprobs": settings.logprobs,
        }
        if request.json_schema:
            params["json_schema"] = {"name": "response", "value": request.json_schema}
        if self._tools_allowed(request, chat_completion):
            schemas = self.tools.tool_schemas()
            if schemas:
                params["tools"] = schemas
        elif self.tools is not None and request.depth and request.depth >= settings.tool_recursion_limit:
            logger.warning("Tool recursion limit (%d) reached, not offering tools", settings.tool_recursion_limit)
        params.update(settings.request_params)
        return params

    # -- Tools -----------------------------------------------------------------

    def _tools_allowed(self, request: GenerationRequest, chat_completion: bool = True) -> bool:
        """Tools are offered below the recursion limit; the last pass must answer in text."""
        return (
            self.tools is not None
            and chat_completion
            and request.type.writes_to_chat
            and request.depth < self.settings.tool_recursion_limit
        )

    def _wants_tools(self, result: GenerationResult, request: GenerationRequest) -> bool:
        return self._tools_allowed(request) and result.needs_tool_pass

    async def _run_tools(
        self,
        session: ChatSession,
        request: GenerationRequest,
        result: GenerationResult,
    ) -> ToolCallOutcome:
        store = session.store
        outcome = await self.tools.invoke(result.tool_calls, request.abort)

        # The pass that asked for tools produced no text of its own.
        if result.message_id is not None and result.message_id < len(store):
            if request.type == GenerationType.SWIPE and len(store[result.message_id].variants) > 1:
                store.delete_variant(result.message_id, store[result.message_id].active_variant)
            elif request.type != GenerationType.CONTINUE:
                store.delete_message(result.message_id)
                result.message_id = None

        if outcome.errors:
            logger.warning("%d tool call(s) failed", len(outcome.errors))
            await self.events.emit(TOOLS_FAILED, {
                "chat_id": store.chat_id,
                "errors": [str(e) for e in outcome.errors],
            })
        if outcome.invocations:
            invocations = [inv.to_dict() for inv in outcome.invocations]
            names = ", ".join(inv.display_name for inv in outcome.invocations)
            store.add_message(Message(
                name=session.character.name,
                text=f"Tool calls: {names}",
                is_system=True,
                extra={"tool_invocations": invocations},
            ))
            await self.events.emit(TOOLS_PERFORMED, {
                "chat_id": store.chat_id,
                "invocations": invocations,
                "depth": request.depth,
            })
        return outcome

    # -- Post-processing -------------------------------------------------------

    def _should_auto_swipe(self, store: ConversationStore, result: GenerationResult, request: GenerationRequest) -> bool:
        policy = self.settings.auto_swipe
        if not policy.enabled or result.auto_swiped or result.message_id is None:
            return False
        # A swipe pass always targets the last message; it must be the reply we judged.
        if result.message_id != len(store) - 1 or not store[result.message_id].is_assistant:
            return False
        if result.state != ProcessorState.FINISHED:
            return False
        if request.type not in (GenerationType.NORMAL, GenerationType.REGENERATE, GenerationType.SWIPE):
            return False
        text = result.text.strip()
        if len(text) < policy.min_length:
            return True
        if policy.blacklist:
            lowered = text.lower()
            hits = sum(
                1 for word in policy.blacklist
                if word.strip() and re.search(rf"\b{re.escape(word.strip().lower())}\b", lowered)
            )
            return hits >= policy.blacklist_threshold
        return False

    async def _save(self, store: ConversationStore) -> None:
        if self.persister is None:
            return
        self.persister.save_chat(store.chat_id, store.messages, store.metadata)
        if store.itemized.path is not None:
            store.itemized.save()
        await self.events.emit(CHAT_SAVED, {"chat_id": store.chat_id, "messages": len(store)})
