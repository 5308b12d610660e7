"""Prompt assembly under a token budget.

Turns the chat, the character fields and the per-generation prompt context
into a single prompt for one backend call:

    - text completion: one string
    - chat completion: a list of ``{"role", "content"[, "name"]}`` dicts

Budget order: the story string is charged first and never trimmed, then the
fixed framing (chat marker, generation prefix, post-history and tail
prompts), the CFG reserve, the continuation tail, pinned examples,
injected prompts, history newest-to-oldest, and last any unpinned examples
that still fit. After rendering, the whole prompt is counted again and the
oldest kept history is dropped until it fits.

The assembler only reads the conversation; it never mutates it.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from tavern.budget import PromptBudget, TrimResult, trim_history
from tavern.character import PromptFields
from tavern.config import GenerationSettings, NamesBehavior
from tavern.conversation import ConversationStore
from tavern.errors import BudgetOverflow, TokenizerUnavailable
from tavern.extension_prompts import PromptContext, PromptPosition, PromptRole
from tavern.formatting import (
    HistoryEntry,
    chat_message_name,
    format_example_block,
    format_history_line,
    format_instruct_example,
    generation_prefix,
    parse_example_blocks,
    parse_example_messages,
    render_story_string,
    stopping_strings,
)
from tavern.itemization import Itemization
from tavern.macros import MacroEngine
from tavern.models import CfgPrompts, GenerationRequest, GenerationType, Message
from tavern.tokenizer import TokenCounter, Tokenizer

logger = logging.getLogger(__name__)

PromptPayload = Union[str, List[Dict[str, Any]]]


def _install_chat_macros(macros: MacroEngine, store: ConversationStore) -> None:
    def _text(message: Optional[Message]) -> str:
        return message.text if message is not None else ""

    macros.update({
        "lastMessage": lambda: _text(store.last_message()),
        "lastUserMessage": lambda: _text(store.last_user_message()),
        "lastCharMessage": lambda: _text(store.last_char_message()),
        "lastChatMessage": lambda: _text(store.last_message()),
    })


def _injected_entry(role: PromptRole, text: str, depth: int) -> HistoryEntry:
    return HistoryEntry(role=role, name="", text=text, is_injected=True)


@dataclass
class AssembledPrompt:
    prompt: PromptPayload
    is_chat: bool
    token_count: int
    max_context: int
    budget: int
    itemization: Itemization
    stop_sequences: List[str] = field(default_factory=list)
    history: List[HistoryEntry] = field(default_factory=list)
    injected_indices: List[int] = field(default_factory=list)
    kept_message_ids: List[int] = field(default_factory=list)
    dropped_messages: int = 0
    overflow: Optional[BudgetOverflow] = None
    cfg: Optional[CfgPrompts] = None


@dataclass
class _Element:
    """A run of prompt units (strings or chat dicts) charged as one item."""

    section: str
    units: List[Any]
    tokens: int = 0


class PromptAssembler:
    """Builds a budgeted prompt for one generation.

    Args:
        settings: Generation settings (context size, formatting, prompts).
        tokenizer: Token counter for the selected model. ``None`` makes every
            ``assemble`` call fail with ``TokenizerUnavailable``.
        chat_completion: Produce role-tagged messages instead of one string.
    """

    def __init__(
        self,
        settings: GenerationSettings,
        tokenizer: Optional[Tokenizer],
        *,
        chat_completion: bool = False,
    ):
        self.settings = settings
        self._tokenizer = tokenizer
        self.chat_completion = chat_completion

    async def assemble(
        self,
        request: GenerationRequest,
        *,
        store: ConversationStore,
        fields: PromptFields,
        context: PromptContext,
    ) -> AssembledPrompt:
        if self._tokenizer is None:
            raise TokenizerUnavailable("Cannot assemble a prompt without a tokenizer")
        request.abort.raise_if_aborted()

        settings = self.settings
        overhead = settings.prompts.message_overhead_tokens if self.chat_completion else 0
        counter = TokenCounter(self._tokenizer, abort=request.abort, message_overhead=overhead)
        user = fields.persona.name
        char = fields.character.name
        macros = fields.macros
        _install_chat_macros(macros, store)

        response_length = request.response_length
        if response_length is None:
            response_length = settings.response_length
        budget = PromptBudget(settings.max_context, response_length=response_length, padding=settings.token_padding)
        itemization = Itemization(budget=budget.limit, max_context=settings.max_context)

        # History, with IN_CHAT prompts spliced in at their depth.
        history = self._history_entries(request, store)
        continuation: Optional[HistoryEntry] = None
        if request.is_continue and history:
            macros.update({"lastChatMessage": history[-1].text})
        injected = await context.inject_into_history(history, request.is_continue, make_entry=_injected_entry)
        if request.is_continue and history and not history[-1].is_injected:
            continuation = history.pop()
        if not history and continuation is None:
            history.append(HistoryEntry(role=PromptRole.USER, name=user, text="", is_placeholder=True))

        # Story string: fixed prefix, charged first.
        sections = {
            name: fields.get(name)
            for name in settings.context.story_string_sections
            if name in PromptFields.FIELDS
        }
        before = await context.get(PromptPosition.BEFORE_PROMPT)
        after = await context.get(PromptPosition.IN_PROMPT)
        story_text = render_story_string(sections, settings.context, macros, before=before, after=after)
        story = await self._element(counter, "story_string", self._story_units(story_text))
        budget.spend(story.tokens)
        story_overflow = story.tokens > budget.limit
        if story_overflow:
            logger.warning("Story string alone needs %d tokens (budget %d)", story.tokens, budget.limit)

        marker = await self._element(counter, "chat_start", self._marker_units())
        budget.spend(marker.tokens)
        tail = await self._tail_elements(counter, request, fields, history, continuation)
        continuation_tokens = 0
        for element in tail:
            if element.section == "continuation":
                continuation_tokens += element.tokens
            else:
                budget.spend(element.tokens)

        cfg = self._resolve_cfg(request.cfg, fields)
        cfg_tokens = 0
        if cfg is not None:
            cfg_tokens = max(await counter.count(cfg.positive), await counter.count(cfg.negative))
            budget.reserve(cfg_tokens)
        budget.reserve(continuation_tokens)

        # Examples: pinned ones before the history walk, the rest after.
        example_elements = await self._example_elements(counter, fields, user, char)
        pinned = settings.prompts.pin_examples
        kept_examples: List[_Element] = []
        if pinned:
            kept_examples = list(example_elements)
            for element in kept_examples:
                budget.spend(element.tokens)

        history_elements = [await self._history_element(counter, entry) for entry in history]
        if story_overflow:
            trim = TrimResult(kept={}, injected=[], total_items=len(history_elements))
        else:
            trim = trim_history([e.tokens for e in history_elements], injected, budget)

        if not pinned and not story_overflow:
            fitting = []
            for element in reversed(example_elements):
                if not budget.can_afford(element.tokens):
                    break
                budget.spend(element.tokens)
                fitting.append(element)
            kept_examples = list(reversed(fitting))
            if len(kept_examples) < len(example_elements):
                logger.debug("Kept %d of %d example blocks", len(kept_examples), len(example_elements))

        budget.commit_reserved(continuation_tokens)
        limit = budget.limit - cfg_tokens

        # Second look: count the rendered prompt and shed old history if needed.
        header = await self._examples_header(counter, kept_examples)
        head = [story] + header + kept_examples + [marker]
        prompt = self._render(head, [history_elements[i] for i in trim.indices()], tail)
        total = await self._count_prompt(counter, prompt)
        while total > limit:
            if trim.drop_oldest_history() is None:
                break
            prompt = self._render(head, [history_elements[i] for i in trim.indices()], tail)
            total = await self._count_prompt(counter, prompt)
        request.abort.raise_if_aborted()

        overflow = None
        if total > limit:
            if story_overflow:
                element_name = "story string"
            elif trim.forced:
                element_name = "newest message"
            elif pinned and kept_examples:
                element_name = "pinned examples"
            else:
                element_name = "prompt"
            overflow = BudgetOverflow(element_name, total + cfg_tokens, budget.limit)
            logger.warning("Prompt exceeds budget: %s", overflow)

        kept_entries = [history[i] for i in trim.indices()]
        for element in [story, marker] + header + kept_examples + tail:
            itemization.add(element.section, element.tokens)
        injected_set = set(trim.injected)
        for index in trim.indices():
            section = "injections" if index in injected_set else "history"
            itemization.add(section, history_elements[index].tokens)
        if cfg_tokens:
            itemization.add("cfg", cfg_tokens)
        itemization.total = total
        itemization.overflow = str(overflow) if overflow else None
        itemization.prompt = prompt

        logger.debug(
            "Assembled %s prompt: %d tokens of %d, %d history item(s) kept, %d dropped",
            "chat" if self.chat_completion else "text", total, budget.limit,
            len(kept_entries), trim.dropped_history,
        )

        return AssembledPrompt(
            prompt=prompt,
            is_chat=self.chat_completion,
            token_count=total,
            max_context=settings.max_context,
            budget=budget.limit,
            itemization=itemization,
            stop_sequences=stopping_strings(
                user=user,
                char=char,
                instruct=settings.instruct,
                context=settings.context,
                macros=macros,
                group_members=request.group_members,
                impersonate=request.type == GenerationType.IMPERSONATE,
            ),
            history=kept_entries,
            injected_indices=trim.injected_positions(),
            kept_message_ids=[e.source_index for e in kept_entries if e.source_index is not None],
            dropped_messages=trim.dropped_history,
            overflow=overflow,
            cfg=cfg,
        )

    # -- History -------------------------------------------------------------

    def _history_entries(self, request: GenerationRequest, store: ConversationStore) -> List[HistoryEntry]:
        indexed = [(i, m) for i, m in enumerate(store.messages) if self._in_history(m)]
        # The message being swiped is replaced, not continued from.
        if request.type == GenerationType.SWIPE and indexed and indexed[-1][1].is_assistant:
            indexed.pop()

        reasoning = self.settings.reasoning
        reasoning_left = reasoning.max_additions if reasoning.add_to_prompts else 0
        entries: List[HistoryEntry] = []
        for index, message in reversed(indexed):
            invocations = message.extra.get("tool_invocations")
            if message.is_system:
                entries.append(HistoryEntry(
                    role=PromptRole.SYSTEM, name="", text=message.text,
                    source_index=index, tool_invocations=list(invocations),
                ))
                continue
            text = message.text
            if reasoning_left and message.is_assistant and message.reasoning:
                text = f"{reasoning.prefix}{message.reasoning}{reasoning.suffix}{reasoning.separator}{text}"
                reasoning_left -= 1
            role = PromptRole.USER if message.is_user else PromptRole.ASSISTANT
            entries.append(HistoryEntry(role=role, name=message.name, text=text, source_index=index))
        entries.reverse()
        return entries

    def _in_history(self, message: Message) -> bool:
        """System messages stay out, except tool results in chat mode."""
        if not message.is_system:
            return True
        return self.chat_completion and bool(message.extra.get("tool_invocations"))

    async def _history_element(self, counter: TokenCounter, entry: HistoryEntry) -> _Element:
        section = "injections" if entry.is_injected else "history"
        if entry.tool_invocations:
            return await self._element(counter, "tool_calls", self._tool_units(entry.tool_invocations))
        return await self._element(counter, section, [self._render_entry(entry)])

    def _tool_units(self, invocations: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """An assistant tool-call turn followed by one tool message per result."""
        calls = [
            {
                "id": inv.get("id", ""),
                "type": "function",
                "function": {"name": inv.get("name", ""), "arguments": inv.get("parameters") or "{}"},
            }
            for inv in invocations
        ]
        units: List[Dict[str, Any]] = [{"role": "assistant", "content": "", "tool_calls": calls}]
        for inv in invocations:
            units.append({"role": "tool", "content": inv.get("result", ""), "tool_call_id": inv.get("id", "")})
        return units

    def _render_entry(self, entry: HistoryEntry, *, is_continuation: bool = False) -> Any:
        if not self.chat_completion:
            return format_history_line(entry, self.settings.instruct, is_continuation=is_continuation)

        message: Dict[str, Any] = {"role": entry.chat_role, "content": entry.text}
        names = self.settings.prompts.names_behavior
        if entry.role != PromptRole.SYSTEM and entry.name and not entry.is_injected:
            if names == NamesBehavior.COMPLETION:
                message["name"] = chat_message_name(entry.name)
            elif names == NamesBehavior.CONTENT:
                message["content"] = f"{entry.name}: {entry.text}"
        return message

    # -- Fixed elements ------------------------------------------------------

    def _story_units(self, story_text: str) -> List[Any]:
        if not story_text:
            return []
        if self.chat_completion:
            return [{"role": "system", "content": story_text.strip()}]
        return [story_text]

    def _marker_units(self) -> List[Any]:
        if self.chat_completion:
            marker = self.settings.prompts.new_chat_prompt
            return [{"role": "system", "content": marker}] if marker else []
        marker = self.settings.context.chat_start
        return [f"{marker}\n"] if marker else []

    async def _examples_header(self, counter: TokenCounter, kept_examples: List[_Element]) -> List[_Element]:
        header = self.settings.prompts.new_example_chat_prompt
        if not self.chat_completion or not kept_examples or not header:
            return []
        return [await self._element(counter, "examples", [{"role": "system", "content": header}])]

    async def _example_elements(self, counter: TokenCounter, fields: PromptFields, user: str, char: str) -> List[_Element]:
        lore = fields.lore
        raw = "\n".join(p for p in (lore.examples_before, fields.get("examples"), lore.examples_after) if p)
        elements = []
        for block in parse_example_blocks(raw):
            if self.chat_completion:
                units = []
                for role, text in parse_example_messages(block, user=user, char=char):
                    unit: Dict[str, Any] = {"role": "system", "content": text}
                    if role == PromptRole.USER:
                        unit["name"] = "example_user"
                    elif role == PromptRole.ASSISTANT:
                        unit["name"] = "example_assistant"
                    units.append(unit)
            elif self.settings.instruct.enabled:
                units = [format_instruct_example(
                    block, user=user, char=char, instruct=self.settings.instruct, context=self.settings.context,
                )]
            else:
                units = [format_example_block(block, self.settings.context)]
            elements.append(await self._element(counter, "examples", units))
        return elements

    async def _tail_elements(
        self,
        counter: TokenCounter,
        request: GenerationRequest,
        fields: PromptFields,
        history: List[HistoryEntry],
        continuation: Optional[HistoryEntry],
    ) -> List[_Element]:
        """Everything after the history, in prompt order."""
        prompts = self.settings.prompts
        macros = fields.macros
        user = fields.persona.name
        char = fields.character.name
        units: List[tuple] = []

        if self.chat_completion:
            prefill = continuation is not None and prompts.continue_prefill
            if continuation is not None and not prefill:
                units.append(("continuation", self._render_entry(continuation)))
            last = history[-1] if history else None
            if (
                request.type == GenerationType.NORMAL
                and prompts.send_if_empty
                and last is not None
                and last.role == PromptRole.ASSISTANT
            ):
                units.append(("send_if_empty", {"role": "user", "content": macros.substitute(prompts.send_if_empty)}))
            jailbreak = fields.get("jailbreak")
            if jailbreak:
                units.append(("post_history", {"role": "system", "content": jailbreak}))
            if continuation is not None and not prefill:
                nudge = macros.substitute(prompts.continue_nudge_prompt)
                if nudge:
                    units.append(("continue_nudge", {"role": "system", "content": nudge}))
            if request.type == GenerationType.IMPERSONATE:
                units.append(("impersonation", {"role": "system", "content": macros.substitute(prompts.impersonation_prompt)}))
            if request.type == GenerationType.QUIET and request.quiet_prompt:
                units.append(("quiet_prompt", {"role": "system", "content": macros.substitute(request.quiet_prompt)}))
            if prefill:
                units.append(("continuation", {"role": "assistant", "content": continuation.text}))
        else:
            if continuation is not None:
                units.append(("continuation", self._render_entry(continuation, is_continuation=True)))
            else:
                if request.type == GenerationType.QUIET and request.quiet_prompt:
                    quiet = HistoryEntry(role=PromptRole.SYSTEM, name="", text=macros.substitute(request.quiet_prompt))
                    units.append(("quiet_prompt", format_history_line(quiet, self.settings.instruct)))
                as_user = request.type == GenerationType.IMPERSONATE
                name = user if as_user else char
                units.append(("generation_prefix", generation_prefix(name, self.settings.instruct, as_user=as_user)))

        return [await self._element(counter, section, [unit]) for section, unit in units]

    def _resolve_cfg(self, cfg: Optional[CfgPrompts], fields: PromptFields) -> Optional[CfgPrompts]:
        if cfg is None or not (cfg.positive or cfg.negative):
            return None
        return CfgPrompts(
            positive=fields.macros.substitute(cfg.positive),
            negative=fields.macros.substitute(cfg.negative),
        )

    # -- Counting and rendering ---------------------------------------------

    async def _element(self, counter: TokenCounter, section: str, units: List[Any]) -> _Element:
        tokens = 0
        for unit in units:
            if isinstance(unit, dict):
                tokens += await counter.count_message(unit)
            else:
                tokens += await counter.count(unit)
        return _Element(section, units, tokens)

    async def _count_prompt(self, counter: TokenCounter, prompt: PromptPayload) -> int:
        if isinstance(prompt, list):
            return await counter.count_messages(prompt)
        return await counter.count(prompt)

    def _render(self, head: List[_Element], history: List[_Element], tail: List[_Element]) -> PromptPayload:
        units: List[Any] = []
        for element in head + history + tail:
            units.extend(element.units)
        if self.chat_completion:
            return units
        return "".join(units)
