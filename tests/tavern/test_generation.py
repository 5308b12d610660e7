"""Tests for the Generator pipeline.

Covers:
  - normal, regenerate, swipe, continue, quiet and impersonate generations
  - generation-scoped prompt keys are flushed however a generation ends
  - a new generation on the same chat supersedes the active one
  - tool calls re-enter one level deeper and the last pass answers in text
  - auto-swipe, persistence and per-model context clamping

Backends are faked with the ScriptedAdapter from conftest.
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from tavern.character import CharacterCard, DepthPrompt, Persona
from tavern.config import AutoSwipeSettings, GenerationSettings
from tavern.dispatcher import GenerationDispatcher
from tavern.errors import TransportError
from tavern.events import (
    CHAT_SAVED,
    GENERATION_ENDED,
    GENERATION_ERROR,
    GENERATION_STARTED,
    MESSAGE_DELETED,
    MESSAGE_RECEIVED,
    MESSAGE_SWIPED,
    TOOLS_FAILED,
    TOOLS_PERFORMED,
    EventBus,
)
from tavern.extension_prompts import ExtensionPromptRegistry, PromptPosition
from tavern.generation import AuthorsNote, ChatSession, Generator
from tavern.models import GenerationRequest, GenerationType
from tavern.persistence import JsonlChatPersister
from tavern.streaming import ProcessorState
from tavern.tokenizer import RoughTokenizer
from tavern.tool_calls import FunctionToolCoordinator
from tavern_constants import depth_prompt_key

ROLL_CALL = {"id": "call_1", "type": "function", "function": {"name": "roll", "arguments": "{\"sides\": 6}"}}


def _settings(**kwargs):
    kwargs.setdefault("backend", "fake")
    kwargs.setdefault("streaming", False)
    kwargs.setdefault("stream_tick_seconds", 0)
    kwargs.setdefault("max_context", 4096)
    kwargs.setdefault("response_length", 100)
    return GenerationSettings(**kwargs)


def _generator(adapter, settings=None, **kwargs):
    kwargs.setdefault("events", EventBus())
    return Generator(
        settings or _settings(),
        dispatcher=GenerationDispatcher({"fake": adapter}),
        tokenizer=RoughTokenizer(),
        **kwargs,
    )


def _session(store, **kwargs):
    kwargs.setdefault("character", CharacterCard(name="Alice", description="A knight."))
    kwargs.setdefault("persona", Persona(name="Bob"))
    return ChatSession(store=store, **kwargs)


def _contents(payload):
    return [m.get("content") for m in payload["prompt"]]


async def _wait_until(predicate):
    while not predicate():
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Basic flow
# ---------------------------------------------------------------------------

class TestNormalGeneration:
    @pytest.mark.asyncio
    async def test_reply_is_written_itemized_and_announced(self, chat, scripted_adapter):
        store = chat("Hello", "Hi")
        adapter = scripted_adapter([{"text": "Nice to meet you."}])
        generator = _generator(adapter)

        result = await generator.generate(_session(store), GenerationRequest())

        assert result.state == ProcessorState.FINISHED
        assert result.text == "Nice to meet you."
        assert result.message_id == 2
        assert store[2].text == "Nice to meet you."
        assert store[2].name == "Alice"
        assert store[2].extra["api"] == "fake"
        assert store.itemized.get(2, 0) is result.prompt.itemization
        events = generator.events
        assert events.count(GENERATION_STARTED) == 1
        assert events.count(GENERATION_ENDED) == 1
        assert events.count(MESSAGE_RECEIVED) == 1
        assert not generator.is_generating(store.chat_id)

    @pytest.mark.asyncio
    async def test_payload_carries_history_and_params(self, chat, scripted_adapter):
        adapter = scripted_adapter([{"text": "ok"}])
        await _generator(adapter).generate(_session(chat("Hello", "Hi")), GenerationRequest())

        payload = adapter.payloads[0]
        assert payload["params"]["max_tokens"] == 100
        assert "tools" not in payload["params"]
        assert payload["prompt"][-1] == {"role": "user", "content": "Hi"}
        assert "A knight." in payload["prompt"][0]["content"]

    @pytest.mark.asyncio
    async def test_streaming(self, chat, scripted_adapter):
        store = chat("Hello", "Hi")
        adapter = scripted_adapter([{"chunks": ["Nice", "Nice to", "Nice to meet you."]}])
        result = await _generator(adapter, _settings(streaming=True)).generate(_session(store), GenerationRequest())
        assert result.text == "Nice to meet you."
        assert store[2].text == "Nice to meet you."

    @pytest.mark.asyncio
    async def test_text_completion_backend(self, chat, scripted_adapter):
        adapter = scripted_adapter([{"text": "Welcome."}], chat_completion=False)
        result = await _generator(adapter).generate(_session(chat("Hello", "Hi")), GenerationRequest())
        payload = adapter.payloads[0]
        assert payload["prompt"].endswith("Bob: Hi\nAlice:")
        assert payload["stop"] == ["\nBob:"]
        assert result.text == "Welcome."

    @pytest.mark.asyncio
    async def test_backend_error_removes_the_placeholder(self, chat, scripted_adapter):
        store = chat("Hello", "Hi")
        generator = _generator(scripted_adapter([TransportError("down")]))
        with pytest.raises(TransportError):
            await generator.generate(_session(store), GenerationRequest())
        assert len(store) == 2
        assert generator.events.count(GENERATION_ERROR) == 1
        assert not generator.is_generating(store.chat_id)

    @pytest.mark.asyncio
    async def test_abort_during_assembly_is_a_stop(self, chat, scripted_adapter):
        store = chat("Hello", "Hi")
        adapter = scripted_adapter([{"text": "never"}])
        request = GenerationRequest()
        request.abort.abort("user")

        result = await _generator(adapter).generate(_session(store), request)

        assert result.state == ProcessorState.STOPPED
        assert adapter.payloads == []
        assert len(store) == 2


# ---------------------------------------------------------------------------
# Generation types
# ---------------------------------------------------------------------------

class TestGenerationTypes:
    @pytest.mark.asyncio
    async def test_regenerate_replaces_the_last_reply(self, chat, scripted_adapter):
        store = chat("Hello", "Hi", "old reply")
        adapter = scripted_adapter([{"text": "new reply"}])
        generator = _generator(adapter)

        await generator.generate(_session(store), GenerationRequest(type=GenerationType.REGENERATE))

        assert [m.text for m in store.messages] == ["Hello", "Hi", "new reply"]
        assert "old reply" not in _contents(adapter.payloads[0])
        assert generator.events.count(MESSAGE_DELETED) == 1

    @pytest.mark.asyncio
    async def test_swipe_adds_a_variant_without_the_replaced_text(self, chat, scripted_adapter):
        store = chat("Hello", "Hi", "first")
        adapter = scripted_adapter([{"text": "second"}])

        generator = _generator(adapter)
        await generator.generate(_session(store), GenerationRequest(type=GenerationType.SWIPE))

        assert store[2].variants == ["first", "second"]
        assert store[2].active_variant == 1
        assert "first" not in _contents(adapter.payloads[0])
        assert store.itemized.get(2, 1) is not None
        assert generator.events.count(MESSAGE_SWIPED) == 1

    @pytest.mark.asyncio
    async def test_swipe_needs_a_character_message(self, chat, scripted_adapter):
        with pytest.raises(ValueError):
            await _generator(scripted_adapter()).generate(
                _session(chat("Hello", "Hi")), GenerationRequest(type=GenerationType.SWIPE),
            )

    @pytest.mark.asyncio
    async def test_continue_on_an_empty_chat_generates_normally(self, chat, scripted_adapter):
        store = chat()
        result = await _generator(scripted_adapter([{"text": "Greetings."}])).generate(
            _session(store), GenerationRequest(type=GenerationType.CONTINUE),
        )
        assert result.type == GenerationType.NORMAL
        assert [m.text for m in store.messages] == ["Greetings."]

    @pytest.mark.asyncio
    async def test_continue_extends_the_last_message(self, chat, scripted_adapter):
        store = chat("Hello", "Hi", "Once upon")
        adapter = scripted_adapter([{"text": " a time."}])
        await _generator(adapter).generate(_session(store), GenerationRequest(type=GenerationType.CONTINUE))
        assert store[2].text == "Once upon a time."
        assert adapter.payloads[0]["prompt"][-1]["content"].startswith("[Continue the following message.")

    @pytest.mark.asyncio
    async def test_quiet_writes_nothing_and_skips_saving(self, chat, scripted_adapter):
        store = chat("Hello", "Hi")
        persister = MagicMock()
        adapter = scripted_adapter([{"text": "A summary."}])
        generator = _generator(adapter, persister=persister)

        result = await generator.generate(
            _session(store), GenerationRequest(type=GenerationType.QUIET, quiet_prompt="Summarize {{char}}'s day."),
        )

        assert result.text == "A summary."
        assert result.message_id is None
        assert len(store) == 2
        assert adapter.payloads[0]["prompt"][-1] == {"role": "system", "content": "Summarize Alice's day."}
        persister.save_chat.assert_not_called()

    @pytest.mark.asyncio
    async def test_impersonate_speaks_as_the_user(self, chat, scripted_adapter):
        store = chat("Hello")
        adapter = scripted_adapter([{"text": "Bob: I wave back."}])
        result = await _generator(adapter).generate(_session(store), GenerationRequest(type=GenerationType.IMPERSONATE))
        assert result.text == "I wave back."
        assert len(store) == 1
        assert adapter.payloads[0]["stop"] == ["\nAlice:"]


# ---------------------------------------------------------------------------
# Prompt hooks and generation-scoped keys
# ---------------------------------------------------------------------------

class TestPromptScope:
    @pytest.mark.asyncio
    async def test_authors_note_at_depth_zero_is_last(self, chat, scripted_adapter):
        adapter = scripted_adapter([{"text": "ok"}])
        session = _session(chat("Hello", "Hi"), authors_note=AuthorsNote(text="Keep {{char}} terse.", depth=0))
        await _generator(adapter).generate(session, GenerationRequest())
        assert adapter.payloads[0]["prompt"][-1] == {"role": "system", "content": "Keep Alice terse."}

    @pytest.mark.asyncio
    async def test_character_depth_prompt_lives_only_in_the_pass(self, chat, scripted_adapter):
        adapter = scripted_adapter([{"text": "ok"}])
        character = CharacterCard(name="Alice", depth_prompt=DepthPrompt(text="Stay in character.", depth=0))
        generator = _generator(adapter)

        await generator.generate(_session(chat("Hello", "Hi"), character=character), GenerationRequest())

        assert adapter.payloads[0]["prompt"][-1] == {"role": "system", "content": "Stay in character."}
        assert depth_prompt_key(0) not in generator.registry
        assert generator.last_context.closed

    @pytest.mark.asyncio
    async def test_scoped_registry_keys_are_flushed_on_success(self, chat, scripted_adapter):
        registry = ExtensionPromptRegistry()
        registry.set(depth_prompt_key(1), "scoped", PromptPosition.IN_CHAT, 1)
        registry.set("persistent", "kept", PromptPosition.IN_CHAT, 1)
        adapter = scripted_adapter([{"text": "ok"}])

        await _generator(adapter, registry=registry).generate(_session(chat("Hello", "Hi")), GenerationRequest())

        assert "scoped\nkept" in _contents(adapter.payloads[0])
        assert depth_prompt_key(1) not in registry
        assert "persistent" in registry

    @pytest.mark.asyncio
    async def test_scoped_registry_keys_are_flushed_on_error(self, chat, scripted_adapter):
        registry = ExtensionPromptRegistry()
        registry.set(depth_prompt_key(1), "scoped", PromptPosition.IN_CHAT, 1)
        generator = _generator(scripted_adapter([TransportError("down")]), registry=registry)
        with pytest.raises(TransportError):
            await generator.generate(_session(chat("Hello", "Hi")), GenerationRequest())
        assert depth_prompt_key(1) not in registry


# ---------------------------------------------------------------------------
# Stop and supersede
# ---------------------------------------------------------------------------

class TestStopping:
    @pytest.mark.asyncio
    async def test_stop_keeps_partial_text(self, chat, scripted_adapter):
        store = chat("Hello", "Hi")
        registry = ExtensionPromptRegistry()
        registry.set(depth_prompt_key(1), "scoped", PromptPosition.IN_CHAT, 1)
        adapter = scripted_adapter([{"chunks": ["Once"], "stall": True}])
        generator = _generator(adapter, _settings(streaming=True), registry=registry)

        task = asyncio.ensure_future(generator.generate(_session(store), GenerationRequest()))
        await _wait_until(lambda: len(store) == 3 and store[2].text == "Once")
        assert generator.stop(store.chat_id)
        result = await task

        assert result.state == ProcessorState.STOPPED
        assert store[2].text == "Once"
        assert generator.events.count(GENERATION_ENDED) == 0
        assert "scoped" in _contents(adapter.payloads[0])
        assert depth_prompt_key(1) not in generator.registry

    def test_stop_with_nothing_active(self, scripted_adapter):
        assert not _generator(scripted_adapter()).stop()

    @pytest.mark.asyncio
    async def test_new_generation_supersedes_the_active_one(self, chat, scripted_adapter):
        store = chat("Hello", "Hi")
        adapter = scripted_adapter([{"chunks": ["Hel"], "stall": True}, {"text": "Hello again."}])
        generator = _generator(adapter, _settings(streaming=True))
        first_request = GenerationRequest()

        first = asyncio.ensure_future(generator.generate(_session(store), first_request))
        await _wait_until(lambda: len(store) == 3 and store[2].text == "Hel")
        second = asyncio.ensure_future(generator.generate(_session(store), GenerationRequest()))
        first_result, second_result = await asyncio.gather(first, second)

        assert first_request.abort.reason == "superseded"
        assert first_result.state == ProcessorState.STOPPED
        assert second_result.state == ProcessorState.FINISHED
        assert [m.text for m in store.messages] == ["Hello", "Hi", "Hel", "Hello again."]
        assert not generator.is_generating(store.chat_id)


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------

class TestToolCalls:
    @staticmethod
    def _tools(**kwargs):
        tools = FunctionToolCoordinator()
        tools.register("roll", lambda sides=6: 4, display_name="Dice", **kwargs)
        return tools

    @pytest.mark.asyncio
    async def test_recursion_stops_at_the_limit(self, chat, scripted_adapter):
        def reply(payload):
            if "tools" in payload["params"]:
                return {"text": "", "tool_calls": [ROLL_CALL]}
            return {"text": "You rolled a 4."}

        store = chat("Hello", "Roll for me")
        adapter = scripted_adapter(reply)
        generator = _generator(adapter, _settings(tool_recursion_limit=2), tools=self._tools())

        result = await generator.generate(_session(store), GenerationRequest())

        assert ["tools" in p["params"] for p in adapter.payloads] == [True, True, False]
        assert result.depth == 2
        assert result.text == "You rolled a 4."
        assert len(result.tool_outcomes) == 2
        assert generator.events.count(TOOLS_PERFORMED) == 2
        assert [m.is_system for m in store.messages] == [False, False, True, True, False]
        assert store[2].extra["tool_invocations"][0]["result"] == "4"
        assert store[2].text == "Tool calls: Dice"
        tool_turns = [m for m in adapter.payloads[1]["prompt"] if m.get("role") == "tool"]
        assert tool_turns == [{"role": "tool", "content": "4", "tool_call_id": "call_1"}]

    @pytest.mark.asyncio
    async def test_failed_tools_are_collected(self, chat, scripted_adapter):
        store = chat("Hello", "Roll for me")
        missing = {"id": "c9", "type": "function", "function": {"name": "missing", "arguments": "{}"}}
        adapter = scripted_adapter([{"text": "", "tool_calls": [missing]}])
        generator = _generator(adapter, tools=self._tools())

        result = await generator.generate(_session(store), GenerationRequest())

        assert len(result.tool_errors) == 1
        assert result.tool_errors[0].tool_name == "missing"
        assert generator.events.count(TOOLS_FAILED) == 1
        assert len(adapter.payloads) == 1
        assert len(store) == 2
        assert result.message_id is None

    @pytest.mark.asyncio
    async def test_failed_tool_pass_never_auto_swipes_the_user_turn(self, chat, scripted_adapter):
        store = chat("Hello", "Hi there")
        missing = {"id": "c9", "type": "function", "function": {"name": "missing", "arguments": "{}"}}
        adapter = scripted_adapter([{"text": "", "tool_calls": [missing]}, {"text": "swiped reply"}])
        settings = _settings(auto_swipe=AutoSwipeSettings(enabled=True, min_length=2))
        generator = _generator(adapter, settings, tools=self._tools())

        result = await generator.generate(_session(store), GenerationRequest())

        assert not result.auto_swiped
        assert result.message_id is None
        assert len(adapter.payloads) == 1
        assert [m.text for m in store.messages] == ["Hello", "Hi there"]
        assert store[1].variants == ["Hi there"]

    @pytest.mark.asyncio
    async def test_stealth_tools_are_not_fed_back(self, chat, scripted_adapter):
        store = chat("Hello", "Roll for me")
        adapter = scripted_adapter([{"text": "", "tool_calls": [ROLL_CALL]}])
        generator = _generator(adapter, tools=self._tools(stealth=True))

        result = await generator.generate(_session(store), GenerationRequest())

        assert len(result.tool_outcomes[0].stealth_calls) == 1
        assert len(adapter.payloads) == 1
        assert generator.events.count(TOOLS_PERFORMED) == 0
        assert not any(m.is_system for m in store.messages)
        assert result.message_id is None


# ---------------------------------------------------------------------------
# Post-processing
# ---------------------------------------------------------------------------

class TestPostProcessing:
    @pytest.mark.asyncio
    async def test_auto_swipe_replaces_a_short_reply(self, chat, scripted_adapter):
        store = chat("Hello", "Hi")
        adapter = scripted_adapter([{"text": "ok"}, {"text": "A proper reply."}])
        settings = _settings(auto_swipe=AutoSwipeSettings(enabled=True, min_length=5))

        result = await _generator(adapter, settings).generate(_session(store), GenerationRequest())

        assert result.auto_swiped
        assert store[2].variants == ["ok", "A proper reply."]
        assert store[2].active_variant == 1

    @pytest.mark.asyncio
    async def test_auto_swipe_runs_once(self, chat, scripted_adapter):
        store = chat("Hello", "Hi")
        adapter = scripted_adapter([{"text": "no"}, {"text": "no"}, {"text": "never asked"}])
        settings = _settings(auto_swipe=AutoSwipeSettings(enabled=True, min_length=5))

        await _generator(adapter, settings).generate(_session(store), GenerationRequest())

        assert len(adapter.payloads) == 2
        assert store[2].variants == ["no", "no"]

    @pytest.mark.asyncio
    async def test_blacklist_threshold(self, chat, scripted_adapter):
        store = chat("Hello", "Hi")
        adapter = scripted_adapter([{"text": "As an AI language model I cannot."}, {"text": "Sure thing."}])
        settings = _settings(auto_swipe=AutoSwipeSettings(enabled=True, blacklist=["AI", "language model"], blacklist_threshold=2))

        result = await _generator(adapter, settings).generate(_session(store), GenerationRequest())

        assert result.auto_swiped
        assert store[2].text == "Sure thing."

    @pytest.mark.asyncio
    async def test_chat_is_saved(self, chat, scripted_adapter, tmp_path):
        store = chat("Hello", "Hi")
        persister = JsonlChatPersister(tmp_path)
        generator = _generator(scripted_adapter([{"text": "Saved reply."}]), persister=persister)

        await generator.generate(_session(store), GenerationRequest())

        messages, metadata = persister.load_chat(store.chat_id)
        assert [m.text for m in messages] == ["Hello", "Hi", "Saved reply."]
        assert metadata["tainted"] is True
        assert generator.events.count(CHAT_SAVED) == 1

    @pytest.mark.asyncio
    async def test_auto_max_context_clamps_and_caches(self, chat, scripted_adapter):
        adapter = scripted_adapter([{"text": "a"}, {"text": "b"}])
        settings = _settings(model="small-model", max_context=8192, auto_max_context=True)
        generator = _generator(adapter, settings)

        with patch("tavern.generation.clamp_max_context", return_value=2048) as clamp:
            first = await generator.generate(_session(chat("Hello", "Hi")), GenerationRequest())
            await generator.generate(_session(chat("Hello", "Hi")), GenerationRequest())

        assert first.prompt.max_context == 2048
        clamp.assert_called_once_with(8192, "small-model")
        assert generator.settings.max_context == 8192
