"""Tests for the extension prompt registry and in-chat injection.

Run with:  python -m pytest tests/tavern/test_extension_prompts.py -v
"""

import pytest

from tavern.extension_prompts import (
    ExtensionPromptRegistry,
    PromptContext,
    PromptPosition,
    PromptRole,
)
from tavern_constants import (
    AUTHORS_NOTE_KEY,
    MAX_INJECTION_DEPTH,
    custom_wi_depth_key,
    custom_wi_outlet_key,
    depth_prompt_key,
)


def _texts(messages):
    return [m if isinstance(m, str) else m.text for m in messages]


# ---------------------------------------------------------------------------
# set / get
# ---------------------------------------------------------------------------

class TestRegistry:
    def test_depth_is_clamped(self):
        registry = ExtensionPromptRegistry()
        registry.set("deep", "v", PromptPosition.IN_CHAT, depth=MAX_INJECTION_DEPTH + 50)
        registry.set("negative", "v", PromptPosition.IN_CHAT, depth=-3)
        assert registry.entry("deep").depth == MAX_INJECTION_DEPTH
        assert registry.entry("negative").depth == 0

    def test_set_overwrites_key(self):
        registry = ExtensionPromptRegistry()
        registry.set("k", "first")
        registry.set("k", "second")
        assert len(registry) == 1
        assert registry.entry("k").value == "second"

    @pytest.mark.asyncio
    async def test_get_joins_sorted_by_key(self):
        registry = ExtensionPromptRegistry()
        registry.set("b", "two")
        registry.set("a", "one")
        assert await registry.get(PromptPosition.IN_PROMPT) == "\none\ntwo\n"
        assert await registry.get(PromptPosition.IN_PROMPT, wrap=False) == "one\ntwo"

    @pytest.mark.asyncio
    async def test_get_filters_position_depth_and_role(self):
        registry = ExtensionPromptRegistry()
        registry.set("a", "chat sys", PromptPosition.IN_CHAT, depth=1)
        registry.set("b", "chat user", PromptPosition.IN_CHAT, depth=1, role=PromptRole.USER)
        registry.set("c", "chat deeper", PromptPosition.IN_CHAT, depth=3)
        registry.set("d", "before", PromptPosition.BEFORE_PROMPT)

        assert await registry.get(PromptPosition.BEFORE_PROMPT, wrap=False) == "before"
        assert await registry.get(PromptPosition.IN_CHAT, depth=1, role=PromptRole.USER, wrap=False) == "chat user"
        assert await registry.get(PromptPosition.IN_CHAT, depth=1, wrap=False) == "chat sys\nchat user"
        assert await registry.get(PromptPosition.IN_PROMPT) == ""

    @pytest.mark.asyncio
    async def test_filters_sync_and_async(self):
        async def async_no():
            return False

        registry = ExtensionPromptRegistry()
        registry.set("a", "shown", filter=lambda: True)
        registry.set("b", "hidden", filter=lambda: False)
        registry.set("c", "hidden too", filter=async_no)
        assert await registry.get(PromptPosition.IN_PROMPT, wrap=False) == "shown"

    def test_max_depth(self):
        registry = ExtensionPromptRegistry()
        assert registry.max_depth() == -1
        registry.set("a", "v", PromptPosition.IN_CHAT, depth=2)
        registry.set("b", "", PromptPosition.IN_CHAT, depth=9)
        registry.set("c", "v", PromptPosition.IN_PROMPT, depth=7)
        assert registry.max_depth() == 2

    def test_scan_values(self):
        registry = ExtensionPromptRegistry()
        registry.set("b", "scanned", scan=True)
        registry.set("a", "not scanned")
        assert registry.scan_values() == ["scanned"]


# ---------------------------------------------------------------------------
# Generation scoping
# ---------------------------------------------------------------------------

class TestGenerationScope:
    def test_flush_generation_keys_only_drops_scoped_keys(self):
        registry = ExtensionPromptRegistry()
        registry.set(depth_prompt_key(0), "depth")
        registry.set(custom_wi_depth_key(2, 0), "wi depth")
        registry.set(custom_wi_outlet_key("tavern"), "outlet")
        registry.set(AUTHORS_NOTE_KEY, "note")

        removed = registry.flush_generation_keys()

        assert sorted(removed) == sorted([
            depth_prompt_key(0), custom_wi_depth_key(2, 0), custom_wi_outlet_key("tavern"),
        ])
        assert registry.keys() == [AUTHORS_NOTE_KEY]

    def test_snapshot_is_isolated_from_registry(self):
        registry = ExtensionPromptRegistry()
        registry.set("shared", "v")
        context = registry.snapshot()
        assert isinstance(context, PromptContext)

        context.set(depth_prompt_key(0), "only this generation")
        context.set("shared", "changed")

        assert depth_prompt_key(0) not in registry
        assert registry.entry("shared").value == "v"

    def test_close_flushes_and_marks_closed(self):
        context = ExtensionPromptRegistry().snapshot()
        context.set(depth_prompt_key(0), "v")
        context.set("persistent", "v")
        assert context.close() == [depth_prompt_key(0)]
        assert context.closed
        assert context.keys() == ["persistent"]


# ---------------------------------------------------------------------------
# inject_into_history
# ---------------------------------------------------------------------------

class TestInjectIntoHistory:
    @pytest.mark.asyncio
    async def test_no_in_chat_prompts_leaves_history_alone(self):
        registry = ExtensionPromptRegistry()
        registry.set("a", "v", PromptPosition.IN_PROMPT)
        messages = ["a", "b"]
        assert await registry.inject_into_history(messages) == []
        assert messages == ["a", "b"]

    @pytest.mark.asyncio
    async def test_depth_zero_lands_at_the_end(self):
        registry = ExtensionPromptRegistry()
        registry.set("note", "N", PromptPosition.IN_CHAT, depth=0)
        messages = ["a", "b", "c"]
        assert await registry.inject_into_history(messages) == [3]
        assert _texts(messages) == ["a", "b", "c", "N"]
        assert messages[3].is_injected

    @pytest.mark.asyncio
    async def test_depth_counts_original_messages_after_the_injection(self):
        registry = ExtensionPromptRegistry()
        registry.set("note", "N", PromptPosition.IN_CHAT, depth=2)
        messages = ["a", "b", "c", "d", "e"]
        assert await registry.inject_into_history(messages) == [3]
        assert _texts(messages) == ["a", "b", "c", "N", "d", "e"]

    @pytest.mark.asyncio
    async def test_continue_shifts_one_further_back(self):
        registry = ExtensionPromptRegistry()
        registry.set("note", "N", PromptPosition.IN_CHAT, depth=0)
        messages = ["a", "b", "c"]
        assert await registry.inject_into_history(messages, is_continue=True) == [2]
        assert _texts(messages) == ["a", "b", "N", "c"]

    @pytest.mark.asyncio
    async def test_roles_at_one_depth_end_with_assistant(self):
        registry = ExtensionPromptRegistry()
        registry.set("k1", "A", PromptPosition.IN_CHAT, depth=1, role=PromptRole.ASSISTANT)
        registry.set("k2", "S", PromptPosition.IN_CHAT, depth=1, role=PromptRole.SYSTEM)
        registry.set("k3", "U", PromptPosition.IN_CHAT, depth=1, role=PromptRole.USER)
        messages = ["a", "b", "c"]

        assert await registry.inject_into_history(messages) == [2, 3, 4]
        assert _texts(messages) == ["a", "b", "S", "U", "A", "c"]
        assert [m.role for m in messages[2:5]] == [PromptRole.SYSTEM, PromptRole.USER, PromptRole.ASSISTANT]

    @pytest.mark.asyncio
    async def test_several_depths(self):
        registry = ExtensionPromptRegistry()
        registry.set("d0", "X0", PromptPosition.IN_CHAT, depth=0)
        registry.set("d2", "X2", PromptPosition.IN_CHAT, depth=2)
        messages = ["a", "b", "c", "d"]
        assert await registry.inject_into_history(messages) == [2, 5]
        assert _texts(messages) == ["a", "b", "X2", "c", "d", "X0"]

    @pytest.mark.asyncio
    async def test_depth_past_the_start_goes_first(self):
        registry = ExtensionPromptRegistry()
        registry.set("note", "N", PromptPosition.IN_CHAT, depth=10)
        messages = ["a", "b"]
        assert await registry.inject_into_history(messages) == [0]
        assert _texts(messages) == ["N", "a", "b"]

    @pytest.mark.asyncio
    async def test_custom_entry_factory(self):
        registry = ExtensionPromptRegistry()
        registry.set("note", "N", PromptPosition.IN_CHAT, depth=0, role=PromptRole.USER)
        messages = ["a"]
        await registry.inject_into_history(messages, make_entry=lambda role, text, depth: (role, text, depth))
        assert messages == ["a", (PromptRole.USER, "N", 0)]
