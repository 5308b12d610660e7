"""Shared fakes for the tavern tests.

- ``WordTokenizer`` counts one token per whole-word occurrence of ``x``, so
  budgets can be reasoned about by counting words.
- ``ScriptedAdapter`` answers from a list of scripted replies (or a callable
  deciding per payload) and records every payload it was sent.
"""

import asyncio
import re
from typing import Any, Callable, Dict, List, Union

import pytest

from tavern.backends.base import BackendAdapter, StreamChunk
from tavern.conversation import ConversationStore
from tavern.models import Message


class WordTokenizer:
    def __init__(self, word: str = "x"):
        self._pattern = re.compile(rf"\b{re.escape(word)}\b")
        self.calls = 0

    async def count_tokens(self, text: str, padding: int = 0) -> int:
        self.calls += 1
        return len(self._pattern.findall(text or "")) + padding


Reply = Union[Dict[str, Any], Exception]


class ScriptedAdapter(BackendAdapter):
    """Reply keys: ``text``, ``chunks`` (cumulative stream snapshots),
    ``tool_calls``, ``swipes``, ``reasoning``, ``stall`` (hang after the
    chunks until cancelled) and ``error`` (raised after the chunks).
    """

    backend_id = "fake"

    def __init__(self, replies: Union[List[Reply], Callable[[Dict[str, Any]], Reply]] = (), *, chat_completion: bool = True):
        self._replies = replies if callable(replies) else list(replies)
        self.chat_completion = chat_completion
        self.payloads: List[Dict[str, Any]] = []
        self.closed = False

    def build_payload(self, prompt, params):
        return {"prompt": prompt.prompt, "params": dict(params), "stop": list(prompt.stop_sequences)}

    def _next(self, payload):
        self.payloads.append(payload)
        if callable(self._replies):
            reply = self._replies(payload)
        else:
            reply = self._replies.pop(0) if self._replies else {"text": ""}
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def send(self, payload, signal):
        return self._next(payload)

    async def send_streaming(self, payload, signal):
        reply = self._next(payload)
        chunks = reply.get("chunks") or [reply.get("text", "")]
        for i, text in enumerate(chunks):
            last = i == len(chunks) - 1
            yield StreamChunk(
                text=text,
                reasoning=reply.get("reasoning", ""),
                tool_calls=list(reply.get("tool_calls") or []) if last else [],
                swipes=list(reply.get("swipes") or []) if last else [],
                finish_reason="stop" if last and not reply.get("stall") else None,
            )
        if reply.get("error") is not None:
            raise reply["error"]
        if reply.get("stall"):
            await asyncio.Event().wait()

    def extract_text(self, response):
        return response.get("text", "")

    def parse_stream_event(self, event, state):
        # send_streaming yields finished chunks directly.
        return None

    def extract_reasoning(self, response):
        return response.get("reasoning", "")

    def extract_tool_calls(self, response):
        return list(response.get("tool_calls") or [])

    def extract_swipes(self, response):
        return list(response.get("swipes") or [])

    def extract_finish_reason(self, response):
        return response.get("finish_reason", "stop")

    async def aclose(self):
        self.closed = True


def make_chat(*turns: str, char: str = "Alice", user: str = "Bob", chat_id: str = "default") -> ConversationStore:
    """Alternating chat that opens with the character's greeting."""
    messages = [
        Message(name=user if i % 2 else char, text=text, is_user=bool(i % 2))
        for i, text in enumerate(turns)
    ]
    return ConversationStore(messages, chat_id=chat_id)


@pytest.fixture
def tokenizer():
    return WordTokenizer()


@pytest.fixture
def scripted_adapter():
    """Factory: ``scripted_adapter(replies, chat_completion=True)``."""
    return ScriptedAdapter


@pytest.fixture
def chat():
    """Factory: ``chat("greeting", "user turn", ...)``."""
    return make_chat
