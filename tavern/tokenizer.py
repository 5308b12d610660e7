"""Token counting -- the leaf every budgeting decision depends on.

Tokenizers implement ``async count_tokens(text, padding=0) -> int`` and must
be deterministic for a given model selection. ``TokenCounter`` is what the
assembler actually holds: it memoizes counts, checks the abort token before
each count, and turns any tokenizer failure into ``TokenizerUnavailable``
so assembly never falls back to guessing.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Protocol

from tavern.concurrency import AbortToken
from tavern.errors import TokenizerUnavailable

logger = logging.getLogger(__name__)

_DEFAULT_ENCODING = "cl100k_base"


class Tokenizer(Protocol):
    async def count_tokens(self, text: str, padding: int = 0) -> int:
        ...


class RoughTokenizer:
    """Deterministic ~4 chars/token estimate for offline and dry runs."""

    def __init__(self, chars_per_token: int = 4):
        self.chars_per_token = chars_per_token

    async def count_tokens(self, text: str, padding: int = 0) -> int:
        if not text:
            return padding
        return -(-len(text) // self.chars_per_token) + padding


class TiktokenTokenizer:
    """BPE token counts via tiktoken, resolved from the model name."""

    def __init__(self, model: Optional[str] = None):
        import tiktoken

        self.model = model
        try:
            self._encoder = tiktoken.encoding_for_model(model) if model else tiktoken.get_encoding(_DEFAULT_ENCODING)
        except KeyError:
            logger.debug("No tiktoken encoding for %s, using %s", model, _DEFAULT_ENCODING)
            self._encoder = tiktoken.get_encoding(_DEFAULT_ENCODING)

    async def count_tokens(self, text: str, padding: int = 0) -> int:
        if not text:
            return padding
        return len(self._encoder.encode(text, disallowed_special=())) + padding


class TokenCounter:
    """Memoizing, abort-aware front for a Tokenizer.

    Args:
        tokenizer: The backing tokenizer. ``None`` makes every count fail
            with ``TokenizerUnavailable``.
        abort: Optional token checked before each count.
        message_overhead: Extra tokens charged per chat-completion message
            (role markers and separators).
    """

    def __init__(
        self,
        tokenizer: Optional[Tokenizer],
        *,
        abort: Optional[AbortToken] = None,
        message_overhead: int = 0,
    ):
        self._tokenizer = tokenizer
        self._abort = abort
        self.message_overhead = message_overhead
        self._cache: Dict[str, int] = {}

    @property
    def available(self) -> bool:
        return self._tokenizer is not None

    async def count(self, text: str) -> int:
        if self._tokenizer is None:
            raise TokenizerUnavailable("No tokenizer configured for this backend")
        if self._abort is not None:
            self._abort.raise_if_aborted()
        text = text or ""
        cached = self._cache.get(text)
        if cached is not None:
            return cached
        try:
            value = await self._tokenizer.count_tokens(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise TokenizerUnavailable(f"Tokenizer failed: {e}") from e
        if not isinstance(value, int) or value < 0:
            raise TokenizerUnavailable(f"Tokenizer returned an invalid count: {value!r}")
        self._cache[text] = value
        return value

    async def count_message(self, message: Dict[str, Any]) -> int:
        """Cost of one role-tagged chat message."""
        content = message.get("content") or ""
        name = message.get("name") or ""
        total = await self.count(content)
        if name:
            total += await self.count(name)
        if message.get("tool_calls"):
            total += await self.count(json.dumps(message["tool_calls"], ensure_ascii=False))
        return total + self.message_overhead

    async def count_messages(self, messages: List[Dict[str, Any]]) -> int:
        total = 0
        for message in messages:
            total += await self.count_message(message)
        return total
