"""Reasoning ("thinking") text helpers.

Functions:
    parse_reasoning(text, prefix, suffix):
        Split ``<think>...</think>``-style reasoning off the front of a
        response. An unclosed block means the model is still thinking.

    has_incomplete_reasoning(text, prefix, suffix):
        True when the prefix is present without its suffix, which happens
        mid-stream or when the response was cut off.

ReasoningTracker records when reasoning started and stopped arriving so the
duration can be stored with the variant.
"""

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class ParsedReasoning:
    reasoning: str
    content: str
    complete: bool = True


def has_incomplete_reasoning(text: str, prefix: str, suffix: str) -> bool:
    if not text or not prefix.strip():
        return False
    stripped = text.lstrip()
    return stripped.startswith(prefix.strip()) and suffix.strip() not in stripped


def parse_reasoning(text: str, prefix: str, suffix: str, *, strict: bool = True) -> Optional[ParsedReasoning]:
    """Pull a reasoning block out of ``text``.

    With ``strict`` the block must open the response (leading whitespace
    allowed). Returns None when there is no block.
    """
    if not text or not prefix.strip() or not suffix.strip():
        return None

    anchor = r"^\s*" if strict else ""
    pattern = re.compile(
        anchor + re.escape(prefix.strip()) + r"(.*?)" + re.escape(suffix.strip()),
        re.DOTALL,
    )
    match = pattern.search(text)
    if match:
        reasoning = match.group(1).strip()
        content = (text[:match.start()] + text[match.end():]).strip() if not strict else text[match.end():].lstrip()
        return ParsedReasoning(reasoning=reasoning, content=content, complete=True)

    if has_incomplete_reasoning(text, prefix, suffix):
        reasoning = text.lstrip()[len(prefix.strip()):].strip()
        return ParsedReasoning(reasoning=reasoning, content="", complete=False)
    return None


class ReasoningState(str, Enum):
    NONE = "none"
    THINKING = "thinking"
    DONE = "done"


class ReasoningTracker:
    """Tracks reasoning timing across cumulative stream updates."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.state = ReasoningState.NONE
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None

    def update(self, reasoning: str, content: str) -> None:
        if self.state == ReasoningState.NONE and reasoning:
            self.state = ReasoningState.THINKING
            self.started_at = self._clock()
        if self.state == ReasoningState.THINKING and content:
            self.finish()

    def finish(self) -> None:
        if self.state == ReasoningState.THINKING:
            self.state = ReasoningState.DONE
            self.finished_at = self._clock()

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at) * 1000)
