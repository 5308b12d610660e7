"""Injectable prompt fragments keyed by name.

Collaborators (character depth prompts, persona, author's note, lore
outlets, extensions) register fragments with a position, a depth and a
role. The assembler reads them back by position; IN_CHAT fragments are
spliced into the history at a distance from the newest message.

``ExtensionPromptRegistry`` is the shared, chat-scoped store. Every
generation works on a ``PromptContext`` snapshot of it, and both are
flushed of generation-scoped keys when the generation ends.
"""

import copy
import inspect
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from tavern_constants import GENERATION_SCOPED_PREFIXES, MAX_INJECTION_DEPTH

logger = logging.getLogger(__name__)

PromptFilter = Callable[[], Union[bool, Awaitable[bool]]]


class PromptPosition(IntEnum):
    NONE = -1
    IN_PROMPT = 0
    IN_CHAT = 1
    BEFORE_PROMPT = 2


class PromptRole(IntEnum):
    SYSTEM = 0
    USER = 1
    ASSISTANT = 2

    @property
    def chat_role(self) -> str:
        return self.name.lower()


# Later roles land closer to the generation point.
INJECTION_ROLE_ORDER = (PromptRole.SYSTEM, PromptRole.USER, PromptRole.ASSISTANT)


@dataclass
class ExtensionPromptEntry:
    key: str
    value: str
    position: PromptPosition = PromptPosition.IN_PROMPT
    depth: int = 0
    role: PromptRole = PromptRole.SYSTEM
    scan: bool = False
    filter: Optional[PromptFilter] = None

    async def passes_filter(self) -> bool:
        if self.filter is None:
            return True
        result = self.filter()
        if inspect.isawaitable(result):
            result = await result
        return bool(result)


@dataclass
class InjectedMessage:
    """Synthetic history entry produced by an IN_CHAT fragment."""

    role: PromptRole
    text: str
    depth: int
    is_injected: bool = True

    @property
    def is_user(self) -> bool:
        return self.role == PromptRole.USER

    @property
    def is_system(self) -> bool:
        return self.role == PromptRole.SYSTEM


def _is_generation_scoped(key: str) -> bool:
    return key.startswith(GENERATION_SCOPED_PREFIXES)


class ExtensionPromptRegistry:
    """Keyed store of injectable prompt fragments."""

    def __init__(self, entries: Optional[Iterable[ExtensionPromptEntry]] = None):
        self._entries: Dict[str, ExtensionPromptEntry] = {}
        for entry in entries or ():
            self._entries[entry.key] = entry

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> List[str]:
        return sorted(self._entries)

    def entry(self, key: str) -> Optional[ExtensionPromptEntry]:
        return self._entries.get(key)

    def set(
        self,
        key: str,
        value: str,
        position: PromptPosition = PromptPosition.IN_PROMPT,
        depth: int = 0,
        scan: bool = False,
        role: PromptRole = PromptRole.SYSTEM,
        filter: Optional[PromptFilter] = None,
    ) -> None:
        """Insert or overwrite the fragment stored under ``key``."""
        depth = max(0, min(int(depth), MAX_INJECTION_DEPTH))
        self._entries[key] = ExtensionPromptEntry(
            key=key,
            value=value or "",
            position=PromptPosition(position),
            depth=depth,
            role=PromptRole(role),
            scan=bool(scan),
            filter=filter,
        )

    def remove(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def get(
        self,
        position: PromptPosition,
        depth: Optional[int] = None,
        role: Optional[PromptRole] = None,
        separator: str = "\n",
        wrap: bool = True,
    ) -> str:
        """Join every matching, filter-passing fragment sorted by key.

        ``depth`` and ``role`` only narrow the match when given. With
        ``wrap`` a non-empty result gets ``separator`` on both sides.
        """
        values: List[str] = []
        for key in sorted(self._entries):
            entry = self._entries[key]
            if entry.position != position or not entry.value:
                continue
            if depth is not None and entry.depth != depth:
                continue
            if role is not None and entry.role != role:
                continue
            if not await entry.passes_filter():
                continue
            value = entry.value.strip()
            if value:
                values.append(value)

        result = separator.join(values)
        if result and wrap:
            result = f"{separator}{result}{separator}"
        return result

    def flush(self, predicate: Callable[[str], bool]) -> List[str]:
        """Remove every key matching ``predicate``; return the removed keys."""
        removed = [key for key in self._entries if predicate(key)]
        for key in removed:
            del self._entries[key]
        if removed:
            logger.debug("Flushed %d extension prompt(s): %s", len(removed), ", ".join(sorted(removed)))
        return removed

    def flush_generation_keys(self) -> List[str]:
        """Drop depth- and outlet-prefixed keys at the end of a generation."""
        return self.flush(_is_generation_scoped)

    def generation_keys(self) -> List[str]:
        return sorted(key for key in self._entries if _is_generation_scoped(key))

    def max_depth(self) -> int:
        """Deepest registered IN_CHAT depth, or -1 if there are none."""
        depths = [e.depth for e in self._entries.values() if e.position == PromptPosition.IN_CHAT and e.value]
        return max(depths) if depths else -1

    def scan_values(self) -> List[str]:
        """Values that should take part in lore activation scanning."""
        return [self._entries[key].value for key in sorted(self._entries) if self._entries[key].scan]

    async def inject_into_history(
        self,
        messages: List[Any],
        is_continue: bool = False,
        make_entry: Callable[[PromptRole, str, int], Any] = InjectedMessage,
    ) -> List[int]:
        """Splice IN_CHAT fragments into ``messages`` in place.

        ``messages`` is oldest-first. A fragment at depth ``d`` lands with
        ``d`` original messages after it (``d + 1`` when continuing, since the
        last message is the continuation anchor). Returns the indices of the
        inserted entries in the final list, ascending. ``make_entry(role, text,
        depth)`` builds each inserted entry.
        """
        max_depth = self.max_depth()
        if max_depth < 0:
            return []

        # Work newest-first so depth is a plain offset from the front.
        reversed_messages = list(reversed(messages))
        inserted_positions: List[int] = []
        total_inserted = 0

        for depth in range(max_depth + 1):
            role_messages: List[Any] = []
            for role in INJECTION_ROLE_ORDER:
                text = await self.get(PromptPosition.IN_CHAT, depth=depth, role=role, wrap=False)
                if text:
                    role_messages.append(make_entry(role, text, depth))
            if not role_messages:
                continue

            offset = depth + 1 if is_continue else depth
            offset = min(offset, len(reversed_messages) - total_inserted)
            insert_at = offset + total_inserted
            # Reversed view: ASSISTANT first so it sits nearest the end.
            block = list(reversed(role_messages))
            reversed_messages[insert_at:insert_at] = block
            inserted_positions = [
                p + len(block) if p >= insert_at else p for p in inserted_positions
            ]
            inserted_positions.extend(range(insert_at, insert_at + len(block)))
            total_inserted += len(block)

        messages[:] = list(reversed(reversed_messages))
        last = len(messages) - 1
        return sorted(last - p for p in inserted_positions)

    def snapshot(self) -> "PromptContext":
        return PromptContext(copy.copy(entry) for entry in self._entries.values())


class PromptContext(ExtensionPromptRegistry):
    """Per-generation copy of the registry passed into ``assemble()``.

    Hooks that run for a single generation write here, so nothing they
    register can reach the next generation through the shared registry.
    """

    def __init__(self, entries: Optional[Iterable[ExtensionPromptEntry]] = None):
        super().__init__(entries)
        self.closed = False

    def close(self) -> List[str]:
        self.closed = True
        return self.flush_generation_keys()
