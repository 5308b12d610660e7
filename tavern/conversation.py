"""Conversation state -- the ordered messages of one chat and their variants.

``ConversationStore`` is the only owner of ``Message`` objects. Every public
mutation leaves each message satisfying V1-V3 (see ``Message``). Message ids
are list indices.

Navigation past the last variant ("overswipe") is resolved per message:

    system message                       NONE           (cancel)
    user message                         EDIT_GENERATE
    first message, chat untouched        PRISTINE_GREETING (loops)
    first message, chat tainted          REGENERATE
    last assistant message               REGENERATE
    any other assistant message          LOOP
"""

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from tavern.errors import LastVariantError
from tavern.itemization import ItemizationStore
from tavern.models import Message, VariantMeta, now_timestamp
from tavern_constants import PLACEHOLDER_TEXT

logger = logging.getLogger(__name__)


class OverswipeBehavior(str, Enum):
    NONE = "none"
    LOOP = "loop"
    PRISTINE_GREETING = "pristine_greeting"
    EDIT_GENERATE = "edit_generate"
    REGENERATE = "regenerate"

    @property
    def loops(self) -> bool:
        return self in (OverswipeBehavior.LOOP, OverswipeBehavior.PRISTINE_GREETING)


class SwipeDirection(str, Enum):
    LEFT = "left"
    RIGHT = "right"


class NavigationAction(str, Enum):
    MOVED = "moved"
    WRAPPED = "wrapped"
    CANCELLED = "cancelled"
    GENERATE = "generate"
    EDIT_GENERATE = "edit_generate"

    @property
    def starts_generation(self) -> bool:
        return self in (NavigationAction.GENERATE, NavigationAction.EDIT_GENERATE)


@dataclass
class NavigationResult:
    action: NavigationAction
    message_id: int
    variant_id: int
    behavior: OverswipeBehavior


class ConversationStore:
    """Ordered messages of a single chat.

    Args:
        messages: Initial messages, oldest first. Each is passed through
            ``ensure_swipes``.
        chat_id: Identity used by the per-chat gate and persistence.
        metadata: Free-form chat metadata. ``tainted`` lives here.
        itemized: Itemized prompt records kept in step with deletions.
    """

    def __init__(
        self,
        messages: Optional[List[Message]] = None,
        *,
        chat_id: str = "default",
        metadata: Optional[Dict[str, Any]] = None,
        itemized: Optional[ItemizationStore] = None,
    ):
        self.chat_id = chat_id
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self.itemized = itemized if itemized is not None else ItemizationStore()
        self.messages: List[Message] = []
        for message in messages or []:
            self.messages.append(self.ensure_swipes(message))

    def __len__(self) -> int:
        return len(self.messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self.messages)

    def __getitem__(self, message_id: int) -> Message:
        return self.messages[message_id]

    @property
    def tainted(self) -> bool:
        return bool(self.metadata.get("tainted", False))

    def mark_tainted(self) -> None:
        if not self.tainted:
            logger.debug("Chat %s is now tainted", self.chat_id)
        self.metadata["tainted"] = True

    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    def last_user_message(self) -> Optional[Message]:
        return next((m for m in reversed(self.messages) if m.is_user and not m.is_system), None)

    def last_char_message(self) -> Optional[Message]:
        return next((m for m in reversed(self.messages) if m.is_assistant), None)

    def check_invariants(self) -> None:
        for message in self.messages:
            message.check_invariants()

    # -- Variant bookkeeping ---------------------------------------------------

    @staticmethod
    def ensure_swipes(message: Message) -> Message:
        """Backfill variants and their metadata from the live fields.

        Idempotent. The live ``text`` wins over a stale active variant.
        """
        if not message.variants:
            message.variants = [message.text]
            message.active_variant = 0
            message.variant_meta = [VariantMeta(
                send_date=message.send_date,
                gen_started=message.gen_started,
                gen_finished=message.gen_finished,
                extra=copy.deepcopy(message.extra),
            )]
            return message

        count = len(message.variants)
        if not 0 <= message.active_variant < count:
            message.active_variant = max(0, min(message.active_variant, count - 1))
        if len(message.variant_meta) > count:
            del message.variant_meta[count:]
        while len(message.variant_meta) < count:
            message.variant_meta.append(VariantMeta(send_date=message.send_date))
        if message.variants[message.active_variant] != message.text:
            message.variants[message.active_variant] = message.text
        return message

    def sync_active_to_variant(self, message_id: int) -> None:
        """Store the live text, timestamps and extras into the active variant."""
        message = self.ensure_swipes(self.messages[message_id])
        index = message.active_variant
        message.variants[index] = message.text
        message.variant_meta[index] = VariantMeta(
            send_date=message.send_date,
            gen_started=message.gen_started,
            gen_finished=message.gen_finished,
            extra=copy.deepcopy(message.extra),
        )

    def sync_variant_to_active(self, message_id: int, variant_id: Optional[int] = None) -> None:
        """Load a variant (the active one by default) into the live fields."""
        message = self.messages[message_id]
        if variant_id is None:
            variant_id = message.active_variant
        if not 0 <= variant_id < len(message.variants):
            raise IndexError(f"Message {message_id} has no variant {variant_id}")
        meta = message.variant_meta[variant_id]
        message.active_variant = variant_id
        message.text = message.variants[variant_id]
        message.send_date = meta.send_date
        message.gen_started = meta.gen_started
        message.gen_finished = meta.gen_finished
        message.extra = copy.deepcopy(meta.extra)

    # -- Mutations -------------------------------------------------------------

    def add_message(self, message: Message) -> int:
        if message.send_date is None:
            message.send_date = now_timestamp()
        self.messages.append(self.ensure_swipes(message))
        return len(self.messages) - 1

    def create_placeholder(self, name: str, *, is_user: bool = False, text: str = PLACEHOLDER_TEXT) -> int:
        """Append the message a new generation will stream into."""
        now = now_timestamp()
        return self.add_message(Message(name=name, text=text, is_user=is_user, send_date=now, gen_started=now))

    def begin_variant(self, message_id: int, text: str = PLACEHOLDER_TEXT) -> int:
        """Append and activate a placeholder variant for a swipe generation."""
        self.sync_active_to_variant(message_id)
        message = self.messages[message_id]
        now = now_timestamp()
        message.variants.append(text)
        message.variant_meta.append(VariantMeta(send_date=now, gen_started=now))
        self.sync_variant_to_active(message_id, len(message.variants) - 1)
        return message.active_variant

    def add_variant(
        self,
        message_id: int,
        text: str,
        meta: Optional[VariantMeta] = None,
        *,
        activate: bool = False,
    ) -> int:
        self.sync_active_to_variant(message_id)
        message = self.messages[message_id]
        message.variants.append(text)
        message.variant_meta.append(meta or VariantMeta(send_date=now_timestamp()))
        variant_id = len(message.variants) - 1
        if activate:
            self.sync_variant_to_active(message_id, variant_id)
        return variant_id

    def set_text(self, message_id: int, text: str) -> None:
        """Replace the live text, keeping the active variant in step."""
        message = self.messages[message_id]
        message.text = text
        message.variants[message.active_variant] = text

    def edit_message(self, message_id: int, text: str) -> None:
        """User edit of the displayed text."""
        self.set_text(message_id, text)
        self.sync_active_to_variant(message_id)
        self.mark_tainted()

    def delete_variant(self, message_id: int, variant_id: int) -> int:
        """Remove one variant and return the newly active index.

        Raises:
            LastVariantError: the message has a single variant. Nothing changes.
        """
        message = self.ensure_swipes(self.messages[message_id])
        if len(message.variants) <= 1:
            raise LastVariantError(message_id)
        if not 0 <= variant_id < len(message.variants):
            raise IndexError(f"Message {message_id} has no variant {variant_id}")

        self.sync_active_to_variant(message_id)
        del message.variants[variant_id]
        del message.variant_meta[variant_id]
        self.itemized.delete_variant(message_id, variant_id)
        selected = min(variant_id, len(message.variants) - 1)
        self.sync_variant_to_active(message_id, selected)
        return selected

    def delete_message(self, message_id: int) -> Message:
        """Remove a message and its itemized prompt records."""
        message = self.messages.pop(message_id)
        self.itemized.delete_message(message_id)
        return message

    # -- Navigation ------------------------------------------------------------

    def resolve_overswipe(self, message_id: int) -> OverswipeBehavior:
        message = self.messages[message_id]
        if message.is_system:
            return OverswipeBehavior.NONE
        if message.is_user:
            return OverswipeBehavior.EDIT_GENERATE
        if message_id == 0:
            return OverswipeBehavior.REGENERATE if self.tainted else OverswipeBehavior.PRISTINE_GREETING
        if message_id == len(self.messages) - 1:
            return OverswipeBehavior.REGENERATE
        return OverswipeBehavior.LOOP

    def _move(self, message_id: int, variant_id: int) -> None:
        self.sync_active_to_variant(message_id)
        self.sync_variant_to_active(message_id, variant_id)

    def navigate(
        self,
        message_id: int,
        direction: SwipeDirection,
        overswipe_behavior: Optional[OverswipeBehavior] = None,
    ) -> NavigationResult:
        """Move the active variant one step.

        Returns what happened. ``GENERATE``/``EDIT_GENERATE`` results leave the
        store untouched; the caller starts the generation.
        """
        message = self.ensure_swipes(self.messages[message_id])
        behavior = overswipe_behavior or self.resolve_overswipe(message_id)
        count = len(message.variants)
        current = message.active_variant

        def result(action: NavigationAction) -> NavigationResult:
            return NavigationResult(action, message_id, message.active_variant, behavior)

        if direction == SwipeDirection.LEFT:
            if current > 0:
                self._move(message_id, current - 1)
                return result(NavigationAction.MOVED)
            if behavior.loops and count > 1:
                self._move(message_id, count - 1)
                return result(NavigationAction.WRAPPED)
            return result(NavigationAction.CANCELLED)

        if current < count - 1:
            self._move(message_id, current + 1)
            return result(NavigationAction.MOVED)

        if behavior.loops:
            if count > 1:
                self._move(message_id, 0)
                return result(NavigationAction.WRAPPED)
            return result(NavigationAction.CANCELLED)
        if behavior == OverswipeBehavior.REGENERATE:
            return result(NavigationAction.GENERATE)
        if behavior == OverswipeBehavior.EDIT_GENERATE:
            return result(NavigationAction.EDIT_GENERATE)
        return result(NavigationAction.CANCELLED)

    # -- Serialization ---------------------------------------------------------

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self.messages]

    @classmethod
    def from_dicts(cls, items: List[Dict[str, Any]], **kwargs) -> "ConversationStore":
        return cls([Message.from_dict(item) for item in items], **kwargs)
