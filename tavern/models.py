"""Conversation data model -- messages, their variants, and generation requests.

The on-disk chat format keeps the historical key names (``mes``,
``swipes``, ``swipe_id``, ``swipe_info``) so that ``to_dict``/``from_dict``
round-trip existing chat files. In memory the fields use descriptive names.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from tavern.concurrency import AbortToken


def now_timestamp() -> str:
    return datetime.now().isoformat()


class GenerationType(str, Enum):
    NORMAL = "normal"
    CONTINUE = "continue"
    SWIPE = "swipe"
    REGENERATE = "regenerate"
    IMPERSONATE = "impersonate"
    QUIET = "quiet"

    @property
    def suppresses_error_events(self) -> bool:
        """Types that deliberately skip user-facing error chatter."""
        return self in (GenerationType.SWIPE, GenerationType.IMPERSONATE, GenerationType.CONTINUE)

    @property
    def writes_to_chat(self) -> bool:
        return self not in (GenerationType.QUIET, GenerationType.IMPERSONATE)


@dataclass
class VariantMeta:
    send_date: Optional[str] = None
    gen_started: Optional[str] = None
    gen_finished: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "send_date": self.send_date,
            "gen_started": self.gen_started,
            "gen_finished": self.gen_finished,
            "extra": copy.deepcopy(self.extra),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "VariantMeta":
        data = data or {}
        return cls(
            send_date=data.get("send_date"),
            gen_started=data.get("gen_started"),
            gen_finished=data.get("gen_finished"),
            extra=copy.deepcopy(data.get("extra") or {}),
        )


@dataclass
class Message:
    """One conversational turn with its generated alternatives ("swipes").

    Invariants, once ``ConversationStore.ensure_swipes`` has run:
        V1: text == variants[active_variant]
        V2: 0 <= active_variant < len(variants)
        V3: len(variant_meta) == len(variants)
    """

    name: str
    text: str = ""
    is_user: bool = False
    is_system: bool = False
    send_date: Optional[str] = None
    variants: List[str] = field(default_factory=list)
    active_variant: int = 0
    variant_meta: List[VariantMeta] = field(default_factory=list)
    gen_started: Optional[str] = None
    gen_finished: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def reasoning(self) -> str:
        return self.extra.get("reasoning", "") or ""

    @property
    def is_assistant(self) -> bool:
        return not self.is_user and not self.is_system

    def check_invariants(self) -> None:
        """Raise ValueError if V1-V3 do not hold."""
        if not self.variants:
            raise ValueError(f"Message from {self.name!r} has no variants")
        if not 0 <= self.active_variant < len(self.variants):
            raise ValueError(
                f"active_variant {self.active_variant} out of range for {len(self.variants)} variants"
            )
        if len(self.variant_meta) != len(self.variants):
            raise ValueError(
                f"{len(self.variant_meta)} variant_meta entries for {len(self.variants)} variants"
            )
        if self.text != self.variants[self.active_variant]:
            raise ValueError("text does not match the active variant")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "is_user": self.is_user,
            "is_system": self.is_system,
            "send_date": self.send_date,
            "mes": self.text,
            "extra": copy.deepcopy(self.extra),
        }
        if self.variants:
            data["swipes"] = list(self.variants)
            data["swipe_id"] = self.active_variant
            data["swipe_info"] = [meta.to_dict() for meta in self.variant_meta]
        if self.gen_started:
            data["gen_started"] = self.gen_started
        if self.gen_finished:
            data["gen_finished"] = self.gen_finished
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        swipes = data.get("swipes")
        swipe_info = data.get("swipe_info")
        return cls(
            name=data.get("name", ""),
            text=data.get("mes", "") or "",
            is_user=bool(data.get("is_user", False)),
            is_system=bool(data.get("is_system", False)),
            send_date=data.get("send_date"),
            variants=list(swipes) if isinstance(swipes, list) else [],
            active_variant=int(data.get("swipe_id", 0) or 0),
            variant_meta=[VariantMeta.from_dict(x) for x in swipe_info] if isinstance(swipe_info, list) else [],
            gen_started=data.get("gen_started"),
            gen_finished=data.get("gen_finished"),
            extra=copy.deepcopy(data.get("extra") or {}),
        )


@dataclass(frozen=True)
class CfgPrompts:
    """Classifier-free-guidance prompt pair sent alongside the main prompt."""

    positive: str = ""
    negative: str = ""


@dataclass
class GenerationRequest:
    """Transient, one per call to the assembler."""

    type: GenerationType = GenerationType.NORMAL
    character: Optional[str] = None
    group_members: List[str] = field(default_factory=list)
    depth: int = 0
    abort: AbortToken = field(default_factory=AbortToken)
    response_length: Optional[int] = None
    json_schema: Optional[Dict[str, Any]] = None
    quiet_prompt: str = ""
    cfg: Optional[CfgPrompts] = None

    @property
    def is_continue(self) -> bool:
        return self.type == GenerationType.CONTINUE

    def next_depth(self) -> "GenerationRequest":
        """Copy of this request for a tool-call re-generation one level deeper."""
        return GenerationRequest(
            type=GenerationType.NORMAL,
            character=self.character,
            group_members=list(self.group_members),
            depth=self.depth + 1,
            abort=AbortToken(),
            response_length=self.response_length,
            json_schema=self.json_schema,
            cfg=self.cfg,
        )
