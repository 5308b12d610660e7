"""Character, persona and lore inputs to prompt assembly.

These are plain data supplied by collaborators that own character and
world-info management. ``PromptFields`` wraps them for one generation and
resolves each field (macro substitution included) only when the assembler
first asks for it.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from tavern.extension_prompts import PromptPosition, PromptRole
from tavern.macros import MacroEngine


@dataclass
class DepthPrompt:
    text: str = ""
    depth: int = 4
    role: PromptRole = PromptRole.SYSTEM


@dataclass
class CharacterCard:
    name: str
    description: str = ""
    personality: str = ""
    scenario: str = ""
    first_message: str = ""
    examples: str = ""
    system_prompt: str = ""
    post_history_instructions: str = ""
    depth_prompt: DepthPrompt = field(default_factory=DepthPrompt)
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CharacterCard":
        # Accept both flat cards and the nested ``data`` block of v2 cards.
        data = data.get("data", data)
        ext = data.get("extensions") or {}
        depth = ext.get("depth_prompt") or {}
        role = depth.get("role", PromptRole.SYSTEM)
        if isinstance(role, str):
            role = PromptRole[role.upper()]
        return cls(
            name=data.get("name", ""),
            description=data.get("description", ""),
            personality=data.get("personality", ""),
            scenario=data.get("scenario", ""),
            first_message=data.get("first_mes", ""),
            examples=data.get("mes_example", ""),
            system_prompt=data.get("system_prompt", ""),
            post_history_instructions=data.get("post_history_instructions", ""),
            depth_prompt=DepthPrompt(
                text=depth.get("prompt", ""),
                depth=int(depth.get("depth", 4)),
                role=PromptRole(role),
            ),
            extra=dict(ext),
        )


@dataclass
class Persona:
    name: str = "User"
    description: str = ""
    position: PromptPosition = PromptPosition.IN_PROMPT
    depth: int = 2
    role: PromptRole = PromptRole.SYSTEM


@dataclass
class LoreBlocks:
    """Already-selected world info, as plain strings."""

    before: str = ""
    after: str = ""
    examples_before: str = ""
    examples_after: str = ""


_FIELD_SOURCES: Dict[str, Callable[["PromptFields"], str]] = {
    "description": lambda f: f.character.description,
    "personality": lambda f: f.character.personality,
    "scenario": lambda f: f.scenario_override if f.scenario_override is not None else f.character.scenario,
    "persona": lambda f: f.persona.description if f.persona.position == PromptPosition.IN_PROMPT else "",
    "system": lambda f: f.character.system_prompt or f.default_system_prompt,
    "jailbreak": lambda f: f.character.post_history_instructions or f.default_jailbreak,
    "examples": lambda f: f.character.examples,
    "lore_before": lambda f: f.lore.before,
    "lore_after": lambda f: f.lore.after,
}


_FIELD_MACROS = {
    "description": "description",
    "personality": "personality",
    "scenario": "scenario",
    "persona": "persona",
    "examples": "mesExamples",
}


class PromptFields:
    """Lazily-resolved, memoized prompt fields for one generation.

    A field's source text is fetched and macro-substituted on first access
    and cached; fields the prompt never uses are never evaluated.
    """

    FIELDS = tuple(_FIELD_SOURCES)

    def __init__(
        self,
        character: CharacterCard,
        persona: Persona,
        macros: MacroEngine,
        *,
        lore: Optional[LoreBlocks] = None,
        default_system_prompt: str = "",
        default_jailbreak: str = "",
        scenario_override: Optional[str] = None,
    ):
        self.character = character
        self.persona = persona
        self.macros = macros
        self.lore = lore or LoreBlocks()
        self.default_system_prompt = default_system_prompt
        self.default_jailbreak = default_jailbreak
        self.scenario_override = scenario_override
        self._cache: Dict[str, str] = {}
        self.resolved_count = 0
        self.macros.update({
            macro: (lambda field_name=field_name: self.get(field_name))
            for field_name, macro in _FIELD_MACROS.items()
        })

    def get(self, name: str) -> str:
        if name in self._cache:
            return self._cache[name]
        try:
            source = _FIELD_SOURCES[name]
        except KeyError:
            raise KeyError(f"Unknown prompt field: {name}") from None
        # Reserve the slot first so self-referencing macros resolve empty.
        self._cache[name] = ""
        value = self.macros.substitute(source(self) or "").strip()
        self._cache[name] = value
        self.resolved_count += 1
        if name in _FIELD_MACROS:
            self.macros.update({_FIELD_MACROS[name]: value})
        return value

    def is_resolved(self, name: str) -> bool:
        return name in self._cache
