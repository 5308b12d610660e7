"""Settings for assembly, dispatch and streaming.

Loaded from ``$TAVERN_HOME/config.yaml`` (``~/.tavern`` by default). API keys
come from ``$TAVERN_HOME/.env`` first, then a project-level ``.env``. A few
environment variables override the file:

    TAVERN_BACKEND      backend id (see tavern.backends.registry)
    TAVERN_MODEL        model id sent to the backend
    TAVERN_MAX_CONTEXT  context window in tokens
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from tavern.errors import ConfigValidationError
from tavern_constants import TOOL_RECURSION_LIMIT

logger = logging.getLogger(__name__)


def get_tavern_home() -> Path:
    return Path(os.getenv("TAVERN_HOME", Path.home() / ".tavern"))


class NamesBehavior(str, Enum):
    NONE = "none"
    COMPLETION = "completion"
    CONTENT = "content"


class InstructSettings(BaseModel):
    enabled: bool = Field(default=False, description="Wrap turns in instruct sequences.")
    input_sequence: str = Field(default="### Instruction:", description="Prefix for user turns.")
    input_suffix: str = ""
    output_sequence: str = Field(default="### Response:", description="Prefix for assistant turns.")
    output_suffix: str = ""
    system_sequence: str = Field(default="", description="Prefix for system turns.")
    system_suffix: str = ""
    last_output_sequence: str = Field(default="", description="Used instead of output_sequence for the generation prefix.")
    stop_sequence: str = ""
    wrap: bool = Field(default=True, description="Put sequences on their own line.")
    names: bool = Field(default=True, description="Keep 'Name:' prefixes inside instruct turns.")


class ContextSettings(BaseModel):
    story_string_sections: List[str] = Field(
        default_factory=lambda: [
            "system", "lore_before", "description", "personality", "scenario", "lore_after", "persona",
        ],
        description="Order of story-string sections.",
    )
    section_formats: Dict[str, str] = Field(
        default_factory=lambda: {
            "personality": "{{char}}'s personality: {value}",
            "scenario": "Scenario: {value}",
        },
        description="Per-section format; '{value}' is the section text.",
    )
    example_separator: str = Field(default="***", description="Emitted before each example block.")
    chat_start: str = Field(default="***", description="Emitted between the story string and the chat.")
    trim_sentences: bool = Field(default=False, description="Trim incomplete trailing sentences.")
    single_line: bool = Field(default=False, description="Cut the response at its first newline.")
    custom_stopping_strings: List[str] = Field(default_factory=list)


class PromptSettings(BaseModel):
    main_prompt: str = Field(
        default="Write {{char}}'s next reply in a fictional chat between {{char}} and {{user}}.",
        description="Default system prompt when the character has none.",
    )
    jailbreak_prompt: str = Field(default="", description="Post-history instructions.")
    new_chat_prompt: str = Field(default="[Start a new Chat]")
    new_example_chat_prompt: str = Field(default="[Example Chat]")
    continue_nudge_prompt: str = Field(
        default="[Continue the following message. Do not include ANY parts of the original message. "
        "Use capitalization and punctuation as if your reply is a part of the original message: {{lastChatMessage}}]",
    )
    impersonation_prompt: str = Field(
        default="[Write your next reply from the point of view of {{user}}, using the chat history so far as a guideline "
        "for the writing style of {{user}}. Don't write as {{char}} or system.]",
    )
    send_if_empty: str = Field(default="", description="User filler when the last message is from the assistant.")
    continue_prefill: bool = Field(default=False, description="Continue via an assistant prefill instead of a nudge.")
    names_behavior: NamesBehavior = NamesBehavior.NONE
    pin_examples: bool = Field(default=False, description="Always include every example block.")
    message_overhead_tokens: int = Field(default=3, ge=0, description="Per-message framing cost in chat mode.")


class ReasoningSettings(BaseModel):
    auto_parse: bool = Field(default=False, description="Pull reasoning out of prefix/suffix markers.")
    prefix: str = "<think>\n"
    suffix: str = "\n</think>"
    separator: str = "\n\n"
    add_to_prompts: bool = Field(default=False, description="Re-send stored reasoning in history.")
    max_additions: int = Field(default=1, ge=0)


class AutoSwipeSettings(BaseModel):
    enabled: bool = False
    min_length: int = Field(default=2, ge=0, description="Responses shorter than this trigger a swipe.")
    blacklist: List[str] = Field(default_factory=list)
    blacklist_threshold: int = Field(default=2, ge=1, description="Blacklisted words needed to trigger a swipe.")


class GenerationSettings(BaseModel):
    backend: str = Field(default="openrouter", description="Backend id.")
    model: str = Field(default="", description="Model id sent to the backend.")
    base_url: Optional[str] = None
    api_key: Optional[str] = Field(default=None, repr=False)
    max_context: int = Field(default=8192, ge=1)
    auto_max_context: bool = Field(default=False, description="Clamp max_context to the model's known limit.")
    response_length: int = Field(default=300, ge=0)
    token_padding: int = Field(default=64, ge=0)
    streaming: bool = True
    stream_tick_seconds: float = Field(default=0.05, ge=0)
    temperature: float = 1.0
    top_p: Optional[float] = None
    logprobs: bool = False
    tool_recursion_limit: int = Field(default=TOOL_RECURSION_LIMIT, ge=0, description="Tool passes before the model must answer in text.")
    request_params: Dict[str, Any] = Field(default_factory=dict, description="Merged into every payload.")
    instruct: InstructSettings = Field(default_factory=InstructSettings)
    context: ContextSettings = Field(default_factory=ContextSettings)
    prompts: PromptSettings = Field(default_factory=PromptSettings)
    reasoning: ReasoningSettings = Field(default_factory=ReasoningSettings)
    auto_swipe: AutoSwipeSettings = Field(default_factory=AutoSwipeSettings)
    chats_dir: Optional[Path] = None

    @property
    def prompt_budget(self) -> int:
        """Tokens available for the prompt itself."""
        return max(0, self.max_context - self.response_length - self.token_padding)

    def resolved_chats_dir(self) -> Path:
        return self.chats_dir or get_tavern_home() / "chats"


_ENV_OVERRIDES = {
    "TAVERN_BACKEND": "backend",
    "TAVERN_MODEL": "model",
    "TAVERN_MAX_CONTEXT": "max_context",
}


def load_env_files(home: Optional[Path] = None) -> None:
    home = home or get_tavern_home()
    env_path = home / ".env"
    if env_path.exists():
        try:
            load_dotenv(env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(env_path, encoding="latin-1")
    load_dotenv()


def load_settings(path: Optional[Path] = None, *, load_env: bool = True) -> GenerationSettings:
    """Read config.yaml, apply env overrides and validate.

    Raises:
        ConfigValidationError: the file is not a mapping or a value is invalid.
    """
    home = get_tavern_home()
    if load_env:
        load_env_files(home)

    path = path or home / "config.yaml"
    data: Dict[str, Any] = {}
    if path.exists():
        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigValidationError(f"Could not parse {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigValidationError(f"{path} must contain a mapping, got {type(data).__name__}")
    else:
        logger.debug("No config at %s, using defaults", path)

    for env_name, field_name in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            data[field_name] = value

    try:
        return GenerationSettings(**data)
    except ValidationError as e:
        raise ConfigValidationError(str(e)) from e
