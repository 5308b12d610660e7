"""Shared constants for Tavern Engine.

Import-safe module with no dependencies. Can be imported from anywhere
without risk of circular imports.
"""

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENROUTER_MODELS_URL = f"{OPENROUTER_BASE_URL}/models"

OPENAI_BASE_URL = "https://api.openai.com/v1"
ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
DEEPSEEK_BASE_URL = "https://api.deepseek.com"
XAI_BASE_URL = "https://api.x.ai/v1"

# Text shown in a message while its first chunk is still on the way.
PLACEHOLDER_TEXT = "..."

# Deepest offset (in messages from the end) an in-chat injection may target.
MAX_INJECTION_DEPTH = 10000

# Tool-call generations may re-enter the generator at most this many times.
TOOL_RECURSION_LIMIT = 5

# Extension prompt keys that are scoped to a single generation.
DEPTH_PROMPT_KEY = "DEPTH_PROMPT"
PERSONA_DEPTH_KEY = "PERSONA_DESCRIPTION"
AUTHORS_NOTE_KEY = "2_floating_prompt"
CUSTOM_WI_DEPTH_PREFIX = "customDepthWI"
CUSTOM_WI_OUTLET_PREFIX = "customWIOutlet_"
GENERATION_SCOPED_PREFIXES = (
    DEPTH_PROMPT_KEY,
    CUSTOM_WI_DEPTH_PREFIX,
    CUSTOM_WI_OUTLET_PREFIX,
)


def depth_prompt_key(index: int) -> str:
    return f"{DEPTH_PROMPT_KEY}_{index}"


def custom_wi_depth_key(depth: int, role: int) -> str:
    return f"{CUSTOM_WI_DEPTH_PREFIX}_{depth}_{role}"


def custom_wi_outlet_key(name: str) -> str:
    return f"{CUSTOM_WI_OUTLET_PREFIX}{name}"
