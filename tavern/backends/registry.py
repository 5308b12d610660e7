"""
Backend registry: metadata, alias resolution and adapter construction.

Shared by the CLI, the config layer and the generator so every surface
resolves backend ids, API keys and base URLs the same way.
"""

import os
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import httpx

from tavern.backends.base import BackendAdapter
from tavern.backends.claude import ClaudeAdapter
from tavern.backends.openai_compat import OpenAIChatAdapter
from tavern.backends.text_completion import TextCompletionAdapter
from tavern.errors import UnknownBackendError
from tavern_constants import (
    ANTHROPIC_BASE_URL,
    DEEPSEEK_BASE_URL,
    OPENAI_BASE_URL,
    OPENROUTER_BASE_URL,
    XAI_BASE_URL,
)

EnvGetter = Callable[[str], Optional[str]]


@dataclass(frozen=True)
class BackendMeta:
    id: str
    label: str
    mode: str  # "chat", "claude" or "text"
    default_base_url: str = ""
    api_key_env_vars: Tuple[str, ...] = ()
    base_url_env_var: Optional[str] = None
    aliases: Tuple[str, ...] = ()
    reasoning_fields: Tuple[str, ...] = ("reasoning_content", "reasoning")
    endpoint: Optional[str] = None

    @property
    def chat_completion(self) -> bool:
        return self.mode != "text"


BACKENDS: Dict[str, BackendMeta] = {
    "openrouter": BackendMeta(
        id="openrouter",
        label="OpenRouter",
        mode="chat",
        default_base_url=OPENROUTER_BASE_URL,
        api_key_env_vars=("OPENROUTER_API_KEY",),
        base_url_env_var="OPENROUTER_BASE_URL",
        reasoning_fields=("reasoning",),
    ),
    "openai": BackendMeta(
        id="openai",
        label="OpenAI",
        mode="chat",
        default_base_url=OPENAI_BASE_URL,
        api_key_env_vars=("OPENAI_API_KEY",),
        base_url_env_var="OPENAI_BASE_URL",
    ),
    "deepseek": BackendMeta(
        id="deepseek",
        label="DeepSeek",
        mode="chat",
        default_base_url=DEEPSEEK_BASE_URL,
        api_key_env_vars=("DEEPSEEK_API_KEY",),
        base_url_env_var="DEEPSEEK_BASE_URL",
        reasoning_fields=("reasoning_content",),
    ),
    "xai": BackendMeta(
        id="xai",
        label="xAI",
        mode="chat",
        default_base_url=XAI_BASE_URL,
        api_key_env_vars=("XAI_API_KEY",),
        base_url_env_var="XAI_BASE_URL",
        aliases=("grok",),
        reasoning_fields=("reasoning_content",),
    ),
    "claude": BackendMeta(
        id="claude",
        label="Anthropic Claude",
        mode="claude",
        default_base_url=ANTHROPIC_BASE_URL,
        api_key_env_vars=("ANTHROPIC_API_KEY",),
        base_url_env_var="ANTHROPIC_BASE_URL",
        aliases=("anthropic",),
    ),
    "custom": BackendMeta(
        id="custom",
        label="Custom OpenAI-compatible endpoint",
        mode="chat",
        api_key_env_vars=("CUSTOM_API_KEY", "OPENAI_API_KEY"),
        base_url_env_var="CUSTOM_BASE_URL",
    ),
    "textgen": BackendMeta(
        id="textgen",
        label="OpenAI-compatible text completion",
        mode="text",
        default_base_url="http://127.0.0.1:5000/v1",
        api_key_env_vars=("TEXTGEN_API_KEY",),
        base_url_env_var="TEXTGEN_BASE_URL",
        aliases=("tabby", "vllm", "ooba"),
    ),
    "llamacpp": BackendMeta(
        id="llamacpp",
        label="llama.cpp server",
        mode="text",
        default_base_url="http://127.0.0.1:8080",
        base_url_env_var="LLAMACPP_BASE_URL",
        aliases=("llama.cpp", "llama-cpp"),
        endpoint="/completion",
    ),
    "koboldcpp": BackendMeta(
        id="koboldcpp",
        label="KoboldCpp",
        mode="text",
        default_base_url="http://127.0.0.1:5001/v1",
        base_url_env_var="KOBOLDCPP_BASE_URL",
        aliases=("kobold",),
    ),
    "ollama": BackendMeta(
        id="ollama",
        label="Ollama",
        mode="text",
        default_base_url="http://127.0.0.1:11434",
        base_url_env_var="OLLAMA_BASE_URL",
        endpoint="/api/generate",
    ),
}

_ALIAS_TO_BACKEND: Dict[str, str] = {}
for _bid, _meta in BACKENDS.items():
    _ALIAS_TO_BACKEND[_bid] = _bid
    for _alias in _meta.aliases:
        _ALIAS_TO_BACKEND[_alias.lower()] = _bid


def normalize_backend_id(backend_id: Optional[str], default: str = "openrouter") -> str:
    """Normalize a backend id or alias to a canonical id."""
    if not backend_id:
        return default
    key = backend_id.strip().lower()
    if not key:
        return default
    return _ALIAS_TO_BACKEND.get(key, key)


def get_backend(backend_id: str) -> Optional[BackendMeta]:
    return BACKENDS.get(normalize_backend_id(backend_id))


def list_backend_ids(*, mode: Optional[str] = None) -> List[str]:
    return [bid for bid, meta in BACKENDS.items() if mode is None or meta.mode == mode]


def resolve_backend_api_key(
    backend_id: str,
    *,
    env_get: EnvGetter = os.getenv,
    explicit_api_key: Optional[str] = None,
) -> Optional[str]:
    if explicit_api_key:
        return explicit_api_key
    meta = get_backend(backend_id)
    if not meta:
        return None
    for env_var in meta.api_key_env_vars:
        value = env_get(env_var)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def resolve_backend_base_url(
    backend_id: str,
    *,
    env_get: EnvGetter = os.getenv,
    explicit_base_url: Optional[str] = None,
) -> Optional[str]:
    if explicit_base_url:
        return explicit_base_url.strip().rstrip("/")
    meta = get_backend(backend_id)
    if not meta:
        return None
    if meta.base_url_env_var:
        env_value = env_get(meta.base_url_env_var)
        if isinstance(env_value, str) and env_value.strip():
            return env_value.strip().rstrip("/")
    if meta.default_base_url:
        return meta.default_base_url.rstrip("/")
    return None


def create_adapter(
    backend_id: str,
    *,
    model: str = "",
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    env_get: EnvGetter = os.getenv,
) -> BackendAdapter:
    """Build the adapter for ``backend_id`` with resolved credentials.

    Raises:
        UnknownBackendError: the id is not registered, or it needs a base URL
            and none was configured.
    """
    meta = get_backend(backend_id)
    if meta is None:
        raise UnknownBackendError(f"Unknown backend: {backend_id!r}")
    url = resolve_backend_base_url(meta.id, env_get=env_get, explicit_base_url=base_url)
    if not url:
        raise UnknownBackendError(f"Backend {meta.id!r} has no base URL; set {meta.base_url_env_var}")
    key = resolve_backend_api_key(meta.id, env_get=env_get, explicit_api_key=api_key)
    common = dict(base_url=url, api_key=key, model=model, client=client, backend_id=meta.id)

    if meta.mode == "claude":
        return ClaudeAdapter(**common)
    if meta.mode == "text":
        return TextCompletionAdapter(endpoint=meta.endpoint, **common)
    return OpenAIChatAdapter(reasoning_fields=meta.reasoning_fields, **common)
