"""Model context lengths, used to clamp ``max_context`` to what the model accepts.

Lookup order for ``get_model_context_length``:
    1. OpenRouter model metadata (fetched with ``requests``, cached one hour)
    2. Built-in ``DEFAULT_CONTEXT_LENGTHS`` (substring match)

Models neither step knows get the ``MODEL_CONTEXT_LENGTH`` env var when it
is set to a valid integer, else ``SAFE_DEFAULT_CONTEXT_LENGTH``.
"""

import logging
import os
import time
from typing import Any, Dict

import requests

from tavern_constants import OPENROUTER_MODELS_URL

logger = logging.getLogger(__name__)

_model_metadata_cache: Dict[str, Dict[str, Any]] = {}
_model_metadata_cache_time: float = 0
_MODEL_CACHE_TTL = 3600

SAFE_DEFAULT_CONTEXT_LENGTH = 8192

DEFAULT_CONTEXT_LENGTHS = {
    "claude-opus-4": 200000,
    "claude-sonnet-4": 200000,
    "claude-3-7-sonnet": 200000,
    "claude-3-5-haiku": 200000,
    "gpt-4o": 128000,
    "gpt-4-turbo": 128000,
    "gpt-4.1": 1047576,
    "gemini-2.5-pro": 1048576,
    "llama-3.3-70b-instruct": 131072,
    "deepseek-chat": 65536,
    "deepseek-reasoner": 65536,
    "grok-3": 131072,
    "mistral-nemo": 131072,
    "qwen-2.5-72b-instruct": 32768,
}


def _get_fallback_context_length() -> int:
    env_override = os.getenv("MODEL_CONTEXT_LENGTH")
    if env_override:
        try:
            return int(env_override)
        except ValueError:
            logger.warning("Invalid MODEL_CONTEXT_LENGTH value: %s, using default", env_override)
    return SAFE_DEFAULT_CONTEXT_LENGTH


def clear_cache() -> None:
    global _model_metadata_cache, _model_metadata_cache_time
    _model_metadata_cache = {}
    _model_metadata_cache_time = 0


def fetch_model_metadata(force_refresh: bool = False) -> Dict[str, Dict[str, Any]]:
    """Fetch model metadata from OpenRouter (cached for 1 hour).

    A failed fetch is logged and answers with whatever was cached before.
    """
    global _model_metadata_cache, _model_metadata_cache_time

    if not force_refresh and _model_metadata_cache and (time.time() - _model_metadata_cache_time) < _MODEL_CACHE_TTL:
        return _model_metadata_cache

    fallback_length = _get_fallback_context_length()
    try:
        response = requests.get(OPENROUTER_MODELS_URL, timeout=10)
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("Failed to fetch model metadata from OpenRouter: %s", e)
        return _model_metadata_cache or {}

    cache = {}
    for model in data.get("data", []):
        model_id = model.get("id", "")
        cache[model_id] = {
            "context_length": model.get("context_length", fallback_length),
            "max_completion_tokens": (model.get("top_provider") or {}).get("max_completion_tokens", 4096),
            "name": model.get("name", model_id),
        }
        canonical = model.get("canonical_slug", "")
        if canonical and canonical != model_id:
            cache[canonical] = cache[model_id]

    _model_metadata_cache = cache
    _model_metadata_cache_time = time.time()
    logger.debug("Fetched metadata for %s models from OpenRouter", len(cache))
    return cache


def get_model_context_length(model: str, *, fetch: bool = True) -> int:
    fallback_length = _get_fallback_context_length()
    if not model:
        return fallback_length

    if fetch:
        metadata = fetch_model_metadata()
        if model in metadata:
            return metadata[model].get("context_length", fallback_length)

    bare = model.split("/")[-1]
    for default_model, length in DEFAULT_CONTEXT_LENGTHS.items():
        if default_model in bare:
            return length

    logger.warning(
        "Unknown model '%s' - using conservative context length of %s tokens. "
        "Set MODEL_CONTEXT_LENGTH to override.",
        model,
        f"{fallback_length:,}",
    )
    return fallback_length


def clamp_max_context(max_context: int, model: str, *, fetch: bool = True) -> int:
    """``max_context`` lowered to the model's own limit."""
    limit = get_model_context_length(model, fetch=fetch)
    if limit < max_context:
        logger.info("Clamping max_context %d to %d for %s", max_context, limit, model)
        return limit
    return max_context
