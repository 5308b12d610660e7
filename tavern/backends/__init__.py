"""Generation backends.

Each adapter implements the ``BackendAdapter`` capability set; the
dispatcher selects one by id and never looks inside.
"""

from tavern.backends.base import (
    BackendAdapter,
    BackendResponse,
    HttpBackendAdapter,
    StreamChunk,
    StreamState,
)
from tavern.backends.claude import ClaudeAdapter
from tavern.backends.openai_compat import OpenAIChatAdapter
from tavern.backends.registry import BACKENDS, BackendMeta, create_adapter, get_backend, normalize_backend_id
from tavern.backends.text_completion import TextCompletionAdapter

__all__ = [
    "BACKENDS",
    "BackendAdapter",
    "BackendMeta",
    "BackendResponse",
    "ClaudeAdapter",
    "HttpBackendAdapter",
    "OpenAIChatAdapter",
    "StreamChunk",
    "StreamState",
    "TextCompletionAdapter",
    "create_adapter",
    "get_backend",
    "normalize_backend_id",
]
