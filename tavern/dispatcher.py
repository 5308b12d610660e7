"""Routes built payloads to backend adapters.

The dispatcher picks an adapter by backend id and calls it. It does no
response-shape handling of its own and never retries: transport and
backend errors go straight back to the caller.
"""

import logging
from typing import Any, AsyncIterator, Dict, Optional, Union

from tavern.backends.base import BackendAdapter, BackendResponse, StreamChunk
from tavern.backends.registry import normalize_backend_id
from tavern.concurrency import AbortToken
from tavern.errors import BackendError, TransportError, UnknownBackendError

logger = logging.getLogger(__name__)


class GenerationDispatcher:
    """Maps backend ids to adapter instances."""

    def __init__(self, adapters: Optional[Dict[str, BackendAdapter]] = None):
        self._adapters: Dict[str, BackendAdapter] = {}
        for backend_id, adapter in (adapters or {}).items():
            self.register(backend_id, adapter)

    def register(self, backend_id: str, adapter: BackendAdapter) -> None:
        self._adapters[normalize_backend_id(backend_id)] = adapter

    def adapter(self, backend_id: str) -> BackendAdapter:
        key = normalize_backend_id(backend_id)
        try:
            return self._adapters[key]
        except KeyError:
            raise UnknownBackendError(f"No adapter registered for backend {backend_id!r}") from None

    def build_payload(self, backend_id: str, prompt: Any, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.adapter(backend_id).build_payload(prompt, params)

    async def dispatch(
        self,
        backend_id: str,
        payload: Dict[str, Any],
        *,
        streaming: bool = False,
        signal: Optional[AbortToken] = None,
    ) -> Union[BackendResponse, AsyncIterator[StreamChunk]]:
        """Send ``payload`` and return a response, or a chunk stream.

        Streaming errors surface while iterating the returned stream.
        """
        adapter = self.adapter(backend_id)
        signal = signal or AbortToken()
        if streaming:
            logger.debug("Opening stream to %s", backend_id)
            return adapter.send_streaming(payload, signal)

        try:
            raw = await adapter.send(payload, signal)
        except BackendError as e:
            logger.error("%s reported an error: %s", backend_id, e.message)
            raise
        except TransportError as e:
            logger.error("Transport to %s failed: %s", backend_id, e)
            raise
        return adapter.to_response(raw)

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
