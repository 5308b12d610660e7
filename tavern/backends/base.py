"""Backend adapter contract and the shared httpx transport.

Every backend implements the same capability set: build a payload, send it
buffered or streaming, and pull text, reasoning, tool calls, logprobs and
errors back out of whatever shape the backend answers in. Nothing outside
an adapter branches on backend type.

Streams yield ``StreamChunk`` snapshots that are *cumulative*: each one
carries the whole text so far, not a delta.
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from tavern.backends.sse import iter_sse_events
from tavern.concurrency import AbortToken
from tavern.errors import BackendError, TransportError

logger = logging.getLogger(__name__)


@dataclass
class StreamChunk:
    text: str = ""
    reasoning: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    swipes: List[str] = field(default_factory=list)
    logprobs: List[Dict[str, Any]] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BackendResponse:
    text: str = ""
    reasoning: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    swipes: List[str] = field(default_factory=list)
    logprobs: List[Dict[str, Any]] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)


class StreamState:
    """Accumulates stream events into cumulative snapshots."""

    def __init__(self):
        self.text = ""
        self.reasoning = ""
        self.tool_calls: List[Dict[str, Any]] = []
        self.swipes: Dict[int, str] = {}
        self.logprobs: List[Dict[str, Any]] = []
        self.finish_reason: Optional[str] = None
        self.usage: Dict[str, Any] = {}
        self._tool_slots: Dict[Any, int] = {}

    def tool_slot(self, key: Any) -> int:
        """Stable tool-call index for a backend-specific block key."""
        if key not in self._tool_slots:
            self._tool_slots[key] = len(self._tool_slots)
        return self._tool_slots[key]

    def add_swipe_text(self, index: int, text: str) -> None:
        self.swipes[index] = self.swipes.get(index, "") + text

    def merge_tool_call_delta(self, delta: Dict[str, Any], index: Optional[int] = None) -> None:
        """Fold a partial OpenAI-style tool call into the call at its index."""
        if index is None:
            index = delta.get("index", 0) or 0
        while len(self.tool_calls) <= index:
            self.tool_calls.append({"id": "", "type": "function", "function": {"name": "", "arguments": ""}})
        call = self.tool_calls[index]
        if delta.get("id"):
            call["id"] = delta["id"]
        if delta.get("type"):
            call["type"] = delta["type"]
        function = delta.get("function") or {}
        if function.get("name") and not call["function"]["name"]:
            call["function"]["name"] = function["name"]
        if function.get("arguments"):
            call["function"]["arguments"] += function["arguments"]

    def snapshot(self) -> StreamChunk:
        return StreamChunk(
            text=self.text,
            reasoning=self.reasoning,
            tool_calls=copy.deepcopy(self.tool_calls),
            swipes=[self.swipes[i] for i in sorted(self.swipes)],
            logprobs=list(self.logprobs),
            finish_reason=self.finish_reason,
            usage=dict(self.usage),
        )


def error_message(error: Any) -> Optional[str]:
    """Normalize the assorted ``error`` shapes backends send."""
    if not error:
        return None
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        message = error.get("message") or error.get("detail") or error.get("type")
        metadata = error.get("metadata") or {}
        raw = metadata.get("raw") if isinstance(metadata, dict) else None
        if raw and message:
            return f"{message} ({raw})"
        return str(message or error)
    return str(error)


class BackendAdapter(ABC):
    """One generation API.

    Subclasses set ``chat_completion`` to say which prompt shape they take.
    """

    backend_id: str = ""
    chat_completion: bool = True

    @abstractmethod
    def build_payload(self, prompt: Any, params: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def send(self, payload: Dict[str, Any], signal: AbortToken) -> Dict[str, Any]:
        ...

    @abstractmethod
    def send_streaming(self, payload: Dict[str, Any], signal: AbortToken) -> AsyncIterator[StreamChunk]:
        ...

    @abstractmethod
    def extract_text(self, response: Dict[str, Any]) -> str:
        ...

    def extract_reasoning(self, response: Dict[str, Any]) -> str:
        return ""

    def extract_tool_calls(self, response: Dict[str, Any]) -> List[Dict[str, Any]]:
        return []

    def extract_swipes(self, response: Dict[str, Any]) -> List[str]:
        return []

    def extract_logprobs(self, response: Dict[str, Any]) -> List[Dict[str, Any]]:
        return []

    def extract_finish_reason(self, response: Dict[str, Any]) -> Optional[str]:
        return None

    def extract_error(self, response: Dict[str, Any]) -> Optional[str]:
        if isinstance(response, dict):
            return error_message(response.get("error"))
        return None

    @abstractmethod
    def parse_stream_event(self, event: Dict[str, Any], state: StreamState) -> None:
        """Fold one decoded stream event into ``state``."""

    def to_response(self, raw: Dict[str, Any]) -> BackendResponse:
        return BackendResponse(
            text=self.extract_text(raw),
            reasoning=self.extract_reasoning(raw),
            tool_calls=self.extract_tool_calls(raw),
            swipes=self.extract_swipes(raw),
            logprobs=self.extract_logprobs(raw),
            finish_reason=self.extract_finish_reason(raw),
            usage=dict(raw.get("usage") or {}) if isinstance(raw, dict) else {},
            raw=raw,
        )

    async def aclose(self) -> None:
        return None


class HttpBackendAdapter(BackendAdapter):
    """Adapter that POSTs JSON to ``base_url + endpoint`` with httpx.

    Args:
        base_url: API root, e.g. ``https://openrouter.ai/api/v1``.
        api_key: Sent as a bearer token unless ``auth_headers`` is overridden.
        model: Default model id for payloads.
        client: Shared ``httpx.AsyncClient``; one is created lazily otherwise.
        extra_headers: Merged into every request.
    """

    endpoint: str = ""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str] = None,
        model: str = "",
        client: Optional[httpx.AsyncClient] = None,
        extra_headers: Optional[Dict[str, str]] = None,
        backend_id: Optional[str] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self._client = client
        self._owns_client = client is None
        self.extra_headers = dict(extra_headers or {})
        if backend_id:
            self.backend_id = backend_id

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.endpoint}"

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            # No read timeout: generations can legitimately take minutes.
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(None, connect=30.0))
        return self._client

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    def headers(self, *, streaming: bool = False) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if streaming:
            headers["Accept"] = "text/event-stream"
        headers.update(self.auth_headers())
        headers.update(self.extra_headers)
        return headers

    def _raise_for_error_status(self, response: httpx.Response, body: bytes) -> None:
        if response.status_code < 400:
            return
        try:
            data = response.json() if body else {}
        except ValueError:
            data = {}
        message = self.extract_error(data) if isinstance(data, dict) else None
        if message:
            raise BackendError(message, status_code=response.status_code, payload=data)
        text = body.decode("utf-8", errors="replace")[:500]
        raise TransportError(
            f"{self.backend_id or 'backend'} returned HTTP {response.status_code}: {text}",
            status_code=response.status_code,
        )

    async def send(self, payload: Dict[str, Any], signal: AbortToken) -> Dict[str, Any]:
        signal.raise_if_aborted()
        try:
            response = await self.client.post(self.url, json=payload, headers=self.headers())
        except httpx.HTTPError as e:
            raise TransportError(f"Request to {self.url} failed: {e}") from e
        signal.raise_if_aborted()
        self._raise_for_error_status(response, response.content)
        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(f"{self.url} returned a non-JSON body") from e
        message = self.extract_error(data)
        if message:
            raise BackendError(message, status_code=response.status_code, payload=data)
        return data

    async def send_streaming(self, payload: Dict[str, Any], signal: AbortToken) -> AsyncIterator[StreamChunk]:
        signal.raise_if_aborted()
        state = StreamState()
        try:
            async with self.client.stream("POST", self.url, json=payload, headers=self.headers(streaming=True)) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    self._raise_for_error_status(response, body)
                async for event in iter_sse_events(response):
                    signal.raise_if_aborted()
                    message = self.extract_error(event)
                    if message:
                        raise BackendError(message, status_code=response.status_code, payload=event)
                    self.parse_stream_event(event, state)
                    yield state.snapshot()
        except httpx.HTTPError as e:
            raise TransportError(f"Stream from {self.url} failed: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
