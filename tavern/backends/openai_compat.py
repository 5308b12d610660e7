"""OpenAI-compatible chat completions (OpenAI, OpenRouter, DeepSeek, xAI, custom).

Providers agree on ``choices[].message`` / ``choices[].delta`` but not on
where reasoning goes: OpenRouter uses ``reasoning``, DeepSeek and xAI use
``reasoning_content``. The adapter is told which fields to look at.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from tavern.backends.base import HttpBackendAdapter, StreamState

logger = logging.getLogger(__name__)

DEFAULT_REASONING_FIELDS = ("reasoning_content", "reasoning")


def _first_choice(response: Dict[str, Any]) -> Dict[str, Any]:
    choices = response.get("choices") or []
    return choices[0] if choices else {}


def parse_chat_logprobs(logprobs: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """``choices[].logprobs.content`` -> ``[{token, logprob, top}]``."""
    if not logprobs:
        return []
    result = []
    for item in logprobs.get("content") or []:
        result.append({
            "token": item.get("token", ""),
            "logprob": item.get("logprob"),
            "top": [(t.get("token", ""), t.get("logprob")) for t in item.get("top_logprobs") or []],
        })
    return result


class OpenAIChatAdapter(HttpBackendAdapter):
    endpoint = "/chat/completions"
    chat_completion = True

    def __init__(self, *, reasoning_fields: Sequence[str] = DEFAULT_REASONING_FIELDS, **kwargs):
        super().__init__(**kwargs)
        self.reasoning_fields = tuple(reasoning_fields)

    def build_payload(self, prompt: Any, params: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": params.get("model") or self.model,
            "messages": prompt.prompt,
            "stream": bool(params.get("stream", False)),
        }
        if params.get("max_tokens"):
            payload["max_tokens"] = params["max_tokens"]
        for key in ("temperature", "top_p", "seed"):
            if params.get(key) is not None:
                payload[key] = params[key]
        if params.get("n", 1) > 1:
            payload["n"] = params["n"]
        stop = [s for s in prompt.stop_sequences if s.strip()] if params.get("use_stop_strings") else []
        if stop:
            payload["stop"] = stop[:4]
        if params.get("logprobs"):
            payload["logprobs"] = True
            payload["top_logprobs"] = params.get("top_logprobs", 5)
        if params.get("tools"):
            payload["tools"] = params["tools"]
            payload["tool_choice"] = params.get("tool_choice", "auto")
        schema = params.get("json_schema")
        if schema:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": schema.get("name", "response"), "strict": True, "schema": schema.get("value", schema)},
            }
        if self.backend_id == "openrouter":
            payload["include_reasoning"] = True
        payload.update(params.get("extra_body") or {})
        return payload

    def _reasoning_from(self, obj: Dict[str, Any]) -> str:
        for name in self.reasoning_fields:
            value = obj.get(name)
            if isinstance(value, str) and value:
                return value
        return ""

    def extract_text(self, response: Dict[str, Any]) -> str:
        message = _first_choice(response).get("message") or {}
        return message.get("content") or ""

    def extract_reasoning(self, response: Dict[str, Any]) -> str:
        return self._reasoning_from(_first_choice(response).get("message") or {})

    def extract_tool_calls(self, response: Dict[str, Any]) -> List[Dict[str, Any]]:
        message = _first_choice(response).get("message") or {}
        return list(message.get("tool_calls") or [])

    def extract_swipes(self, response: Dict[str, Any]) -> List[str]:
        choices = response.get("choices") or []
        return [(c.get("message") or {}).get("content") or "" for c in choices[1:]]

    def extract_logprobs(self, response: Dict[str, Any]) -> List[Dict[str, Any]]:
        return parse_chat_logprobs(_first_choice(response).get("logprobs"))

    def extract_finish_reason(self, response: Dict[str, Any]) -> Optional[str]:
        return _first_choice(response).get("finish_reason")

    def parse_stream_event(self, event: Dict[str, Any], state: StreamState) -> None:
        if event.get("usage"):
            state.usage = dict(event["usage"])
        for choice in event.get("choices") or []:
            index = choice.get("index", 0) or 0
            delta = choice.get("delta") or {}
            content = delta.get("content") or ""
            if index > 0:
                state.add_swipe_text(index - 1, content)
                continue
            state.text += content
            state.reasoning += self._reasoning_from(delta)
            for call in delta.get("tool_calls") or []:
                state.merge_tool_call_delta(call)
            state.logprobs.extend(parse_chat_logprobs(choice.get("logprobs")))
            if choice.get("finish_reason"):
                state.finish_reason = choice["finish_reason"]
