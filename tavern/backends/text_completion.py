"""Text completion backends: OpenAI-style ``/completions`` and local servers.

Response shapes seen in the wild:

    OpenAI / vLLM / TabbyAPI   choices[].text, choices[].logprobs
    llama.cpp                  content, completion_probabilities
    KoboldCpp                  results[].text, or token when streaming
    Ollama                     response, thinking (newline-delimited JSON)

Choices with index > 0 are additional variants of the same turn.
"""

import logging
from typing import Any, Dict, List, Optional

from tavern.backends.base import HttpBackendAdapter, StreamState

logger = logging.getLogger(__name__)


def parse_text_logprobs(logprobs: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """OpenAI text-completion logprobs -> ``[{token, logprob, top}]``."""
    if not logprobs:
        return []
    tokens = logprobs.get("tokens") or []
    values = logprobs.get("token_logprobs") or []
    tops = logprobs.get("top_logprobs") or []
    result = []
    for i, token in enumerate(tokens):
        top = tops[i] if i < len(tops) and isinstance(tops[i], dict) else {}
        result.append({
            "token": token,
            "logprob": values[i] if i < len(values) else None,
            "top": sorted(top.items(), key=lambda kv: kv[1], reverse=True),
        })
    return result


def parse_llamacpp_probabilities(probabilities: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    result = []
    for item in probabilities or []:
        top = item.get("top_logprobs") or item.get("probs") or []
        result.append({
            "token": item.get("token") or item.get("content", ""),
            "logprob": item.get("logprob"),
            "top": [(t.get("token") or t.get("tok_str", ""), t.get("logprob", t.get("prob"))) for t in top],
        })
    return result


def _text_of(obj: Dict[str, Any]) -> str:
    choices = obj.get("choices")
    if choices:
        return choices[0].get("text") or ""
    results = obj.get("results")
    if results:
        return results[0].get("text") or ""
    for key in ("content", "token", "response"):
        value = obj.get(key)
        if isinstance(value, str):
            return value
    return ""


class TextCompletionAdapter(HttpBackendAdapter):
    endpoint = "/completions"
    chat_completion = False

    def __init__(self, *, endpoint: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        if endpoint:
            self.endpoint = endpoint

    def build_payload(self, prompt: Any, params: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "prompt": prompt.prompt,
            "stream": bool(params.get("stream", False)),
        }
        model = params.get("model") or self.model
        if model:
            payload["model"] = model
        if params.get("max_tokens"):
            payload["max_tokens"] = params["max_tokens"]
        for key in ("temperature", "top_p", "top_k", "min_p", "seed"):
            if params.get(key) is not None:
                payload[key] = params[key]
        if params.get("n", 1) > 1:
            payload["n"] = params["n"]
        if prompt.stop_sequences:
            payload["stop"] = list(prompt.stop_sequences)
        if params.get("logprobs"):
            payload["logprobs"] = params.get("top_logprobs", 5)
        if prompt.cfg is not None:
            payload["negative_prompt"] = prompt.cfg.negative
            payload["guidance_scale"] = params.get("guidance_scale", 1.5)
        if params.get("json_schema"):
            schema = params["json_schema"]
            payload["json_schema"] = schema.get("value", schema)
        payload.update(params.get("extra_body") or {})
        return payload

    def extract_text(self, response: Dict[str, Any]) -> str:
        return _text_of(response)

    def extract_reasoning(self, response: Dict[str, Any]) -> str:
        choices = response.get("choices")
        if choices:
            return choices[0].get("reasoning") or choices[0].get("reasoning_content") or ""
        return response.get("thinking") or ""

    def extract_swipes(self, response: Dict[str, Any]) -> List[str]:
        choices = response.get("choices") or response.get("results") or []
        return [c.get("text") or "" for c in choices[1:]]

    def extract_logprobs(self, response: Dict[str, Any]) -> List[Dict[str, Any]]:
        choices = response.get("choices")
        if choices:
            return parse_text_logprobs(choices[0].get("logprobs"))
        return parse_llamacpp_probabilities(response.get("completion_probabilities"))

    def extract_finish_reason(self, response: Dict[str, Any]) -> Optional[str]:
        choices = response.get("choices")
        if choices:
            return choices[0].get("finish_reason")
        if response.get("stop") or response.get("done"):
            return "stop"
        return None

    def parse_stream_event(self, event: Dict[str, Any], state: StreamState) -> None:
        if event.get("usage"):
            state.usage = dict(event["usage"])
        choices = event.get("choices")
        if choices:
            for choice in choices:
                index = choice.get("index", 0) or 0
                text = choice.get("text") or ""
                if index > 0:
                    state.add_swipe_text(index - 1, text)
                    continue
                state.text += text
                state.reasoning += choice.get("reasoning") or choice.get("reasoning_content") or ""
                state.logprobs.extend(parse_text_logprobs(choice.get("logprobs")))
                if choice.get("finish_reason"):
                    state.finish_reason = choice["finish_reason"]
            return

        state.text += _text_of(event)
        state.reasoning += event.get("thinking") or ""
        state.logprobs.extend(parse_llamacpp_probabilities(event.get("completion_probabilities")))
        if event.get("stop") or event.get("done"):
            state.finish_reason = event.get("stop_type") or event.get("done_reason") or "stop"
