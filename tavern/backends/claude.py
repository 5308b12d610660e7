"""Anthropic messages API.

Claude takes the system prompt as a separate field, requires strictly
alternating user/assistant turns starting with a user turn, and returns
typed content blocks (``text``, ``thinking``, ``tool_use``).
"""

import json
import logging
from typing import Any, Dict, List, Optional

from tavern.backends.base import HttpBackendAdapter, StreamState, error_message
from tavern_constants import ANTHROPIC_VERSION

logger = logging.getLogger(__name__)

_EXAMPLE_ROLES = {"example_user": "user", "example_assistant": "assistant"}
_FIRST_USER_FILLER = "[Start a new chat]"


def _blocks_of(content: Any) -> List[Dict[str, Any]]:
    if isinstance(content, list):
        return content
    return [{"type": "text", "text": content}] if content else []


def _tool_blocks(message: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Tool calls and tool results in Claude's content-block form."""
    if message.get("role") == "tool":
        return [{
            "type": "tool_result",
            "tool_use_id": message.get("tool_call_id", ""),
            "content": message.get("content") or "",
        }]
    blocks = _blocks_of(message.get("content") or "")
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        try:
            arguments = json.loads(function.get("arguments") or "{}")
        except json.JSONDecodeError:
            logger.warning("Tool call %s has invalid JSON arguments", call.get("id"))
            arguments = {}
        blocks.append({"type": "tool_use", "id": call.get("id", ""), "name": function.get("name", ""), "input": arguments})
    return blocks


def convert_messages(messages: List[Dict[str, Any]]):
    """Split leading system messages off and merge same-role runs.

    Returns ``(system_text, messages)``.
    """
    system_parts: List[str] = []
    index = 0
    while index < len(messages) and messages[index].get("role") == "system" and "name" not in messages[index]:
        if messages[index].get("content"):
            system_parts.append(messages[index]["content"])
        index += 1

    converted: List[Dict[str, Any]] = []
    for message in messages[index:]:
        role = message.get("role", "user")
        content: Any = message.get("content") or ""
        if role == "tool" or message.get("tool_calls"):
            content = _tool_blocks(message)
            role = "user" if role == "tool" else "assistant"
        elif role == "system":
            role = _EXAMPLE_ROLES.get(message.get("name", ""), "user")
        elif message.get("name"):
            content = f"{message['name']}: {content}"
        if not content:
            continue
        if converted and converted[-1]["role"] == role:
            previous = converted[-1]["content"]
            if isinstance(previous, str) and isinstance(content, str):
                converted[-1]["content"] = f"{previous}\n\n{content}"
            else:
                converted[-1]["content"] = _blocks_of(previous) + _blocks_of(content)
        else:
            converted.append({"role": role, "content": content})

    if not converted or converted[0]["role"] != "user":
        converted.insert(0, {"role": "user", "content": _FIRST_USER_FILLER})
    return "\n\n".join(system_parts), converted


class ClaudeAdapter(HttpBackendAdapter):
    endpoint = "/messages"
    chat_completion = True
    backend_id = "claude"

    def auth_headers(self) -> Dict[str, str]:
        headers = {"anthropic-version": ANTHROPIC_VERSION}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def build_payload(self, prompt: Any, params: Dict[str, Any]) -> Dict[str, Any]:
        system, messages = convert_messages(prompt.prompt)
        payload: Dict[str, Any] = {
            "model": params.get("model") or self.model,
            "messages": messages,
            "max_tokens": params.get("max_tokens") or 1024,
            "stream": bool(params.get("stream", False)),
        }
        if system:
            payload["system"] = system
        for key in ("temperature", "top_p", "top_k"):
            if params.get(key) is not None:
                payload[key] = params[key]
        stop = [s for s in prompt.stop_sequences if s.strip()] if params.get("use_stop_strings") else []
        if stop:
            payload["stop_sequences"] = stop
        if params.get("tools"):
            payload["tools"] = [
                {
                    "name": tool["function"]["name"],
                    "description": tool["function"].get("description", ""),
                    "input_schema": tool["function"].get("parameters", {"type": "object", "properties": {}}),
                }
                for tool in params["tools"]
            ]
        if params.get("thinking_budget"):
            payload["thinking"] = {"type": "enabled", "budget_tokens": params["thinking_budget"]}
            # Extended thinking rejects sampling overrides.
            payload.pop("temperature", None)
            payload.pop("top_p", None)
            payload.pop("top_k", None)
        payload.update(params.get("extra_body") or {})
        return payload

    def _blocks(self, response: Dict[str, Any], kind: str) -> List[Dict[str, Any]]:
        return [b for b in response.get("content") or [] if b.get("type") == kind]

    def extract_text(self, response: Dict[str, Any]) -> str:
        return "".join(b.get("text", "") for b in self._blocks(response, "text"))

    def extract_reasoning(self, response: Dict[str, Any]) -> str:
        return "\n\n".join(b.get("thinking", "") for b in self._blocks(response, "thinking"))

    def extract_tool_calls(self, response: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [
            {
                "id": block.get("id", ""),
                "type": "function",
                "function": {"name": block.get("name", ""), "arguments": json.dumps(block.get("input") or {})},
            }
            for block in self._blocks(response, "tool_use")
        ]

    def extract_finish_reason(self, response: Dict[str, Any]) -> Optional[str]:
        return response.get("stop_reason")

    def extract_error(self, response: Dict[str, Any]) -> Optional[str]:
        if isinstance(response, dict) and response.get("type") == "error":
            return error_message(response.get("error")) or "Unknown Claude error"
        return super().extract_error(response)

    def parse_stream_event(self, event: Dict[str, Any], state: StreamState) -> None:
        kind = event.get("type")
        if kind == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                state.merge_tool_call_delta(
                    {"id": block.get("id", ""), "function": {"name": block.get("name", "")}},
                    index=state.tool_slot(event.get("index", 0)),
                )
        elif kind == "content_block_delta":
            delta = event.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                state.text += delta.get("text", "")
            elif delta_type == "thinking_delta":
                state.reasoning += delta.get("thinking", "")
            elif delta_type == "input_json_delta":
                state.merge_tool_call_delta(
                    {"function": {"arguments": delta.get("partial_json", "")}},
                    index=state.tool_slot(event.get("index", 0)),
                )
        elif kind == "message_delta":
            delta = event.get("delta") or {}
            if delta.get("stop_reason"):
                state.finish_reason = delta["stop_reason"]
            if event.get("usage"):
                state.usage.update(event["usage"])

