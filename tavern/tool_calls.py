"""Function tool calls requested by a model response.

Executes the tool calls from a finished generation and reports back in one
batch: successful invocations, stealth invocations (run, but neither shown
nor fed back to the model), and the errors of the ones that failed. A
failing tool never raises out of ``invoke``.
"""

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from tavern.concurrency import AbortToken
from tavern.errors import ToolCallError

logger = logging.getLogger(__name__)

# 100K chars ~ 25K tokens; keeps a runaway tool from flooding the context.
MAX_TOOL_RESULT_CHARS = 100_000


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        function = data.get("function") or {}
        return cls(id=data.get("id", ""), name=function.get("name", ""), arguments=function.get("arguments") or "{}")


@dataclass
class ToolInvocation:
    id: str
    name: str
    display_name: str
    parameters: str
    result: str
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "displayName": self.display_name,
            "parameters": self.parameters,
            "result": self.result,
        }


@dataclass
class ToolCallOutcome:
    invocations: List[ToolInvocation] = field(default_factory=list)
    errors: List[ToolCallError] = field(default_factory=list)
    stealth_calls: List[ToolInvocation] = field(default_factory=list)

    @property
    def has_results(self) -> bool:
        """True when there is something to feed back to the model."""
        return bool(self.invocations)


class ToolCallCoordinator(Protocol):
    def tool_schemas(self) -> List[Dict[str, Any]]:
        ...

    async def invoke(self, tool_calls: List[Dict[str, Any]], signal: Optional[AbortToken] = None) -> ToolCallOutcome:
        ...


@dataclass
class ToolDefinition:
    name: str
    action: Callable[..., Any]
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    display_name: str = ""
    stealth: bool = False

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.parameters},
        }


def _truncate(result: str) -> str:
    if len(result) <= MAX_TOOL_RESULT_CHARS:
        return result
    original_len = len(result)
    return (
        result[:MAX_TOOL_RESULT_CHARS]
        + f"\n\n[Truncated: tool response was {original_len:,} chars, "
        f"exceeding the {MAX_TOOL_RESULT_CHARS:,} char limit]"
    )


class FunctionToolCoordinator:
    """Runs registered Python callables (sync or async) as tools."""

    def __init__(self):
        self._tools: Dict[str, ToolDefinition] = {}

    def register(
        self,
        name: str,
        action: Callable[..., Any],
        *,
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
        display_name: str = "",
        stealth: bool = False,
    ) -> None:
        self._tools[name] = ToolDefinition(
            name=name,
            action=action,
            description=description,
            parameters=parameters or {"type": "object", "properties": {}},
            display_name=display_name or name,
            stealth=stealth,
        )

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def tool_schemas(self) -> List[Dict[str, Any]]:
        return [tool.to_openai() for tool in self._tools.values()]

    async def invoke(self, tool_calls: List[Dict[str, Any]], signal: Optional[AbortToken] = None) -> ToolCallOutcome:
        outcome = ToolCallOutcome()
        for i, raw in enumerate(tool_calls, 1):
            if signal is not None and signal.aborted:
                logger.info("Abort requested, skipping %d tool call(s)", len(tool_calls) - i + 1)
                break

            call = ToolCall.from_dict(raw)
            tool = self._tools.get(call.name)
            if tool is None:
                outcome.errors.append(ToolCallError(call.name or "<unnamed>", "tool is not registered", tool_call_id=call.id))
                continue

            try:
                arguments = json.loads(call.arguments) if call.arguments.strip() else {}
            except json.JSONDecodeError as e:
                outcome.errors.append(ToolCallError(call.name, f"invalid JSON arguments: {e}", tool_call_id=call.id))
                continue
            if not isinstance(arguments, dict):
                outcome.errors.append(ToolCallError(call.name, "arguments must be a JSON object", tool_call_id=call.id))
                continue

            started = time.time()
            try:
                result = tool.action(**arguments)
                if inspect.isawaitable(result):
                    result = await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Tool %s failed: %s", call.name, e)
                outcome.errors.append(ToolCallError(call.name, str(e), tool_call_id=call.id))
                continue
            duration = time.time() - started

            if not isinstance(result, str):
                result = json.dumps(result, ensure_ascii=False, default=str)
            invocation = ToolInvocation(
                id=call.id,
                name=call.name,
                display_name=tool.display_name,
                parameters=call.arguments,
                result=_truncate(result),
                duration=duration,
            )
            logger.debug("Tool %d %s completed in %.2fs", i, call.name, duration)
            if tool.stealth:
                outcome.stealth_calls.append(invocation)
            else:
                outcome.invocations.append(invocation)
        return outcome
