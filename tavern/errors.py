"""Error taxonomy for prompt assembly, dispatch and streaming.

Assembly-time errors (TokenizerUnavailable, GenerationAborted) are raised
before any network call is made. Dispatch errors (TransportError,
BackendError) propagate to the caller un-recovered. BudgetOverflow is a
report rather than a failure: the assembler attaches it to its result and
keeps going.
"""

from typing import Any, Dict, Optional


class TavernError(Exception):
    """Base class for every error raised by the tavern package."""


class ConfigValidationError(TavernError):
    """Raised when configuration is invalid."""


class TokenizerUnavailable(TavernError):
    """Raised when token counting is impossible. The assembler never guesses."""


class GenerationAborted(TavernError):
    """Raised when an abort token fires during assembly or transport."""

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason
        super().__init__(f"Generation aborted: {reason}" if reason else "Generation aborted")


class TransportError(TavernError):
    """Network-level failure talking to a generation backend."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class BackendError(TavernError):
    """The backend answered with a structured error payload."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.payload = payload or {}
        super().__init__(message)


class UnknownBackendError(TavernError):
    """No adapter is registered under the requested backend id."""


class LastVariantError(TavernError):
    """Raised when deleting the only remaining variant of a message."""

    def __init__(self, message_id: int):
        self.message_id = message_id
        super().__init__(f"Message {message_id} has only one variant left")


class ToolCallError(TavernError):
    """A single tool invocation failed. Collected in batches, not thrown."""

    def __init__(self, tool_name: str, message: str, *, tool_call_id: Optional[str] = None):
        self.tool_name = tool_name
        self.tool_call_id = tool_call_id
        super().__init__(f"{tool_name}: {message}")


class BudgetOverflow(TavernError):
    """An irreducible prompt element does not fit the token budget.

    Attached to ``AssembledPrompt.overflow``; the assembler proceeds with an
    oversized prompt instead of refusing to generate.
    """

    def __init__(self, element: str, tokens: int, max_context: int):
        self.element = element
        self.tokens = tokens
        self.max_context = max_context
        super().__init__(
            f"{element} needs {tokens:,} tokens but the budget is {max_context:,}"
        )
