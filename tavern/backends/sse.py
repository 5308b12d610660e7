"""Server-sent event parsing for streaming backends.

Backends stream either SSE (``data: {...}`` lines, sometimes with ``event:``
lines in between) or newline-delimited JSON. Both come through here as a
sequence of decoded JSON objects. ``[DONE]`` ends the stream.
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

DONE = object()


def parse_sse_line(line: str) -> Any:
    """Decode one line.

    Returns the JSON object, ``DONE`` for the terminator, or None for
    comments, ``event:``/``id:`` lines, blanks and malformed data.
    """
    line = line.strip()
    if not line or line.startswith(":"):
        return None
    if line.startswith("data:"):
        data = line[5:].strip()
    elif line.startswith("{"):
        data = line
    else:
        return None
    if data == "[DONE]":
        return DONE
    try:
        return json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed stream line: %s", line[:100])
        return None


async def iter_sse_events(response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
    """Yield JSON events from a streaming response as lines complete."""
    buffer = ""
    async for chunk in response.aiter_text():
        buffer += chunk
        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            event = parse_sse_line(line)
            if event is DONE:
                return
            if isinstance(event, dict):
                yield event
    event: Optional[Any] = parse_sse_line(buffer) if buffer else None
    if isinstance(event, dict):
        yield event
