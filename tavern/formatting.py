"""Text rendering for prompts: history lines, instruct turns, examples, stops.

Pure functions over plain strings and settings objects. The assembler
decides *what* goes into a prompt; this module decides how each piece
looks on the wire.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from tavern.config import ContextSettings, InstructSettings
from tavern.extension_prompts import PromptRole
from tavern.macros import MacroEngine

_START_RE = re.compile(r"<START>", re.IGNORECASE)
_CHAT_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]")


@dataclass
class HistoryEntry:
    """One history slot as the assembler sees it."""

    role: PromptRole
    name: str
    text: str
    is_injected: bool = False
    source_index: Optional[int] = None
    is_placeholder: bool = False
    tool_invocations: Optional[List[Dict[str, Any]]] = None

    @property
    def chat_role(self) -> str:
        return self.role.chat_role


def _sequences(role: PromptRole, instruct: InstructSettings) -> Tuple[str, str]:
    if role == PromptRole.USER:
        return instruct.input_sequence, instruct.input_suffix
    if role == PromptRole.ASSISTANT:
        return instruct.output_sequence, instruct.output_suffix
    return instruct.system_sequence or instruct.input_sequence, instruct.system_suffix or instruct.input_suffix


def _body(entry: HistoryEntry, with_name: bool) -> str:
    if with_name and entry.name and entry.role != PromptRole.SYSTEM:
        return f"{entry.name}: {entry.text}"
    return entry.text


def format_history_line(entry: HistoryEntry, instruct: InstructSettings, *, is_continuation: bool = False) -> str:
    """Render one history entry for a text-completion prompt.

    A continuation is left open: no suffix and no trailing newline, so the
    model picks up mid-message.
    """
    if entry.is_placeholder:
        return ""
    if not instruct.enabled:
        body = _body(entry, with_name=True)
        return body if is_continuation else f"{body}\n"

    sep = "\n" if instruct.wrap else ""
    prefix, suffix = _sequences(entry.role, instruct)
    body = _body(entry, with_name=instruct.names)
    head = f"{prefix}{sep}" if prefix else ""
    if is_continuation:
        return f"{head}{body}"
    return f"{head}{body}{suffix}{sep}"


def generation_prefix(name: str, instruct: InstructSettings, *, as_user: bool = False) -> str:
    """Text that opens the turn the model is about to write."""
    if not instruct.enabled:
        return f"{name}:"
    sep = "\n" if instruct.wrap else ""
    if as_user:
        sequence = instruct.input_sequence
    else:
        sequence = instruct.last_output_sequence or instruct.output_sequence
    head = f"{sequence}{sep}" if sequence else ""
    return f"{head}{name}:" if instruct.names else head


def stopping_strings(
    *,
    user: str,
    char: str,
    instruct: InstructSettings,
    context: ContextSettings,
    macros: MacroEngine,
    group_members: Sequence[str] = (),
    impersonate: bool = False,
) -> List[str]:
    """Stop strings for the next turn, deduplicated in order."""
    speaker = char if impersonate else user
    candidates = [f"\n{speaker}:"]
    for member in group_members:
        if member != char:
            candidates.append(f"\n{member}:")
    if instruct.enabled:
        if instruct.stop_sequence:
            candidates.append(macros.substitute(instruct.stop_sequence))
        if instruct.input_sequence and not impersonate:
            candidates.append(f"\n{macros.substitute(instruct.input_sequence)}")
        if instruct.output_sequence and impersonate:
            candidates.append(f"\n{macros.substitute(instruct.output_sequence)}")
    if context.single_line:
        candidates.append("\n")
    candidates.extend(macros.substitute(s) for s in context.custom_stopping_strings)

    result: List[str] = []
    for candidate in candidates:
        if candidate and candidate not in result:
            result.append(candidate)
    return result


def parse_example_blocks(examples: str) -> List[str]:
    """Split a ``<START>``-delimited example dialogue into blocks."""
    if not examples or not examples.strip():
        return []
    text = examples.replace("\r\n", "\n")
    if not _START_RE.match(text.lstrip()):
        text = f"<START>\n{text.strip()}"
    return [block.strip() for block in _START_RE.split(text) if block.strip()]


def format_example_block(block: str, context: ContextSettings) -> str:
    if context.example_separator:
        return f"{context.example_separator}\n{block}\n"
    return f"{block}\n"


def parse_example_messages(block: str, *, user: str, char: str) -> List[Tuple[PromptRole, str]]:
    """Turn ``Name: text`` lines of one example block into role/text pairs.

    Lines without a known speaker prefix continue the previous turn; a
    block with no recognised speaker becomes a single system entry.
    """
    turns: List[Tuple[PromptRole, str]] = []
    prefixes = ((f"{user}:", PromptRole.USER), (f"{char}:", PromptRole.ASSISTANT))
    for line in block.split("\n"):
        for prefix, role in prefixes:
            if line.startswith(prefix):
                turns.append((role, line[len(prefix):].strip()))
                break
        else:
            if turns:
                role, text = turns[-1]
                turns[-1] = (role, f"{text}\n{line}" if text else line)
            elif line.strip():
                turns.append((PromptRole.SYSTEM, line.strip()))
    return [(role, text.strip()) for role, text in turns]


def format_instruct_example(block: str, *, user: str, char: str, instruct: InstructSettings, context: ContextSettings) -> str:
    """Example block rendered as instruct turns."""
    lines = []
    for role, text in parse_example_messages(block, user=user, char=char):
        name = user if role == PromptRole.USER else char
        entry = HistoryEntry(role=role, name=name, text=text)
        lines.append(format_history_line(entry, instruct))
    rendered = "".join(lines)
    if context.example_separator:
        return f"{context.example_separator}\n{rendered}"
    return rendered


def render_story_string(
    sections: Dict[str, str],
    context: ContextSettings,
    macros: MacroEngine,
    *,
    before: str = "",
    after: str = "",
) -> str:
    """Fixed prefix block: ordered non-empty sections between the anchors."""
    parts: List[str] = []
    for name in context.story_string_sections:
        value = sections.get(name, "")
        if not value:
            continue
        fmt = macros.substitute(context.section_formats.get(name, "{value}"))
        parts.append(fmt.replace("{value}", value))
    story = "\n".join(parts)
    pieces = [p.strip("\n") for p in (before, story, after) if p and p.strip()]
    if not pieces:
        return ""
    return "\n".join(pieces) + "\n"


def chat_message_name(name: str) -> str:
    """Sanitize a display name for the chat-completion ``name`` field."""
    return _CHAT_NAME_RE.sub("_", name)[:64]


_SENTENCE_ENDINGS = set(".!?*\"')}`]$。！？”）】’」_")


def remove_stop_strings(text: str, stops: Sequence[str], *, partial: bool = False) -> str:
    """Cut ``text`` at the earliest stop string.

    With ``partial``, a trailing prefix of a stop string is cut as well; a
    stream may have delivered only its first characters so far.
    """
    cut = len(text)
    for stop in stops:
        if not stop:
            continue
        index = text.find(stop)
        if index != -1:
            cut = min(cut, index)
    text = text[:cut]
    if partial:
        for stop in stops:
            for size in range(min(len(stop) - 1, len(text)), 0, -1):
                if text.endswith(stop[:size]):
                    text = text[:-size]
                    break
    return text


def trim_to_end_sentence(text: str) -> str:
    """Drop an incomplete trailing sentence. Text without any ending is kept."""
    stripped = text.rstrip()
    for index in range(len(stripped) - 1, -1, -1):
        if stripped[index] in _SENTENCE_ENDINGS:
            return stripped[:index + 1]
    return text


def strip_speaker_prefix(text: str, name: str) -> str:
    """Remove a leading ``Name:`` the model echoed back."""
    prefix = f"{name}:"
    if name and text.lstrip().startswith(prefix):
        return text.lstrip()[len(prefix):].lstrip()
    return text


def cleanup_response(
    text: str,
    *,
    stops: Sequence[str],
    context: ContextSettings,
    speaker: str = "",
    final: bool = True,
) -> str:
    text = remove_stop_strings(text, stops, partial=not final)
    text = strip_speaker_prefix(text, speaker)
    if context.single_line:
        text = text.split("\n", 1)[0]
    if final and context.trim_sentences:
        text = trim_to_end_sentence(text)
    return text.rstrip() if final else text
