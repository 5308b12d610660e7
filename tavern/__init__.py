"""Tavern engine -- prompt assembly, dispatch and streaming for chat roleplay.

Module Overview
---------------

**prompt_assembler.py**
    Builds one bounded prompt from the chat, the character fields and the
    per-generation prompt context. Helpers: ``budget.py`` (token budget and
    history trimming), ``formatting.py`` (how each piece is rendered),
    ``macros.py`` (``{{user}}``-style substitution), ``character.py``
    (lazily resolved card and persona fields).

**extension_prompts.py**
    Keyed prompt fragments registered by extensions, with positions and
    in-chat depths. ``PromptContext`` is the per-generation copy.

**conversation.py**
    Messages and their variants ("swipes"), navigation and the overswipe
    policy. Data classes live in ``models.py``.

**dispatcher.py** and **backends/**
    One adapter per generation API behind a common capability set.

**streaming.py**
    State machine that reconciles a chunk stream into the chat.

**generation.py**
    The orchestrator: hooks, assembly, dispatch, tool recursion, persistence.

**tool_calls.py**, **persistence.py**, **itemization.py**, **events.py**,
**reasoning.py**, **concurrency.py**, **model_metadata.py**, **config.py**
    Collaborators and shared utilities.

Architecture
------------
1. **One owner per state**: ``ConversationStore`` owns messages; the
   assembler only reads them.
2. **Per-generation prompt context**: hooks write to a ``PromptContext``
   that is closed when the generation ends, so nothing leaks forward.
3. **No backend branching outside adapters**.
"""

__version__ = "0.1.0"
