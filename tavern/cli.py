"""Command-line entry point.

Usage:
    tavern backends
    tavern dry_run --chat=default --character=card.json
    tavern generate "Hello there" --chat=default --character=card.json
    tavern generate --type=swipe --chat=default --character=card.json
    tavern history --chat=default
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import fire

from tavern.backends.registry import BACKENDS, create_adapter
from tavern.character import CharacterCard, LoreBlocks, Persona, PromptFields
from tavern.config import GenerationSettings, load_settings
from tavern.dispatcher import GenerationDispatcher
from tavern.events import GENERATION_PROGRESS, EventBus
from tavern.extension_prompts import ExtensionPromptRegistry
from tavern.generation import ChatSession, Generator
from tavern.macros import build_macro_engine
from tavern.models import GenerationRequest, GenerationType, Message
from tavern.persistence import JsonlChatPersister
from tavern.prompt_assembler import PromptAssembler
from tavern.tokenizer import TiktokenTokenizer

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("asyncio").setLevel(logging.WARNING)
    else:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("httpx").setLevel(logging.ERROR)
        logging.getLogger("httpcore").setLevel(logging.ERROR)


def _load_character(path: Optional[str]) -> CharacterCard:
    if not path:
        return CharacterCard(name="Assistant", first_message="Hello! How can I help?")
    with open(path, encoding="utf-8") as f:
        return CharacterCard.from_dict(json.load(f))


class TavernCLI:
    """Dry-run prompt assembly and one-shot generation against a saved chat."""

    def __init__(self, config: Optional[str] = None, verbose: bool = False):
        setup_logging(verbose)
        self._config_path = Path(config) if config else None
        self._settings: Optional[GenerationSettings] = None

    @property
    def settings(self) -> GenerationSettings:
        if self._settings is None:
            self._settings = load_settings(self._config_path)
        return self._settings

    def _session(self, persister: JsonlChatPersister, chat: str, character: Optional[str], user: str) -> ChatSession:
        card = _load_character(character)
        store = persister.load_store(chat)
        if not len(store) and card.first_message:
            store.add_message(Message(name=card.name, text=card.first_message))
        return ChatSession(store=store, character=card, persona=Persona(name=user))

    def backends(self):
        """List the known backends."""
        for meta in BACKENDS.values():
            aliases = f" (aliases: {', '.join(meta.aliases)})" if meta.aliases else ""
            print(f"{meta.id:12} {meta.mode:6} {meta.label}{aliases}")

    def history(self, chat: str = "default"):
        """Print a saved chat, one message per line."""
        persister = JsonlChatPersister(self.settings.resolved_chats_dir())
        store = persister.load_store(chat)
        for index, message in enumerate(store):
            variants = f" [{message.active_variant + 1}/{len(message.variants)}]" if len(message.variants) > 1 else ""
            print(f"{index:3} {message.name}{variants}: {message.text}")

    def dry_run(self, chat: str = "default", character: Optional[str] = None, user: str = "User", show_prompt: bool = False):
        """Assemble the next prompt without sending it and print its token breakdown."""
        settings = self.settings
        persister = JsonlChatPersister(settings.resolved_chats_dir())
        session = self._session(persister, chat, character, user)
        adapter = create_adapter(settings.backend, model=settings.model, api_key=settings.api_key, base_url=settings.base_url)
        macros = build_macro_engine(user=user, char=session.character.name)
        fields = PromptFields(
            session.character,
            session.persona,
            macros,
            lore=LoreBlocks(),
            default_system_prompt=settings.prompts.main_prompt,
            default_jailbreak=settings.prompts.jailbreak_prompt,
        )
        assembler = PromptAssembler(settings, TiktokenTokenizer(settings.model), chat_completion=adapter.chat_completion)
        context = ExtensionPromptRegistry().snapshot()
        try:
            prompt = asyncio.run(assembler.assemble(GenerationRequest(), store=session.store, fields=fields, context=context))
        finally:
            context.close()

        print(f"Prompt: {prompt.token_count} / {prompt.budget} tokens (max context {prompt.max_context})")
        for section, tokens in prompt.itemization.sections.items():
            print(f"  {section:18} {tokens}")
        print(f"History: {len(prompt.kept_message_ids)} kept, {prompt.dropped_messages} dropped")
        if prompt.overflow:
            print(f"Overflow: {prompt.overflow}")
        if show_prompt:
            print("-" * 50)
            if isinstance(prompt.prompt, str):
                print(prompt.prompt)
            else:
                print(json.dumps(prompt.prompt, indent=2, ensure_ascii=False))

    def generate(
        self,
        message: Optional[str] = None,
        chat: str = "default",
        character: Optional[str] = None,
        user: str = "User",
        type: str = "normal",
    ):
        """Send ``message`` (if given) and generate the character's reply."""
        gen_type = GenerationType(type)
        return asyncio.run(self._generate(message, chat, character, user, gen_type))

    async def _generate(self, message, chat, character, user, gen_type) -> None:
        settings = self.settings
        persister = JsonlChatPersister(settings.resolved_chats_dir())
        session = self._session(persister, chat, character, user)
        if message:
            session.store.add_message(Message(name=user, text=message, is_user=True))

        adapter = create_adapter(settings.backend, model=settings.model, api_key=settings.api_key, base_url=settings.base_url)
        dispatcher = GenerationDispatcher({settings.backend: adapter})
        events = EventBus()
        printed = {"length": 0}

        def on_progress(event_type, context):
            text = context.get("text", "")
            print(text[printed["length"]:], end="", flush=True)
            printed["length"] = len(text)

        if settings.streaming:
            events.on(GENERATION_PROGRESS, on_progress)
        generator = Generator(
            settings,
            dispatcher=dispatcher,
            tokenizer=TiktokenTokenizer(settings.model),
            events=events,
            persister=persister,
        )
        try:
            result = await generator.generate(session, GenerationRequest(type=gen_type))
        finally:
            await dispatcher.aclose()
        print(result.text[printed["length"]:])


def main():
    fire.Fire(TavernCLI)


if __name__ == "__main__":
    main()
