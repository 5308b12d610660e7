"""Chat persistence -- JSONL chat files plus an itemized-prompt sidecar.

Layout under ``chats_dir``:

    <chat_id>.jsonl            header line (chat metadata), then one message per line
    <chat_id>.itemized.json    ItemizationStore records for the chat

Files are written to a temporary sibling and renamed into place, so a crash
mid-save leaves the previous version intact.
"""

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from tavern.conversation import ConversationStore
from tavern.itemization import ItemizationStore
from tavern.models import Message

logger = logging.getLogger(__name__)

_UNSAFE_CHAT_ID = re.compile(r"[\\/\x00]|^\.\.?$")


class ChatPersister(Protocol):
    def load_chat(self, chat_id: str) -> Tuple[List[Message], Dict[str, Any]]:
        ...

    def save_chat(self, chat_id: str, messages: List[Message], metadata: Dict[str, Any]) -> None:
        ...


class JsonlChatPersister:
    """Stores each chat as a JSONL file in ``chats_dir``."""

    def __init__(self, chats_dir: Path):
        self.chats_dir = Path(chats_dir)

    def chat_path(self, chat_id: str) -> Path:
        if not chat_id or _UNSAFE_CHAT_ID.search(chat_id):
            raise ValueError(f"Invalid chat id: {chat_id!r}")
        return self.chats_dir / f"{chat_id}.jsonl"

    def itemized_path(self, chat_id: str) -> Path:
        return self.chats_dir / f"{chat_id}.itemized.json"

    def exists(self, chat_id: str) -> bool:
        return self.chat_path(chat_id).exists()

    def load_chat(self, chat_id: str) -> Tuple[List[Message], Dict[str, Any]]:
        """Read a chat. A missing file is an empty chat."""
        path = self.chat_path(chat_id)
        if not path.exists():
            return [], {}

        messages: List[Message] = []
        metadata: Dict[str, Any] = {}
        with open(path, encoding="utf-8") as f:
            for line_no, line in enumerate(f):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                if line_no == 0 and "mes" not in data:
                    metadata = dict(data.get("chat_metadata") or {})
                    continue
                messages.append(Message.from_dict(data))
        logger.debug("Loaded %d message(s) from %s", len(messages), path)
        return messages, metadata

    def save_chat(self, chat_id: str, messages: List[Message], metadata: Dict[str, Any]) -> None:
        """Write a chat. Anything past the greeting marks it tainted."""
        path = self.chat_path(chat_id)
        if len(messages) > 1:
            metadata["tainted"] = True

        header = {
            "chat_id": chat_id,
            "saved_at": datetime.now().isoformat(),
            "chat_metadata": metadata,
        }
        self.chats_dir.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(json.dumps(header, ensure_ascii=False, default=str) + "\n")
            for message in messages:
                f.write(json.dumps(message.to_dict(), ensure_ascii=False, default=str) + "\n")
        tmp.replace(path)
        logger.debug("Saved %d message(s) to %s", len(messages), path)

    def load_store(self, chat_id: str) -> ConversationStore:
        messages, metadata = self.load_chat(chat_id)
        itemized = ItemizationStore(self.itemized_path(chat_id))
        itemized.load()
        return ConversationStore(messages, chat_id=chat_id, metadata=metadata, itemized=itemized)

    def save_store(self, store: ConversationStore) -> None:
        self.save_chat(store.chat_id, store.messages, store.metadata)
        if store.itemized.path is None:
            store.itemized.path = self.itemized_path(store.chat_id)
        store.itemized.save()

    def delete_chat(self, chat_id: str) -> bool:
        path = self.chat_path(chat_id)
        if not path.exists():
            return False
        path.unlink()
        sidecar = self.itemized_path(chat_id)
        if sidecar.exists():
            sidecar.unlink()
        return True


def default_persister(chats_dir: Optional[Path] = None) -> JsonlChatPersister:
    from tavern.config import get_tavern_home

    return JsonlChatPersister(chats_dir or get_tavern_home() / "chats")
