"""Itemized prompt records -- which sections a generated message was built from.

Each record holds the per-section token breakdown of the prompt that
produced one (message, variant) pair. Records follow their message: when a
message is deleted its records go with it and later records shift down.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class Itemization:
    sections: Dict[str, int] = field(default_factory=dict)
    total: int = 0
    budget: int = 0
    max_context: int = 0
    overflow: Optional[str] = None
    backend: str = ""
    model: str = ""
    prompt: Any = None

    def add(self, section: str, tokens: int) -> None:
        self.sections[section] = self.sections.get(section, 0) + tokens

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sections": dict(self.sections),
            "total": self.total,
            "budget": self.budget,
            "max_context": self.max_context,
            "overflow": self.overflow,
            "backend": self.backend,
            "model": self.model,
            "prompt": self.prompt,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Itemization":
        return cls(
            sections=dict(data.get("sections") or {}),
            total=int(data.get("total", 0)),
            budget=int(data.get("budget", 0)),
            max_context=int(data.get("max_context", 0)),
            overflow=data.get("overflow"),
            backend=data.get("backend", ""),
            model=data.get("model", ""),
            prompt=data.get("prompt"),
        )


class ItemizationStore:
    """Records keyed by ``(message_id, variant_id)``.

    Args:
        path: Optional JSON sidecar file. ``load()``/``save()`` are no-ops
            without one.
    """

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path else None
        self._records: Dict[Tuple[int, int], Itemization] = {}

    def __len__(self) -> int:
        return len(self._records)

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @path.setter
    def path(self, value: Optional[Path]) -> None:
        self._path = Path(value) if value else None

    def put(self, message_id: int, variant_id: int, record: Itemization) -> None:
        self._records[(message_id, variant_id)] = record

    def get(self, message_id: int, variant_id: int = 0) -> Optional[Itemization]:
        return self._records.get((message_id, variant_id))

    def for_message(self, message_id: int) -> List[Itemization]:
        return [self._records[k] for k in sorted(self._records) if k[0] == message_id]

    def delete_message(self, message_id: int) -> int:
        """Drop a message's records and shift later ones down by one."""
        removed = 0
        shifted: Dict[Tuple[int, int], Itemization] = {}
        for (mid, vid), record in self._records.items():
            if mid == message_id:
                removed += 1
            elif mid > message_id:
                shifted[(mid - 1, vid)] = record
            else:
                shifted[(mid, vid)] = record
        self._records = shifted
        return removed

    def delete_variant(self, message_id: int, variant_id: int) -> None:
        shifted: Dict[Tuple[int, int], Itemization] = {}
        for (mid, vid), record in self._records.items():
            if mid != message_id:
                shifted[(mid, vid)] = record
            elif vid > variant_id:
                shifted[(mid, vid - 1)] = record
            elif vid < variant_id:
                shifted[(mid, vid)] = record
        self._records = shifted

    def clear(self) -> None:
        self._records.clear()

    def load(self) -> None:
        if not self._path or not self._path.exists():
            return
        with open(self._path, encoding="utf-8") as f:
            data = json.load(f)
        self._records = {
            (int(item["message_id"]), int(item["variant_id"])): Itemization.from_dict(item["record"])
            for item in data
        }
        logger.debug("Loaded %d itemized prompt(s) from %s", len(self._records), self._path)

    def save(self) -> None:
        if not self._path:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = [
            {"message_id": mid, "variant_id": vid, "record": self._records[(mid, vid)].to_dict()}
            for mid, vid in sorted(self._records)
        ]
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)
        tmp.replace(self._path)
