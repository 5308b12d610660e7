"""Token budget bookkeeping and history trimming.

``trim_history`` is two explicit passes over an oldest-first list of item
costs:

1. Mark. Injected items are allocated first (newest first), then plain
   history from the newest backwards until the first item that does not
   fit. Kept indices go into a sparse ``{index: tokens}`` map.
2. Compact. ``TrimResult.indices()`` yields the dense, ordered kept list
   and ``injected_positions()`` remaps injected indices into it.

Nothing here counts tokens; callers pass precomputed costs.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


class PromptBudget:
    """Running token account for one assembly.

    ``limit`` is what the prompt may occupy: the context window minus the
    response length and padding reserve.
    """

    def __init__(self, max_context: int, *, response_length: int = 0, padding: int = 0):
        self.max_context = max_context
        self.response_length = response_length
        self.padding = padding
        self.used = 0
        self.reserved = 0

    @property
    def limit(self) -> int:
        return max(0, self.max_context - self.response_length - self.padding)

    @property
    def remaining(self) -> int:
        return self.limit - self.used - self.reserved

    def can_afford(self, tokens: int) -> bool:
        return tokens <= self.remaining

    def spend(self, tokens: int) -> None:
        self.used += tokens

    def release(self, tokens: int) -> None:
        self.used = max(0, self.used - tokens)

    def reserve(self, tokens: int) -> None:
        """Hold tokens back for something appended after the walk."""
        self.reserved += tokens

    def free(self, tokens: int) -> None:
        self.reserved = max(0, self.reserved - tokens)

    def commit_reserved(self, tokens: int) -> None:
        self.free(tokens)
        self.spend(tokens)

    def __repr__(self) -> str:
        return f"PromptBudget(used={self.used}, reserved={self.reserved}, limit={self.limit})"


@dataclass
class TrimResult:
    kept: Dict[int, int]
    injected: List[int]
    dropped_injections: List[int] = field(default_factory=list)
    forced: bool = False
    total_items: int = 0

    def indices(self) -> List[int]:
        return sorted(self.kept)

    def injected_positions(self) -> List[int]:
        """Positions of kept injections within ``indices()``."""
        position = {index: i for i, index in enumerate(self.indices())}
        return [position[i] for i in sorted(self.injected) if i in position]

    def history_indices(self) -> List[int]:
        injected = set(self.injected)
        return [i for i in self.indices() if i not in injected]

    @property
    def dropped_history(self) -> int:
        return self.total_items - len(self.injected) - len(self.history_indices())

    @property
    def tokens(self) -> int:
        return sum(self.kept.values())

    def drop_oldest_history(self) -> Optional[int]:
        """Drop the oldest kept history item, never the last one.

        Returns the tokens it was charged, or None when nothing may go.
        """
        history = self.history_indices()
        if len(history) <= 1:
            return None
        return self.kept.pop(history[0])


def trim_history(costs: Sequence[int], injected: Sequence[int], budget: PromptBudget) -> TrimResult:
    """Pick the newest items that fit ``budget``, spending from it.

    Args:
        costs: Token cost of each item, oldest first.
        injected: Indices into ``costs`` that are injected prompts. They are
            allocated before any history and dropped only if they alone do
            not fit.
        budget: Spent in place.
    """
    injected_set = set(injected)
    kept: Dict[int, int] = {}
    dropped_injections: List[int] = []

    for index in sorted(injected_set, reverse=True):
        cost = costs[index]
        if budget.can_afford(cost):
            budget.spend(cost)
            kept[index] = cost
        else:
            dropped_injections.append(index)
            logger.warning("Injected prompt at slot %d (%d tokens) does not fit the budget, dropping", index, cost)

    history = [i for i in range(len(costs) - 1, -1, -1) if i not in injected_set]
    for index in history:
        cost = costs[index]
        if not budget.can_afford(cost):
            break
        budget.spend(cost)
        kept[index] = cost

    forced = False
    if history and not any(i in kept for i in history):
        newest = history[0]
        budget.spend(costs[newest])
        kept[newest] = costs[newest]
        forced = True
        logger.warning(
            "Newest message alone needs %d tokens (budget %d); sending it anyway",
            costs[newest], budget.limit,
        )

    result = TrimResult(
        kept=kept,
        injected=[i for i in sorted(injected_set) if i in kept],
        dropped_injections=sorted(dropped_injections),
        forced=forced,
        total_items=len(costs) - len(dropped_injections),
    )
    logger.debug(
        "Kept %d/%d history items, %d injection(s); %d tokens used",
        len(result.history_indices()), len(history), len(result.injected), budget.used,
    )
    return result
