"""Tests for PromptBudget and trim_history.

Run with:  python -m pytest tests/tavern/test_budget.py -v
"""

from tavern.budget import PromptBudget, trim_history


class TestPromptBudget:
    def test_limit_reserves_response_and_padding(self):
        budget = PromptBudget(1000, response_length=300, padding=64)
        assert budget.limit == 636
        assert budget.remaining == 636

    def test_limit_never_goes_negative(self):
        assert PromptBudget(100, response_length=300).limit == 0

    def test_reserve_and_commit(self):
        budget = PromptBudget(100)
        budget.spend(20)
        budget.reserve(30)
        assert budget.remaining == 50
        assert budget.can_afford(50)
        assert not budget.can_afford(51)
        budget.commit_reserved(30)
        assert budget.used == 50
        assert budget.reserved == 0
        assert budget.remaining == 50

    def test_release(self):
        budget = PromptBudget(100)
        budget.spend(10)
        budget.release(25)
        assert budget.used == 0


class TestTrimHistory:
    def test_keeps_the_newest_that_fit(self):
        budget = PromptBudget(12)
        result = trim_history([5, 5, 5, 5], [], budget)
        assert result.indices() == [2, 3]
        assert result.dropped_history == 2
        assert result.tokens == 10
        assert budget.used == 10

    def test_stops_at_the_first_item_that_does_not_fit(self):
        result = trim_history([1, 10, 1], [], PromptBudget(5))
        assert result.indices() == [2]

    def test_injections_are_allocated_first(self):
        result = trim_history([5, 5, 3, 5], [2], PromptBudget(8))
        assert result.indices() == [2, 3]
        assert result.injected == [2]
        assert result.injected_positions() == [0]
        assert result.history_indices() == [3]

    def test_injection_that_alone_does_not_fit_is_dropped(self):
        result = trim_history([1, 50, 1], [1], PromptBudget(10))
        assert result.dropped_injections == [1]
        assert result.indices() == [0, 2]
        assert result.dropped_history == 0

    def test_newest_message_is_forced_when_nothing_fits(self):
        budget = PromptBudget(10)
        result = trim_history([3, 50], [], budget)
        assert result.forced
        assert result.indices() == [1]
        assert budget.used == 50

    def test_drop_oldest_history_keeps_the_last_item(self):
        result = trim_history([2, 2, 2], [1], PromptBudget(100))
        assert result.drop_oldest_history() == 2
        assert result.indices() == [1, 2]
        assert result.drop_oldest_history() is None
        assert result.indices() == [1, 2]

    def test_empty_history(self):
        result = trim_history([], [], PromptBudget(10))
        assert result.indices() == []
        assert not result.forced
