"""Tests for reasoning block parsing and timing."""

from tavern.reasoning import (
    ReasoningState,
    ReasoningTracker,
    has_incomplete_reasoning,
    parse_reasoning,
)

PREFIX = "<think>\n"
SUFFIX = "\n</think>"


class TestParseReasoning:
    def test_complete_block(self):
        parsed = parse_reasoning("<think>\nplan the reply\n</think>\nHello", PREFIX, SUFFIX)
        assert parsed.reasoning == "plan the reply"
        assert parsed.content == "Hello"
        assert parsed.complete

    def test_unclosed_block_is_still_thinking(self):
        parsed = parse_reasoning("<think>\nstill going", PREFIX, SUFFIX)
        assert parsed.reasoning == "still going"
        assert parsed.content == ""
        assert not parsed.complete
        assert has_incomplete_reasoning("<think>\nstill going", PREFIX, SUFFIX)

    def test_no_block(self):
        assert parse_reasoning("Hello", PREFIX, SUFFIX) is None
        assert parse_reasoning("", PREFIX, SUFFIX) is None
        assert parse_reasoning("<think>x</think>", "", SUFFIX) is None

    def test_strict_requires_the_block_first(self):
        text = "Sure. <think>x</think> Done"
        assert parse_reasoning(text, PREFIX, SUFFIX) is None
        parsed = parse_reasoning(text, PREFIX, SUFFIX, strict=False)
        assert parsed.reasoning == "x"
        assert parsed.content == "Sure.  Done"


class TestReasoningTracker:
    def test_duration_spans_first_reasoning_to_first_content(self):
        times = iter([1.0, 3.5])
        tracker = ReasoningTracker(clock=lambda: next(times))

        tracker.update("", "")
        assert tracker.state == ReasoningState.NONE
        tracker.update("hmm", "")
        assert tracker.state == ReasoningState.THINKING
        assert tracker.duration_ms is None
        tracker.update("hmm more", "Answer")
        assert tracker.state == ReasoningState.DONE
        assert tracker.duration_ms == 2500

    def test_finish_without_reasoning_is_a_noop(self):
        tracker = ReasoningTracker(clock=lambda: 0.0)
        tracker.finish()
        assert tracker.state == ReasoningState.NONE
        assert tracker.duration_ms is None
