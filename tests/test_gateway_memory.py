"""Tests for core/openclaw_gateway/gateway_memory.py: streamed reply accumulation
and recently-pushed message deduplication."""

from fastclaw_relay.core.models import Message
from fastclaw_relay.core.openclaw_gateway.gateway_memory import (
    MessageDeduplicator,
    RunAccumulator,
    message_hash,
)


class _Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _msg(content="hi", ts=1):
    return Message(session_key="s1", role="assistant", content=content, timestamp=ts)


# ─── RunAccumulator ───────────────────────────────────────────────


class TestRunAccumulator:
    def test_final_without_content_uses_last_delta(self):
        acc = RunAccumulator()
        acc.on_delta("r1", "s1", "Hel", 1000)
        acc.on_delta("r1", "s1", "Hello", 1001)
        msg = acc.on_final("r1")
        assert msg == Message(session_key="s1", role="assistant", content="Hello", timestamp=1001)
        assert "r1" not in acc

    def test_final_content_wins_over_delta(self):
        acc = RunAccumulator()
        acc.on_delta("r1", "s1", "partial", 1000)
        msg = acc.on_final("r1", [{"type": "text", "text": "complete"}], session_key="s1")
        assert msg.content == "complete"
        assert msg.timestamp == 1000

    def test_empty_delta_keeps_previous_text(self):
        acc = RunAccumulator()
        acc.on_delta("r1", "s1", "Hello", 1000)
        acc.on_delta("r1", "s1", [{"type": "toolCall"}], 1002)
        assert acc.on_final("r1").content == "Hello"

    def test_blank_result_returns_none_and_clears_run(self):
        acc = RunAccumulator()
        acc.on_delta("r1", "s1", "   ", 1000)
        assert acc.on_final("r1") is None
        assert len(acc) == 0

    def test_final_without_prior_delta(self):
        acc = RunAccumulator()
        msg = acc.on_final("r9", "direct", session_key="s2", timestamp=55)
        assert msg.session_key == "s2"
        assert msg.timestamp == 55

    def test_final_for_unknown_run_without_content(self):
        acc = RunAccumulator()
        assert acc.on_final("missing", session_key="s1") is None

    def test_discard_drops_run(self):
        acc = RunAccumulator()
        acc.on_delta("r1", "s1", "Hel", 1000)
        acc.discard("r1")
        assert acc.on_final("r1") is None

    def test_content_truncated(self):
        acc = RunAccumulator()
        acc.on_delta("r1", "s1", "x" * 5000, 1)
        assert len(acc.on_final("r1").content) == 4000

    def test_runs_are_independent(self):
        acc = RunAccumulator()
        acc.on_delta("a", "s1", "first", 1)
        acc.on_delta("b", "s2", "second", 2)
        assert acc.on_final("b").content == "second"
        assert acc.on_final("a").content == "first"


# ─── MessageDeduplicator ──────────────────────────────────────────


class TestMessageDeduplicator:
    def test_second_push_within_window_is_suppressed(self):
        dedup = MessageDeduplicator(clock=_Clock())
        assert dedup.should_push(_msg()) is True
        assert dedup.should_push(_msg()) is False

    def test_different_timestamp_is_a_different_message(self):
        dedup = MessageDeduplicator(clock=_Clock())
        assert dedup.should_push(_msg(ts=1))
        assert dedup.should_push(_msg(ts=2))

    def test_forget_allows_retry(self):
        dedup = MessageDeduplicator(clock=_Clock())
        dedup.should_push(_msg())
        dedup.forget(_msg())
        assert dedup.should_push(_msg()) is True

    def test_prune_removes_expired_entries(self):
        clock = _Clock()
        dedup = MessageDeduplicator(retention=600, clock=clock)
        dedup.should_push(_msg("old"))
        clock.now += 300
        dedup.should_push(_msg("new"))
        clock.now += 301
        assert dedup.prune() == 1
        assert len(dedup) == 1
        assert dedup.should_push(_msg("old")) is True
        assert dedup.should_push(_msg("new")) is False

    def test_expired_entry_is_pushable_without_prune(self):
        clock = _Clock()
        dedup = MessageDeduplicator(retention=600, clock=clock)
        dedup.should_push(_msg())
        clock.now += 601
        assert dedup.should_push(_msg()) is True

    def test_hash_covers_all_fields(self):
        base = _msg()
        assert message_hash(base) == message_hash(_msg())
        assert message_hash(base) != message_hash(Message("s2", "assistant", "hi", 1))
        assert message_hash(base) != message_hash(Message("s1", "user", "hi", 1))
