"""Unit tests for cadence tracking and the message buffer."""

from __future__ import annotations

import pytest

from hippo.cadence import CadenceTracker, MessageBuffer
from hippo.config import CadenceConfig
from hippo.models import MessageEvent


@pytest.fixture
def tracker(clock) -> CadenceTracker:
    return CadenceTracker(CadenceConfig(), clock=clock)


def event(msg_id: str, thread_id: str = "t1", user_id: str = "u1") -> MessageEvent:
    return MessageEvent(user_id=user_id, thread_id=thread_id, msg_id=msg_id, role="user", content=msg_id)


class TestThresholds:
    """Audit triggers."""

    def test_unknown_thread_never_triggers(self, tracker):
        assert tracker.should_trigger_audit("u1", "nope") is False

    def test_message_threshold(self, tracker, clock):
        for i in range(5):
            tracker.record_message("u1", "t1", {"input": 10, "output": 10}, clock())
            assert tracker.should_trigger_audit("u1", "t1") is False
        tracker.record_message("u1", "t1", {"input": 10, "output": 10}, clock())
        assert tracker.should_trigger_audit("u1", "t1") is True

    def test_token_threshold(self, tracker, clock):
        tracker.record_message("u1", "t1", {"input": 1000, "output": 499}, clock())
        assert tracker.should_trigger_audit("u1", "t1") is False
        tracker.record_message("u1", "t1", {"input": 1, "output": 0}, clock())
        assert tracker.should_trigger_audit("u1", "t1") is True

    def test_time_threshold(self, tracker, clock):
        tracker.record_message("u1", "t1", None, clock())
        clock.advance(179)
        assert tracker.should_trigger_audit("u1", "t1") is False
        clock.advance(1)
        assert tracker.should_trigger_audit("u1", "t1") is True

    def test_threads_are_independent(self, tracker, clock):
        for _ in range(6):
            tracker.record_message("u1", "t1", None, clock())
        assert tracker.should_trigger_audit("u1", "t1") is True
        assert tracker.should_trigger_audit("u1", "t2") is False
        assert tracker.should_trigger_audit("u2", "t1") is False


class TestAuditCompletion:
    """Reset and debounce."""

    def test_mark_complete_resets_counters(self, tracker, clock):
        for _ in range(6):
            tracker.record_message("u1", "t1", {"input": 5, "output": 5}, clock())
        tracker.mark_audit_complete("u1", "t1")

        state = tracker.get_state("u1", "t1")
        assert state.msg_count == 0
        assert state.token_count == 0
        assert state.first_msg_time is None
        assert state.last_audit_time == clock()

    def test_debounce_blocks_reaudit(self, tracker, clock):
        tracker.mark_audit_complete("u1", "t1")
        for _ in range(6):
            tracker.record_message("u1", "t1", None, clock())
        clock.advance(29)
        assert tracker.should_trigger_audit("u1", "t1") is False
        clock.advance(1)
        assert tracker.should_trigger_audit("u1", "t1") is True

    def test_window_restarts_at_next_message(self, tracker, clock):
        tracker.record_message("u1", "t1", None, clock())
        tracker.mark_audit_complete("u1", "t1")
        clock.advance(500)
        # Idle time since the audit does not count towards the next window
        assert tracker.should_trigger_audit("u1", "t1") is False
        tracker.record_message("u1", "t1", None, clock())
        assert tracker.should_trigger_audit("u1", "t1") is False
        assert tracker.get_state("u1", "t1").first_msg_time == clock()


class TestHousekeeping:
    """State snapshots, cleanup and metrics."""

    def test_get_state_returns_copy(self, tracker, clock):
        tracker.record_message("u1", "t1", None, clock())
        state = tracker.get_state("u1", "t1")
        state.msg_count = 100
        assert tracker.get_state("u1", "t1").msg_count == 1

    def test_clear_thread(self, tracker, clock):
        tracker.record_message("u1", "t1", None, clock())
        tracker.clear_thread("u1", "t1")
        assert tracker.get_state("u1", "t1") is None

    def test_cleanup_removes_idle_threads(self, tracker, clock):
        tracker.record_message("u1", "old", None, clock())
        clock.advance(86401)
        tracker.record_message("u1", "new", None, clock())

        assert tracker.cleanup() == 1
        assert tracker.get_state("u1", "old") is None
        assert tracker.get_state("u1", "new") is not None

    def test_metrics(self, tracker, clock):
        tracker.record_message("u1", "t1", {"input": 3, "output": 4}, clock())
        tracker.record_message("u1", "t2", {"input": 1, "output": 0}, clock())
        assert tracker.get_metrics() == {
            "active_threads": 2,
            "total_messages": 2,
            "total_tokens": 8,
        }


class TestMessageBuffer:
    """Pending message windows."""

    def test_drain_returns_in_order_and_empties(self):
        buffer = MessageBuffer()
        for i in range(3):
            buffer.append(event(f"m{i}"))
        assert [m.msg_id for m in buffer.drain("u1", "t1")] == ["m0", "m1", "m2"]
        assert buffer.drain("u1", "t1") == []

    def test_bounded(self):
        buffer = MessageBuffer(max_size=2)
        for i in range(5):
            buffer.append(event(f"m{i}"))
        assert [m.msg_id for m in buffer.peek("u1", "t1")] == ["m3", "m4"]

    def test_keyed_by_thread(self):
        buffer = MessageBuffer()
        buffer.append(event("a", thread_id="t1"))
        buffer.append(event("b", thread_id="t2"))
        assert len(buffer) == 2
        buffer.clear("u1", "t1")
        assert len(buffer) == 1
        assert [m.msg_id for m in buffer.drain("u1", "t2")] == ["b"]
