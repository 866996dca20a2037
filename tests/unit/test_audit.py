"""Unit tests for the audit job."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from hippo.audit import AuditJob, content_fingerprint
from hippo.cadence import CadenceTracker, MessageBuffer
from hippo.config import ScoringConfig
from hippo.models import AuditRecord, Job, JobType, Memory, MemoryTier, MessageEvent
from hippo.observability import RejectionCounters
from hippo.stores.postgres_store import PostgresStore
from hippo.topics import TopicTracker


@pytest.fixture
def store():
    store = MagicMock(spec=PostgresStore)
    store.find_by_content_hash.return_value = None
    store.create.side_effect = lambda memory: memory
    store.insert_audit.return_value = "audit-1"
    return store


@pytest.fixture
def cadence(clock):
    return CadenceTracker(clock=clock)


@pytest.fixture
def buffer():
    return MessageBuffer()


def make_job(store, cadence, buffer, clock, config=None, topics=None) -> AuditJob:
    return AuditJob(
        store=store,
        cadence=cadence,
        buffer=buffer,
        rejections=RejectionCounters(),
        config=config or ScoringConfig(),
        topics=topics,
        clock=clock,
    )


def feed(buffer, cadence, contents, user_id="user-1", thread_id="thread-1"):
    """Push (role, content) pairs through cadence and buffer like ingestion does."""
    for i, (role, content) in enumerate(contents):
        event = MessageEvent(
            user_id=user_id,
            thread_id=thread_id,
            msg_id=f"m{i}",
            role=role,
            content=content,
            input_tokens=10,
            output_tokens=5,
        )
        cadence.record_message(user_id, thread_id, {"input": 10, "output": 5})
        buffer.append(event)


def created(store) -> list[Memory]:
    return [call.args[0] for call in store.create.call_args_list]


class TestFingerprint:
    """Normalised content hashing."""

    def test_case_and_whitespace_insensitive(self):
        assert content_fingerprint("I  prefer\tTabs ") == content_fingerprint("i prefer tabs")

    def test_distinct_content(self):
        assert content_fingerprint("tabs") != content_fingerprint("spaces")


class TestAuditRun:
    """End-to-end audit over a message window."""

    async def test_saves_preference_and_skips_chatter(self, store, cadence, buffer, clock):
        feed(
            buffer,
            cadence,
            [
                ("user", "I always prefer dark mode"),
                ("assistant", "Noted."),
                ("user", "ok"),
                ("assistant", "ok"),
                ("user", "thanks"),
                ("assistant", "Sure."),
            ],
        )
        assert cadence.should_trigger_audit("user-1", "thread-1") is True

        job = make_job(store, cadence, buffer, clock)
        outcome = await job.run("user-1", "thread-1")

        assert outcome.scored == 6
        assert outcome.saved == 1
        assert outcome.below_threshold == 5

        [memory] = created(store)
        assert memory.content == "I always prefer dark mode"
        assert memory.tier == MemoryTier.TIER2
        assert memory.priority >= 0.65
        assert memory.confidence == pytest.approx(0.8)
        assert memory.content_hash == content_fingerprint("I always prefer dark mode")
        assert memory.redaction_map is None

        assert job.rejections.snapshot()["below_threshold"] == 5

    async def test_writes_audit_record(self, store, cadence, buffer, clock):
        feed(buffer, cadence, [("user", "I always prefer dark mode"), ("assistant", "ok")])

        await make_job(store, cadence, buffer, clock).run("user-1", "thread-1")

        record: AuditRecord = store.insert_audit.call_args.args[0]
        assert record.start_msg_id == "m0"
        assert record.end_msg_id == "m1"
        assert record.token_count == 30
        assert record.saved == 1
        assert 0.0 < record.score < 1.0

    async def test_resets_cadence_and_drains_buffer(self, store, cadence, buffer, clock):
        feed(buffer, cadence, [("user", "ok")] * 6)

        await make_job(store, cadence, buffer, clock).run("user-1", "thread-1")

        state = cadence.get_state("user-1", "thread-1")
        assert state.msg_count == 0
        assert state.last_audit_time == clock()
        assert len(buffer) == 0

    async def test_empty_window_still_recorded(self, store, cadence, buffer, clock):
        outcome = await make_job(store, cadence, buffer, clock).run("user-1", "thread-1")

        assert outcome.scored == 0
        record = store.insert_audit.call_args.args[0]
        assert record.start_msg_id is None
        assert record.saved == 0

    async def test_redacts_before_saving(self, store, cadence, buffer, clock):
        feed(buffer, cadence, [("user", "I always prefer email at alice@example.com")])

        await make_job(store, cadence, buffer, clock).run("user-1", "thread-1")

        [memory] = created(store)
        assert "alice@example.com" not in memory.content
        assert memory.content.startswith("I always prefer email at [EMAIL_")
        assert list(memory.redaction_map.values()) == ["alice@example.com"]

    async def test_rejects_pure_pii(self, store, cadence, buffer, clock):
        feed(buffer, cadence, [("user", "alice@example.com")])
        job = make_job(store, cadence, buffer, clock, config=ScoringConfig(quality_threshold=0.0))

        outcome = await job.run("user-1", "thread-1")

        assert outcome.redacted_all == 1
        assert outcome.saved == 0
        store.create.assert_not_called()
        assert job.rejections.snapshot()["redacted_all"] == 1

    async def test_rejects_oversize_content(self, store, cadence, buffer, clock):
        feed(buffer, cadence, [("user", "I always prefer " + "word " * 300)])
        job = make_job(store, cadence, buffer, clock, config=ScoringConfig(quality_threshold=0.0))

        outcome = await job.run("user-1", "thread-1")

        assert outcome.too_long == 1
        store.create.assert_not_called()

    async def test_duplicate_records_recurrence(self, store, cadence, buffer, clock):
        existing = Memory(user_id="user-1", thread_id="thread-0", content="I always prefer dark mode")
        store.find_by_content_hash.return_value = existing
        feed(buffer, cadence, [("user", "I always prefer dark mode")])

        job = make_job(store, cadence, buffer, clock)
        outcome = await job.run("user-1", "thread-1")

        assert outcome.recurrences == 1
        assert outcome.saved == 0
        store.create.assert_not_called()
        memory_id, thread_id, priority, seen_at = store.record_recurrence.call_args.args
        assert memory_id == existing.id
        assert thread_id == "thread-1"
        assert priority >= 0.65
        assert seen_at is None

    async def test_store_failure_does_not_abort_window(self, store, cadence, buffer, clock):
        store.create.side_effect = [ConnectionError("db down"), None]
        feed(
            buffer,
            cadence,
            [("user", "I always prefer dark mode"), ("user", "We must always use Postgres.")],
        )

        job = make_job(store, cadence, buffer, clock)
        outcome = await job.run("user-1", "thread-1")

        assert store.create.call_count == 2
        assert outcome.saved == 1
        assert cadence.get_state("user-1", "thread-1").msg_count == 0

    async def test_audit_record_failure_is_logged(self, store, cadence, buffer, clock):
        store.insert_audit.side_effect = ConnectionError("db down")
        feed(buffer, cadence, [("user", "I always prefer dark mode")])

        job = make_job(store, cadence, buffer, clock)
        outcome = await job.run("user-1", "thread-1")

        assert outcome.saved == 1
        assert job.audits_run == 1

    async def test_records_topic(self, store, cadence, buffer, clock):
        topics = TopicTracker(clock=clock)
        feed(buffer, cadence, [("user", "What is the latest news on the release?")])

        await make_job(store, cadence, buffer, clock, topics=topics).run("user-1", "thread-1")

        [entry] = topics.get_thread_topics("thread-1").values()
        assert entry.ttl_class == "news/current"

    async def test_handle_reads_payload(self, store, cadence, buffer, clock):
        feed(buffer, cadence, [("user", "I always prefer dark mode")])
        job = make_job(store, cadence, buffer, clock)

        outcome = await job.handle(
            Job(type=JobType.AUDIT, payload={"user_id": "user-1", "thread_id": "thread-1"})
        )

        assert outcome.saved == 1
        assert job.memories_saved == 1

    async def test_malformed_url_does_not_drop_memory(self, store, cadence, buffer, clock):
        topics = TopicTracker(clock=clock)
        content = "I always prefer the staging host http://[fe80::1 for deploys"
        feed(buffer, cadence, [("user", content)])

        job = make_job(store, cadence, buffer, clock, topics=topics)
        outcome = await job.run("user-1", "thread-1")

        assert outcome.saved == 1
        [memory] = created(store)
        assert memory.content == content
        assert memory.tier == MemoryTier.TIER2
