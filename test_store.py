"""
Tests for the store adapters (in-memory and SQLAlchemy).

Every test runs against both adapters through the `store` fixture.

Tests cover:
- Insert-if-absent message upserts and status refresh
- Data-integrity conflicts on immutable fields
- Monotonic lastActivityAt and participant merge modes
- Ordered queries
- Live subscriptions
- Concurrent writers for the same message id
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from convo_mirror.errors import DataIntegrityConflict
from convo_mirror.schemas import ConversationUpdate, Message
from convo_mirror.store import UpsertOutcome


T0 = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


def make_message(message_id="m1", status="delivered", text="hi", created_at=T0, to=None) -> Message:
    return Message(
        id=message_id,
        from_number="+1555",
        to=to if to is not None else ["+1666"],
        direction="incoming",
        text=text,
        status=status,
        created_at=created_at,
    )


class TestMessageUpsert:
    """Test insert-if-absent semantics."""

    def test_first_write_creates(self, store):
        assert store.upsert_message("c1", make_message()) == UpsertOutcome.CREATED

        stored = store.get_message("c1", "m1")
        assert stored.text == "hi"
        assert stored.created_at == T0

    def test_identical_write_is_unchanged(self, store):
        store.upsert_message("c1", make_message())

        assert store.upsert_message("c1", make_message()) == UpsertOutcome.UNCHANGED
        assert len(store.list_messages("c1")) == 1

    def test_status_is_last_writer_wins(self, store):
        store.upsert_message("c1", make_message(status="sent"))

        assert store.upsert_message("c1", make_message(status="delivered")) == UpsertOutcome.UPDATED
        assert store.get_message("c1", "m1").status == "delivered"

    def test_status_kept_when_update_disabled(self, store):
        store.upsert_message("c1", make_message(status="delivered"))

        outcome = store.upsert_message("c1", make_message(status="sent"), update_status=False)

        assert outcome == UpsertOutcome.UNCHANGED
        assert store.get_message("c1", "m1").status == "delivered"

    def test_recipient_order_is_irrelevant(self, store):
        store.upsert_message("c1", make_message(to=["+1666", "+1777"]))

        assert store.upsert_message("c1", make_message(to=["+1777", "+1666"])) == UpsertOutcome.UNCHANGED

    def test_same_id_in_other_conversation_is_separate(self, store):
        store.upsert_message("c1", make_message())

        assert store.upsert_message("c2", make_message(text="other")) == UpsertOutcome.CREATED
        assert store.get_message("c2", "m1").text == "other"

    def test_missing_message_is_none(self, store):
        assert store.get_message("c1", "nope") is None


class TestIntegrityConflict:
    """Test immutable-field conflicts."""

    def test_differing_text_raises(self, store):
        store.upsert_message("c1", make_message(text="hi"))

        with pytest.raises(DataIntegrityConflict) as excinfo:
            store.upsert_message("c1", make_message(text="changed", status="failed"))

        assert excinfo.value.fields == ["text"]
        stored = store.get_message("c1", "m1")
        assert stored.text == "hi"
        assert stored.status == "delivered"

    def test_differing_created_at_raises(self, store):
        store.upsert_message("c1", make_message())

        with pytest.raises(DataIntegrityConflict) as excinfo:
            store.upsert_message("c1", make_message(created_at=T0 + timedelta(seconds=1)))

        assert excinfo.value.fields == ["created_at"]


class TestConversationMerge:
    """Test conversation merge-writes."""

    def test_create_on_first_reference(self, store):
        merged = store.merge_conversation(ConversationUpdate(
            conversation_id="c1", phone_number_id="PN1", participants=["+1555"], last_activity_at=T0,
        ))

        assert merged.participants == ["+1555"]
        assert store.get_conversation("c1") == merged

    def test_last_activity_never_regresses(self, store):
        later = T0 + timedelta(hours=1)
        store.merge_conversation(ConversationUpdate(conversation_id="c1", phone_number_id="PN1", last_activity_at=later))

        merged = store.merge_conversation(ConversationUpdate(conversation_id="c1", last_activity_at=T0))

        assert merged.last_activity_at == later

    def test_last_activity_advances(self, store):
        later = T0 + timedelta(hours=1)
        store.merge_conversation(ConversationUpdate(conversation_id="c1", phone_number_id="PN1", last_activity_at=T0))

        assert store.merge_conversation(ConversationUpdate(conversation_id="c1", last_activity_at=later)).last_activity_at == later

    def test_unspecified_fields_preserved(self, store):
        store.merge_conversation(ConversationUpdate(
            conversation_id="c1", name="Front desk", phone_number_id="PN1", participants=["+1555"], last_activity_at=T0,
        ))

        merged = store.merge_conversation(ConversationUpdate(conversation_id="c1"))

        assert merged.name == "Front desk"
        assert merged.phone_number_id == "PN1"
        assert merged.participants == ["+1555"]

    def test_replace_mode_overwrites_participants(self, store):
        store.merge_conversation(ConversationUpdate(conversation_id="c1", participants=["+1555"]))

        merged = store.merge_conversation(ConversationUpdate(conversation_id="c1", participants=["+1666", "+1777"]))

        assert merged.participants == ["+1666", "+1777"]

    def test_seed_mode_only_fills_new_conversation(self, store):
        seeded = store.merge_conversation(ConversationUpdate(
            conversation_id="c1", participants=["+1666"], participants_mode="seed",
        ))
        assert seeded.participants == ["+1666"]

        merged = store.merge_conversation(ConversationUpdate(
            conversation_id="c1", participants=["+1999"], participants_mode="seed",
        ))
        assert merged.participants == ["+1666"]


class TestOrderedQueries:
    """Test range queries on a single sort key."""

    def test_conversations_most_recent_first(self, store):
        for conversation_id, hours in [("a", 1), ("b", 3), ("c", 2)]:
            store.merge_conversation(ConversationUpdate(
                conversation_id=conversation_id, phone_number_id="PN1", last_activity_at=T0 + timedelta(hours=hours),
            ))

        assert [c.id for c in store.list_conversations()] == ["b", "c", "a"]
        assert [c.id for c in store.list_conversations(limit=2)] == ["b", "c"]

    def test_messages_oldest_first(self, store):
        for message_id, minutes in [("m3", 3), ("m1", 1), ("m2", 2)]:
            store.upsert_message("c1", make_message(message_id=message_id, created_at=T0 + timedelta(minutes=minutes)))

        assert [m.id for m in store.list_messages("c1")] == ["m1", "m2", "m3"]

    def test_messages_created_after_and_limit(self, store):
        for i in range(5):
            store.upsert_message("c1", make_message(message_id=f"m{i}", created_at=T0 + timedelta(minutes=i)))

        after = store.list_messages("c1", created_after=T0 + timedelta(minutes=1), limit=2)

        assert [m.id for m in after] == ["m2", "m3"]


class TestSubscriptions:
    """Test live query subscriptions."""

    def test_initial_snapshot_then_deltas(self, store):
        store.upsert_message("c1", make_message(message_id="m1", status="sent"))
        snapshots = []

        subscription = store.subscribe_messages("c1", snapshots.append)
        store.upsert_message("c1", make_message(message_id="m2", created_at=T0 + timedelta(minutes=1)))
        store.upsert_message("c1", make_message(message_id="m1", status="delivered"))
        store.upsert_message("c2", make_message(message_id="other"))

        assert snapshots[0].initial is True
        assert [c.document.id for c in snapshots[0].changes] == ["m1"]
        assert [(s.changes[0].kind, s.changes[0].document.id) for s in snapshots[1:]] == [
            ("added", "m2"),
            ("modified", "m1"),
        ]

        subscription.unsubscribe()
        store.upsert_message("c1", make_message(message_id="m3", created_at=T0 + timedelta(minutes=2)))
        assert len(snapshots) == 3

    def test_unchanged_write_publishes_nothing(self, store):
        store.upsert_message("c1", make_message())
        snapshots = []
        store.subscribe_messages("c1", snapshots.append)

        store.upsert_message("c1", make_message())

        assert len(snapshots) == 1

    def test_conversation_subscription(self, store):
        snapshots = []
        store.subscribe_conversations(snapshots.append)

        store.merge_conversation(ConversationUpdate(conversation_id="c1", phone_number_id="PN1", last_activity_at=T0))
        store.merge_conversation(ConversationUpdate(conversation_id="c1", last_activity_at=T0 + timedelta(minutes=5)))

        assert snapshots[0].initial is True and snapshots[0].changes == []
        assert [s.changes[0].kind for s in snapshots[1:]] == ["added", "modified"]
        assert snapshots[-1].changes[0].document.last_activity_at == T0 + timedelta(minutes=5)

    def test_failing_subscriber_does_not_fail_write(self, store):
        def broken(snapshot):
            if not snapshot.initial:
                raise RuntimeError("listener crashed")

        store.subscribe_messages("c1", broken)

        assert store.upsert_message("c1", make_message()) == UpsertOutcome.CREATED

    def test_write_during_initial_snapshot_is_delivered(self, store):
        store.upsert_message("c1", make_message(message_id="m1"))
        snapshots = []

        def write_on_initial(snapshot):
            snapshots.append(snapshot)
            if snapshot.initial:
                store.upsert_message("c1", make_message(message_id="m9", created_at=T0 + timedelta(minutes=9)))

        store.subscribe_messages("c1", write_on_initial)

        assert [s.initial for s in snapshots] == [True, False]
        assert [c.document.id for c in snapshots[0].changes] == ["m1"]
        assert snapshots[1].changes[0].kind == "added"
        assert snapshots[1].changes[0].document.id == "m9"

    def test_concurrent_status_updates_arrive_in_commit_order(self, store):
        store.upsert_message("c1", make_message(status="queued"))
        snapshots = []
        store.subscribe_messages("c1", snapshots.append)
        statuses = ["sent", "delivered", "failed", "read", "undelivered"]
        barrier = threading.Barrier(len(statuses))

        def update(status):
            barrier.wait()
            store.upsert_message("c1", make_message(status=status))

        threads = [threading.Thread(target=update, args=(s,)) for s in statuses]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        deltas = [s.changes[0].document.status for s in snapshots[1:]]
        assert deltas
        assert deltas[-1] == store.get_message("c1", "m1").status


class TestConcurrentWriters:
    """Test concurrent writers converge on one record."""

    def test_parallel_upserts_of_same_id(self, store):
        workers = 6
        barrier = threading.Barrier(workers)
        outcomes = []
        errors = []

        def write():
            barrier.wait()
            try:
                outcomes.append(store.upsert_message("c1", make_message()))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=write) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert outcomes.count(UpsertOutcome.CREATED) == 1
        assert len(store.list_messages("c1")) == 1

    def test_parallel_activity_merges_keep_maximum(self, store):
        store.merge_conversation(ConversationUpdate(conversation_id="c1", phone_number_id="PN1", last_activity_at=T0))
        stamps = [T0 + timedelta(minutes=m) for m in (5, 1, 9, 3, 7)]
        barrier = threading.Barrier(len(stamps))

        def merge(stamp):
            barrier.wait()
            store.merge_conversation(ConversationUpdate(conversation_id="c1", last_activity_at=stamp))

        threads = [threading.Thread(target=merge, args=(s,)) for s in stamps]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get_conversation("c1").last_activity_at == T0 + timedelta(minutes=9)
