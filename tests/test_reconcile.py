"""Tests for snapshot reconciliation: identity resolution and field merging."""
from __future__ import annotations

from datetime import datetime

import pytest

from inbox_mirror.crawl.reconcile import MergeOutcome, ReconciliationEngine, merge_snapshot
from inbox_mirror.data.inbox_store import ChatStatus


@pytest.fixture
def engine(inbox_store):
    return ReconciliationEngine(inbox_store)


def _insert_unbound_chat(store, **values):
    """Create a chat the way an operator-created record starts: no external key."""
    return store.transaction("seed", lambda conn: store.insert_chat(conn, values))


# ==============================================================================
# Identity Resolution
# ==============================================================================
@pytest.mark.integration
class TestIdentityResolution:
    """Each external key maps to exactly one local chat."""

    def test_first_sight_creates_chat(self, engine, snapshot_factory):
        result = engine.reconcile(snapshot_factory("ext-1"))

        assert result.outcome == MergeOutcome.CREATED
        assert result.chat.external_key == "ext-1"
        assert result.chat.status == ChatStatus.NEW
        assert result.chat.has_new_message is False

    def test_same_external_key_reuses_chat(self, engine, snapshot_factory):
        """Should keep the internal key stable across repeated reconciles."""
        first = engine.reconcile(snapshot_factory("ext-1"))
        second = engine.reconcile(snapshot_factory("ext-1", title="Kitchen renovation"))

        assert second.outcome == MergeOutcome.UPDATED
        assert second.chat.chat_key == first.chat.chat_key
        assert second.chat.title == "Kitchen renovation"

    def test_external_key_wins_over_hint(self, engine, inbox_store, snapshot_factory):
        """Should ignore the hint when the external key already has a home."""
        bound = engine.reconcile(snapshot_factory("ext-1")).chat
        other = _insert_unbound_chat(inbox_store, title="Unrelated")

        result = engine.reconcile(snapshot_factory("ext-1"), internal_key_hint=other.chat_key)

        assert result.outcome == MergeOutcome.UPDATED
        assert result.chat.chat_key == bound.chat_key
        assert inbox_store.get_chat(other.chat_key).external_key is None

    def test_hint_without_external_key_is_backfilled(self, engine, inbox_store, snapshot_factory):
        unbound = _insert_unbound_chat(inbox_store, title="Created by hand")

        result = engine.reconcile(snapshot_factory("ext-9"), internal_key_hint=unbound.chat_key)

        assert result.outcome == MergeOutcome.BACKFILLED
        assert result.chat.chat_key == unbound.chat_key
        assert result.chat.external_key == "ext-9"

    def test_conflicting_hint_forks_and_leaves_original_untouched(
        self, engine, inbox_store, snapshot_factory, caplog
    ):
        """Should create a new chat instead of silently rebinding the hinted one."""
        original = engine.reconcile(snapshot_factory("ext-A", last_message="hi")).chat

        result = engine.reconcile(
            snapshot_factory("ext-B", title="Moved thread", last_message="new text"),
            internal_key_hint=original.chat_key,
        )

        assert result.outcome == MergeOutcome.FORKED
        assert result.chat.chat_key != original.chat_key
        assert result.chat.external_key == "ext-B"
        assert result.previous == original
        assert inbox_store.get_chat(original.chat_key) == original
        assert "Identity conflict" in caplog.text

    def test_missing_hint_record_falls_through_to_create(self, engine, snapshot_factory):
        result = engine.reconcile(snapshot_factory("ext-1"), internal_key_hint="no-such-chat")

        assert result.outcome == MergeOutcome.CREATED

    @pytest.mark.parametrize("external_key", ["", "   "])
    def test_blank_external_key_is_rejected(self, engine, snapshot_factory, external_key):
        with pytest.raises(ValueError):
            engine.reconcile(snapshot_factory(external_key))


# ==============================================================================
# Field Merge
# ==============================================================================
@pytest.mark.integration
class TestFieldMerge:
    """Metadata overwrite rules and unread detection."""

    def test_absent_metadata_does_not_clobber(self, engine, snapshot_factory):
        engine.reconcile(snapshot_factory("ext-1"))

        result = engine.reconcile(
            snapshot_factory("ext-1", title=None, user_name="", location="Busan")
        )

        assert result.chat.title == "Bathroom renovation"
        assert result.chat.user_name == "Kim"
        assert result.chat.location == "Busan"

    def test_new_preview_flags_unread_and_activates(self, engine, snapshot_factory):
        engine.reconcile(snapshot_factory("ext-1"))

        result = engine.reconcile(
            snapshot_factory(
                "ext-1",
                last_message="Can you come Tuesday?",
                last_message_time=datetime(2024, 3, 2, 10, 0),
            )
        )

        assert result.unread_detected is True
        assert result.chat.has_new_message is True
        assert result.chat.status == ChatStatus.ACTIVE
        assert result.chat.last_message == "Can you come Tuesday?"

    def test_unchanged_preview_is_not_unread(self, engine, inbox_store, snapshot_factory):
        first = engine.reconcile(snapshot_factory("ext-1", last_message="same"))
        inbox_store.clear_notification(first.chat.chat_key)

        result = engine.reconcile(snapshot_factory("ext-1", last_message="same"))

        assert result.unread_detected is False
        assert result.chat.has_new_message is False

    def test_unread_count_increase_is_detected(self, engine, snapshot_factory):
        engine.reconcile(snapshot_factory("ext-1", last_message="same", unread_count=1))

        result = engine.reconcile(snapshot_factory("ext-1", last_message="same", unread_count=3))

        assert result.unread_detected is True
        assert result.chat.unread_count == 3

    def test_unread_count_decrease_follows_source(self, engine, snapshot_factory):
        """Should store the lower count without flagging new content."""
        engine.reconcile(snapshot_factory("ext-1", last_message="same", unread_count=5))

        result = engine.reconcile(snapshot_factory("ext-1", last_message="same", unread_count=2))

        assert result.unread_detected is False
        assert result.chat.unread_count == 2

    @pytest.mark.parametrize(
        "status",
        [ChatStatus.QUOTED, ChatStatus.ACCEPTED, ChatStatus.RESOLVED, ChatStatus.CLOSED],
    )
    def test_operator_status_survives_unread(self, engine, inbox_store, snapshot_factory, status):
        """Should raise the flag but never move an operator-chosen status."""
        chat = engine.reconcile(snapshot_factory("ext-1", last_message="old")).chat
        inbox_store.set_status(chat.chat_key, status)

        result = engine.reconcile(snapshot_factory("ext-1", last_message="fresh"))

        assert result.chat.has_new_message is True
        assert result.chat.status == status

    def test_created_with_preview_starts_active(self, engine, snapshot_factory):
        result = engine.reconcile(snapshot_factory("ext-1", last_message="Hello"))

        assert result.outcome == MergeOutcome.CREATED
        assert result.unread_detected is True
        assert result.chat.status == ChatStatus.ACTIVE


@pytest.mark.unit
def test_merge_snapshot_treats_missing_stored_count_as_zero(snapshot_factory):
    values, unread = merge_snapshot(None, snapshot_factory("ext-1", unread_count=1))

    assert unread is True
    assert values["unread_count"] == 1
    assert values["has_new_message"] is True


@pytest.mark.unit
def test_merge_snapshot_zero_unread_on_new_chat_is_quiet(snapshot_factory):
    values, unread = merge_snapshot(None, snapshot_factory("ext-1", unread_count=0))

    assert unread is False
    assert "has_new_message" not in values
