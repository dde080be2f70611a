from datetime import UTC, datetime, timedelta

import pytest

from xlai.schemas.models import StoredMessage
from xlai.utils.errors import ConflictError, UpstreamError
from xlai.utils.message_store import (
    DEFAULT_DB_PATH,
    MessageStore,
    conversation_id_for,
    format_timestamp,
    resolve_database_path,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def store(tmp_path):
    return MessageStore(tmp_path / "xlai.sqlite")


def _message(message_id: str, conversation_id: str, created_at: datetime, **extra) -> StoredMessage:
    return StoredMessage(
        id=message_id,
        conversation_id=conversation_id,
        sender_id=extra.pop("sender_id", "u1"),
        recipient_id=extra.pop("recipient_id", "u2"),
        final_text=extra.pop("final_text", f"text {message_id}"),
        created_at=created_at,
        **extra,
    )


def test_resolve_database_path_variants():
    assert resolve_database_path(None) == DEFAULT_DB_PATH
    assert str(resolve_database_path("sqlite:///data/app.sqlite")) == "data/app.sqlite"
    assert str(resolve_database_path("sqlite:////tmp/app.sqlite")) == "/tmp/app.sqlite"
    assert str(resolve_database_path("local.sqlite")) == "local.sqlite"
    assert resolve_database_path("postgres://db/xlai") == DEFAULT_DB_PATH


def test_conversation_id_is_order_independent():
    assert conversation_id_for("user_B", "user_A") == "user_A__user_B"
    assert conversation_id_for("user_A", "user_B") == "user_A__user_B"


def test_timestamps_sort_as_text():
    earlier = format_timestamp(NOW)
    later = format_timestamp(NOW + timedelta(microseconds=1))
    assert earlier < later
    assert format_timestamp(NOW.replace(tzinfo=None)) == earlier


def test_insert_and_read_back_round_trips_fields(store):
    stored = store.insert_message(
        _message(
            "m1",
            "c1",
            NOW,
            original_text="draft",
            pre_send_emotion="anger",
            intensity_score=0.9,
            was_pause_taken=True,
            used_suggestion=True,
        )
    )
    assert stored.created_at == NOW
    assert stored.was_pause_taken is True
    assert stored.intensity_score == 0.9
    conversation = store.get_conversation("c1")
    assert conversation is not None
    assert conversation.participant_a == "u1"
    assert conversation.participant_b == "u2"


def test_messages_since_excludes_cutoff_and_orders_ascending(store):
    cutoff = NOW - timedelta(hours=24)
    store.insert_message(_message("at-cutoff", "c1", cutoff))
    store.insert_message(_message("late", "c1", NOW))
    store.insert_message(_message("early", "c1", cutoff + timedelta(seconds=1)))
    store.insert_message(_message("other", "c2", NOW))

    ids = [message.id for message in store.messages_since("c1", cutoff)]

    assert ids == ["early", "late"]


def test_delete_older_than_is_inclusive(store):
    cutoff = NOW - timedelta(hours=24)
    store.insert_message(_message("old", "c1", cutoff - timedelta(minutes=1)))
    store.insert_message(_message("boundary", "c1", cutoff))
    store.insert_message(_message("fresh", "c1", cutoff + timedelta(microseconds=1)))

    deleted = store.delete_older_than(cutoff)

    assert deleted == 2
    assert [m.id for m in store.messages_since("c1", cutoff - timedelta(days=1))] == ["fresh"]
    assert store.delete_older_than(cutoff) == 0


def test_latest_per_conversation_picks_newest(store):
    cutoff = NOW - timedelta(hours=24)
    store.insert_message(_message("c1-old", "c1", NOW - timedelta(hours=2)))
    store.insert_message(_message("c1-new", "c1", NOW - timedelta(hours=1)))
    store.insert_message(_message("c2-only", "c2", NOW - timedelta(minutes=5)))
    store.insert_message(_message("c3-expired", "c3", NOW - timedelta(hours=30)))

    latest = store.latest_per_conversation(cutoff)

    assert [m.id for m in latest] == ["c2-only", "c1-new"]


def test_recent_messages_newest_first_with_limit(store):
    cutoff = NOW - timedelta(hours=24)
    for minutes in range(5):
        store.insert_message(_message(f"m{minutes}", "c1", NOW - timedelta(minutes=minutes)))

    recent = store.recent_messages("c1", cutoff, limit=3)

    assert [m.id for m in recent] == ["m0", "m1", "m2"]


def test_create_user_rejects_duplicate_email(store):
    store.create_user(user_id="u1", display_name="Ana", email="ana@example.com", password_hash="x", created_at=NOW)
    with pytest.raises(ConflictError):
        store.create_user(user_id="u2", display_name="Ann", email="ana@example.com", password_hash="y", created_at=NOW)
    assert store.get_user_by_email("ana@example.com").id == "u1"


def test_seed_demo_is_idempotent(store):
    assert store.seed_demo(created_at=NOW) == 4
    assert store.seed_demo(created_at=NOW) == 0
    assert [user.display_name for user in store.list_users()] == ["You", "Alex", "Jordan", "Sam"]
    conversations = store.conversations_for_user("user_A")
    assert {c.id for c in conversations} == {"user_A__user_B", "user_A__user_C", "user_A__user_D"}


def test_suggestion_log_marks_latest_match_used(store):
    store.log_suggestion(
        entry_id="s1",
        conversation_id="c1",
        user_id="u1",
        tone="calm",
        original_text="ugh",
        suggestion="Can we talk?",
        created_at=NOW,
    )
    assert store.mark_suggestion_used("c1", "u1", "Can we talk?") is True
    assert store.mark_suggestion_used("c1", "u1", "Can we talk?") is False
    entries = store.suggestion_log("c1")
    assert entries[0]["used_suggestion"] is True
    assert entries[0]["tone"] == "calm"


def test_db_summary_reports_latest_message(store):
    assert store.latest_message_summary() is None
    store.insert_message(_message("m1", "c1", NOW))
    summary = store.latest_message_summary()
    assert summary["id"] == "m1"


def test_unusable_database_path_raises_upstream_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    store = MessageStore(blocker / "xlai.sqlite")

    with pytest.raises(UpstreamError):
        store.list_users()
