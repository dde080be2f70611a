from datetime import UTC, datetime, timedelta

import pytest

from xlai.agents import message_agent
from xlai.agents.message_agent import COACH_HINTS, MessageMetadata, MessageService
from xlai.agents.pause_flow import PauseOutcome
from xlai.utils.errors import UpstreamError, ValidationError
from xlai.utils.message_store import MessageStore


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(tmp_path, clock):
    return MessageService(MessageStore(tmp_path / "xlai.sqlite"), clock=clock)


def test_send_then_list_returns_message_once(service):
    stored = service.send_message("c1", "u1", "u2", "abc", MessageMetadata(encrypted=True))

    messages = service.list_messages("c1")

    assert [m.id for m in messages] == [stored.id]
    assert messages[0].ciphertext == "abc"
    assert messages[0].final_text is None


def test_send_plaintext_keeps_coaching_metadata(service):
    outcome = PauseOutcome(
        final_text="Can we talk later?",
        original_text="WE NEED TO TALK",
        used_suggestion=True,
        was_pause_taken=True,
        intensity_score=1.4,
        pre_send_emotion="anger",
    )

    stored = service.send_message("c1", "u1", "u2", outcome.final_text, MessageMetadata.from_outcome(outcome))

    assert stored.final_text == "Can we talk later?"
    assert stored.original_text == "WE NEED TO TALK"
    assert stored.intensity_score == 1.0
    assert stored.used_suggestion is True


@pytest.mark.parametrize(
    "conversation_id,sender_id,content",
    [(None, "u1", "hi"), ("c1", "", "hi"), ("c1", "u1", "   "), ("c1", "u1", None)],
)
def test_send_rejects_missing_fields(service, conversation_id, sender_id, content):
    with pytest.raises(ValidationError):
        service.send_message(conversation_id, sender_id, "u2", content)
    assert service.store.latest_message_summary() is None


def test_messages_expire_after_retention_window(service, clock):
    service.send_message("c1", "u1", "u2", "first")
    clock.advance(hours=23, minutes=59)
    assert len(service.list_messages("c1")) == 1
    clock.advance(minutes=1)
    assert service.list_messages("c1") == []


def test_sweep_deletes_expired_rows(service, clock):
    service.send_message("c1", "u1", "u2", "old")
    clock.advance(hours=12)
    service.send_message("c1", "u1", "u2", "newer")
    clock.advance(hours=12)

    assert service.sweep() == 1
    assert [m.final_text for m in service.list_messages("c1")] == ["newer"]


def test_send_sweeps_before_writing(service, clock):
    service.send_message("c1", "u1", "u2", "old")
    clock.advance(hours=25)
    service.send_message("c2", "u1", "u3", "new")
    assert service.store.latest_message_summary()["id"] is not None
    assert service.store.messages_since("c1", clock.now - timedelta(days=7)) == []


def test_list_messages_requires_conversation(service):
    with pytest.raises(ValidationError):
        service.list_messages("  ")


def test_latest_per_conversation(service, clock):
    service.send_message("c1", "u1", "u2", "one")
    clock.advance(minutes=1)
    service.send_message("c2", "u1", "u3", "two")
    clock.advance(minutes=1)
    service.send_message("c1", "u2", "u1", "three")

    latest = service.latest_per_conversation()

    assert [(m.conversation_id, m.final_text) for m in latest] == [("c1", "three"), ("c2", "two")]


def test_contacts_report_activity(service, clock):
    service.seed_demo()
    service.send_message("user_A__user_B", "user_A", "user_B", "hey Alex")

    contacts = {contact.id: contact for contact in service.contacts("user_A")}

    assert set(contacts) == {"user_B", "user_C", "user_D"}
    assert contacts["user_B"].status == "active"
    assert contacts["user_B"].name == "Alex"
    assert contacts["user_C"].status == "idle"
    assert contacts["user_C"].conversation_id == "user_A__user_C"


def test_behavior_feedback_aggregates_recent_messages(service, clock):
    for score, emotion in [(0.9, "anger"), (0.6, "anger"), (0.3, "sadness")]:
        service.send_message(
            "c1", "u1", "u2", "msg", MessageMetadata(intensity_score=score, pre_send_emotion=emotion)
        )
        clock.advance(minutes=1)

    feedback = service.behavior_feedback("c1")

    assert feedback.risk_level == "medium"
    assert feedback.average_intensity == pytest.approx(0.6)
    assert feedback.top_emotion == "anger"
    assert feedback.coach_hint == COACH_HINTS["medium"]
    assert feedback.sample_size == 3


def test_behavior_feedback_without_scores_is_low(service):
    service.send_message("c1", "u1", "u2", "hello")
    feedback = service.behavior_feedback("c1")
    assert feedback.risk_level == "low"
    assert feedback.average_intensity is None
    assert feedback.top_emotion is None


def test_history_is_newest_first(service, clock):
    for text in ("a", "b", "c"):
        service.send_message("c1", "u1", "u2", text)
        clock.advance(seconds=1)
    assert [m.final_text for m in service.history("c1", limit=2)] == ["c", "b"]


def test_used_suggestion_marks_suggestion_log(service):
    service.log_suggestion(
        conversation_id="c1", user_id="u1", tone="calm", original_text="ugh", suggestion="Can we talk?"
    )
    service.send_message("c1", "u1", "u2", "Can we talk?", MessageMetadata(used_suggestion=True))
    assert service.store.suggestion_log("c1")[0]["used_suggestion"] is True


def test_db_health_reports_latest(service):
    assert service.db_health() == {"connected": True, "latest": None}
    stored = service.send_message("c1", "u1", "u2", "hi")
    assert service.db_health()["latest"]["id"] == stored.id


def test_get_message_service_uses_database_url(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'env.sqlite'}")
    monkeypatch.setenv("XLAI_SEED_DEMO", "false")
    monkeypatch.setattr(message_agent, "_MESSAGE_SERVICE", None)

    service = message_agent.get_message_service()

    assert service is message_agent.get_message_service()
    assert service.store.path == tmp_path / "env.sqlite"
    assert service.store.list_users() == []


def test_log_suggestion_failure_is_swallowed(service, monkeypatch):
    def broken(**kwargs):
        raise UpstreamError("database error: disk I/O error")

    monkeypatch.setattr(service.store, "log_suggestion", broken)

    service.log_suggestion(
        conversation_id="c1", user_id="u1", tone="calm", original_text="ugh", suggestion="Can we talk?"
    )

    assert service.store.suggestion_log("c1") == []
