from __future__ import annotations

import os
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Dict, List

from xlai.agents.intensity_client import label_from_score
from xlai.agents.pause_flow import PauseOutcome
from xlai.schemas.models import BehaviorFeedback, Contact, StoredMessage
from xlai.utils.env import read_bool_env, read_int_env
from xlai.utils.errors import UpstreamError, ValidationError
from xlai.utils.logging import get_logger
from xlai.utils.message_store import MessageStore, conversation_id_for, resolve_database_path

log = get_logger(__name__)

DEFAULT_RETENTION_HOURS = 24
HISTORY_LIMIT = 100
FEEDBACK_SAMPLE_LIMIT = 50

COACH_HINTS = {
    "low": "Your recent messages look fairly steady.",
    "medium": "There's some emotional charge here. Consider one validating sentence before sharing your side.",
    "high": (
        "Tension looks high. Try slowing down, naming how you feel, and asking one curious question "
        "instead of defending."
    ),
}


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class MessageMetadata:
    """Optional emotional context recorded alongside a message."""

    encrypted: bool = False
    original_text: str | None = None
    pre_send_emotion: str | None = None
    intensity_score: float | None = None
    was_pause_taken: bool = False
    used_suggestion: bool = False
    is_repair_attempt: bool = False

    @classmethod
    def from_outcome(cls, outcome: PauseOutcome, *, encrypted: bool = False) -> "MessageMetadata":
        return cls(
            encrypted=encrypted,
            original_text=outcome.original_text,
            pre_send_emotion=outcome.pre_send_emotion,
            intensity_score=outcome.intensity_score,
            was_pause_taken=outcome.was_pause_taken,
            used_suggestion=outcome.used_suggestion,
        )


class MessageService:
    def __init__(
        self,
        store: MessageStore,
        *,
        retention_hours: int = DEFAULT_RETENTION_HOURS,
        clock: Callable[[], datetime] = _utc_now,
        sweep_on_write: bool = True,
    ) -> None:
        self.store = store
        self.retention = timedelta(hours=retention_hours)
        self._clock = clock
        self.sweep_on_write = sweep_on_write

    def now(self) -> datetime:
        return self._clock()

    def cutoff(self) -> datetime:
        return self.now() - self.retention

    def send_message(
        self,
        conversation_id: str | None,
        sender_id: str | None,
        recipient_id: str | None,
        content: str | None,
        metadata: MessageMetadata | None = None,
    ) -> StoredMessage:
        metadata = metadata or MessageMetadata()
        conversation_id = (conversation_id or "").strip()
        sender_id = (sender_id or "").strip()
        if not conversation_id or not sender_id or not content or not content.strip():
            log.info(
                "message_rejected",
                conversation_id=conversation_id or None,
                sender_id=sender_id or None,
                has_content=bool(content and content.strip()),
            )
            raise ValidationError("Missing required fields")

        if self.sweep_on_write:
            self._sweep_quietly()

        intensity = metadata.intensity_score
        if intensity is not None:
            intensity = min(max(float(intensity), 0.0), 1.0)
        message = StoredMessage(
            id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            sender_id=sender_id,
            recipient_id=(recipient_id or "").strip() or None,
            ciphertext=content if metadata.encrypted else None,
            final_text=None if metadata.encrypted else content.strip(),
            original_text=metadata.original_text or None,
            pre_send_emotion=metadata.pre_send_emotion or None,
            intensity_score=intensity,
            was_pause_taken=metadata.was_pause_taken,
            used_suggestion=metadata.used_suggestion,
            is_repair_attempt=metadata.is_repair_attempt,
            created_at=self.now(),
        )
        stored = self.store.insert_message(message)
        log.info(
            "message_saved",
            id=stored.id,
            conversation_id=stored.conversation_id,
            encrypted=metadata.encrypted,
            was_pause_taken=stored.was_pause_taken,
            used_suggestion=stored.used_suggestion,
        )
        if metadata.used_suggestion and stored.final_text:
            try:
                self.store.mark_suggestion_used(conversation_id, sender_id, stored.final_text)
            except UpstreamError as exc:
                log.warning("suggestion_mark_failed", conversation_id=conversation_id, error=str(exc))
        return stored

    def list_messages(self, conversation_id: str | None) -> List[StoredMessage]:
        if not conversation_id or not conversation_id.strip():
            raise ValidationError("Missing conversationId")
        return self.store.messages_since(conversation_id.strip(), self.cutoff())

    def latest_per_conversation(self) -> List[StoredMessage]:
        return self.store.latest_per_conversation(self.cutoff())

    def history(self, conversation_id: str | None, *, limit: int = HISTORY_LIMIT) -> List[StoredMessage]:
        if not conversation_id or not conversation_id.strip():
            raise ValidationError("Missing conversation")
        return self.store.recent_messages(conversation_id.strip(), self.cutoff(), limit=limit)

    def behavior_feedback(self, conversation_id: str | None, *, limit: int = FEEDBACK_SAMPLE_LIMIT) -> BehaviorFeedback:
        rows = self.history(conversation_id, limit=limit)
        scores = [row.intensity_score for row in rows if row.intensity_score is not None]
        average = sum(scores) / len(scores) if scores else None
        risk_level = label_from_score(average)

        emotions = Counter(row.pre_send_emotion.lower() for row in rows if row.pre_send_emotion)
        # most_common keeps first-seen order on ties, rows are newest first
        top_emotion = emotions.most_common(1)[0][0] if emotions else None

        return BehaviorFeedback(
            risk_level=risk_level,
            average_intensity=average,
            top_emotion=top_emotion,
            coach_hint=COACH_HINTS[risk_level],
            sample_size=len(rows),
        )

    def contacts(self, user_id: str | None) -> List[Contact]:
        if not user_id or not user_id.strip():
            raise ValidationError("Missing userId")
        user_id = user_id.strip()
        cutoff = self.cutoff()
        known = {}
        for conversation in self.store.conversations_for_user(user_id):
            other = conversation.participant_b if conversation.participant_a == user_id else conversation.participant_a
            if other and other != user_id:
                known.setdefault(other, conversation.id)
        contacts: List[Contact] = []
        for user in self.store.list_users():
            if user.id == user_id:
                continue
            conversation_id = known.get(user.id) or conversation_id_for(user_id, user.id)
            active = self.store.has_messages_since(conversation_id, cutoff)
            contacts.append(
                Contact(
                    id=user.id,
                    name=user.display_name,
                    status="active" if active else "idle",
                    conversation_id=conversation_id,
                )
            )
        return contacts

    def log_suggestion(
        self,
        *,
        conversation_id: str,
        user_id: str,
        tone: str,
        original_text: str | None,
        suggestion: str,
    ) -> None:
        """Record a produced suggestion; never raises."""

        try:
            self.store.log_suggestion(
                entry_id=uuid.uuid4().hex,
                conversation_id=conversation_id,
                user_id=user_id,
                tone=tone,
                original_text=original_text,
                suggestion=suggestion,
                created_at=self.now(),
            )
        except Exception as exc:
            log.warning("suggestion_log_failed", conversation_id=conversation_id, error=str(exc))

    def sweep(self) -> int:
        deleted = self.store.delete_older_than(self.cutoff())
        log.info("retention_sweep", deleted=deleted, retention_hours=self.retention.total_seconds() / 3600)
        return deleted

    def _sweep_quietly(self) -> None:
        try:
            self.sweep()
        except UpstreamError as exc:
            log.warning("retention_sweep_on_write_failed", error=str(exc))

    def db_health(self) -> Dict[str, Any]:
        try:
            latest = self.store.latest_message_summary()
        except UpstreamError as exc:
            log.error("db_health_failed", error=str(exc))
            return {"connected": False, "latest": None}
        return {"connected": True, "latest": latest}

    def seed_demo(self) -> int:
        created = self.store.seed_demo(created_at=self.now())
        if created:
            log.info("demo_seeded", users=created)
        return created


_MESSAGE_SERVICE: MessageService | None = None


def build_message_service() -> MessageService:
    store = MessageStore(resolve_database_path(os.getenv("DATABASE_URL")))
    service = MessageService(
        store,
        retention_hours=read_int_env("XLAI_RETENTION_HOURS", DEFAULT_RETENTION_HOURS),
    )
    if read_bool_env("XLAI_SEED_DEMO", True):
        try:
            service.seed_demo()
        except UpstreamError as exc:
            log.warning("demo_seed_failed", error=str(exc))
    return service


def get_message_service() -> MessageService:
    global _MESSAGE_SERVICE
    if _MESSAGE_SERVICE is None:
        _MESSAGE_SERVICE = build_message_service()
    return _MESSAGE_SERVICE


def reset_message_service() -> None:
    global _MESSAGE_SERVICE
    _MESSAGE_SERVICE = None
