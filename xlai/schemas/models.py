from __future__ import annotations

from datetime import UTC, datetime
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic import ConfigDict


def _now_utc() -> datetime:
    return datetime.now(UTC)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UserProfile(BaseModel):
    """Public view of a user; never carries the password hash."""

    id: str
    display_name: str
    email: Optional[str] = None
    created_at: datetime = Field(default_factory=_now_utc)


class Conversation(BaseModel):
    id: str
    participant_a: str
    participant_b: Optional[str] = None
    created_at: datetime = Field(default_factory=_now_utc)


class StoredMessage(BaseModel):
    """A persisted message row. Immutable once written, except for deletion."""

    id: str
    conversation_id: str
    sender_id: str
    recipient_id: Optional[str] = None
    ciphertext: Optional[str] = None
    final_text: Optional[str] = None
    original_text: Optional[str] = None
    pre_send_emotion: Optional[str] = None
    intensity_score: Optional[float] = None
    was_pause_taken: bool = False
    used_suggestion: bool = False
    is_repair_attempt: bool = False
    created_at: datetime


class Contact(_CamelModel):
    id: str
    name: str
    status: str
    conversation_id: str = Field(alias="conversationId")


class IntensityAnalysis(_CamelModel):
    intensity: float = Field(default=0.0, ge=0.0, le=1.0)
    label: str = "low"
    primary_emotion: str = Field(default="neutral", alias="primaryEmotion")


class PauseDecision(_CamelModel):
    required: bool
    threshold: float
    coach_mode: str = Field(alias="coachMode")


class BehaviorFeedback(_CamelModel):
    risk_level: str = Field(alias="riskLevel")
    average_intensity: Optional[float] = Field(default=None, alias="averageIntensity")
    top_emotion: Optional[str] = Field(default=None, alias="topEmotion")
    coach_hint: str = Field(alias="coachHint")
    sample_size: int = Field(alias="sampleSize")


# --- requests -------------------------------------------------------------
# Fields are optional; the services reject missing values with a 400.


class RephraseRequest(_CamelModel):
    text: Optional[str] = None
    tone: Optional[str] = None
    rewrite_strength: Optional[str] = Field(default=None, alias="rewriteStrength")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    user_id: Optional[str] = Field(default=None, alias="userId")


class AnalyzeIntensityRequest(_CamelModel):
    text: Optional[str] = None
    tone: Optional[str] = None
    emotion: Optional[str] = None
    rewrite_strength: Optional[str] = Field(default=None, alias="rewriteStrength")
    coach_mode: Optional[str] = Field(default=None, alias="coachMode")


class CreateMessageRequest(_CamelModel):
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    sender_id: Optional[str] = Field(default=None, alias="senderId")
    recipient_id: Optional[str] = Field(default=None, alias="recipientId")
    ciphertext: Optional[str] = None


class SendMessageRequest(_CamelModel):
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    recipient_id: Optional[str] = Field(default=None, alias="recipientId")
    original_text: Optional[str] = Field(default=None, alias="originalText")
    final_text: Optional[str] = Field(default=None, alias="finalText")
    pre_send_emotion: Optional[str] = Field(default=None, alias="preSendEmotion")
    intensity_score: Optional[float] = Field(default=None, alias="intensityScore")
    was_pause_taken: bool = Field(default=False, alias="wasPauseTaken")
    used_suggestion: bool = Field(default=False, alias="usedSuggestion")
    is_repair_attempt: bool = Field(default=False, alias="isRepairAttempt")


class SignupRequest(_CamelModel):
    email: Optional[str] = None
    password: Optional[str] = None
    display_name: Optional[str] = Field(default=None, alias="displayName")


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


# --- responses ------------------------------------------------------------


class RephraseResponse(BaseModel):
    suggestion: str
    tone: str


class AnalyzeIntensityResponse(BaseModel):
    intensity: IntensityAnalysis
    suggestion: str = ""
    pause: PauseDecision


class MessageResponse(BaseModel):
    message: StoredMessage


class MessageListResponse(BaseModel):
    messages: List[StoredMessage] = Field(default_factory=list)


class LastMessagesResponse(_CamelModel):
    last_messages: List[StoredMessage] = Field(default_factory=list, alias="lastMessages")


class ContactListResponse(BaseModel):
    contacts: List[Contact] = Field(default_factory=list)


class SendMessageResponse(BaseModel):
    ok: bool = True
    id: Optional[str] = None
    created_at: datetime
    dry_run: bool = False


class BehaviorFeedbackResponse(BaseModel):
    feedback: BehaviorFeedback


class DbHealthResponse(BaseModel):
    connected: bool
    latest: Optional[dict] = None


class AuthResponse(_CamelModel):
    user: UserProfile
    token: str
    expires_at: datetime = Field(alias="expiresAt")


class MeResponse(BaseModel):
    user: UserProfile
