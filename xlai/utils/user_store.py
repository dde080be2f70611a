from __future__ import annotations

import re
import uuid
from datetime import UTC, datetime

from xlai.schemas.models import UserProfile
from xlai.utils.errors import AuthError, ValidationError
from xlai.utils.message_store import MessageStore, StoredUser
from xlai.utils.security import IssuedToken, hash_password, issue_token, verify_password, verify_token

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


def normalize_email(email: str) -> str:
    return email.strip().lower()


def to_profile(user: StoredUser) -> UserProfile:
    return UserProfile(id=user.id, display_name=user.display_name, email=user.email, created_at=user.created_at)


def signup(
    store: MessageStore,
    *,
    email: str | None,
    password: str | None,
    display_name: str | None,
) -> tuple[UserProfile, IssuedToken]:
    if not email or not password or not (display_name or "").strip():
        raise ValidationError("Email, password and display name are required.")
    normalized = normalize_email(email)
    if not _EMAIL_PATTERN.match(normalized):
        raise ValidationError("Email address is not valid.")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    user = store.create_user(
        user_id=f"user_{uuid.uuid4().hex[:12]}",
        display_name=display_name.strip(),
        email=normalized,
        password_hash=hash_password(password),
        created_at=datetime.now(UTC),
    )
    return to_profile(user), issue_token(user.id)


def login(store: MessageStore, *, email: str | None, password: str | None) -> tuple[UserProfile, IssuedToken]:
    if not email or not password:
        raise ValidationError("Email and password are required.")
    user = store.get_user_by_email(normalize_email(email))
    if user is None or not verify_password(password, user.password_hash):
        raise AuthError("Invalid email or password")
    return to_profile(user), issue_token(user.id)


def authenticate(store: MessageStore, token: str | None) -> UserProfile:
    user_id = verify_token(token)
    user = store.get_user(user_id)
    if user is None:
        raise AuthError("Missing or invalid token")
    return to_profile(user)
