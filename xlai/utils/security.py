from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Dict

import bcrypt
from fastapi import HTTPException

from xlai.utils.errors import AuthError
from xlai.utils.logging import get_logger

log = get_logger(__name__)

TOKEN_TTL_SECONDS = 7 * 24 * 60 * 60
_DEV_TOKEN_SECRET = "xlai-dev-token-secret"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


_warned_missing_secret = False


def _token_secret() -> bytes:
    global _warned_missing_secret
    secret = os.getenv("JWT_SECRET", "").strip()
    if not secret:
        if not _warned_missing_secret:
            log.warning("token_secret_missing", msg="JWT_SECRET is not set; using development secret")
            _warned_missing_secret = True
        secret = _DEV_TOKEN_SECRET
    return secret.encode("utf-8")


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(payload: str) -> str:
    return hmac.new(_token_secret(), payload.encode("utf-8"), hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


def issue_token(user_id: str, *, expires_in: int | None = None) -> IssuedToken:
    ttl_seconds = expires_in if expires_in is not None else TOKEN_TTL_SECONDS
    exp = int(time.time()) + int(ttl_seconds)
    payload = _b64encode(json.dumps({"sub": user_id, "exp": exp}, separators=(",", ":")).encode("utf-8"))
    token = f"{payload}.{_sign(payload)}"
    return IssuedToken(token=token, expires_at=datetime.fromtimestamp(exp, tz=UTC))


def verify_token(token: str | None) -> str:
    """Return the user id carried by a valid, unexpired bearer token."""

    if not token or token.count(".") != 1:
        raise AuthError("Missing or invalid token")
    payload, sig = token.split(".", 1)
    if not hmac.compare_digest(_sign(payload), sig):
        raise AuthError("Missing or invalid token")
    try:
        claims = json.loads(_b64decode(payload))
    except (ValueError, UnicodeDecodeError):
        raise AuthError("Missing or invalid token") from None
    exp = claims.get("exp")
    subject = claims.get("sub")
    if not isinstance(exp, int) or not isinstance(subject, str) or not subject:
        raise AuthError("Missing or invalid token")
    if exp <= int(time.time()):
        raise AuthError("Token expired")
    return subject


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def verify_api_key(provided_key: str | None) -> None:
    valid_keys = _load_admin_keys()
    if valid_keys:
        if provided_key is None or provided_key not in valid_keys:
            raise AuthError("Invalid API token")
        return

    expected_default = os.getenv("API_AUTH_TOKEN")
    if expected_default:
        if provided_key != expected_default:
            raise AuthError("Invalid API token")
        return

    if provided_key is None:
        return

    raise AuthError("Invalid API token")


class RateLimiter:
    def __init__(self, limit: int, window_seconds: int) -> None:
        self.limit = limit
        self.window = window_seconds
        self.calls = defaultdict(list)

    def allow(self, client_id: str) -> None:
        now = time.time()
        bucket = self.calls[client_id]
        while bucket and bucket[0] <= now - self.window:
            bucket.pop(0)
        if len(bucket) >= self.limit:
            raise HTTPException(status_code=429, detail="Rate limit exceeded")
        bucket.append(now)


_rate_limiter: RateLimiter | None = None
_admin_keys: Dict[str, str] | None = None


def _load_admin_keys() -> Dict[str, str]:
    global _admin_keys
    if _admin_keys is not None:
        return _admin_keys
    mapping: Dict[str, str] = {}
    raw = os.getenv("ADMIN_API_KEYS")
    if raw:
        pairs = [entry.strip() for entry in raw.split(",") if entry.strip()]
        for pair in pairs:
            if ":" in pair:
                name, key = pair.split(":", 1)
                mapping[key.strip()] = name.strip()
            else:
                mapping[pair] = pair
    _admin_keys = mapping
    return _admin_keys


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        limit = int(os.getenv("API_RATE_LIMIT", "60"))
        window = int(os.getenv("API_RATE_WINDOW", "60"))
        _rate_limiter = RateLimiter(limit=limit, window_seconds=window)
    return _rate_limiter
