from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterator, List, Optional

from xlai.schemas.models import Conversation, StoredMessage
from xlai.utils.errors import ConflictError, UpstreamError
from xlai.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_DB_PATH = Path("assets/data/xlai.sqlite")

DEMO_OWNER_ID = "user_A"
DEMO_USERS = (
    ("user_A", "You"),
    ("user_B", "Alex"),
    ("user_C", "Jordan"),
    ("user_D", "Sam"),
)

_MESSAGE_COLUMNS = (
    "id",
    "conversation_id",
    "sender_id",
    "recipient_id",
    "ciphertext",
    "final_text",
    "original_text",
    "pre_send_emotion",
    "intensity_score",
    "was_pause_taken",
    "used_suggestion",
    "is_repair_attempt",
    "created_at",
)


@dataclass(frozen=True)
class StoredUser:
    id: str
    display_name: str
    email: Optional[str]
    password_hash: Optional[str]
    created_at: datetime


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC form so that text comparison follows time order."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def conversation_id_for(user_a: str, user_b: str) -> str:
    first, second = sorted((user_a, user_b))
    return f"{first}__{second}"


def resolve_database_path(database_url: str | None) -> Path:
    """Accept ``sqlite:///relative``, ``sqlite:////absolute`` or a bare path."""

    if not database_url or not database_url.strip():
        log.warning("database_url_missing", fallback=str(DEFAULT_DB_PATH))
        return DEFAULT_DB_PATH
    raw = database_url.strip()
    if raw.startswith("sqlite:///"):
        return Path(raw[len("sqlite:///") :])
    if "://" in raw:
        log.warning("database_url_unsupported", scheme=raw.split("://", 1)[0], fallback=str(DEFAULT_DB_PATH))
        return DEFAULT_DB_PATH
    return Path(raw)


def _row_to_message(row: sqlite3.Row) -> StoredMessage:
    return StoredMessage(
        id=row["id"],
        conversation_id=row["conversation_id"],
        sender_id=row["sender_id"],
        recipient_id=row["recipient_id"],
        ciphertext=row["ciphertext"],
        final_text=row["final_text"],
        original_text=row["original_text"],
        pre_send_emotion=row["pre_send_emotion"],
        intensity_score=row["intensity_score"],
        was_pause_taken=bool(row["was_pause_taken"]),
        used_suggestion=bool(row["used_suggestion"]),
        is_repair_attempt=bool(row["is_repair_attempt"]),
        created_at=parse_timestamp(row["created_at"]),
    )


def _row_to_user(row: sqlite3.Row) -> StoredUser:
    return StoredUser(
        id=row["id"],
        display_name=row["display_name"],
        email=row["email"],
        password_hash=row["password_hash"],
        created_at=parse_timestamp(row["created_at"]),
    )


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        participant_a=row["participant_a"],
        participant_b=row["participant_b"],
        created_at=parse_timestamp(row["created_at"]),
    )


class MessageStore:
    """SQLite persistence for users, conversations, messages and suggestion logs."""

    def __init__(self, path: str | Path = DEFAULT_DB_PATH) -> None:
        self.path = Path(path)
        self._ready = False
        self._lock = RLock()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        self._ensure_schema()
        conn = self._open()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            log.error("database_error", error=str(exc), path=str(self.path))
            raise UpstreamError(f"database error: {exc}") from exc
        finally:
            conn.close()

    def _open(self) -> sqlite3.Connection:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.path, timeout=10.0)
        except (OSError, sqlite3.Error) as exc:
            log.error("database_unavailable", error=str(exc), path=str(self.path))
            raise UpstreamError(f"database unavailable: {exc}") from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_schema(self) -> None:
        if self._ready:
            return
        with self._lock:
            if self._ready:
                return
            conn = self._open()
            try:
                _create_schema(conn)
                conn.commit()
            except sqlite3.Error as exc:
                raise UpstreamError(f"schema init failed: {exc}") from exc
            finally:
                conn.close()
            self._ready = True

    def init_schema(self) -> None:
        self._ensure_schema()

    # --- users -------------------------------------------------------------

    def create_user(
        self,
        *,
        user_id: str,
        display_name: str,
        email: str | None,
        password_hash: str | None,
        created_at: datetime,
    ) -> StoredUser:
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO users (id, display_name, email, password_hash, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (user_id, display_name, email, password_hash, format_timestamp(created_at)),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError("Email already registered") from exc
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _row_to_user(row)

    def get_user(self, user_id: str) -> StoredUser | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> StoredUser | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        return _row_to_user(row) if row else None

    def list_users(self) -> List[StoredUser]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY created_at ASC, rowid ASC").fetchall()
        return [_row_to_user(row) for row in rows]

    # --- conversations -----------------------------------------------------

    def ensure_conversation(
        self,
        conversation_id: str,
        participant_a: str,
        participant_b: str | None,
        *,
        created_at: datetime,
    ) -> Conversation:
        with self._connect() as conn:
            _insert_conversation(conn, conversation_id, participant_a, participant_b, created_at)
            row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return _row_to_conversation(row)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return _row_to_conversation(row) if row else None

    def conversations_for_user(self, user_id: str) -> List[Conversation]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM conversations
                WHERE participant_a = ? OR participant_b = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (user_id, user_id),
            ).fetchall()
        return [_row_to_conversation(row) for row in rows]

    def seed_demo(self, *, created_at: datetime) -> int:
        """Insert the demo users and their pairwise conversations; safe to repeat."""

        created = 0
        stamp = format_timestamp(created_at)
        with self._connect() as conn:
            for user_id, display_name in DEMO_USERS:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO users (id, display_name, created_at) VALUES (?, ?, ?)",
                    (user_id, display_name, stamp),
                )
                created += cursor.rowcount
            for user_id, _ in DEMO_USERS:
                if user_id == DEMO_OWNER_ID:
                    continue
                _insert_conversation(
                    conn,
                    conversation_id_for(DEMO_OWNER_ID, user_id),
                    DEMO_OWNER_ID,
                    user_id,
                    created_at,
                )
        return created

    # --- messages ----------------------------------------------------------

    def insert_message(self, message: StoredMessage) -> StoredMessage:
        values = message.model_dump()
        values["created_at"] = format_timestamp(message.created_at)
        values["was_pause_taken"] = int(message.was_pause_taken)
        values["used_suggestion"] = int(message.used_suggestion)
        values["is_repair_attempt"] = int(message.is_repair_attempt)
        placeholders = ", ".join("?" for _ in _MESSAGE_COLUMNS)
        with self._connect() as conn:
            _insert_conversation(
                conn,
                message.conversation_id,
                message.sender_id,
                message.recipient_id,
                message.created_at,
            )
            conn.execute(
                f"INSERT INTO messages ({', '.join(_MESSAGE_COLUMNS)}) VALUES ({placeholders})",
                tuple(values[column] for column in _MESSAGE_COLUMNS),
            )
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (message.id,)).fetchone()
        return _row_to_message(row)

    def messages_since(self, conversation_id: str, cutoff: datetime) -> List[StoredMessage]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                WHERE conversation_id = ? AND created_at > ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (conversation_id, format_timestamp(cutoff)),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def recent_messages(self, conversation_id: str, cutoff: datetime, *, limit: int) -> List[StoredMessage]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                WHERE conversation_id = ? AND created_at > ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (conversation_id, format_timestamp(cutoff), limit),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def latest_per_conversation(self, cutoff: datetime) -> List[StoredMessage]:
        stamp = format_timestamp(cutoff)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT m.* FROM messages m
                WHERE m.created_at > ?
                  AND m.rowid = (
                    SELECT m2.rowid FROM messages m2
                    WHERE m2.conversation_id = m.conversation_id AND m2.created_at > ?
                    ORDER BY m2.created_at DESC, m2.rowid DESC
                    LIMIT 1
                  )
                ORDER BY m.created_at DESC, m.rowid DESC
                """,
                (stamp, stamp),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def has_messages_since(self, conversation_id: str, cutoff: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM messages WHERE conversation_id = ? AND created_at > ? LIMIT 1",
                (conversation_id, format_timestamp(cutoff)),
            ).fetchone()
        return row is not None

    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete messages and suggestion logs created at or before ``cutoff``."""

        stamp = format_timestamp(cutoff)
        with self._connect() as conn:
            deleted = conn.execute("DELETE FROM messages WHERE created_at <= ?", (stamp,)).rowcount
            conn.execute("DELETE FROM suggestion_log WHERE created_at <= ?", (stamp,))
        return int(deleted or 0)

    def latest_message_summary(self) -> Dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, created_at FROM messages ORDER BY created_at DESC, rowid DESC LIMIT 1"
            ).fetchone()
        if row is None:
            return None
        return {"id": row["id"], "created_at": row["created_at"]}

    # --- suggestion log ----------------------------------------------------

    def log_suggestion(
        self,
        *,
        entry_id: str,
        conversation_id: str,
        user_id: str,
        tone: str,
        original_text: str | None,
        suggestion: str,
        created_at: datetime,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO suggestion_log (
                    id, conversation_id, user_id, tone, original_text, suggestion, used_suggestion, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (entry_id, conversation_id, user_id, tone, original_text, suggestion, format_timestamp(created_at)),
            )

    def mark_suggestion_used(self, conversation_id: str, user_id: str, suggestion: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE suggestion_log SET used_suggestion = 1
                WHERE id = (
                    SELECT id FROM suggestion_log
                    WHERE conversation_id = ? AND user_id = ? AND suggestion = ? AND used_suggestion = 0
                    ORDER BY created_at DESC, rowid DESC
                    LIMIT 1
                )
                """,
                (conversation_id, user_id, suggestion),
            )
        return bool(cursor.rowcount)

    def suggestion_log(self, conversation_id: str) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM suggestion_log WHERE conversation_id = ? ORDER BY created_at ASC, rowid ASC",
                (conversation_id,),
            ).fetchall()
        return [
            {
                "id": row["id"],
                "conversation_id": row["conversation_id"],
                "user_id": row["user_id"],
                "tone": row["tone"],
                "original_text": row["original_text"],
                "suggestion": row["suggestion"],
                "used_suggestion": bool(row["used_suggestion"]),
                "created_at": parse_timestamp(row["created_at"]),
            }
            for row in rows
        ]


def _insert_conversation(
    conn: sqlite3.Connection,
    conversation_id: str,
    participant_a: str,
    participant_b: str | None,
    created_at: datetime,
) -> None:
    conn.execute(
        """
        INSERT OR IGNORE INTO conversations (id, participant_a, participant_b, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (conversation_id, participant_a, participant_b, format_timestamp(created_at)),
    )


def _create_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            display_name TEXT NOT NULL,
            email TEXT UNIQUE,
            password_hash TEXT,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS conversations (
            id TEXT PRIMARY KEY,
            participant_a TEXT NOT NULL,
            participant_b TEXT,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT PRIMARY KEY,
            conversation_id TEXT NOT NULL,
            sender_id TEXT NOT NULL,
            recipient_id TEXT,
            ciphertext TEXT,
            final_text TEXT,
            original_text TEXT,
            pre_send_emotion TEXT,
            intensity_score REAL,
            was_pause_taken INTEGER NOT NULL DEFAULT 0,
            used_suggestion INTEGER NOT NULL DEFAULT 0,
            is_repair_attempt INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            FOREIGN KEY(conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_conversation_created ON messages(conversation_id, created_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_created_at ON messages(created_at)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS suggestion_log (
            id TEXT PRIMARY KEY,
            conversation_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            tone TEXT NOT NULL,
            original_text TEXT,
            suggestion TEXT NOT NULL,
            used_suggestion INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_suggestion_log_created_at ON suggestion_log(created_at)")
