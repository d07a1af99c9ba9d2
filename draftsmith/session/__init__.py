"""Session state, working history and SQLite storage."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite

from draftsmith.config import get_config
from draftsmith.llm import Message
from draftsmith.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def new_message_id() -> str:
    return uuid.uuid4().hex


def count_words(text: str) -> int:
    """Word count as the editor shows it: non-whitespace characters."""
    return sum(1 for ch in text if not ch.isspace())


class SessionState(str, Enum):
    """What the session is doing right now. Only IDLE accepts a new turn."""

    IDLE = "idle"
    GENERATING = "generating"
    COMPACTING = "compacting"
    CANCELLING = "cancelling"


@dataclass
class Session:
    """A conversation session scoped to one project and (optionally) one chapter.

    Messages are plain dicts: ``id``, ``role`` (user/assistant/system),
    ``content``, ``timestamp`` and optional ``metadata``. Continuation
    metadata keys are ``applied``, ``summary``, ``word_count`` and
    ``tool_calls``.
    """

    id: str
    name: str
    messages: list[dict[str, Any]] = field(default_factory=list)
    chapter_id: str | None = None
    chapter_title: str | None = None
    state: SessionState = SessionState.IDLE
    loading: bool = False
    dismissed_draft_ids: set[str] = field(default_factory=set)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def busy(self) -> bool:
        return self.loading or self.state is not SessionState.IDLE

    def add_message(
        self,
        role: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Append a message and return it."""
        message: dict[str, Any] = {
            "id": new_message_id(),
            "role": role,
            "content": content,
            "timestamp": _utcnow_iso(),
        }
        if metadata:
            message["metadata"] = dict(metadata)
        self.messages.append(message)
        self.updated_at = _utcnow_iso()
        return message

    def find_message(self, message_id: str) -> dict[str, Any] | None:
        for message in self.messages:
            if message.get("id") == message_id:
                return message
        return None

    def update_message_metadata(self, message_id: str, **updates: Any) -> bool:
        """Merge ``updates`` into a message's metadata. Returns False if not found."""
        message = self.find_message(message_id)
        if message is None:
            return False
        metadata = dict(message.get("metadata") or {})
        metadata.update(updates)
        message["metadata"] = metadata
        self.updated_at = _utcnow_iso()
        return True

    def replace_messages(self, messages: list[dict[str, Any]]) -> None:
        """Destructive history rewrite; only compaction calls this."""
        self.messages = list(messages)
        self.updated_at = _utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "messages": self.messages,
            "chapter_id": self.chapter_id,
            "chapter_title": self.chapter_title,
            "dismissed_draft_ids": sorted(self.dismissed_draft_ids),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            messages=list(data.get("messages") or []),
            chapter_id=data.get("chapter_id"),
            chapter_title=data.get("chapter_title"),
            dismissed_draft_ids=set(data.get("dismissed_draft_ids") or []),
            created_at=data.get("created_at", _utcnow_iso()),
            updated_at=data.get("updated_at", _utcnow_iso()),
            metadata=dict(data.get("metadata") or {}),
        )


def to_provider_messages(messages: list[dict[str, Any]]) -> list[Message]:
    """Map session messages to provider messages (role + content only)."""
    return [
        Message(role=str(msg.get("role") or "user"), content=str(msg.get("content") or ""))
        for msg in messages
        if str(msg.get("role") or "") in ("user", "assistant", "system")
    ]


_SESSION_COLUMNS = (
    "id, name, chapter_id, chapter_title, messages, dismissed_draft_ids, "
    "created_at, updated_at, metadata"
)


def _row_to_session(row: Any) -> Session:
    return Session.from_dict({
        "id": row[0],
        "name": row[1],
        "chapter_id": row[2],
        "chapter_title": row[3],
        "messages": json.loads(row[4]),
        "dismissed_draft_ids": json.loads(row[5]),
        "created_at": row[6],
        "updated_at": row[7],
        "metadata": json.loads(row[8]),
    })


class SessionManager:
    """Persists continuation sessions in a per-project SQLite database."""

    def __init__(self, db_path: Path | str | None = None):
        if db_path is None:
            self.db_path = get_config().resolved_session_path()
        else:
            self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    chapter_id TEXT,
                    chapter_title TEXT,
                    messages TEXT NOT NULL DEFAULT '[]',
                    dismissed_draft_ids TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}'
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_updated_at ON sessions(updated_at)"
            )
            await self._db.commit()
        return self._db

    async def create_session(
        self,
        name: str = "default",
        chapter_id: str | None = None,
        chapter_title: str | None = None,
    ) -> Session:
        session = Session(
            id=str(uuid.uuid4()),
            name=name,
            chapter_id=chapter_id,
            chapter_title=chapter_title,
        )
        await self.save_session(session)
        log.info("Created new session", session_id=session.id, name=name, chapter_id=chapter_id)
        return session

    async def load_session(self, session_id: str) -> Session | None:
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_session(row) if row else None

    async def load_session_by_name(self, name: str) -> Session | None:
        """Load the most recently updated session by name."""
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE name = ? ORDER BY updated_at DESC LIMIT 1",
            (name,),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_session(row) if row else None

    async def get_or_create_session(
        self,
        name: str = "default",
        chapter_id: str | None = None,
        chapter_title: str | None = None,
    ) -> Session:
        session = await self.load_session_by_name(name)
        if session:
            return session
        return await self.create_session(name, chapter_id=chapter_id, chapter_title=chapter_title)

    async def save_session(self, session: Session) -> None:
        db = await self._ensure_db()
        session.updated_at = _utcnow_iso()
        await db.execute(
            f"INSERT OR REPLACE INTO sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                session.id,
                session.name,
                session.chapter_id,
                session.chapter_title,
                json.dumps(session.messages, ensure_ascii=False),
                json.dumps(sorted(session.dismissed_draft_ids)),
                session.created_at,
                session.updated_at,
                json.dumps(session.metadata, ensure_ascii=False),
            ),
        )
        await db.commit()

    async def list_sessions(self, limit: int = 10) -> list[Session]:
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions ORDER BY updated_at DESC LIMIT ?",
            (limit,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_session(row) for row in rows]

    async def delete_session(self, session_id: str) -> bool:
        db = await self._ensure_db()
        cursor = await db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        await db.commit()
        return cursor.rowcount > 0

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None
