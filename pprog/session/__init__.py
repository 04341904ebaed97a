"""Conversation store with SQLite persistence."""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from pprog.config import get_config
from pprog.exceptions import SessionError, ValidationError
from pprog.logging import get_logger
from pprog.messages import Message, find_pairing_violations

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


class Conversation:
    """Ordered message log owned by one session.

    Only the orchestrator appends and only the budgeter replaces; callers
    serialize turns by holding ``lock`` (asyncio locks wake waiters in FIFO
    order, so turns run in arrival order).
    """

    def __init__(
        self,
        session_id: str,
        messages: list[Message] | None = None,
        created_at: str | None = None,
        updated_at: str | None = None,
    ):
        self.session_id = session_id
        self._messages: list[Message] = list(messages or [])
        self.created_at = created_at or _utcnow_iso()
        self.updated_at = updated_at or self.created_at
        self.lock = asyncio.Lock()

    @property
    def messages(self) -> list[Message]:
        """Snapshot of the log; mutating it does not touch the conversation."""
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def append(self, message: Message) -> None:
        self._messages.append(message)
        self.updated_at = _utcnow_iso()

    def replace(self, messages: list[Message]) -> None:
        """Swap in a pruned log.

        Raises:
            ValidationError if the new log breaks tool_use/tool_result pairing
        """
        problems = find_pairing_violations(messages, allow_pending=True)
        if problems:
            raise ValidationError(f"Refusing to store inconsistent conversation: {problems[0]}")
        self._messages = list(messages)
        self.updated_at = _utcnow_iso()

    def clear(self) -> None:
        self._messages = []
        self.updated_at = _utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.session_id,
            "messages": [message.to_dict() for message in self._messages],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Conversation":
        """Create from dictionary."""
        return cls(
            session_id=data["id"],
            messages=[Message.from_dict(item) for item in data.get("messages", [])],
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class SessionInfo:
    """Summary row for a stored conversation."""

    id: str
    message_count: int
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)


class SessionManager:
    """Persists conversations in SQLite."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize session manager.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        # Ensure directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None
        self._init_lock = asyncio.Lock()

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        async with self._init_lock:
            if self._db is None:
                db = await aiosqlite.connect(str(self.db_path))
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS conversations (
                        id TEXT PRIMARY KEY,
                        messages TEXT NOT NULL DEFAULT '[]',
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)
                await db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_conversations_updated_at ON conversations(updated_at)"
                )
                await db.commit()
                self._db = db
        return self._db

    async def load_conversation(self, session_id: str) -> Conversation | None:
        """Load a conversation by session id.

        Returns:
            Conversation or None if not found

        Raises:
            SessionError if the stored row cannot be decoded
        """
        db = await self._ensure_db()

        async with db.execute(
            "SELECT id, messages, created_at, updated_at FROM conversations WHERE id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()

        if not row:
            return None

        try:
            return Conversation.from_dict({
                "id": row[0],
                "messages": json.loads(row[1]),
                "created_at": row[2],
                "updated_at": row[3],
            })
        except ValueError as e:
            raise SessionError(f"Stored conversation {session_id} is corrupt: {e}") from e

    async def save_conversation(self, conversation: Conversation) -> None:
        """Save a conversation, replacing any stored copy."""
        db = await self._ensure_db()
        data = conversation.to_dict()

        await db.execute("""
            INSERT OR REPLACE INTO conversations (id, messages, created_at, updated_at)
            VALUES (?, ?, ?, ?)
        """, (
            data["id"],
            json.dumps(data["messages"]),
            data["created_at"],
            data["updated_at"],
        ))
        await db.commit()
        log.debug("Saved conversation", session_id=conversation.session_id, messages=len(conversation))

    async def delete_conversation(self, session_id: str) -> bool:
        """Delete a conversation.

        Returns:
            True if deleted, False if not found
        """
        db = await self._ensure_db()

        cursor = await db.execute(
            "DELETE FROM conversations WHERE id = ?",
            (session_id,),
        )
        await db.commit()

        return cursor.rowcount > 0

    async def list_sessions(self, limit: int = 10) -> list[SessionInfo]:
        """List recently updated conversations."""
        db = await self._ensure_db()

        async with db.execute("""
            SELECT id, messages, created_at, updated_at
            FROM conversations
            ORDER BY updated_at DESC
            LIMIT ?
        """, (limit,)) as cursor:
            rows = await cursor.fetchall()

        return [
            SessionInfo(
                id=row[0],
                message_count=len(json.loads(row[1])),
                created_at=row[2],
                updated_at=row[3],
            )
            for row in rows
        ]

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


__all__ = ["Conversation", "SessionInfo", "SessionManager"]
