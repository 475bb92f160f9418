"""Chat message persistence with SQLite storage."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from agent_relay.config import get_config
from agent_relay.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def new_chat_id() -> str:
    return uuid.uuid4().hex


@dataclass
class StoredMessage:
    """One persisted chat message."""

    id: str
    chat_id: str
    role: str  # "user" or "assistant"
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "chatId": self.chat_id,
            "role": self.role,
            "content": self.content,
            "metadata": self.metadata,
            "createdAt": self.created_at,
        }


class ChatStore:
    """Stores chat messages in SQLite, one row per message."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            self.db_path = Path(get_config().store.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    chat_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    seq INTEGER NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_chat_seq ON messages(chat_id, seq)"
            )
            await self._db.commit()
        return self._db

    async def save_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> StoredMessage:
        """Append a message to a chat."""
        db = await self._ensure_db()
        message = StoredMessage(
            id=uuid.uuid4().hex,
            chat_id=chat_id,
            role=role,
            content=content,
            metadata=dict(metadata or {}),
        )
        async with db.execute(
            "SELECT COALESCE(MAX(seq), 0) FROM messages WHERE chat_id = ?", (chat_id,)
        ) as cursor:
            row = await cursor.fetchone()
        seq = (row[0] if row else 0) + 1

        await db.execute(
            """
            INSERT INTO messages (id, chat_id, role, content, metadata, created_at, seq)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message.id,
                message.chat_id,
                message.role,
                message.content,
                json.dumps(message.metadata, default=str),
                message.created_at,
                seq,
            ),
        )
        await db.commit()
        log.debug("Saved chat message", chat_id=chat_id, role=role, chars=len(content))
        return message

    async def list_messages(self, chat_id: str) -> list[StoredMessage]:
        """Return a chat's messages in insertion order."""
        db = await self._ensure_db()
        async with db.execute(
            """
            SELECT id, chat_id, role, content, metadata, created_at
            FROM messages WHERE chat_id = ? ORDER BY seq
            """,
            (chat_id,),
        ) as cursor:
            rows = await cursor.fetchall()

        return [
            StoredMessage(
                id=row[0],
                chat_id=row[1],
                role=row[2],
                content=row[3],
                metadata=json.loads(row[4] or "{}"),
                created_at=row[5],
            )
            for row in rows
        ]

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
