"""Async Data Access Layer for the CONVERSATION table."""

from __future__ import annotations

import time
from typing import List, Optional, Sequence

from models.message_record import ConversationRecord
from utils.database_init import AsyncDatabaseInitializer


class ConversationDAL:
    """Data access layer for CONVERSATION records."""

    _COLUMNS = ("id", "title", "model", "created_at", "updated_at")
    _COLUMN_LIST = ", ".join(_COLUMNS)

    def __init__(self, db_initializer: AsyncDatabaseInitializer) -> None:
        self._db = db_initializer

    async def create_conversation(self, record: ConversationRecord) -> str:
        """Insert a CONVERSATION row and return its id."""
        now = int(time.time())
        created_at = record.created_at or now
        async with self._db.connection() as conn:
            await conn.execute(
                f"INSERT INTO CONVERSATION ({self._COLUMN_LIST}) VALUES (?, ?, ?, ?, ?)",
                (record.id, record.title, record.model, created_at, record.updated_at or created_at),
            )
            await conn.commit()
        return record.id

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        """Return the ConversationRecord for `conversation_id`, or None if not found."""
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"SELECT {self._COLUMN_LIST} FROM CONVERSATION WHERE id = ?",
                (conversation_id,),
            )
            row = await cur.fetchone()
            return self._row_to_record(row) if row else None

    async def list_conversations(self, limit: int = 50, offset: int = 0) -> List[ConversationRecord]:
        """List conversations, most recently active first."""
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"SELECT {self._COLUMN_LIST} FROM CONVERSATION ORDER BY updated_at DESC LIMIT ? OFFSET ?",
                (limit, offset),
            )
            rows = await cur.fetchall()
            return [self._row_to_record(r) for r in rows]

    async def touch(self, conversation_id: str) -> bool:
        """Bump `updated_at`. Returns True if a row was changed."""
        async with self._db.connection() as conn:
            await conn.execute(
                "UPDATE CONVERSATION SET updated_at = ? WHERE id = ?",
                (int(time.time()), conversation_id),
            )
            await conn.commit()
            cur = await conn.execute("SELECT changes()")
            changed = await cur.fetchone()
            return bool(changed and changed[0] > 0)

    @staticmethod
    def _row_to_record(row: Sequence[object]) -> ConversationRecord:
        return ConversationRecord(
            id=row[0],
            title=row[1],
            model=row[2],
            created_at=row[3],
            updated_at=row[4],
        )
