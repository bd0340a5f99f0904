"""Async Data Access Layer for the MESSAGE table.

Provides MessageDAL with the async operations the chat history needs,
compatible with `utils.database_init.AsyncDatabaseInitializer`.
"""

from __future__ import annotations

import json
import time
from typing import List, Optional, Sequence

from models.message_record import MessageRecord
from utils.database_init import AsyncDatabaseInitializer


class MessageDAL:
    """Data access layer for MESSAGE records.

    A message id and role pair is unique, so saving the same turn twice
    (for example after a client resend) keeps the first row.
    """

    _COLUMNS = (
        "id",
        "message_id",
        "conversation_id",
        "role",
        "content",
        "image_count",
        "metadata",
        "created_at",
    )
    _COLUMN_LIST, _INSERT_COLUMNS = ", ".join(_COLUMNS), ", ".join(_COLUMNS[1:])

    def __init__(self, db_initializer: AsyncDatabaseInitializer) -> None:
        self._db = db_initializer

    async def create_message(self, record: MessageRecord) -> Optional[int]:
        """Insert a MESSAGE row.

        Args:
            record: MessageRecord with `id=None`.

        Returns:
            The new primary key, or None when the turn was already stored.
        """
        created_at = record.created_at or int(time.time())
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"INSERT OR IGNORE INTO MESSAGE ({self._INSERT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    record.message_id,
                    record.conversation_id,
                    record.role,
                    record.content,
                    record.image_count,
                    json.dumps(record.metadata) if record.metadata else None,
                    created_at,
                ),
            )
            await conn.commit()
            return cur.lastrowid if cur.rowcount else None

    async def recent_messages(self, conversation_id: str, limit: int = 20) -> List[MessageRecord]:
        """Return the last `limit` messages of a conversation, oldest first."""
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"SELECT {self._COLUMN_LIST} FROM MESSAGE WHERE conversation_id = ? ORDER BY id DESC LIMIT ?",
                (conversation_id, limit),
            )
            rows = await cur.fetchall()
            return [self._row_to_record(r) for r in reversed(rows)]

    async def get_by_message_id(self, message_id: str, role: str) -> Optional[MessageRecord]:
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"SELECT {self._COLUMN_LIST} FROM MESSAGE WHERE message_id = ? AND role = ?",
                (message_id, role),
            )
            row = await cur.fetchone()
            return self._row_to_record(row) if row else None

    @staticmethod
    def _row_to_record(row: Sequence[object]) -> MessageRecord:
        """Convert a DB row tuple into a MessageRecord."""
        return MessageRecord(
            id=row[0],
            message_id=row[1],
            conversation_id=row[2],
            role=row[3],
            content=row[4],
            image_count=row[5],
            metadata=json.loads(row[6]) if row[6] else {},
            created_at=row[7],
        )
