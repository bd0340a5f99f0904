import os
import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS CONVERSATION (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        model TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS MESSAGE (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        message_id TEXT NOT NULL,
        conversation_id TEXT NOT NULL REFERENCES CONVERSATION(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        image_count INTEGER NOT NULL DEFAULT 0,
        metadata TEXT,
        created_at INTEGER NOT NULL
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS MESSAGE_ID_ROLE ON MESSAGE (message_id, role)",
    "CREATE INDEX IF NOT EXISTS MESSAGE_CONVERSATION ON MESSAGE (conversation_id, id)",
)


class AsyncDatabaseInitializer:
    """
    Manage the async SQLite database holding conversations and messages.

    - The database file is located at: <DATABASE_DIR>/app.db
    - DATABASE_DIR is required unless `database_dir` is passed. A RuntimeError
      is raised if it is missing or invalid (not a directory and cannot be created).
    - On the first call to `ensure_database()` for a given instance:
        * When `reset_on_start` is set, any existing database file is deleted.
        * The CONVERSATION and MESSAGE tables and their indexes are created.
    - Subsequent calls to `ensure_database()` on the same instance are no-ops,
      so it is safe for `connection()` to call it.
    """

    def __init__(
        self,
        database_dir: Optional[Path | str] = None,
        reset_on_start: Optional[bool] = None,
    ) -> None:
        env_dir = str(database_dir) if database_dir is not None else os.getenv("DATABASE_DIR")

        if env_dir is None or not env_dir.strip():
            raise RuntimeError(
                "DATABASE_DIR environment variable must be set to a writable "
                "directory path where the SQLite database file will be stored."
            )

        db_dir = Path(env_dir).expanduser()

        if db_dir.exists() and not db_dir.is_dir():
            raise RuntimeError(
                f"DATABASE_DIR={env_dir!r} points to a file, not a directory "
                f"({db_dir}). Please set DATABASE_DIR to a directory path."
            )

        try:
            db_dir.mkdir(parents=True, exist_ok=True)
        except Exception as exc:
            raise RuntimeError(
                f"Failed to create or access database directory at {db_dir}"
            ) from exc

        if reset_on_start is None:
            reset_on_start = os.getenv("DATABASE_RESET_ON_START", "").strip().lower() in {"1", "true", "yes", "on"}

        self.db_dir = db_dir
        self.db_path = self.db_dir / "app.db"
        self.reset_on_start = reset_on_start

        # One-time setup per instance.
        self._initialized = False

    async def ensure_database(self) -> None:
        """
        Ensure the SQLite database exists at `self.db_path` with the chat schema.

        Subsequent calls on the same instance are no-ops.
        """
        if self._initialized:
            return

        if self.reset_on_start and self.db_path.exists():
            try:
                self.db_path.unlink()
            except Exception as exc:
                raise RuntimeError(
                    f"Failed to delete existing database at {self.db_path}"
                ) from exc

        max_attempts = 3
        for attempt in range(1, max_attempts + 1):
            try:
                async with aiosqlite.connect(self.db_path) as db:
                    for statement in _SCHEMA:
                        await db.execute(statement)
                    await db.commit()
                break
            except FileNotFoundError:
                # On some platforms a transient missing file error may occur; retry a few times.
                if attempt >= max_attempts:
                    raise
                await asyncio.sleep(0.1 * attempt)

        self._initialized = True

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Async context manager yielding an `aiosqlite.Connection`.

        The schema is created on the first use via `ensure_database()`.
        """
        await self.ensure_database()
        conn = await aiosqlite.connect(self.db_path)
        try:
            await conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        finally:
            await conn.close()
