"""Async SQLite persistence for sources, rate counters, threads and messages."""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite

from ragquery.errors import StorageError
from ragquery.models.domain import Cadence, ProviderType, RateCounter, Source, Window
from ragquery.services import logger as log_service


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_to_source(row: aiosqlite.Row) -> Source:
    return Source(
        id=int(row["id"]),
        url=row["url"],
        title=row["title"],
        content=row["content"],
        created_at=_parse_ts(row["created_at"]),
    )


class Storage:
    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return

            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(self.db_path)
            try:
                await conn.execute("PRAGMA journal_mode=WAL;")
                await conn.execute("PRAGMA foreign_keys=ON;")

                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS sources (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        url TEXT NOT NULL UNIQUE,
                        title TEXT NOT NULL,
                        content TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )

                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS rate_counters (
                        provider TEXT NOT NULL,
                        window_name TEXT NOT NULL,
                        used INTEGER NOT NULL,
                        limit_value INTEGER,
                        window_start TEXT NOT NULL,
                        cadence TEXT NOT NULL,
                        limit_observed INTEGER NOT NULL DEFAULT 0,
                        PRIMARY KEY (provider, window_name)
                    )
                    """
                )

                cur = await conn.execute("PRAGMA table_info(rate_counters)")
                columns = {row[1] for row in await cur.fetchall()}
                await cur.close()
                if "limit_observed" not in columns:
                    await conn.execute(
                        "ALTER TABLE rate_counters ADD COLUMN limit_observed INTEGER NOT NULL DEFAULT 0"
                    )

                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS threads (
                        id TEXT PRIMARY KEY,
                        title TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )

                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS messages (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        thread_id TEXT NOT NULL,
                        role TEXT NOT NULL,
                        content TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY(thread_id) REFERENCES threads(id) ON DELETE CASCADE
                    )
                    """
                )

                await conn.execute("CREATE INDEX IF NOT EXISTS idx_sources_created ON sources(created_at)")
                await conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id, id)")
                await conn.commit()
            finally:
                await conn.close()
            self._initialized = True
            log_service.log_db_operation("migrate", "*", "ok", details=str(self.db_path))

    @asynccontextmanager
    async def _connect(self, operation: str, table: str) -> AsyncIterator[aiosqlite.Connection]:
        await self.init()
        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        try:
            await conn.execute("PRAGMA foreign_keys=ON;")
            yield conn
        except aiosqlite.Error as exc:
            log_service.log_db_operation(operation, table, "error", error=str(exc))
            raise StorageError(f"{operation} on {table} failed: {exc}") from exc
        finally:
            await conn.close()

    # --- Sources ---

    async def insert_source(self, url: str, title: str, content: str) -> int:
        """Insert or update a source keyed by URL; returns the stable row id."""
        async with self._connect("insert_source", "sources") as conn:
            await conn.execute(
                """
                INSERT INTO sources (url, title, content, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(url) DO UPDATE SET
                    title=excluded.title,
                    content=excluded.content
                """,
                (url, title, content, _utc_now().isoformat()),
            )
            cur = await conn.execute("SELECT id FROM sources WHERE url=?", (url,))
            row = await cur.fetchone()
            await cur.close()
            await conn.commit()
        if row is None:
            raise StorageError(f"insert_source did not persist {url}")
        return int(row["id"])

    async def get_source(self, source_id: int) -> Source | None:
        async with self._connect("get_source", "sources") as conn:
            cur = await conn.execute("SELECT * FROM sources WHERE id=?", (source_id,))
            row = await cur.fetchone()
            await cur.close()
        return _row_to_source(row) if row else None

    async def get_sources(self, limit: int = 20) -> list[Source]:
        async with self._connect("get_sources", "sources") as conn:
            cur = await conn.execute(
                "SELECT * FROM sources ORDER BY created_at DESC, id DESC LIMIT ?",
                (limit,),
            )
            rows = await cur.fetchall()
            await cur.close()
        return [_row_to_source(r) for r in rows]

    async def search_sources(self, query: str, limit: int = 5) -> list[Source]:
        pattern = f"%{query}%"
        async with self._connect("search_sources", "sources") as conn:
            cur = await conn.execute(
                """
                SELECT * FROM sources
                WHERE content LIKE ? OR title LIKE ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (pattern, pattern, limit),
            )
            rows = await cur.fetchall()
            await cur.close()
        return [_row_to_source(r) for r in rows]

    # --- Rate counters ---

    async def get_rate_counters(self, provider: ProviderType) -> dict[Window, RateCounter] | None:
        async with self._connect("get_rate_counters", "rate_counters") as conn:
            cur = await conn.execute(
                "SELECT * FROM rate_counters WHERE provider=?",
                (provider.value,),
            )
            rows = await cur.fetchall()
            await cur.close()
        if not rows:
            return None
        counters: dict[Window, RateCounter] = {}
        for row in rows:
            window = Window(row["window_name"])
            counters[window] = RateCounter(
                window=window,
                used=int(row["used"]),
                limit=row["limit_value"],
                window_start=_parse_ts(row["window_start"]),
                cadence=Cadence(row["cadence"]),
                observed=bool(row["limit_observed"]),
            )
        return counters

    async def put_rate_counters(
        self, provider: ProviderType, counters: dict[Window, RateCounter]
    ) -> None:
        """Write every window of one provider in a single transaction."""
        async with self._connect("put_rate_counters", "rate_counters") as conn:
            await conn.executemany(
                """
                INSERT INTO rate_counters
                    (provider, window_name, used, limit_value, window_start, cadence, limit_observed)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider, window_name) DO UPDATE SET
                    used=excluded.used,
                    limit_value=excluded.limit_value,
                    window_start=excluded.window_start,
                    cadence=excluded.cadence,
                    limit_observed=excluded.limit_observed
                """,
                [
                    (
                        provider.value,
                        c.window.value,
                        c.used,
                        c.limit,
                        c.window_start.isoformat(),
                        c.cadence.value,
                        int(c.observed),
                    )
                    for c in counters.values()
                ],
            )
            await conn.commit()

    # --- Threads ---

    async def create_thread(self, title: str | None = None) -> dict[str, Any]:
        now = _utc_now().isoformat()
        thread = {
            "id": uuid.uuid4().hex,
            "title": (title or "New thread")[:100],
            "created_at": now,
            "updated_at": now,
        }
        async with self._connect("create_thread", "threads") as conn:
            await conn.execute(
                "INSERT INTO threads (id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (thread["id"], thread["title"], now, now),
            )
            await conn.commit()
        return thread

    async def get_thread(self, thread_id: str) -> dict[str, Any] | None:
        async with self._connect("get_thread", "threads") as conn:
            cur = await conn.execute("SELECT * FROM threads WHERE id=?", (thread_id,))
            row = await cur.fetchone()
            await cur.close()
        return dict(row) if row else None

    async def list_threads(self, limit: int = 50) -> list[dict[str, Any]]:
        async with self._connect("list_threads", "threads") as conn:
            cur = await conn.execute(
                "SELECT * FROM threads ORDER BY updated_at DESC LIMIT ?",
                (limit,),
            )
            rows = await cur.fetchall()
            await cur.close()
        return [dict(r) for r in rows]

    async def add_message(self, thread_id: str, role: str, content: str) -> dict[str, Any]:
        now = _utc_now().isoformat()
        async with self._connect("add_message", "messages") as conn:
            cur = await conn.execute(
                "INSERT INTO messages (thread_id, role, content, created_at) VALUES (?, ?, ?, ?)",
                (thread_id, role, content, now),
            )
            message_id = cur.lastrowid
            await cur.close()
            await conn.execute("UPDATE threads SET updated_at=? WHERE id=?", (now, thread_id))
            await conn.commit()
        return {
            "id": message_id,
            "thread_id": thread_id,
            "role": role,
            "content": content,
            "created_at": now,
        }

    async def get_messages(self, thread_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        """Messages in chronological order; with ``limit``, only the most recent ones."""
        async with self._connect("get_messages", "messages") as conn:
            if limit is None:
                cur = await conn.execute(
                    "SELECT * FROM messages WHERE thread_id=? ORDER BY id",
                    (thread_id,),
                )
            else:
                cur = await conn.execute(
                    """
                    SELECT * FROM (
                        SELECT * FROM messages WHERE thread_id=? ORDER BY id DESC LIMIT ?
                    ) ORDER BY id
                    """,
                    (thread_id, limit),
                )
            rows = await cur.fetchall()
            await cur.close()
        return [dict(r) for r in rows]
