from __future__ import annotations
import sqlite3
import aiosqlite
import datetime
import json
from contextlib import contextmanager, asynccontextmanager
from typing import Callable, List, Optional, Tuple

from models import OfflineSession


class Database:
    """Provides SQLite connection management and schema initialization."""

    _TABLE_DEFINITIONS = {
        "local_storage": (
            """CREATE TABLE local_storage (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );""",
            ["key", "value"],
        ),
        "workout_sessions": (
            """CREATE TABLE workout_sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    workout_id TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    ended_at TEXT NOT NULL,
                    exercises TEXT NOT NULL,
                    synced INTEGER NOT NULL DEFAULT 0,
                    synced_at TEXT
                );""",
            [
                "id",
                "user_id",
                "workout_id",
                "started_at",
                "ended_at",
                "exercises",
                "synced",
                "synced_at",
            ],
        ),
    }

    _INDEX_DEFINITIONS = [
        "CREATE INDEX IF NOT EXISTS idx_workout_sessions_synced "
        "ON workout_sessions (synced);",
    ]

    def __init__(self, db_path: str = "fitflow.db") -> None:
        self._db_path = db_path
        self._ensure_schema()
        self._ensure_indexes()

    @contextmanager
    def _connection(self):
        connection = sqlite3.connect(self._db_path)
        try:
            yield connection
            connection.commit()
        finally:
            connection.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                self._ensure_table(conn, table, sql, columns)

    def _ensure_indexes(self) -> None:
        with self._connection() as conn:
            for sql in self._INDEX_DEFINITIONS:
                conn.execute(sql)

    def _ensure_table(
        self, conn: sqlite3.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if cur.fetchone() is None:
            conn.execute(sql)
            return

        cur = conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in cur.fetchall()]
        if existing_cols == columns:
            return

        conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
        conn.execute(sql)

        common = [c for c in existing_cols if c in columns]
        if common:
            cols = ", ".join(common)
            missing = [c for c in columns if c not in existing_cols]
            if missing:
                def default_val(col: str) -> str:
                    if col == "synced":
                        return "0"
                    return "NULL"

                defaults = ", ".join(default_val(c) for c in missing)
                conn.execute(
                    f"INSERT INTO {table} ({cols}, {', '.join(missing)}) SELECT {cols}, {defaults} FROM {table}_old;"
                )
            else:
                conn.execute(
                    f"INSERT INTO {table} ({cols}) SELECT {cols} FROM {table}_old;"
                )
        conn.execute(f"DROP TABLE {table}_old;")


class BaseRepository(Database):
    """Base repository providing helper methods."""

    def execute(self, query: str, params: Tuple = ()) -> int:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.lastrowid

    def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.fetchall()


class AsyncDatabase(Database):
    """Provides asynchronous connection management."""

    @asynccontextmanager
    async def _async_connection(self):
        conn = await aiosqlite.connect(self._db_path)
        try:
            yield conn
            await conn.commit()
        finally:
            await conn.close()


class AsyncBaseRepository(AsyncDatabase):
    """Asynchronous variant of BaseRepository using aiosqlite."""

    async def execute(self, query: str, params: Tuple = ()) -> int:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.lastrowid

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            return rows


StorageListener = Callable[[str], None]


class StorageChannel:
    """Broadcast storage writes to every other handle on the same channel.

    Mirrors the browser ``storage`` event: the handle that wrote never hears
    about its own write. Delivery is synchronous and in-process only.
    """

    def __init__(self) -> None:
        self._listeners: list[tuple[object, StorageListener]] = []

    def subscribe(self, origin: object, listener: StorageListener) -> Callable[[], None]:
        entry = (origin, listener)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    def publish(self, origin: object, key: str) -> None:
        for owner, listener in list(self._listeners):
            if owner is not origin:
                listener(key)


class LocalStorageRepository(BaseRepository):
    """Key-value storage shared by every handle opened on the same file."""

    def __init__(
        self, db_path: str = "fitflow.db", channel: StorageChannel | None = None
    ) -> None:
        super().__init__(db_path)
        self.channel = channel or StorageChannel()

    def get_item(self, key: str) -> Optional[str]:
        rows = self.fetch_all("SELECT value FROM local_storage WHERE key = ?;", (key,))
        return rows[0][0] if rows else None

    def set_item(self, key: str, value: str) -> None:
        self.execute(
            "INSERT INTO local_storage (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value;",
            (key, value),
        )
        self.channel.publish(self, key)

    def remove_item(self, key: str) -> None:
        self.execute("DELETE FROM local_storage WHERE key = ?;", (key,))
        self.channel.publish(self, key)

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        """Call ``listener(key)`` whenever another handle writes."""
        return self.channel.subscribe(self, listener)


class OfflineSessionRepository(AsyncBaseRepository):
    """Durable queue of sessions completed while offline."""

    _COLUMNS = "id, user_id, workout_id, started_at, ended_at, exercises, synced"

    @staticmethod
    def _to_session(row: Tuple) -> OfflineSession:
        sid, user_id, workout_id, started_at, ended_at, exercises, synced = row
        return OfflineSession(
            id=sid,
            user_id=user_id,
            workout_id=workout_id,
            started_at=started_at,
            ended_at=ended_at,
            exercises=json.loads(exercises),
            synced=bool(synced),
        )

    async def save(self, session: OfflineSession) -> int:
        """Queue ``session`` as unsynced and return its local id."""
        exercises = json.dumps(
            [e.model_dump() for e in session.exercises]
        )
        return await self.execute(
            "INSERT INTO workout_sessions (user_id, workout_id, started_at, ended_at, exercises, synced) "
            "VALUES (?, ?, ?, ?, ?, 0);",
            (
                session.user_id,
                session.workout_id,
                session.started_at,
                session.ended_at,
                exercises,
            ),
        )

    async def get_unsynced(self) -> List[OfflineSession]:
        rows = await self.fetch_all(
            f"SELECT {self._COLUMNS} FROM workout_sessions WHERE synced = 0;"
        )
        return [self._to_session(r) for r in rows]

    async def mark_synced(self, session_id: int) -> None:
        await self.execute(
            "UPDATE workout_sessions SET synced = 1, synced_at = ? WHERE id = ?;",
            (datetime.datetime.now(datetime.timezone.utc).isoformat(), session_id),
        )

    async def fetch_all_sessions(self) -> List[OfflineSession]:
        rows = await self.fetch_all(
            f"SELECT {self._COLUMNS} FROM workout_sessions ORDER BY id;"
        )
        return [self._to_session(r) for r in rows]

    async def fetch_detail(self, session_id: int) -> Optional[OfflineSession]:
        rows = await self.fetch_all(
            f"SELECT {self._COLUMNS} FROM workout_sessions WHERE id = ?;",
            (session_id,),
        )
        return self._to_session(rows[0]) if rows else None

    async def pending_count(self) -> int:
        rows = await self.fetch_all(
            "SELECT COUNT(*) FROM workout_sessions WHERE synced = 0;"
        )
        return int(rows[0][0])
