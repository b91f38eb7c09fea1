"""Race/node storage."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import AsyncIterator, List, Optional, Protocol

import aiosqlite

from .exceptions import PersistenceError
from .transponder.frames import decode_ns

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS posts (
    id      INTEGER PRIMARY KEY,
    title   TEXT NOT NULL,
    content TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS race (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    start_time BLOB NOT NULL,   -- wall-clock ns, 8-byte big-endian
    end_time   BLOB
);

CREATE TABLE IF NOT EXISTS node (
    id       INTEGER PRIMARY KEY AUTOINCREMENT,
    peak     INTEGER NOT NULL,
    time     BLOB    NOT NULL,  -- ns since race start, 8-byte big-endian
    duration REAL    NOT NULL,  -- seconds the peak was held
    race_id  INTEGER NOT NULL REFERENCES race(id)
);

CREATE INDEX IF NOT EXISTS idx_node_race ON node(race_id);
"""


@dataclass(frozen=True)
class NodeRecord:
    id: int
    peak: int
    time: int
    duration: float
    race_id: int

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class RaceRecord:
    id: int
    start_time: int
    end_time: Optional[int]

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class PostRecord:
    id: int
    title: str
    content: str


class Persistence(Protocol):
    async def insert_race(self, start_time: bytes) -> int: ...

    async def finish_race(self, race_id: int, end_time: bytes) -> None: ...

    async def insert_node(self, peak: int, elapsed_ns: bytes, duration: float, race_id: int) -> int: ...

    async def insert_placeholder_post(self, title: str, content: str) -> int: ...

    async def list_nodes(self, race_id: Optional[int] = None) -> List[NodeRecord]: ...


@asynccontextmanager
async def _wrap(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except aiosqlite.Error as exc:
        raise PersistenceError(f"{operation} failed: {exc}") from exc


class SqlitePersistence:
    """
    SQLite store behind a single aiosqlite connection.

    Usable as an async context manager; ``open`` creates the schema if it is
    missing.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._db: Optional[aiosqlite.Connection] = None

    async def open(self) -> "SqlitePersistence":
        if self._db is not None:
            return self
        if str(self.path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        async with _wrap("open"):
            self._db = await aiosqlite.connect(self.path)
            await self._db.executescript(SCHEMA_SQL)
            await self._db.commit()
        logger.info("Opened database %s", self.path)
        return self

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "SqlitePersistence":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise PersistenceError(f"Database {self.path} is not open")
        return self._db

    async def _insert(self, operation: str, sql: str, params: tuple) -> int:
        async with _wrap(operation):
            cursor = await self.db.execute(sql, params)
            await self.db.commit()
            row_id = cursor.lastrowid
            await cursor.close()
        return int(row_id)

    async def insert_race(self, start_time: bytes) -> int:
        return await self._insert("insert_race", "INSERT INTO race (start_time) VALUES (?)", (start_time,))

    async def finish_race(self, race_id: int, end_time: bytes) -> None:
        async with _wrap("finish_race"):
            await self.db.execute("UPDATE race SET end_time = ? WHERE id = ?", (end_time, race_id))
            await self.db.commit()

    async def insert_node(self, peak: int, elapsed_ns: bytes, duration: float, race_id: int) -> int:
        return await self._insert(
            "insert_node",
            "INSERT INTO node (peak, time, duration, race_id) VALUES (?, ?, ?, ?)",
            (peak, elapsed_ns, duration, race_id),
        )

    async def insert_placeholder_post(self, title: str, content: str) -> int:
        return await self._insert(
            "insert_placeholder_post", "INSERT INTO posts (title, content) VALUES (?, ?)", (title, content)
        )

    async def list_nodes(self, race_id: Optional[int] = None) -> List[NodeRecord]:
        sql = "SELECT id, peak, time, duration, race_id FROM node"
        params: tuple = ()
        if race_id is not None:
            sql += " WHERE race_id = ?"
            params = (race_id,)
        async with _wrap("list_nodes"):
            async with self.db.execute(sql + " ORDER BY id", params) as cursor:
                rows = await cursor.fetchall()
        return [
            NodeRecord(id=row[0], peak=row[1], time=decode_ns(row[2]), duration=row[3], race_id=row[4])
            for row in rows
        ]

    async def list_races(self) -> List[RaceRecord]:
        async with _wrap("list_races"):
            async with self.db.execute("SELECT id, start_time, end_time FROM race ORDER BY id") as cursor:
                rows = await cursor.fetchall()
        return [
            RaceRecord(
                id=row[0],
                start_time=decode_ns(row[1]),
                end_time=decode_ns(row[2]) if row[2] else None,
            )
            for row in rows
        ]

    async def list_posts(self) -> List[PostRecord]:
        async with _wrap("list_posts"):
            async with self.db.execute("SELECT id, title, content FROM posts ORDER BY id") as cursor:
                rows = await cursor.fetchall()
        return [PostRecord(id=row[0], title=row[1], content=row[2]) for row in rows]
