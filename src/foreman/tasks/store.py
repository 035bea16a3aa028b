"""Key/value blob stores for persisted queue state.

The queue never assumes a filesystem: it reads and writes one opaque
string blob under a well-known key. Three implementations:

- ``InMemoryStateStore``: dict-backed, for tests.
- ``JsonFileStateStore``: one ``<key>.json`` file per key, written
  atomically with a temp file + ``os.replace``.
- ``SqliteStateStore``: a single ``kv`` table via ``aiosqlite``.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from pathlib import Path

import aiosqlite

from foreman.core.config import StateConfig
from foreman.core.logging import get_logger

_logger = get_logger("tasks.store")


class StateStore(ABC):
    """Abstract base class for blob stores."""

    @abstractmethod
    async def read(self, key: str) -> str | None:
        """Return the blob stored under ``key``, or None if there is none."""
        ...

    @abstractmethod
    async def write(self, key: str, blob: str) -> None:
        """Replace the blob stored under ``key``.

        Must be atomic: a failed write leaves the previous blob intact.
        """
        ...

    async def open(self) -> None:  # noqa: B027
        """Acquire resources. No-op unless the backend needs a connection."""

    async def close(self) -> None:  # noqa: B027
        """Release resources acquired by ``open()``."""

    async def __aenter__(self) -> StateStore:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()


class InMemoryStateStore(StateStore):
    """In-memory store for testing."""

    def __init__(self) -> None:
        self.blobs: dict[str, str] = {}

    async def read(self, key: str) -> str | None:
        return self.blobs.get(key)

    async def write(self, key: str, blob: str) -> None:
        self.blobs[key] = blob


class JsonFileStateStore(StateStore):
    """File-per-key store.

    File naming: ``{state_dir}/{key}.json``
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        # Sanitize key for filesystem
        safe_key = "".join(c if c.isalnum() or c in "-_" else "_" for c in key)
        return self.state_dir / f"{safe_key}.json"

    async def read(self, key: str) -> str | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    async def write(self, key: str, blob: str) -> None:
        path = self.path_for(key)
        temp_file = path.with_suffix(".json.tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            f.write(blob)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_file, path)


class SqliteStateStore(StateStore):
    """SQLite-backed store.

    Usage::

        async with SqliteStateStore(db_path) as store:
            await store.write("queue", blob)
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the database connection and create the table."""
        if self._conn is not None:
            return
        conn = await aiosqlite.connect(str(self._db_path))
        try:
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL DEFAULT (julianday('now'))
                )
                """
            )
            await conn.commit()
        except Exception:
            await conn.close()
            raise
        self._conn = conn
        _logger.debug("store.opened", path=str(self._db_path))

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @property
    def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("SqliteStateStore not opened — call open() first")
        return self._conn

    async def read(self, key: str) -> str | None:
        async with self._db.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
        return row[0] if row is not None else None

    async def write(self, key: str, blob: str) -> None:
        await self._db.execute(
            """
            INSERT INTO kv (key, value, updated_at) VALUES (?, ?, julianday('now'))
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, blob),
        )
        await self._db.commit()


def create_store(config: StateConfig) -> StateStore:
    """Build the store selected by ``config.backend``.

    For ``sqlite``, ``config.path`` is the database file when it has a
    suffix, otherwise a directory holding ``foreman.db``.
    """
    if config.backend == "memory":
        return InMemoryStateStore()
    if config.backend == "sqlite":
        db_path = config.path if config.path.suffix else config.path / "foreman.db"
        return SqliteStateStore(db_path)
    return JsonFileStateStore(config.path)


__all__ = [
    "InMemoryStateStore",
    "JsonFileStateStore",
    "SqliteStateStore",
    "StateStore",
    "create_store",
]
