"""
Persistent Key-Value Store.

Async get/set/remove per string key: the contract the ``SessionStore``
is built on.  Two implementations:

- ``SQLiteKeyValueStore`` persists to the ``app_settings`` table of the
  local database.  Blocking sqlite calls run on a worker thread via
  ``asyncio.to_thread`` so the event loop (and the UI driving it) never
  stalls on disk I/O.
- ``MemoryKeyValueStore`` keeps values in a dict; used by tests and by
  ephemeral sessions that must not touch disk.

Each operation is atomic with respect to its own key.  There is no
cross-key transaction.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Protocol, runtime_checkable

from authclient.database import DatabaseManager
from authclient.logger import StructuredLogger


@runtime_checkable
class KeyValueStore(Protocol):
    """Async string-to-string persistence."""

    async def get(self, key: str) -> Optional[str]: ...  # noqa: E704

    async def set(self, key: str, value: str) -> None: ...  # noqa: E704

    async def remove(self, key: str) -> None: ...  # noqa: E704


class SQLiteKeyValueStore:
    """``KeyValueStore`` backed by the local ``app_settings`` table.

    Parameters
    ----------
    db:
        Initialised ``DatabaseManager`` whose schema has been created.
    logger:
        Structured logger instance.

    Raises from ``set``/``remove`` are ``sqlite3.Error`` subclasses; the
    ``SessionStore`` decides whether a failed write matters.
    """

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        self._db = db
        self._logger = logger

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._get_sync, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set_sync, key, value)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove_sync, key)

    def _get_sync(self, key: str) -> Optional[str]:
        with self._db.write_lock:
            row = self._db.sqlite.execute(
                "SELECT value FROM app_settings WHERE key = ?",
                (key,),
            ).fetchone()
        return row["value"] if row is not None else None

    def _set_sync(self, key: str, value: str) -> None:
        with self._db.write_lock:
            self._db.sqlite.execute(
                """
                INSERT INTO app_settings (key, value)
                VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value      = excluded.value,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, value),
            )
            self._db.sqlite.commit()
        self._logger.debug("app_settings[%s] updated.", key)

    def _remove_sync(self, key: str) -> None:
        with self._db.write_lock:
            self._db.sqlite.execute(
                "DELETE FROM app_settings WHERE key = ?",
                (key,),
            )
            self._db.sqlite.commit()
        self._logger.debug("app_settings[%s] removed.", key)


class MemoryKeyValueStore:
    """In-process ``KeyValueStore``.

    Sharing one instance between two ``SessionStore`` objects simulates
    a process restart: the second store sees what the first persisted.
    """

    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self._data: dict[str, str] = dict(initial or {})
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            self._data[key] = value

    async def remove(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    def snapshot(self) -> dict[str, str]:
        """Copy of the raw stored values (for assertions)."""
        return dict(self._data)
