"""
Local Database Layer.

Owns the single SQLite connection backing the persistent key-value
store.  The file holds one table::

    CREATE TABLE IF NOT EXISTS app_settings (
        key        TEXT PRIMARY KEY,
        value      TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )

Security Note
-------------
The database file is not encrypted at rest.  Session tokens written
through ``SessionStore`` are AES-256-GCM encrypted before they reach
this layer (see ``TokenCipher``); the remaining records (remember-me
flag, pending email, reset context) are stored as plain text.

Usage::

    db = DatabaseManager(
        sqlite_path=Path("authclient_local.db"),
        logger=StructuredLogger(name="database"),
    )
    db.initialize_schema()
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Union

from authclient.logger import StructuredLogger

_SCHEMA: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
)


class DatabaseManager:
    """Manages the connection to the local SQLite database.

    The connection is opened with ``check_same_thread=False`` because the
    async key-value store runs its blocking calls on worker threads via
    ``asyncio.to_thread``; every access goes through :pyattr:`write_lock`.

    Parameters
    ----------
    sqlite_path:
        Filesystem path for the SQLite file, or ``":memory:"``.
    logger:
        A ``StructuredLogger`` instance for structured JSON log output.
    """

    def __init__(
        self,
        sqlite_path: Union[Path, str],
        logger: StructuredLogger,
    ) -> None:
        self._logger: StructuredLogger = logger
        self._write_lock: threading.RLock = threading.RLock()
        self._closed: bool = False
        self._sqlite_conn: sqlite3.Connection = self._connect_sqlite(sqlite_path)

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Return the open SQLite connection.

        Raises
        ------
        RuntimeError
            If :meth:`close` has already been called.
        """
        if self._closed:
            raise RuntimeError("The local database connection is closed.")
        return self._sqlite_conn

    @property
    def write_lock(self) -> threading.RLock:
        """Lock serialising every statement on the shared connection::

            with db.write_lock:
                db.sqlite.execute("INSERT ...")
                db.sqlite.commit()
        """
        return self._write_lock

    def initialize_schema(self) -> None:
        """Create the tables if they do not exist.  Idempotent."""
        with self._write_lock:
            for statement in _SCHEMA:
                self.sqlite.execute(statement)
            self.sqlite.commit()
        self._logger.debug("Local schema initialised.")

    def close(self) -> None:
        """Close the SQLite connection.  Safe to call multiple times."""
        with self._write_lock:
            if self._closed:
                return
            try:
                self._sqlite_conn.close()
                self._logger.info("SQLite connection closed.")
            except sqlite3.ProgrammingError:
                pass
            self._closed = True

    def _connect_sqlite(self, path: Union[Path, str]) -> sqlite3.Connection:
        """Open (or create) the SQLite database.

        Raises
        ------
        PermissionError
            If the OS denies access to the database file or its directory,
            re-raised with a message the UI can show as-is.
        """
        try:
            conn = sqlite3.connect(str(path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            if str(path) != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL;")
            self._logger.info("SQLite database opened at %s", path)
            return conn
        except PermissionError as exc:
            msg = (
                f"Cannot open the local database at '{path}'. "
                "The file or its directory may be read-only or locked by "
                "another process.  Please check file permissions and try again."
            )
            self._logger.error(msg)
            raise PermissionError(msg) from exc
