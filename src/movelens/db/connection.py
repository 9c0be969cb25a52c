"""Opening the per-project ``.movelens.db`` file."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import sqlite_vec

_PRAGMAS = ("PRAGMA foreign_keys = ON", "PRAGMA journal_mode = WAL")


class Database:
    """Handle on a movelens database file.

    ``connect()`` returns a fresh connection with rows as ``sqlite3.Row`` and
    the sqlite-vec functions (``vec_f32``, ``vec_distance_cosine``) available.
    Used as a context manager it owns one connection for the ``with`` block.
    ``":memory:"`` gives a throwaway in-memory database.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.enable_load_extension(True)
        try:
            sqlite_vec.load(conn)
        finally:
            conn.enable_load_extension(False)
        for pragma in _PRAGMAS:
            conn.execute(pragma)
        return conn

    def __enter__(self) -> sqlite3.Connection:
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        if self._conn is not None:
            self._conn.close()
        self._conn = None
