"""Tests for the Database connection layer."""

from __future__ import annotations

import sqlite3

import pytest

from movelens.db.connection import Database


def test_connect_creates_file(tmp_path):
    db_path = tmp_path / ".movelens.db"
    conn = Database(db_path).connect()
    conn.close()
    assert db_path.exists()


def test_sqlite_vec_loads(tmp_path):
    conn = Database(tmp_path / ".movelens.db").connect()
    version = conn.execute("SELECT vec_version()").fetchone()[0]
    conn.close()
    assert version.startswith("v")


def test_foreign_keys_enabled(tmp_path):
    conn = Database(tmp_path / ".movelens.db").connect()
    assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
    conn.close()


def test_wal_journal_mode(tmp_path):
    conn = Database(tmp_path / ".movelens.db").connect()
    assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
    conn.close()


def test_row_factory_is_row(tmp_path):
    conn = Database(tmp_path / ".movelens.db").connect()
    assert conn.row_factory is sqlite3.Row
    conn.close()


def test_context_manager_closes_connection(tmp_path):
    db = Database(tmp_path / ".movelens.db")
    with db as conn:
        conn.execute("SELECT 1")
    assert db._conn is None


def test_cosine_distance_available(tmp_path):
    with Database(tmp_path / ".movelens.db") as conn:
        distance = conn.execute(
            "SELECT vec_distance_cosine(vec_f32('[1, 0]'), vec_f32('[1, 0]'))"
        ).fetchone()[0]
    assert distance == pytest.approx(0.0, abs=1e-6)
