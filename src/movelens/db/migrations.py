"""Forward-only migration runner for the MoveLens database schema.

Relational tables (packages, modules, functions, analyses, edges, chats) and the
RAG document index share one database file. Embeddings live in a BLOB column of
rag_documents and are ranked with sqlite-vec's vec_distance_cosine().
"""

from __future__ import annotations

import sqlite3

# Tracks applied versions; created ahead of everything else.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS packages (
    id                  TEXT PRIMARY KEY,
    address             TEXT NOT NULL UNIQUE,
    display_name        TEXT,
    explanation         TEXT,
    explanation_status  TEXT NOT NULL DEFAULT 'none',
    created_at          DATETIME NOT NULL DEFAULT (datetime('now')),
    updated_at          DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS modules (
    id                  TEXT PRIMARY KEY,
    package_id          TEXT NOT NULL REFERENCES packages(id) ON DELETE CASCADE,
    name                TEXT NOT NULL,
    full_name           TEXT NOT NULL UNIQUE,
    decompiled_source   TEXT,
    explanation         TEXT,
    ultra_summary       TEXT,
    explanation_status  TEXT NOT NULL DEFAULT 'none',
    friends             TEXT NOT NULL DEFAULT '[]',
    flags               TEXT NOT NULL DEFAULT '[]',
    created_at          DATETIME NOT NULL DEFAULT (datetime('now')),
    updated_at          DATETIME NOT NULL DEFAULT (datetime('now')),
    UNIQUE (package_id, name)
);

CREATE TABLE IF NOT EXISTS functions (
    id          TEXT PRIMARY KEY,
    module_id   TEXT NOT NULL REFERENCES modules(id) ON DELETE CASCADE,
    name        TEXT NOT NULL,
    visibility  TEXT NOT NULL,
    is_entry    INTEGER NOT NULL DEFAULT 0,
    UNIQUE (module_id, name)
);

CREATE TABLE IF NOT EXISTS analyses (
    id               TEXT PRIMARY KEY,
    package_address  TEXT NOT NULL,
    network          TEXT NOT NULL DEFAULT 'mainnet',
    summary_json     TEXT NOT NULL,
    created_at       DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS edges (
    id             TEXT PRIMARY KEY,
    analysis_id    TEXT NOT NULL REFERENCES analyses(id) ON DELETE CASCADE,
    kind           TEXT NOT NULL,
    from_node      TEXT NOT NULL,
    to_node        TEXT NOT NULL,
    evidence_json  TEXT
);
CREATE INDEX IF NOT EXISTS edges_analysis_kind_idx ON edges(analysis_id, kind);

CREATE TABLE IF NOT EXISTS source_cache (
    package_address  TEXT NOT NULL,
    module_name      TEXT NOT NULL,
    network          TEXT NOT NULL,
    source_code      TEXT NOT NULL,
    functions_json   TEXT NOT NULL DEFAULT '[]',
    fetched_at       DATETIME NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (package_address, module_name, network)
);

CREATE TABLE IF NOT EXISTS rag_documents (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    module_ref       TEXT NOT NULL,
    package_address  TEXT NOT NULL,
    module_name      TEXT NOT NULL,
    content          TEXT NOT NULL,
    doc_type         TEXT NOT NULL DEFAULT 'source',
    embedding        BLOB NOT NULL,
    created_at       DATETIME NOT NULL DEFAULT (datetime('now')),
    updated_at       DATETIME NOT NULL DEFAULT (datetime('now')),
    UNIQUE (module_ref, doc_type)
);
CREATE INDEX IF NOT EXISTS rag_documents_package_idx ON rag_documents(package_address);
CREATE INDEX IF NOT EXISTS rag_documents_doc_type_idx ON rag_documents(doc_type);

CREATE TABLE IF NOT EXISTS global_analysis_summaries (
    analysis_id         TEXT PRIMARY KEY,
    primary_package_id  TEXT NOT NULL,
    summary             TEXT NOT NULL,
    ciphertext          TEXT,
    created_at          DATETIME NOT NULL DEFAULT (datetime('now')),
    updated_at          DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS rag_chats (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    analysis_id  TEXT,
    package_id   TEXT,
    module_id    TEXT,
    created_at   DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS rag_messages (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    chat_id     INTEGER NOT NULL REFERENCES rag_chats(id) ON DELETE CASCADE,
    role        TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
    content     TEXT NOT NULL,
    created_at  DATETIME NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);
CREATE INDEX IF NOT EXISTS rag_messages_chat_idx ON rag_messages(chat_id, id);
"""

# New versions are appended; shipped entries are never edited.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]


def _applied_version(conn: sqlite3.Connection) -> int:
    (version,) = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return version or 0


def run_migrations(conn: sqlite3.Connection) -> None:
    """Bring *conn* up to the newest schema; a no-op when already current."""
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    applied = _applied_version(conn)
    for version, sql in MIGRATIONS:
        if version <= applied:
            continue
        # executescript commits any open transaction first
        conn.executescript(sql)
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
        conn.commit()
