"""Repository pattern for relational MoveLens database operations.

Single interface for: packages, modules, functions, analyses, edges, the
decompiled-source cache, global analysis summaries, chats and messages.
RAG documents live in movelens.db.documents.DocumentStore.

Every write commits immediately, so each status transition is one atomic
row update rather than a read-modify-write on cached state.
"""

from __future__ import annotations

import json
import sqlite3
import uuid

from movelens.db.models import (
    STATUS_DONE,
    Analysis,
    Edge,
    Function,
    GlobalAnalysisSummary,
    Module,
    Package,
    RagChat,
    RagMessage,
)
from movelens.errors import NotFoundError

_MODULE_COLUMNS = """
    m.id, m.package_id, m.name, m.full_name, m.decompiled_source, m.explanation,
    m.ultra_summary, m.explanation_status, m.friends, m.flags, m.created_at,
    p.address AS package_address
"""

_MODULE_SELECT = f"SELECT {_MODULE_COLUMNS} FROM modules m JOIN packages p ON p.id = m.package_id"


def _new_id() -> str:
    return str(uuid.uuid4())


class Repository:
    """Data access layer for the relational MoveLens entities.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see movelens.db.schema.initialize).
        """
        self._conn = conn

    # ------------------------------------------------------------------
    # Packages
    # ------------------------------------------------------------------

    def upsert_package(self, address: str, display_name: str | None = None) -> Package:
        """Insert a package by address if missing and return the stored row.

        An existing row is left untouched, so a package shared by several
        analyses keeps its explanation and display name.
        """
        self._conn.execute(
            """
            INSERT INTO packages (id, address, display_name)
            VALUES (?, ?, ?)
            ON CONFLICT(address) DO NOTHING
            """,
            (_new_id(), address, display_name),
        )
        self._conn.commit()
        pkg = self.get_package_by_address(address)
        if pkg is None:
            raise NotFoundError("package", address)
        return pkg

    def get_package(self, package_id: str) -> Package | None:
        row = self._conn.execute(
            "SELECT * FROM packages WHERE id = ?", (package_id,)
        ).fetchone()
        return _row_to_package(row) if row else None

    def get_package_by_address(self, address: str) -> Package | None:
        row = self._conn.execute(
            "SELECT * FROM packages WHERE address = ?", (address,)
        ).fetchone()
        return _row_to_package(row) if row else None

    def resolve_package(self, ref: str) -> Package | None:
        """Look a package up by internal id, falling back to its address.

        Args:
            ref: Package id or on-chain address.

        Returns:
            Package instance or None if neither key matches.
        """
        return self.get_package(ref) or self.get_package_by_address(ref)

    def list_packages_by_addresses(self, addresses: list[str]) -> list[Package]:
        """Return packages whose address is in *addresses* (insertion order)."""
        if not addresses:
            return []
        placeholders = ",".join("?" * len(addresses))
        rows = self._conn.execute(
            f"SELECT * FROM packages WHERE address IN ({placeholders}) ORDER BY rowid",
            list(addresses),
        ).fetchall()
        return [_row_to_package(r) for r in rows]

    def set_package_status(self, package_id: str, status: str) -> None:
        self._conn.execute(
            """
            UPDATE packages SET explanation_status = ?, updated_at = datetime('now')
            WHERE id = ?
            """,
            (status, package_id),
        )
        self._conn.commit()

    def save_package_explanation(self, package_id: str, explanation: str) -> None:
        """Store *explanation* and mark the package ``done`` in one update."""
        self._conn.execute(
            """
            UPDATE packages
            SET explanation = ?, explanation_status = ?, updated_at = datetime('now')
            WHERE id = ?
            """,
            (explanation, STATUS_DONE, package_id),
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Modules
    # ------------------------------------------------------------------

    def upsert_module(
        self,
        package_id: str,
        name: str,
        full_name: str,
        decompiled_source: str | None = None,
        friends: list[str] | None = None,
        flags: list[dict] | None = None,
    ) -> Module:
        """Insert or update a module keyed by *full_name*; return the stored row.

        A ``None`` source never overwrites a previously cached one.
        """
        self._conn.execute(
            """
            INSERT INTO modules (id, package_id, name, full_name, decompiled_source, friends, flags)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(full_name) DO UPDATE SET
                decompiled_source = COALESCE(excluded.decompiled_source, modules.decompiled_source),
                friends = excluded.friends,
                flags = excluded.flags,
                updated_at = datetime('now')
            """,
            (
                _new_id(),
                package_id,
                name,
                full_name,
                decompiled_source,
                json.dumps(friends or []),
                json.dumps(flags or []),
            ),
        )
        self._conn.commit()
        module = self.get_module_by_full_name(full_name)
        if module is None:
            raise NotFoundError("module", full_name)
        return module

    def get_module(self, module_id: str) -> Module | None:
        row = self._conn.execute(f"{_MODULE_SELECT} WHERE m.id = ?", (module_id,)).fetchone()
        return _row_to_module(row) if row else None

    def get_module_by_full_name(self, full_name: str) -> Module | None:
        row = self._conn.execute(
            f"{_MODULE_SELECT} WHERE m.full_name = ?", (full_name,)
        ).fetchone()
        return _row_to_module(row) if row else None

    def resolve_module(self, ref: str) -> Module | None:
        """Look a module up by internal id, falling back to its full name."""
        return self.get_module(ref) or self.get_module_by_full_name(ref)

    def list_modules(self, package_id: str | None = None) -> list[Module]:
        """Return modules in insertion order, optionally limited to one package."""
        if package_id is None:
            rows = self._conn.execute(f"{_MODULE_SELECT} ORDER BY m.rowid").fetchall()
        else:
            rows = self._conn.execute(
                f"{_MODULE_SELECT} WHERE m.package_id = ? ORDER BY m.rowid", (package_id,)
            ).fetchall()
        return [_row_to_module(r) for r in rows]

    def list_module_ids(self) -> list[str]:
        return [r[0] for r in self._conn.execute("SELECT id FROM modules ORDER BY rowid")]

    def list_explained_modules(self, module_ids: list[str]) -> list[Module]:
        """Return the modules among *module_ids* that have an explanation."""
        if not module_ids:
            return []
        unique_ids = list(dict.fromkeys(module_ids))
        placeholders = ",".join("?" * len(unique_ids))
        rows = self._conn.execute(
            f"""
            {_MODULE_SELECT}
            WHERE m.id IN ({placeholders}) AND m.explanation IS NOT NULL
            ORDER BY m.rowid
            """,
            unique_ids,
        ).fetchall()
        return [_row_to_module(r) for r in rows]

    def set_module_status(self, module_id: str, status: str) -> None:
        self._conn.execute(
            """
            UPDATE modules SET explanation_status = ?, updated_at = datetime('now')
            WHERE id = ?
            """,
            (status, module_id),
        )
        self._conn.commit()

    def save_module_source(self, module_id: str, source_code: str) -> None:
        self._conn.execute(
            """
            UPDATE modules SET decompiled_source = ?, updated_at = datetime('now')
            WHERE id = ?
            """,
            (source_code, module_id),
        )
        self._conn.commit()

    def save_module_explanation(
        self, module_id: str, explanation: str, ultra_summary: str | None
    ) -> None:
        """Store the explanation + ultra-summary and mark the module ``done``."""
        self._conn.execute(
            """
            UPDATE modules
            SET explanation = ?, ultra_summary = ?, explanation_status = ?,
                updated_at = datetime('now')
            WHERE id = ?
            """,
            (explanation, ultra_summary, STATUS_DONE, module_id),
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Functions
    # ------------------------------------------------------------------

    def upsert_function(
        self, module_id: str, name: str, visibility: str, is_entry: bool = False
    ) -> None:
        """Insert or update a function keyed by (module_id, name)."""
        self._conn.execute(
            """
            INSERT INTO functions (id, module_id, name, visibility, is_entry)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(module_id, name) DO UPDATE SET
                visibility = excluded.visibility,
                is_entry = excluded.is_entry
            """,
            (_new_id(), module_id, name, visibility, int(is_entry)),
        )
        self._conn.commit()

    def list_functions(self, module_id: str) -> list[Function]:
        rows = self._conn.execute(
            "SELECT * FROM functions WHERE module_id = ? ORDER BY rowid", (module_id,)
        ).fetchall()
        return [
            Function(
                id=r["id"],
                module_id=r["module_id"],
                name=r["name"],
                visibility=r["visibility"],
                is_entry=bool(r["is_entry"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Analyses + edges
    # ------------------------------------------------------------------

    def add_analysis(self, analysis: Analysis) -> None:
        """Insert or replace a stored analysis snapshot."""
        self._conn.execute(
            """
            INSERT INTO analyses (id, package_address, network, summary_json)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                package_address = excluded.package_address,
                network = excluded.network,
                summary_json = excluded.summary_json
            """,
            (analysis.id, analysis.package_address, analysis.network, analysis.summary_json),
        )
        self._conn.commit()

    def get_analysis(self, analysis_id: str) -> Analysis | None:
        row = self._conn.execute(
            "SELECT * FROM analyses WHERE id = ?", (analysis_id,)
        ).fetchone()
        if row is None:
            return None
        return Analysis(
            id=row["id"],
            package_address=row["package_address"],
            network=row["network"],
            summary_json=row["summary_json"],
            created_at=row["created_at"],
        )

    def add_edge(self, edge: Edge) -> None:
        self._conn.execute(
            """
            INSERT INTO edges (id, analysis_id, kind, from_node, to_node, evidence_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                edge.id,
                edge.analysis_id,
                edge.kind,
                edge.from_node,
                edge.to_node,
                json.dumps(edge.evidence) if edge.evidence is not None else None,
            ),
        )
        self._conn.commit()

    def list_edges(self, analysis_id: str, kind: str | None = None) -> list[Edge]:
        if kind is None:
            rows = self._conn.execute(
                "SELECT * FROM edges WHERE analysis_id = ? ORDER BY rowid", (analysis_id,)
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM edges WHERE analysis_id = ? AND kind = ? ORDER BY rowid",
                (analysis_id, kind),
            ).fetchall()
        return [_row_to_edge(r) for r in rows]

    def update_edge_evidence(self, edge_id: str, evidence: dict) -> None:
        self._conn.execute(
            "UPDATE edges SET evidence_json = ? WHERE id = ?",
            (json.dumps(evidence), edge_id),
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Decompiled source cache
    # ------------------------------------------------------------------

    def get_cached_source(
        self, package_address: str, module_name: str, network: str
    ) -> tuple[str, list[dict]] | None:
        """Return ``(source_code, functions)`` from the cache, or None on a miss."""
        row = self._conn.execute(
            """
            SELECT source_code, functions_json FROM source_cache
            WHERE package_address = ? AND module_name = ? AND network = ?
            """,
            (package_address, module_name, network),
        ).fetchone()
        if row is None:
            return None
        return row["source_code"], json.loads(row["functions_json"])

    def save_cached_source(
        self,
        package_address: str,
        module_name: str,
        network: str,
        source_code: str,
        functions: list[dict],
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO source_cache (package_address, module_name, network, source_code, functions_json)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(package_address, module_name, network) DO UPDATE SET
                source_code = excluded.source_code,
                functions_json = excluded.functions_json,
                fetched_at = datetime('now')
            """,
            (package_address, module_name, network, source_code, json.dumps(functions)),
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Global analysis summaries
    # ------------------------------------------------------------------

    def get_global_summary(self, analysis_id: str) -> GlobalAnalysisSummary | None:
        row = self._conn.execute(
            "SELECT * FROM global_analysis_summaries WHERE analysis_id = ?", (analysis_id,)
        ).fetchone()
        if row is None:
            return None
        return GlobalAnalysisSummary(
            analysis_id=row["analysis_id"],
            primary_package_id=row["primary_package_id"],
            summary=row["summary"],
            ciphertext=row["ciphertext"],
            updated_at=row["updated_at"],
        )

    def upsert_global_summary(
        self, analysis_id: str, primary_package_id: str, summary: str
    ) -> None:
        """Create or replace the summary for *analysis_id*; ciphertext is left as is."""
        self._conn.execute(
            """
            INSERT INTO global_analysis_summaries (analysis_id, primary_package_id, summary)
            VALUES (?, ?, ?)
            ON CONFLICT(analysis_id) DO UPDATE SET
                primary_package_id = excluded.primary_package_id,
                summary = excluded.summary,
                updated_at = datetime('now')
            """,
            (analysis_id, primary_package_id, summary),
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Chats + messages
    # ------------------------------------------------------------------

    def create_chat(
        self,
        analysis_id: str | None = None,
        package_id: str | None = None,
        module_id: str | None = None,
    ) -> RagChat:
        cur = self._conn.execute(
            "INSERT INTO rag_chats (analysis_id, package_id, module_id) VALUES (?, ?, ?)",
            (analysis_id, package_id, module_id),
        )
        self._conn.commit()
        chat = self.get_chat(cur.lastrowid)
        if chat is None:
            raise NotFoundError("chat", cur.lastrowid)
        return chat

    def get_chat(self, chat_id: int) -> RagChat | None:
        row = self._conn.execute(
            """
            SELECT c.*, (SELECT COUNT(*) FROM rag_messages WHERE chat_id = c.id) AS message_count
            FROM rag_chats c WHERE c.id = ?
            """,
            (chat_id,),
        ).fetchone()
        return _row_to_chat(row) if row else None

    def list_chats(
        self,
        analysis_id: str | None = None,
        package_id: str | None = None,
        module_id: str | None = None,
        limit: int = 50,
    ) -> list[RagChat]:
        """Return chats matching every given scope field, newest first."""
        clauses: list[str] = []
        params: list[object] = []
        for column, value in (
            ("analysis_id", analysis_id),
            ("package_id", package_id),
            ("module_id", module_id),
        ):
            if value:
                clauses.append(f"c.{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn.execute(
            f"""
            SELECT c.*, (SELECT COUNT(*) FROM rag_messages WHERE chat_id = c.id) AS message_count
            FROM rag_chats c {where}
            ORDER BY c.id DESC LIMIT ?
            """,
            (*params, limit),
        ).fetchall()
        return [_row_to_chat(r) for r in rows]

    def delete_chat(self, chat_id: int) -> bool:
        """Delete a chat and (via cascade) its messages. Returns True if it existed."""
        cur = self._conn.execute("DELETE FROM rag_chats WHERE id = ?", (chat_id,))
        self._conn.commit()
        return cur.rowcount > 0

    def add_message(self, chat_id: int, role: str, content: str) -> RagMessage:
        cur = self._conn.execute(
            "INSERT INTO rag_messages (chat_id, role, content) VALUES (?, ?, ?)",
            (chat_id, role, content),
        )
        self._conn.commit()
        row = self._conn.execute(
            "SELECT * FROM rag_messages WHERE id = ?", (cur.lastrowid,)
        ).fetchone()
        return _row_to_message(row)

    def list_messages(self, chat_id: int) -> list[RagMessage]:
        """Return every message of a chat in chronological order."""
        rows = self._conn.execute(
            "SELECT * FROM rag_messages WHERE chat_id = ? ORDER BY id", (chat_id,)
        ).fetchall()
        return [_row_to_message(r) for r in rows]

    def recent_messages(self, chat_id: int, limit: int) -> list[RagMessage]:
        """Return the last *limit* messages of a chat, oldest first."""
        rows = self._conn.execute(
            "SELECT * FROM rag_messages WHERE chat_id = ? ORDER BY id DESC LIMIT ?",
            (chat_id, limit),
        ).fetchall()
        return [_row_to_message(r) for r in reversed(rows)]


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _row_to_package(row: sqlite3.Row) -> Package:
    return Package(
        id=row["id"],
        address=row["address"],
        display_name=row["display_name"],
        explanation=row["explanation"],
        explanation_status=row["explanation_status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_module(row: sqlite3.Row) -> Module:
    return Module(
        id=row["id"],
        package_id=row["package_id"],
        name=row["name"],
        full_name=row["full_name"],
        package_address=row["package_address"],
        decompiled_source=row["decompiled_source"],
        explanation=row["explanation"],
        ultra_summary=row["ultra_summary"],
        explanation_status=row["explanation_status"],
        friends=json.loads(row["friends"]),
        flags=json.loads(row["flags"]),
        created_at=row["created_at"],
    )


def _row_to_edge(row: sqlite3.Row) -> Edge:
    evidence = row["evidence_json"]
    return Edge(
        id=row["id"],
        analysis_id=row["analysis_id"],
        kind=row["kind"],
        from_node=row["from_node"],
        to_node=row["to_node"],
        evidence=json.loads(evidence) if evidence is not None else None,
    )


def _row_to_chat(row: sqlite3.Row) -> RagChat:
    return RagChat(
        id=row["id"],
        analysis_id=row["analysis_id"],
        package_id=row["package_id"],
        module_id=row["module_id"],
        created_at=row["created_at"],
        message_count=row["message_count"],
    )


def _row_to_message(row: sqlite3.Row) -> RagMessage:
    return RagMessage(
        id=row["id"],
        chat_id=row["chat_id"],
        role=row["role"],
        content=row["content"],
        created_at=row["created_at"],
    )
