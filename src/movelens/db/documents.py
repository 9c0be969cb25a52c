"""RAG document store: one embedded row per (module_ref, doc_type).

Re-indexing is always an upsert on the (module_ref, doc_type) key, so a
``source`` document and a ``module_analysis`` document for the same module
are independent rows and writing one never touches the other.

Ranking is an exact cosine scan via sqlite-vec's vec_distance_cosine(), which
lets package and doc-type filters apply before the LIMIT.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Sequence

from movelens.db.models import DOC_SOURCE, RagDocument, SearchResult
from movelens.db.vectors import serialize_embedding


class DocumentStore:
    """Vector-capable store for RagDocument rows."""

    def __init__(self, conn: sqlite3.Connection, dimensions: int | None = None) -> None:
        """Initialise with an open connection.

        Args:
            conn: Connection with sqlite-vec loaded and schema initialised.
            dimensions: When set, every stored or queried vector must have
                exactly this length.
        """
        self._conn = conn
        self._dimensions = dimensions

    def upsert(self, doc: RagDocument, embedding: Sequence[float]) -> None:
        """Insert *doc* or replace the existing row with the same key."""
        blob = serialize_embedding(embedding, self._dimensions)
        self._conn.execute(
            """
            INSERT INTO rag_documents
                (module_ref, package_address, module_name, content, doc_type, embedding)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(module_ref, doc_type) DO UPDATE SET
                package_address = excluded.package_address,
                module_name = excluded.module_name,
                content = excluded.content,
                embedding = excluded.embedding,
                updated_at = datetime('now')
            """,
            (doc.module_ref, doc.package_address, doc.module_name, doc.content, doc.doc_type, blob),
        )
        self._conn.commit()

    def get(self, module_ref: str, doc_type: str = DOC_SOURCE) -> RagDocument | None:
        row = self._conn.execute(
            """
            SELECT id, module_ref, package_address, module_name, content, doc_type,
                   created_at, updated_at
            FROM rag_documents WHERE module_ref = ? AND doc_type = ?
            """,
            (module_ref, doc_type),
        ).fetchone()
        if row is None:
            return None
        return RagDocument(
            id=row["id"],
            module_ref=row["module_ref"],
            package_address=row["package_address"],
            module_name=row["module_name"],
            content=row["content"],
            doc_type=row["doc_type"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def exists(self, module_ref: str, doc_type: str = DOC_SOURCE) -> bool:
        """Return True if a document is stored under (module_ref, doc_type)."""
        row = self._conn.execute(
            "SELECT 1 FROM rag_documents WHERE module_ref = ? AND doc_type = ?",
            (module_ref, doc_type),
        ).fetchone()
        return row is not None

    def count(self, doc_type: str | None = None) -> int:
        if doc_type is None:
            return self._conn.execute("SELECT COUNT(*) FROM rag_documents").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM rag_documents WHERE doc_type = ?", (doc_type,)
        ).fetchone()[0]

    def search(
        self,
        embedding: Sequence[float],
        limit: int = 5,
        package_address: str | None = None,
        doc_types: Sequence[str] | None = None,
        exclude_module_ref: str | None = None,
    ) -> list[SearchResult]:
        """Nearest-neighbour search by cosine distance.

        Args:
            embedding: Query vector.
            limit: Maximum number of results.
            package_address: Only return documents of this package.
            doc_types: Only return documents of these types.
            exclude_module_ref: Skip documents of this module.

        Returns:
            Results sorted best-first; ``similarity = 1 - cosine distance``.
        """
        if limit <= 0:
            return []

        clauses: list[str] = []
        params: list[object] = [serialize_embedding(embedding, self._dimensions)]
        if package_address is not None:
            clauses.append("package_address = ?")
            params.append(package_address)
        if doc_types:
            clauses.append(f"doc_type IN ({','.join('?' * len(doc_types))})")
            params.extend(doc_types)
        if exclude_module_ref is not None:
            clauses.append("module_ref != ?")
            params.append(exclude_module_ref)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        rows = self._conn.execute(
            f"""
            SELECT id, module_ref, package_address, module_name, content, doc_type,
                   vec_distance_cosine(embedding, ?) AS distance
            FROM rag_documents
            {where}
            ORDER BY distance
            LIMIT ?
            """,
            params,
        ).fetchall()
        return [
            SearchResult(
                id=r["id"],
                module_ref=r["module_ref"],
                package_address=r["package_address"],
                module_name=r["module_name"],
                content=r["content"],
                doc_type=r["doc_type"],
                similarity=1.0 - r["distance"],
            )
            for r in rows
        ]
