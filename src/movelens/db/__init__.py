"""MoveLens database layer."""

from movelens.db.connection import Database
from movelens.db.documents import DocumentStore
from movelens.db.migrations import MIGRATIONS, run_migrations
from movelens.db.repository import Repository
from movelens.db.schema import initialize
from movelens.db.vectors import serialize_embedding

__all__ = [
    "Database",
    "DocumentStore",
    "Repository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "serialize_embedding",
]
