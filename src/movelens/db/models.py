"""Domain models for the MoveLens database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

# Explanation lifecycle: none → pending → done, or none/pending → error.
STATUS_NONE = "none"
STATUS_PENDING = "pending"
STATUS_DONE = "done"
STATUS_ERROR = "error"
EXPLANATION_STATUSES = (STATUS_NONE, STATUS_PENDING, STATUS_DONE, STATUS_ERROR)

DOC_SOURCE = "source"
DOC_MODULE_ANALYSIS = "module_analysis"
DOC_PACKAGE_ANALYSIS = "package_analysis"
DOC_TYPES = (DOC_SOURCE, DOC_MODULE_ANALYSIS, DOC_PACKAGE_ANALYSIS)

# Package-level documents live under a sentinel module reference so they
# never collide with a real module row.
PACKAGE_DOC_PREFIX = "PKG:"
PACKAGE_DOC_MODULE_NAME = "__package__"


def package_doc_ref(package_address: str) -> str:
    return f"{PACKAGE_DOC_PREFIX}{package_address}"


@dataclass
class Package:
    id: str
    address: str
    display_name: str | None = None
    explanation: str | None = None
    explanation_status: str = STATUS_NONE
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Module:
    id: str
    package_id: str
    name: str
    full_name: str
    package_address: str = ""
    decompiled_source: str | None = None
    explanation: str | None = None
    ultra_summary: str | None = None
    explanation_status: str = STATUS_NONE
    friends: list[str] = field(default_factory=list)
    flags: list[dict] = field(default_factory=list)
    created_at: str | None = None


@dataclass
class Function:
    id: str
    module_id: str
    name: str
    visibility: str
    is_entry: bool = False


@dataclass
class Analysis:
    """A stored graph snapshot produced by the (external) package crawler."""

    id: str
    package_address: str
    summary_json: str = field(default_factory=lambda: "{}")
    network: str = "mainnet"
    created_at: str | None = None

    @property
    def summary(self) -> dict:
        return json.loads(self.summary_json)


@dataclass
class Edge:
    id: str
    analysis_id: str
    kind: str
    from_node: str
    to_node: str
    evidence: dict | None = None


@dataclass
class RagDocument:
    module_ref: str
    package_address: str
    module_name: str
    content: str
    doc_type: str = DOC_SOURCE
    id: int | None = None  # set after insert; None for unsaved documents
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class SearchResult:
    """A RAG document returned by nearest-neighbour search.

    Attributes:
        similarity: Cosine similarity to the query (1 - cosine distance).
    """

    id: int
    module_ref: str
    package_address: str
    module_name: str
    content: str
    doc_type: str
    similarity: float


@dataclass
class GlobalAnalysisSummary:
    analysis_id: str
    primary_package_id: str
    summary: str
    ciphertext: str | None = None  # reserved; never populated by the pipeline
    updated_at: str | None = None


@dataclass
class RagChat:
    id: int
    analysis_id: str | None = None
    package_id: str | None = None
    module_id: str | None = None
    created_at: str | None = None
    message_count: int = 0


@dataclass
class RagMessage:
    id: int
    chat_id: int
    role: str  # user | assistant
    content: str
    created_at: str | None = None
