"""Multi-turn RAG chat over indexed modules and cached explanations.

Context assembly order:
  1. analysis inventory (every package + module of the analysis), so "list
     all X" questions can be answered beyond what similarity search returns
  2. package overview (when a package scope resolves)
  3. cached module explanations for retrieved modules
  4. raw retrieved documents not already covered by an explanation
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from movelens.db.documents import DocumentStore
from movelens.db.models import Package, RagChat, RagMessage, SearchResult
from movelens.db.repository import Repository
from movelens.errors import NotFoundError
from movelens.graph import GraphSnapshot

logger = logging.getLogger(__name__)

ADDRESS_PADDING_NOTE = (
    "Note: Package addresses may appear with or without leading zeros "
    "(e.g., 0x2 = 0x02 = 0x002...)."
)

CHAT_SYSTEM_PROMPT = """You are a Sui Move smart contract expert assistant. Your role is to answer questions about Sui Move packages and modules using ONLY the provided context.

IMPORTANT RULES:
- Answer questions based ONLY on the provided context documents
- When asked about "all packages with module X", check the COMPLETE ANALYSIS INVENTORY first
- Package addresses can have different formats (0x1 = 0x01 = 0x001...) - treat them as equivalent
- Module full names are in format: package_address::module_name
- If the context doesn't contain enough information, say so honestly
- Cite specific module names and package addresses when referencing information
- Be precise and technical when discussing Move code
- If asked about security, focus on what you can see in the code
- Do not make assumptions beyond what's in the context

CONTEXT DOCUMENTS:
{context}"""


@dataclass
class SourceUsed:
    module_ref: str
    package_address: str
    module_name: str
    similarity: float


@dataclass
class ChatAnswer:
    answer: str
    chat_id: int
    sources_used: list[SourceUsed] = field(default_factory=list)


def build_inventory(snapshot: GraphSnapshot) -> str:
    """Directory of every package and module in an analysis."""
    package_lines = [
        f"  - {p.address}{f' ({p.display_name})' if p.display_name else ''}" for p in snapshot.packages
    ]
    module_lines = [f"  - {m.full_name or m.name or 'unknown'}" for m in snapshot.modules]
    return "\n".join(
        [
            "--- COMPLETE ANALYSIS INVENTORY ---",
            "This analysis contains the following packages and modules. "
            "Use this directory for exact name/address matching:",
            "",
            f"PACKAGES ({len(snapshot.packages)} total):",
            *package_lines,
            "",
            f"MODULES ({len(snapshot.modules)} total):",
            *module_lines,
            "",
            ADDRESS_PADDING_NOTE,
        ]
    )


class ChatEngine:
    """Answers questions with vector retrieval + cached explanations + history."""

    def __init__(
        self,
        repo: Repository,
        documents: DocumentStore,
        provider,
        default_limit: int = 20,
        history_limit: int = 10,
    ) -> None:
        self.repo = repo
        self.documents = documents
        self.provider = provider
        self.default_limit = default_limit
        self.history_limit = history_limit

    async def rag_chat(
        self,
        question: str,
        chat_id: int | None = None,
        analysis_id: str | None = None,
        package_id: str | None = None,
        module_id: str | None = None,
    ) -> ChatAnswer:
        """Answer *question*, creating a chat session when *chat_id* is None.

        The question is stored before retrieval starts and stays stored if
        anything afterwards fails.

        Raises:
            NotFoundError: *chat_id* does not exist.
            ProviderError: Embedding or completion failed.
        """
        if chat_id is not None:
            chat = self.repo.get_chat(chat_id)
            if chat is None:
                raise NotFoundError("chat", chat_id)
        else:
            chat = self.repo.create_chat(analysis_id, package_id, module_id)
            logger.info("Created chat session %d", chat.id)
        self.repo.add_message(chat.id, "user", question)

        try:
            return await self._answer(chat, question, analysis_id, package_id)
        except Exception:
            logger.exception("Failed to answer question in chat %d", chat.id)
            raise

    async def _answer(
        self,
        chat: RagChat,
        question: str,
        analysis_id: str | None,
        package_id: str | None,
    ) -> ChatAnswer:
        snapshot: GraphSnapshot | None = None
        if analysis_id:
            analysis = self.repo.get_analysis(analysis_id)
            if analysis is None:
                logger.warning("Analysis %s not found, answering without inventory", analysis_id)
            else:
                snapshot = GraphSnapshot.from_dict(analysis.summary)

        pkg: Package | None = None
        if package_id:
            pkg = self.repo.resolve_package(package_id)
            if pkg is None:
                logger.warning("Package %s not found, searching across all packages", package_id)

        # Each package/module may have both a source and an analysis document.
        limit = (
            2 * (len(snapshot.modules) + len(snapshot.packages))
            if snapshot is not None
            else self.default_limit
        )
        query = self._enhanced_query(question, snapshot, pkg)

        embedding = await self.provider.embed(query)
        docs = self.documents.search(
            embedding, limit=limit, package_address=pkg.address if pkg else None
        )
        logger.info("Retrieved %d documents (limit %d)", len(docs), limit)

        context = self._build_context(docs, snapshot, pkg)

        # history ends with the question stored above; it is re-appended last
        history = self.repo.recent_messages(chat.id, self.history_limit)
        messages = [{"role": "system", "content": CHAT_SYSTEM_PROMPT.format(context=context)}]
        messages += [
            {"role": m.role, "content": m.content}
            for m in history[:-1]
            if m.role in ("user", "assistant")
        ]
        messages.append({"role": "user", "content": question})

        answer = await self.provider.complete(messages, temperature=0.7, max_tokens=1500)
        self.repo.add_message(chat.id, "assistant", answer)
        logger.info("Answered in chat %d (%d chars)", chat.id, len(answer))

        return ChatAnswer(
            answer=answer,
            chat_id=chat.id,
            sources_used=[
                SourceUsed(d.module_ref, d.package_address, d.module_name, d.similarity) for d in docs
            ],
        )

    def _enhanced_query(
        self, question: str, snapshot: GraphSnapshot | None, pkg: Package | None
    ) -> str:
        if snapshot is not None:
            packages = ", ".join(p.address for p in snapshot.packages)
            modules = ", ".join(m.full_name or m.name for m in snapshot.modules if m.full_name or m.name)
            return f"Context: Analyzing packages [{packages}] with modules [{modules}]. Question: {question}"
        if pkg is not None:
            modules = ", ".join(m.full_name for m in self.repo.list_modules(pkg.id))
            return f"Context: Package {pkg.address} with modules [{modules}]. Question: {question}"
        return question

    def _build_context(
        self,
        docs: list[SearchResult],
        snapshot: GraphSnapshot | None,
        pkg: Package | None,
    ) -> str:
        parts: list[str] = []
        if snapshot is not None:
            parts.append(build_inventory(snapshot))
        if pkg is not None and pkg.explanation:
            parts.append(f"--- PACKAGE OVERVIEW ---\n{pkg.explanation}")

        explained = self.repo.list_explained_modules([d.module_ref for d in docs])
        parts += [f"--- Module Explanation: {m.full_name} ---\n{m.explanation}" for m in explained]

        covered = {m.id for m in explained}
        for index, doc in enumerate(docs, start=1):
            if doc.module_ref in covered:
                continue
            parts.append(
                f"--- Raw Source Document {index} (Similarity: {doc.similarity * 100:.1f}%) ---\n"
                f"{doc.content}"
            )
        return "\n\n".join(parts)

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    def get_chat_history(self, chat_id: int) -> list[RagMessage]:
        if self.repo.get_chat(chat_id) is None:
            raise NotFoundError("chat", chat_id)
        return self.repo.list_messages(chat_id)

    def list_chats(
        self,
        analysis_id: str | None = None,
        package_id: str | None = None,
        module_id: str | None = None,
        limit: int = 50,
    ) -> list[RagChat]:
        return self.repo.list_chats(analysis_id, package_id, module_id, limit)

    def delete_chat(self, chat_id: int) -> None:
        if not self.repo.delete_chat(chat_id):
            raise NotFoundError("chat", chat_id)
        logger.info("Deleted chat %d", chat_id)
