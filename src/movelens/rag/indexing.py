"""RAG indexing: structured module documents → embeddings in the document store.

Existence of a (module, doc_type) row in the document store is the only
"already indexed" signal; nothing is cached in process.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from movelens.db.documents import DocumentStore
from movelens.db.models import (
    DOC_MODULE_ANALYSIS,
    DOC_PACKAGE_ANALYSIS,
    DOC_SOURCE,
    PACKAGE_DOC_MODULE_NAME,
    Module,
    RagDocument,
    package_doc_ref,
)
from movelens.db.repository import Repository
from movelens.errors import NotFoundError
from movelens.rag.fanout import gather_settled
from movelens.sources import SourceResolver

logger = logging.getLogger(__name__)

_STRUCT_DECL_RE = re.compile(r"\bstruct\s+(\w+)")


@dataclass
class IndexResult:
    indexed: bool
    already_exists: bool


@dataclass
class BatchResult:
    indexed: int = 0
    skipped: int = 0
    failed: int = 0
    total: int = 0


def extract_struct_names(source_code: str) -> list[str]:
    """Names of ``struct`` declarations found outside any struct body.

    Best-effort: tracks brace depth line by line and assumes struct bodies
    contain no nested braces.
    """
    names: list[str] = []
    inside = opened = False
    depth = 0
    for line in source_code.split("\n"):
        if not inside:
            match = _STRUCT_DECL_RE.search(line)
            if match is None:
                continue
            names.append(match.group(1))
            inside, opened, depth = True, False, 0
            line = line[match.end():]
        if "{" in line:
            opened = True
        depth += line.count("{") - line.count("}")
        # a body-less declaration ends at ';'
        if (opened and depth <= 0) or (not opened and line.rstrip().endswith(";")):
            inside = False
    return names


def build_module_document(
    package_address: str,
    module_name: str,
    source_code: str,
    functions: list[tuple[str, str, bool]],
) -> str:
    """Header block of module metadata followed by the verbatim source.

    Args:
        functions: ``(name, visibility, is_entry)`` triples; visibility as
            stored (``entry``, ``public``, ``public(friend)``, ``private``).
            A function is listed as entry when flagged or when its
            visibility says so.
    """
    entry = [name for name, visibility, is_entry in functions if is_entry or "entry" in visibility]
    public = [name for name, visibility, _ in functions if "public" in visibility]
    structs = extract_struct_names(source_code)

    return "\n".join(
        [
            f"MODULE: {package_address}::{module_name}",
            "",
            "METADATA:",
            f"- Package Address: {package_address}",
            f"- Module Name: {module_name}",
            f"- Entry Functions: {', '.join(entry) or 'none'}",
            f"- Public Functions: {', '.join(public) or 'none'}",
            f"- Structs: {', '.join(structs) or 'none'}",
            "",
            "DECOMPILED SOURCE CODE:",
            source_code,
        ]
    ).strip()


def build_module_analysis_document(module: Module) -> str:
    doc = f"MODULE ANALYSIS: {module.package_address}::{module.name}\n\n{module.explanation}"
    if module.ultra_summary:
        doc += f"\n\nSUMMARY: {module.ultra_summary}"
    return doc.strip()


class Indexer:
    """Builds and upserts ``source``, ``module_analysis`` and ``package_analysis`` documents."""

    def __init__(
        self,
        repo: Repository,
        documents: DocumentStore,
        provider,
        resolver: SourceResolver,
        network: str = "mainnet",
        batch_pause: float = 1.0,
    ) -> None:
        self.repo = repo
        self.documents = documents
        self.provider = provider
        self.resolver = resolver
        self.network = network
        self.batch_pause = batch_pause

    def _require_module(self, ref: str) -> Module:
        module = self.repo.resolve_module(ref)
        if module is None:
            raise NotFoundError("module", ref)
        return module

    async def fetch_source(self, module: Module) -> str:
        """Resolve *module*'s source and persist it on the module row.

        Raises:
            SourceUnavailableError: Propagated from the resolver.
        """
        logger.info("Fetching source code for %s", module.full_name)
        source = await self.resolver.resolve(module.package_address, module.name, self.network)
        self.repo.save_module_source(module.id, source.source_code)
        module.decompiled_source = source.source_code
        return source.source_code

    async def index_module(self, ref: str, force: bool = False) -> IndexResult:
        """Index a module's decompiled source as a ``source`` document.

        Without *force*, an existing document short-circuits before any
        embedding call.

        Raises:
            NotFoundError: No module matches *ref*.
            SourceUnavailableError: Source is not cached and cannot be fetched.
            ProviderError: The embedding call failed.
        """
        module = self._require_module(ref)

        if not force and self.documents.exists(module.id, DOC_SOURCE):
            logger.info("Module %s already indexed, skipping", module.full_name)
            return IndexResult(indexed=False, already_exists=True)

        source_code = module.decompiled_source or await self.fetch_source(module)
        functions = [(f.name, f.visibility, f.is_entry) for f in self.repo.list_functions(module.id)]
        document = build_module_document(module.package_address, module.name, source_code, functions)
        logger.debug("Built document for %s (%d chars)", module.full_name, len(document))

        embedding = await self.provider.embed(document)
        self.documents.upsert(
            RagDocument(
                module_ref=module.id,
                package_address=module.package_address,
                module_name=module.name,
                content=document,
                doc_type=DOC_SOURCE,
            ),
            embedding,
        )
        logger.info("Indexed module %s", module.full_name)
        return IndexResult(indexed=True, already_exists=False)

    async def index_module_analysis(self, ref: str, force: bool = False) -> IndexResult:
        """Index a module's stored explanation as a ``module_analysis`` document.

        A module without an explanation is a soft skip:
        ``IndexResult(indexed=False, already_exists=False)``.
        """
        module = self._require_module(ref)

        if not force and self.documents.exists(module.id, DOC_MODULE_ANALYSIS):
            logger.info("Module analysis %s already indexed, skipping", module.full_name)
            return IndexResult(indexed=False, already_exists=True)

        if not module.explanation:
            logger.warning("Module %s has no explanation, skipping analysis indexing", module.full_name)
            return IndexResult(indexed=False, already_exists=False)

        document = build_module_analysis_document(module)
        embedding = await self.provider.embed(document)
        self.documents.upsert(
            RagDocument(
                module_ref=module.id,
                package_address=module.package_address,
                module_name=module.name,
                content=document,
                doc_type=DOC_MODULE_ANALYSIS,
            ),
            embedding,
        )
        logger.info("Indexed module analysis for %s", module.full_name)
        return IndexResult(indexed=True, already_exists=False)

    async def index_package_analysis(self, package_address: str, content: str) -> None:
        """Upsert a package explanation under the package's sentinel module ref."""
        embedding = await self.provider.embed(content)
        self.documents.upsert(
            RagDocument(
                module_ref=package_doc_ref(package_address),
                package_address=package_address,
                module_name=PACKAGE_DOC_MODULE_NAME,
                content=content,
                doc_type=DOC_PACKAGE_ANALYSIS,
            ),
            embedding,
        )
        logger.info("Indexed package analysis for %s", package_address)

    async def reindex_all_modules(
        self,
        batch_size: int = 10,
        on_progress: Callable[[int, int], None] | None = None,
        force: bool = False,
    ) -> BatchResult:
        """Index every module in fixed-size batches.

        Modules within a batch run concurrently; batches run one after the
        other with ``batch_pause`` seconds between them. One module failing
        never affects the others.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        module_ids = self.repo.list_module_ids()
        result = BatchResult(total=len(module_ids))
        logger.info("Reindexing %d modules (batch size %d, force=%s)", result.total, batch_size, force)

        for start in range(0, len(module_ids), batch_size):
            batch = module_ids[start : start + batch_size]
            outcomes = await gather_settled(batch, lambda mid: self.index_module(mid, force=force))
            for outcome in outcomes:
                if not outcome.ok:
                    result.failed += 1
                    logger.error("Failed to index module %s: %s", outcome.item, outcome.error)
                elif outcome.value.indexed:
                    result.indexed += 1
                else:
                    result.skipped += 1

            if on_progress is not None:
                on_progress(result.indexed + result.skipped + result.failed, result.total)
            if start + batch_size < len(module_ids):
                await asyncio.sleep(self.batch_pause)

        logger.info(
            "Reindexing complete: %d indexed, %d skipped, %d failed, %d documents stored",
            result.indexed,
            result.skipped,
            result.failed,
            self.documents.count(),
        )
        return result

    async def index_package_modules(self, package_ref: str) -> BatchResult:
        """Index every module of one package, one at a time."""
        pkg = self.repo.resolve_package(package_ref)
        if pkg is None:
            raise NotFoundError("package", package_ref)

        modules = self.repo.list_modules(pkg.id)
        result = BatchResult(total=len(modules))
        for module in modules:
            try:
                outcome = await self.index_module(module.id)
            except Exception as exc:
                logger.error("Failed to index module %s: %s", module.full_name, exc)
                result.failed += 1
                continue
            if outcome.indexed:
                result.indexed += 1
            else:
                result.skipped += 1

        logger.info(
            "Package %s indexing complete: %d indexed, %d failed",
            pkg.address,
            result.indexed,
            result.failed,
        )
        return result
