"""Post-analysis pipeline: graph snapshot → relational rows → index → explanations.

Runs after the crawler has stored an analysis. It never re-crawls; it
consumes the stored snapshot. Three progress phases (modules, module
explanations, package explanations) are reported as one increasing
``(current, total, message)`` signal.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from movelens.db.repository import Repository
from movelens.errors import NotFoundError, ValidationError, split_full_name
from movelens.graph import GraphModule, GraphSnapshot
from movelens.rag.explanations import BulkResult, ExplanationEngine
from movelens.rag.fanout import ProgressCallback, notify
from movelens.rag.indexing import Indexer
from movelens.sources import SourceResolver

logger = logging.getLogger(__name__)

WELL_KNOWN_PACKAGES: dict[str, str] = {
    "0x1": "Move Stdlib",
    "0x2": "Sui Framework",
}


@dataclass
class PipelineResult:
    indexed: int = 0
    already_embedded: int = 0
    failed: int = 0
    module_explanations: BulkResult = field(default_factory=BulkResult)
    package_explanations: BulkResult = field(default_factory=BulkResult)


class PostAnalysisPipeline:
    """Drives indexing and explanation generation for one stored analysis."""

    def __init__(
        self,
        repo: Repository,
        resolver: SourceResolver,
        indexer: Indexer,
        explainer: ExplanationEngine,
        pace_every: int = 5,
        pace_delay: float = 0.1,
    ) -> None:
        self.repo = repo
        self.resolver = resolver
        self.indexer = indexer
        self.explainer = explainer
        self.pace_every = pace_every
        self.pace_delay = pace_delay

    async def process_analysis_for_rag(
        self, analysis_id: str, on_progress: ProgressCallback | None = None
    ) -> PipelineResult:
        """Process every module of an analysis, then explain modules and packages.

        Per-module failures are counted, never raised.

        Raises:
            NotFoundError: The analysis does not exist.
        """
        analysis = self.repo.get_analysis(analysis_id)
        if analysis is None:
            raise NotFoundError("analysis", analysis_id)

        snapshot = GraphSnapshot.from_dict(analysis.summary)
        network = analysis.network or "mainnet"
        total = len(snapshot.modules)
        module_refs = [m.full_name for m in snapshot.modules if m.full_name]
        package_addresses = snapshot.package_addresses()
        # one denominator for all three phases keeps current/grand_total rising
        grand_total = total + len(module_refs) + len(package_addresses)
        result = PipelineResult()
        logger.info("Processing %d modules from analysis %s", total, analysis_id)

        for i, node in enumerate(snapshot.modules):
            try:
                package_address, module_name = split_full_name(node.full_name)
            except ValidationError as exc:
                logger.warning("Skipping module: %s", exc)
                continue

            await notify(on_progress, i + 1, grand_total, f"Processing {node.full_name}...")
            try:
                await self._process_module(snapshot, node, package_address, module_name, network, result)
            except Exception:
                logger.exception("Failed to process module %s", node.full_name)
                result.failed += 1

            if self.pace_every and i % self.pace_every == 0 and i > 0:
                await asyncio.sleep(self.pace_delay)

        logger.info(
            "Source indexing complete: %d newly indexed, %d already embedded, %d failed",
            result.indexed,
            result.already_embedded,
            result.failed,
        )

        await notify(on_progress, total, grand_total, "Generating module explanations...")

        async def module_progress(current: int, count: int, message: str) -> None:
            await notify(on_progress, total + current, grand_total, message)

        result.module_explanations = await self.explainer.generate_all_module_explanations(
            module_refs,
            on_progress=module_progress,
        )

        explained = total + len(module_refs)
        await notify(on_progress, explained, grand_total, "Generating package explanations...")

        async def package_progress(current: int, count: int, message: str) -> None:
            await notify(on_progress, explained + current, grand_total, message)

        result.package_explanations = await self.explainer.generate_all_package_explanations(
            package_addresses,
            on_progress=package_progress,
        )

        logger.info("RAG processing complete for analysis %s", analysis_id)
        return result

    async def _process_module(
        self,
        snapshot: GraphSnapshot,
        node: GraphModule,
        package_address: str,
        module_name: str,
        network: str,
        result: PipelineResult,
    ) -> None:
        pkg = self.repo.upsert_package(package_address, WELL_KNOWN_PACKAGES.get(package_address))

        source_code: str | None = None
        try:
            source = await self.resolver.resolve(package_address, module_name, network)
            source_code = source.source_code
            logger.info("Source found for %s (%d chars)", node.full_name, len(source_code))
        except Exception as exc:
            logger.warning("No source for %s: %s", node.full_name, exc)

        module = self.repo.upsert_module(
            pkg.id,
            module_name,
            node.full_name,
            decompiled_source=source_code,
            friends=node.friends,
            flags=snapshot.module_flags(node),
        )
        for func in node.functions:
            self.repo.upsert_function(
                module.id,
                func.name,
                func.visibility.lower(),
                is_entry=func.is_entry or func.visibility == "Entry",
            )

        if not source_code:
            logger.warning("Skipping indexing for %s (no source code)", node.full_name)
            result.failed += 1
            return

        outcome = await self.indexer.index_module(module.id)
        if outcome.indexed:
            result.indexed += 1
        elif outcome.already_exists:
            result.already_embedded += 1

    def process_analysis_for_rag_background(self, analysis_id: str) -> asyncio.Task:
        """Start the pipeline without awaiting it; the outcome is only logged.

        Must be called from a running event loop.
        """
        logger.info("Starting background RAG processing for analysis %s", analysis_id)

        async def log_progress(current: int, total: int, message: str) -> None:
            logger.debug("Progress %d/%d - %s", current, total, message)

        task = asyncio.create_task(
            self.process_analysis_for_rag(analysis_id, log_progress),
            name=f"rag-{analysis_id}",
        )
        task.add_done_callback(lambda t: _log_background_result(analysis_id, t))
        return task


def _log_background_result(analysis_id: str, task: asyncio.Task) -> None:
    if task.cancelled():
        logger.warning("Background RAG processing cancelled for %s", analysis_id)
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background RAG processing failed for %s: %s", analysis_id, exc, exc_info=exc)
        return
    result = task.result()
    logger.info(
        "Background RAG processing complete for %s: %d indexed, %d failed",
        analysis_id,
        result.indexed,
        result.failed,
    )
