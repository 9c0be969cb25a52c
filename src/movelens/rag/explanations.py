"""LLM explanations at three levels: module, package and whole analysis.

Explanations are cached on the module/package rows. Status transitions
(none → pending → done, or → error) are single-row updates issued around
the completion call.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass

from movelens.db.documents import DocumentStore
from movelens.db.models import STATUS_ERROR, STATUS_PENDING, Module, Package
from movelens.db.repository import Repository
from movelens.errors import MissingExplanationError, NotFoundError, ValidationError
from movelens.graph import GraphSnapshot
from movelens.rag.fanout import ProgressCallback, gather_settled, notify
from movelens.rag.indexing import Indexer

logger = logging.getLogger(__name__)

ULTRA_SUMMARY_RE = re.compile(r"ULTRA_SUMMARY:\s*(.+)")
_ULTRA_SUMMARY_LINE_RE = re.compile(r"\n?ULTRA_SUMMARY:.*$", re.MULTILINE)

RELATED_CONTENT_CHARS = 2000
PACKAGE_DETAIL_MODULES = 5

MODULE_SYSTEM_PROMPT = """You are a Sui Move smart contract expert. Analyze the provided Move module and generate a comprehensive explanation.

Your explanation should include:

1. **Summary**: High-level overview of what this module does (2-3 sentences)

2. **Structs**: Describe key data structures, their purposes, and capabilities (key, store, copy, drop)

3. **Entry Functions**: Explain each entry function, its parameters, and what it does

4. **Security Model**: Describe access controls, capabilities, and permission checks

5. **Risks & Considerations**: Point out potential security concerns, centralization risks, or design trade-offs

At the very end, on a new line, provide:
ULTRA_SUMMARY: [One sentence describing this module's core purpose]

Be technical but clear. Focus on what the code actually does."""

PACKAGE_SYSTEM_PROMPT = """You are a Sui Move smart contract expert. You have been provided with detailed analyses of individual modules within a package.

Your task is to synthesize these module-level analyses into a cohesive package-level explanation.

Your explanation should include:

1. **Package Overview**: What does this package do as a whole? What is its primary purpose based on all the modules?

2. **Architecture**: How are the modules organized? What are the main components and how do they interact?

3. **Key Functionality**: What are the most important features or capabilities when considering all modules together?

4. **Security & Design**: Overall security model, access controls, and architectural decisions across the package

5. **Usage & Integration**: How would other packages or users interact with this package?

6. **Module Relationships**: How do the modules work together? Are there clear separations of concerns?

Be comprehensive but concise. Focus on the big picture and how the modules form a coherent package."""

GLOBAL_CALL_TO_ACTION = "To learn more about each specific package or module, explore the AI menu."

GLOBAL_SYSTEM_PROMPT = f"""You are a Sui Move smart contract expert and business analyst. Generate a very concise business-focused summary (2-3 short paragraphs maximum).

Focus on:
1. What the primary package does from a business perspective
2. How it integrates with dependencies to form a complete solution

Keep it brief and accessible. End with: "{GLOBAL_CALL_TO_ACTION}\""""


@dataclass
class ModuleExplanation:
    explanation: str
    ultra_summary: str | None = None


@dataclass
class BulkResult:
    generated: int = 0
    skipped: int = 0
    failed: int = 0
    total: int = 0


_GENERATED = "generated"
_SKIPPED = "skipped"


def parse_ultra_summary(response: str) -> ModuleExplanation:
    """Split the ``ULTRA_SUMMARY:`` marker line off a completion response.

    Without a marker the whole response is the explanation.
    """
    match = ULTRA_SUMMARY_RE.search(response)
    if match is None:
        return ModuleExplanation(explanation=response.strip())
    ultra_summary = match.group(1).strip() or None
    explanation = _ULTRA_SUMMARY_LINE_RE.sub("", response, count=1).strip()
    return ModuleExplanation(explanation=explanation, ultra_summary=ultra_summary)


def _reduce(outcomes, kind: str) -> BulkResult:
    result = BulkResult(total=len(outcomes))
    for outcome in outcomes:
        if not outcome.ok:
            result.failed += 1
            logger.error("Failed to explain %s %s: %s", kind, outcome.item, outcome.error)
        elif outcome.value == _SKIPPED:
            result.skipped += 1
        else:
            result.generated += 1
    return result


class ExplanationEngine:
    """Generates and caches module, package and analysis explanations."""

    def __init__(
        self,
        repo: Repository,
        documents: DocumentStore,
        provider,
        indexer: Indexer,
        related_modules: int = 3,
    ) -> None:
        self.repo = repo
        self.documents = documents
        self.provider = provider
        self.indexer = indexer
        self.related_modules = related_modules

    # ------------------------------------------------------------------
    # Module
    # ------------------------------------------------------------------

    async def generate_module_explanation(self, ref: str, force: bool = False) -> ModuleExplanation:
        """Explain one module, by id or full name.

        A cached explanation is returned untouched unless *force*. On failure
        the module's status is set to ``error`` and the exception propagates.
        """
        try:
            module = self.repo.resolve_module(ref)
            if module is None:
                raise NotFoundError("module", ref)

            if module.explanation and not force:
                logger.info("Using cached explanation for %s", module.full_name)
                return ModuleExplanation(module.explanation, module.ultra_summary)

            self.repo.set_module_status(module.id, STATUS_PENDING)
            source_code = module.decompiled_source or await self.indexer.fetch_source(module)

            query = f"{module.package_address}::{module.name} source code analysis"
            embedding = await self.provider.embed(query)
            related = self.documents.search(
                embedding,
                limit=self.related_modules,
                package_address=module.package_address,
                exclude_module_ref=module.id,
            )
            context = ""
            if related:
                blocks = [
                    f"--- Related Module {i}: {doc.module_name} ---\n"
                    f"{doc.content[:RELATED_CONTENT_CHARS]}..."
                    for i, doc in enumerate(related, start=1)
                ]
                context = "\n\nRELATED MODULES IN PACKAGE:\n" + "\n\n".join(blocks)

            user_prompt = (
                f"MODULE: {module.package_address}::{module.name}\n\n"
                f"SOURCE CODE:\n{source_code}\n{context}\n\n"
                "Please provide a comprehensive explanation following the structure outlined."
            )
            response = await self.provider.complete(
                [
                    {"role": "system", "content": MODULE_SYSTEM_PROMPT},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=0.5,
                max_tokens=2000,
            )
            result = parse_ultra_summary(response)
            self.repo.save_module_explanation(module.id, result.explanation, result.ultra_summary)
            logger.info(
                "Generated explanation for %s (%d chars, ultra-summary: %s)",
                module.full_name,
                len(result.explanation),
                result.ultra_summary is not None,
            )
        except Exception:
            logger.exception("Failed to generate explanation for module %s", ref)
            self._mark_module_error(ref)
            raise

        try:
            await self.indexer.index_module_analysis(module.id, force=True)
        except Exception as exc:
            logger.warning("Failed to index module analysis for %s: %s", module.full_name, exc)

        return result

    def _mark_module_error(self, ref: str) -> None:
        # Looked up again: the failure may predate resolving the module.
        try:
            module = self.repo.resolve_module(ref)
            if module is not None:
                self.repo.set_module_status(module.id, STATUS_ERROR)
        except sqlite3.Error as exc:
            logger.warning("Could not record error status for module %s: %s", ref, exc)

    # ------------------------------------------------------------------
    # Package
    # ------------------------------------------------------------------

    async def generate_package_explanation(self, ref: str, force: bool = False) -> str:
        """Explain a package, by id or address, from its modules' explanations.

        Modules without an explanation are explained first, one by one; a
        module that fails is left out of the package context.
        """
        try:
            pkg = self.repo.resolve_package(ref)
            if pkg is None:
                raise NotFoundError("package", ref)

            if pkg.explanation and not force:
                logger.info("Using cached explanation for package %s", pkg.address)
                return pkg.explanation

            self.repo.set_package_status(pkg.id, STATUS_PENDING)
            await self._explain_missing_modules(pkg)

            pkg = self.repo.get_package(pkg.id)
            if pkg is None:
                raise NotFoundError("package", ref)
            modules = self.repo.list_modules(pkg.id)
            explanation = await self.provider.complete(
                [
                    {"role": "system", "content": PACKAGE_SYSTEM_PROMPT},
                    {"role": "user", "content": self._package_prompt(pkg, modules)},
                ],
                temperature=0.5,
                max_tokens=2500,
            )
            self.repo.save_package_explanation(pkg.id, explanation)
            logger.info("Generated explanation for package %s (%d chars)", pkg.address, len(explanation))
        except Exception:
            logger.exception("Failed to generate explanation for package %s", ref)
            self._mark_package_error(ref)
            raise

        try:
            await self.indexer.index_package_analysis(pkg.address, explanation)
        except Exception as exc:
            logger.warning("Failed to index package analysis for %s: %s", pkg.address, exc)

        return explanation

    async def _explain_missing_modules(self, pkg: Package) -> None:
        modules = self.repo.list_modules(pkg.id)
        existing = generated = 0
        for module in modules:
            if module.explanation:
                existing += 1
                continue
            try:
                await self.generate_module_explanation(module.full_name)
                generated += 1
            except Exception as exc:
                logger.warning("Skipping module %s in package context: %s", module.full_name, exc)
        logger.info(
            "Package %s modules: %d already explained, %d generated, %d total",
            pkg.address,
            existing,
            generated,
            len(modules),
        )

    @staticmethod
    def _package_prompt(pkg: Package, modules: list[Module]) -> str:
        summaries = "\n".join(f"- {m.name}: {m.ultra_summary}" for m in modules if m.ultra_summary)
        explained = [m for m in modules if m.explanation][:PACKAGE_DETAIL_MODULES]
        details = "\n\n".join(f"--- Module: {m.name} ---\n{m.explanation}" for m in explained)

        lines = [f"PACKAGE: {pkg.address}"]
        if pkg.display_name:
            lines.append(f"NAME: {pkg.display_name}")
        lines += [
            f"Total Modules: {len(modules)}",
            "",
            "MODULE SUMMARIES (Quick Overview):",
            summaries or "No module summaries available",
            "",
            f"DETAILED MODULE ANALYSES (First {len(explained)} modules):",
            details or "No detailed explanations available",
            "",
            "Based on these module analyses, provide a comprehensive package-level "
            "explanation that synthesizes all the information.",
        ]
        return "\n".join(lines)

    def _mark_package_error(self, ref: str) -> None:
        try:
            pkg = self.repo.resolve_package(ref)
            if pkg is not None:
                self.repo.set_package_status(pkg.id, STATUS_ERROR)
        except sqlite3.Error as exc:
            logger.warning("Could not record error status for package %s: %s", ref, exc)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def generate_global_analysis_summary(self, analysis_id: str, force: bool = False) -> str:
        """Short business-level summary of an analysis, built from package explanations.

        The cache is keyed on the primary package: if the analysis now
        resolves to a different primary package the summary is regenerated
        even without *force*.

        Raises:
            NotFoundError: Unknown analysis.
            ValidationError: The snapshot lists no packages.
            MissingExplanationError: No package, or not the primary package,
                has an explanation yet.
        """
        analysis = self.repo.get_analysis(analysis_id)
        if analysis is None:
            raise NotFoundError("analysis", analysis_id)

        snapshot = GraphSnapshot.from_dict(analysis.summary)
        primary = snapshot.primary_package(analysis.package_address)
        if primary is None:
            raise ValidationError(f"Analysis {analysis_id} has no packages")

        cached = self.repo.get_global_summary(analysis_id)
        if cached and cached.summary and cached.primary_package_id == primary.address and not force:
            logger.info("Using cached global summary for %s (primary %s)", analysis_id, primary.address)
            return cached.summary

        explained = [
            p for p in self.repo.list_packages_by_addresses(snapshot.package_addresses()) if p.explanation
        ]
        if not explained:
            raise MissingExplanationError(
                "No package explanations found. Generate package explanations first."
            )
        primary_pkg = next((p for p in explained if p.address == primary.address), None)
        if primary_pkg is None:
            raise MissingExplanationError(
                f"Primary package {primary.address} does not have an explanation. Generate it first."
            )

        blocks = [
            f"--- {'PRIMARY PACKAGE' if p.address == primary.address else 'DEPENDENCY PACKAGE'}: "
            f"{p.display_name or p.address} ---\n{p.explanation}"
            for p in explained
        ]
        primary_label = primary.address
        if primary_pkg.display_name:
            primary_label += f" ({primary_pkg.display_name})"
        user_prompt = "\n".join(
            [
                f"ANALYSIS ID: {analysis_id}",
                f"PRIMARY PACKAGE: {primary_label}",
                f"TOTAL PACKAGES: {len(snapshot.packages)}",
                f"NETWORK: {analysis.network or 'mainnet'}",
                "",
                "PACKAGE EXPLANATIONS:",
                "\n\n".join(blocks),
                "",
                "Based on these package analyses, provide a concise global summary that explains "
                "the business logic and architecture from a high-level perspective, focusing on "
                "the primary package and how it integrates with dependencies.",
            ]
        )
        summary = await self.provider.complete(
            [
                {"role": "system", "content": GLOBAL_SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            temperature=0.5,
            max_tokens=600,
        )
        self.repo.upsert_global_summary(analysis_id, primary.address, summary)
        logger.info("Generated global summary for analysis %s (%d chars)", analysis_id, len(summary))
        return summary

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    async def generate_all_module_explanations(
        self,
        module_refs: list[str],
        force: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> BulkResult:
        """Explain every module concurrently; per-module failures are counted.

        Cached modules are skipped up front without a completion call.
        """
        total = len(module_refs)
        logger.info("Explaining %d modules (force=%s)", total, force)

        started = 0

        async def explain(ref: str) -> str:
            nonlocal started
            started += 1
            await notify(on_progress, started, total, f"Analyzing module {started}/{total}...")
            module = self.repo.resolve_module(ref)
            if module is not None and module.explanation and not force:
                return _SKIPPED
            await self.generate_module_explanation(ref, force=force)
            return _GENERATED

        outcomes = await gather_settled(module_refs, explain)
        result = _reduce(outcomes, "module")
        logger.info(
            "Module explanations: %d generated, %d skipped, %d failed, %d total",
            result.generated,
            result.skipped,
            result.failed,
            result.total,
        )
        return result

    async def generate_all_package_explanations(
        self,
        package_refs: list[str],
        force: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> BulkResult:
        """Explain every package concurrently; per-package failures are counted."""
        total = len(package_refs)
        logger.info("Explaining %d packages (force=%s)", total, force)

        started = 0

        async def explain(ref: str) -> str:
            nonlocal started
            started += 1
            await notify(on_progress, started, total, f"Analyzing package {started}/{total}...")
            pkg = self.repo.resolve_package(ref)
            if pkg is not None and pkg.explanation and not force:
                return _SKIPPED
            await self.generate_package_explanation(ref, force=force)
            return _GENERATED

        outcomes = await gather_settled(package_refs, explain)
        result = _reduce(outcomes, "package")
        logger.info(
            "Package explanations: %d generated, %d skipped, %d failed, %d total",
            result.generated,
            result.skipped,
            result.failed,
            result.total,
        )
        return result
