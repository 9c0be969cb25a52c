"""Analysis job: crawl stage then RAG stage, reported as one 0-100 progress value.

Progress bands: 10 on start, analysis 0-90, RAG 90-99, 100 when done. Values
only ever increase; a repeated or lower value is not sent. A RAG
failure is logged and the job still completes; an analysis failure fails
the job.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from movelens.rag.fanout import notify
from movelens.rag.pipeline import PostAnalysisPipeline

logger = logging.getLogger(__name__)

AnalyzeFn = Callable[[Callable[[float], Awaitable[None]]], Awaitable[str]]


async def run_analysis_job(
    job_id: str,
    analyze: AnalyzeFn,
    pipeline: PostAnalysisPipeline,
    report_progress: Callable[[int], Any],
) -> str:
    """Run one analysis job and return the analysis id.

    Args:
        job_id: Identifier used in log lines.
        analyze: Coroutine function running the crawl; receives a progress
            callback taking 0-100 and returns the stored analysis id.
        pipeline: Post-analysis pipeline to run once the crawl finishes.
        report_progress: Sync or async callback receiving overall 0-100.
    """
    logger.info("Processing job %s", job_id)
    reported = 0

    async def report(value: int) -> None:
        # repeats and regressions are dropped so the job never moves backwards
        nonlocal reported
        if value > reported:
            reported = value
            await notify(report_progress, value)

    await report(10)

    async def analysis_progress(progress: float) -> None:
        await report(round(progress * 0.9))

    try:
        analysis_id = await analyze(analysis_progress)
    except Exception:
        logger.exception("Job %s failed during analysis", job_id)
        raise
    logger.info("Job %s analysis stage complete: %s", job_id, analysis_id)
    await report(90)

    async def rag_progress(current: int, total: int, message: str) -> None:
        if total > 0:
            await report(min(90 + round(current / total * 10), 99))
        logger.debug("RAG progress %d/%d - %s", current, total, message)

    try:
        await pipeline.process_analysis_for_rag(analysis_id, rag_progress)
    except Exception as exc:
        logger.error("RAG processing failed for analysis %s: %s", analysis_id, exc)

    await report(100)
    logger.info("Job %s completed", job_id)
    return analysis_id
