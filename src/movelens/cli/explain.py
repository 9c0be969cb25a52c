"""movelens explain: generate (or show cached) LLM explanations.

Commands:
  movelens explain module REF    REF = module id or full name (0x2::coin)
  movelens explain package REF   REF = package id or address (0x2)
  movelens explain global ID     cross-package summary for an analysis
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel

from movelens.cli.runtime import (
    DEFAULT_DB,
    DEFAULT_SOURCES,
    build_services,
    cli_errors,
    load_cli_config,
    open_db,
)

console = Console()

explain_app = typer.Typer(
    name="explain",
    help="Generate explanations for modules, packages and analyses.",
    add_completion=False,
)

_ForceOpt = Annotated[bool, typer.Option("--force", "-f", help="Regenerate even when cached.")]
_DbOpt = Annotated[Path, typer.Option("--db", help="Path to .movelens.db.")]
_SourcesOpt = Annotated[
    Path, typer.Option("--sources", help="Decompiled sources directory (<address>/<module>.move).")
]


@explain_app.command("module")
def explain_module_cmd(
    ref: Annotated[str, typer.Argument(help="Module id or full name, e.g. 0x2::coin.")],
    force: _ForceOpt = False,
    sources: _SourcesOpt = DEFAULT_SOURCES,
    db: _DbOpt = DEFAULT_DB,
) -> None:
    """Explain one module, using related modules of its package as context."""
    cfg = load_cli_config()
    conn = open_db(db)
    try:
        services = build_services(conn, cfg, sources)
        with cli_errors(sources), console.status(f"Explaining {ref}…"):
            result = asyncio.run(services.explainer.generate_module_explanation(ref, force=force))
    finally:
        conn.close()

    console.print(Panel(Markdown(result.explanation), title=ref, expand=False))
    if result.ultra_summary:
        console.print(f"[bold]In one line:[/] {result.ultra_summary}")


@explain_app.command("package")
def explain_package_cmd(
    ref: Annotated[str, typer.Argument(help="Package id or address, e.g. 0x2.")],
    force: _ForceOpt = False,
    sources: _SourcesOpt = DEFAULT_SOURCES,
    db: _DbOpt = DEFAULT_DB,
) -> None:
    """Explain a package, explaining any unexplained modules first."""
    cfg = load_cli_config()
    conn = open_db(db)
    try:
        services = build_services(conn, cfg, sources)
        with cli_errors(sources), console.status(f"Explaining package {ref}…"):
            explanation = asyncio.run(
                services.explainer.generate_package_explanation(ref, force=force)
            )
    finally:
        conn.close()

    console.print(Panel(Markdown(explanation), title=ref, expand=False))


@explain_app.command("global")
def explain_global_cmd(
    analysis_id: Annotated[str, typer.Argument(help="Analysis id.")],
    force: _ForceOpt = False,
    db: _DbOpt = DEFAULT_DB,
) -> None:
    """Summarize an analysis from its package explanations."""
    cfg = load_cli_config()
    conn = open_db(db)
    try:
        services = build_services(conn, cfg)
        with cli_errors(), console.status("Writing analysis summary…"):
            summary = asyncio.run(
                services.explainer.generate_global_analysis_summary(analysis_id, force=force)
            )
    finally:
        conn.close()

    console.print(Panel(Markdown(summary), title=f"Analysis {analysis_id}", expand=False))
