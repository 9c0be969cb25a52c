"""movelens analysis commands.

Commands:
  movelens analysis import FILE   store a crawler graph snapshot (JSON) as an analysis
  movelens analysis process ID    upsert rows, index sources, generate explanations
  movelens analysis enrich ID     attach function-level calls to module-call edges
  movelens analysis status ID     edge enrichment coverage
"""

from __future__ import annotations

import asyncio
import json
import uuid
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from movelens.cli.errors import err_invalid_graph
from movelens.cli.runtime import (
    DEFAULT_DB,
    DEFAULT_SOURCES,
    build_services,
    cli_errors,
    load_cli_config,
    open_db,
)
from movelens.db.models import Analysis, Edge
from movelens.db.repository import Repository
from movelens.enrich import enrich_analysis_with_revela, get_enrichment_status
from movelens.graph import GraphSnapshot
from movelens.rag.explanations import BulkResult

console = Console()

analysis_app = typer.Typer(
    name="analysis",
    help="Import, process and enrich analysis graph snapshots.",
    add_completion=False,
)


@analysis_app.command("import")
def analysis_import_cmd(
    graph_file: Annotated[
        Path,
        typer.Argument(help="Graph snapshot JSON written by the package crawler."),
    ],
    package: Annotated[
        Optional[str],
        typer.Option("--package", help="Address the analysis was requested for. Defaults to the first package."),
    ] = None,
    network: Annotated[
        Optional[str],
        typer.Option("--network", help="Network of the analysis. Defaults to pipeline.network."),
    ] = None,
    analysis_id: Annotated[
        Optional[str],
        typer.Option("--id", help="Analysis id. Defaults to a new UUID."),
    ] = None,
    db: Annotated[Path, typer.Option("--db", help="Path to .movelens.db.")] = DEFAULT_DB,
) -> None:
    """Store a graph snapshot and its module-call edges as an analysis."""
    cfg = load_cli_config()
    try:
        data = json.loads(graph_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        console.print(err_invalid_graph(str(graph_file), str(exc)))
        raise typer.Exit(1) from exc
    if not isinstance(data, dict):
        console.print(err_invalid_graph(str(graph_file), "top-level value is not an object"))
        raise typer.Exit(1)

    snapshot = GraphSnapshot.from_dict(data)
    if not snapshot.packages:
        console.print(err_invalid_graph(str(graph_file), "no packages"))
        raise typer.Exit(1)

    analysis = Analysis(
        id=analysis_id or str(uuid.uuid4()),
        package_address=package or snapshot.packages[0].address,
        summary_json=json.dumps(data),
        network=network or cfg.pipeline.network,
    )
    conn = open_db(db)
    try:
        repo = Repository(conn)
        repo.add_analysis(analysis)
        for edge in snapshot.edges:
            repo.add_edge(
                Edge(
                    id=str(uuid.uuid4()),
                    analysis_id=analysis.id,
                    kind=edge.kind,
                    from_node=edge.from_node,
                    to_node=edge.to_node,
                    evidence=edge.evidence,
                )
            )
    finally:
        conn.close()

    console.print(f"[green]✓[/] Imported analysis [bold]{analysis.id}[/]")
    console.print(
        f"  {len(snapshot.packages)} packages, {len(snapshot.modules)} modules, "
        f"{len(snapshot.edges)} edges ({analysis.network})"
    )


@analysis_app.command("process")
def analysis_process_cmd(
    analysis_id: Annotated[str, typer.Argument(help="Analysis id.")],
    sources: Annotated[
        Path,
        typer.Option("--sources", help="Decompiled sources directory (<address>/<module>.move)."),
    ] = DEFAULT_SOURCES,
    db: Annotated[Path, typer.Option("--db", help="Path to .movelens.db.")] = DEFAULT_DB,
) -> None:
    """Run the post-analysis pipeline: index sources, explain modules and packages."""
    cfg = load_cli_config()
    conn = open_db(db)
    try:
        services = build_services(conn, cfg, sources)
        with cli_errors(sources), Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            transient=True,
            console=console,
        ) as prog:
            task = prog.add_task("Processing…", total=None)

            def _on_progress(current: int, total: int, message: str) -> None:
                prog.update(task, completed=current, total=total, description=message)

            result = asyncio.run(
                services.pipeline.process_analysis_for_rag(analysis_id, _on_progress)
            )
    finally:
        conn.close()

    console.print(f"[green]✓[/] Processed analysis [bold]{analysis_id}[/]")
    table = Table(show_header=True, header_style="bold")
    table.add_column("Stage")
    table.add_column("Generated / indexed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right")
    table.add_row("Source indexing", str(result.indexed), str(result.already_embedded), str(result.failed))
    _add_bulk_row(table, "Module explanations", result.module_explanations)
    _add_bulk_row(table, "Package explanations", result.package_explanations)
    console.print(table)


def _add_bulk_row(table: Table, label: str, result: BulkResult) -> None:
    table.add_row(label, str(result.generated), str(result.skipped), str(result.failed))


@analysis_app.command("enrich")
def analysis_enrich_cmd(
    analysis_id: Annotated[str, typer.Argument(help="Analysis id.")],
    sources: Annotated[
        Path,
        typer.Option("--sources", help="Decompiled sources directory (<address>/<module>.move)."),
    ] = DEFAULT_SOURCES,
    db: Annotated[Path, typer.Option("--db", help="Path to .movelens.db.")] = DEFAULT_DB,
) -> None:
    """Attach function-level call evidence to module-call edges."""
    cfg = load_cli_config()
    conn = open_db(db)
    try:
        services = build_services(conn, cfg, sources, require_keys=False)
        with cli_errors(sources):
            enriched = asyncio.run(
                enrich_analysis_with_revela(services.repo, services.resolver, analysis_id)
            )
            status = get_enrichment_status(services.repo, analysis_id)
    finally:
        conn.close()

    console.print(f"[green]✓[/] Enriched {enriched} edges")
    console.print(f"  Coverage: {status.enriched}/{status.total} ({status.percentage}%)")


@analysis_app.command("status")
def analysis_status_cmd(
    analysis_id: Annotated[str, typer.Argument(help="Analysis id.")],
    db: Annotated[Path, typer.Option("--db", help="Path to .movelens.db.")] = DEFAULT_DB,
) -> None:
    """Show how many module-call edges carry function-level evidence."""
    load_cli_config()
    conn = open_db(db)
    try:
        repo = Repository(conn)
        analysis = repo.get_analysis(analysis_id)
        if analysis is None:
            console.print(f"[red]Error:[/] Analysis {analysis_id} not found.")
            raise typer.Exit(1)
        status = get_enrichment_status(repo, analysis_id)
    finally:
        conn.close()

    console.print(f"[bold]Analysis {analysis_id}[/] ({analysis.package_address}, {analysis.network})")
    console.print(f"  Module-call edges:  {status.total}")
    console.print(f"  Enriched:           {status.enriched} ({status.percentage}%)")
