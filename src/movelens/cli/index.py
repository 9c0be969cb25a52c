"""movelens index: embed decompiled module sources into the document store."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn

from movelens.cli.runtime import (
    DEFAULT_DB,
    DEFAULT_SOURCES,
    build_services,
    cli_errors,
    load_cli_config,
    open_db,
)
from movelens.errors import ValidationError

console = Console()


def index_cmd(
    package: Annotated[
        Optional[str],
        typer.Option("--package", help="Only index modules of this package (id or address)."),
    ] = None,
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Re-embed modules that are already indexed.")
    ] = False,
    batch_size: Annotated[
        Optional[int],
        typer.Option("--batch-size", help="Modules embedded concurrently. Defaults to indexing.batch_size."),
    ] = None,
    sources: Annotated[
        Path,
        typer.Option("--sources", help="Decompiled sources directory (<address>/<module>.move)."),
    ] = DEFAULT_SOURCES,
    db: Annotated[Path, typer.Option("--db", help="Path to .movelens.db.")] = DEFAULT_DB,
) -> None:
    """Index module sources for retrieval."""
    cfg = load_cli_config()
    size = batch_size if batch_size is not None else cfg.indexing.batch_size
    conn = open_db(db)
    try:
        services = build_services(conn, cfg, sources)
        with cli_errors(sources):
            if package:
                with console.status(f"Indexing package {package}…"):
                    result = asyncio.run(services.indexer.index_package_modules(package))
            else:
                if size < 1:
                    raise ValidationError("--batch-size must be at least 1")
                with Progress(
                    TextColumn("Indexing"),
                    BarColumn(),
                    MofNCompleteColumn(),
                    transient=True,
                    console=console,
                ) as prog:
                    task = prog.add_task("index", total=None)

                    def _on_progress(done: int, total: int) -> None:
                        prog.update(task, completed=done, total=total)

                    result = asyncio.run(
                        services.indexer.reindex_all_modules(
                            batch_size=size, on_progress=_on_progress, force=force
                        )
                    )
    finally:
        conn.close()

    console.print(
        f"[green]✓[/] Indexed {result.indexed}, skipped {result.skipped}, "
        f"failed {result.failed} of {result.total} modules"
    )
    if result.failed:
        raise typer.Exit(1)
