"""movelens init: create the project database, config and sources directory.

Creates:
  .movelens.db             database with schema
  movelens.yaml            per-project config (network, pacing, retrieval)
  sources/                 decompiled module sources: sources/<address>/<module>.move
  ~/.movelens/config.yaml  global model config (created once, mode 0o600)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from movelens.config import NETWORKS, ensure_global_config
from movelens.db.connection import Database
from movelens.db.schema import initialize

console = Console()

_DEFAULT_PROJECT_DIR = Path(".")

_PROJECT_YAML = """\
# MoveLens project configuration. API keys belong in environment variables.

pipeline:
  network: {network}
  pace_every: 5
  pace_delay: 0.1

retrieval:
  default_limit: 20
  history_limit: 10
  related_modules: 3

indexing:
  batch_size: 10
  batch_pause: 1.0
"""


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = _DEFAULT_PROJECT_DIR,
    network: Annotated[
        str,
        typer.Option("--network", help="Network the analyses come from."),
    ] = "mainnet",
) -> None:
    """Initialize a MoveLens project directory."""
    if network not in NETWORKS:
        console.print(
            f"[red]Error:[/] Unknown network '{network}'.\n"
            f"  Use one of: {', '.join(sorted(NETWORKS))}"
        )
        raise typer.Exit(1)

    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    db_path = project_dir / ".movelens.db"
    if db_path.exists():
        console.print(f"[yellow]⚠[/]  {db_path} already exists.")
        if not typer.confirm("Re-initialize? Existing data is preserved.", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)

    console.print(f"\n[bold]Creating MoveLens project in {project_dir} …[/]\n")

    with Database(db_path) as conn:
        initialize(conn)
    console.print("  [green]✓[/] .movelens.db")

    cfg_path = project_dir / "movelens.yaml"
    if cfg_path.exists():
        console.print("  [dim]↷ movelens.yaml already exists, left unchanged[/]")
    else:
        cfg_path.write_text(_PROJECT_YAML.format(network=network), encoding="utf-8")
        console.print("  [green]✓[/] movelens.yaml")

    (project_dir / "sources").mkdir(exist_ok=True)
    console.print("  [green]✓[/] sources/")

    global_cfg = ensure_global_config()
    console.print(f"  [green]✓[/] {global_cfg} (global config)")

    console.print("\n[bold green]✓ Project initialized.[/]")
    console.print("\nNext steps:")
    console.print("  1. Put decompiled modules in sources/<address>/<module>.move")
    console.print("  2. movelens analysis import graph.json")
    console.print("  3. movelens analysis process <analysis-id>")
    console.print("  4. movelens chat ask \"What does this package do?\" --analysis <analysis-id>")
