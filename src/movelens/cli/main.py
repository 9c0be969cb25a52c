"""MoveLens CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated, Optional

import typer

from movelens.cli import runtime
from movelens.cli.analysis import analysis_app
from movelens.cli.chat import chat_app
from movelens.cli.explain import explain_app
from movelens.cli.index import index_cmd
from movelens.cli.init import init_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("movelens")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"movelens {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="movelens",
    help=(
        "MoveLens: explain and query analyzed Move packages.\n\n"
        "  movelens analysis process  Index sources and explain every module and package.\n"
        "  movelens chat ask          Ask questions grounded in the indexed sources."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="Override logging.level (DEBUG, INFO, WARNING, ERROR)."),
    ] = None,
) -> None:
    """MoveLens: explain and query analyzed Move packages."""
    runtime.state["log_level"] = log_level.upper() if log_level else None


app.command("init")(init_cmd)
app.command("index")(index_cmd)
app.add_typer(analysis_app, name="analysis")
app.add_typer(explain_app, name="explain")
app.add_typer(chat_app, name="chat")


@app.command("version")
def version_cmd() -> None:
    """Show the installed MoveLens version."""
    typer.echo(f"movelens {_installed_version()}")


if __name__ == "__main__":
    app()
