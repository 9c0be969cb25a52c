"""movelens chat: ask questions against indexed modules and explanations.

Commands:
  movelens chat ask QUESTION   answer a question (new session unless --chat-id)
  movelens chat history ID     print a session's messages
  movelens chat list           recent sessions
  movelens chat delete ID      delete a session and its messages
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from movelens.cli.runtime import DEFAULT_DB, build_services, cli_errors, load_cli_config, open_db

console = Console()

chat_app = typer.Typer(
    name="chat",
    help="Ask questions about analyzed packages.",
    add_completion=False,
)

_DbOpt = Annotated[Path, typer.Option("--db", help="Path to .movelens.db.")]


@chat_app.command("ask")
def chat_ask_cmd(
    question: Annotated[str, typer.Argument(help="Question to answer.")],
    chat_id: Annotated[
        Optional[int], typer.Option("--chat-id", help="Continue an existing chat session.")
    ] = None,
    analysis: Annotated[
        Optional[str], typer.Option("--analysis", help="Scope to an analysis (adds its inventory).")
    ] = None,
    package: Annotated[
        Optional[str], typer.Option("--package", help="Restrict retrieval to a package (id or address).")
    ] = None,
    module: Annotated[
        Optional[str], typer.Option("--module", help="Module id recorded on a new session.")
    ] = None,
    sources: Annotated[
        bool, typer.Option("--sources/--no-sources", help="Show retrieved documents.")
    ] = False,
    db: _DbOpt = DEFAULT_DB,
) -> None:
    """Answer a question from indexed sources and cached explanations."""
    cfg = load_cli_config()
    conn = open_db(db)
    try:
        services = build_services(conn, cfg)
        with cli_errors(), console.status("Thinking…"):
            answer = asyncio.run(
                services.chat.rag_chat(
                    question,
                    chat_id=chat_id,
                    analysis_id=analysis,
                    package_id=package,
                    module_id=module,
                )
            )
    finally:
        conn.close()

    console.print(Markdown(answer.answer))
    if sources and answer.sources_used:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Module")
        table.add_column("Similarity", justify="right")
        for src in answer.sources_used:
            table.add_row(f"{src.package_address}::{src.module_name}", f"{src.similarity * 100:.1f}%")
        console.print(table)
    console.print(f"\n[dim]chat {answer.chat_id}: continue with --chat-id {answer.chat_id}[/]")


@chat_app.command("history")
def chat_history_cmd(
    chat_id: Annotated[int, typer.Argument(help="Chat session id.")],
    db: _DbOpt = DEFAULT_DB,
) -> None:
    """Print every message of a chat session."""
    cfg = load_cli_config()
    conn = open_db(db)
    try:
        services = build_services(conn, cfg, require_keys=False)
        with cli_errors():
            messages = services.chat.get_chat_history(chat_id)
    finally:
        conn.close()

    if not messages:
        console.print("[dim]No messages.[/]")
        return
    for msg in messages:
        style = "bold cyan" if msg.role == "user" else "bold green"
        console.print(f"[{style}]{msg.role}[/] [dim]{msg.created_at or ''}[/]")
        console.print(msg.content)
        console.print()


@chat_app.command("list")
def chat_list_cmd(
    analysis: Annotated[Optional[str], typer.Option("--analysis", help="Filter by analysis id.")] = None,
    package: Annotated[Optional[str], typer.Option("--package", help="Filter by package id.")] = None,
    module: Annotated[Optional[str], typer.Option("--module", help="Filter by module id.")] = None,
    limit: Annotated[int, typer.Option("--limit", help="Maximum sessions to show.")] = 50,
    db: _DbOpt = DEFAULT_DB,
) -> None:
    """List chat sessions, newest first."""
    cfg = load_cli_config()
    conn = open_db(db)
    try:
        services = build_services(conn, cfg, require_keys=False)
        chats = services.chat.list_chats(analysis, package, module, limit)
    finally:
        conn.close()

    if not chats:
        console.print("[dim]No chat sessions.[/]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", justify="right")
    table.add_column("Scope")
    table.add_column("Messages", justify="right")
    table.add_column("Created")
    for chat in chats:
        scope = chat.analysis_id or chat.package_id or chat.module_id or "-"
        table.add_row(str(chat.id), scope, str(chat.message_count), chat.created_at or "")
    console.print(table)


@chat_app.command("delete")
def chat_delete_cmd(
    chat_id: Annotated[int, typer.Argument(help="Chat session id.")],
    db: _DbOpt = DEFAULT_DB,
) -> None:
    """Delete a chat session and its messages."""
    cfg = load_cli_config()
    conn = open_db(db)
    try:
        services = build_services(conn, cfg, require_keys=False)
        with cli_errors():
            services.chat.delete_chat(chat_id)
    finally:
        conn.close()
    console.print(f"[green]✓[/] Deleted chat {chat_id}")
