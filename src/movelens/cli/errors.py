"""Console text for failures the CLI reports.

Each helper returns rich markup naming the problem on the first line and the
command or setting that fixes it on the next, e.g.::

    console.print(err_no_db(".movelens.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from movelens.errors import NotFoundError, SourceUnavailableError
from movelens.rag.llm_client import key_env_var


def err_no_api_key(provider: str) -> str:
    env_var = key_env_var(provider) or f"{provider.upper()}_API_KEY"
    return (
        f"[red]Error:[/] Provider '{provider}' needs credentials.\n"
        f"  Set:  export {env_var}=<key>"
    )


def err_no_db(db_path: str = ".movelens.db") -> str:
    """No .movelens.db found."""
    return (
        f"[red]Error:[/] '{db_path}' does not exist in this directory.\n"
        "  Run:  movelens init"
    )


def err_not_found(exc: NotFoundError) -> str:
    """Module / package / analysis / chat lookup failed."""
    hints = {
        "analysis": "  Run:  movelens analysis import <graph.json>",
        "module": "  Pass a module id or full name such as 0x2::coin.",
        "package": "  Pass a package id or on-chain address such as 0x2.",
        "chat": "  Run:  movelens chat list  to see existing chats.",
    }
    hint = hints.get(exc.kind, "")
    return f"[red]Error:[/] {exc}.\n{hint}".rstrip()


def err_source_unavailable(exc: SourceUnavailableError, sources_dir: str) -> str:
    """Decompiled source missing for a module."""
    return (
        f"[red]Error:[/] {exc}\n"
        f"  Place decompiled source at {sources_dir}/{exc.package_address}/{exc.module_name}.move\n"
        "  or point --sources at the decompiler output directory."
    )


def err_provider(detail: str) -> str:
    """Embedding or completion provider call failed after retries."""
    return (
        f"[red]Error:[/] Provider call failed: {detail}\n"
        "  Check your API key, quota and network, then retry."
    )


def err_missing_explanation(detail: str) -> str:
    """Summary requested before its inputs were explained."""
    return (
        f"[red]Error:[/] {detail}\n"
        "  Run:  movelens explain package <address>  (or movelens analysis process <id>)"
    )


def err_invalid_input(detail: str) -> str:
    return f"[red]Error:[/] {detail}"


def err_config(detail: str) -> str:
    """Config file is invalid."""
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {detail}"
    )


def err_invalid_graph(path: str, detail: str) -> str:
    """Graph snapshot file could not be read."""
    return (
        f"[red]Error:[/] Could not read graph snapshot '{path}': {detail}\n"
        "  Expected a JSON object with packages, modules, flags and edges."
    )
