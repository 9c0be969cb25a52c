"""Shared wiring for CLI commands: config, database, engines, error mapping."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import typer
from rich.console import Console

from movelens.cli.errors import (
    err_config,
    err_invalid_input,
    err_missing_explanation,
    err_no_api_key,
    err_no_db,
    err_not_found,
    err_provider,
    err_source_unavailable,
)
from movelens.config import ConfigError, MoveLensConfig, load_config
from movelens.db.connection import Database
from movelens.db.documents import DocumentStore
from movelens.db.repository import Repository
from movelens.db.schema import initialize
from movelens.errors import (
    MissingExplanationError,
    NotFoundError,
    ProviderError,
    SourceUnavailableError,
    ValidationError,
)
from movelens.log import configure_logging
from movelens.rag.chat import ChatEngine
from movelens.rag.explanations import ExplanationEngine
from movelens.rag.indexing import Indexer
from movelens.rag.llm_client import LiteLLMProvider, provider_of, validate_api_key
from movelens.rag.pipeline import PostAnalysisPipeline
from movelens.sources import CachingSourceResolver, DirectorySourceResolver

console = Console()

DEFAULT_DB = Path(".movelens.db")
DEFAULT_SOURCES = Path("sources")

# Set by the root callback (--log-level).
state: dict[str, str | None] = {"log_level": None}


@dataclass
class Services:
    repo: Repository
    documents: DocumentStore
    provider: LiteLLMProvider
    indexer: Indexer
    explainer: ExplanationEngine
    chat: ChatEngine
    pipeline: PostAnalysisPipeline
    resolver: CachingSourceResolver


def load_cli_config() -> MoveLensConfig:
    """Load config and configure logging; exit with a message on bad config."""
    try:
        cfg = load_config()
        configure_logging(state["log_level"] or cfg.logging.level)
    except (ConfigError, ValueError) as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc
    return cfg


def open_db(db_path: Path) -> sqlite3.Connection:
    """Open an existing project database and run pending migrations."""
    if not db_path.exists():
        console.print(err_no_db(str(db_path)))
        raise typer.Exit(1)
    conn = Database(db_path).connect()
    initialize(conn)
    return conn


def build_services(
    conn: sqlite3.Connection,
    cfg: MoveLensConfig,
    sources_dir: Path = DEFAULT_SOURCES,
    *,
    require_keys: bool = True,
) -> Services:
    """Wire the repository, stores and engines for one CLI invocation."""
    if require_keys:
        for model in (cfg.generation.model, cfg.embedding.model):
            try:
                validate_api_key(model)
            except EnvironmentError as exc:
                console.print(err_no_api_key(provider_of(model)))
                raise typer.Exit(1) from exc

    provider = LiteLLMProvider.from_config(cfg)

    repo = Repository(conn)
    documents = DocumentStore(conn, dimensions=cfg.embedding.dimensions)
    resolver = CachingSourceResolver(DirectorySourceResolver(sources_dir), repo)
    indexer = Indexer(
        repo,
        documents,
        provider,
        resolver,
        network=cfg.pipeline.network,
        batch_pause=cfg.indexing.batch_pause,
    )
    explainer = ExplanationEngine(
        repo, documents, provider, indexer, related_modules=cfg.retrieval.related_modules
    )
    chat = ChatEngine(
        repo,
        documents,
        provider,
        default_limit=cfg.retrieval.default_limit,
        history_limit=cfg.retrieval.history_limit,
    )
    pipeline = PostAnalysisPipeline(
        repo,
        resolver,
        indexer,
        explainer,
        pace_every=cfg.pipeline.pace_every,
        pace_delay=cfg.pipeline.pace_delay,
    )
    return Services(repo, documents, provider, indexer, explainer, chat, pipeline, resolver)


@contextmanager
def cli_errors(sources_dir: Path = DEFAULT_SOURCES) -> Iterator[None]:
    """Map domain exceptions to actionable messages and exit code 1."""
    try:
        yield
    except NotFoundError as exc:
        console.print(err_not_found(exc))
        raise typer.Exit(1) from exc
    except SourceUnavailableError as exc:
        console.print(err_source_unavailable(exc, str(sources_dir)))
        raise typer.Exit(1) from exc
    except ProviderError as exc:
        console.print(err_provider(str(exc)))
        raise typer.Exit(1) from exc
    except MissingExplanationError as exc:
        console.print(err_missing_explanation(str(exc)))
        raise typer.Exit(1) from exc
    except ValidationError as exc:
        console.print(err_invalid_input(str(exc)))
        raise typer.Exit(1) from exc
