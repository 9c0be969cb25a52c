"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from types import SimpleNamespace

import pytest

from movelens.cli import analysis as analysis_cli
from movelens.cli import chat as chat_cli
from movelens.cli import explain as explain_cli
from movelens.cli import index as index_cli
from movelens.cli import init as init_cli
from movelens.cli import runtime
from movelens.db.connection import Database
from movelens.db.documents import DocumentStore
from movelens.db.models import Analysis, Edge
from movelens.db.repository import Repository
from movelens.db.schema import initialize
from movelens.errors import ProviderError, SourceUnavailableError
from movelens.graph import GraphSnapshot
from movelens.rag.chat import ChatEngine
from movelens.rag.explanations import ExplanationEngine
from movelens.rag.indexing import Indexer
from movelens.rag.llm_client import LiteLLMProvider
from movelens.rag.pipeline import PostAnalysisPipeline
from movelens.sources import ModuleSource, SourceResolver, parse_functions

VAULT_SOURCE = """\
module 0xabc::vault {
    use 0x2::coin;
    use 0x2::transfer;

    struct Vault has key {
        id: UID,
        balance: u64,
    }

    struct AdminCap has key, store { id: UID }

    public entry fun deposit(vault: &mut Vault, amount: u64, ctx: &mut TxContext) {
        let c = 0x2::coin::value(amount);
        transfer::public_transfer(c, @0x1);
    }

    public fun balance(vault: &Vault): u64 {
        vault.balance
    }

    public(friend) fun reset(vault: &mut Vault) {
        helper::zero(vault);
    }

    fun internal(): u64 {
        0
    }
}
"""

HELPER_SOURCE = """\
module 0xabc::helper {
    public fun zero(v: &mut u64) {
        coin::burn(v);
    }
}
"""

COIN_SOURCE = """\
module 0x2::coin {
    struct Coin<phantom T> has key, store {
        id: UID,
        value: u64,
    }

    public fun value(amount: u64): u64 {
        amount
    }

    public fun burn(v: &mut u64) {
        *v = 0;
    }
}
"""

SOURCES = {
    ("0xabc", "vault"): VAULT_SOURCE,
    ("0xabc", "helper"): HELPER_SOURCE,
    ("0x2", "coin"): COIN_SOURCE,
}


class FakeProvider:
    """Deterministic stand-in for LiteLLMProvider.

    Embeddings are derived from a hash of the text, so equal texts embed
    equally and every vector is non-zero.
    """

    def __init__(self, dimensions: int = 8) -> None:
        self.dimensions = dimensions
        self.response = "Detailed explanation.\nULTRA_SUMMARY: Manages vault deposits."
        self.embed_calls: list[str] = []
        self.complete_calls: list[dict] = []
        self.fail_embed = False
        self.fail_complete_if = None  # callable(messages) -> bool

    async def embed(self, text: str) -> list[float]:
        self.embed_calls.append(text)
        if self.fail_embed:
            raise ProviderError("Embedding failed (fake): quota exceeded")
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [b / 255 + 0.01 for b in digest[: self.dimensions]]

    async def complete(
        self, messages: list[dict], temperature: float = 0.0, max_tokens: int = 2048
    ) -> str:
        self.complete_calls.append(
            {"messages": messages, "temperature": temperature, "max_tokens": max_tokens}
        )
        if self.fail_complete_if is not None and self.fail_complete_if(messages):
            raise ProviderError("Completion failed (fake): timeout")
        return self.response


class FakeResolver(SourceResolver):
    """Dict-backed SourceResolver; missing modules raise SourceUnavailableError."""

    def __init__(self, sources: dict[tuple[str, str], str] | None = None) -> None:
        self.sources = dict(SOURCES if sources is None else sources)
        self.calls: list[tuple[str, str, str]] = []

    async def resolve(self, package_address: str, module_name: str, network: str) -> ModuleSource:
        self.calls.append((package_address, module_name, network))
        source_code = self.sources.get((package_address, module_name))
        if source_code is None:
            raise SourceUnavailableError(package_address, module_name, "not decompiled")
        return ModuleSource(
            package_address=package_address,
            module_name=module_name,
            network=network,
            source_code=source_code,
            functions=parse_functions(source_code),
        )


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".movelens.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


@pytest.fixture
def documents(tmp_db):
    return DocumentStore(tmp_db)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def move_sources() -> dict[tuple[str, str], str]:
    """Decompiled sources keyed by (package_address, module_name)."""
    return dict(SOURCES)


@pytest.fixture
def make_resolver():
    """Factory for a FakeResolver over a custom source mapping."""
    return FakeResolver


@pytest.fixture
def engines(repo, documents, provider, resolver):
    """Indexer, explainer, chat and pipeline wired to fakes, with no pacing delays."""
    indexer = Indexer(repo, documents, provider, resolver, network="mainnet", batch_pause=0)
    explainer = ExplanationEngine(repo, documents, provider, indexer, related_modules=3)
    chat = ChatEngine(repo, documents, provider, default_limit=20, history_limit=10)
    pipeline = PostAnalysisPipeline(repo, resolver, indexer, explainer, pace_every=5, pace_delay=0)
    return SimpleNamespace(
        repo=repo,
        documents=documents,
        provider=provider,
        resolver=resolver,
        indexer=indexer,
        explainer=explainer,
        chat=chat,
        pipeline=pipeline,
    )


@pytest.fixture
def snapshot_data() -> dict:
    """Crawler graph snapshot: two packages, three modules, four module-call edges."""
    return {
        "packages": [
            {"id": "pkg:0xabc", "address": "0xabc", "displayName": "Vaults"},
            {"id": "pkg:0x2", "address": "0x2"},
        ],
        "modules": [
            {
                "id": "mod:0xabc::vault",
                "package": "pkg:0xabc",
                "name": "vault",
                "fullName": "0xabc::vault",
                "functions": [
                    {"name": "deposit", "visibility": "Entry", "isEntry": True},
                    {"name": "balance", "visibility": "Public", "isEntry": False},
                    {"name": "reset", "visibility": "Friend"},
                ],
                "friends": ["0xabc::helper"],
            },
            {
                "id": "mod:0xabc::helper",
                "package": "pkg:0xabc",
                "name": "helper",
                "fullName": "0xabc::helper",
                "functions": [{"name": "zero", "visibility": "Public"}],
            },
            {
                "id": "mod:0x2::coin",
                "package": "pkg:0x2",
                "name": "coin",
                "fullName": "0x2::coin",
                "functions": [
                    {"name": "value", "visibility": "Public"},
                    {"name": "burn", "visibility": "Public"},
                ],
            },
        ],
        "flags": [
            {
                "level": "warn",
                "kind": "ADMIN_CAP",
                "scope": "module",
                "refId": "mod:0xabc::vault",
                "details": {"struct": "AdminCap"},
            },
            {"level": "info", "kind": "NOTE", "scope": "package", "refId": "pkg:0xabc"},
        ],
        "edges": [
            {"kind": "MOD_CALLS", "from": "mod:0xabc::vault", "to": "mod:0x2::coin", "evidence": {"weight": 2}},
            {"kind": "MOD_CALLS", "from": "mod:0xabc::vault", "to": "mod:0xabc::helper"},
            {"kind": "MOD_CALLS", "from": "mod:0xabc::helper", "to": "mod:0x2::coin"},
            {"kind": "MOD_CALLS", "from": "mod:0xdef::ghost", "to": "mod:0x2::coin", "evidence": {"weight": 1}},
            {"kind": "PKG_DEPENDS", "from": "pkg:0xabc", "to": "pkg:0x2"},
        ],
    }


@pytest.fixture
def stored_analysis(repo, snapshot_data) -> str:
    """Store *snapshot_data* as analysis 'an-1' with its edges; return the id."""
    analysis = Analysis(
        id="an-1",
        package_address="0xabc",
        summary_json=json.dumps(snapshot_data),
        network="mainnet",
    )
    repo.add_analysis(analysis)
    for edge in GraphSnapshot.from_dict(snapshot_data).edges:
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
    return analysis.id


@pytest.fixture
def seed_modules(repo):
    """Insert vault + helper (0xabc) and coin (0x2) with cached sources; return full_name → Module."""
    abc = repo.upsert_package("0xabc", "Vaults")
    sui = repo.upsert_package("0x2", "Sui Framework")
    modules = {
        "0xabc::vault": repo.upsert_module(abc.id, "vault", "0xabc::vault", VAULT_SOURCE),
        "0xabc::helper": repo.upsert_module(abc.id, "helper", "0xabc::helper", HELPER_SOURCE),
        "0x2::coin": repo.upsert_module(sui.id, "coin", "0x2::coin", COIN_SOURCE),
    }
    vault = modules["0xabc::vault"]
    repo.upsert_function(vault.id, "deposit", "entry", is_entry=True)
    repo.upsert_function(vault.id, "balance", "public")
    repo.upsert_function(vault.id, "reset", "public(friend)")
    return modules


_PROJECT_YAML = """\
pipeline:
  network: mainnet
  pace_every: 5
  pace_delay: 0
indexing:
  batch_size: 10
  batch_pause: 0
embedding:
  dimensions: 8
"""


@pytest.fixture(autouse=True)
def wide_cli_consoles(monkeypatch):
    """Fix CLI console width so rich never wraps asserted messages."""
    for module in (analysis_cli, chat_cli, explain_cli, index_cli, init_cli, runtime):
        monkeypatch.setattr(module.console, "width", 200)


@pytest.fixture
def cli_project(tmp_path, monkeypatch, snapshot_data):
    """Initialized project in a chdir'd tmp_path with sources on disk and a fake provider.

    The global config lives under tmp_path, MOVELENS_* overrides are cleared
    and ``LiteLLMProvider.from_config`` returns a FakeProvider.
    """
    monkeypatch.setattr("movelens.config._GLOBAL_CONFIG_PATH", tmp_path / "home" / "config.yaml")
    for var in ("MOVELENS_GENERATION_MODEL", "MOVELENS_EMBEDDING_MODEL", "MOVELENS_NETWORK", "MOVELENS_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-key")
    monkeypatch.setitem(runtime.state, "log_level", None)
    monkeypatch.chdir(tmp_path)

    with Database(tmp_path / ".movelens.db") as conn:
        initialize(conn)
    (tmp_path / "movelens.yaml").write_text(_PROJECT_YAML, encoding="utf-8")
    for (address, module_name), source in SOURCES.items():
        module_dir = tmp_path / "sources" / address
        module_dir.mkdir(parents=True, exist_ok=True)
        (module_dir / f"{module_name}.move").write_text(source, encoding="utf-8")
    graph_file = tmp_path / "graph.json"
    graph_file.write_text(json.dumps(snapshot_data), encoding="utf-8")

    fake = FakeProvider()
    monkeypatch.setattr(LiteLLMProvider, "from_config", staticmethod(lambda cfg: fake))
    yield SimpleNamespace(path=tmp_path, provider=fake, graph_file=graph_file)

    logger = logging.getLogger("movelens")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
