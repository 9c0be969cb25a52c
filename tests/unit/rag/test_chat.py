"""Tests for the multi-turn RAG chat engine."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from movelens.errors import NotFoundError, ProviderError
from movelens.graph import GraphSnapshot
from movelens.rag.chat import ADDRESS_PADDING_NOTE, build_inventory


async def _index_all(engines):
    for ref in ("0xabc::vault", "0xabc::helper", "0x2::coin"):
        await engines.indexer.index_module(ref)


def _system_prompt(engines, call_index=-1) -> str:
    return engines.provider.complete_calls[call_index]["messages"][0]["content"]


def test_build_inventory_lists_everything(snapshot_data):
    inventory = build_inventory(GraphSnapshot.from_dict(snapshot_data))
    assert "--- COMPLETE ANALYSIS INVENTORY ---" in inventory
    assert "PACKAGES (2 total):" in inventory
    assert "  - 0xabc (Vaults)" in inventory
    assert "MODULES (3 total):" in inventory
    assert "  - 0x2::coin" in inventory
    assert inventory.endswith(ADDRESS_PADDING_NOTE)


@pytest.mark.asyncio
async def test_rag_chat_creates_session_and_stores_messages(engines, seed_modules, repo):
    await _index_all(engines)
    engines.provider.response = "It manages vaults."

    answer = await engines.chat.rag_chat("What does vault do?")

    assert answer.answer == "It manages vaults."
    messages = repo.list_messages(answer.chat_id)
    assert [(m.role, m.content) for m in messages] == [
        ("user", "What does vault do?"),
        ("assistant", "It manages vaults."),
    ]
    assert len(answer.sources_used) == 3
    call = engines.provider.complete_calls[0]
    assert call["temperature"] == 0.7
    assert call["max_tokens"] == 1500


@pytest.mark.asyncio
async def test_rag_chat_replays_history(engines, seed_modules):
    await _index_all(engines)
    engines.provider.response = "First answer."
    first = await engines.chat.rag_chat("First question?")
    engines.provider.response = "Second answer."

    await engines.chat.rag_chat("Second question?", chat_id=first.chat_id)

    messages = engines.provider.complete_calls[-1]["messages"]
    assert [(m["role"], m["content"]) for m in messages[1:]] == [
        ("user", "First question?"),
        ("assistant", "First answer."),
        ("user", "Second question?"),
    ]


@pytest.mark.asyncio
async def test_rag_chat_history_limit(engines, seed_modules):
    engines.chat.history_limit = 3
    first = await engines.chat.rag_chat("q1")
    await engines.chat.rag_chat("q2", chat_id=first.chat_id)

    await engines.chat.rag_chat("q3", chat_id=first.chat_id)

    messages = engines.provider.complete_calls[-1]["messages"]
    # window holds q2, its answer and q3; q3 is re-appended last
    assert [m["content"] for m in messages[1:]] == ["q2", engines.provider.response, "q3"]


@pytest.mark.asyncio
async def test_rag_chat_unknown_chat_id(engines, repo):
    with pytest.raises(NotFoundError):
        await engines.chat.rag_chat("Hello?", chat_id=404)
    assert repo.list_chats() == []
    assert engines.provider.embed_calls == []


@pytest.mark.asyncio
async def test_rag_chat_analysis_scope_adds_inventory_and_limit(engines, seed_modules, stored_analysis):
    await _index_all(engines)

    with patch.object(engines.documents, "search", wraps=engines.documents.search) as search:
        await engines.chat.rag_chat("List all modules", analysis_id=stored_analysis)

    assert search.call_args.kwargs["limit"] == 10
    query = engines.provider.embed_calls[-1]
    assert query.startswith("Context: Analyzing packages [0xabc, 0x2] with modules [")
    assert query.endswith("Question: List all modules")
    assert "--- COMPLETE ANALYSIS INVENTORY ---" in _system_prompt(engines)


@pytest.mark.asyncio
async def test_rag_chat_inventory_without_any_retrieval(engines, stored_analysis):
    answer = await engines.chat.rag_chat(
        "List all modules with function deposit", analysis_id=stored_analysis
    )

    assert answer.sources_used == []
    system = _system_prompt(engines)
    for full_name in ("0xabc::vault", "0xabc::helper", "0x2::coin"):
        assert f"  - {full_name}" in system
    assert ADDRESS_PADDING_NOTE in system


@pytest.mark.asyncio
async def test_rag_chat_unscoped_uses_default_limit(engines, seed_modules):
    with patch.object(engines.documents, "search", wraps=engines.documents.search) as search:
        await engines.chat.rag_chat("Anything?")
    assert search.call_args.kwargs["limit"] == 20
    assert engines.provider.embed_calls[-1] == "Anything?"


@pytest.mark.asyncio
async def test_rag_chat_package_scope_filters_results(engines, seed_modules, repo):
    await _index_all(engines)
    pkg = repo.get_package_by_address("0xabc")
    repo.save_package_explanation(pkg.id, "Vault package overview.")

    answer = await engines.chat.rag_chat("How do deposits work?", package_id="0xabc")

    assert {s.package_address for s in answer.sources_used} == {"0xabc"}
    assert engines.provider.embed_calls[-1].startswith(
        "Context: Package 0xabc with modules [0xabc::vault, 0xabc::helper]."
    )
    system = _system_prompt(engines)
    assert "--- PACKAGE OVERVIEW ---\nVault package overview." in system
    assert repo.get_chat(answer.chat_id).package_id == "0xabc"


@pytest.mark.asyncio
async def test_rag_chat_prefers_module_explanations(engines, seed_modules, repo):
    await _index_all(engines)
    vault = seed_modules["0xabc::vault"]
    repo.save_module_explanation(vault.id, "Vault explained in prose.", None)

    await engines.chat.rag_chat("Explain the vault", package_id="0xabc")

    system = _system_prompt(engines)
    assert "--- Module Explanation: 0xabc::vault ---\nVault explained in prose." in system
    assert "MODULE: 0xabc::vault" not in system
    assert "MODULE: 0xabc::helper" in system
    assert "Raw Source Document" in system


@pytest.mark.asyncio
async def test_rag_chat_failure_keeps_question(engines, seed_modules, repo):
    engines.provider.fail_complete_if = lambda messages: True

    with pytest.raises(ProviderError):
        await engines.chat.rag_chat("Will this fail?")

    chat = repo.list_chats()[0]
    assert [m.role for m in repo.list_messages(chat.id)] == ["user"]


@pytest.mark.asyncio
async def test_rag_chat_unknown_scope_falls_back(engines, seed_modules):
    answer = await engines.chat.rag_chat("Hi", analysis_id="missing", package_id="0xnope")
    assert answer.answer == engines.provider.response


# ------------------------------------------------------------------
# Session management
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_chat_history_list_and_delete(engines, seed_modules):
    answer = await engines.chat.rag_chat("Q?", analysis_id="an-x")

    history = engines.chat.get_chat_history(answer.chat_id)
    assert [m.role for m in history] == ["user", "assistant"]
    assert [c.id for c in engines.chat.list_chats(analysis_id="an-x")] == [answer.chat_id]

    engines.chat.delete_chat(answer.chat_id)
    assert engines.chat.list_chats() == []
    with pytest.raises(NotFoundError):
        engines.chat.get_chat_history(answer.chat_id)
    with pytest.raises(NotFoundError):
        engines.chat.delete_chat(answer.chat_id)
