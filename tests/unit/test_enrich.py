"""Tests for function-level edge enrichment."""

from __future__ import annotations

import pytest

from movelens.db.models import Edge
from movelens.enrich import enrich_analysis_with_revela, get_enrichment_status, match_calls
from movelens.errors import NotFoundError
from movelens.graph import MOD_CALLS
from movelens.sources import FunctionCall, FunctionInfo, ModuleSource


def _source(address, name, functions):
    return ModuleSource(
        package_address=address,
        module_name=name,
        network="mainnet",
        source_code="",
        functions=functions,
    )


def _edges_by_pair(repo, analysis_id):
    return {(e.from_node, e.to_node): e for e in repo.list_edges(analysis_id, MOD_CALLS)}


# ------------------------------------------------------------------
# match_calls
# ------------------------------------------------------------------


def test_match_calls_qualified_target():
    source = _source(
        "0xabc",
        "vault",
        [FunctionInfo(name="deposit", visibility="public", calls=[FunctionCall("0x2::coin", "value")])],
    )
    assert match_calls(source, "0x2::coin") == [
        {"callerFunc": "deposit", "calleeModule": "0x2::coin", "calleeFunc": "value"}
    ]


def test_match_calls_bare_name_in_same_package():
    source = _source(
        "0xabc", "vault", [FunctionInfo(name="reset", visibility="public", calls=[FunctionCall("helper", "zero")])]
    )
    assert match_calls(source, "0xabc::helper")[0]["calleeFunc"] == "zero"


def test_match_calls_bare_name_matches_other_package_by_name():
    source = _source(
        "0xabc", "helper", [FunctionInfo(name="zero", visibility="public", calls=[FunctionCall("coin", "burn")])]
    )
    assert match_calls(source, "0x2::coin") == [
        {"callerFunc": "zero", "calleeModule": "0x2::coin", "calleeFunc": "burn"}
    ]


def test_match_calls_no_match():
    source = _source(
        "0xabc",
        "vault",
        [FunctionInfo(name="deposit", visibility="public", calls=[FunctionCall("0x2::transfer", "send")])],
    )
    assert match_calls(source, "0x2::coin") == []


# ------------------------------------------------------------------
# enrich_analysis_with_revela
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_enrich_updates_matching_edges(repo, resolver, stored_analysis):
    enriched = await enrich_analysis_with_revela(repo, resolver, stored_analysis)

    assert enriched == 3
    edges = _edges_by_pair(repo, stored_analysis)
    vault_coin = edges[("mod:0xabc::vault", "mod:0x2::coin")].evidence
    assert vault_coin["weight"] == 2
    assert vault_coin["calls"] == [
        {"callerFunc": "deposit", "calleeModule": "0x2::coin", "calleeFunc": "value"}
    ]
    assert vault_coin["enriched"] is True
    assert vault_coin["method"] == "revela"
    assert "enrichedAt" in vault_coin

    vault_helper = edges[("mod:0xabc::vault", "mod:0xabc::helper")].evidence
    assert vault_helper["calls"][0]["callerFunc"] == "reset"


@pytest.mark.asyncio
async def test_enrich_leaves_edges_without_source_untouched(repo, resolver, stored_analysis):
    await enrich_analysis_with_revela(repo, resolver, stored_analysis)

    ghost = _edges_by_pair(repo, stored_analysis)[("mod:0xdef::ghost", "mod:0x2::coin")]
    assert ghost.evidence == {"weight": 1}


@pytest.mark.asyncio
async def test_enrich_leaves_unmatched_edge_untouched(repo, resolver, stored_analysis):
    repo.add_edge(
        Edge(
            id="e-unmatched",
            analysis_id=stored_analysis,
            kind=MOD_CALLS,
            from_node="mod:0x2::coin",
            to_node="mod:0xabc::vault",
            evidence={"weight": 3},
        )
    )

    enriched = await enrich_analysis_with_revela(repo, resolver, stored_analysis)

    assert enriched == 3
    edge = _edges_by_pair(repo, stored_analysis)[("mod:0x2::coin", "mod:0xabc::vault")]
    assert edge.evidence == {"weight": 3}


@pytest.mark.asyncio
async def test_enrich_fetches_each_source_module_once(repo, resolver, stored_analysis):
    await enrich_analysis_with_revela(repo, resolver, stored_analysis)

    assert sorted(resolver.calls) == [
        ("0xabc", "helper", "mainnet"),
        ("0xabc", "vault", "mainnet"),
        ("0xdef", "ghost", "mainnet"),
    ]


@pytest.mark.asyncio
async def test_enrich_ignores_other_edge_kinds(repo, resolver, stored_analysis):
    await enrich_analysis_with_revela(repo, resolver, stored_analysis)

    depends = repo.list_edges(stored_analysis, "PKG_DEPENDS")
    assert [e.evidence for e in depends] == [None]


@pytest.mark.asyncio
async def test_enrich_unknown_analysis(repo, resolver):
    with pytest.raises(NotFoundError):
        await enrich_analysis_with_revela(repo, resolver, "nope")


# ------------------------------------------------------------------
# get_enrichment_status
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_enrichment_status_after_enrich(repo, resolver, stored_analysis):
    before = get_enrichment_status(repo, stored_analysis)
    assert (before.total, before.enriched, before.percentage) == (4, 0, 0)

    await enrich_analysis_with_revela(repo, resolver, stored_analysis)

    after = get_enrichment_status(repo, stored_analysis)
    assert (after.total, after.enriched, after.percentage) == (4, 3, 75)


def test_enrichment_status_no_edges(repo):
    status = get_enrichment_status(repo, "empty")
    assert (status.total, status.enriched, status.percentage) == (0, 0, 0)
