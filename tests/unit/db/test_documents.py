"""Tests for the RAG document store."""

from __future__ import annotations

import pytest

from movelens.db.documents import DocumentStore
from movelens.db.models import (
    DOC_MODULE_ANALYSIS,
    DOC_PACKAGE_ANALYSIS,
    DOC_SOURCE,
    RagDocument,
)


def _doc(ref="m1", address="0x2", name="coin", content="source", doc_type=DOC_SOURCE):
    return RagDocument(
        module_ref=ref,
        package_address=address,
        module_name=name,
        content=content,
        doc_type=doc_type,
    )


def test_upsert_and_get(documents):
    documents.upsert(_doc(), [1.0, 0.0, 0.0])
    stored = documents.get("m1")
    assert stored.content == "source"
    assert stored.id is not None


def test_upsert_replaces_same_key(documents):
    documents.upsert(_doc(content="old"), [1.0, 0.0, 0.0])
    documents.upsert(_doc(content="new"), [0.0, 1.0, 0.0])
    assert documents.count() == 1
    assert documents.get("m1").content == "new"


def test_doc_types_are_independent(documents):
    documents.upsert(_doc(content="src"), [1.0, 0.0, 0.0])
    documents.upsert(_doc(content="analysis", doc_type=DOC_MODULE_ANALYSIS), [0.0, 1.0, 0.0])
    assert documents.count() == 2
    assert documents.get("m1", DOC_SOURCE).content == "src"
    assert documents.get("m1", DOC_MODULE_ANALYSIS).content == "analysis"
    assert documents.count(DOC_MODULE_ANALYSIS) == 1


def test_exists(documents):
    assert not documents.exists("m1")
    documents.upsert(_doc(), [1.0, 0.0])
    assert documents.exists("m1")
    assert not documents.exists("m1", DOC_MODULE_ANALYSIS)


def test_search_ranks_by_cosine_similarity(documents):
    documents.upsert(_doc(ref="a", content="a"), [1.0, 0.0, 0.0])
    documents.upsert(_doc(ref="b", content="b"), [0.7, 0.7, 0.0])
    documents.upsert(_doc(ref="c", content="c"), [0.0, 0.0, 1.0])

    results = documents.search([1.0, 0.0, 0.0], limit=3)

    assert [r.module_ref for r in results] == ["a", "b", "c"]
    assert results[0].similarity == pytest.approx(1.0, abs=1e-5)
    assert results[2].similarity == pytest.approx(0.0, abs=1e-5)


def test_search_respects_limit(documents):
    for i in range(5):
        documents.upsert(_doc(ref=f"m{i}"), [1.0, float(i)])
    assert len(documents.search([1.0, 0.0], limit=2)) == 2


def test_search_non_positive_limit_returns_empty(documents):
    documents.upsert(_doc(), [1.0, 0.0])
    assert documents.search([1.0, 0.0], limit=0) == []


def test_search_filters_package_and_types(documents):
    documents.upsert(_doc(ref="a", address="0x1"), [1.0, 0.0])
    documents.upsert(_doc(ref="b", address="0x2"), [1.0, 0.0])
    documents.upsert(
        _doc(ref="PKG:0x2", address="0x2", name="__package__", doc_type=DOC_PACKAGE_ANALYSIS), [1.0, 0.0]
    )

    in_pkg = documents.search([1.0, 0.0], limit=10, package_address="0x2")
    assert {r.module_ref for r in in_pkg} == {"b", "PKG:0x2"}

    sources_only = documents.search([1.0, 0.0], limit=10, package_address="0x2", doc_types=[DOC_SOURCE])
    assert [r.module_ref for r in sources_only] == ["b"]


def test_search_excludes_module(documents):
    documents.upsert(_doc(ref="self"), [1.0, 0.0])
    documents.upsert(_doc(ref="other"), [0.5, 0.5])
    results = documents.search([1.0, 0.0], limit=5, exclude_module_ref="self")
    assert [r.module_ref for r in results] == ["other"]


def test_dimensions_enforced(tmp_db):
    store = DocumentStore(tmp_db, dimensions=3)
    with pytest.raises(ValueError):
        store.upsert(_doc(), [1.0, 0.0])
