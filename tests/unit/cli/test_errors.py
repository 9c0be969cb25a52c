"""Tests for movelens rich error messages."""

from __future__ import annotations

import pytest

from movelens.cli.errors import (
    err_config,
    err_invalid_graph,
    err_missing_explanation,
    err_no_api_key,
    err_no_db,
    err_not_found,
    err_provider,
    err_source_unavailable,
)
from movelens.errors import NotFoundError, SourceUnavailableError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _has_action(msg: str) -> bool:
    """Every error must contain a cause AND an actionable instruction."""
    lower = msg.lower()
    return any(kw in lower for kw in ["run:", "set:", "export ", "movelens ", "pass ", "place ", "check "])


# ---------------------------------------------------------------------------
# err_no_api_key
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "provider,expected_env",
    [
        ("openai", "OPENAI_API_KEY"),
        ("anthropic", "ANTHROPIC_API_KEY"),
        ("gemini", "GEMINI_API_KEY"),
        ("myprovider", "MYPROVIDER_API_KEY"),
    ],
)
def test_err_no_api_key_env_var(provider: str, expected_env: str) -> None:
    msg = err_no_api_key(provider)
    assert provider in msg
    assert expected_env in msg
    assert _has_action(msg)


# ---------------------------------------------------------------------------
# err_no_db
# ---------------------------------------------------------------------------


def test_err_no_db_contains_path() -> None:
    assert "custom.db" in err_no_db("custom.db")


def test_err_no_db_suggests_init() -> None:
    assert "movelens init" in err_no_db()


# ---------------------------------------------------------------------------
# err_not_found
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("kind", ["analysis", "module", "package", "chat"])
def test_err_not_found_has_hint_per_kind(kind: str) -> None:
    msg = err_not_found(NotFoundError(kind, "x1"))
    assert "x1 not found" in msg
    assert _has_action(msg)


def test_err_not_found_unknown_kind_has_no_trailing_newline() -> None:
    msg = err_not_found(NotFoundError("widget", "w"))
    assert not msg.endswith("\n")


# ---------------------------------------------------------------------------
# Source / provider / explanation / config
# ---------------------------------------------------------------------------


def test_err_source_unavailable_shows_expected_path() -> None:
    msg = err_source_unavailable(SourceUnavailableError("0x2", "coin", "missing"), "sources")
    assert "sources/0x2/coin.move" in msg
    assert "--sources" in msg


def test_err_provider_includes_detail() -> None:
    msg = err_provider("rate limited")
    assert "rate limited" in msg
    assert _has_action(msg)


def test_err_missing_explanation_suggests_command() -> None:
    msg = err_missing_explanation("No package explanations found.")
    assert "movelens explain package" in msg


def test_err_config_includes_detail() -> None:
    assert "bad network" in err_config("bad network")


def test_err_invalid_graph_names_file() -> None:
    msg = err_invalid_graph("graph.json", "no packages")
    assert "graph.json" in msg
    assert "no packages" in msg
