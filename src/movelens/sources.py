"""Decompiled Move source resolution and function/call extraction.

A resolver turns ``(package_address, module_name, network)`` into a
ModuleSource: the decompiled source text plus the functions it declares and
the cross-module calls each function makes. Decompilation itself happens
outside this package; DirectorySourceResolver reads its output from disk.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path

from movelens.db.repository import Repository
from movelens.errors import SourceUnavailableError

logger = logging.getLogger(__name__)

_FUNC_DECL_RE = re.compile(r"^((?:public(?:\([^)]+\))?\s+|entry\s+)*)fun\s+(\w+)\s*\(")
_PARAMS_RE = re.compile(r"\(([^)]*)\)")
_PARAM_TYPE_RE = re.compile(r":\s*(.+)$")
_QUALIFIED_CALL_RE = re.compile(
    r"(0x[a-f0-9]+)::([a-z_][a-z0-9_]*)::([a-z_][a-z0-9_]*)\s*\(", re.IGNORECASE
)
_BARE_CALL_RE = re.compile(r"([a-z_][a-z0-9_]*)::\s*([a-z_][a-z0-9_]*)\s*\(", re.IGNORECASE)


@dataclass
class FunctionCall:
    module: str  # "0x2::transfer" or bare "transfer"
    func: str


@dataclass
class FunctionInfo:
    name: str
    visibility: str  # entry | public(friend) | public | private
    params: list[str] = field(default_factory=list)
    calls: list[FunctionCall] = field(default_factory=list)


@dataclass
class ModuleSource:
    package_address: str
    module_name: str
    network: str
    source_code: str
    functions: list[FunctionInfo] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _visibility(modifiers: str) -> str:
    # entry implies public, so it wins over any public qualifier
    if "entry" in modifiers:
        return "entry"
    if "public(friend)" in modifiers:
        return "public(friend)"
    if "public" in modifiers:
        return "public"
    return "private"


def _param_types(line: str) -> list[str]:
    match = _PARAMS_RE.search(line)
    if not match:
        return []
    types: list[str] = []
    for part in match.group(1).split(","):
        type_match = _PARAM_TYPE_RE.search(part.strip())
        if type_match:
            types.append(type_match.group(1).strip())
    return types


def _extract_calls(body: list[str]) -> list[FunctionCall]:
    """Collect calls keyed by ``module::func``; the 0x-qualified form wins."""
    calls: dict[str, FunctionCall] = {}
    for line in body:
        for address, module, func in _QUALIFIED_CALL_RE.findall(line):
            calls[f"{module}::{func}"] = FunctionCall(module=f"{address}::{module}", func=func)
        for module, func in _BARE_CALL_RE.findall(line):
            calls.setdefault(f"{module}::{func}", FunctionCall(module=module, func=func))
    return list(calls.values())


def parse_functions(source_code: str) -> list[FunctionInfo]:
    """Scan decompiled Move source for function declarations and their calls.

    Line-oriented: a declaration must start its line, and a body ends when
    the brace depth returns to zero. Not a parser; good enough for
    decompiler output, which is consistently formatted.
    """
    functions: list[FunctionInfo] = []
    current: FunctionInfo | None = None
    body: list[str] = []
    in_body = False
    depth = 0

    for raw in source_code.split("\n"):
        line = raw.strip()
        decl = _FUNC_DECL_RE.match(line)
        if decl:
            if current is not None:
                current.calls = _extract_calls(body)
                functions.append(current)
            current = FunctionInfo(
                name=decl.group(2),
                visibility=_visibility(decl.group(1) or ""),
                params=_param_types(line),
            )
            body = [line]
            in_body = "{" in line
            depth = line.count("{") - line.count("}") if in_body else 0
            continue

        if current is None:
            continue
        body.append(line)
        if "{" in line:
            in_body = True
            depth += line.count("{")
        if "}" in line:
            depth -= line.count("}")
            if depth == 0 and in_body:
                current.calls = _extract_calls(body)
                functions.append(current)
                current = None
                body = []
                in_body = False

    if current is not None:
        current.calls = _extract_calls(body)
        functions.append(current)

    logger.debug("Parsed %d functions from decompiled source", len(functions))
    return functions


def _functions_from_dicts(items: list[dict]) -> list[FunctionInfo]:
    return [
        FunctionInfo(
            name=item["name"],
            visibility=item["visibility"],
            params=list(item.get("params", [])),
            calls=[FunctionCall(module=c["module"], func=c["func"]) for c in item.get("calls", [])],
        )
        for item in items
    ]


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


class SourceResolver(ABC):
    """Obtains decompiled source for a module."""

    @abstractmethod
    async def resolve(self, package_address: str, module_name: str, network: str) -> ModuleSource:
        """Return the decompiled source of ``package_address::module_name``.

        Raises:
            SourceUnavailableError: The module cannot be decompiled or found.
        """


class DirectorySourceResolver(SourceResolver):
    """Reads decompiler output laid out as ``<root>/<address>/<module>.move``.

    The layout is network-agnostic; one root per network is expected.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    async def resolve(self, package_address: str, module_name: str, network: str) -> ModuleSource:
        path = self.root / package_address / f"{module_name}.move"
        if not path.is_file():
            raise SourceUnavailableError(package_address, module_name, f"no file at {path}")
        try:
            source_code = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise SourceUnavailableError(package_address, module_name, str(exc)) from exc
        return ModuleSource(
            package_address=package_address,
            module_name=module_name,
            network=network,
            source_code=source_code,
            functions=parse_functions(source_code),
        )


class CachingSourceResolver(SourceResolver):
    """Fronts another resolver with the ``source_cache`` table.

    Only successful resolutions are cached, so a module that failed once is
    retried on the next call.
    """

    def __init__(self, inner: SourceResolver, repo: Repository) -> None:
        self._inner = inner
        self._repo = repo

    async def resolve(self, package_address: str, module_name: str, network: str) -> ModuleSource:
        cached = self._repo.get_cached_source(package_address, module_name, network)
        if cached is not None:
            logger.debug("Source cache hit for %s::%s (%s)", package_address, module_name, network)
            source_code, functions = cached
            return ModuleSource(
                package_address=package_address,
                module_name=module_name,
                network=network,
                source_code=source_code,
                functions=_functions_from_dicts(functions),
            )

        source = await self._inner.resolve(package_address, module_name, network)
        self._repo.save_cached_source(
            package_address,
            module_name,
            network,
            source.source_code,
            [asdict(f) for f in source.functions],
        )
        logger.info(
            "Cached decompiled source for %s::%s (%d functions)",
            package_address,
            module_name,
            len(source.functions),
        )
        return source
