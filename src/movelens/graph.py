"""Typed view over a stored analysis graph snapshot.

The crawler writes its graph as JSON with camelCase keys (``fullName``,
``isEntry``, ``refId``). GraphSnapshot.from_dict() tolerates missing
sections and keys so partially populated snapshots still load.
"""

from __future__ import annotations

from dataclasses import dataclass, field

MOD_CALLS = "MOD_CALLS"
MODULE_NODE_PREFIX = "mod:"


@dataclass
class GraphPackage:
    address: str
    display_name: str | None = None


@dataclass
class GraphFunction:
    name: str
    visibility: str  # Entry | Public | Private | Friend
    is_entry: bool = False


@dataclass
class GraphModule:
    id: str  # "mod:0xP::m"
    full_name: str
    name: str = ""
    package: str = ""  # "pkg:0xP"
    functions: list[GraphFunction] = field(default_factory=list)
    friends: list[str] = field(default_factory=list)


@dataclass
class GraphFlag:
    level: str
    kind: str
    scope: str
    ref_id: str
    details: dict | None = None


@dataclass
class GraphEdge:
    kind: str
    from_node: str
    to_node: str
    evidence: dict | None = None


@dataclass
class GraphSnapshot:
    packages: list[GraphPackage] = field(default_factory=list)
    modules: list[GraphModule] = field(default_factory=list)
    flags: list[GraphFlag] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> GraphSnapshot:
        packages = [
            GraphPackage(address=p["address"], display_name=p.get("displayName"))
            for p in data.get("packages") or []
            if p.get("address")
        ]
        modules = []
        for m in data.get("modules") or []:
            full_name = m.get("fullName") or m.get("name") or ""
            modules.append(
                GraphModule(
                    id=m.get("id") or f"{MODULE_NODE_PREFIX}{full_name}",
                    full_name=full_name,
                    name=m.get("name", ""),
                    package=m.get("package", ""),
                    functions=[
                        GraphFunction(
                            name=f["name"],
                            visibility=f.get("visibility", "Private"),
                            is_entry=bool(f.get("isEntry", False)),
                        )
                        for f in m.get("functions") or []
                    ],
                    friends=list(m.get("friends") or []),
                )
            )
        flags = [
            GraphFlag(
                level=f.get("level", ""),
                kind=f.get("kind", ""),
                scope=f.get("scope", ""),
                ref_id=f.get("refId", ""),
                details=f.get("details"),
            )
            for f in data.get("flags") or []
        ]
        edges = [
            GraphEdge(
                kind=e["kind"],
                from_node=e["from"],
                to_node=e["to"],
                evidence=e.get("evidence"),
            )
            for e in data.get("edges") or []
            if e.get("kind") and e.get("from") and e.get("to")
        ]
        return cls(packages=packages, modules=modules, flags=flags, edges=edges)

    def package_addresses(self) -> list[str]:
        """Distinct package addresses in snapshot order."""
        return list(dict.fromkeys(p.address for p in self.packages))

    def module_flags(self, module: GraphModule) -> list[dict]:
        """Flags scoped to *module*, reduced to ``{level, kind, details}``."""
        return [
            {"level": f.level, "kind": f.kind, "details": f.details}
            for f in self.flags
            if f.scope == "module" and f.ref_id == module.id
        ]

    def primary_package(self, package_address: str) -> GraphPackage | None:
        """The package matching *package_address*, else the first package."""
        for pkg in self.packages:
            if pkg.address == package_address:
                return pkg
        return self.packages[0] if self.packages else None


def strip_module_prefix(node_id: str) -> str:
    """``mod:0xP::m`` → ``0xP::m``."""
    return node_id[len(MODULE_NODE_PREFIX):] if node_id.startswith(MODULE_NODE_PREFIX) else node_id
