# moss/modules/graph.py
"""
Dependency graph between packages, built from a set of root names.

Two edge kinds:
 - ``requires``        runtime dependency, recorded in the installed database
 - ``requires-build``  only needed while building; orders the plan, never recorded

Expansion is a FIFO worklist over package names with a visited set, so
diamonds are expanded once and no recursion depth is involved.
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set

from moss.modules import logger as _logger
from moss.modules.catalog import Catalog
from moss.modules.errors import AmbiguousProvider, UnresolvedDependency
from moss.modules.recipe import PackageSpec

REQUIRES = "requires"
REQUIRES_BUILD = "requires-build"


@dataclass(frozen=True)
class Edge:
    target: str
    kind: str
    via: str  # name as written in the recipe (may be virtual)


@dataclass
class DependencyGraph:
    nodes: Dict[str, PackageSpec] = field(default_factory=dict)  # discovery order
    edges: Dict[str, List[Edge]] = field(default_factory=dict)
    roots: List[str] = field(default_factory=list)
    satisfied: Set[str] = field(default_factory=set)
    selections: Dict[str, str] = field(default_factory=dict)  # virtual -> provider

    def add_node(self, spec: PackageSpec) -> bool:
        if spec.name in self.nodes:
            return False
        self.nodes[spec.name] = spec
        self.edges[spec.name] = []
        return True

    def add_edge(self, source: str, edge: Edge):
        if edge not in self.edges[source]:
            self.edges[source].append(edge)

    def successors(self, name: str) -> List[str]:
        """Dependencies of ``name`` of either kind, in declaration order, no duplicates."""
        out: List[str] = []
        for e in self.edges.get(name, ()):
            if e.target not in out:
                out.append(e.target)
        return out

    def runtime_deps(self, name: str) -> List[str]:
        out: List[str] = []
        for e in self.edges.get(name, ()):
            if e.kind == REQUIRES and e.target not in out:
                out.append(e.target)
        return out

    def build_only_deps(self, name: str) -> List[str]:
        runtime = set(self.runtime_deps(name))
        return [t for t in self.successors(name) if t not in runtime]

    def __contains__(self, name: str) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def to_dot(self) -> str:
        lines = ["digraph dependencies {"]
        for name in self.nodes:
            attrs = ' [style=dashed]' if name in self.satisfied else ""
            lines.append(f'  "{name}"{attrs};')
        for name, edges in self.edges.items():
            for e in edges:
                style = ' [style=dotted]' if e.kind == REQUIRES_BUILD else ""
                lines.append(f'  "{name}" -> "{e.target}"{style};')
        lines.append("}")
        return "\n".join(lines)


class GraphBuilder:
    """
    Expand root names into a DependencyGraph using the catalog, its provides
    index and the installed database.

    Provider choice for a virtual name with several providers:
      1. a provider already installed
      2. the operator's preference (``[providers]`` in the config)
      3. a provider already selected in this resolution
      4. the first provider in catalog order (policy ``first``), or
         AmbiguousProvider (policy ``strict``)
    """

    def __init__(self, catalog: Catalog, db=None, preferences: Optional[Mapping[str, str]] = None,
                 policy: str = "first", logger: Optional[_logger.Logger] = None):
        self.catalog = catalog
        self.db = db
        self.preferences = dict(preferences or {})
        self.policy = policy
        self.log = logger or _logger.Logger("graph")

    def build(self, roots: Iterable[str], skip_satisfied_roots: bool = False) -> DependencyGraph:
        """
        roots: requested names (concrete or virtual).
        skip_satisfied_roots: treat roots already installed at the catalog
            version as satisfied instead of scheduling them (upgrade).
        """
        graph = DependencyGraph()
        queue = deque()
        for name in roots:
            target = self.select(name, graph, required_by=None)
            if target is None:
                self.log.info(f"{name} is provided by an installed package, nothing to do")
                continue
            if target not in graph.roots:
                graph.roots.append(target)
            if graph.add_node(self.catalog[target]):
                queue.append(target)

        while queue:
            name = queue.popleft()
            spec = graph.nodes[name]
            is_root = name in graph.roots
            if self._satisfied(spec) and (not is_root or skip_satisfied_roots):
                graph.satisfied.add(name)
                self.log.debug(f"{spec} already installed")
                continue

            for kind, deps in ((REQUIRES_BUILD, spec.build_depends), (REQUIRES, spec.depends)):
                for dep in deps:
                    target = self.select(dep, graph, required_by=name)
                    if target is None:
                        continue
                    graph.add_edge(name, Edge(target=target, kind=kind, via=dep))
                    if graph.add_node(self.catalog[target]):
                        queue.append(target)
        return graph

    def _satisfied(self, spec: PackageSpec) -> bool:
        return self.db is not None and self.db.is_satisfied(spec)

    def select(self, name: str, graph: DependencyGraph, required_by: Optional[str]) -> Optional[str]:
        """
        Map a dependency name to a concrete catalog package.
        Returns None when the name is only satisfied by installed packages.
        """
        if name in self.catalog:
            return name

        providers = list(self.catalog.provides.providers(name))
        if not providers:
            if self.db is not None and self.db.providers_of(name):
                return None
            raise UnresolvedDependency(name, required_by)

        if name in graph.selections:
            return graph.selections[name]

        choice = self._choose(name, providers, graph, required_by)
        graph.selections[name] = choice
        if len(providers) > 1:
            self.log.debug(f"'{name}' -> {choice} (candidates: {', '.join(providers)})")
        return choice

    def _choose(self, name: str, providers: List[str], graph: DependencyGraph,
                required_by: Optional[str]) -> str:
        if len(providers) == 1:
            return providers[0]

        if self.db is not None:
            installed = [p for p in providers if p in self.db]
            if installed:
                return installed[0]

        preferred = self.preferences.get(name)
        if preferred:
            if preferred in providers:
                return preferred
            self.log.warning(f"Preferred provider {preferred} for '{name}' is not in the catalog")

        selected = [p for p in providers if p in graph.nodes]
        if selected:
            return selected[0]

        if self.policy == "strict":
            raise AmbiguousProvider(name, providers, required_by)
        self.log.info(f"'{name}' is provided by {', '.join(providers)}; using {providers[0]}")
        return providers[0]
