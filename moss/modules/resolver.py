# moss/modules/resolver.py
"""
Resolver: turn requested names into an ordered BuildPlan.

 1. expand the roots into a DependencyGraph (GraphBuilder)
 2. depth-first post-order walk from the roots, in request order, with
    new / in-progress / done marks; meeting an in-progress node is a cycle
 3. drop nodes the installed database already satisfies

Edges are followed in declaration order (build deps first), so for the same
catalog and database the plan is always the same.
"""

from __future__ import annotations
from typing import Dict, Iterable, Iterator, List, Optional

from moss.modules import logger as _logger
from moss.modules.catalog import Catalog
from moss.modules.errors import CircularDependency
from moss.modules.graph import DependencyGraph, GraphBuilder
from moss.modules.recipe import PackageSpec

_NEW, _ACTIVE, _DONE = 0, 1, 2


class BuildPlan:
    """Packages to build, dependencies strictly before dependents."""

    def __init__(self, specs: List[PackageSpec], graph: DependencyGraph):
        self.specs = list(specs)
        self.graph = graph
        self._index = {s.name: i for i, s in enumerate(self.specs)}

    @property
    def names(self) -> List[str]:
        return [s.name for s in self.specs]

    @property
    def roots(self) -> List[str]:
        return [r for r in self.graph.roots if r in self._index]

    def __iter__(self) -> Iterator[PackageSpec]:
        return iter(self.specs)

    def __len__(self) -> int:
        return len(self.specs)

    def __contains__(self, name: str) -> bool:
        return name in self._index

    def __getitem__(self, name: str) -> PackageSpec:
        return self.specs[self._index[name]]

    def position(self, name: str) -> int:
        return self._index[name]

    def dependencies(self, name: str) -> List[str]:
        """Plan members ``name`` must wait for (both edge kinds)."""
        return [d for d in self.graph.successors(name) if d in self._index]

    def runtime_deps(self, name: str) -> List[str]:
        return self.graph.runtime_deps(name)

    def levels(self) -> List[List[str]]:
        """
        Group the plan into levels: every member of level N depends only on
        members of levels < N, so one level can be built in parallel.
        Members keep plan order inside a level.
        """
        depth: Dict[str, int] = {}
        for spec in self.specs:
            deps = self.dependencies(spec.name)
            depth[spec.name] = 1 + max((depth[d] for d in deps), default=-1)
        levels: List[List[str]] = []
        for spec in self.specs:
            d = depth[spec.name]
            while len(levels) <= d:
                levels.append([])
            levels[d].append(spec.name)
        return levels

    def to_dict(self) -> Dict:
        return {
            "order": [str(s) for s in self.specs],
            "levels": self.levels(),
            "satisfied": sorted(self.graph.satisfied),
        }


class Resolver:
    def __init__(self, catalog: Catalog, db=None, settings=None,
                 logger: Optional[_logger.Logger] = None):
        self.catalog = catalog
        self.db = db
        self.log = logger or _logger.Logger("resolver")
        self.builder = GraphBuilder(
            catalog, db,
            preferences=settings.provider_preferences if settings else None,
            policy=settings.provider_policy if settings else "first",
            logger=self.log,
        )

    def resolve(self, roots: Iterable[str], skip_satisfied_roots: bool = False) -> BuildPlan:
        graph = self.builder.build(list(roots), skip_satisfied_roots=skip_satisfied_roots)
        order = self.order(graph)
        specs = [graph.nodes[n] for n in order if n not in graph.satisfied]
        plan = BuildPlan(specs, graph)
        self.log.debug(f"Build order: {', '.join(plan.names) or '(nothing)'}")
        return plan

    @staticmethod
    def order(graph: DependencyGraph) -> List[str]:
        """Post-order DFS over ``graph`` from its roots. Raises CircularDependency."""
        state: Dict[str, int] = {}
        order: List[str] = []
        for root in graph.roots:
            if state.get(root, _NEW) != _NEW:
                continue
            state[root] = _ACTIVE
            path = [root]
            stack = [(root, iter(graph.successors(root)))]
            while stack:
                node, children = stack[-1]
                for child in children:
                    mark = state.get(child, _NEW)
                    if mark == _ACTIVE:
                        raise CircularDependency(path[path.index(child):] + [child])
                    if mark == _NEW:
                        state[child] = _ACTIVE
                        path.append(child)
                        stack.append((child, iter(graph.successors(child))))
                        break
                else:
                    stack.pop()
                    path.pop()
                    state[node] = _DONE
                    order.append(node)
        return order
