# moss/modules/catalog.py
"""
Package catalog: every package found under the configured search paths.

Each search path holds one directory per package (``<path>/<name>/recipe.yaml``).
Paths are scanned in order and the first path defining a name wins, so a
local overlay listed first shadows the main repository. Package directories
are scanned in sorted order, which makes "catalog order" stable across runs.
"""

from __future__ import annotations
import os
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from moss.modules import logger as _logger
from moss.modules.errors import ManifestError
from moss.modules.recipe import RECIPE_FILE, PackageSpec, RecipeManager


class ProvidesIndex:
    """Virtual name -> concrete providers, in catalog order."""

    def __init__(self, specs: Iterable[PackageSpec] = ()):
        self._providers: Dict[str, List[str]] = {}
        for spec in specs:
            self.add(spec)

    def add(self, spec: PackageSpec):
        for virtual in spec.provides:
            names = self._providers.setdefault(virtual, [])
            if spec.name not in names:
                names.append(spec.name)

    def providers(self, virtual: str) -> Tuple[str, ...]:
        return tuple(self._providers.get(virtual, ()))

    def __contains__(self, virtual: str) -> bool:
        return bool(self._providers.get(virtual))

    def virtuals(self) -> List[str]:
        return sorted(self._providers)


class Catalog:
    def __init__(self, search_paths: Iterable[str] = (), logger: Optional[_logger.Logger] = None,
                 strict: bool = False):
        """
        search_paths: directories containing package directories.
        strict: raise on the first broken recipe instead of logging and skipping it.
        """
        self.search_paths = [os.path.abspath(p) for p in search_paths]
        self.log = logger or _logger.Logger("catalog")
        self.recipes = RecipeManager(logger=self.log)
        self.strict = strict
        self._specs: Dict[str, PackageSpec] = {}
        self.errors: Dict[str, ManifestError] = {}
        self.provides = ProvidesIndex()

    @classmethod
    def from_specs(cls, specs: Iterable[PackageSpec], logger: Optional[_logger.Logger] = None):
        """Build an in-memory catalog (search order = iteration order)."""
        cat = cls(logger=logger)
        for spec in specs:
            cat._register(spec)
        return cat

    # -------------------------
    # Loading
    # -------------------------
    def load(self) -> "Catalog":
        for root in self.search_paths:
            if not os.path.isdir(root):
                self.log.warning(f"Search path {root} does not exist, skipping")
                continue
            for entry in sorted(os.listdir(root)):
                if entry.startswith("."):
                    continue
                pkg_dir = os.path.join(root, entry)
                if not os.path.isfile(os.path.join(pkg_dir, RECIPE_FILE)):
                    continue
                if entry in self._specs:
                    self.log.debug(f"{pkg_dir} shadowed by {self._specs[entry].directory}")
                    continue
                try:
                    self._register(self.recipes.load(pkg_dir))
                except ManifestError as e:
                    if self.strict:
                        raise
                    self.errors[entry] = e
                    self.log.warning(f"Skipping broken recipe {pkg_dir}: {e}")
        self.log.debug(f"Catalog loaded: {len(self._specs)} packages from {len(self.search_paths)} paths")
        return self

    def load_path(self, path: str) -> PackageSpec:
        """Register a package given by directory path (e.g. ``moss build ./foo``)."""
        spec = self.recipes.load(path)
        self._specs.pop(spec.name, None)
        self._register(spec)
        return spec

    def _register(self, spec: PackageSpec):
        self._specs[spec.name] = spec
        self.provides.add(spec)

    # -------------------------
    # Queries
    # -------------------------
    def get(self, name: str) -> Optional[PackageSpec]:
        return self._specs.get(name)

    def __getitem__(self, name: str) -> PackageSpec:
        return self._specs[name]

    def __contains__(self, name: str) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[PackageSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    def names(self) -> List[str]:
        return list(self._specs)

    def search(self, term: str) -> List[PackageSpec]:
        term = term.lower()
        return [s for s in self._specs.values()
                if term in s.name.lower() or term in s.summary.lower()
                or any(term in p.lower() for p in s.provides)]
