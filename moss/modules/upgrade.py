# moss/modules/upgrade.py
"""
upgrade.py - rebuild installed packages whose catalog recipe changed.

 - every installed package that is also in the catalog becomes a root
 - installed packages missing from the catalog are reported and left alone
 - roots already installed at the catalog version-release are satisfied,
   so only changed packages (and dependencies they now need) are planned
"""

from __future__ import annotations
import re
from typing import Any, Dict, List, Optional

from moss.modules import logger as _logger
from moss.modules.catalog import Catalog
from moss.modules.db import InstalledDatabase
from moss.modules.resolver import BuildPlan, Resolver


def version_key(v: str):
    s = str(v).strip()
    if s.startswith("v") and re.match(r"v\d", s):
        s = s[1:]
    key = []
    for p in re.split(r'[.\-_+]', s):
        if p.isdigit():
            key.append((1, int(p), ""))
        else:
            m = re.match(r'([a-zA-Z]+)(\d+)$', p)
            if m:
                key.append((0, 0, m.group(1).lower()))
                key.append((1, int(m.group(2)), ""))
            else:
                key.append((0, 0, p.lower()))
    # trailing zeros don't matter: 1.0 == 1.0.0
    while key and key[-1] == (1, 0, ""):
        key.pop()
    return key


def compare_versions(a: str, b: str) -> int:
    ka, kb = version_key(a), version_key(b)
    if ka == kb:
        return 0
    return -1 if ka < kb else 1


class UpgradeManager:
    def __init__(self, catalog: Catalog, db: InstalledDatabase, resolver: Optional[Resolver] = None,
                 logger: Optional[_logger.Logger] = None):
        self.catalog = catalog
        self.db = db
        self.log = logger or _logger.Logger("upgrade")
        self.resolver = resolver or Resolver(catalog, db, logger=self.log.child("resolver"))

    def roots(self) -> List[str]:
        out = []
        for name in self.db.names():
            if name in self.catalog:
                out.append(name)
            else:
                self.log.warning(f"{name} is installed but not in any search path, skipping")
        return out

    def candidates(self) -> List[Dict[str, Any]]:
        """Installed packages whose catalog version-release differs."""
        out = []
        for rec in self.db.list_all():
            spec = self.catalog.get(rec.name)
            if spec is None or (spec.version, spec.release) == (rec.version, rec.release):
                continue
            cmp = compare_versions(rec.version, spec.version) or (rec.release > spec.release) - (rec.release < spec.release)
            out.append({
                "name": rec.name,
                "installed": rec.full_version,
                "available": spec.full_version,
                "kind": "downgrade" if cmp > 0 else "upgrade",
            })
        return out

    def plan(self) -> BuildPlan:
        plan = self.resolver.resolve(self.roots(), skip_satisfied_roots=True)
        if not len(plan):
            self.log.info("Everything is up to date")
        return plan
