# moss/modules/conflicts.py
"""
Conflict checks.

Declared conflicts are checked before anything is fetched: every pair of
plan members, and every plan member against every installed package the
plan does not replace. A conflict declared by either side of a pair counts,
so the relation is symmetric even when only one recipe declares it.

File collisions need the staged file list and are checked per package just
before commit.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from moss.modules import logger as _logger
from moss.modules.errors import ConflictDetected

DECLARED = "declared"
FILES = "files"


@dataclass(frozen=True)
class ConflictReport:
    first: str
    second: str
    reason: str = DECLARED
    paths: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict:
        return {"first": self.first, "second": self.second, "reason": self.reason,
                "paths": list(self.paths)}

    def __str__(self):
        if self.reason == FILES:
            shown = ", ".join(self.paths[:3]) + (" ..." if len(self.paths) > 3 else "")
            return f"{self.first} and {self.second} both own {shown}"
        return f"{self.first} conflicts with {self.second}"


def _declared(a, b) -> bool:
    """True when either package declares a conflict with something the other answers to."""
    return bool(set(a.conflicts).intersection(b.identity) or set(b.conflicts).intersection(a.identity))


class ConflictChecker:
    def __init__(self, db=None, logger: Optional[_logger.Logger] = None):
        self.db = db
        self.log = logger or _logger.Logger("conflicts")

    def check(self, plan) -> List[ConflictReport]:
        """All declared conflicts for ``plan`` (plan x plan, plan x installed)."""
        specs = list(plan)
        reports: List[ConflictReport] = []
        for i, a in enumerate(specs):
            for b in specs[i + 1:]:
                if _declared(a, b):
                    reports.append(ConflictReport(a.name, b.name))

        if self.db is not None:
            planned = {s.name for s in specs}
            for rec in self.db.list_all():
                if rec.name in planned:
                    continue  # being replaced
                for a in specs:
                    if _declared(a, rec):
                        reports.append(ConflictReport(a.name, rec.name))
        return reports

    def ensure_clear(self, plan):
        reports = self.check(plan)
        if reports:
            for r in reports:
                self.log.error(str(r))
            raise ConflictDetected(reports, stage="preflight")

    def check_files(self, name: str, paths: Iterable[str],
                    replacing: Sequence[str] = ()) -> List[ConflictReport]:
        """
        Compare the files a package is about to install with the files other
        installed packages own. ``replacing`` lists packages whose files may
        be taken over (the package itself is always allowed).
        """
        if self.db is None:
            return []
        owners = self.db.owners()
        allowed = set(replacing) | {name}
        clashes: Dict[str, List[str]] = {}
        for p in paths:
            owner = owners.get(p)
            if owner is not None and owner not in allowed:
                clashes.setdefault(owner, []).append(p)
        return [ConflictReport(name, owner, FILES, tuple(sorted(ps)))
                for owner, ps in sorted(clashes.items())]

    def ensure_files_clear(self, name: str, paths: Iterable[str], replacing: Sequence[str] = ()):
        reports = self.check_files(name, paths, replacing)
        if reports:
            for r in reports:
                self.log.error(str(r))
            raise ConflictDetected(reports, package=name, stage="stage")
