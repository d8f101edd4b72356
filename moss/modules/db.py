# moss/modules/db.py
"""
Installed-package database.

One JSON document per installed package::

    <db_dir>/<name>.json
    {
      "schema": 1,
      "name": "foo",
      "version": "1.2",
      "release": 1,
      "files": ["usr/bin/foo", "usr/lib/libfoo.so"],   # relative to sysroot
      "dirs": ["usr", "usr/bin", "usr/lib"],
      "depends": ["libbar"],                          # runtime only
      "provides": ["foo-api"],
      "conflicts": ["oldfoo"],
      "manifest_checksum": "<sha256>",
      "installed_at": "2025-01-01T00:00:00Z",
      "explicit": true
    }

Writes go to a temporary file that is then ``os.replace``d over the record,
so a reader sees either the old or the new document. Every mutation runs
under a process-local lock plus an exclusive ``flock`` on ``.lock`` so two
commits never interleave, even across processes.
"""

from __future__ import annotations
import contextlib
import datetime
import fcntl
import json
import os
import threading
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from moss.modules import logger as _logger
from moss.modules.errors import DatabaseCorruption, InstallIOError

SCHEMA = 1
LOCK_FILE = ".lock"


def now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class InstalledPackageRecord:
    name: str
    version: str
    release: int = 1
    files: List[str] = field(default_factory=list)
    dirs: List[str] = field(default_factory=list)
    depends: List[str] = field(default_factory=list)
    provides: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    manifest_checksum: str = ""
    installed_at: str = field(default_factory=now_iso)
    explicit: bool = True

    @property
    def full_version(self) -> str:
        return f"{self.version}-{self.release}"

    @property
    def identity(self) -> Tuple[str, ...]:
        return (self.name,) + tuple(p for p in self.provides if p != self.name)

    def to_dict(self) -> Dict:
        return dict(schema=SCHEMA, **asdict(self))

    @classmethod
    def from_dict(cls, data: Dict) -> "InstalledPackageRecord":
        if not isinstance(data, dict):
            raise ValueError("record is not a mapping")
        for key in ("name", "version"):
            if not isinstance(data.get(key), str) or not data[key]:
                raise ValueError(f"field '{key}' missing or not a string")
        lists = {}
        for key in ("files", "dirs", "depends", "provides", "conflicts"):
            value = data.get(key, [])
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ValueError(f"field '{key}' must be a list of strings")
            lists[key] = list(value)
        return cls(
            name=data["name"],
            version=data["version"],
            release=int(data.get("release", 1)),
            manifest_checksum=str(data.get("manifest_checksum", "")),
            installed_at=str(data.get("installed_at", "")),
            explicit=bool(data.get("explicit", True)),
            **lists,
        )


class InstalledDatabase:
    def __init__(self, db_dir: str, logger: Optional[_logger.Logger] = None):
        self.db_dir = os.path.abspath(db_dir)
        self.log = logger or _logger.Logger("db")
        self._mutex = threading.RLock()
        self._depth = 0

    def _path(self, name: str) -> str:
        return os.path.join(self.db_dir, f"{name}.json")

    # -------------------------
    # Locking
    # -------------------------
    @contextlib.contextmanager
    def transaction(self):
        """Exclusive section for read-modify-write of the database. Re-entrant."""
        with self._mutex:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return
            try:
                os.makedirs(self.db_dir, exist_ok=True)
                lf = open(os.path.join(self.db_dir, LOCK_FILE), "a+", encoding="utf-8")
            except OSError as e:
                raise InstallIOError(f"Couldn't open database lock in {self.db_dir}: {e}") from e
            with lf:
                fcntl.flock(lf.fileno(), fcntl.LOCK_EX)
                self._depth = 1
                try:
                    yield self
                finally:
                    self._depth = 0
                    fcntl.flock(lf.fileno(), fcntl.LOCK_UN)

    # -------------------------
    # Reads
    # -------------------------
    def _read(self, path: str) -> InstalledPackageRecord:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
            record = InstalledPackageRecord.from_dict(data)
        except (OSError, ValueError, TypeError) as e:
            raise DatabaseCorruption(f"Unreadable database record {path}: {e}", path=path) from e
        expected = os.path.basename(path)[:-len(".json")]
        if record.name != expected:
            raise DatabaseCorruption(
                f"Database record {path} names package '{record.name}'", path=path)
        return record

    def get(self, name: str) -> Optional[InstalledPackageRecord]:
        path = self._path(name)
        if not os.path.exists(path):
            return None
        return self._read(path)

    def __contains__(self, name: str) -> bool:
        return os.path.exists(self._path(name))

    def _record_files(self) -> Iterator[str]:
        if not os.path.isdir(self.db_dir):
            return iter(())
        return iter(sorted(f for f in os.listdir(self.db_dir)
                           if f.endswith(".json") and not f.startswith(".")))

    def scan(self) -> Tuple[List[InstalledPackageRecord], List[str]]:
        """Return (readable records, names of corrupt records)."""
        records, corrupt = [], []
        for fn in self._record_files():
            try:
                records.append(self._read(os.path.join(self.db_dir, fn)))
            except DatabaseCorruption as e:
                self.log.error(str(e))
                corrupt.append(fn[:-len(".json")])
        return records, corrupt

    def list_all(self) -> List[InstalledPackageRecord]:
        """All records; any corrupt record raises DatabaseCorruption."""
        records, corrupt = self.scan()
        if corrupt:
            raise DatabaseCorruption(f"Corrupt database records: {', '.join(corrupt)}",
                                     records=corrupt)
        return records

    def names(self) -> List[str]:
        return [fn[:-len(".json")] for fn in self._record_files()]

    def is_satisfied(self, spec) -> bool:
        """True when exactly this version-release of ``spec`` is installed."""
        rec = self.get(spec.name)
        return rec is not None and rec.version == spec.version and rec.release == spec.release

    def providers_of(self, virtual: str) -> List[str]:
        """Installed packages answering to ``virtual`` (by name or provides)."""
        return [r.name for r in self.list_all() if virtual in r.identity]

    def owners(self) -> Dict[str, str]:
        """Installed path -> owning package."""
        out: Dict[str, str] = {}
        for rec in self.list_all():
            for f in rec.files:
                out[f] = rec.name
        return out

    def reverse_dependencies(self, name: str) -> List[str]:
        """Installed packages whose runtime deps name ``name`` or something it provides."""
        target = self.get(name)
        identity = set(target.identity) if target else {name}
        return [r.name for r in self.list_all()
                if r.name != name and identity.intersection(r.depends)]

    # -------------------------
    # Writes (serialized)
    # -------------------------
    def upsert(self, record: InstalledPackageRecord) -> Optional[InstalledPackageRecord]:
        """Insert or replace the record for ``record.name``; returns the previous one."""
        with self.transaction():
            try:
                previous = self.get(record.name)
            except DatabaseCorruption as e:
                self.log.warning(f"Replacing corrupt record: {e}")
                previous = None
            path = self._path(record.name)
            tmp = path + ".tmp"
            try:
                with open(tmp, "w", encoding="utf-8") as fh:
                    json.dump(record.to_dict(), fh, indent=2, sort_keys=True)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp, path)
            except OSError as e:
                raise InstallIOError(f"Couldn't write database record {path}: {e}",
                                     package=record.name, stage="commit") from e
            self.log.debug(f"Recorded {record.name}@{record.full_version}")
            return previous

    def remove(self, name: str) -> Optional[InstalledPackageRecord]:
        """Drop the record for ``name`` and return it (with its file list)."""
        with self.transaction():
            record = self.get(name)
            if record is None:
                return None
            try:
                os.remove(self._path(name))
            except OSError as e:
                raise InstallIOError(f"Couldn't remove database record for {name}: {e}",
                                     package=name, stage="remove") from e
            self.log.debug(f"Removed record {name}")
            return record
