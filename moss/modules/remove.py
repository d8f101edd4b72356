# moss/modules/remove.py
"""
Remover: safe removal of installed packages.

Flow:
 - refuse unless installed; a name only *provided* by an installed package
   points the operator at that package instead
 - refuse when other installed packages depend on it (unless forced)
 - delete the recorded files (deepest first), then the recorded directories
   that are left empty; files already missing are logged and skipped,
   files another package has since taken over are kept
 - drop the database record last, so an interrupted removal can simply be
   run again
"""

from __future__ import annotations
import os
from typing import Any, Dict, List, Optional

from moss.modules import logger as _logger
from moss.modules.db import InstalledDatabase, InstalledPackageRecord
from moss.modules.errors import InstallIOError, PackageNotInstalled, RemovalBlocked


class Remover:
    def __init__(self, settings, db: InstalledDatabase, dry_run: bool = False,
                 logger: Optional[_logger.Logger] = None):
        """
        settings: provides ``sysroot``.
        dry_run: only log what would be removed.
        """
        self.sysroot = os.path.abspath(settings.sysroot)
        self.db = db
        self.dry_run = dry_run
        self.log = logger or _logger.Logger("remove", settings)

    def _target(self, rel: str) -> Optional[str]:
        """Absolute path of ``rel`` inside the sysroot, None if it would escape it."""
        path = os.path.normpath(os.path.join(self.sysroot, rel))
        if path == self.sysroot or not path.startswith(self.sysroot.rstrip(os.sep) + os.sep):
            return None
        return path

    def check_reverse_dependencies(self, package: str) -> List[str]:
        return self.db.reverse_dependencies(package)

    def _lookup(self, package: str) -> InstalledPackageRecord:
        record = self.db.get(package)
        if record is not None:
            return record
        providers = self.db.providers_of(package)
        if providers:
            raise PackageNotInstalled(
                f"{package} is provided by {', '.join(providers)}; remove that instead",
                package=package, providers=providers)
        raise PackageNotInstalled(f"Package not installed: {package}", package=package)

    def remove_files(self, record: InstalledPackageRecord) -> Dict[str, List[str]]:
        owners = {f: r.name for r in self.db.list_all() if r.name != record.name for f in r.files}
        removed, missing, kept = [], [], []
        for rel in sorted(record.files, key=lambda p: (p.count("/"), p), reverse=True):
            path = self._target(rel)
            if path is None:
                self.log.error(f"Refusing to remove {rel}: outside {self.sysroot}")
                kept.append(rel)
                continue
            if rel in owners:
                self.log.info(f"Keeping {rel}: now owned by {owners[rel]}")
                kept.append(rel)
                continue
            if self.dry_run:
                self.log.info(f"[DRY-RUN] would remove {path}")
                removed.append(rel)
                continue
            try:
                os.unlink(path)
                removed.append(rel)
            except FileNotFoundError:
                self.log.warning(f"{record.name}: {path} already missing")
                missing.append(rel)
            except IsADirectoryError:
                self.log.warning(f"{record.name}: {path} is now a directory, left in place")
                kept.append(rel)
            except OSError as e:
                raise InstallIOError(f"Couldn't remove {path}: {e}", package=record.name,
                                     stage="remove", path=path) from e

        for rel in sorted(record.dirs, key=lambda p: (p.count("/"), p), reverse=True):
            path = self._target(rel)
            if path is None or self.dry_run:
                continue
            try:
                os.rmdir(path)
            except OSError:
                pass  # not empty, shared or already gone
        return {"removed": removed, "missing": missing, "kept": kept}

    def remove_package(self, package: str, force: bool = False) -> Dict[str, Any]:
        with self.db.transaction():
            record = self._lookup(package)
            rev = self.check_reverse_dependencies(package)
            if rev and not force:
                raise RemovalBlocked(
                    f"{package} is required by: {', '.join(rev)} (use --force to remove anyway)",
                    package=package, dependents=rev)
            if rev:
                self.log.warning(f"Removing {package} although {', '.join(rev)} depend on it")

            result = self.remove_files(record)
            if not self.dry_run:
                self.db.remove(package)
                self.log.success(f"Removed {record.name}@{record.full_version}")
        return {"package": package, "version": record.full_version, **result}
