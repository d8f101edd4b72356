# moss/modules/pipeline.py
"""
Per-package build pipeline.

    Pending -> Fetching -> Verifying -> Extracting -> Building -> Stripping
            -> Staging -> Committed

Any stage may end in Failed (the stage it failed in is kept). States only
move forward; a staged tree left by an earlier ``build`` whose recipe
fingerprint still matches lets ``install`` jump from Pending to Staging.
Cancellation is checked on entry to each stage; a running stage always
finishes.

Layout under the cache directory::

    sources/<name>/<file>              fetched sources (reused unless forced)
    build/<name>-XXXXXX/{src,dest}     scratch, removed when the build ends
    staged/<name>@<ver>-<rel>/root     staged install tree
    staged/<name>@<ver>-<rel>/manifest.json

Commit copies the staged tree into the sysroot (directories, then files via
temporary name + ``os.replace``, then symlinks) and only then writes the
database record. A failure before the record is written leaves the database
untouched; files already copied stay in place and are overwritten by the
next attempt.
"""

from __future__ import annotations
import enum
import json
import os
import shutil
import tarfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from moss.modules import logger as _logger
from moss.modules.conflicts import ConflictChecker
from moss.modules.db import InstalledDatabase, InstalledPackageRecord, now_iso
from moss.modules.errors import (
    BuildScriptFailed, Cancelled, DatabaseCorruption, ExtractError, InstallIOError, MossError,
)
from moss.modules.fetch import Fetcher
from moss.modules.recipe import PackageSpec, Source
from moss.modules.runner import CommandRunner
from moss.modules.scratch import ScratchAllocator, ScratchDir
from moss.modules.verify import Verifier

MANIFEST_FILE = "manifest.json"
ARCHIVE_SUFFIXES = (".tgz", ".tbz", ".tbz2", ".txz")
ELF_MAGIC = b"\x7fELF"


class Stage(enum.Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    EXTRACTING = "extracting"
    BUILDING = "building"
    STRIPPING = "stripping"
    STAGING = "staging"
    COMMITTED = "committed"
    FAILED = "failed"


_ORDER = [Stage.PENDING, Stage.FETCHING, Stage.VERIFYING, Stage.EXTRACTING, Stage.BUILDING,
          Stage.STRIPPING, Stage.STAGING, Stage.COMMITTED]


class PackageBuild:
    """State of one package moving through the pipeline."""

    def __init__(self, spec: PackageSpec):
        self.spec = spec
        self.state = Stage.PENDING
        self.failed_stage: Optional[Stage] = None
        self.error: Optional[MossError] = None
        self.log_path: Optional[str] = None
        self.staged: Optional["StagedTree"] = None
        self.done = False
        self.history: List[Tuple[Stage, float]] = [(Stage.PENDING, time.time())]

    def advance(self, state: Stage):
        if self.state is Stage.FAILED:
            raise RuntimeError(f"{self.spec.name}: already failed in {self.failed_stage.value}")
        if _ORDER.index(state) <= _ORDER.index(self.state):
            raise RuntimeError(f"{self.spec.name}: can't go from {self.state.value} to {state.value}")
        self.state = state
        self.history.append((state, time.time()))

    def fail(self, error: MossError):
        if self.state is Stage.FAILED:
            return
        self.failed_stage = self.state
        self.state = Stage.FAILED
        self.error = error
        self.history.append((Stage.FAILED, time.time()))

    @property
    def succeeded(self) -> bool:
        return self.done and self.state is not Stage.FAILED

    @property
    def duration(self) -> float:
        return self.history[-1][1] - self.history[0][1]

    def to_dict(self) -> Dict:
        return {
            "package": self.spec.name,
            "version": self.spec.full_version,
            "state": self.state.value,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "error": self.error.to_dict() if self.error else None,
            "log": self.log_path,
            "duration": round(self.duration, 3),
        }


@dataclass
class StagedTree:
    name: str
    version: str
    release: int
    manifest_checksum: str
    path: str
    entries: Dict[str, Dict] = field(default_factory=dict)

    @property
    def root(self) -> str:
        return os.path.join(self.path, "root")

    @property
    def files(self) -> List[str]:
        """Regular files and symlinks, relative to the sysroot."""
        return sorted(p for p, e in self.entries.items() if e["type"] in ("file", "symlink"))

    @property
    def dirs(self) -> List[str]:
        return sorted(p for p, e in self.entries.items() if e["type"] == "dir")

    def to_dict(self) -> Dict:
        return {"name": self.name, "version": self.version, "release": self.release,
                "manifest_checksum": self.manifest_checksum, "created_at": now_iso(),
                "entries": self.entries}


def build_manifest(root: str, logger=None) -> Dict[str, Dict]:
    """
    Deterministic listing of ``root``: relative POSIX path ->
    {"type": "dir"} | {"type": "file", "sha256": ...} | {"type": "symlink", "target": ...}
    """
    entries: Dict[str, Dict] = {}
    for current, dirs, files in os.walk(root, topdown=True, followlinks=False):
        dirs.sort()
        files.sort()
        for name in dirs + files:
            full = os.path.join(current, name)
            rel = os.path.relpath(full, root).replace(os.sep, "/")
            if os.path.islink(full):
                entries[rel] = {"type": "symlink", "target": os.readlink(full)}
            elif os.path.isdir(full):
                entries[rel] = {"type": "dir"}
            elif os.path.isfile(full):
                entries[rel] = {"type": "file", "sha256": Verifier.sha256sum(full)}
            elif logger is not None:
                logger.warning(f"Ignoring special file {rel}")
    return entries


def _strip_component(name: str) -> Optional[str]:
    parts = [p for p in name.split("/") if p not in ("", ".")]
    if len(parts) < 2:
        return None
    return "/".join(parts[1:])


def is_archive(path: str) -> bool:
    name = os.path.basename(path)
    if ".tar" not in name and not name.endswith(ARCHIVE_SUFFIXES):
        return False
    return tarfile.is_tarfile(path)


class BuildPipeline:
    def __init__(self, settings, db: InstalledDatabase,
                 fetcher: Optional[Fetcher] = None,
                 verifier: Optional[Verifier] = None,
                 runner: Optional[CommandRunner] = None,
                 allocator: Optional[ScratchAllocator] = None,
                 checker: Optional[ConflictChecker] = None,
                 logger: Optional[_logger.Logger] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.settings = settings
        self.db = db
        self.log = logger or _logger.Logger("pipeline")
        self.fetcher = fetcher or Fetcher(settings.sources_dir, logger=self.log.child("fetch"))
        self.verifier = verifier or Verifier(logger=self.log.child("verify"))
        self.runner = runner or CommandRunner(logger=self.log.child("runner"))
        self.allocator = allocator or ScratchAllocator(settings.build_dir, logger=self.log.child("scratch"))
        self.checker = checker or ConflictChecker(db, logger=self.log.child("conflicts"))
        self.cancel_event = cancel_event or threading.Event()

    # -------------------------
    # Driver
    # -------------------------
    def run(self, spec: PackageSpec, commit: bool = True, explicit: bool = True,
            reuse_staged: bool = True, force_fetch: bool = False,
            build: Optional[PackageBuild] = None, replacing: Sequence[str] = ()) -> PackageBuild:
        """
        Take ``spec`` through the pipeline. With ``commit=False`` it stops
        once the staged tree is complete. ``replacing`` names installed
        packages whose files this one may take over.
        Raises the failure after recording it on the returned PackageBuild.
        """
        build = build or PackageBuild(spec)
        try:
            staged = self.find_staged(spec) if reuse_staged else None
            if staged is not None:
                self._enter(build, Stage.STAGING)
                self.log.info(f"{spec}: reusing staged tree {staged.path}")
            else:
                staged = self._build_and_stage(spec, build, force_fetch)
            build.staged = staged

            if commit:
                self._check_cancelled(build)
                self.commit(spec, staged, explicit=explicit, replacing=replacing)
                build.advance(Stage.COMMITTED)
                self.log.success(f"{spec} installed")
            else:
                self.checker.ensure_files_clear(spec.name, staged.files, replacing)
                self.log.success(f"{spec} staged in {staged.path}")
            build.done = True
            return build
        except MossError as e:
            build.fail(e)
            raise
        except OSError as e:
            err = InstallIOError(f"{spec}: {e}", package=spec.name, stage=build.state.value)
            build.fail(err)
            raise err from e

    def _build_and_stage(self, spec: PackageSpec, build: PackageBuild, force_fetch: bool) -> StagedTree:
        self._enter(build, Stage.FETCHING)
        fetched = self.fetch(spec, force=force_fetch)
        self._enter(build, Stage.VERIFYING)
        self.verify(spec, fetched)

        scratch = self.allocator.allocate(spec.name)
        try:
            self._enter(build, Stage.EXTRACTING)
            self.extract(spec, fetched, scratch.src)
            self._enter(build, Stage.BUILDING)
            self.build(spec, scratch, build)
            self._enter(build, Stage.STRIPPING)
            self.strip(spec, scratch.dest)
            self._enter(build, Stage.STAGING)
            return self.stage(spec, scratch.dest)
        finally:
            scratch.release()

    def _check_cancelled(self, build: PackageBuild):
        if self.cancel_event.is_set():
            raise Cancelled(f"{build.spec.name}: cancelled", package=build.spec.name,
                            stage=build.state.value)

    def _enter(self, build: PackageBuild, stage: Stage):
        self._check_cancelled(build)
        build.advance(stage)
        self.log.debug(f"{build.spec}: {stage.value}")

    # -------------------------
    # Stages
    # -------------------------
    def fetch(self, spec: PackageSpec, force: bool = False) -> List[Tuple[Source, str]]:
        return [(src, self.fetcher.fetch(spec, src, force=force)) for src in spec.sources]

    def verify(self, spec: PackageSpec, fetched: List[Tuple[Source, str]]):
        for src, path in fetched:
            self.verifier.verify(path, src.sha256, url=src.url, package=spec.name)

    def extract(self, spec: PackageSpec, fetched: List[Tuple[Source, str]], src_dir: str):
        for src, path in fetched:
            if not src.verbatim and is_archive(path):
                self.log.debug(f"{spec.name}: extracting {os.path.basename(path)}")
                self._extract_tarball(spec, path, src_dir)
            else:
                shutil.copy2(path, os.path.join(src_dir, os.path.basename(path)))

    def _extract_tarball(self, spec: PackageSpec, path: str, src_dir: str):
        """Extract dropping the top-level directory; refuse members escaping ``src_dir``."""
        def unsafe(member, why):
            return ExtractError(f"{os.path.basename(path)}: unsafe member {member.name} ({why})",
                                package=spec.name, stage="extract", archive=path)

        try:
            with tarfile.open(path, "r:*") as tf:
                members, links = [], set()
                for m in tf.getmembers():
                    name = _strip_component(m.name)
                    if name is None:
                        continue
                    if m.name.startswith("/") or ".." in name.split("/"):
                        raise unsafe(m, "path outside archive root")
                    parents = name.split("/")[:-1]
                    if any("/".join(parents[:i + 1]) in links for i in range(len(parents))):
                        raise unsafe(m, "path through a symlink")
                    if m.issym():
                        links.add(name)
                    elif m.islnk():
                        target = _strip_component(m.linkname)
                        if target is None or ".." in target.split("/"):
                            raise unsafe(m, "hard link outside archive root")
                        m.linkname = target
                    m.name = name
                    members.append(m)
                kwargs = {"filter": "tar"} if hasattr(tarfile, "tar_filter") else {}
                tf.extractall(src_dir, members=members, **kwargs)
        except (tarfile.TarError, OSError) as e:
            raise ExtractError(f"Couldn't extract {path}: {e}", package=spec.name,
                               stage="extract", archive=path) from e

    def build_log_path(self, spec: PackageSpec) -> str:
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        return os.path.join(self.settings.log_dir, f"{spec.name}-{stamp}.log")

    def build(self, spec: PackageSpec, scratch: ScratchDir, build: Optional[PackageBuild] = None):
        log_path = self.build_log_path(spec)
        if build is not None:
            build.log_path = log_path
        env = os.environ.copy()
        env["DESTDIR"] = scratch.dest
        command = CommandRunner.script_command(spec.recipe, scratch.dest, spec.version)
        self.log.info(f"Building {spec} (log: {log_path})")
        try:
            result = self.runner.run(command, cwd=scratch.src, env=env, log_path=log_path,
                                     tee=self.settings.verbose_builds)
        except OSError as e:
            with open(log_path, "a", encoding="utf-8") as fh:
                fh.write(f"==> couldn't execute {spec.recipe}: {e}\n")
            raise BuildScriptFailed(spec.name, 127, log_path) from e
        if not result.ok():
            raise BuildScriptFailed(spec.name, result.returncode, log_path)

    def strip(self, spec: PackageSpec, dest: str):
        """Strip ELF files in place. Failures are warnings, never fatal."""
        if not self.settings.strip:
            return
        if shutil.which("strip") is None:
            self.log.warning(f"{spec.name}: 'strip' not found, binaries left as built")
            return
        for current, _, files in os.walk(dest):
            for name in files:
                path = os.path.join(current, name)
                if os.path.islink(path) or not self._is_elf(path):
                    continue
                try:
                    result = self.runner.run(["strip", "--strip-unneeded", path])
                except OSError as e:
                    self.log.warning(f"{spec.name}: couldn't strip {path}: {e}")
                    continue
                if not result.ok():
                    self.log.warning(f"{spec.name}: strip failed on {path}: {(result.output or '').strip()}")

    @staticmethod
    def _is_elf(path: str) -> bool:
        try:
            with open(path, "rb") as fh:
                return fh.read(4) == ELF_MAGIC
        except OSError:
            return False

    # -------------------------
    # Staging
    # -------------------------
    def staged_path(self, spec: PackageSpec) -> str:
        return os.path.join(self.settings.staged_dir, f"{spec.name}@{spec.full_version}")

    def stage(self, spec: PackageSpec, dest: str) -> StagedTree:
        path = self.staged_path(spec)
        if os.path.exists(path):
            shutil.rmtree(path)
        os.makedirs(path)
        shutil.move(dest, os.path.join(path, "root"))

        staged = StagedTree(spec.name, spec.version, spec.release, spec.manifest_checksum, path)
        staged.entries = build_manifest(staged.root, logger=self.log)
        if not staged.entries:
            self.log.warning(f"{spec}: build installed no files")
        manifest = os.path.join(path, MANIFEST_FILE)
        with open(manifest + ".tmp", "w", encoding="utf-8") as fh:
            json.dump(staged.to_dict(), fh, indent=2, sort_keys=True)
        os.replace(manifest + ".tmp", manifest)
        return staged

    def find_staged(self, spec: PackageSpec) -> Optional[StagedTree]:
        """A complete staged tree for exactly this recipe, or None."""
        path = self.staged_path(spec)
        manifest = os.path.join(path, MANIFEST_FILE)
        if not os.path.isfile(manifest) or not os.path.isdir(os.path.join(path, "root")):
            return None
        try:
            with open(manifest, "r", encoding="utf-8") as fh:
                data = json.load(fh)
            staged = StagedTree(data["name"], data["version"], int(data["release"]),
                                data["manifest_checksum"], path, dict(data["entries"]))
        except (OSError, ValueError, KeyError, TypeError) as e:
            self.log.debug(f"Ignoring unreadable staged tree {path}: {e}")
            return None
        if (staged.name, staged.version, staged.release, staged.manifest_checksum) != \
                (spec.name, spec.version, spec.release, spec.manifest_checksum):
            self.log.debug(f"Staged tree {path} is out of date")
            return None
        return staged

    def purge_staged(self) -> int:
        staged_dir = self.settings.staged_dir
        if not os.path.isdir(staged_dir):
            return 0
        entries = os.listdir(staged_dir)
        shutil.rmtree(staged_dir)
        return len(entries)

    # -------------------------
    # Commit
    # -------------------------
    def commit(self, spec: PackageSpec, staged: StagedTree, explicit: bool = True,
               replacing: Sequence[str] = ()) -> InstalledPackageRecord:
        """
        Copy ``staged`` into the sysroot and record it. The file ownership
        check runs under the database lock, so two packages committing at
        once see each other's files.
        """
        sysroot = self.settings.sysroot
        with self.db.transaction():
            self.checker.ensure_files_clear(spec.name, staged.files, replacing)
            try:
                previous = self.db.get(spec.name)
            except DatabaseCorruption as e:
                self.log.warning(str(e))
                previous = None
            try:
                self._apply(staged, sysroot)
            except OSError as e:
                raise InstallIOError(
                    f"Couldn't install {spec} into {sysroot}: {e}; database not updated, "
                    f"copied files may remain", package=spec.name, stage="commit") from e

            record = InstalledPackageRecord(
                name=spec.name,
                version=spec.version,
                release=spec.release,
                files=staged.files,
                dirs=staged.dirs,
                depends=list(spec.depends),
                provides=list(spec.provides),
                conflicts=list(spec.conflicts),
                manifest_checksum=spec.manifest_checksum,
                explicit=explicit or bool(previous and previous.explicit),
            )
            self.db.upsert(record)
            if previous is not None:
                self._remove_stale(previous, record, sysroot)
        return record

    @staticmethod
    def _apply(staged: StagedTree, sysroot: str):
        for rel in sorted(staged.dirs, key=lambda p: p.count("/")):
            dst = os.path.join(sysroot, rel)
            if not os.path.isdir(dst):
                os.makedirs(dst)
                shutil.copystat(os.path.join(staged.root, rel), dst)

        for rel in staged.files:
            src = os.path.join(staged.root, rel)
            dst = os.path.join(sysroot, rel)
            tmp = dst + ".moss-new"
            if os.path.lexists(tmp):
                os.unlink(tmp)
            if staged.entries[rel]["type"] == "symlink":
                os.symlink(os.readlink(src), tmp)
            else:
                shutil.copy2(src, tmp, follow_symlinks=False)
            os.replace(tmp, dst)

    def _remove_stale(self, previous: InstalledPackageRecord, record: InstalledPackageRecord,
                      sysroot: str):
        """Delete what the old version installed and the new one no longer does."""
        owners = self.db.owners()
        for rel in sorted(set(previous.files) - set(record.files), reverse=True):
            if owners.get(rel) not in (None, record.name):
                continue
            try:
                os.unlink(os.path.join(sysroot, rel))
            except FileNotFoundError:
                pass
            except OSError as e:
                self.log.warning(f"Couldn't remove stale file {rel}: {e}")
        for rel in sorted(set(previous.dirs) - set(record.dirs), key=lambda p: p.count("/"),
                          reverse=True):
            try:
                os.rmdir(os.path.join(sysroot, rel))
            except OSError:
                pass
