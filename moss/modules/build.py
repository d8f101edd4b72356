# moss/modules/build.py
"""
Build orchestrator.

Runs a BuildPlan through the pipeline level by level (see BuildPlan.levels):
packages inside a level have no dependencies on each other and are built in
parallel by a pool of ``workers`` threads; the next level starts only when
the whole level succeeded. The first failure stops the run; packages of
later levels stay Pending, queued packages of the same level are not started.

Cancellation (Ctrl-C) sets an Event checked by the pipeline between stages;
a stage already running is allowed to finish.
"""

from __future__ import annotations
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional

from moss.modules import logger as _logger
from moss.modules.conflicts import FILES, ConflictReport
from moss.modules.errors import Cancelled, ConflictDetected, MossError
from moss.modules.pipeline import BuildPipeline, PackageBuild, Stage
from moss.modules.resolver import BuildPlan


class BuildReport:
    def __init__(self, plan: BuildPlan):
        self.plan = plan
        self.builds: Dict[str, PackageBuild] = {s.name: PackageBuild(s) for s in plan}
        self.failure: Optional[MossError] = None
        self.cancelled = False

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def states(self) -> Dict[str, Stage]:
        return {name: b.state for name, b in self.builds.items()}

    def names_in(self, *states: Stage) -> List[str]:
        return [n for n, b in self.builds.items() if b.state in states]

    @property
    def committed(self) -> List[str]:
        return self.names_in(Stage.COMMITTED)

    @property
    def staged(self) -> List[str]:
        return [n for n, b in self.builds.items() if b.succeeded and b.state is Stage.STAGING]

    @property
    def failed(self) -> List[str]:
        return self.names_in(Stage.FAILED)

    @property
    def pending(self) -> List[str]:
        return self.names_in(Stage.PENDING)

    def raise_for_failure(self):
        if self.failure is not None:
            raise self.failure

    def to_dict(self) -> Dict:
        return {
            "ok": self.ok,
            "cancelled": self.cancelled,
            "packages": [b.to_dict() for b in self.builds.values()],
            "error": self.failure.to_dict() if self.failure else None,
        }


class BuildManager:
    def __init__(self, settings, db, pipeline: Optional[BuildPipeline] = None,
                 workers: Optional[int] = None, logger: Optional[_logger.Logger] = None):
        self.settings = settings
        self.db = db
        self.workers = workers or settings.workers
        self.log = logger or _logger.Logger("build", settings)
        self.cancel_event = threading.Event()
        self.pipeline = pipeline or BuildPipeline(settings, db, logger=self.log.child("pipeline"),
                                                  cancel_event=self.cancel_event)
        self.pipeline.cancel_event = self.cancel_event
        self.checker = self.pipeline.checker

    def cancel(self):
        self.cancel_event.set()

    def replaced_by(self, plan: BuildPlan) -> List[str]:
        """Plan members already installed; their files may change owner."""
        return [name for name in plan.names if name in self.db]

    def preflight(self, plan: BuildPlan, reuse_staged: bool = True):
        """
        Conflicts known before anything is fetched: declared ones, plus file
        collisions of staged trees that will be reused. Files of fresh builds
        are checked again once staged.
        """
        self.checker.ensure_clear(plan)
        if not reuse_staged:
            return
        replacing = self.replaced_by(plan)
        reports = []
        claimed: Dict[str, str] = {}
        for spec in plan:
            staged = self.pipeline.find_staged(spec)
            if staged is None:
                continue
            reports += self.checker.check_files(spec.name, staged.files, replacing)
            shared: Dict[str, List[str]] = {}
            for path in staged.files:
                if path in claimed:
                    shared.setdefault(claimed[path], []).append(path)
                else:
                    claimed[path] = spec.name
            reports += [ConflictReport(spec.name, other, FILES, tuple(paths))
                        for other, paths in sorted(shared.items())]
        if reports:
            for r in reports:
                self.log.error(str(r))
            raise ConflictDetected(reports, stage="preflight")

    def run(self, plan: BuildPlan, commit_roots: bool = True, reuse_staged: bool = True,
            force_fetch: bool = False) -> BuildReport:
        """
        Build every package of ``plan``. Dependencies are always committed
        (later packages build against them), and so is a root another plan
        member depends on. The remaining roots are committed only when
        ``commit_roots`` is set, otherwise they stop once staged.
        """
        self.preflight(plan, reuse_staged=reuse_staged)
        report = BuildReport(plan)
        roots = set(plan.roots)
        needed = {dep for name in plan.names for dep in plan.dependencies(name)}
        replacing = self.replaced_by(plan)
        self.cancel_event.clear()

        def job(name: str) -> PackageBuild:
            return self.pipeline.run(
                plan[name],
                commit=commit_roots or name not in roots or name in needed,
                explicit=name in roots,
                reuse_staged=reuse_staged,
                force_fetch=force_fetch,
                build=report.builds[name],
                replacing=replacing,
            )

        try:
            for idx, level in enumerate(plan.levels()):
                self.log.debug(f"Level {idx}: {', '.join(level)}")
                if self.workers == 1 or len(level) == 1:
                    self._run_sequential(level, job, report)
                else:
                    self._run_parallel(level, job, report)
                if report.failure is not None:
                    break
        except KeyboardInterrupt:
            self.cancel()
            report.cancelled = True
            report.failure = Cancelled("Interrupted by user")
            self.log.warning("Interrupted, stopping")

        if report.pending and report.failure is not None:
            self.log.warning(f"Not built: {', '.join(report.pending)}")
        return report

    def _record_failure(self, name: str, error: MossError, report: BuildReport):
        if isinstance(error, Cancelled):
            report.cancelled = True
        if report.failure is None:
            report.failure = error
        self.log.error(f"{name}: {error}")

    def _run_sequential(self, level: List[str], job, report: BuildReport):
        for name in level:
            try:
                job(name)
            except MossError as e:
                self._record_failure(name, e, report)
                return

    def _run_parallel(self, level: List[str], job, report: BuildReport):
        with ThreadPoolExecutor(max_workers=self.workers) as ex:
            futures = {ex.submit(job, name): name for name in level}
            try:
                for fut in as_completed(futures):
                    name = futures[fut]
                    try:
                        fut.result()
                    except MossError as e:
                        self._record_failure(name, e, report)
                        for other in futures:
                            other.cancel()
            except KeyboardInterrupt:
                self.cancel()
                for other in futures:
                    other.cancel()
                raise

    # -------------------------
    # Helpers for source-only commands
    # -------------------------
    def download(self, specs, force: bool = True) -> Dict[str, List[str]]:
        """Fetch (and verify, when digests are declared) sources without building."""
        out = {}
        for spec in specs:
            fetched = self.pipeline.fetch(spec, force=force)
            for src, path in fetched:
                if src.sha256:
                    self.pipeline.verifier.verify(path, src.sha256, url=src.url, package=spec.name)
            out[spec.name] = [path for _, path in fetched]
        return out

    def checksums(self, spec) -> Dict[str, str]:
        """sha256 of each of ``spec``'s sources, fetched fresh."""
        return {src.url: self.pipeline.verifier.sha256sum(path)
                for src, path in self.pipeline.fetch(spec, force=True)}
