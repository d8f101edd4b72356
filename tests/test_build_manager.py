"""Tests for running whole plans: ordering, failure handling and staging of roots."""

import os

import pytest

from moss.modules.build import BuildManager
from moss.modules.errors import BuildScriptFailed, ChecksumMismatch, ConflictDetected
from moss.modules.pipeline import Stage
from moss.modules.resolver import Resolver


def plan_for(load_catalog, db, settings, *roots):
    return Resolver(load_catalog(), db, settings).resolve(list(roots))


@pytest.fixture
def manager(settings, db, quiet_log):
    return BuildManager(settings, db, logger=quiet_log)


class TestRun:
    def test_install_chain(self, repo, manager, db, settings, load_catalog):
        repo.add("app", depends=["lib"], build_depends=["tool"])
        repo.add("lib")
        repo.add("tool")
        plan = plan_for(load_catalog, db, settings, "app")

        report = manager.run(plan)

        assert report.ok
        assert report.committed == ["tool", "lib", "app"]
        assert db.get("app").explicit is True
        assert db.get("lib").explicit is False
        assert db.get("app").depends == ["lib"]
        for name in ("app", "lib", "tool"):
            assert os.path.isfile(os.path.join(settings.sysroot, "usr/share", name, "hello.txt"))

    def test_build_stages_roots_only(self, repo, manager, db, settings, load_catalog):
        """``build`` commits dependencies but leaves the root staged."""
        repo.add("app", depends=["lib"])
        repo.add("lib")
        plan = plan_for(load_catalog, db, settings, "app")

        report = manager.run(plan, commit_roots=False, reuse_staged=False)

        assert report.ok
        assert report.committed == ["lib"]
        assert report.staged == ["app"]
        assert db.get("app") is None
        assert manager.pipeline.find_staged(plan["app"]) is not None

    def test_build_commits_roots_other_roots_need(self, repo, manager, db, settings,
                                                  load_catalog):
        repo.add("b")
        repo.add("a", depends=["b"])
        plan = plan_for(load_catalog, db, settings, "a", "b")

        report = manager.run(plan, commit_roots=False, reuse_staged=False)

        assert report.ok
        assert report.committed == ["b"]
        assert report.staged == ["a"]
        assert db.get("b").explicit is True
        assert db.get("a") is None

    def test_failure_stops_dependents(self, repo, manager, db, settings, load_catalog):
        repo.add("app", depends=["lib"])
        repo.add("lib", script="#!/bin/sh\nexit 2\n")
        plan = plan_for(load_catalog, db, settings, "app")

        report = manager.run(plan)

        assert not report.ok
        assert report.failed == ["lib"]
        assert report.pending == ["app"]
        assert report.builds["lib"].failed_stage is Stage.BUILDING
        assert db.names() == []
        with pytest.raises(BuildScriptFailed):
            report.raise_for_failure()
        data = report.to_dict()
        assert data["ok"] is False
        assert data["error"]["exit_code"] == 22

    def test_earlier_packages_stay_installed(self, repo, manager, db, settings, load_catalog):
        """Packages committed before a failure are not rolled back."""
        repo.add("app", depends=["lib"], sha256="f" * 64)
        repo.add("lib")
        plan = plan_for(load_catalog, db, settings, "app")

        report = manager.run(plan)

        assert isinstance(report.failure, ChecksumMismatch)
        assert report.committed == ["lib"]
        assert db.names() == ["lib"]

    def test_parallel_level(self, repo, settings, db, quiet_log, load_catalog):
        for name in ("a", "b", "c"):
            repo.add(name)
        repo.add("top", depends=["a", "b", "c"])
        plan = plan_for(load_catalog, db, settings, "top")
        assert plan.levels() == [["a", "b", "c"], ["top"]]

        report = BuildManager(settings, db, workers=3, logger=quiet_log).run(plan)

        assert report.ok
        assert sorted(db.names()) == ["a", "b", "c", "top"]

    def test_parallel_failure_reported(self, repo, settings, db, quiet_log, load_catalog):
        repo.add("a")
        repo.add("b", script="#!/bin/sh\nexit 1\n")
        repo.add("top", depends=["a", "b"])
        plan = plan_for(load_catalog, db, settings, "top")

        report = BuildManager(settings, db, workers=2, logger=quiet_log).run(plan)

        assert report.failed == ["b"]
        assert report.states["top"] is Stage.PENDING
        assert "top" not in db


SHARED = '#!/bin/sh -e\nmkdir -p "$1/etc"\necho {0} > "$1/etc/shared"\n'


class TestFileOwnership:
    def test_file_moves_between_packages_in_one_plan(self, repo, manager, db, settings,
                                                     load_catalog):
        """A package may take over files from another package the same plan replaces."""
        repo.add("old", version="1", script=SHARED.format("old"))
        manager.run(plan_for(load_catalog, db, settings, "old"))
        repo.add("old", version="2")
        repo.add("new", script=SHARED.format("new"))

        report = manager.run(plan_for(load_catalog, db, settings, "new", "old"))

        assert report.ok
        with open(os.path.join(settings.sysroot, "etc/shared")) as fh:
            assert fh.read() == "new\n"
        assert db.get("new").files == ["etc/shared"]
        assert db.get("old").files == ["usr/share/old/hello.txt"]

    def test_new_packages_sharing_a_file(self, repo, manager, db, settings, load_catalog):
        """Only installed packages the plan replaces give up their files."""
        repo.add("a", script=SHARED.format("a"))
        repo.add("c", script=SHARED.format("c"))
        plan = plan_for(load_catalog, db, settings, "a", "c")

        report = manager.run(plan)

        assert report.committed == ["a"]
        assert report.failed == ["c"]
        assert isinstance(report.failure, ConflictDetected)
        clash = report.failure.reports[0]
        assert (clash.first, clash.second, clash.paths) == ("c", "a", ("etc/shared",))
        assert db.owners() == {"etc/shared": "a"}
        with open(os.path.join(settings.sysroot, "etc/shared")) as fh:
            assert fh.read() == "a\n"

    def test_parallel_commits_see_each_other(self, repo, settings, db, quiet_log, load_catalog):
        repo.add("a", script=SHARED.format("a"))
        repo.add("c", script=SHARED.format("c"))
        plan = plan_for(load_catalog, db, settings, "a", "c")

        report = BuildManager(settings, db, workers=2, logger=quiet_log).run(plan)

        assert len(report.committed) == 1
        assert len(report.failed) == 1
        assert isinstance(report.failure, ConflictDetected)
        winner = report.committed[0]
        assert db.names() == [winner]
        with open(os.path.join(settings.sysroot, "etc/shared")) as fh:
            assert fh.read() == f"{winner}\n"

    def test_preflight_checks_staged_trees_against_each_other(self, repo, manager, db,
                                                               settings, load_catalog):
        repo.add("a", script=SHARED.format("a"))
        repo.add("c", script=SHARED.format("c"))
        plan = plan_for(load_catalog, db, settings, "a", "c")
        assert manager.run(plan, commit_roots=False).staged == ["a", "c"]

        with pytest.raises(ConflictDetected) as exc:
            manager.preflight(plan)
        assert [(r.first, r.second, r.paths) for r in exc.value.reports] == [
            ("c", "a", ("etc/shared",))]
        assert db.names() == []

    def test_preflight_checks_reused_staged_trees(self, repo, manager, db, settings,
                                                  load_catalog):
        repo.add("a", script=SHARED.format("a"))
        repo.add("b", script=SHARED.format("b"))
        plan = plan_for(load_catalog, db, settings, "b")
        assert manager.run(plan, commit_roots=False).ok
        assert manager.run(plan_for(load_catalog, db, settings, "a")).ok

        with pytest.raises(ConflictDetected) as exc:
            manager.preflight(plan)
        assert exc.value.stage == "preflight"
        assert exc.value.reports[0].paths == ("etc/shared",)
        manager.preflight(plan, reuse_staged=False)


class TestSourceCommands:
    def test_download_verifies(self, repo, manager, load_catalog):
        repo.add("foo")
        spec = load_catalog()["foo"]
        paths = manager.download([spec])
        assert [os.path.basename(p) for p in paths["foo"]] == ["foo-1.0.tar.gz"]

    def test_download_bad_digest(self, repo, manager, load_catalog):
        repo.add("foo", sha256="e" * 64)
        with pytest.raises(ChecksumMismatch):
            manager.download([load_catalog()["foo"]])

    def test_checksums(self, repo, manager, load_catalog):
        pkg = repo.add("foo")
        spec = load_catalog()["foo"]
        digests = manager.checksums(spec)
        assert digests == {"files/foo-1.0.tar.gz": spec.sources[0].sha256}
        assert os.path.isdir(pkg)
