"""Tests for package removal."""

import os

import pytest

from moss.modules.errors import PackageNotInstalled, RemovalBlocked
from moss.modules.remove import Remover
from conftest import record


def install(settings, db, rec):
    """Put ``rec``'s files in the sysroot and record it."""
    for rel in rec.dirs:
        os.makedirs(os.path.join(settings.sysroot, rel), exist_ok=True)
    for rel in rec.files:
        with open(os.path.join(settings.sysroot, rel), "w") as fh:
            fh.write(rec.name)
    db.upsert(rec)


@pytest.fixture
def remover(settings, db, quiet_log):
    return Remover(settings, db, logger=quiet_log)


class TestRemove:
    def test_removes_files_dirs_and_record(self, settings, db, remover):
        install(settings, db, record("foo", files=["usr/bin/foo", "usr/share/foo/data"],
                                     dirs=["usr", "usr/bin", "usr/share", "usr/share/foo"]))
        result = remover.remove_package("foo")

        assert sorted(result["removed"]) == ["usr/bin/foo", "usr/share/foo/data"]
        assert result["version"] == "1.0-1"
        assert not os.path.exists(os.path.join(settings.sysroot, "usr"))
        assert db.get("foo") is None

    def test_shared_directories_survive(self, settings, db, remover):
        install(settings, db, record("a", files=["usr/bin/a"], dirs=["usr", "usr/bin"]))
        install(settings, db, record("b", files=["usr/bin/b"], dirs=["usr", "usr/bin"]))
        remover.remove_package("a")
        assert os.path.isfile(os.path.join(settings.sysroot, "usr/bin/b"))
        assert not os.path.exists(os.path.join(settings.sysroot, "usr/bin/a"))

    def test_missing_files_are_tolerated(self, settings, db, remover):
        """A file deleted behind our back doesn't stop the removal."""
        install(settings, db, record("foo", files=["etc/foo.conf", "etc/other"], dirs=["etc"]))
        os.remove(os.path.join(settings.sysroot, "etc/foo.conf"))

        result = remover.remove_package("foo")

        assert result["missing"] == ["etc/foo.conf"]
        assert result["removed"] == ["etc/other"]
        assert db.get("foo") is None

    def test_files_taken_over_are_kept(self, settings, db, remover):
        install(settings, db, record("old", files=["etc/shared"], dirs=["etc"]))
        db.upsert(record("new", files=["etc/shared"], dirs=["etc"]))

        result = remover.remove_package("old")

        assert result["kept"] == ["etc/shared"]
        assert os.path.isfile(os.path.join(settings.sysroot, "etc/shared"))

    def test_escaping_paths_are_refused(self, settings, db, remover, tmp_path):
        outside = tmp_path / "outside"
        outside.write_text("precious")
        db.upsert(record("evil", files=["../outside"]))

        result = remover.remove_package("evil")

        assert result["kept"] == ["../outside"]
        assert outside.read_text() == "precious"

    def test_dry_run_changes_nothing(self, settings, db, quiet_log):
        install(settings, db, record("foo", files=["usr/bin/foo"], dirs=["usr", "usr/bin"]))
        result = Remover(settings, db, dry_run=True, logger=quiet_log).remove_package("foo")
        assert result["removed"] == ["usr/bin/foo"]
        assert os.path.isfile(os.path.join(settings.sysroot, "usr/bin/foo"))
        assert db.get("foo") is not None


class TestRefusals:
    def test_not_installed(self, remover):
        with pytest.raises(PackageNotInstalled) as exc:
            remover.remove_package("ghost")
        assert exc.value.exit_code == 32

    def test_virtual_name_points_at_provider(self, db, remover):
        db.upsert(record("busybox", provides=["sh"]))
        with pytest.raises(PackageNotInstalled, match="provided by busybox"):
            remover.remove_package("sh")

    def test_blocked_by_dependents(self, settings, db, remover):
        install(settings, db, record("lib", files=["usr/lib/libx"], dirs=["usr", "usr/lib"]))
        db.upsert(record("app", depends=["lib"]))

        with pytest.raises(RemovalBlocked) as exc:
            remover.remove_package("lib")

        assert exc.value.context["dependents"] == ["app"]
        assert os.path.isfile(os.path.join(settings.sysroot, "usr/lib/libx"))
        assert db.get("lib") is not None

    def test_blocked_through_provides(self, db, remover):
        db.upsert(record("busybox", provides=["sh"]))
        db.upsert(record("script", depends=["sh"]))
        with pytest.raises(RemovalBlocked):
            remover.remove_package("busybox")

    def test_force(self, settings, db, remover):
        install(settings, db, record("lib", files=["usr/lib/libx"], dirs=["usr", "usr/lib"]))
        db.upsert(record("app", depends=["lib"]))
        remover.remove_package("lib", force=True)
        assert db.get("lib") is None
        assert db.get("app") is not None
