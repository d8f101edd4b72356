"""Tests for the installed-package database."""

import json
import os
import threading

import pytest

from moss.modules.db import InstalledDatabase, InstalledPackageRecord
from moss.modules.errors import DatabaseCorruption
from conftest import record, spec


class TestRecords:
    def test_upsert_and_get(self, db):
        rec = record("foo", files=["usr/bin/foo"], dirs=["usr", "usr/bin"], depends=["libc"])
        assert db.upsert(rec) is None

        got = db.get("foo")
        assert got == rec
        assert "foo" in db
        assert db.names() == ["foo"]

    def test_upsert_returns_previous(self, db):
        db.upsert(record("foo", version="1.0"))
        previous = db.upsert(record("foo", version="2.0"))
        assert previous.version == "1.0"
        assert db.get("foo").version == "2.0"

    def test_document_format(self, db):
        db.upsert(record("foo", provides=["foo-api"]))
        with open(os.path.join(db.db_dir, "foo.json")) as fh:
            data = json.load(fh)
        assert data["schema"] == 1
        assert data["name"] == "foo"
        assert data["provides"] == ["foo-api"]
        assert not os.path.exists(os.path.join(db.db_dir, "foo.json.tmp"))

    def test_remove_returns_record(self, db):
        db.upsert(record("foo", files=["a"]))
        removed = db.remove("foo")
        assert removed.files == ["a"]
        assert db.get("foo") is None
        assert db.remove("foo") is None

    def test_missing_db_dir_is_empty(self, tmp_path):
        db = InstalledDatabase(str(tmp_path / "none"))
        assert db.list_all() == []
        assert db.get("x") is None


class TestQueries:
    def test_is_satisfied(self, db):
        db.upsert(record("foo", version="1.0", release=2))
        assert db.is_satisfied(spec("foo", version="1.0", release=2))
        assert not db.is_satisfied(spec("foo", version="1.0", release=3))
        assert not db.is_satisfied(spec("bar"))

    def test_providers_and_reverse_dependencies(self, db):
        db.upsert(record("busybox", provides=["sh"]))
        db.upsert(record("script", depends=["sh"]))
        db.upsert(record("tool", depends=["busybox"]))
        db.upsert(record("other"))

        assert db.providers_of("sh") == ["busybox"]
        assert db.reverse_dependencies("busybox") == ["script", "tool"]
        assert db.reverse_dependencies("other") == []

    def test_owners(self, db):
        db.upsert(record("a", files=["usr/bin/a"]))
        db.upsert(record("b", files=["usr/bin/b"]))
        assert db.owners() == {"usr/bin/a": "a", "usr/bin/b": "b"}


class TestCorruption:
    def _corrupt(self, db, name, text):
        os.makedirs(db.db_dir, exist_ok=True)
        with open(os.path.join(db.db_dir, f"{name}.json"), "w") as fh:
            fh.write(text)

    def test_unparseable_record(self, db):
        self._corrupt(db, "broken", "{not json")
        with pytest.raises(DatabaseCorruption) as exc:
            db.get("broken")
        assert exc.value.exit_code == 31

    def test_wrong_shape(self, db):
        self._corrupt(db, "broken", json.dumps({"name": "broken", "version": "1", "files": "x"}))
        with pytest.raises(DatabaseCorruption, match="files"):
            db.get("broken")

    def test_name_mismatch(self, db):
        self._corrupt(db, "one", json.dumps({"name": "two", "version": "1"}))
        with pytest.raises(DatabaseCorruption, match="names package"):
            db.get("one")

    def test_scan_separates_corrupt(self, db):
        db.upsert(record("good"))
        self._corrupt(db, "bad", "[]")
        records, corrupt = db.scan()
        assert [r.name for r in records] == ["good"]
        assert corrupt == ["bad"]
        with pytest.raises(DatabaseCorruption):
            db.list_all()

    def test_upsert_replaces_corrupt(self, db):
        self._corrupt(db, "foo", "garbage")
        assert db.upsert(record("foo")) is None
        assert db.get("foo").name == "foo"


class TestLocking:
    def test_nested_transaction(self, db):
        """upsert inside an open transaction doesn't deadlock."""
        with db.transaction():
            db.upsert(record("foo"))
            with db.transaction():
                db.remove("foo")
        assert db.get("foo") is None

    def test_concurrent_upserts(self, db):
        def worker(i):
            db.upsert(record(f"pkg{i}", files=[f"f{i}"]))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(db.list_all()) == 8

    def test_from_dict_defaults(self):
        rec = InstalledPackageRecord.from_dict({"name": "x", "version": "1"})
        assert rec.release == 1
        assert rec.files == []
        assert rec.explicit is True
