"""Shared fixtures: throwaway settings, a package repository builder and a database."""

import hashlib
import io
import os
import tarfile
from pathlib import Path

import pytest
import yaml

from moss.modules.catalog import Catalog
from moss.modules.config import Settings
from moss.modules.db import InstalledDatabase, InstalledPackageRecord
from moss.modules.logger import Logger
from moss.modules.recipe import PackageSpec

BUILD_SCRIPT = """#!/bin/sh -e
mkdir -p "$1/usr/share/{name}"
cp hello.txt "$1/usr/share/{name}/hello.txt"
"""


def sha256_file(path) -> str:
    with open(path, "rb") as fh:
        return hashlib.sha256(fh.read()).hexdigest()


def make_tarball(path, top: str, files: dict):
    """Write a .tar.gz whose members all live under ``top/``."""
    with tarfile.open(path, "w:gz") as tf:
        for rel, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(f"{top}/{rel}" if top else rel)
            info.size = len(data)
            info.mode = 0o644
            tf.addfile(info, io.BytesIO(data))


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        sysroot=str(tmp_path / "sysroot"),
        cache_dir=str(tmp_path / "cache"),
        search_paths=(str(tmp_path / "repo"),),
        log_dir=str(tmp_path / "log"),
        strip=False,
        log_to_file=False,
        log_to_console=False,
        color_output=False,
    )
    values.update(overrides)
    return Settings(**values)


def spec(name, version="1.0", release=1, depends=(), build_depends=(), provides=(), conflicts=()):
    """In-memory PackageSpec for graph-only tests."""
    return PackageSpec(name=name, version=version, release=release, depends=tuple(depends),
                       build_depends=tuple(build_depends), provides=tuple(provides),
                       conflicts=tuple(conflicts))


def record(name, version="1.0", release=1, **kw):
    return InstalledPackageRecord(name=name, version=version, release=release, **kw)


class RepoBuilder:
    """Writes package directories (recipe.yaml, build script, local tarball)."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def add(self, name, version="1.0", release=1, depends=(), build_depends=(), provides=(),
            conflicts=(), script=None, files=None, sources=None, sha256=None, summary=""):
        pkg = self.root / name
        pkg.mkdir(parents=True, exist_ok=True)
        if sources is None:
            tarname = f"{name}-{version}.tar.gz"
            (pkg / "files").mkdir(exist_ok=True)
            tarball = pkg / "files" / tarname
            make_tarball(tarball, f"{name}-{version}", files or {"hello.txt": f"hello from {name}\n"})
            sources = [{"url": f"files/{tarname}", "sha256": sha256 or sha256_file(tarball)}]
        recipe = {
            "name": name,
            "version": version,
            "release": release,
            "summary": summary,
            "depends": list(depends),
            "build_depends": list(build_depends),
            "provides": list(provides),
            "conflicts": list(conflicts),
            "sources": sources,
        }
        with open(pkg / "recipe.yaml", "w", encoding="utf-8") as fh:
            yaml.safe_dump(recipe, fh, sort_keys=False)
        build = pkg / "build"
        build.write_text(script if script is not None else BUILD_SCRIPT.format(name=name))
        os.chmod(build, 0o755)
        return pkg


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def quiet_log(settings):
    return Logger("test", settings)


@pytest.fixture
def repo(tmp_path):
    return RepoBuilder(tmp_path / "repo")


@pytest.fixture
def db(settings, quiet_log):
    return InstalledDatabase(settings.installed_db_dir, logger=quiet_log)


@pytest.fixture
def load_catalog(settings, quiet_log):
    def _load():
        return Catalog(settings.search_paths, logger=quiet_log).load()
    return _load
