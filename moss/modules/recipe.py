# moss/modules/recipe.py
"""
Recipe manager - load, validate, create and checksum ``recipe.yaml`` files.

A package lives in a directory named after it::

    <name>/
    |--- recipe.yaml
    `--- build        (executable, run by the build pipeline)

``load`` turns a package directory into an immutable ``PackageSpec``.
"""

from __future__ import annotations
import hashlib
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml

from moss.modules import logger as _logger
from moss.modules.errors import ManifestError

RECIPE_FILE = "recipe.yaml"
DEFAULT_SCRIPT = "build"
NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9+._-]*$")
SHA256_RE = re.compile(r"^[0-9a-f]{64}$")

RECIPE_TEMPLATE = {
    "name": "",
    "version": "",
    "release": 1,
    "summary": "",
    "maintainer": "",
    "depends": [],
    "build_depends": [],
    "provides": [],
    "conflicts": [],
    "sources": [],
    "recipe": DEFAULT_SCRIPT,
}

BUILD_TEMPLATE = b"#!/bin/sh -e\n"


@dataclass(frozen=True)
class Source:
    url: str
    sha256: str = ""

    @property
    def verbatim(self) -> bool:
        """``tar+`` sources are copied as-is instead of being extracted."""
        return self.url.startswith("tar+")

    @property
    def location(self) -> str:
        return self.url[4:] if self.verbatim else self.url

    @property
    def filename(self) -> str:
        return self.location.rstrip("/").split("/")[-1].split("?")[0]


@dataclass(frozen=True)
class PackageSpec:
    name: str
    version: str
    release: int = 1
    depends: Tuple[str, ...] = ()
    build_depends: Tuple[str, ...] = ()
    provides: Tuple[str, ...] = ()
    conflicts: Tuple[str, ...] = ()
    sources: Tuple[Source, ...] = ()
    recipe: str = ""
    directory: str = ""
    manifest_checksum: str = ""
    summary: str = ""
    maintainer: str = ""

    @property
    def full_version(self) -> str:
        return f"{self.version}-{self.release}"

    @property
    def identity(self) -> Tuple[str, ...]:
        """Every name this package answers to."""
        return (self.name,) + tuple(p for p in self.provides if p != self.name)

    def __str__(self):
        return f"{self.name}@{self.full_version}"


class RecipeManager:
    REQUIRED_FIELDS = ["name", "version"]
    LIST_FIELDS = ["depends", "build_depends", "provides", "conflicts", "sources"]

    def __init__(self, logger: Optional[_logger.Logger] = None):
        self.log = logger or _logger.Logger("recipe")

    # -------------------------
    # I/O
    # -------------------------
    @staticmethod
    def recipe_path(path: str) -> str:
        path = os.path.abspath(path)
        if os.path.isdir(path):
            return os.path.join(path, RECIPE_FILE)
        return path

    def read(self, path: str) -> Dict[str, Any]:
        """Load the raw recipe mapping from a package directory or recipe file."""
        candidate = self.recipe_path(path)
        if not os.path.exists(candidate):
            raise ManifestError(f"Recipe file not found: {candidate}", path=candidate)
        try:
            with open(candidate, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ManifestError(f"Couldn't read {candidate}: {e}", path=candidate) from e
        if not isinstance(data, dict):
            raise ManifestError(f"{candidate}: top level must be a mapping", path=candidate)
        return data

    def save(self, recipe: Dict[str, Any], dest_dir: str) -> str:
        dest_dir = os.path.abspath(dest_dir)
        os.makedirs(dest_dir, exist_ok=True)
        dest_file = os.path.join(dest_dir, RECIPE_FILE)
        with open(dest_file, "w", encoding="utf-8") as f:
            yaml.safe_dump(recipe, f, sort_keys=False, allow_unicode=True)
        self.log.debug(f"Recipe saved to {dest_file}")
        return dest_file

    def load(self, path: str) -> PackageSpec:
        """Parse and validate a package directory into a PackageSpec."""
        directory = os.path.dirname(self.recipe_path(path))
        data = self.read(path)
        self.validate(data, where=directory)

        script = os.path.join(directory, str(data.get("recipe") or DEFAULT_SCRIPT))
        if not os.path.isfile(script):
            raise ManifestError(f"Build recipe not found: {script}", path=script,
                                package=str(data["name"]))

        return PackageSpec(
            name=str(data["name"]),
            version=str(data["version"]),
            release=int(data.get("release", 1)),
            depends=self._names(data, "depends"),
            build_depends=self._names(data, "build_depends"),
            provides=self._names(data, "provides"),
            conflicts=self._names(data, "conflicts"),
            sources=tuple(self._source(s) for s in data.get("sources") or []),
            recipe=script,
            directory=directory,
            manifest_checksum=self.compute_fingerprint(directory, script),
            summary=str(data.get("summary") or ""),
            maintainer=str(data.get("maintainer") or ""),
        )

    # -------------------------
    # Validation
    # -------------------------
    def validate(self, recipe: Dict[str, Any], where: str = "") -> bool:
        """Check required fields and shapes; raise ManifestError on the first problem."""
        missing = [f for f in self.REQUIRED_FIELDS if f not in recipe or recipe[f] in (None, "")]
        if missing:
            raise ManifestError(f"{where}: missing required fields: {missing}", path=where)

        name = str(recipe["name"])
        if not NAME_RE.match(name):
            raise ManifestError(f"{where}: invalid package name '{name}'", path=where)

        if where and os.path.basename(where) != name:
            raise ManifestError(f"{where}: directory name does not match package name '{name}'",
                                path=where)

        if not isinstance(recipe["version"], (str, int, float)):
            raise ManifestError(f"{where}: 'version' must be a string or number", path=where)

        try:
            if int(recipe.get("release", 1)) < 0:
                raise ValueError
        except (TypeError, ValueError):
            raise ManifestError(f"{where}: 'release' must be a non-negative integer", path=where)

        for key in self.LIST_FIELDS:
            if key in recipe and recipe[key] is not None and not isinstance(recipe[key], list):
                raise ManifestError(f"{where}: '{key}' must be a list", path=where)

        for src in recipe.get("sources") or []:
            if isinstance(src, str):
                continue
            if not isinstance(src, dict) or not src.get("url"):
                raise ManifestError(f"{where}: each source needs a 'url'", path=where)
            digest = str(src.get("sha256") or "")
            if digest and not SHA256_RE.match(digest):
                raise ManifestError(f"{where}: malformed sha256 for {src['url']}", path=where)
        return True

    @staticmethod
    def _names(data: Dict[str, Any], key: str) -> Tuple[str, ...]:
        seen: List[str] = []
        for item in data.get(key) or []:
            item = str(item).strip()
            if item and item not in seen:
                seen.append(item)
        return tuple(seen)

    @staticmethod
    def _source(obj: Any) -> Source:
        if isinstance(obj, str):
            return Source(url=obj)
        return Source(url=str(obj["url"]), sha256=str(obj.get("sha256") or "").lower())

    # -------------------------
    # Template / checksums
    # -------------------------
    def create(self, dest_dir: str, name: str) -> str:
        """
        Create an empty package template::

            <name>/recipe.yaml
            <name>/build        (mode 0755)
        """
        pkg_dir = os.path.join(os.path.abspath(dest_dir), name)
        if os.path.exists(pkg_dir):
            raise ManifestError(f"Couldn't create {pkg_dir}: already exists", path=pkg_dir)
        if not NAME_RE.match(name):
            raise ManifestError(f"Invalid package name '{name}'")
        os.makedirs(pkg_dir)
        recipe = dict(RECIPE_TEMPLATE, name=name)
        self.save(recipe, pkg_dir)

        script = os.path.join(pkg_dir, DEFAULT_SCRIPT)
        fd = os.open(script, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o755)
        with os.fdopen(fd, "wb") as f:
            f.write(BUILD_TEMPLATE)
        os.chmod(script, 0o755)
        self.log.info(f"Created new package {name}")
        return pkg_dir

    def write_checksums(self, path: str, digests: Dict[str, str]) -> str:
        """Store sha256 digests (keyed by source url) back into recipe.yaml."""
        data = self.read(path)
        sources = []
        for src in data.get("sources") or []:
            entry = {"url": src} if isinstance(src, str) else dict(src)
            if entry["url"] in digests:
                entry["sha256"] = digests[entry["url"]]
            sources.append(entry)
        data["sources"] = sources
        return self.save(data, os.path.dirname(self.recipe_path(path)))

    @staticmethod
    def compute_fingerprint(directory: str, script: str) -> str:
        """sha256 over recipe.yaml and the build script, identifying this exact recipe."""
        m = hashlib.sha256()
        for path in (os.path.join(directory, RECIPE_FILE), script):
            m.update(os.path.basename(path).encode("utf-8") + b"\0")
            with open(path, "rb") as fh:
                for chunk in iter(lambda: fh.read(8192), b""):
                    m.update(chunk)
        return m.hexdigest()
