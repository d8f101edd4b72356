# moss/modules/fetch.py
"""
Source fetcher.

Supported locations:
 - http:// and https://   downloaded with urllib
 - file://                copied
 - plain paths            relative to the package directory, copied

Downloads land in ``<cache>/sources/<package>/<filename>`` through a
temporary ``.part`` file, so an interrupted download never looks complete.
A file already in the cache is reused unless ``force`` is set; integrity is
the Verifier's job either way.
"""

from __future__ import annotations
import os
import shutil
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Optional

from moss.modules import logger as _logger
from moss.modules.errors import FetchError
from moss.modules.recipe import PackageSpec, Source

USER_AGENT = "moss/0.1"


class Fetcher:
    def __init__(self, sources_dir: str, logger: Optional[_logger.Logger] = None,
                 timeout: float = 60.0, retries: int = 2):
        self.sources_dir = os.path.abspath(sources_dir)
        self.log = logger or _logger.Logger("fetch")
        self.timeout = timeout
        self.retries = max(1, retries)

    def cache_path(self, spec: PackageSpec, source: Source) -> str:
        return os.path.join(self.sources_dir, spec.name, source.filename)

    def fetch(self, spec: PackageSpec, source: Source, force: bool = False) -> str:
        """Bring ``source`` into the cache and return its local path."""
        dest = self.cache_path(spec, source)
        if os.path.isfile(dest) and not force:
            self.log.debug(f"{spec.name}: using cached {source.filename}")
            return dest
        os.makedirs(os.path.dirname(dest), exist_ok=True)

        location = source.location
        scheme = urllib.parse.urlsplit(location).scheme
        if scheme in ("http", "https"):
            self._download(spec, location, dest)
        elif scheme == "file":
            self._copy(spec, urllib.request.url2pathname(urllib.parse.urlsplit(location).path), dest)
        elif scheme == "":
            path = location if os.path.isabs(location) else os.path.join(spec.directory, location)
            self._copy(spec, path, dest)
        else:
            raise FetchError(f"Unsupported source scheme '{scheme}' in {source.url}",
                             package=spec.name, stage="fetch", url=source.url)
        return dest

    def _copy(self, spec: PackageSpec, path: str, dest: str):
        if not os.path.isfile(path):
            raise FetchError(f"Source file not found: {path}", package=spec.name,
                             stage="fetch", url=path)
        part = dest + ".part"
        try:
            shutil.copy2(path, part)
            os.replace(part, dest)
        except OSError as e:
            raise FetchError(f"Couldn't copy {path}: {e}", package=spec.name,
                             stage="fetch", url=path) from e
        self.log.debug(f"{spec.name}: copied {path}")

    def _download(self, spec: PackageSpec, url: str, dest: str):
        part = dest + ".part"
        request = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
        last_error = None
        for attempt in range(1, self.retries + 1):
            self.log.info(f"{spec.name}: downloading {url}")
            try:
                with urllib.request.urlopen(request, timeout=self.timeout) as resp, \
                        open(part, "wb") as out:
                    shutil.copyfileobj(resp, out)
                os.replace(part, dest)
                return
            except (urllib.error.URLError, OSError) as e:
                last_error = e
                if os.path.exists(part):
                    os.remove(part)
                if attempt < self.retries:
                    self.log.warning(f"{spec.name}: download failed ({e}), retrying")
                    time.sleep(attempt)
        raise FetchError(f"Couldn't download {url}: {last_error}", package=spec.name,
                         stage="fetch", url=url)

    def purge(self, name: Optional[str] = None) -> int:
        """Delete cached sources (one package, or all). Returns files removed."""
        target = os.path.join(self.sources_dir, name) if name else self.sources_dir
        if not os.path.isdir(target):
            return 0
        count = sum(len(files) for _, _, files in os.walk(target))
        shutil.rmtree(target)
        self.log.info(f"Purged {count} cached source file(s) from {target}")
        return count
