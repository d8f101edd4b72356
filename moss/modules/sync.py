# moss/modules/sync.py
"""
sync.py - bring the package repositories up to date with git.

 - every search path that is a git work tree is pulled from ``origin``,
   or from its first remote when none is called that
 - ``remotes`` in the config (``<path>=<url>``) clones missing repositories
 - search paths that aren't git repositories are left alone
 - a ``.last_sync`` timestamp is written into each synced repository
"""

import os
from datetime import datetime, timezone
from typing import Dict, Optional

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from moss.modules import logger as _logger
from moss.modules.errors import FetchError


class RepoSync:
    def __init__(self, settings, logger: Optional[_logger.Logger] = None):
        self.search_paths = list(settings.search_paths)
        self.remotes: Dict[str, str] = {os.path.abspath(os.path.expanduser(p)): url
                                        for p, url in settings.remotes.items()}
        self.log = logger or _logger.Logger("sync", settings)

    def targets(self):
        """Paths to sync: search paths first, then remotes not already listed."""
        out = list(self.search_paths)
        for path in self.remotes:
            if path not in out:
                self.log.warning(f"Remote {path} is not in the search path")
                out.append(path)
        return out

    def sync_one(self, path: str) -> str:
        url = self.remotes.get(path)
        if not os.path.exists(path):
            if not url:
                self.log.warning(f"{path} does not exist and has no remote, skipping")
                return "missing"
            self.log.info(f"Cloning {url} into {path}")
            os.makedirs(os.path.dirname(path), exist_ok=True)
            Repo.clone_from(url, path)
            self._stamp(path)
            return "cloned"

        try:
            repo = Repo(path)
        except (InvalidGitRepositoryError, NoSuchPathError):
            self.log.debug(f"{path} is not a git repository, skipping")
            return "skipped"

        if not repo.remotes:
            self.log.debug(f"{path} has no remotes, skipping")
            return "skipped"
        remote = repo.remotes["origin"] if "origin" in repo.remotes else repo.remotes[0]
        self.log.info(f"Updating {path} from {remote.name}")
        before = repo.head.commit.hexsha if repo.head.is_valid() else None
        remote.pull()
        self._stamp(path)
        after = repo.head.commit.hexsha
        return "updated" if before != after else "up-to-date"

    def sync(self) -> Dict[str, str]:
        results, failed = {}, {}
        for path in self.targets():
            try:
                results[path] = self.sync_one(path)
            except (GitCommandError, OSError) as e:
                self.log.error(f"Couldn't sync {path}: {e}")
                failed[path] = str(e)
                results[path] = "failed"
        if failed:
            raise FetchError(f"Couldn't sync: {', '.join(failed)}", stage="sync", failed=failed)
        return results

    @staticmethod
    def _stamp(path: str):
        with open(os.path.join(path, ".last_sync"), "w", encoding="utf-8") as f:
            f.write(datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"))
