# moss/modules/scratch.py
import os
import shutil
import tempfile

from moss.modules import logger as _logger
from moss.modules.errors import InstallIOError


class ScratchDir:
    """
    Per-build working area:
      <root>/src     sources extracted here, build script cwd
      <root>/dest    DESTDIR, what the build installs
    Released (deleted) when the build finishes, succeeded or not.
    """

    def __init__(self, root, logger=None):
        self.root = root
        self.src = os.path.join(root, "src")
        self.dest = os.path.join(root, "dest")
        self.log = logger or _logger.Logger("scratch")

    def release(self):
        if os.path.exists(self.root):
            self.log.debug(f"Removing scratch {self.root}")
            shutil.rmtree(self.root, ignore_errors=True)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.release()
        return False


class ScratchAllocator:
    """Hands out scratch directories that are unique even across concurrent builds."""

    def __init__(self, base_dir, logger=None):
        self.base_dir = os.path.abspath(base_dir)
        self.log = logger or _logger.Logger("scratch")

    def allocate(self, package_name):
        try:
            os.makedirs(self.base_dir, exist_ok=True)
            root = tempfile.mkdtemp(prefix=f"{package_name}-", dir=self.base_dir)
            scratch = ScratchDir(root, logger=self.log)
            os.makedirs(scratch.src)
            os.makedirs(scratch.dest)
        except OSError as e:
            raise InstallIOError(f"Couldn't create scratch directory under {self.base_dir}: {e}",
                                 package=package_name, stage="extract") from e
        self.log.debug(f"Scratch for {package_name}: {root}")
        return scratch

    def active(self):
        """Scratch directories currently present (leftovers after a crash included)."""
        if not os.path.isdir(self.base_dir):
            return []
        return sorted(os.path.join(self.base_dir, d) for d in os.listdir(self.base_dir))

    def purge(self):
        for path in self.active():
            shutil.rmtree(path, ignore_errors=True)
