# moss/modules/verify.py

import hashlib
import os

from moss.modules import logger as _logger
from moss.modules.errors import ChecksumMismatch

MISSING = "<missing>"


class Verifier:
    """
    Checks fetched sources against the sha256 digests declared in the recipe.
    A file that fails verification is deleted so it can never be extracted.
    """

    def __init__(self, logger=None):
        self.log = logger or _logger.Logger("verify")

    @staticmethod
    def sha256sum(file_path):
        sha256 = hashlib.sha256()
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                sha256.update(chunk)
        return sha256.hexdigest()

    def verify_file(self, file_path, expected_hash):
        """True/False, no side effects."""
        if not expected_hash or not os.path.isfile(file_path):
            return False
        return self.sha256sum(file_path) == expected_hash.lower()

    def verify(self, file_path, expected_hash, url=None, package=None):
        """Raise ChecksumMismatch (and discard ``file_path``) unless the digest matches."""
        actual = self.sha256sum(file_path) if os.path.isfile(file_path) else MISSING
        if expected_hash and actual == expected_hash.lower():
            self.log.debug(f"{os.path.basename(file_path)}: sha256 ok")
            return actual
        try:
            os.remove(file_path)
        except FileNotFoundError:
            pass
        raise ChecksumMismatch(url or file_path, expected_hash or MISSING, actual, package=package)
