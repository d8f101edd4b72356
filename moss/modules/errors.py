# moss/modules/errors.py
"""
Failure taxonomy shared by every moss module.

Each error carries a structured ``context`` dict (package, stage, paths, ...)
so non-interactive callers can branch on it, and a class-level ``exit_code``
that the CLI returns to the shell:

  2        configuration
  10-14    resolution (nothing was built, nothing changed)
  20-23    pipeline (the failing package and everything after it stopped)
  30-32    install / database
  130      cancelled by the operator
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence


class MossError(Exception):
    exit_code = 1

    def __init__(self, message: str, *, package: Optional[str] = None,
                 stage: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.package = package
        self.stage = stage
        self.context: Dict[str, Any] = dict(context)
        if package is not None:
            self.context.setdefault("package", package)
        if stage is not None:
            self.context.setdefault("stage", stage)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message,
                "exit_code": self.exit_code, **self.context}


class ConfigError(MossError):
    exit_code = 2


class ManifestError(MossError):
    exit_code = 10


class UnresolvedDependency(MossError):
    exit_code = 11

    def __init__(self, name: str, required_by: Optional[str] = None):
        if required_by:
            msg = f"Couldn't resolve package {name} (required by {required_by})"
        else:
            msg = f"Couldn't resolve package {name}"
        super().__init__(msg, name=name, required_by=required_by)
        self.name = name
        self.required_by = required_by


class CircularDependency(MossError):
    exit_code = 12

    def __init__(self, path: Sequence[str]):
        self.path: List[str] = list(path)
        super().__init__(f"Circular dependency: {' -> '.join(self.path)}", path=self.path)


class AmbiguousProvider(MossError):
    exit_code = 13

    def __init__(self, virtual: str, choices: Sequence[str], required_by: Optional[str] = None):
        self.virtual = virtual
        self.choices: List[str] = list(choices)
        super().__init__(
            f"'{virtual}' is provided by several packages: {', '.join(self.choices)}",
            virtual=virtual, choices=self.choices, required_by=required_by,
        )


class ConflictDetected(MossError):
    exit_code = 14

    def __init__(self, reports: Sequence[Any], package: Optional[str] = None,
                 stage: Optional[str] = None):
        self.reports = list(reports)
        lines = "; ".join(str(r) for r in self.reports)
        super().__init__(f"Package conflicts found: {lines}", package=package, stage=stage,
                         conflicts=[r.to_dict() for r in self.reports])


class FetchError(MossError):
    exit_code = 20


class ChecksumMismatch(MossError):
    exit_code = 21

    def __init__(self, url: str, expected: str, actual: str, package: Optional[str] = None):
        self.url = url
        self.expected = expected
        self.actual = actual
        super().__init__(f"Checksum mismatch for {url}: expected {expected}, got {actual}",
                         package=package, stage="verify", url=url,
                         expected=expected, actual=actual)


class BuildScriptFailed(MossError):
    exit_code = 22

    def __init__(self, package: str, returncode: int, log_path: str):
        self.returncode = returncode
        self.log_path = log_path
        super().__init__(f"Couldn't build package {package} (exit code {returncode}, log: {log_path})",
                         package=package, stage="build", returncode=returncode, log=log_path)


class ExtractError(MossError):
    exit_code = 23


class InstallIOError(MossError):
    exit_code = 30


class DatabaseCorruption(MossError):
    exit_code = 31


class PackageNotInstalled(MossError):
    exit_code = 32


class RemovalBlocked(MossError):
    exit_code = 32


class Cancelled(MossError):
    exit_code = 130
