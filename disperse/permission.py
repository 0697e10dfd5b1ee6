"""Path permission gate for Disperse.

Reading from and writing to the local disk or to UNC shares are four separate
capabilities. Each one is off until enabled, and once enabled it can be scoped
to a list of glob patterns. Every component asks the gate before touching a
path, and a refusal raises PermissionDeniedError so policy rejections are never
confused with filesystem failures.

Key classes:
- PermissionGate: Holds the four capabilities and evaluates paths.
- PermissionDeniedError: Raised when a path is refused.
"""

from __future__ import annotations

import os
import posixpath
import sys
from collections.abc import Iterable, Mapping
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any

CASE_INSENSITIVE = os.name == "nt" or sys.platform == "darwin"


class PermissionDeniedError(Exception):
    """Error raised when the permission gate refuses a path.

    Attributes:
        path: The refused path.
        capability: Name of the missing capability (e.g. "disk_write").
    """

    def __init__(self, path: str | Path, capability: str):
        self.path = str(path)
        self.capability = capability
        option = "--" + capability.replace("_", "-")
        super().__init__(f"Permission denied ({capability}): {self.path} [{option}]")


def normalize_path(value: str | Path) -> str:
    """Return a path in forward-slash form, lowercased on case-insensitive hosts.

    ``.`` and ``..`` segments are collapsed, so ``/public/../private/x`` is
    matched as ``/private/x``. A leading ``//`` (UNC) is kept.
    """
    result = str(value).replace("\\", "/")
    if result:
        result = posixpath.normpath(result)
    if CASE_INSENSITIVE:
        result = result.lower()
    return result


def is_unc(value: str | Path) -> bool:
    """Check whether a path points at a UNC share (``\\\\server\\share``)."""
    text = str(value)
    return text.startswith("\\\\") or (text.startswith("//") and not text.startswith("///"))


def _is_true(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1")
    if isinstance(value, (int, float)):
        return value == 1
    return False


class _Capability:
    __slots__ = ("enabled", "patterns")

    def __init__(self):
        self.enabled = False
        self.patterns: list[str] | None = None

    def enable(self, patterns: str | Iterable[str] | None) -> None:
        self.enabled = True
        if patterns is None:
            self.patterns = None
        else:
            if isinstance(patterns, str):
                patterns = [patterns]
            self.patterns = [normalize_path(item) for item in patterns if item]

    def allows(self, path: str | Path) -> bool:
        if not self.enabled:
            return False
        if self.patterns is None:
            return True
        target = normalize_path(path)
        return any(fnmatchcase(target, pattern) for pattern in self.patterns)


class PermissionGate:
    """Capability store restricting which paths may be read or written.

    A capability is granted only if it was enabled. With no pattern list every
    path is allowed; with a pattern list the path must match at least one
    pattern.
    """

    def __init__(self):
        self._disk_read = _Capability()
        self._disk_write = _Capability()
        self._unc_read = _Capability()
        self._unc_write = _Capability()

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> PermissionGate:
        """Build a gate from the ``disk_read``/``disk_write``/``unc_read``/``unc_write`` settings.

        Each value may be a boolean (or ``"true"``/``1``), a glob pattern, or a
        list of glob patterns.
        """
        gate = cls()
        setters = {
            "disk_read": gate.set_disk_read,
            "disk_write": gate.set_disk_write,
            "unc_read": gate.set_unc_read,
            "unc_write": gate.set_unc_write,
        }
        for key, setter in setters.items():
            value = settings.get(key)
            if isinstance(value, (list, tuple)):
                setter(value)
            elif _is_true(value):
                setter()
            elif isinstance(value, str) and value.strip() and value.strip().lower() != "false":
                setter(value.strip())
        return gate

    def set_disk_read(self, patterns: str | Iterable[str] | None = None) -> None:
        self._disk_read.enable(patterns)

    def set_disk_write(self, patterns: str | Iterable[str] | None = None) -> None:
        self._disk_write.enable(patterns)

    def set_unc_read(self, patterns: str | Iterable[str] | None = None) -> None:
        self._unc_read.enable(patterns)

    def set_unc_write(self, patterns: str | Iterable[str] | None = None) -> None:
        self._unc_write.enable(patterns)

    def has_disk_read(self, path: str | Path) -> bool:
        return self._disk_read.allows(path)

    def has_disk_write(self, path: str | Path) -> bool:
        return self._disk_write.allows(path)

    def has_unc_read(self, path: str | Path) -> bool:
        return self._unc_read.allows(path)

    def has_unc_write(self, path: str | Path) -> bool:
        return self._unc_write.allows(path)

    def can_read(self, path: str | Path) -> bool:
        """Check read access, choosing the UNC or disk capability from the path form."""
        return self.has_unc_read(path) if is_unc(path) else self.has_disk_read(path)

    def can_write(self, path: str | Path) -> bool:
        """Check write access, choosing the UNC or disk capability from the path form."""
        return self.has_unc_write(path) if is_unc(path) else self.has_disk_write(path)

    def check_read(self, path: str | Path) -> None:
        """Raise PermissionDeniedError unless ``path`` may be read."""
        if not self.can_read(path):
            raise PermissionDeniedError(path, "unc_read" if is_unc(path) else "disk_read")

    def check_write(self, path: str | Path) -> None:
        """Raise PermissionDeniedError unless ``path`` may be written."""
        if not self.can_write(path):
            raise PermissionDeniedError(path, "unc_write" if is_unc(path) else "disk_write")
