"""Path allow-list guard for executor filesystem and command access."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable

from filebridge.errors import AccessDeniedError


def canonicalize(path: str | os.PathLike[str], base_dir: Path | None = None) -> Path:
    """Expand ``~`` and resolve ``.``/``..`` and symlinks without requiring existence."""
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = (base_dir or Path.cwd()) / candidate
    return candidate.resolve(strict=False)


class AccessGuard:
    """Decides whether a path lies under one of the allowed prefixes.

    An empty allow-list permits every path. Callers that build a guard from
    configuration are expected to have required an explicit opt-in for that.
    """

    def __init__(self, allowed_paths: Iterable[str | os.PathLike[str]] = (), base_dir: Path | None = None):
        self.base_dir = base_dir or Path.cwd()
        prefixes: list[Path] = []
        for raw in allowed_paths:
            prefix = canonicalize(raw, self.base_dir)
            if prefix not in prefixes:
                prefixes.append(prefix)
        self._allowed: tuple[Path, ...] = tuple(prefixes)

    @property
    def allowed_paths(self) -> tuple[Path, ...]:
        return self._allowed

    @property
    def unrestricted(self) -> bool:
        return not self._allowed

    def is_allowed(self, path: str | os.PathLike[str]) -> bool:
        if not self._allowed:
            return True
        resolved = canonicalize(path, self.base_dir)
        return self._is_under_prefix(resolved)

    def check(self, path: str | os.PathLike[str]) -> Path:
        """Return canonical path, raising AccessDeniedError when outside the allow-list."""
        resolved = canonicalize(path, self.base_dir)
        if self._allowed and not self._is_under_prefix(resolved):
            raise AccessDeniedError(str(path))
        return resolved

    def _is_under_prefix(self, resolved: Path) -> bool:
        for prefix in self._allowed:
            if resolved == prefix or resolved.is_relative_to(prefix):
                return True
        return False
