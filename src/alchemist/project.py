"""Mix project discovery."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from alchemist.errors import NoProjectFound

logger = logging.getLogger(__name__)

PROJECT_MARKER = "mix.exs"


@dataclass(frozen=True)
class Project:
    """A discovered mix project."""

    root: Path
    name: str

    @classmethod
    def from_root(cls, root: str | Path) -> Project:
        root = Path(root).resolve()
        return cls(root=root, name=root.name)


def find_project(directory: str | Path | None = None) -> Project | None:
    """Walk upward from ``directory`` looking for ``mix.exs``.

    Returns None when no enclosing directory holds the marker.
    """
    start = Path(directory or os.getcwd()).resolve()
    if start.is_file():
        start = start.parent
    for candidate in (start, *start.parents):
        if (candidate / PROJECT_MARKER).is_file():
            logger.debug("Found mix project at %s", candidate)
            return Project.from_root(candidate)
    return None


def require_project(directory: str | Path | None = None) -> Project:
    """Like find_project() but raises NoProjectFound instead of returning None."""
    project = find_project(directory)
    if project is None:
        raise NoProjectFound(Path(directory or os.getcwd()).resolve())
    return project
