"""Launch variants for IEx sessions and one-shot toolchain commands.

Commands are always argv lists handed straight to the OS; nothing here
goes through a shell, so file paths with spaces or quotes are safe.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path

from alchemist.config import AlchemistConfig
from alchemist.project import Project

DEFAULT_SESSION_KEY = "__default__"


class LaunchVariant(enum.StrEnum):
    PLAIN = "plain"
    PROJECT = "project"
    COMPILE_FILE = "compile_file"


@dataclass(frozen=True)
class LaunchSpec:
    """Everything needed to start one process."""

    variant: LaunchVariant
    argv: tuple[str, ...]
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    use_pty: bool = False

    def __post_init__(self) -> None:
        if not self.argv or not self.argv[0]:
            raise ValueError("launch command must include a program name")
        # argv may arrive as a list
        object.__setattr__(self, "argv", tuple(self.argv))

    @property
    def program(self) -> str:
        return self.argv[0]

    def describe(self) -> str:
        return " ".join(self.argv)


def plain_iex(config: AlchemistConfig, cwd: str | None = None) -> LaunchSpec:
    """IEx outside of any project."""
    return LaunchSpec(
        variant=LaunchVariant.PLAIN,
        argv=(config.iex.program, *config.iex.extra_args),
        cwd=cwd,
        env=dict(config.iex.env),
        use_pty=config.iex.use_pty,
    )


def project_iex(config: AlchemistConfig, project: Project) -> LaunchSpec:
    """IEx running inside a mix project (``iex -S mix`` by default)."""
    return LaunchSpec(
        variant=LaunchVariant.PROJECT,
        argv=(config.iex.program, *config.iex.extra_args, *config.iex.project_args),
        cwd=str(project.root),
        env=dict(config.iex.env),
        use_pty=config.iex.use_pty,
    )


def compile_file(config: AlchemistConfig, path: str | Path) -> LaunchSpec:
    """One-shot compilation of a single source file with elixirc."""
    path = Path(path).resolve()
    return LaunchSpec(
        variant=LaunchVariant.COMPILE_FILE,
        argv=(config.elixir.compiler, str(path)),
        cwd=str(path.parent),
    )


def session_key_for(project: Project | None) -> str:
    """Session key for a project, or the shared default session."""
    return project.name if project is not None else DEFAULT_SESSION_KEY
