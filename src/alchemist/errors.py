"""Errors raised by session operations.

Every error here is scoped to the single operation that produced it and
is recoverable by the caller.
"""

from __future__ import annotations

from pathlib import Path


class AlchemistError(Exception):
    """Base class for all alchemist errors."""


class SpawnError(AlchemistError):
    """The interactive process could not be started."""

    def __init__(self, command: list[str], reason: str) -> None:
        self.command = list(command)
        self.reason = reason
        program = command[0] if command else "<empty>"
        super().__init__(f"Failed to start {program!r}: {reason}")


class BrokenPipe(AlchemistError):
    """A write reached a session whose process has already exited."""

    def __init__(self, key: str, detail: str = "") -> None:
        self.key = key
        self.detail = detail
        msg = f"Session {key!r} is no longer running"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class NoRegionSelected(AlchemistError):
    """A region send was requested without a usable span."""

    def __init__(self, detail: str = "no region selected") -> None:
        super().__init__(detail)


class NoProjectFound(AlchemistError):
    """No mix project encloses the given directory."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        super().__init__(
            f"No mix.exs found in {self.directory} or any parent directory. "
            "Run outside a project or pass --no-project."
        )
