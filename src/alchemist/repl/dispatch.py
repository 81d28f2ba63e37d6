"""Input normalization — turn caller text into well-formed REPL input."""

from __future__ import annotations

import enum
import re

from alchemist.errors import NoRegionSelected

_MODULE_ALIAS_RE = re.compile(r"^[A-Z][A-Za-z0-9_]*(?:\.[A-Z][A-Za-z0-9_]*)*$")


class SendMode(enum.StrEnum):
    """How submitted text is shaped before it reaches the process."""

    LINE = "line"  # one logical line: interior newlines become spaces
    VERBATIM = "verbatim"  # sent as-is, newline-terminated


def normalize(text: str, mode: SendMode = SendMode.LINE) -> str:
    """Return exactly what will be written for ``text`` in ``mode``.

    Both modes end the result with a single ``\\n``. LINE mode also joins
    the text into one line, since the REPL reads input line by line and
    would otherwise treat each fragment as its own submission; a ``\\r\\n``
    pair counts as one newline there. VERBATIM leaves everything before
    the trailing newline untouched, carriage returns included.

    >>> normalize("a\\nb\\nc", SendMode.LINE)
    'a b c\\n'
    >>> normalize("a\\nb\\nc", SendMode.VERBATIM)
    'a\\nb\\nc\\n'
    """
    if mode == SendMode.LINE:
        body = text.replace("\r\n", "\n").rstrip("\n")
        return body.replace("\n", " ") + "\n"
    return text.rstrip("\n") + "\n"


def extract_region(text: str, start: int | None, end: int | None) -> str:
    """Return ``text[start:end]`` for an explicit span.

    The bounds may be given in either order. Raises NoRegionSelected when
    a bound is missing, out of range, or the span is empty.
    """
    if start is None or end is None:
        raise NoRegionSelected()
    lo, hi = min(start, end), max(start, end)
    if lo < 0 or hi > len(text):
        raise NoRegionSelected(
            f"region {lo}..{hi} is outside the text (length {len(text)})"
        )
    if lo == hi:
        raise NoRegionSelected("region is empty")
    return text[lo:hi]


def current_line(text: str, point: int) -> str:
    """Return the line of ``text`` containing offset ``point`` (no newline)."""
    if point < 0 or point > len(text):
        raise ValueError(f"point {point} is outside the text (length {len(text)})")
    start = text.rfind("\n", 0, point) + 1
    end = text.find("\n", point)
    if end == -1:
        end = len(text)
    return text[start:end]


def elixir_string(value: str) -> str:
    """Quote ``value`` as an Elixir string literal."""
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("#{", "\\#{")
        .replace("\n", "\\n")
    )
    return f'"{escaped}"'


def compile_command(path: str) -> str:
    """IEx helper call that compiles and loads a source file."""
    return f"c({elixir_string(path)})"


def reload_command(module: str) -> str:
    """IEx helper call that recompiles and reloads a module."""
    if not _MODULE_ALIAS_RE.match(module):
        raise ValueError(f"not a module name: {module!r}")
    return f"r({module})"
