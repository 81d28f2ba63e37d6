"""IEx prompt detection.

Purely advisory: a caller can ask whether the shell looks idle, but
nothing ever blocks on a prompt, and output with no prompt is normal.
"""

from __future__ import annotations

import re

from alchemist.config import DEFAULT_PROMPT_PATTERN

_NUMBER_RE = re.compile(r"(\d+)>\s*$")


class PromptDetector:
    """Recognizes the interactive prompt in session output."""

    def __init__(self, pattern: str = DEFAULT_PROMPT_PATTERN) -> None:
        self.pattern = pattern
        self._compiled = re.compile(pattern, re.MULTILINE)

    def matches(self, line: str) -> bool:
        return self._compiled.search(line.rstrip("\r\n")) is not None

    def at_prompt(self, text: str) -> bool:
        """True if the last non-blank line of ``text`` is a prompt."""
        for line in reversed(text.split("\n")):
            if line.strip():
                return self.matches(line)
        return False

    def find_prompts(self, text: str) -> list[str]:
        """All prompt lines in ``text``, in order."""
        return [line for line in text.split("\n") if line.strip() and self.matches(line)]

    @staticmethod
    def prompt_number(line: str) -> int | None:
        """Extract the expression counter, e.g. 3 from ``iex(3)> ``."""
        m = _NUMBER_RE.search(line.replace("(", "").replace(")", ""))
        return int(m.group(1)) if m else None
