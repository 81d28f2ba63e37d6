"""Cleanup of raw terminal output."""

from __future__ import annotations

import re

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]")


def strip_ansi(text: str) -> str:
    """Strip ANSI escape sequences from text."""
    return _ANSI_RE.sub("", text)


def sanitize_control(text: str) -> str:
    """Remove control characters a display cannot render.

    Keeps printable chars, tabs, newlines, and carriage returns.
    """
    cleaned = []
    for ch in text:
        cp = ord(ch)
        if ch in ("\t", "\n", "\r"):
            cleaned.append(ch)
        elif cp >= 32 and cp not in range(0x7F, 0xA0):
            cleaned.append(ch)
    return "".join(cleaned)


def clean_terminal_output(text: str) -> str:
    """strip_ansi() then sanitize_control(), and fold CRLF to LF."""
    return sanitize_control(strip_ansi(text)).replace("\r\n", "\n")
