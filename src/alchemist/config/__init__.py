"""Configuration — Pydantic models for alchemist settings."""

from __future__ import annotations

import os
import shlex
from typing import Any

from pydantic import BaseModel, Field

# Matches "iex(1)> ", "iex(node@host)1> ", "...(2)> " and a bare "iex> ".
DEFAULT_PROMPT_PATTERN = r"^(?:iex|\.\.\.)(?:\([^)\n]*\))?\d*>\s*$"


class IExConfig(BaseModel):
    """How the interactive shell is launched."""

    program: str = Field(default="iex", description="IEx executable name or path")
    extra_args: list[str] = Field(
        default_factory=list,
        description="Arguments passed to every IEx session",
    )
    project_args: list[str] = Field(
        default_factory=lambda: ["-S", "mix"],
        description="Arguments appended when IEx runs inside a mix project",
    )
    use_pty: bool = Field(
        default=False,
        description=(
            "Run IEx under a pseudo-terminal instead of plain pipes. "
            "Needed for line editing and colors, but the terminal echoes input."
        ),
    )
    env: dict[str, str] = Field(
        default_factory=dict, description="Extra environment variables"
    )


class SinkConfig(BaseModel):
    """Output retention and prompt detection."""

    max_size: int = Field(
        default=100_000, ge=0, description="Characters of output retained per session"
    )
    prompt_pattern: str = Field(default=DEFAULT_PROMPT_PATTERN)
    settle_time: float = Field(
        default=0.5,
        gt=0,
        description="Quiet seconds at a prompt before a reply counts as complete",
    )


class ElixirConfig(BaseModel):
    """One-shot toolchain commands."""

    compiler: str = Field(default="elixirc")
    mix: str = Field(default="mix")


class AlchemistConfig(BaseModel):
    """Top-level alchemist configuration."""

    iex: IExConfig = Field(default_factory=IExConfig)
    sink: SinkConfig = Field(default_factory=SinkConfig)
    elixir: ElixirConfig = Field(default_factory=ElixirConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> AlchemistConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            ALCHEMIST_IEX_PROGRAM  - IEx executable
            ALCHEMIST_IEX_ARGS     - Extra IEx arguments (shell-style quoting)
            ALCHEMIST_USE_PTY      - Run IEx under a PTY (1/true/yes)
            ALCHEMIST_MAX_OUTPUT   - Characters of output retained per session
        """
        try:
            from dotenv import load_dotenv

            load_dotenv(override=True)
        except ImportError:
            pass

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            import json

            with open(config_path) as f:
                config_data = json.load(f)

        iex = config_data.get("iex", {})

        env_program = os.environ.get("ALCHEMIST_IEX_PROGRAM")
        if env_program:
            iex["program"] = env_program

        env_args = os.environ.get("ALCHEMIST_IEX_ARGS")
        if env_args:
            iex["extra_args"] = shlex.split(env_args)

        env_pty = os.environ.get("ALCHEMIST_USE_PTY")
        if env_pty:
            iex["use_pty"] = env_pty.strip().lower() in ("1", "true", "yes")

        if iex:
            config_data["iex"] = iex

        env_max_output = os.environ.get("ALCHEMIST_MAX_OUTPUT")
        if env_max_output:
            sink = config_data.get("sink", {})
            sink["max_size"] = int(env_max_output)
            config_data["sink"] = sink

        return cls.model_validate(config_data)
