"""One-shot compilation of a source file outside any session."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from alchemist.config import AlchemistConfig
from alchemist.errors import SpawnError
from alchemist.launch import LaunchSpec, compile_file

logger = logging.getLogger(__name__)


@dataclass
class CompileResult:
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_once(spec: LaunchSpec, timeout: float | None = None) -> CompileResult:
    """Run ``spec`` to completion, capturing stdout and stderr together."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *spec.argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=spec.cwd,
            env={**os.environ, **spec.env},
        )
    except OSError as e:
        raise SpawnError(list(spec.argv), e.strerror or str(e)) from e

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise

    output = stdout.decode("utf-8", errors="replace") if stdout else ""
    logger.info("%s exited with %s", spec.describe(), proc.returncode)
    return CompileResult(returncode=proc.returncode or 0, output=output)


async def compile_file_once(
    config: AlchemistConfig, path: str | Path, timeout: float | None = None
) -> CompileResult:
    """Compile one file with elixirc."""
    return await run_once(compile_file(config, path), timeout=timeout)
