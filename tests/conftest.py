"""Shared helpers: a tiny IEx stand-in so tests need no Elixir install."""

from __future__ import annotations

import asyncio
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from alchemist.config import AlchemistConfig
from alchemist.launch import LaunchSpec, LaunchVariant
from alchemist.repl.events import EventBus
from alchemist.repl.manager import SessionManager
from alchemist.repl.session import ReplSession
from alchemist.repl.sink import OutputSink

# Prints an IEx-style prompt, answers each line with "=> <line>", and
# exits with status 3 on "exit".
FAKE_IEX = r"""
import sys
n = 1
sys.stdout.write("iex(%d)> " % n)
sys.stdout.flush()
for line in sys.stdin:
    line = line.rstrip("\r\n")
    if line == "exit":
        sys.exit(3)
    n += 1
    sys.stdout.write("=> %s\niex(%d)> " % (line, n))
    sys.stdout.flush()
"""

# Same REPL, but it takes 0.3s to answer each line.
SLOW_IEX = "import time\n" + FAKE_IEX.replace(
    "    n += 1", "    time.sleep(0.3)\n    n += 1"
)


def fake_launch(use_pty: bool = False, script: str = FAKE_IEX) -> LaunchSpec:
    argv = (sys.executable, "-u", "-c", script)
    return LaunchSpec(variant=LaunchVariant.PLAIN, argv=argv, use_pty=use_pty)


def fake_config(script: str = FAKE_IEX, **sink: float) -> AlchemistConfig:
    """Config whose IEx program is one of the fake REPLs above."""
    return AlchemistConfig.model_validate(
        {
            "iex": {"program": sys.executable, "extra_args": ["-u", "-c", script]},
            "sink": sink,
        }
    )


@asynccontextmanager
async def running_manager(
    config: AlchemistConfig | None = None, events: EventBus | None = None
) -> AsyncIterator[SessionManager]:
    manager = SessionManager(config or fake_config(), events=events)
    try:
        yield manager
    finally:
        await manager.close_all()


@asynccontextmanager
async def started_session(
    launch: LaunchSpec | None = None,
    events: EventBus | None = None,
    sink: OutputSink | None = None,
) -> AsyncIterator[ReplSession]:
    session = ReplSession(
        key="test",
        launch=launch or fake_launch(),
        sink=sink if sink is not None else OutputSink(),
        events=events,
    )
    await session.start()
    try:
        yield session
    finally:
        await session.terminate()


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.02)
    return predicate()
