"""Session manager — owns one REPL process per session key."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from alchemist.config import AlchemistConfig
from alchemist.errors import BrokenPipe
from alchemist.launch import (
    DEFAULT_SESSION_KEY,
    LaunchSpec,
    plain_iex,
    project_iex,
    session_key_for,
)
from alchemist.project import find_project, require_project
from alchemist.repl.dispatch import (
    SendMode,
    compile_command,
    current_line,
    extract_region,
    reload_command,
)
from alchemist.repl.events import EventBus
from alchemist.repl.prompt import PromptDetector
from alchemist.repl.session import ReplSession
from alchemist.repl.sink import OutputSink

logger = logging.getLogger(__name__)


class SessionManager:
    """Registry of live REPL sessions, keyed by project name.

    The manager guarantees:
    - At most one live process per key; a dead entry counts as absent
      and is replaced by a fresh process on the next request
    - Sends to one key are serialized in call order
    - A failed write invalidates the entry so the next send respawns
    - All processes are killed by close_all() (no orphans)
    - Exit notifications go out on the EventBus (if attached)

    A key of None means the shared default session.
    """

    def __init__(
        self,
        config: AlchemistConfig | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.config = config or AlchemistConfig()
        self._events = events
        self._sessions: dict[str, ReplSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def resolve_or_start(
        self, key: str | None, launch: LaunchSpec | None = None
    ) -> ReplSession:
        """Return the live session for ``key``, starting one if needed.

        Args:
            key: Session key, or None for the default session.
            launch: How to start the process if none is alive. Defaults
                to plain IEx from the config.

        Raises:
            SpawnError: the process could not be started.
        """
        key = key or DEFAULT_SESSION_KEY
        async with self._lock_for(key):
            return await self._resolve_locked(key, launch)

    async def _resolve_locked(
        self, key: str, launch: LaunchSpec | None
    ) -> ReplSession:
        existing = self._sessions.get(key)
        if existing is not None:
            if existing.alive:
                return existing
            logger.info("Session %s is not running, respawning", key)
            self._sessions.pop(key, None)
            await existing.terminate()

        session = ReplSession(
            key=key,
            launch=launch or plain_iex(self.config),
            sink=OutputSink(self.config.sink.max_size),
            prompt=PromptDetector(self.config.sink.prompt_pattern),
            events=self._events,
        )

        if self._events:
            events = self._events

            def _on_exit(s: ReplSession, exit_code: int | None) -> None:
                events.send_exit(s.key, exit_code, s.sink.tail(500))

            session.set_on_exit(_on_exit)

        await session.start()
        self._sessions[key] = session
        return session

    async def send(
        self,
        key: str | None,
        text: str,
        mode: SendMode = SendMode.LINE,
        launch: LaunchSpec | None = None,
    ) -> ReplSession:
        """Send text to a session, starting it first if needed.

        A session whose process has already exited counts as absent: it is
        replaced by a fresh process and the text goes there, with no
        error. BrokenPipe is raised only if the process dies after it was
        resolved and before the write landed; the entry is dropped so the
        next call spawns a new process.

        Returns the session the text went to.
        """
        key = key or DEFAULT_SESSION_KEY
        async with self._lock_for(key):
            session = await self._resolve_locked(key, launch)
            try:
                await session.submit(text, mode)
            except BrokenPipe:
                logger.info("Write to session %s failed, invalidating", key)
                if self._sessions.get(key) is session:
                    del self._sessions[key]
                await session.terminate()
                raise
        return session

    async def send_line(
        self,
        key: str | None,
        text: str,
        point: int,
        launch: LaunchSpec | None = None,
    ) -> ReplSession:
        """Send the line of ``text`` that contains offset ``point``."""
        return await self.send(key, current_line(text, point), SendMode.LINE, launch)

    async def send_region(
        self,
        key: str | None,
        text: str,
        start: int | None,
        end: int | None,
        launch: LaunchSpec | None = None,
    ) -> ReplSession:
        """Send ``text[start:end]`` verbatim.

        Raises NoRegionSelected before touching any process if the span
        is unusable.
        """
        region = extract_region(text, start, end)
        return await self.send(key, region, SendMode.VERBATIM, launch)

    async def compile_file(
        self,
        key: str | None,
        path: str | Path,
        launch: LaunchSpec | None = None,
    ) -> ReplSession:
        """Compile and load a source file inside the session."""
        command = compile_command(str(Path(path).resolve()))
        return await self.send(key, command, SendMode.LINE, launch)

    async def reload_module(
        self,
        key: str | None,
        module: str,
        launch: LaunchSpec | None = None,
    ) -> ReplSession:
        """Recompile and reload a module inside the session."""
        return await self.send(key, reload_command(module), SendMode.LINE, launch)

    async def run(
        self,
        directory: str | Path | None = None,
        project_scoped: bool = False,
    ) -> ReplSession:
        """Start (or show) the session for ``directory``.

        Inside a mix project the session is keyed by the project name and
        runs IEx with the project loaded. Outside one, the default session
        is used unless ``project_scoped`` is set, in which case
        NoProjectFound is raised and nothing is spawned.
        """
        if project_scoped:
            project = require_project(directory)
        else:
            project = find_project(directory)

        if project is None:
            cwd = str(directory) if directory is not None else None
            return await self.resolve_or_start(None, plain_iex(self.config, cwd=cwd))
        return await self.resolve_or_start(
            session_key_for(project), project_iex(self.config, project)
        )

    def get(self, key: str | None) -> ReplSession | None:
        """Get a session by key, live or not."""
        return self._sessions.get(key or DEFAULT_SESSION_KEY)

    def output(self, key: str | None) -> str:
        """All retained output for a session ("" if unknown)."""
        session = self.get(key)
        return session.sink.read_all() if session else ""

    def truncate(self, key: str | None, max_size: int) -> None:
        session = self.get(key)
        if session:
            session.sink.truncate(max_size)

    def clear(self, key: str | None) -> None:
        self.truncate(key, 0)

    async def terminate(self, key: str | None) -> None:
        """Kill a session and stop tracking it. Unknown keys are a no-op."""
        key = key or DEFAULT_SESSION_KEY
        session = self._sessions.pop(key, None)
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]
        if session:
            await session.terminate()
            if self._events:
                self._events.send_terminated(key)

    def list_sessions(self) -> list[dict[str, Any]]:
        """List all tracked sessions."""
        return [
            {
                "key": s.key,
                "pid": s.pid,
                "command": s.launch.describe(),
                "variant": s.launch.variant.value,
                "alive": s.alive,
                "status": s.status.value,
                "output_chars": s.sink.size,
            }
            for s in self._sessions.values()
        ]

    async def close_all(self) -> None:
        """Kill all sessions. Called on shutdown."""
        for key in list(self._sessions.keys()):
            await self.terminate(key)
        logger.info("All REPL sessions closed")

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        return key in self._sessions
