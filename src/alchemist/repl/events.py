"""Session events — decouples session management from display surfaces.

Sessions publish what happens to them (spawn, output, input echo,
prompt, exit) on an EventBus. A display surface subscribes and renders
events in order; the manager itself never dictates rendering.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    SPAWN = "spawn"
    OUTPUT = "output"
    INPUT = "input"
    PROMPT = "prompt"
    EXIT = "exit"
    TERMINATED = "terminated"


@dataclass
class Event:
    """An event on the bus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


class EventBus:
    """Async message bus: sessions -> display subscribers.

    Single-producer, multi-consumer broadcast.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[Event | None]] = []
        self._closed: bool = False

    def send(self, event: Event) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def send_spawn(self, key: str, pid: int, command: str) -> None:
        self.send(
            Event(
                type=EventType.SPAWN,
                data={"key": key, "pid": pid, "command": command},
            )
        )

    def send_output(self, key: str, text: str) -> None:
        self.send(Event(type=EventType.OUTPUT, data={"key": key, "text": text}))

    def send_input(self, key: str, text: str) -> None:
        self.send(Event(type=EventType.INPUT, data={"key": key, "text": text}))

    def send_prompt(self, key: str, prompt: str) -> None:
        self.send(Event(type=EventType.PROMPT, data={"key": key, "prompt": prompt}))

    def send_exit(
        self,
        key: str,
        exit_code: int | None,
        last_output: str = "",
    ) -> None:
        """Notify subscribers that a session's process exited on its own."""
        self.send(
            Event(
                type=EventType.EXIT,
                data={
                    "key": key,
                    "exit_code": exit_code,
                    "last_output": last_output[-500:],
                },
            )
        )

    def send_terminated(self, key: str) -> None:
        self.send(Event(type=EventType.TERMINATED, data={"key": key}))

    def subscribe(self) -> asyncio.Queue[Event | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[Event | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    def close(self) -> None:
        """Signal all subscribers that the bus is closing."""
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)

    @property
    def closed(self) -> bool:
        return self._closed
