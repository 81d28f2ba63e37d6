"""REPL session management — long-lived interactive IEx processes.

Each session owns one process with process group isolation, a bounded
output sink fed asynchronously, serialized input submission, and
advisory prompt detection.
"""

from alchemist.repl.dispatch import SendMode, normalize
from alchemist.repl.events import Event, EventBus, EventType
from alchemist.repl.manager import SessionManager
from alchemist.repl.prompt import PromptDetector
from alchemist.repl.session import ReplSession, SessionStatus
from alchemist.repl.sink import OutputSink

__all__ = [
    "Event",
    "EventBus",
    "EventType",
    "OutputSink",
    "PromptDetector",
    "ReplSession",
    "SendMode",
    "SessionManager",
    "SessionStatus",
    "normalize",
]
