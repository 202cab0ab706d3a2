"""HTTP and WebSocket surface of the workflow editor engine."""

from .endpoints import router, init_dependencies
from .event_stream import EventStreamManager
from .sessions import EditorSession, SessionRegistry

__all__ = [
    "router",
    "init_dependencies",
    "EventStreamManager",
    "EditorSession",
    "SessionRegistry",
]
