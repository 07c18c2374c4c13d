"""
Event system for the upload assembler.

Provides a dispatcher that decouples the protocol layer (hooks, sidecar
watcher) from the completion pipeline and lets other modules observe
assembly and placement outcomes.
"""

from .base import BaseEvent
from .dispatcher import EventDispatcher
from .types import EventType

__all__ = [
    "BaseEvent",
    "EventDispatcher",
    "EventType",
]
