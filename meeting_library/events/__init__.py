"""
Change events for the meeting library.

This module provides:
- ChangeEvent and EventNames
- EventStream protocol
- InMemoryEventStream backend
- EventPublisher used by the library index and the meetings service
"""

from .base import (
    ChangeEvent,
    EventNames,
    EventPublisher,
    EventStream,
    EventStreamConnectionError,
    EventStreamError,
    StreamPos,
    StreamRecord,
)
from .memory import InMemoryEventStream

__all__ = [
    "ChangeEvent",
    "EventNames",
    "EventPublisher",
    "EventStream",
    "EventStreamConnectionError",
    "EventStreamError",
    "StreamPos",
    "StreamRecord",
    "InMemoryEventStream",
]
