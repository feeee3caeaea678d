"""
Change event types and the EventStream protocol.

Library indexes and the meetings service publish change events so that
downstream consumers (search indexing, push notifications, activity) can
follow library and meeting changes without the library depending on them.

Invariants:
    - Events with the same key keep their publish order
    - Publishing is optional: with no stream configured nothing is emitted
    - A failed publish never fails the change that produced it

How to change safely:
    - Add new event names additively; consumers ignore names they don't know
    - Keep ChangeEvent JSON backward compatible
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class EventStreamError(Exception):
    """Base exception for event stream operations."""

    pass


class EventStreamConnectionError(EventStreamError):
    """The event stream is not connected."""

    pass


class EventNames:
    """Names of the change events."""

    LIBRARY_INSERTED = "libraryInserted"
    LIBRARY_UPDATED = "libraryUpdated"
    LIBRARY_REMOVED = "libraryRemoved"
    LIBRARY_PURGED = "libraryPurged"
    LIBRARY_REBUILT = "libraryRebuilt"

    CREATED_MEETING = "createdMeeting"
    UPDATED_MEETING = "updatedMeeting"
    UPDATED_MEETING_MEMBERS = "updatedMeetingMembers"
    DELETED_MEETING = "deletedMeeting"
    GET_MEETING_LIBRARY = "getMeetingLibrary"


@dataclass(frozen=True)
class StreamPos:
    """Position of a record in the event stream.

    Attributes:
        topic: Topic name
        partition: Partition number
        offset: Offset within the partition
        timestamp_ms: Time the record was published
    """

    topic: str
    partition: int
    offset: int
    timestamp_ms: int

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}:{self.offset}"


@dataclass
class StreamRecord:
    """A published record.

    Attributes:
        key: Partition key (library owner or meeting id)
        value: Encoded ChangeEvent
        position: Position in the stream
    """

    key: str
    value: bytes
    position: StreamPos

    def event(self) -> ChangeEvent:
        return ChangeEvent.from_bytes(self.value)


@dataclass
class ChangeEvent:
    """A change to a library or a meeting.

    Attributes:
        name: One of EventNames
        key: Library owner id or meeting id the event is about
        payload: Event specific fields
        ts: Timestamp (Unix ms)
    """

    name: str
    key: str
    payload: dict[str, Any] = field(default_factory=dict)
    ts: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_bytes(self) -> bytes:
        return json.dumps(
            {"name": self.name, "key": self.key, "payload": self.payload, "ts": self.ts},
            sort_keys=True,
        ).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> ChangeEvent:
        raw = json.loads(data.decode("utf-8"))
        return cls(name=raw["name"], key=raw["key"], payload=raw.get("payload", {}), ts=raw["ts"])


@runtime_checkable
class EventStream(Protocol):
    """Protocol implemented by event stream backends."""

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def publish(self, topic: str, key: str, value: bytes) -> StreamPos: ...

    def subscribe(
        self,
        topic: str,
        group_id: str,
        start_position: StreamPos | None = None,
    ) -> AsyncIterator[StreamRecord]: ...


class EventPublisher:
    """Publishes ChangeEvents to a topic of an EventStream.

    Example:
        >>> publisher = EventPublisher(stream, "meeting-library")
        >>> await publisher.emit(EventNames.LIBRARY_PURGED, "u:cam:alice", namespace="meetings:meetings")
    """

    def __init__(self, stream: EventStream, topic: str) -> None:
        self.stream = stream
        self.topic = topic

    async def emit(self, name: str, key: str, **payload: Any) -> StreamPos | None:
        """Publish an event.

        Publish failures are logged and swallowed so that the change that
        produced the event still succeeds.

        Returns:
            Position of the published record, None if publishing failed
        """
        event = ChangeEvent(name=name, key=key, payload=payload)
        try:
            return await self.stream.publish(self.topic, key, event.to_bytes())
        except EventStreamError as e:
            logger.warning(
                "Failed to publish change event",
                extra={"event": name, "key": key, "error": str(e)},
            )
            return None
