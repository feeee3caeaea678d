"""
In-memory event stream.

Stores published change events in process memory. Used by:
- Unit and integration tests
- Single-process deployments where consumers run in the same process

Invariants:
    - All data is lost on process exit
    - Records with the same key land in the same partition, in order
    - Safe for concurrent use from multiple coroutines

How to change safely:
    - Keep the interface compatible with the EventStream protocol
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from .base import ChangeEvent, EventStreamConnectionError, StreamPos, StreamRecord

logger = logging.getLogger(__name__)


@dataclass
class InMemoryPartition:
    """In-memory partition storage."""

    records: list[StreamRecord] = field(default_factory=list)


class InMemoryEventStream:
    """In-memory implementation of EventStream.

    Thread safety:
        Uses an asyncio lock. Safe to use from multiple coroutines.

    Example:
        >>> stream = InMemoryEventStream()
        >>> await stream.connect()
        >>> await stream.publish("meeting-library", "u:cam:alice", b"{...}")
        >>> async for record in stream.subscribe("meeting-library", "search"):
        ...     print(record.event().name)
    """

    def __init__(self, num_partitions: int = 4) -> None:
        """Initialize the stream.

        Args:
            num_partitions: Number of partitions per topic
        """
        self.num_partitions = num_partitions
        self._topics: dict[str, dict[int, InMemoryPartition]] = defaultdict(
            lambda: {i: InMemoryPartition() for i in range(self.num_partitions)}
        )
        self._connected = False
        self._lock = asyncio.Lock()
        self._new_record_events: dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self._subscribers: set[str] = set()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.debug("InMemoryEventStream connected")

    async def close(self) -> None:
        """Close, stop subscribers and drop all records."""
        self._connected = False
        self._topics.clear()
        self._subscribers.clear()
        for event in self._new_record_events.values():
            event.set()
        logger.debug("InMemoryEventStream closed")

    async def publish(self, topic: str, key: str, value: bytes) -> StreamPos:
        """Append a record to a topic.

        Args:
            topic: Topic name
            key: Partition key
            value: Encoded event

        Returns:
            Position of the record

        Raises:
            EventStreamConnectionError: If not connected
        """
        if not self._connected:
            raise EventStreamConnectionError("Not connected")

        partition = self._partition_for_key(key)

        async with self._lock:
            part = self._topics[topic][partition]
            pos = StreamPos(
                topic=topic,
                partition=partition,
                offset=len(part.records),
                timestamp_ms=int(time.time() * 1000),
            )
            part.records.append(StreamRecord(key=key, value=value, position=pos))

            if topic in self._new_record_events:
                self._new_record_events[topic].set()

        return pos

    async def subscribe(
        self,
        topic: str,
        group_id: str,
        start_position: StreamPos | None = None,
    ) -> AsyncIterator[StreamRecord]:
        """Follow a topic from the beginning (or after start_position).

        Yields records until the stream is closed or the consumer stops
        iterating.
        """
        if not self._connected:
            raise EventStreamConnectionError("Not connected")

        consumer_key = f"{topic}:{group_id}"
        self._subscribers.add(consumer_key)

        positions = {partition: 0 for partition in range(self.num_partitions)}
        if start_position is not None:
            positions[start_position.partition] = start_position.offset + 1

        try:
            while consumer_key in self._subscribers:
                async with self._lock:
                    pending = []
                    for partition in range(self.num_partitions):
                        records = self._topics[topic][partition].records
                        pending.extend(records[positions[partition]:])
                        positions[partition] = len(records)

                for record in pending:
                    yield record

                if not pending:
                    self._new_record_events[topic].clear()
                    try:
                        await asyncio.wait_for(self._new_record_events[topic].wait(), timeout=1.0)
                    except asyncio.TimeoutError:
                        pass
        finally:
            self._subscribers.discard(consumer_key)

    def _partition_for_key(self, key: str) -> int:
        """Get partition number for a key using consistent hashing."""
        hash_bytes = hashlib.md5(key.encode("utf-8")).digest()
        return int.from_bytes(hash_bytes[:4], "big") % self.num_partitions

    # Testing helpers

    def get_events(self, topic: str, key: str | None = None) -> list[ChangeEvent]:
        """Get decoded events of a topic, optionally for a single key.

        Events of one key are in publish order; across keys the order
        follows partitions.
        """
        events = []
        if topic in self._topics:
            for partition in sorted(self._topics[topic]):
                for record in self._topics[topic][partition].records:
                    if key is None or record.key == key:
                        events.append(record.event())
        return events

    def get_record_count(self, topic: str) -> int:
        if topic not in self._topics:
            return 0
        return sum(len(part.records) for part in self._topics[topic].values())
