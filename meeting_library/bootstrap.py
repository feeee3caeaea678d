"""
Component wiring.

MeetingLibrary builds the stores, the library index (with the meetings
namespace registered), the optional event stream and the meetings service
from a ServiceConfig, and manages their lifecycle.

Usage:
    >>> app = MeetingLibrary(ServiceConfig.from_env())
    >>> await app.start()
    >>> ctx = await app.authz_store.build_context("u:cam:alice")
    >>> meetings, next_token = await app.meetings.get_meetings_library(ctx, "u:cam:alice")
    >>> await app.stop()

Invariants:
    - All stores share one data directory
    - Components are created in start() and usable only while started
"""

from __future__ import annotations

import logging
from pathlib import Path

from .authz.store import AuthzStore
from .config import ServiceConfig
from .events.base import EventPublisher, EventStream
from .events.memory import InMemoryEventStream
from .library.index import MEETINGS_NAMESPACE, LibraryIndex
from .library.rebuild import IndexRebuilder, MeetingsLibraryIndexer
from .library.store import LibraryStore
from .meetings.service import MeetingsService
from .meetings.store import MeetingStore

logger = logging.getLogger(__name__)


class MeetingLibrary:
    """Meeting library orchestrator.

    Attributes:
        config: Service configuration
        authz_store: Principals, group memberships and roles
        meeting_store: Meeting records
        library_store: Library listings and their states
        library_index: Library index with the meetings namespace registered
        meetings: Meetings service
        events: Event stream, if events are enabled
    """

    def __init__(
        self,
        config: ServiceConfig | None = None,
        event_stream: EventStream | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Optional configuration (loaded from env if not provided)
            event_stream: Event stream to publish to when events are enabled
                (default: InMemoryEventStream)
        """
        self.config = config or ServiceConfig.from_env()
        self._running = False

        self.events: EventStream | None = None
        if self.config.events.enabled:
            self.events = event_stream or InMemoryEventStream()

        self.authz_store: AuthzStore | None = None
        self.meeting_store: MeetingStore | None = None
        self.library_store: LibraryStore | None = None
        self.library_index: LibraryIndex | None = None
        self.meetings: MeetingsService | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Create and connect all components."""
        if self._running:
            logger.warning("Meeting library already running")
            return

        logger.info("Starting meeting library")
        self.config.log_config()

        storage = self.config.storage
        data_dir = Path(storage.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)

        self.authz_store = AuthzStore(str(data_dir), storage.wal_mode, storage.busy_timeout_ms)
        self.meeting_store = MeetingStore(str(data_dir), storage.wal_mode, storage.busy_timeout_ms)
        self.library_store = LibraryStore(str(data_dir), storage.wal_mode, storage.busy_timeout_ms)

        publisher = None
        if self.events is not None:
            await self.events.connect()
            publisher = EventPublisher(self.events, self.config.events.topic)
            logger.info("Event stream connected", extra={"topic": self.config.events.topic})

        library = self.config.library
        rebuilder = IndexRebuilder(
            self.authz_store,
            self.library_store,
            batch_size=library.rebuild_batch_size,
            cleanup_dangling=library.cleanup_dangling,
        )
        self.library_index = LibraryIndex(
            self.authz_store,
            self.library_store,
            rebuilder,
            default_page_size=library.default_page_size,
            max_page_size=library.max_page_size,
            publisher=publisher,
        )
        self.library_index.register(MEETINGS_NAMESPACE, MeetingsLibraryIndexer(self.meeting_store))

        self.meetings = MeetingsService(
            self.authz_store,
            self.meeting_store,
            self.library_index,
            default_visibility=self.config.meetings.default_visibility,
            publisher=publisher,
        )

        self._running = True
        logger.info("Meeting library started", extra={"data_dir": str(data_dir)})

    async def stop(self) -> None:
        """Disconnect the event stream."""
        if not self._running:
            return

        if self.events is not None:
            await self.events.close()

        self._running = False
        logger.info("Meeting library stopped")
