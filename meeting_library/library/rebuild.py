"""
Library index rebuild.

Regenerates an owner's library listing from ground truth:

    1. Page through the roles the owner holds on resources of the
       namespace's type (authorization store)
    2. Load every referenced resource (resource store, via the indexer)
    3. Skip resources that no longer exist (dangling references)
    4. Rank live resources: prior rank if the stale listing still has one,
       otherwise the resource creation time
    5. Replace the listing and mark it built in one transaction
    6. Optionally delete the dangling role records

Invariants:
    - Any number of dangling references is tolerated and never raised
    - A store failure leaves the listing and its state untouched
    - The caller holds the (namespace, owner) lock for the whole rebuild

How to change safely:
    - Keep the replace a single transaction
    - Cleanup runs after the replace and must never fail the rebuild
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Protocol

from ..authz.principals import MEETING
from ..authz.store import AuthzStore
from ..errors import translate_store_errors
from ..meetings.store import MeetingStore
from .store import LibraryEntry, LibraryState, LibraryStore

logger = logging.getLogger(__name__)


@dataclass
class IndexedResource:
    """The fields of a resource a library entry is built from."""

    resource_id: str
    tenant_alias: str
    visibility: str
    created: int
    last_modified: int

    def entry_for(self, owner_id: str, rank: int | None = None) -> LibraryEntry:
        """Build the library entry of this resource for an owner.

        Args:
            owner_id: Library owner
            rank: Entry rank (default: last_modified)
        """
        return LibraryEntry(
            owner_id=owner_id,
            resource_id=self.resource_id,
            rank=self.last_modified if rank is None else rank,
            visibility=self.visibility,
            tenant_alias=self.tenant_alias,
        )


class LibraryIndexer(Protocol):
    """Loads the resources of one library namespace."""

    resource_type: str

    async def load_resources(self, resource_ids: list[str]) -> list[IndexedResource | None]:
        """Load resources in the order given, None where one no longer exists."""
        ...


class MeetingsLibraryIndexer:
    """Indexer of the meetings library namespace."""

    resource_type = MEETING

    def __init__(self, meeting_store: MeetingStore) -> None:
        self.meeting_store = meeting_store

    async def load_resources(self, resource_ids: list[str]) -> list[IndexedResource | None]:
        meetings = await self.meeting_store.get_meetings_by_id(resource_ids)
        return [
            None
            if meeting is None
            else IndexedResource(
                resource_id=meeting.meeting_id,
                tenant_alias=meeting.tenant_alias,
                visibility=meeting.visibility,
                created=meeting.created,
                last_modified=meeting.last_modified,
            )
            for meeting in meetings
        ]


@dataclass
class RebuildResult:
    """Outcome of a rebuild.

    Attributes:
        state: The new (BUILT) state of the listing
        entries: The listing as built, unfiltered
        dangling: Resource ids the owner held roles on that no longer exist
        cleaned: Number of dangling role records deleted
        duration_ms: Time spent rebuilding
    """

    state: LibraryState
    entries: list[LibraryEntry] = field(default_factory=list)
    dangling: list[str] = field(default_factory=list)
    cleaned: int = 0
    duration_ms: int = 0


class IndexRebuilder:
    """Rebuilds library listings from the authorization store.

    Example:
        >>> rebuilder = IndexRebuilder(authz_store, library_store)
        >>> result = await rebuilder.rebuild("meetings:meetings", "u:cam:alice", indexer)
        >>> len(result.entries), result.dangling
    """

    def __init__(
        self,
        authz_store: AuthzStore,
        library_store: LibraryStore,
        batch_size: int = 100,
        cleanup_dangling: bool = True,
    ) -> None:
        self.authz_store = authz_store
        self.library_store = library_store
        self.batch_size = batch_size
        self.cleanup_dangling = cleanup_dangling

    async def rebuild(
        self,
        namespace: str,
        owner_id: str,
        indexer: LibraryIndexer,
    ) -> RebuildResult:
        """Rebuild an owner's listing.

        Args:
            namespace: Library namespace
            owner_id: Library owner
            indexer: Indexer of the namespace

        Returns:
            RebuildResult

        Raises:
            TransientStoreError: If a store fails; the listing is unchanged
        """
        started = time.monotonic()

        with translate_store_errors("library"):
            prior_ranks = await self.library_store.get_ranks(namespace, owner_id)

        entries: list[LibraryEntry] = []
        dangling: list[str] = []
        start = None

        while True:
            with translate_store_errors("authz"):
                rows, start = await self.authz_store.list_resource_ids_for_principal(
                    owner_id, indexer.resource_type, start=start, limit=self.batch_size
                )

            resource_ids = [resource_id for resource_id, _ in rows]
            with translate_store_errors("resource"):
                resources = await indexer.load_resources(resource_ids)

            for resource_id, resource in zip(resource_ids, resources):
                if resource is None:
                    dangling.append(resource_id)
                    logger.warning(
                        "Skipping dangling library reference",
                        extra={"namespace": namespace, "owner_id": owner_id, "resource_id": resource_id},
                    )
                    continue
                entries.append(resource.entry_for(owner_id, prior_ranks.get(resource_id, resource.created)))

            if start is None:
                break

        with translate_store_errors("library"):
            state = await self.library_store.replace_entries(namespace, owner_id, entries)

        cleaned = 0
        if dangling and self.cleanup_dangling:
            cleaned = await self._cleanup(owner_id, dangling)

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Library rebuilt",
            extra={
                "namespace": namespace,
                "owner_id": owner_id,
                "entries": len(entries),
                "dangling": len(dangling),
                "version": state.version,
                "duration_ms": duration_ms,
            },
        )

        return RebuildResult(
            state=state,
            entries=entries,
            dangling=dangling,
            cleaned=cleaned,
            duration_ms=duration_ms,
        )

    async def _cleanup(self, owner_id: str, resource_ids: list[str]) -> int:
        """Delete the owner's role records on resources that no longer exist."""
        cleaned = 0
        for resource_id in resource_ids:
            try:
                cleaned += await self.authz_store.delete_resource_roles(resource_id, [owner_id])
            except sqlite3.Error as e:
                logger.warning(
                    "Failed to clean up dangling role",
                    extra={"owner_id": owner_id, "resource_id": resource_id, "error": str(e)},
                )
        return cleaned
