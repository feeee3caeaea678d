"""
Library index.

Serves per-principal library listings and keeps them in sync with access
changes. A listing is built lazily: the first request for an absent or
stale listing rebuilds it from the role records, under a per
(namespace, owner) lock, before the page is served.

State machine:
    ABSENT --rebuild--> BUILT --purge--> STALE --rebuild--> BUILT

Invariants:
    - Every write for an owner happens under that owner's lock
    - A lock is dropped once no task holds or waits on it
    - Owner ids are validated before any state is read or written
    - At most one rebuild runs per (namespace, owner); waiters reuse it
    - Mutations for an owner whose listing is not BUILT are skipped
    - Entries are filtered for the viewer at read time with can_view
    - Continuation tokens are opaque positions (rank, resource_id)

How to change safely:
    - Keep the page order rank DESC, resource_id DESC; tokens depend on it
    - New namespaces are added with register(), never by special-casing
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from ..authz.principals import ViewerContext, parse_principal_id
from ..authz.store import AuthzStore
from ..authz.visibility import AccessRecord, Visibility, can_view, resolve_library_access
from ..errors import (
    AuthorizationError,
    InvalidArgumentError,
    PrincipalNotFoundError,
    translate_store_errors,
)
from ..events.base import EventNames, EventPublisher
from .rebuild import IndexRebuilder, LibraryIndexer, RebuildResult
from .store import IndexState, LibraryEntry, LibraryState, LibraryStore

logger = logging.getLogger(__name__)

MEETINGS_NAMESPACE = "meetings:meetings"


@dataclass
class LibraryPage:
    """A page of a library listing.

    Attributes:
        entries: Entries visible to the viewer, in library order
        next_token: Token for the next page, None on the last page
        visibility: Widest visibility band the viewer receives
    """

    entries: list[LibraryEntry] = field(default_factory=list)
    next_token: str | None = None
    visibility: Visibility | None = None


def encode_token(entry: LibraryEntry) -> str:
    """Encode the position of an entry as an opaque continuation token."""
    raw = json.dumps([entry.rank, entry.resource_id], separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_token(token: str) -> tuple[int, str]:
    """Decode a continuation token into a (rank, resource_id) position.

    Raises:
        InvalidArgumentError: If the token is malformed
    """
    try:
        raw = base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))
        rank, resource_id = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError, TypeError):
        raise InvalidArgumentError("An invalid paging token has been provided", argument="start") from None

    if not isinstance(rank, int) or not isinstance(resource_id, str):
        raise InvalidArgumentError("An invalid paging token has been provided", argument="start")
    return rank, resource_id


class LibraryIndex:
    """Per (namespace, owner) library listings.

    Thread safety:
        Safe for concurrent use from coroutines of one event loop.
        Writes and rebuilds are serialized per (namespace, owner).

    Example:
        >>> index = LibraryIndex(authz_store, library_store, rebuilder)
        >>> index.register(MEETINGS_NAMESPACE, MeetingsLibraryIndexer(meeting_store))
        >>> page = await index.get_library(MEETINGS_NAMESPACE, "u:cam:alice", viewer, limit=10)
        >>> [e.resource_id for e in page.entries], page.next_token
    """

    def __init__(
        self,
        authz_store: AuthzStore,
        library_store: LibraryStore,
        rebuilder: IndexRebuilder,
        default_page_size: int = 10,
        max_page_size: int = 100,
        publisher: EventPublisher | None = None,
    ) -> None:
        self.authz_store = authz_store
        self.library_store = library_store
        self.rebuilder = rebuilder
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.publisher = publisher

        self._indexers: dict[str, LibraryIndexer] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, str], int] = {}

    def register(self, namespace: str, indexer: LibraryIndexer) -> None:
        """Register the indexer of a library namespace."""
        self._indexers[namespace] = indexer
        logger.debug(
            "Registered library namespace",
            extra={"namespace": namespace, "resource_type": indexer.resource_type},
        )

    def _indexer(self, namespace: str) -> LibraryIndexer:
        indexer = self._indexers.get(namespace)
        if indexer is None:
            raise InvalidArgumentError(f"Unknown library namespace: {namespace}", argument="namespace")
        return indexer

    @asynccontextmanager
    async def _lock(self, namespace: str, owner_id: str) -> AsyncIterator[None]:
        key = (namespace, owner_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    def _page_size(self, limit: int | None) -> int:
        if limit is None:
            return self.default_page_size
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise InvalidArgumentError("A valid limit must be provided", argument="limit")
        return max(1, min(limit, self.max_page_size))

    # Reads

    async def get_library(
        self,
        namespace: str,
        owner_id: str,
        viewer: ViewerContext,
        start: str | None = None,
        limit: int | None = None,
    ) -> LibraryPage:
        """Get a page of an owner's library as seen by a viewer.

        Args:
            namespace: Library namespace
            owner_id: User or group whose library to list
            viewer: Identity the request is evaluated for
            start: Continuation token from a previous page
            limit: Maximum entries (default page size, clamped to [1, max])

        Returns:
            LibraryPage

        Raises:
            InvalidArgumentError: Unknown namespace, bad id, limit or token
            PrincipalNotFoundError: The owner does not exist
            AuthorizationError: The viewer may not list this library
            TransientStoreError: A store failed
        """
        self._indexer(namespace)
        parse_principal_id(owner_id)
        limit = self._page_size(limit)
        after = decode_token(start) if start else None

        with translate_store_errors("authz"):
            owner = await self.authz_store.get_principal(owner_id)
        if owner is None:
            raise PrincipalNotFoundError(f"Principal {owner_id} does not exist", entity_id=owner_id)

        has_access, band = resolve_library_access(viewer, owner)
        if not has_access:
            raise AuthorizationError(
                f"Insufficient privilege to view the library of {owner_id}",
                principal_id=viewer.user_id,
            )

        await self.ensure_built(namespace, owner_id)

        visible: list[LibraryEntry] = []
        batch_size = max(limit + 1, self.rebuilder.batch_size)
        while len(visible) <= limit:
            with translate_store_errors("library"):
                batch = await self.library_store.list_entries(namespace, owner_id, after=after, limit=batch_size)
            if not batch:
                break

            visible.extend(await self._filter_visible(batch, owner_id, viewer))
            last = batch[-1]
            after = (last.rank, last.resource_id)

            if len(batch) < batch_size:
                break

        next_token = None
        if len(visible) > limit:
            visible = visible[:limit]
            next_token = encode_token(visible[-1])

        return LibraryPage(entries=visible, next_token=next_token, visibility=band)

    async def _filter_visible(
        self,
        entries: list[LibraryEntry],
        owner_id: str,
        viewer: ViewerContext,
    ) -> list[LibraryEntry]:
        """Keep the entries the viewer can see, preserving order."""
        principal_ids = sorted(viewer.principal_ids | {owner_id})
        with translate_store_errors("authz"):
            roles = await self.authz_store.get_roles_for_principals(
                [e.resource_id for e in entries], principal_ids
            )

        visible = []
        for entry in entries:
            record = AccessRecord(
                resource_id=entry.resource_id,
                tenant_alias=entry.tenant_alias,
                visibility=Visibility.parse(entry.visibility),
                roles=roles.get(entry.resource_id, {}),
            )
            if can_view(viewer, record, owner_id):
                visible.append(entry)
        return visible

    async def get_state(self, namespace: str, owner_id: str) -> LibraryState:
        """Get the state of an owner's listing."""
        self._indexer(namespace)
        parse_principal_id(owner_id)
        with translate_store_errors("library"):
            return await self.library_store.get_state(namespace, owner_id)

    # Rebuild

    async def ensure_built(self, namespace: str, owner_id: str) -> RebuildResult | None:
        """Rebuild an owner's listing if it is absent or stale.

        Returns:
            The RebuildResult if this call rebuilt the listing, else None
        """
        state = await self.get_state(namespace, owner_id)
        if state.is_built:
            return None

        async with self._lock(namespace, owner_id):
            # Another task may have rebuilt while we waited
            state = await self.get_state(namespace, owner_id)
            if state.is_built:
                return None
            return await self._rebuild_locked(namespace, owner_id, state)

    async def rebuild(self, namespace: str, owner_id: str) -> RebuildResult:
        """Rebuild an owner's listing regardless of its state."""
        self._indexer(namespace)
        parse_principal_id(owner_id)
        async with self._lock(namespace, owner_id):
            state = await self.get_state(namespace, owner_id)
            return await self._rebuild_locked(namespace, owner_id, state)

    async def _rebuild_locked(
        self,
        namespace: str,
        owner_id: str,
        prior: LibraryState,
    ) -> RebuildResult:
        logger.info(
            "Rebuilding library",
            extra={"namespace": namespace, "owner_id": owner_id, "prior_state": prior.state.value},
        )
        result = await self.rebuilder.rebuild(namespace, owner_id, self._indexer(namespace))
        await self._emit(
            EventNames.LIBRARY_REBUILT,
            owner_id,
            namespace=namespace,
            entries=len(result.entries),
            dangling=len(result.dangling),
            version=result.state.version,
        )
        return result

    async def purge(self, namespace: str, owner_id: str) -> LibraryState:
        """Mark an owner's listing stale so the next read rebuilds it.

        Purging an absent or stale listing is a no-op.
        """
        self._indexer(namespace)
        parse_principal_id(owner_id)
        async with self._lock(namespace, owner_id):
            state = await self.get_state(namespace, owner_id)
            if not state.is_built:
                return state

            with translate_store_errors("library"):
                state = await self.library_store.set_state(namespace, owner_id, IndexState.STALE)

        logger.info("Library purged", extra={"namespace": namespace, "owner_id": owner_id})
        await self._emit(EventNames.LIBRARY_PURGED, owner_id, namespace=namespace)
        return state

    # Mutations

    async def insert(self, namespace: str, entries: list[LibraryEntry]) -> int:
        """Add entries to (or re-rank them in) their owners' listings.

        Returns:
            Number of entries written
        """
        return await self._apply(namespace, entries, EventNames.LIBRARY_INSERTED)

    async def update(self, namespace: str, entries: list[LibraryEntry]) -> int:
        """Re-rank and re-denormalize entries already in their owners' listings.

        Returns:
            Number of entries written
        """
        return await self._apply(namespace, entries, EventNames.LIBRARY_UPDATED)

    async def _apply(self, namespace: str, entries: list[LibraryEntry], event: str) -> int:
        self._indexer(namespace)

        by_owner: dict[str, list[LibraryEntry]] = defaultdict(list)
        for entry in entries:
            parse_principal_id(entry.owner_id)
            by_owner[entry.owner_id].append(entry)

        written = 0
        for owner_id, owner_entries in by_owner.items():
            async with self._lock(namespace, owner_id):
                if not await self._is_built(namespace, owner_id, event):
                    continue
                with translate_store_errors("library"):
                    if event == EventNames.LIBRARY_INSERTED:
                        await self.library_store.upsert_entries(namespace, owner_entries)
                        count = len(owner_entries)
                    else:
                        count = await self.library_store.update_entries(namespace, owner_entries)
            written += count
            await self._emit(
                event,
                owner_id,
                namespace=namespace,
                resource_ids=[e.resource_id for e in owner_entries],
            )

        return written

    async def remove(self, namespace: str, owner_ids: list[str], resource_id: str) -> int:
        """Remove a resource from the listings of the given owners.

        Returns:
            Number of entries removed
        """
        self._indexer(namespace)
        owner_ids = list(dict.fromkeys(owner_ids))
        for owner_id in owner_ids:
            parse_principal_id(owner_id)

        removed = 0
        for owner_id in owner_ids:
            async with self._lock(namespace, owner_id):
                if not await self._is_built(namespace, owner_id, EventNames.LIBRARY_REMOVED):
                    continue
                with translate_store_errors("library"):
                    removed += await self.library_store.delete_entries(namespace, [owner_id], resource_id)
            await self._emit(
                EventNames.LIBRARY_REMOVED,
                owner_id,
                namespace=namespace,
                resource_ids=[resource_id],
            )

        return removed

    async def _is_built(self, namespace: str, owner_id: str, operation: str) -> bool:
        state = await self.get_state(namespace, owner_id)
        if not state.is_built:
            logger.debug(
                "Skipping library mutation of unbuilt index",
                extra={
                    "namespace": namespace,
                    "owner_id": owner_id,
                    "operation": operation,
                    "state": state.state.value,
                },
            )
            return False
        return True

    async def _emit(self, name: str, key: str, **payload) -> None:
        if self.publisher is not None:
            await self.publisher.emit(name, key, **payload)
