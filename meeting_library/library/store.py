"""
Library SQLite store.

This module manages the database holding library indexes: per
(namespace, owner) ordered listings of the resources the owner holds a
role on, and the state of each listing.

The listing is derived data. The roles in the authorization store are the
source of truth; a listing can be thrown away (marked stale) and rebuilt
from them at any time.

Invariants:
    - A listing is ordered by rank DESC, then resource_id DESC
    - Replacing a listing and marking it built happen in one transaction
    - A missing state row means the listing is absent
    - The state version increases on every transition

How to change safely:
    - Add new columns with defaults for backward compatibility
    - Keep list_entries paging keyed on (rank, resource_id)

Table schema:
    library_entries:
        - namespace TEXT
        - owner_id TEXT
        - resource_id TEXT
        - rank INTEGER
        - visibility TEXT (denormalized from the resource)
        - tenant_alias TEXT (denormalized from the resource)
        - PRIMARY KEY (namespace, owner_id, resource_id)
        - INDEX on (namespace, owner_id, rank DESC, resource_id DESC)

    library_state:
        - namespace TEXT
        - owner_id TEXT
        - state TEXT (built, stale)
        - version INTEGER
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (namespace, owner_id)
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class IndexState(Enum):
    """Lifecycle state of a library index."""

    ABSENT = "absent"
    BUILT = "built"
    STALE = "stale"


@dataclass
class LibraryEntry:
    """A resource in an owner's library.

    Attributes:
        owner_id: Principal whose library this is
        resource_id: Resource identifier
        rank: Sort key, higher first (Unix ms)
        visibility: Visibility of the resource when the entry was written
        tenant_alias: Tenant owning the resource
    """

    owner_id: str
    resource_id: str
    rank: int
    visibility: str
    tenant_alias: str


@dataclass
class LibraryState:
    """State of one (namespace, owner) library index."""

    namespace: str
    owner_id: str
    state: IndexState
    version: int = 0
    updated_at: int = 0

    @property
    def is_built(self) -> bool:
        return self.state == IndexState.BUILT


class LibraryStore:
    """SQLite store for library entries and index states.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.
        Callers serialize writes per (namespace, owner).

    Example:
        >>> store = LibraryStore("/var/lib/meeting-library")
        >>> await store.replace_entries("meetings:meetings", "u:cam:alice", entries)
        >>> await store.list_entries("meetings:meetings", "u:cam:alice", limit=10)
    """

    DB_FILE = "library.db"

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the library store.

        Args:
            data_dir: Directory for the database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.DB_FILE

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection with the schema in place."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            self._ensure_schema(conn)

            yield conn
        finally:
            conn.close()

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        """Ensure database schema exists."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS library_entries (
                namespace TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                resource_id TEXT NOT NULL,
                rank INTEGER NOT NULL,
                visibility TEXT NOT NULL,
                tenant_alias TEXT NOT NULL,
                PRIMARY KEY (namespace, owner_id, resource_id)
            );

            CREATE INDEX IF NOT EXISTS idx_library_entries_rank
                ON library_entries(namespace, owner_id, rank DESC, resource_id DESC);

            CREATE TABLE IF NOT EXISTS library_state (
                namespace TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                state TEXT NOT NULL,
                version INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (namespace, owner_id)
            );
        """)

    # State

    async def get_state(self, namespace: str, owner_id: str) -> LibraryState:
        """Get the state of a library index (ABSENT if never built)."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM library_state WHERE namespace = ? AND owner_id = ?",
                (namespace, owner_id),
            ).fetchone()

        if row is None:
            return LibraryState(namespace=namespace, owner_id=owner_id, state=IndexState.ABSENT)
        return self._row_to_state(row)

    async def set_state(self, namespace: str, owner_id: str, state: IndexState) -> LibraryState:
        """Transition a library index to a new state.

        Returns:
            The new LibraryState
        """
        with self._get_connection() as conn:
            self._write_state(conn, namespace, owner_id, state)
            row = conn.execute(
                "SELECT * FROM library_state WHERE namespace = ? AND owner_id = ?",
                (namespace, owner_id),
            ).fetchone()
        return self._row_to_state(row)

    def _write_state(
        self,
        conn: sqlite3.Connection,
        namespace: str,
        owner_id: str,
        state: IndexState,
    ) -> None:
        conn.execute(
            """
            INSERT INTO library_state (namespace, owner_id, state, version, updated_at)
            VALUES (?, ?, ?, 1, ?)
            ON CONFLICT (namespace, owner_id) DO UPDATE SET
                state = excluded.state,
                version = library_state.version + 1,
                updated_at = excluded.updated_at
            """,
            (namespace, owner_id, state.value, int(time.time() * 1000)),
        )

    # Entries

    async def replace_entries(
        self,
        namespace: str,
        owner_id: str,
        entries: list[LibraryEntry],
    ) -> LibraryState:
        """Atomically replace an owner's listing and mark it built.

        Args:
            namespace: Library namespace
            owner_id: Library owner
            entries: The complete new listing

        Returns:
            The new LibraryState (BUILT)
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    "DELETE FROM library_entries WHERE namespace = ? AND owner_id = ?",
                    (namespace, owner_id),
                )
                conn.executemany(
                    """
                    INSERT INTO library_entries
                    (namespace, owner_id, resource_id, rank, visibility, tenant_alias)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (namespace, owner_id, e.resource_id, e.rank, e.visibility, e.tenant_alias)
                        for e in entries
                    ],
                )
                self._write_state(conn, namespace, owner_id, IndexState.BUILT)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

            row = conn.execute(
                "SELECT * FROM library_state WHERE namespace = ? AND owner_id = ?",
                (namespace, owner_id),
            ).fetchone()

        return self._row_to_state(row)

    async def upsert_entries(self, namespace: str, entries: list[LibraryEntry]) -> None:
        """Insert entries, replacing rank and denormalized fields of existing ones."""
        if not entries:
            return

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.executemany(
                    """
                    INSERT INTO library_entries
                    (namespace, owner_id, resource_id, rank, visibility, tenant_alias)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT (namespace, owner_id, resource_id) DO UPDATE SET
                        rank = excluded.rank,
                        visibility = excluded.visibility,
                        tenant_alias = excluded.tenant_alias
                    """,
                    [
                        (namespace, e.owner_id, e.resource_id, e.rank, e.visibility, e.tenant_alias)
                        for e in entries
                    ],
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    async def update_entries(self, namespace: str, entries: list[LibraryEntry]) -> int:
        """Re-rank and re-denormalize entries that already exist.

        Entries not present in the listing are ignored.

        Returns:
            Number of entries updated
        """
        if not entries:
            return 0

        updated = 0
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for e in entries:
                    cursor = conn.execute(
                        """
                        UPDATE library_entries SET rank = ?, visibility = ?, tenant_alias = ?
                        WHERE namespace = ? AND owner_id = ? AND resource_id = ?
                        """,
                        (e.rank, e.visibility, e.tenant_alias, namespace, e.owner_id, e.resource_id),
                    )
                    updated += cursor.rowcount
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        return updated

    async def delete_entries(self, namespace: str, owner_ids: list[str], resource_id: str) -> int:
        """Delete a resource from the listings of the given owners.

        Returns:
            Number of entries deleted
        """
        if not owner_ids:
            return 0

        with self._get_connection() as conn:
            placeholders = ",".join("?" * len(owner_ids))
            cursor = conn.execute(
                f"""
                DELETE FROM library_entries
                WHERE namespace = ? AND resource_id = ? AND owner_id IN ({placeholders})
                """,
                [namespace, resource_id, *owner_ids],
            )
            return cursor.rowcount

    async def list_entries(
        self,
        namespace: str,
        owner_id: str,
        after: tuple[int, str] | None = None,
        limit: int = 10,
    ) -> list[LibraryEntry]:
        """List an owner's entries in library order.

        Args:
            namespace: Library namespace
            owner_id: Library owner
            after: Exclusive (rank, resource_id) position to continue from
            limit: Maximum entries to return

        Returns:
            Entries ordered by rank DESC, resource_id DESC
        """
        query = "SELECT * FROM library_entries WHERE namespace = ? AND owner_id = ?"
        params: list = [namespace, owner_id]

        if after is not None:
            rank, resource_id = after
            query += " AND (rank < ? OR (rank = ? AND resource_id < ?))"
            params.extend([rank, rank, resource_id])

        query += " ORDER BY rank DESC, resource_id DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            cursor = conn.execute(query, params)
            return [self._row_to_entry(row) for row in cursor.fetchall()]

    async def get_ranks(self, namespace: str, owner_id: str) -> dict[str, int]:
        """Get resource_id -> rank for everything currently in a listing."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT resource_id, rank FROM library_entries WHERE namespace = ? AND owner_id = ?",
                (namespace, owner_id),
            )
            return {row["resource_id"]: row["rank"] for row in cursor.fetchall()}

    async def count_entries(self, namespace: str, owner_id: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM library_entries WHERE namespace = ? AND owner_id = ?",
                (namespace, owner_id),
            ).fetchone()
            return row[0]

    def _row_to_entry(self, row: sqlite3.Row) -> LibraryEntry:
        """Convert database row to LibraryEntry."""
        return LibraryEntry(
            owner_id=row["owner_id"],
            resource_id=row["resource_id"],
            rank=row["rank"],
            visibility=row["visibility"],
            tenant_alias=row["tenant_alias"],
        )

    def _row_to_state(self, row: sqlite3.Row) -> LibraryState:
        """Convert database row to LibraryState."""
        return LibraryState(
            namespace=row["namespace"],
            owner_id=row["owner_id"],
            state=IndexState(row["state"]),
            version=row["version"],
            updated_at=row["updated_at"],
        )
