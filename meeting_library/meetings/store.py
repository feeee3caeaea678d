"""
Meeting SQLite store.

This module manages the database of meeting records. It is the resource
store the library rebuild loads live resources from; it knows nothing about
who has access to a meeting (see authz.store for roles).

Invariants:
    - Meeting ids are d:<tenantAlias>:<id>, the tenant being the creator's
    - last_modified >= created
    - Deleting a meeting does not touch role records

How to change safely:
    - Add new columns with defaults for backward compatibility
    - get_meetings_by_id must preserve the order of the ids it is given

Table schema:
    meetings:
        - meeting_id TEXT PRIMARY KEY
        - tenant_alias TEXT
        - created_by TEXT
        - display_name TEXT
        - description TEXT
        - record INTEGER
        - all_moderators INTEGER
        - wait_moderator INTEGER
        - visibility TEXT
        - created INTEGER (Unix ms)
        - last_modified INTEGER (Unix ms)
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..authz.principals import MEETING, EntityId

logger = logging.getLogger(__name__)


@dataclass
class Meeting:
    """A meeting.

    Attributes:
        meeting_id: Meeting identifier (d:tenant:id)
        tenant_alias: Tenant owning the meeting
        created_by: User who created the meeting
        display_name: Meeting name
        description: Meeting description
        record: Whether the meeting is recorded
        all_moderators: Whether every participant joins as moderator
        wait_moderator: Whether participants wait for a moderator
        visibility: private, loggedin or public
        created: Creation timestamp (Unix ms)
        last_modified: Last update timestamp (Unix ms)
    """

    meeting_id: str
    tenant_alias: str
    created_by: str
    display_name: str
    description: str
    visibility: str
    created: int
    last_modified: int
    record: bool = False
    all_moderators: bool = False
    wait_moderator: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.meeting_id,
            "tenantAlias": self.tenant_alias,
            "createdBy": self.created_by,
            "displayName": self.display_name,
            "description": self.description,
            "record": self.record,
            "allModerators": self.all_moderators,
            "waitModerator": self.wait_moderator,
            "visibility": self.visibility,
            "created": self.created,
            "lastModified": self.last_modified,
        }


class MeetingStore:
    """SQLite store for meeting records.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = MeetingStore("/var/lib/meeting-library")
        >>> meeting = await store.create_meeting(
        ...     created_by="u:cam:alice",
        ...     display_name="Weekly sync",
        ...     description="Standup",
        ...     visibility="loggedin",
        ... )
        >>> await store.get_meeting(meeting.meeting_id)
    """

    DB_FILE = "meetings.db"

    # Fields update_meeting accepts
    UPDATABLE_FIELDS = ("display_name", "description", "visibility")

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the meeting store.

        Args:
            data_dir: Directory for the database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection with the schema in place."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.data_dir / self.DB_FILE),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            conn.executescript("""
                CREATE TABLE IF NOT EXISTS meetings (
                    meeting_id TEXT PRIMARY KEY,
                    tenant_alias TEXT NOT NULL,
                    created_by TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    description TEXT NOT NULL,
                    record INTEGER NOT NULL DEFAULT 0,
                    all_moderators INTEGER NOT NULL DEFAULT 0,
                    wait_moderator INTEGER NOT NULL DEFAULT 0,
                    visibility TEXT NOT NULL,
                    created INTEGER NOT NULL,
                    last_modified INTEGER NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_meetings_tenant ON meetings(tenant_alias);
            """)

            yield conn
        finally:
            conn.close()

    async def create_meeting(
        self,
        created_by: str,
        display_name: str,
        description: str,
        visibility: str,
        record: bool = False,
        all_moderators: bool = False,
        wait_moderator: bool = False,
        created: int | None = None,
        meeting_id: str | None = None,
    ) -> Meeting:
        """Persist a new meeting.

        Args:
            created_by: Creating user id, whose tenant the meeting belongs to
            display_name: Meeting name
            description: Meeting description
            visibility: Meeting visibility
            record: Whether the meeting is recorded
            all_moderators: Whether every participant joins as moderator
            wait_moderator: Whether participants wait for a moderator
            created: Creation timestamp (default: now)
            meeting_id: Meeting id (default: generated in the creator's tenant)

        Returns:
            Created Meeting
        """
        tenant_alias = EntityId.parse(created_by).tenant_alias
        meeting_id = meeting_id or f"{MEETING}:{tenant_alias}:{uuid.uuid4().hex[:12]}"
        created = created or int(time.time() * 1000)

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO meetings
                (meeting_id, tenant_alias, created_by, display_name, description,
                 record, all_moderators, wait_moderator, visibility, created, last_modified)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    meeting_id,
                    tenant_alias,
                    created_by,
                    display_name,
                    description,
                    int(record),
                    int(all_moderators),
                    int(wait_moderator),
                    visibility,
                    created,
                    created,
                ),
            )

        logger.debug(
            "Created meeting",
            extra={"meeting_id": meeting_id, "created_by": created_by, "visibility": visibility},
        )

        return Meeting(
            meeting_id=meeting_id,
            tenant_alias=tenant_alias,
            created_by=created_by,
            display_name=display_name,
            description=description,
            visibility=visibility,
            created=created,
            last_modified=created,
            record=record,
            all_moderators=all_moderators,
            wait_moderator=wait_moderator,
        )

    async def update_meeting(
        self,
        meeting: Meeting,
        fields: dict[str, Any],
        last_modified: int | None = None,
    ) -> Meeting:
        """Update profile fields of a meeting.

        Args:
            meeting: The meeting as currently stored
            fields: Field values to set (display_name, description, visibility)
            last_modified: Update timestamp (default: now, never before the
                previous last_modified)

        Returns:
            The updated Meeting
        """
        unknown = set(fields) - set(self.UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update meeting fields: {sorted(unknown)}")

        last_modified = last_modified or max(int(time.time() * 1000), meeting.last_modified + 1)
        values = {**fields, "last_modified": last_modified}

        assignments = ", ".join(f"{name} = ?" for name in values)
        with self._get_connection() as conn:
            conn.execute(
                f"UPDATE meetings SET {assignments} WHERE meeting_id = ?",
                [*values.values(), meeting.meeting_id],
            )

        return Meeting(
            meeting_id=meeting.meeting_id,
            tenant_alias=meeting.tenant_alias,
            created_by=meeting.created_by,
            display_name=fields.get("display_name", meeting.display_name),
            description=fields.get("description", meeting.description),
            visibility=fields.get("visibility", meeting.visibility),
            created=meeting.created,
            last_modified=last_modified,
            record=meeting.record,
            all_moderators=meeting.all_moderators,
            wait_moderator=meeting.wait_moderator,
        )

    async def get_meeting(self, meeting_id: str) -> Meeting | None:
        """Get a meeting by id, or None if it does not exist."""
        meetings = await self.get_meetings_by_id([meeting_id])
        return meetings[0]

    async def get_meetings_by_id(self, meeting_ids: list[str]) -> list[Meeting | None]:
        """Get meetings by id.

        Args:
            meeting_ids: Meeting identifiers

        Returns:
            Meetings in the order of meeting_ids, None where a meeting
            does not exist
        """
        if not meeting_ids:
            return []

        with self._get_connection() as conn:
            placeholders = ",".join("?" * len(meeting_ids))
            cursor = conn.execute(
                f"SELECT * FROM meetings WHERE meeting_id IN ({placeholders})",
                list(meeting_ids),
            )
            by_id = {row["meeting_id"]: self._row_to_meeting(row) for row in cursor.fetchall()}

        return [by_id.get(meeting_id) for meeting_id in meeting_ids]

    async def delete_meeting(self, meeting_id: str) -> bool:
        """Delete a meeting record.

        Returns:
            True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM meetings WHERE meeting_id = ?", (meeting_id,))
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info("Meeting deleted", extra={"meeting_id": meeting_id})
        return deleted

    def _row_to_meeting(self, row: sqlite3.Row) -> Meeting:
        """Convert database row to Meeting."""
        return Meeting(
            meeting_id=row["meeting_id"],
            tenant_alias=row["tenant_alias"],
            created_by=row["created_by"],
            display_name=row["display_name"],
            description=row["description"],
            visibility=row["visibility"],
            created=row["created"],
            last_modified=row["last_modified"],
            record=bool(row["record"]),
            all_moderators=bool(row["all_moderators"]),
            wait_moderator=bool(row["wait_moderator"]),
        )
