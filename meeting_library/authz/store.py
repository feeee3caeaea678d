"""
Authorization SQLite store for the meeting library.

This module manages the database that records who has access to what:
- Principals (users and groups) with their visibility
- Group memberships
- Roles held by principals on resources (the source of truth for access)

Library indexes are derived from the roles table. When a resource is
deleted without its roles being removed, the roles become dangling
references; the rebuild procedure tolerates and cleans them up.

Invariants:
    - One role per (resource_id, principal_id)
    - A principal's tenant is the tenant encoded in its id
    - All multi-row writes happen in a single transaction

How to change safely:
    - Add new columns with defaults for backward compatibility
    - Keep list_resource_ids_for_principal ordered and paged by resource_id

Table schema:
    principals:
        - principal_id TEXT PRIMARY KEY
        - tenant_alias TEXT
        - visibility TEXT
        - display_name TEXT
        - created INTEGER (Unix ms)

    group_members:
        - group_id TEXT
        - member_id TEXT
        - role TEXT
        - PRIMARY KEY (group_id, member_id)

    roles:
        - resource_id TEXT
        - principal_id TEXT
        - resource_type TEXT
        - role TEXT
        - PRIMARY KEY (resource_id, principal_id)
        - INDEX on (principal_id, resource_type, resource_id)
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..errors import InvalidArgumentError
from .principals import (
    GROUP,
    EntityId,
    Principal,
    Role,
    ViewerContext,
    parse_principal_id,
)
from .visibility import Visibility

logger = logging.getLogger(__name__)


class AuthzStore:
    """SQLite store for principals, group memberships and resource roles.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = AuthzStore("/var/lib/meeting-library")
        >>> await store.create_principal("u:cam:alice", "public")
        >>> await store.update_roles("d:cam:m1", {"u:cam:alice": "manager"})
        >>> await store.list_resource_ids_for_principal("u:cam:alice", "d")
        ([('d:cam:m1', 'manager')], None)
    """

    DB_FILE = "authz.db"

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the authorization store.

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
            CREATE TABLE IF NOT EXISTS principals (
                principal_id TEXT PRIMARY KEY,
                tenant_alias TEXT NOT NULL,
                visibility TEXT NOT NULL,
                display_name TEXT NOT NULL DEFAULT '',
                created INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS group_members (
                group_id TEXT NOT NULL,
                member_id TEXT NOT NULL,
                role TEXT NOT NULL,
                PRIMARY KEY (group_id, member_id)
            );

            CREATE INDEX IF NOT EXISTS idx_group_members_member ON group_members(member_id);

            CREATE TABLE IF NOT EXISTS roles (
                resource_id TEXT NOT NULL,
                principal_id TEXT NOT NULL,
                resource_type TEXT NOT NULL,
                role TEXT NOT NULL,
                PRIMARY KEY (resource_id, principal_id)
            );

            CREATE INDEX IF NOT EXISTS idx_roles_principal
                ON roles(principal_id, resource_type, resource_id);
        """)

    # Principals

    async def create_principal(
        self,
        principal_id: str,
        visibility: str,
        display_name: str = "",
        created: int | None = None,
    ) -> Principal:
        """Create a user or group.

        Args:
            principal_id: User or group id (u:tenant:id or g:tenant:id)
            visibility: Visibility of the principal
            display_name: Human readable name
            created: Creation timestamp (default: now)

        Returns:
            Created Principal
        """
        entity = parse_principal_id(principal_id)
        visibility = Visibility.parse(visibility).value
        created = created or int(time.time() * 1000)

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO principals (principal_id, tenant_alias, visibility, display_name, created)
                VALUES (?, ?, ?, ?, ?)
                """,
                (principal_id, entity.tenant_alias, visibility, display_name, created),
            )

        logger.debug(
            "Created principal",
            extra={"principal_id": principal_id, "visibility": visibility},
        )

        return Principal(
            principal_id=principal_id,
            tenant_alias=entity.tenant_alias,
            visibility=visibility,
            display_name=display_name,
            created=created,
        )

    async def get_principal(self, principal_id: str) -> Principal | None:
        """Get a principal by id, or None if it does not exist."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM principals WHERE principal_id = ?",
                (principal_id,),
            ).fetchone()
            return self._row_to_principal(row) if row else None

    async def get_principals(self, principal_ids: list[str]) -> dict[str, Principal]:
        """Get the principals that exist among the given ids."""
        if not principal_ids:
            return {}

        with self._get_connection() as conn:
            placeholders = ",".join("?" * len(principal_ids))
            cursor = conn.execute(
                f"SELECT * FROM principals WHERE principal_id IN ({placeholders})",
                list(principal_ids),
            )
            return {row["principal_id"]: self._row_to_principal(row) for row in cursor.fetchall()}

    async def set_principal_visibility(self, principal_id: str, visibility: str) -> bool:
        """Change a principal's visibility.

        Returns:
            True if the principal exists
        """
        visibility = Visibility.parse(visibility).value
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE principals SET visibility = ? WHERE principal_id = ?",
                (visibility, principal_id),
            )
            return cursor.rowcount > 0

    # Group memberships

    async def set_group_members(
        self,
        group_id: str,
        changes: dict[str, str | None],
    ) -> None:
        """Apply membership changes to a group.

        Args:
            group_id: Group identifier
            changes: member_id -> role, or None to remove the member
        """
        if parse_principal_id(group_id).type != GROUP:
            raise InvalidArgumentError(f"A group id must be provided: {group_id}", argument="group_id")

        for member_id, role in changes.items():
            parse_principal_id(member_id)
            if role is not None:
                Role.parse(role)

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for member_id, role in changes.items():
                    if role is None:
                        conn.execute(
                            "DELETE FROM group_members WHERE group_id = ? AND member_id = ?",
                            (group_id, member_id),
                        )
                    else:
                        conn.execute(
                            """
                            INSERT INTO group_members (group_id, member_id, role) VALUES (?, ?, ?)
                            ON CONFLICT (group_id, member_id) DO UPDATE SET role = excluded.role
                            """,
                            (group_id, member_id, role),
                        )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    async def get_group_members(self, group_id: str) -> dict[str, str]:
        """Get member_id -> role for a group."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT member_id, role FROM group_members WHERE group_id = ?",
                (group_id,),
            )
            return {row["member_id"]: row["role"] for row in cursor.fetchall()}

    async def get_member_group_ids(self, principal_id: str) -> set[str]:
        """Get every group the principal belongs to, directly or through other groups."""
        found: set[str] = set()
        frontier = [principal_id]

        with self._get_connection() as conn:
            while frontier:
                placeholders = ",".join("?" * len(frontier))
                cursor = conn.execute(
                    f"SELECT DISTINCT group_id FROM group_members WHERE member_id IN ({placeholders})",
                    frontier,
                )
                frontier = [row["group_id"] for row in cursor.fetchall() if row["group_id"] not in found]
                found.update(frontier)

        return found

    async def build_context(
        self,
        user_id: str | None,
        tenant_alias: str | None = None,
        is_tenant_admin: bool = False,
        is_global_admin: bool = False,
    ) -> ViewerContext:
        """Build the viewer context for a request.

        Args:
            user_id: Authenticated user, or None for anonymous requests
            tenant_alias: Tenant of the request (defaults to the user's tenant)
            is_tenant_admin: Whether the user administers its tenant
            is_global_admin: Whether the user administers every tenant

        Returns:
            ViewerContext including the user's group memberships
        """
        if user_id is None:
            if tenant_alias is None:
                raise ValueError("Anonymous contexts require a tenant alias")
            return ViewerContext.anonymous(tenant_alias)

        entity = parse_principal_id(user_id)
        group_ids = await self.get_member_group_ids(user_id)

        return ViewerContext(
            tenant_alias=tenant_alias or entity.tenant_alias,
            user_id=user_id,
            is_tenant_admin=is_tenant_admin,
            is_global_admin=is_global_admin,
            principal_ids=frozenset(group_ids | {user_id}),
        )

    # Resource roles

    async def update_roles(
        self,
        resource_id: str,
        changes: dict[str, str | None],
    ) -> None:
        """Apply role changes on a resource.

        Args:
            resource_id: Resource identifier
            changes: principal_id -> role, or None to revoke
        """
        resource_type = EntityId.parse(resource_id).type

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for principal_id, role in changes.items():
                    if role is None:
                        conn.execute(
                            "DELETE FROM roles WHERE resource_id = ? AND principal_id = ?",
                            (resource_id, principal_id),
                        )
                    else:
                        conn.execute(
                            """
                            INSERT INTO roles (resource_id, principal_id, resource_type, role)
                            VALUES (?, ?, ?, ?)
                            ON CONFLICT (resource_id, principal_id) DO UPDATE SET role = excluded.role
                            """,
                            (resource_id, principal_id, resource_type, role),
                        )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Updated roles",
            extra={"resource_id": resource_id, "changes": len(changes)},
        )

    async def get_roles(self, resource_id: str) -> dict[str, str]:
        """Get principal_id -> role for a resource."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT principal_id, role FROM roles WHERE resource_id = ?",
                (resource_id,),
            )
            return {row["principal_id"]: row["role"] for row in cursor.fetchall()}

    async def get_roles_for_principals(
        self,
        resource_ids: list[str],
        principal_ids: list[str],
    ) -> dict[str, dict[str, str]]:
        """Get the roles a set of principals hold on a set of resources.

        Returns:
            resource_id -> {principal_id: role}, only for resources where
            at least one of the principals holds a role
        """
        if not resource_ids or not principal_ids:
            return {}

        with self._get_connection() as conn:
            rid_marks = ",".join("?" * len(resource_ids))
            pid_marks = ",".join("?" * len(principal_ids))
            cursor = conn.execute(
                f"""
                SELECT resource_id, principal_id, role FROM roles
                WHERE resource_id IN ({rid_marks}) AND principal_id IN ({pid_marks})
                """,
                [*resource_ids, *principal_ids],
            )

            result: dict[str, dict[str, str]] = {}
            for row in cursor.fetchall():
                result.setdefault(row["resource_id"], {})[row["principal_id"]] = row["role"]
            return result

    async def list_resource_ids_for_principal(
        self,
        principal_id: str,
        resource_type: str,
        start: str | None = None,
        limit: int = 100,
    ) -> tuple[list[tuple[str, str]], str | None]:
        """Page through the resources a principal holds a direct role on.

        Args:
            principal_id: Principal identifier
            resource_type: Resource id type (e.g. "d" for meetings)
            start: Exclusive resource id to start after
            limit: Maximum rows to return

        Returns:
            ([(resource_id, role), ...], next_token) where next_token is
            None when there are no more rows
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT resource_id, role FROM roles
                WHERE principal_id = ? AND resource_type = ? AND resource_id > ?
                ORDER BY resource_id ASC
                LIMIT ?
                """,
                (principal_id, resource_type, start or "", limit + 1),
            )
            rows = [(row["resource_id"], row["role"]) for row in cursor.fetchall()]

        next_token = None
        if len(rows) > limit:
            rows = rows[:limit]
            next_token = rows[-1][0]

        return rows, next_token

    async def delete_resource_roles(
        self,
        resource_id: str,
        principal_ids: list[str] | None = None,
    ) -> int:
        """Delete role records of a resource.

        Args:
            resource_id: Resource identifier
            principal_ids: Only delete these principals' roles (default: all)

        Returns:
            Number of role records deleted
        """
        with self._get_connection() as conn:
            if principal_ids is None:
                cursor = conn.execute("DELETE FROM roles WHERE resource_id = ?", (resource_id,))
            else:
                if not principal_ids:
                    return 0
                placeholders = ",".join("?" * len(principal_ids))
                cursor = conn.execute(
                    f"DELETE FROM roles WHERE resource_id = ? AND principal_id IN ({placeholders})",
                    [resource_id, *principal_ids],
                )
            return cursor.rowcount

    def _row_to_principal(self, row: sqlite3.Row) -> Principal:
        """Convert database row to Principal."""
        return Principal(
            principal_id=row["principal_id"],
            tenant_alias=row["tenant_alias"],
            visibility=row["visibility"],
            display_name=row["display_name"],
            created=row["created"],
        )
