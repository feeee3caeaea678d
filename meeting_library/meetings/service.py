"""
Meetings service.

Creates, updates, shares and deletes meetings, changes and lists their
members, and serves the meetings library. Every change to who can access a
meeting is written to the role records first and then mirrored into the
libraries of the affected principals.

Invariants:
    - The creator of a meeting is a manager of it
    - A meeting always keeps at least one manager
    - Roles are written before libraries are updated
    - On delete, roles and library entries go before the meeting record

How to change safely:
    - Validate everything before the first write
    - Any new field that affects listing order or visibility must be
      propagated with LibraryIndex.update
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ..authz.principals import (
    Principal,
    Role,
    ViewerContext,
    parse_principal_id,
    parse_resource_id,
)
from ..authz.store import AuthzStore
from ..authz.visibility import AccessRecord, Visibility, can_view
from ..errors import (
    AuthorizationError,
    InvalidArgumentError,
    MeetingNotFoundError,
    translate_store_errors,
)
from ..events.base import EventNames, EventPublisher
from ..library.index import MEETINGS_NAMESPACE, LibraryIndex
from ..library.rebuild import IndexedResource
from .store import Meeting, MeetingStore

logger = logging.getLogger(__name__)

DISPLAY_NAME_MAX_LENGTH = 1000
DESCRIPTION_MAX_LENGTH = 10000
MEMBERS_DEFAULT_PAGE_SIZE = 10
MEMBERS_MAX_PAGE_SIZE = 25


@dataclass
class MeetingProfile:
    """A meeting together with what the viewer may do with it."""

    meeting: Meeting
    is_manager: bool
    can_share: bool
    can_join: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.meeting.to_dict(),
            "isManager": self.is_manager,
            "canShare": self.can_share,
            "canJoin": self.can_join,
        }


@dataclass
class MeetingMember:
    """A principal holding a role on a meeting."""

    principal_id: str
    role: str
    profile: Principal | None = None

    def to_dict(self) -> dict[str, Any]:
        member: dict[str, Any] = {"id": self.principal_id, "role": self.role}
        if self.profile is not None:
            member.update(
                tenantAlias=self.profile.tenant_alias,
                displayName=self.profile.display_name,
                visibility=self.profile.visibility,
                resourceType="group" if self.profile.is_group else "user",
            )
        return member


def _indexed(meeting: Meeting) -> IndexedResource:
    return IndexedResource(
        resource_id=meeting.meeting_id,
        tenant_alias=meeting.tenant_alias,
        visibility=meeting.visibility,
        created=meeting.created,
        last_modified=meeting.last_modified,
    )


class MeetingsService:
    """Meeting operations on behalf of a viewer.

    Example:
        >>> service = MeetingsService(authz_store, meeting_store, library_index)
        >>> ctx = await authz_store.build_context("u:cam:alice")
        >>> meeting = await service.create_meeting(ctx, "Weekly sync", "Standup", "loggedin")
        >>> meetings, next_token = await service.get_meetings_library(ctx, "u:cam:alice")
    """

    def __init__(
        self,
        authz_store: AuthzStore,
        meeting_store: MeetingStore,
        library_index: LibraryIndex,
        default_visibility: str = "public",
        publisher: EventPublisher | None = None,
    ) -> None:
        self.authz_store = authz_store
        self.meeting_store = meeting_store
        self.library_index = library_index
        self.default_visibility = Visibility.parse(default_visibility)
        self.publisher = publisher

    # Validation

    def _validate_display_name(self, value: Any) -> None:
        if not isinstance(value, str) or not value.strip():
            raise InvalidArgumentError("Must provide a display name for the meeting", argument="display_name")
        if len(value) > DISPLAY_NAME_MAX_LENGTH:
            raise InvalidArgumentError(
                f"A display name can be at most {DISPLAY_NAME_MAX_LENGTH} characters long",
                argument="display_name",
            )

    def _validate_description(self, value: Any) -> None:
        if not isinstance(value, str) or not value.strip():
            raise InvalidArgumentError("Must provide a description for the meeting", argument="description")
        if len(value) > DESCRIPTION_MAX_LENGTH:
            raise InvalidArgumentError(
                f"A description can be at most {DESCRIPTION_MAX_LENGTH} characters long",
                argument="description",
            )

    def _validate_role_changes(self, changes: dict[str, str | None]) -> dict[str, str | None]:
        validated: dict[str, str | None] = {}
        for principal_id, role in changes.items():
            try:
                parse_principal_id(principal_id)
            except InvalidArgumentError:
                raise InvalidArgumentError(
                    f"The memberId: {principal_id} is not a valid member id", argument="members"
                ) from None
            validated[principal_id] = None if role is None else Role.parse(role).value
        return validated

    async def _check_members(self, ctx: ViewerContext, principal_ids: list[str]) -> None:
        """Reject grants to principals that don't exist or the viewer may not interact with."""
        if not principal_ids:
            return

        with translate_store_errors("authz"):
            principals = await self.authz_store.get_principals(principal_ids)
        if len(principals) != len(set(principal_ids)):
            raise InvalidArgumentError(
                "One or more target members being granted access do not exist", argument="members"
            )

        illegal = [p.principal_id for p in principals.values() if not self._can_interact(ctx, p)]
        if illegal:
            raise InvalidArgumentError(
                "One or more target members being granted access are not authorized to become members on this meeting",
                argument="members",
            )

    @staticmethod
    def _can_interact(ctx: ViewerContext, principal: Principal) -> bool:
        if principal.tenant_alias == ctx.tenant_alias or ctx.is_global_admin:
            return True
        return Visibility.parse(principal.visibility) == Visibility.PUBLIC

    # Access

    async def _get_meeting(self, meeting_id: str) -> Meeting:
        with translate_store_errors("meetings"):
            meeting = await self.meeting_store.get_meeting(meeting_id)
        if meeting is None:
            raise MeetingNotFoundError(f"Could not find meeting: {meeting_id}", entity_id=meeting_id)
        return meeting

    async def _get_roles(self, meeting_id: str) -> dict[str, str]:
        with translate_store_errors("authz"):
            return await self.authz_store.get_roles(meeting_id)

    @staticmethod
    def _can_manage(ctx: ViewerContext, meeting: Meeting, roles: dict[str, str]) -> bool:
        if ctx.is_admin_of(meeting.tenant_alias):
            return True
        return any(ctx.acts_as(pid) and role == Role.MANAGER.value for pid, role in roles.items())

    @staticmethod
    def _can_interact_with_meeting(ctx: ViewerContext, meeting: Meeting, roles: dict[str, str]) -> bool:
        """Whether the viewer may take part in a meeting, judged by the viewer's own tenant."""
        if not ctx.is_authenticated:
            return False
        if ctx.is_admin_of(meeting.tenant_alias) or any(ctx.acts_as(pid) for pid in roles):
            return True

        visibility = Visibility.parse(meeting.visibility)
        if visibility == Visibility.PUBLIC:
            return True
        user_tenant = parse_principal_id(ctx.user_id).tenant_alias
        return visibility == Visibility.LOGGEDIN and user_tenant == meeting.tenant_alias

    async def _require_manager(self, ctx: ViewerContext, meeting: Meeting, action: str) -> dict[str, str]:
        roles = await self._get_roles(meeting.meeting_id)
        if not self._can_manage(ctx, meeting, roles):
            raise AuthorizationError(f"You are not authorized to {action} this meeting", principal_id=ctx.user_id)
        return roles

    # Operations

    async def create_meeting(
        self,
        ctx: ViewerContext,
        display_name: str,
        description: str,
        visibility: str | None = None,
        members: dict[str, str] | None = None,
        record: bool = False,
        all_moderators: bool = False,
        wait_moderator: bool = False,
    ) -> Meeting:
        """Create a meeting.

        The creator becomes a manager; every member's library receives the
        meeting.

        Args:
            ctx: Creating viewer (must be authenticated)
            display_name: Meeting name (at most 1000 characters)
            description: Meeting description (at most 10000 characters)
            visibility: private, loggedin or public (default from config)
            members: principal_id -> role granted in addition to the creator

        Returns:
            The created Meeting
        """
        if not ctx.is_authenticated:
            raise AuthorizationError("Anonymous users cannot create a meeting")
        self._validate_display_name(display_name)
        self._validate_description(description)
        visibility = Visibility.parse(visibility) if visibility is not None else self.default_visibility

        roles = self._validate_role_changes(members or {})
        await self._check_members(ctx, list(roles))
        roles[ctx.user_id] = Role.MANAGER.value

        with translate_store_errors("meetings"):
            meeting = await self.meeting_store.create_meeting(
                created_by=ctx.user_id,
                display_name=display_name,
                description=description,
                visibility=visibility.value,
                record=record,
                all_moderators=all_moderators,
                wait_moderator=wait_moderator,
            )

        with translate_store_errors("authz"):
            await self.authz_store.update_roles(meeting.meeting_id, roles)

        resource = _indexed(meeting)
        await self.library_index.insert(
            MEETINGS_NAMESPACE, [resource.entry_for(principal_id) for principal_id in roles]
        )

        logger.info(
            "Meeting created",
            extra={"meeting_id": meeting.meeting_id, "created_by": ctx.user_id, "members": len(roles)},
        )
        await self._emit(EventNames.CREATED_MEETING, meeting.meeting_id, meeting=meeting.to_dict(), members=roles)
        return meeting

    async def update_meeting(
        self,
        ctx: ViewerContext,
        meeting_id: str,
        fields: dict[str, Any],
    ) -> Meeting:
        """Update the profile fields of a meeting.

        Args:
            ctx: Viewer (must manage the meeting)
            meeting_id: Meeting to update
            fields: Any of display_name, description, visibility

        Returns:
            The updated Meeting
        """
        parse_resource_id(meeting_id)
        if not ctx.is_authenticated:
            raise AuthorizationError("You must be authenticated to update a meeting")
        if not fields:
            raise InvalidArgumentError("You should specify at least one profile field to update", argument="fields")

        values = dict(fields)
        for name, value in fields.items():
            if name not in MeetingStore.UPDATABLE_FIELDS:
                valid = ", ".join(MeetingStore.UPDATABLE_FIELDS)
                raise InvalidArgumentError(
                    f"The field '{name}' is not a valid field. Must be one of: {valid}", argument=name
                )
            if name == "display_name":
                self._validate_display_name(value)
            elif name == "description":
                self._validate_description(value)
            elif name == "visibility":
                values["visibility"] = Visibility.parse(value).value

        meeting = await self._get_meeting(meeting_id)
        roles = await self._require_manager(ctx, meeting, "update")

        with translate_store_errors("meetings"):
            updated = await self.meeting_store.update_meeting(meeting, values)

        resource = _indexed(updated)
        await self.library_index.update(
            MEETINGS_NAMESPACE, [resource.entry_for(principal_id) for principal_id in roles]
        )

        logger.info(
            "Meeting updated",
            extra={"meeting_id": meeting_id, "fields": sorted(fields), "user_id": ctx.user_id},
        )
        await self._emit(
            EventNames.UPDATED_MEETING,
            meeting_id,
            meeting=updated.to_dict(),
            previous=meeting.to_dict(),
        )
        return updated

    async def set_meeting_members(
        self,
        ctx: ViewerContext,
        meeting_id: str,
        changes: dict[str, str | None],
    ) -> dict[str, str]:
        """Grant, change or revoke member roles on a meeting.

        Args:
            ctx: Viewer (must manage the meeting)
            meeting_id: Meeting to change
            changes: principal_id -> role, or None to remove the member

        Returns:
            The meeting's roles after the change
        """
        parse_resource_id(meeting_id)
        if not ctx.is_authenticated:
            raise AuthorizationError("You must be authenticated to update meeting members")
        if not changes:
            raise InvalidArgumentError("You must specify at least one member change", argument="changes")
        changes = self._validate_role_changes(changes)

        meeting = await self._get_meeting(meeting_id)
        roles = await self._require_manager(ctx, meeting, "update the members of")

        added = [pid for pid, role in changes.items() if role is not None and pid not in roles]
        removed = [pid for pid, role in changes.items() if role is None and pid in roles]
        await self._check_members(ctx, added)

        new_roles = {**roles, **{pid: role for pid, role in changes.items() if role is not None}}
        for pid in removed:
            del new_roles[pid]
        if Role.MANAGER.value not in new_roles.values():
            raise InvalidArgumentError(
                "The requested change results in a meeting with no managers", argument="changes"
            )

        with translate_store_errors("authz"):
            await self.authz_store.update_roles(meeting_id, changes)

        if added:
            resource = _indexed(meeting)
            await self.library_index.insert(
                MEETINGS_NAMESPACE, [resource.entry_for(principal_id) for principal_id in added]
            )
        if removed:
            await self.library_index.remove(MEETINGS_NAMESPACE, removed, meeting_id)

        logger.info(
            "Meeting members updated",
            extra={"meeting_id": meeting_id, "added": len(added), "removed": len(removed)},
        )
        await self._emit(
            EventNames.UPDATED_MEETING_MEMBERS,
            meeting_id,
            changes=changes,
            added=added,
            removed=removed,
        )
        return new_roles

    async def share_meeting(
        self,
        ctx: ViewerContext,
        meeting_id: str,
        principal_ids: list[str],
    ) -> list[str]:
        """Share a meeting with users or groups, granting them the member role.

        Anyone who can interact with a public or loggedin meeting may share
        it; a private meeting can only be shared by its managers. Principals
        that already hold a role keep it.

        Returns:
            The principal ids that became members
        """
        try:
            parse_resource_id(meeting_id)
        except InvalidArgumentError:
            raise InvalidArgumentError("A valid meeting id must be provided", argument="meeting_id") from None
        if not ctx.is_authenticated:
            raise AuthorizationError("You are not authorized to share this meeting")

        principal_ids = list(dict.fromkeys(pid for pid in principal_ids if pid))
        if not principal_ids:
            raise InvalidArgumentError(
                "The meeting must at least be shared with 1 user or group", argument="members"
            )
        self._validate_role_changes({pid: Role.MEMBER.value for pid in principal_ids})

        meeting = await self._get_meeting(meeting_id)
        await self._check_members(ctx, principal_ids)

        roles = await self._get_roles(meeting_id)
        if Visibility.parse(meeting.visibility) == Visibility.PRIVATE:
            can_share = self._can_manage(ctx, meeting, roles)
        else:
            can_share = self._can_interact_with_meeting(ctx, meeting, roles)
        if not can_share:
            raise AuthorizationError("You are not authorized to share this meeting", principal_id=ctx.user_id)

        added = [pid for pid in principal_ids if pid not in roles]
        if not added:
            return []

        with translate_store_errors("authz"):
            await self.authz_store.update_roles(meeting_id, {pid: Role.MEMBER.value for pid in added})

        resource = _indexed(meeting)
        await self.library_index.insert(MEETINGS_NAMESPACE, [resource.entry_for(pid) for pid in added])

        logger.info(
            "Meeting shared",
            extra={"meeting_id": meeting_id, "user_id": ctx.user_id, "added": len(added)},
        )
        await self._emit(
            EventNames.UPDATED_MEETING_MEMBERS,
            meeting_id,
            changes={pid: Role.MEMBER.value for pid in added},
            added=added,
            removed=[],
        )
        return added

    async def delete_meeting(self, ctx: ViewerContext, meeting_id: str) -> None:
        """Delete a meeting, its roles and its library entries."""
        parse_resource_id(meeting_id)
        if not ctx.is_authenticated:
            raise AuthorizationError("You must be authenticated to delete a meeting")

        meeting = await self._get_meeting(meeting_id)
        roles = await self._require_manager(ctx, meeting, "delete")

        with translate_store_errors("authz"):
            await self.authz_store.update_roles(meeting_id, {pid: None for pid in roles})

        await self.library_index.remove(MEETINGS_NAMESPACE, list(roles), meeting_id)

        with translate_store_errors("meetings"):
            await self.meeting_store.delete_meeting(meeting_id)

        await self._emit(EventNames.DELETED_MEETING, meeting_id, meeting=meeting.to_dict())

    async def get_meeting(self, ctx: ViewerContext, meeting_id: str) -> MeetingProfile:
        """Get a meeting with the viewer's effective permissions.

        Raises:
            AuthorizationError: If the viewer cannot see the meeting
        """
        try:
            parse_resource_id(meeting_id)
        except InvalidArgumentError:
            raise InvalidArgumentError("meetingId must be a valid resource id", argument="meeting_id") from None

        meeting = await self._get_meeting(meeting_id)
        roles = await self._get_roles(meeting_id)
        record = AccessRecord(
            resource_id=meeting_id,
            tenant_alias=meeting.tenant_alias,
            visibility=Visibility.parse(meeting.visibility),
            roles=roles,
        )
        if not can_view(ctx, record):
            raise AuthorizationError("You are not authorized to view this meeting", principal_id=ctx.user_id)

        is_manager = self._can_manage(ctx, meeting, roles)
        can_join = self._can_interact_with_meeting(ctx, meeting, roles)
        can_share = is_manager if record.visibility == Visibility.PRIVATE else can_join

        return MeetingProfile(meeting=meeting, is_manager=is_manager, can_share=can_share, can_join=can_join)

    async def get_meeting_members(
        self,
        ctx: ViewerContext,
        meeting_id: str,
        start: str | None = None,
        limit: int | None = None,
    ) -> tuple[list[MeetingMember], str | None]:
        """Get a page of the members of a meeting, ordered by principal id.

        Args:
            ctx: Viewer (must be able to see the meeting)
            meeting_id: Meeting whose members to list
            start: Principal id of the last member of the previous page
            limit: Maximum members (default 10, clamped to [1, 25])

        Returns:
            (members, next_token)
        """
        try:
            parse_resource_id(meeting_id)
        except InvalidArgumentError:
            raise InvalidArgumentError("A valid meeting id must be provided", argument="meeting_id") from None
        if start is not None:
            try:
                parse_principal_id(start)
            except InvalidArgumentError:
                raise InvalidArgumentError("An invalid paging token has been provided", argument="start") from None
        if limit is None:
            limit = MEMBERS_DEFAULT_PAGE_SIZE
        elif isinstance(limit, bool) or not isinstance(limit, int):
            raise InvalidArgumentError("A valid limit must be provided", argument="limit")
        limit = max(1, min(limit, MEMBERS_MAX_PAGE_SIZE))

        meeting = await self._get_meeting(meeting_id)
        roles = await self._get_roles(meeting_id)
        record = AccessRecord(
            resource_id=meeting_id,
            tenant_alias=meeting.tenant_alias,
            visibility=Visibility.parse(meeting.visibility),
            roles=roles,
        )
        if not can_view(ctx, record):
            raise AuthorizationError("You are not authorized to view this meeting", principal_id=ctx.user_id)

        principal_ids = sorted(pid for pid in roles if start is None or pid > start)
        page = principal_ids[:limit]
        next_token = page[-1] if len(principal_ids) > limit else None

        with translate_store_errors("authz"):
            profiles = await self.authz_store.get_principals(page)
        members = [MeetingMember(principal_id=pid, role=roles[pid], profile=profiles.get(pid)) for pid in page]
        return members, next_token

    async def get_meetings_library(
        self,
        ctx: ViewerContext,
        principal_id: str,
        start: str | None = None,
        limit: int | None = None,
    ) -> tuple[list[Meeting], str | None]:
        """Get a page of the meetings library of a user or group.

        Depending on the viewer, public, loggedin or all of the library's
        meetings are returned.

        Returns:
            (meetings, next_token)
        """
        try:
            parse_principal_id(principal_id)
        except InvalidArgumentError:
            raise InvalidArgumentError("A user or group id must be provided", argument="principal_id") from None

        page = await self.library_index.get_library(MEETINGS_NAMESPACE, principal_id, ctx, start=start, limit=limit)

        with translate_store_errors("meetings"):
            meetings = await self.meeting_store.get_meetings_by_id([e.resource_id for e in page.entries])
        meetings = [meeting for meeting in meetings if meeting is not None]

        await self._emit(
            EventNames.GET_MEETING_LIBRARY,
            principal_id,
            viewer=ctx.user_id,
            visibility=page.visibility.value if page.visibility else None,
            count=len(meetings),
        )
        return meetings, page.next_token

    async def _emit(self, name: str, key: str, **payload: Any) -> None:
        if self.publisher is not None:
            await self.publisher.emit(name, key, **payload)
