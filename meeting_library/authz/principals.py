"""
Identifiers, principals and viewer contexts.

Identifiers have the form <type>:<tenantAlias>:<id>:
- u:cam:abc - User
- g:cam:xyz - Group
- d:cam:123 - Meeting resource

Invariants:
    - The tenant alias of an entity is encoded in its id
    - A ViewerContext lists every principal the viewer acts as
      (its own user id plus the groups it belongs to)
    - Anonymous viewers have no user id and act as nobody

How to change safely:
    - New identifier types must be added to ID_TYPES
    - Keep ViewerContext immutable; build a new one when memberships change
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from ..errors import InvalidArgumentError

USER = "u"
GROUP = "g"
MEETING = "d"

PRINCIPAL_TYPES = frozenset({USER, GROUP})
ID_TYPES = frozenset({USER, GROUP, MEETING})


class Role(Enum):
    """Roles a principal can hold on a meeting or in a group.

    Ordered by priority: when a principal holds both, manager wins.
    """

    MEMBER = "member"
    MANAGER = "manager"

    @classmethod
    def parse(cls, value: str) -> Role:
        """Parse a role string, raising InvalidArgumentError if unknown."""
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(r.value for r in cls)
            raise InvalidArgumentError(
                f"The role: {value} is not a valid member role. Must be one of: {valid}",
                argument="role",
            ) from None


@dataclass(frozen=True)
class EntityId:
    """A parsed principal or resource identifier.

    Attributes:
        type: Identifier type (u, g, d)
        tenant_alias: Tenant the entity belongs to
        id: Tenant-local identifier
    """

    type: str
    tenant_alias: str
    id: str

    @classmethod
    def parse(cls, value: str) -> EntityId:
        """Parse an identifier string.

        Args:
            value: String like "u:cam:abc"

        Returns:
            Parsed EntityId

        Raises:
            InvalidArgumentError: If the format or type is invalid
        """
        if not isinstance(value, str):
            raise InvalidArgumentError(f"Invalid id: {value!r}", argument="id")

        parts = value.split(":", 2)
        if len(parts) != 3 or not all(parts):
            raise InvalidArgumentError(f"Invalid id format: {value}", argument="id")

        type_str, tenant_alias, id_str = parts
        if type_str not in ID_TYPES:
            raise InvalidArgumentError(f"Invalid id type: {type_str}", argument="id")

        return cls(type=type_str, tenant_alias=tenant_alias, id=id_str)

    @property
    def is_principal(self) -> bool:
        return self.type in PRINCIPAL_TYPES

    def __str__(self) -> str:
        return f"{self.type}:{self.tenant_alias}:{self.id}"


def parse_principal_id(value: str) -> EntityId:
    """Parse an id that must refer to a user or group."""
    entity = EntityId.parse(value)
    if not entity.is_principal:
        raise InvalidArgumentError(f"A user or group id must be provided: {value}", argument="principal_id")
    return entity


def parse_resource_id(value: str, resource_type: str = MEETING) -> EntityId:
    """Parse an id that must refer to a resource of the given type."""
    entity = EntityId.parse(value)
    if entity.type != resource_type:
        raise InvalidArgumentError(f"A valid resource id must be provided: {value}", argument="resource_id")
    return entity


def is_group_id(value: str) -> bool:
    return value.startswith(f"{GROUP}:")


@dataclass
class Principal:
    """A user or group.

    Attributes:
        principal_id: Principal identifier (u:... or g:...)
        tenant_alias: Tenant the principal belongs to
        visibility: Visibility of the principal's profile and library
        display_name: Human readable name
        created: Creation timestamp (Unix ms)
    """

    principal_id: str
    tenant_alias: str
    visibility: str
    display_name: str = ""
    created: int = 0

    @property
    def is_group(self) -> bool:
        return is_group_id(self.principal_id)


@dataclass(frozen=True)
class ViewerContext:
    """The identity a request is evaluated for.

    Attributes:
        tenant_alias: Tenant the request is made on (for anonymous viewers)
            or the viewer's own tenant
        user_id: Authenticated user id, None for anonymous viewers
        is_tenant_admin: Whether the viewer administers tenant_alias
        is_global_admin: Whether the viewer administers every tenant
        principal_ids: Every principal the viewer acts as
    """

    tenant_alias: str
    user_id: str | None = None
    is_tenant_admin: bool = False
    is_global_admin: bool = False
    principal_ids: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if self.user_id and self.user_id not in self.principal_ids:
            object.__setattr__(self, "principal_ids", self.principal_ids | {self.user_id})

    @classmethod
    def anonymous(cls, tenant_alias: str) -> ViewerContext:
        return cls(tenant_alias=tenant_alias)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def is_admin_of(self, tenant_alias: str) -> bool:
        """Whether the viewer administers the given tenant."""
        if not self.is_authenticated:
            return False
        if self.is_global_admin:
            return True
        return self.is_tenant_admin and self.tenant_alias == tenant_alias

    def acts_as(self, principal_id: str) -> bool:
        """Whether the viewer is the principal or a member of it."""
        return principal_id in self.principal_ids
