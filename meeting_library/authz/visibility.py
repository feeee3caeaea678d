"""
Visibility evaluation for meetings and libraries.

Two decisions live here:
- can_view: whether a viewer may see a single resource
- resolve_library_access: whether a viewer may list an owner's library at
  all, and which visibility band of the library it receives

Invariants:
    - Both functions are pure: no I/O, no logging, no mutation
    - Holding a role on a resource implies access regardless of visibility
    - An administrator only administers their own tenant unless global

How to change safely:
    - Extend the table tests in tests/unit/test_visibility.py first
    - Never consult stores from here; callers pass in everything needed
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from ..errors import InvalidArgumentError
from .principals import Principal, ViewerContext


class Visibility(Enum):
    """Visibility settings for principals and resources."""

    PRIVATE = "private"
    LOGGEDIN = "loggedin"
    PUBLIC = "public"

    @classmethod
    def parse(cls, value: str | Visibility) -> Visibility:
        """Parse a visibility string, raising InvalidArgumentError if unknown."""
        if isinstance(value, Visibility):
            return value
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(v.value for v in cls)
            raise InvalidArgumentError(
                f"An invalid visibility option has been provided. Must be one of: {valid}",
                argument="visibility",
            ) from None


@dataclass
class AccessRecord:
    """What the evaluator needs to know about a resource.

    Attributes:
        resource_id: Resource identifier
        tenant_alias: Tenant owning the resource
        visibility: Current visibility of the resource
        roles: principal_id -> role for every principal holding a role
    """

    resource_id: str
    tenant_alias: str
    visibility: Visibility
    roles: dict[str, str] = field(default_factory=dict)


def can_view(
    viewer: ViewerContext,
    record: AccessRecord,
    owner_id: str | None = None,
) -> bool:
    """Check whether a viewer may see a resource.

    Rules, in precedence order:
        1. Administrators of the resource's tenant (or global admins)
        2. Principals holding a role, directly or through a group
        3. public: everyone, anonymous included
        4. loggedin: authenticated viewers of the resource's tenant
        5. private: nobody else

    Args:
        viewer: Identity the request is evaluated for
        record: The resource's access record
        owner_id: Library owner the resource is listed for. Acting as the
            owner grants access only through the owner's own role, which
            rule 2 already covers

    Returns:
        True if the viewer can see the resource
    """
    if viewer.is_admin_of(record.tenant_alias):
        return True

    if any(viewer.acts_as(pid) for pid in record.roles):
        return True

    if record.visibility == Visibility.PUBLIC:
        return True

    if record.visibility == Visibility.LOGGEDIN:
        return viewer.is_authenticated and viewer.tenant_alias == record.tenant_alias

    return False


def resolve_library_access(
    viewer: ViewerContext,
    owner: Principal,
) -> tuple[bool, Visibility | None]:
    """Determine whether a viewer may list an owner's library.

    The owner's own visibility gates the whole listing: a viewer that may
    not see the owner is rejected outright rather than given an empty page.

    Args:
        viewer: Identity the request is evaluated for
        owner: User or group whose library is requested

    Returns:
        (has_access, visibility band) where the band is the widest
        visibility of items the viewer receives from this library
    """
    if viewer.acts_as(owner.principal_id) or viewer.is_admin_of(owner.tenant_alias):
        return True, Visibility.PRIVATE

    same_tenant = viewer.is_authenticated and viewer.tenant_alias == owner.tenant_alias
    owner_visibility = Visibility.parse(owner.visibility)

    if owner_visibility == Visibility.PUBLIC:
        return True, Visibility.LOGGEDIN if same_tenant else Visibility.PUBLIC

    if owner_visibility == Visibility.LOGGEDIN and same_tenant:
        return True, Visibility.LOGGEDIN

    return False, None
