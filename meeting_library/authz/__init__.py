"""
Authorization module for the meeting library.

This module handles:
- Principal and resource identifiers (u:, g:, d:)
- Viewer contexts (identity, tenant, admin flags, group memberships)
- Visibility evaluation for resources and libraries
- The role store that is the source of truth for access

Invariants:
    - Visibility evaluation is pure and side-effect free
    - Roles are the only record of who has access to a resource
"""

from .principals import EntityId, Principal, Role, ViewerContext
from .store import AuthzStore
from .visibility import AccessRecord, Visibility, can_view, resolve_library_access

__all__ = [
    "EntityId",
    "Principal",
    "Role",
    "ViewerContext",
    "AuthzStore",
    "AccessRecord",
    "Visibility",
    "can_view",
    "resolve_library_access",
]
